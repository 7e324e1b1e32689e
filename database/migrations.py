"""数据库迁移。

启动时执行一次，在任何仓库方法被调用之前保证表结构一致：

1. 建表（``CREATE TABLE IF NOT EXISTS``，每次启动都执行）；
2. 结构同步：按仓库当前声明补齐缺失的列、普通索引和唯一索引。这些步骤
   幂等，每次启动都在同一个事务中执行；
3. 按版本号依次执行尚未执行的一次性迁移（数据回填、清理重复订单后安装
   唯一索引），每个迁移在独立事务中执行，成功后写入 ``schema_migrations``；
4. 在表为空时写入默认数据（管理员账号、默认设置）；
5. 可选：从旧 JSON 文件一次性导入商家，由 ``migration_info`` 记录保证只执行一次。

任何一步失败都会记录日志并抛出 MigrationError，调用方不能带着
半迁移的表结构继续运行。唯一被吞掉的错误是新增列时的“列已存在”。
"""
import os
import secrets
import string
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Set

from loguru import logger
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection

from config.settings import Settings, settings as default_settings
from .base_crud import BaseCRUD, now_iso
from .business_repos import ORDER_UNIQUE_INDEX, OrderRepository
from .connection import DatabaseConnection
from .dedup import DuplicateOrderResolver
from .entity_repos import MerchantRepository, UserRepository
from .exceptions import MigrationError
from .legacy import load_json_merchants, map_legacy_merchant
from .system_repos import SettingsRepository

JSON_MIGRATION_SOURCE = "json_to_sqlite"

SCHEMA_MIGRATIONS_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  appliedAt TEXT NOT NULL
)
"""

MIGRATION_INFO_SQL = """
CREATE TABLE IF NOT EXISTS migration_info (
  id INTEGER PRIMARY KEY,
  migrated_at TEXT NOT NULL,
  source TEXT NOT NULL
)
"""

ID_SEQUENCES_SQL = """
CREATE TABLE IF NOT EXISTS id_sequences (
  name TEXT PRIMARY KEY,
  value INTEGER NOT NULL
)
"""


def random_api_key(length: int = 30) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


@dataclass
class Migration:
    """一个版本化迁移。apply 接收事务连接。"""
    version: int
    name: str
    apply: Callable[[AsyncConnection], Awaitable[None]]


class MigrationRunner:
    """迁移执行器。

    Attributes:
        repos: 拥有表结构的记录仓库，建表、加列、建索引都以它们的声明为准。
        migrations: 按版本号排列的迁移列表。

    Example:
        ```python
        runner = MigrationRunner(conn, repos, settings_repo, users, merchants)
        applied = await runner.run()
        ```
    """

    def __init__(self, conn: DatabaseConnection, repos: Sequence[BaseCRUD],
                 settings_repo: SettingsRepository, users: UserRepository,
                 merchants: MerchantRepository,
                 config: Optional[Settings] = None) -> None:
        self.conn = conn
        self.repos = list(repos)
        self.settings_repo = settings_repo
        self.users = users
        self.merchants = merchants
        self.config = config or default_settings
        self.resolver = DuplicateOrderResolver(conn)

        self.migrations: List[Migration] = [
            Migration(1, "backfill_updated_at", self._backfill_updated_at),
            Migration(2, "orders_unique_key", self._orders_unique_key),
        ]

    # ================================================================
    # 入口
    # ================================================================

    async def run(self) -> List[int]:
        """执行完整的启动迁移流程。

        Returns:
            本次新执行的迁移版本号列表。

        Raises:
            MigrationError: 任一步骤失败。
        """
        try:
            await self.ensure_tables()
            await self.sync_schema()
            applied = await self.apply_pending()
            await self.seed_defaults()
        except MigrationError:
            raise
        except Exception as e:
            logger.error(f"数据库初始化失败: {e}")
            raise MigrationError(f"数据库初始化失败: {e}") from e
        return applied

    async def ensure_tables(self) -> None:
        """创建所有缺失的表。"""
        async with self.conn.transaction() as tx:
            for sql in (SCHEMA_MIGRATIONS_SQL, MIGRATION_INFO_SQL, ID_SEQUENCES_SQL,
                        self.settings_repo.create_table_sql()):
                await self.conn.execute(sql, conn=tx)
            for repo in self.repos:
                await self.conn.execute(repo.create_table_sql(), conn=tx)

    async def sync_schema(self) -> None:
        """按仓库当前的声明补齐缺失的列和索引。

        每次启动都执行：新增到仓库声明里的列或索引会在下次启动时自动创建，
        已存在的不做任何修改。
        """
        async with self.conn.transaction() as tx:
            await self._add_missing_columns(tx)
            await self._create_query_indexes(tx)
            await self._create_unique_indexes(tx)

    async def applied_versions(self, conn: Optional[AsyncConnection] = None) -> Set[int]:
        rows = await self.conn.fetch_all(
            "SELECT version FROM schema_migrations", conn=conn
        )
        return {row["version"] for row in rows}

    async def apply_pending(self) -> List[int]:
        """执行尚未执行的迁移。"""
        done = await self.applied_versions()
        applied = []
        for migration in self.migrations:
            if migration.version in done:
                continue
            logger.info(f"执行迁移 {migration.version}: {migration.name}")
            try:
                async with self.conn.transaction() as tx:
                    await migration.apply(tx)
                    await self.conn.execute(
                        "INSERT INTO schema_migrations (version, name, appliedAt) "
                        "VALUES (?, ?, ?)",
                        [migration.version, migration.name, now_iso()], conn=tx
                    )
            except Exception as e:
                logger.error(f"迁移 {migration.version} ({migration.name}) 失败: {e}")
                raise MigrationError(
                    f"迁移 {migration.version} ({migration.name}) 失败: {e}",
                    version=migration.version
                ) from e
            applied.append(migration.version)
        return applied

    # ================================================================
    # 迁移步骤
    # ================================================================

    async def add_column(self, table: str, definition: str,
                         conn: AsyncConnection) -> bool:
        """新增列，列已存在时视为成功。

        Returns:
            是否确实新增了列。
        """
        try:
            await self.conn.execute(
                f"ALTER TABLE {table} ADD COLUMN {definition}", conn=conn
            )
        except OperationalError as e:
            if "duplicate column" not in str(e).lower():
                raise
            logger.debug(f"{table} 列已存在，跳过: {definition}")
            return False
        logger.info(f"{table} 新增列: {definition}")
        return True

    async def _add_missing_columns(self, conn: AsyncConnection) -> None:
        for repo in self.repos:
            existing = set(await self.conn.table_columns(repo.table, conn=conn))
            for name in repo.columns:
                if name not in existing:
                    await self.add_column(repo.table, repo.column_definition(name), conn)

    async def _backfill_updated_at(self, conn: AsyncConnection) -> None:
        for repo in self.repos:
            if "updatedAt" not in repo.columns:
                continue
            result = await self.conn.execute(
                f"UPDATE {repo.table} SET updatedAt = createdAt WHERE updatedAt = ''",
                conn=conn
            )
            if result.rowcount:
                logger.info(f"{repo.table} 回填 updatedAt: {result.rowcount} 条")

    async def _create_query_indexes(self, conn: AsyncConnection) -> None:
        for repo in self.repos:
            for _, sql in repo.indexes:
                await self.conn.execute(sql, conn=conn)

    async def _create_unique_indexes(self, conn: AsyncConnection) -> None:
        for repo in self.repos:
            for _, sql in repo.unique_indexes:
                await self.conn.execute(sql, conn=conn)

    async def _orders_unique_key(self, conn: AsyncConnection) -> None:
        if await self.conn.index_exists(ORDER_UNIQUE_INDEX, conn=conn):
            logger.info(f"唯一索引 {ORDER_UNIQUE_INDEX} 已存在，跳过重复订单清理")
            return
        report = await self.resolver.resolve(conn=conn)
        logger.info(
            f"安装唯一索引前清理重复订单: {report.group_count} 组，"
            f"删除 {report.deleted_count} 条"
        )
        await self.conn.execute(OrderRepository.unique_key_sql, conn=conn)

    # ================================================================
    # 默认数据
    # ================================================================

    async def seed_defaults(self) -> None:
        """表为空时写入默认管理员和默认设置，已有数据时不做任何修改。"""
        async with self.conn.transaction() as tx:
            if await self.users.count(conn=tx) == 0:
                await self.users.create(
                    self.config.default_admin_username,
                    self.config.default_admin_password,
                    self.config.default_admin_display_name,
                    conn=tx,
                )
                logger.info(f"已创建默认管理员: {self.config.default_admin_username}")

            if await self.settings_repo.count(conn=tx) == 0:
                defaults = {
                    "apiKey": self.config.default_api_key or random_api_key(),
                    "systemLogs": "true",
                    "multiLogin": "true",
                }
                for key, value in defaults.items():
                    await self.settings_repo.update(key, value, conn=tx)
                logger.info("已写入默认设置")

    # ================================================================
    # 旧 JSON 数据导入
    # ================================================================

    async def import_legacy_json(self, path: Optional[str] = None) -> int:
        """从旧 JSON 文件一次性导入商家。

        已有导入记录、文件不存在或商家表非空时跳过。导入与导入记录
        在同一事务中写入。

        Returns:
            导入的商家数量。
        """
        path = path or self.config.legacy_json_path
        try:
            async with self.conn.transaction() as tx:
                done = await self.conn.fetch_value(
                    "SELECT id FROM migration_info WHERE source = ?",
                    [JSON_MIGRATION_SOURCE], conn=tx
                )
                if done is not None or not os.path.exists(path):
                    return 0
                if await self.merchants.count(conn=tx) > 0:
                    return 0

                rows = load_json_merchants(path)
                for row in rows:
                    await self.merchants.insert(map_legacy_merchant(row), conn=tx)
                await self.conn.execute(
                    "INSERT INTO migration_info (migrated_at, source) VALUES (?, ?)",
                    [now_iso(), JSON_MIGRATION_SOURCE], conn=tx
                )
        except Exception as e:
            logger.error(f"从 JSON 导入商家失败: {e}")
            raise MigrationError(f"从 JSON 导入商家失败: {e}") from e

        logger.info(f"已从 {path} 导入 {len(rows)} 个商家")
        return len(rows)
