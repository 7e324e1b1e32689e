"""数据库连接与基础设施管理。

本模块负责数据库的底层基础设施，包括：
- 异步引擎创建（SQLite 通过 aiosqlite 驱动，首次使用时才创建）
- 原始 SQL 执行（位置参数 ``?``，由驱动负责参数化）
- 事务管理（提交 / 回滚 / 禁止嵌套）
- 表结构自省（列名、索引）

本模块不包含任何业务逻辑，仅提供数据库基础操作。
"""
import os
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from config.settings import settings
from .exceptions import NestedTransactionError

_in_transaction: ContextVar[bool] = ContextVar("_in_transaction", default=False)


def _use_explicit_begin(engine: AsyncEngine) -> None:
    """让 SQLite 事务从第一条语句开始。

    pysqlite 驱动默认只在第一条 INSERT / UPDATE / DELETE 前隐式 BEGIN，
    DDL 和写之前的读都落在事务之外，回滚无法撤销。关闭驱动自身的事务
    处理，由 SQLAlchemy 在每次开始事务时显式发出 BEGIN。
    """
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


@dataclass
class ExecResult:
    """写操作结果。

    Attributes:
        rowcount: 受影响的行数。
        lastrowid: 最后插入行的自增ID（仅 INSERT 有意义）。
    """
    rowcount: int
    lastrowid: Optional[int]


class DatabaseConnection:
    """数据库连接管理器。

    进程内共享一个实例，引擎在第一次执行 SQL 时才创建。
    所有查询方法都接受可选的 ``conn`` 参数：传入时在该连接（通常是
    ``transaction()`` 给出的事务连接）上执行，否则自行获取连接。

    Attributes:
        database_url: 数据库连接URL（用户配置的原始形式）。

    Example:
        ```python
        conn = DatabaseConnection("sqlite:///data/merchants.db")
        rows = await conn.fetch_all("SELECT * FROM merchants WHERE name LIKE ?", ["%鲜%"])

        async with conn.transaction() as tx:
            await conn.execute("DELETE FROM settings WHERE key = ?", ["apiKey"], conn=tx)
        ```
    """

    def __init__(self, database_url: Optional[str] = None,
                 echo: Optional[bool] = None) -> None:
        """初始化数据库连接（不会立即连接数据库）。

        Args:
            database_url: 数据库连接URL，如果为None则使用settings中的配置。
                        ``sqlite:///`` 会自动改写为 ``sqlite+aiosqlite:///``。
            echo: 是否输出SQL日志，为None时使用settings配置。
        """
        self.database_url: str = database_url or settings.database_url
        self._echo = settings.database_echo if echo is None else echo
        self._engine: Optional[AsyncEngine] = None

    @property
    def async_url(self) -> str:
        """驱动层使用的异步URL。"""
        url = self.database_url
        if url.startswith("sqlite:///"):
            url = url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url

    @property
    def engine(self) -> AsyncEngine:
        """SQLAlchemy 异步引擎（惰性创建）。"""
        if self._engine is None:
            self._ensure_data_dir()
            self._engine = create_async_engine(self.async_url, echo=self._echo)
            if self.async_url.startswith("sqlite"):
                _use_explicit_begin(self._engine)
            logger.debug(f"Database engine created: {self.async_url}")
        return self._engine

    def _ensure_data_dir(self) -> None:
        prefix = "sqlite+aiosqlite:///"
        url = self.async_url
        if not url.startswith(prefix):
            return
        path = url[len(prefix):]
        if not path or path.startswith(":memory:"):
            return
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    # ================================================================
    # 查询执行
    # ================================================================

    async def fetch_all(self, sql: str, params: Sequence[Any] = (),
                        conn: Optional[AsyncConnection] = None
                        ) -> List[Dict[str, Any]]:
        """执行查询并返回全部行（字典形式）。

        Args:
            sql: SQL语句，参数使用 ``?`` 占位。
            params: 位置参数，顺序与占位符一致。
            conn: 外部连接（可选）。

        Returns:
            行字典列表，键为列名。
        """
        async def _query(c: AsyncConnection) -> List[Dict[str, Any]]:
            result = await c.exec_driver_sql(sql, tuple(params))
            return [dict(row) for row in result.mappings().all()]

        if conn is not None:
            return await _query(conn)

        async with self.engine.connect() as c:
            return await _query(c)

    async def fetch_one(self, sql: str, params: Sequence[Any] = (),
                        conn: Optional[AsyncConnection] = None
                        ) -> Optional[Dict[str, Any]]:
        """执行查询并返回第一行，没有结果返回 None。"""
        rows = await self.fetch_all(sql, params, conn=conn)
        return rows[0] if rows else None

    async def fetch_value(self, sql: str, params: Sequence[Any] = (),
                          conn: Optional[AsyncConnection] = None) -> Any:
        """执行查询并返回第一行第一列的值，没有结果返回 None。"""
        async def _query(c: AsyncConnection) -> Any:
            result = await c.exec_driver_sql(sql, tuple(params))
            return result.scalar()

        if conn is not None:
            return await _query(conn)

        async with self.engine.connect() as c:
            return await _query(c)

    async def execute(self, sql: str, params: Sequence[Any] = (),
                      conn: Optional[AsyncConnection] = None) -> ExecResult:
        """执行写操作（INSERT / UPDATE / DELETE / DDL）。

        未传入 ``conn`` 时在独立事务中执行并立即提交。

        Args:
            sql: SQL语句，参数使用 ``?`` 占位。
            params: 位置参数。
            conn: 外部连接（可选）。

        Returns:
            ExecResult，包含受影响行数和自增ID。
        """
        async def _do(c: AsyncConnection) -> ExecResult:
            result = await c.exec_driver_sql(sql, tuple(params))
            return ExecResult(rowcount=result.rowcount,
                              lastrowid=result.lastrowid)

        if conn is not None:
            return await _do(conn)

        async with self.engine.begin() as c:
            return await _do(c)

    # ================================================================
    # 事务
    # ================================================================

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """开启事务，返回事务连接。

        块内正常结束则提交；抛出任何异常则回滚并原样抛出。
        回滚本身失败时记录错误日志，但不会掩盖原始异常。
        不支持嵌套：事务块内再次调用会抛出 NestedTransactionError。

        Yields:
            事务内使用的 AsyncConnection，需要传给各查询方法的 ``conn`` 参数。
        """
        if _in_transaction.get():
            raise NestedTransactionError("不支持嵌套事务")

        token = _in_transaction.set(True)
        try:
            async with self.engine.connect() as conn:
                trans = await conn.begin()
                try:
                    yield conn
                except BaseException:
                    try:
                        await trans.rollback()
                    except Exception as rollback_error:
                        logger.error(f"事务回滚失败: {rollback_error}")
                    raise
                else:
                    await trans.commit()
        finally:
            _in_transaction.reset(token)

    # ================================================================
    # 结构自省
    # ================================================================

    async def table_exists(self, table: str,
                           conn: Optional[AsyncConnection] = None) -> bool:
        """检查表是否存在。"""
        name = await self.fetch_value(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
            [table], conn=conn
        )
        return name is not None

    async def table_columns(self, table: str,
                            conn: Optional[AsyncConnection] = None
                            ) -> List[str]:
        """返回表的现有列名列表（表不存在时为空列表）。"""
        rows = await self.fetch_all(f"PRAGMA table_info({table})", conn=conn)
        return [row["name"] for row in rows]

    async def index_exists(self, index_name: str,
                           conn: Optional[AsyncConnection] = None) -> bool:
        """检查索引是否存在。"""
        name = await self.fetch_value(
            "SELECT name FROM sqlite_master WHERE type = 'index' AND name = ?",
            [index_name], conn=conn
        )
        return name is not None

    async def close(self) -> None:
        """关闭数据库连接，释放引擎资源。

        调用后再次使用会重新创建引擎。
        """
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
