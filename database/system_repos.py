"""系统数据仓库 —— 系统级数据的数据访问层。

管理系统辅助数据（键值设置、操作日志），
这些数据用于功能开关、对外接口密钥和业务记录的变更审计。
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncConnection

from .base_crud import BaseCRUD, ColumnKind, FilterKind, has_value, now_iso
from .connection import DatabaseConnection
from .exceptions import InvariantViolationError
from .pagination import QueryBuilder


class OperationActions:
    """操作日志动作类型。"""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    STATUS_CHANGE = "status_change"
    CLEAR = "clear"


class OperatorTypes:
    """操作人类型。"""
    ADMIN = "admin"
    EMPLOYEE = "employee"
    SYSTEM = "system"


def diff_fields(old: Mapping[str, Any], patch: Mapping[str, Any],
                fields: Iterable[str]) -> List[Dict[str, str]]:
    """比较补丁与旧记录的差异。

    只比较补丁中出现的字段，按字符串形式比较。

    Returns:
        ``[{"fieldName", "oldValue", "newValue"}, ...]``，顺序同 ``fields``。
    """
    changes = []
    for name in fields:
        if name not in patch or patch[name] is None:
            continue
        old_value = str(old.get(name, ""))
        new_value = str(patch[name])
        if old_value != new_value:
            changes.append({
                "fieldName": name,
                "oldValue": old_value,
                "newValue": new_value,
            })
    return changes


class SettingsRepository:
    """键值设置 仓库。

    每个键一行，写入即覆盖（后写者胜）。
    """

    table = "settings"

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    def create_table_sql(self) -> str:
        return (
            "CREATE TABLE IF NOT EXISTS settings (\n"
            "  key TEXT PRIMARY KEY,\n"
            "  value TEXT NOT NULL,\n"
            "  updatedAt TEXT NOT NULL\n"
            ")"
        )

    async def get(self, key: str,
                  conn: Optional[AsyncConnection] = None) -> Optional[str]:
        """读取设置值，不存在返回 None。"""
        return await self.conn.fetch_value(
            "SELECT value FROM settings WHERE key = ?", [key], conn=conn
        )

    async def get_all(self, conn: Optional[AsyncConnection] = None
                      ) -> Dict[str, str]:
        rows = await self.conn.fetch_all(
            "SELECT key, value FROM settings ORDER BY key", conn=conn
        )
        return {row["key"]: row["value"] for row in rows}

    async def count(self, conn: Optional[AsyncConnection] = None) -> int:
        return int(await self.conn.fetch_value(
            "SELECT COUNT(*) FROM settings", conn=conn
        ) or 0)

    async def update(self, key: str, value: Any,
                     conn: Optional[AsyncConnection] = None) -> None:
        """写入设置（不存在则插入）。布尔值存为 ``true`` / ``false``。"""
        if isinstance(value, bool):
            value = "true" if value else "false"
        await self.conn.execute(
            "INSERT INTO settings (key, value, updatedAt) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
            "updatedAt = excluded.updatedAt",
            [key, "" if value is None else str(value), now_iso()], conn=conn
        )

    async def update_many(self, values: Mapping[str, Any]) -> None:
        """在同一个事务中批量写入设置，任一失败则全部回滚。"""
        async with self.conn.transaction() as tx:
            for key, value in values.items():
                await self.update(key, value, conn=tx)
        logger.info(f"设置已更新: {', '.join(values)}")


class OperationLogRepository(BaseCRUD):
    """操作日志 仓库。

    日志只追加不修改，按时间清理。
    """

    table = "operation_logs"
    columns = {
        "targetTable": ColumnKind.TEXT,
        "targetId": ColumnKind.TEXT,
        "action": ColumnKind.TEXT,
        "operatorType": ColumnKind.TEXT,
        "operatorId": ColumnKind.TEXT,
        "operatorName": ColumnKind.TEXT,
        "fieldName": ColumnKind.TEXT,
        "oldValue": ColumnKind.TEXT,
        "newValue": ColumnKind.TEXT,
        "changeDetail": ColumnKind.TEXT,
        "remark": ColumnKind.TEXT,
    }
    filters = {
        "targetTable": FilterKind.EXACT,
        "targetId": FilterKind.EXACT,
        "action": FilterKind.EXACT,
        "operatorType": FilterKind.EXACT,
        "operatorId": FilterKind.EXACT,
        "operatorName": FilterKind.LIKE,
    }
    search_fields = ("operatorName", "remark")
    indexes = (
        ("idx_logs_target",
         "CREATE INDEX IF NOT EXISTS idx_logs_target ON operation_logs(targetTable, targetId)"),
        ("idx_logs_created_at",
         "CREATE INDEX IF NOT EXISTS idx_logs_created_at ON operation_logs(createdAt)"),
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def _apply_filters(self, builder: QueryBuilder,
                       filters: Mapping[str, Any]) -> bool:
        applied = super()._apply_filters(builder, filters)
        # 日期范围按 createdAt 字符串比较，结束日期包含当天
        if has_value(filters.get("startDate")):
            builder.where("createdAt >= ?", str(filters["startDate"]))
            applied = True
        if has_value(filters.get("endDate")):
            builder.where("createdAt <= ?", f"{filters['endDate']}T23:59:59.999Z")
            applied = True
        return applied

    async def update(self, entity_id: Any, patch: Mapping[str, Any],
                     conn: Optional[AsyncConnection] = None):
        raise InvariantViolationError("操作日志不可修改")

    async def get_by_target(self, target_table: str, target_id: str,
                            conn: Optional[AsyncConnection] = None
                            ) -> List[Dict[str, Any]]:
        """某条业务记录的全部日志，按时间倒序。"""
        rows = await self.conn.fetch_all(
            "SELECT * FROM operation_logs WHERE targetTable = ? AND targetId = ? "
            "ORDER BY createdAt DESC",
            [target_table, str(target_id)], conn=conn
        )
        return [self._row_to_entity(row) for row in rows]

    async def clean_old(self, days: int = 90) -> int:
        """删除 ``days`` 天之前的日志，返回删除条数。"""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days))
        cutoff_iso = cutoff.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        deleted = await self.delete_where("createdAt < ?", [cutoff_iso])
        logger.info(f"清理 {days} 天前的操作日志: {deleted} 条")
        return deleted
