"""通用 CRUD 基类。

每个记录仓库声明自己的表名、列类型、过滤字段和 ID 策略，由 BaseCRUD
提供统一的插入 / 查询 / 分页 / 合并更新 / 删除 / 计数能力，以及
建表语句与新增列定义（供迁移流程使用）。

存储约定：
- 布尔列存为 0/1，读出时还原为 bool；
- 列表列序列化为 JSON 文本，读出时解析失败返回空列表；
- 可选文本列一律写入空字符串，读出永不为 None。
"""
import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncConnection

from .connection import DatabaseConnection
from .pagination import (
    ORDER_DIRECTIONS, PaginationHelper, PaginationParams, PaginationResult,
    QueryBuilder, run_paginated,
)


class ColumnKind:
    """列类型。"""
    TEXT = "text"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    JSON_LIST = "json_list"


class FilterKind:
    """过滤方式。"""
    LIKE = "like"     # 模糊匹配 %v%
    EXACT = "exact"   # 精确匹配
    FLAG = "flag"     # 布尔标志，按 0/1 精确匹配


class IdStrategy:
    """主键生成策略。"""
    UUID = "uuid"
    TIME = "time"     # 毫秒时间戳字符串，单调递增
    AUTO = "auto"     # 数据库自增整数


_KIND_DEFAULTS = {
    ColumnKind.TEXT: "",
    ColumnKind.INTEGER: 0,
    ColumnKind.BOOLEAN: False,
    ColumnKind.JSON_LIST: [],
}

_last_time_id = 0


def now_iso() -> str:
    """当前 UTC 时间，ISO-8601 毫秒精度，以 ``Z`` 结尾。"""
    return (datetime.now(timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"))


def generate_time_id() -> str:
    """生成基于毫秒时间戳的ID。

    同一毫秒内多次调用时顺延 1，保证进程内严格递增、不重复。
    """
    global _last_time_id
    current = int(time.time() * 1000)
    if current <= _last_time_id:
        current = _last_time_id + 1
    _last_time_id = current
    return str(current)


def parse_json_list(raw: Any, context: str = "") -> List[Any]:
    """解析 JSON 列表列，解析失败或结果不是列表时返回空列表。

    Args:
        raw: 数据库中存储的原始值。
        context: 日志上下文（如 ``merchants.mentionList``）。

    Returns:
        解析后的列表。
    """
    if raw is None or raw == "":
        return []
    if isinstance(raw, list):
        return list(raw)
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.warning(f"JSON 列解析失败 {context}: {e}")
        return []
    if not isinstance(value, list):
        logger.warning(f"JSON 列不是数组 {context}: {raw!r}")
        return []
    return value


def to_flag(value: Any) -> int:
    """把布尔语义的输入转为 0/1。

    支持 bool、数字以及 ``"true"`` / ``"false"`` / ``"1"`` / ``"0"`` 字符串。
    """
    if isinstance(value, str):
        return 1 if value.strip().lower() in ("true", "1", "yes") else 0
    return 1 if value else 0


def has_value(value: Any) -> bool:
    """过滤值是否有效：None 与空字符串视为未提供，0 和 False 视为有效。"""
    return value is not None and value != ""


class BaseCRUD:
    """记录仓库基类。

    子类通过类属性声明表结构：

    Attributes:
        table: 表名。
        columns: 业务列（不含 id、createdAt）到 ColumnKind 的映射，顺序即建表顺序。
        column_defaults: 覆盖列类型默认值，如 ``{"isActive": True}``。
        filters: 分页过滤字段到 FilterKind 的映射。
        search_fields: 通用分页路径下关键词搜索的字段。
        default_order_by: 默认排序列。
        id_strategy: 主键生成策略。
        hidden_fields: 不出现在返回实体中的列（如密码哈希）。
        immutable_fields: 更新时永远忽略的列。
        indexes: 普通索引 ``(索引名, 建索引SQL)`` 列表。
        unique_indexes: 唯一索引，格式同上，由迁移流程单独安装。
    """

    table: str = ""
    columns: Dict[str, str] = {}
    column_defaults: Dict[str, Any] = {}
    filters: Dict[str, str] = {}
    search_fields: Sequence[str] = ()
    default_order_by: str = "createdAt"
    id_strategy: str = IdStrategy.UUID
    hidden_fields: Sequence[str] = ()
    immutable_fields: Sequence[str] = ("id", "createdAt")
    indexes: Sequence[Tuple[str, str]] = ()
    unique_indexes: Sequence[Tuple[str, str]] = ()

    def __init__(self, conn: DatabaseConnection) -> None:
        self.conn = conn

    # ================================================================
    # 表结构
    # ================================================================

    def _now(self) -> str:
        return now_iso()

    def default_for(self, name: str) -> Any:
        """列的默认值。"""
        if name in self.column_defaults:
            return self.column_defaults[name]
        default = _KIND_DEFAULTS[self.columns[name]]
        return list(default) if isinstance(default, list) else default

    def column_definition(self, name: str) -> str:
        """列的 DDL 定义片段（含 NOT NULL 与默认值），建表和新增列共用。"""
        kind = self.columns[name]
        default = self.encode(name, self.default_for(name))
        if kind in (ColumnKind.INTEGER, ColumnKind.BOOLEAN):
            return f"{name} INTEGER NOT NULL DEFAULT {int(default)}"
        escaped = str(default).replace("'", "''")
        return f"{name} TEXT NOT NULL DEFAULT '{escaped}'"

    def create_table_sql(self) -> str:
        """``CREATE TABLE IF NOT EXISTS`` 语句。"""
        if self.id_strategy == IdStrategy.AUTO:
            pk = "id INTEGER PRIMARY KEY AUTOINCREMENT"
        else:
            pk = "id TEXT PRIMARY KEY"
        parts = [pk, "createdAt TEXT NOT NULL"]
        parts.extend(self.column_definition(name) for name in self.columns)
        body = ",\n  ".join(parts)
        return f"CREATE TABLE IF NOT EXISTS {self.table} (\n  {body}\n)"

    @property
    def sortable_columns(self) -> Tuple[str, ...]:
        return ("id", "createdAt") + tuple(self.columns)

    # ================================================================
    # 映射
    # ================================================================

    def encode(self, name: str, value: Any) -> Any:
        """把业务值转换为存储值。"""
        kind = self.columns.get(name, ColumnKind.TEXT)
        if kind == ColumnKind.BOOLEAN:
            return to_flag(value)
        if kind == ColumnKind.INTEGER:
            if value is None or value == "":
                return 0
            return int(value)
        if kind == ColumnKind.JSON_LIST:
            if isinstance(value, str):
                value = parse_json_list(value, f"{self.table}.{name}")
            return json.dumps(list(value or []), ensure_ascii=False)
        return "" if value is None else str(value)

    def decode(self, name: str, value: Any) -> Any:
        """把存储值转换为业务值。"""
        kind = self.columns.get(name, ColumnKind.TEXT)
        if kind == ColumnKind.BOOLEAN:
            return bool(value)
        if kind == ColumnKind.INTEGER:
            return int(value or 0)
        if kind == ColumnKind.JSON_LIST:
            return parse_json_list(value, f"{self.table}.{name}")
        return "" if value is None else value

    def _row_to_entity(self, row: Mapping[str, Any]) -> Dict[str, Any]:
        """行数据转实体字典（驼峰列名为键）。"""
        entity: Dict[str, Any] = {
            "id": row["id"],
            "createdAt": row.get("createdAt") or "",
        }
        for name in self.columns:
            if name in self.hidden_fields:
                continue
            entity[name] = self.decode(name, row.get(name))
        return entity

    # ================================================================
    # 写入钩子
    # ================================================================

    async def _before_insert(self, data: Dict[str, Any],
                             conn: Optional[AsyncConnection]) -> Dict[str, Any]:
        """插入前的校验与转换，子类覆盖以实现唯一性检查等。"""
        return data

    async def _before_update(self, entity_id: Any, existing: Dict[str, Any],
                             patch: Dict[str, Any],
                             conn: Optional[AsyncConnection]) -> Dict[str, Any]:
        """更新前的校验与转换，``patch`` 只含已声明的可更新列。"""
        return patch

    def _new_id(self) -> Any:
        if self.id_strategy == IdStrategy.TIME:
            return generate_time_id()
        if self.id_strategy == IdStrategy.UUID:
            return str(uuid.uuid4())
        return None

    # ================================================================
    # CRUD
    # ================================================================

    async def insert(self, data: Mapping[str, Any],
                     conn: Optional[AsyncConnection] = None) -> Dict[str, Any]:
        """插入记录。

        ``id`` 与 ``createdAt`` 由仓库生成（导入场景可显式传入）；自增主键
        的表永远由数据库分配 ``id``，传入的值会被忽略。未提供的列写入默认值；带 ``updatedAt`` 列的表初始值与 ``createdAt`` 相同。

        Args:
            data: 字段映射，未声明的键会被忽略。
            conn: 外部连接（可选）。

        Returns:
            完整的实体字典（包含生成的字段）。
        """
        data = await self._before_insert(dict(data), conn)

        if self.id_strategy == IdStrategy.AUTO:
            entity_id = None
        else:
            entity_id = data.get("id") or self._new_id()
        created_at = data.get("createdAt") or self._now()

        names: List[str] = []
        values: List[Any] = []
        if entity_id is not None:
            names.append("id")
            values.append(entity_id)
        names.append("createdAt")
        values.append(created_at)

        for name in self.columns:
            if name == "updatedAt":
                value = data.get("updatedAt") or created_at
            elif name in data:
                value = data[name]
            else:
                value = self.default_for(name)
            names.append(name)
            values.append(self.encode(name, value))

        placeholders = ", ".join("?" for _ in names)
        result = await self.conn.execute(
            f"INSERT INTO {self.table} ({', '.join(names)}) VALUES ({placeholders})",
            values, conn=conn
        )
        if entity_id is None:
            entity_id = result.lastrowid

        logger.debug(f"{self.table} 插入记录: {entity_id}")
        return await self.get_by_id(entity_id, conn=conn)

    async def get_by_id(self, entity_id: Any,
                        conn: Optional[AsyncConnection] = None
                        ) -> Optional[Dict[str, Any]]:
        """按ID查询，不存在返回 None。"""
        row = await self.conn.fetch_one(
            f"SELECT * FROM {self.table} WHERE id = ?", [entity_id], conn=conn
        )
        return self._row_to_entity(row) if row else None

    async def get_all(self, order_by: Optional[str] = None,
                      order_direction: str = "DESC",
                      conn: Optional[AsyncConnection] = None
                      ) -> List[Dict[str, Any]]:
        """查询全部记录。"""
        column, direction = self._check_order(order_by, order_direction)
        rows = await self.conn.fetch_all(
            f"SELECT * FROM {self.table} ORDER BY {column} {direction}",
            conn=conn
        )
        return [self._row_to_entity(row) for row in rows]

    async def find_by(self, field_name: str, value: Any,
                      conn: Optional[AsyncConnection] = None
                      ) -> Optional[Dict[str, Any]]:
        """按单列精确匹配查询第一条记录。"""
        if field_name not in self.sortable_columns:
            raise ValueError(f"未知字段: {field_name}")
        row = await self.conn.fetch_one(
            f"SELECT * FROM {self.table} WHERE {field_name} = ? LIMIT 1",
            [self.encode(field_name, value) if field_name in self.columns else value],
            conn=conn
        )
        return self._row_to_entity(row) if row else None

    def _check_order(self, order_by: Optional[str],
                     order_direction: Optional[str]) -> Tuple[str, str]:
        column = order_by or self.default_order_by
        if column not in self.sortable_columns:
            raise ValueError(f"无效的排序字段: {column}")
        direction = (order_direction or "DESC").upper()
        if direction not in ORDER_DIRECTIONS:
            raise ValueError(f"无效的排序方向: {order_direction}")
        return column, direction

    def _apply_filters(self, builder: QueryBuilder,
                       filters: Mapping[str, Any]) -> bool:
        """把过滤条件追加到构建器，返回是否追加了任何条件。"""
        applied = False
        for key, kind in self.filters.items():
            value = filters.get(key)
            if not has_value(value):
                continue
            if kind == FilterKind.LIKE:
                builder.where(f"{key} LIKE ?", f"%{value}%")
            elif kind == FilterKind.FLAG:
                builder.where(f"{key} = ?", to_flag(value))
            else:
                builder.where(f"{key} = ?", value)
            applied = True
        return applied

    def _has_filters(self, filters: Optional[Mapping[str, Any]]) -> bool:
        return bool(filters) and any(has_value(v) for v in filters.values())

    async def get_paginated(self, page: int = 1, page_size: int = 10,
                            filters: Optional[Mapping[str, Any]] = None,
                            order_by: Optional[str] = None,
                            order_direction: str = "DESC",
                            search: Optional[str] = None
                            ) -> PaginationResult[Dict[str, Any]]:
        """分页查询。

        有任何过滤值时直接用 QueryBuilder 按字段拼装条件；否则走
        PaginationHelper 的通用路径（可选关键词搜索 ``search_fields``）。

        Args:
            page: 页码，从 1 开始。
            page_size: 每页条数，1..100。
            filters: 过滤条件，键见 ``filters`` 声明，未声明的键忽略。
            order_by: 排序列，必须是本表已知列。
            order_direction: ``ASC`` / ``DESC``。
            search: 关键词，在 ``search_fields`` 上做 OR 模糊匹配。

        Raises:
            ValueError: 排序列或排序方向无效。
        """
        column, direction = self._check_order(order_by, order_direction)
        params = PaginationHelper.validate_params({
            "page": page,
            "page_size": page_size,
            "search": search,
            "search_fields": list(self.search_fields),
            "order_by": column,
            "order_direction": direction,
        })

        if not self._has_filters(filters):
            return await PaginationHelper.paginate(
                self.conn, self.table, params, self._row_to_entity,
                default_order_by=self.default_order_by
            )

        builder = QueryBuilder(self.table)
        self._apply_filters(builder, filters or {})
        if params.search:
            builder.search(params.search, params.search_fields)
        builder.order_by(column, direction)
        builder.paginate(params.page, params.page_size)
        return await run_paginated(self.conn, builder, params.page,
                                   params.page_size, self._row_to_entity)

    async def count(self, filters: Optional[Mapping[str, Any]] = None,
                    conn: Optional[AsyncConnection] = None) -> int:
        """按过滤条件计数。"""
        builder = QueryBuilder(self.table)
        self._apply_filters(builder, filters or {})
        sql, params = builder.build_count_query()
        return int(await self.conn.fetch_value(sql, params, conn=conn) or 0)

    def updatable_fields(self, patch: Mapping[str, Any]) -> Dict[str, Any]:
        """从补丁中筛出允许更新的已声明列。"""
        return {
            key: value for key, value in patch.items()
            if key in self.columns and key not in self.immutable_fields
        }

    async def update(self, entity_id: Any, patch: Mapping[str, Any],
                     conn: Optional[AsyncConnection] = None
                     ) -> Optional[Dict[str, Any]]:
        """合并更新：只修改补丁中出现的字段。

        ``id``、``createdAt`` 与未声明的键会被忽略；带 ``updatedAt`` 列的表
        自动刷新更新时间。

        Returns:
            重新读取的实体；ID 不存在时返回 None。
        """
        existing = await self.get_by_id(entity_id, conn=conn)
        if existing is None:
            return None

        fields = self.updatable_fields(patch)
        fields = await self._before_update(entity_id, existing, fields, conn)
        if "updatedAt" in self.columns:
            fields["updatedAt"] = self._now()
        if not fields:
            return existing

        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [self.encode(name, value) for name, value in fields.items()]
        values.append(entity_id)
        await self.conn.execute(
            f"UPDATE {self.table} SET {assignments} WHERE id = ?",
            values, conn=conn
        )
        return await self.get_by_id(entity_id, conn=conn)

    async def delete(self, entity_id: Any,
                     conn: Optional[AsyncConnection] = None) -> bool:
        """删除记录，返回是否确实删除了行。"""
        result = await self.conn.execute(
            f"DELETE FROM {self.table} WHERE id = ?", [entity_id], conn=conn
        )
        return result.rowcount > 0

    async def delete_where(self, condition: str, params: Iterable[Any],
                           conn: Optional[AsyncConnection] = None) -> int:
        """按条件批量删除，返回删除行数。"""
        result = await self.conn.execute(
            f"DELETE FROM {self.table} WHERE {condition}", list(params),
            conn=conn
        )
        return result.rowcount
