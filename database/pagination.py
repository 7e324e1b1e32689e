"""分页查询与 SQL 构建工具。

提供两层能力：

1. ``QueryBuilder``：针对单张表拼装参数化的 SELECT 语句（WHERE、多字段
   搜索、排序、LIMIT/OFFSET），并同步生成条件完全一致的 COUNT 语句。
   构建器不了解任何表结构，字段名必须来自代码中的常量，绝不能来自请求输入；
   用户输入只能作为参数值传入。
2. ``PaginationHelper``：把原始的 page / pageSize / 排序参数规范化，并为
   “整表 + 可选多字段关键词搜索” 这一通用场景执行分页查询。
"""
import asyncio
import math
import re
from dataclasses import dataclass, field
from typing import (
    Any, Callable, Dict, Generic, List, Mapping, Optional, Sequence, Tuple,
    TypeVar,
)

from .connection import DatabaseConnection

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
ORDER_DIRECTIONS = ("ASC", "DESC")

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def normalize_direction(direction: Optional[str],
                        default: str = "DESC") -> str:
    """把排序方向规范为 ``ASC`` / ``DESC``，无法识别时返回默认值。"""
    if isinstance(direction, str) and direction.upper() in ORDER_DIRECTIONS:
        return direction.upper()
    return default


class QueryBuilder:
    """SQL 查询构建器。

    所有配置方法都返回自身，可以链式调用；``build_query()`` 与
    ``build_count_query()`` 分别返回 ``(sql, params)``。

    Example::

        builder = (
            QueryBuilder("merchants")
            .where("warehouse1 LIKE ?", "%一仓%")
            .search("鲜果", ["name", "groupName"])
            .order_by("createdAt", "DESC")
            .paginate(2, 20)
        )
        sql, params = builder.build_query()
        count_sql, count_params = builder.build_count_query()
    """

    def __init__(self, table: str) -> None:
        self.table = table
        self._select_fields = "*"
        self._conditions: List[str] = []
        self._params: List[Any] = []
        self._order_clause = ""
        self._limit: Optional[int] = None
        self._offset: Optional[int] = None

    def select(self, fields: str) -> "QueryBuilder":
        """覆盖默认的 ``*`` 查询字段。"""
        self._select_fields = fields
        return self

    def where(self, condition: str, *params: Any) -> "QueryBuilder":
        """追加一个 AND 条件。

        Args:
            condition: 条件SQL片段，参数使用 ``?`` 占位。
            *params: 条件参数，按占位符顺序排列。
        """
        self._conditions.append(condition)
        self._params.extend(params)
        return self

    def search(self, keyword: Optional[str],
               fields: Sequence[str]) -> "QueryBuilder":
        """追加多字段模糊搜索条件（字段之间为 OR，整体用括号包裹）。

        关键词或字段列表为空时不做任何处理。
        """
        if not keyword or not fields:
            return self

        term = f"%{keyword}%"
        group = " OR ".join(f"{name} LIKE ?" for name in fields)
        self._conditions.append(f"({group})")
        self._params.extend(term for _ in fields)
        return self

    def order_by(self, field_name: str, direction: str = "ASC") -> "QueryBuilder":
        """设置单字段排序，会覆盖之前的排序设置。

        Raises:
            ValueError: 排序方向不是 ASC / DESC。
        """
        if not isinstance(direction, str) or direction.upper() not in ORDER_DIRECTIONS:
            raise ValueError(f"无效的排序方向: {direction}")
        self._order_clause = f"ORDER BY {field_name} {direction.upper()}"
        return self

    def order_by_raw(self, raw_order_by: str) -> "QueryBuilder":
        """设置原始排序子句（支持多字段），会覆盖之前的排序设置。"""
        self._order_clause = f"ORDER BY {raw_order_by}"
        return self

    def paginate(self, page: int, page_size: int) -> "QueryBuilder":
        """设置分页。page 与 page_size 需由调用方保证 >= 1。"""
        self._limit = int(page_size)
        self._offset = (int(page) - 1) * int(page_size)
        return self

    def _where_clause(self) -> str:
        if not self._conditions:
            return ""
        return f" WHERE {' AND '.join(self._conditions)}"

    def build_query(self) -> Tuple[str, List[Any]]:
        """构建完整的查询SQL。"""
        sql = f"SELECT {self._select_fields} FROM {self.table}{self._where_clause()}"
        if self._order_clause:
            sql += f" {self._order_clause}"
        if self._limit is not None:
            sql += f" LIMIT {self._limit}"
        if self._offset is not None:
            sql += f" OFFSET {self._offset}"
        return sql, list(self._params)

    def build_count_query(self) -> Tuple[str, List[Any]]:
        """构建 COUNT 查询SQL，条件与 build_query 完全一致，不含排序与分页。"""
        sql = f"SELECT COUNT(*) AS count FROM {self.table}{self._where_clause()}"
        return sql, list(self._params)


@dataclass
class PaginationParams:
    """分页查询参数。"""
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    search: Optional[str] = None
    search_fields: List[str] = field(default_factory=list)
    order_by: Optional[str] = None
    order_direction: str = "DESC"


@dataclass
class PaginationResult(Generic[T]):
    """分页查询结果。"""
    items: List[T]
    total: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> Dict[str, Any]:
        """转换为对外的响应结构（驼峰键名）。"""
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "pageSize": self.page_size,
            "totalPages": self.total_pages,
        }


def total_pages_for(total: int, page_size: int) -> int:
    """总页数 = ceil(total / page_size)。"""
    return math.ceil(total / page_size) if page_size else 0


def create_pagination_response(items: List[T], total: int, page: int,
                               page_size: int) -> PaginationResult[T]:
    """根据已查询好的数据组装分页结果。"""
    return PaginationResult(
        items=items,
        total=total,
        page=page,
        page_size=page_size,
        total_pages=total_pages_for(total, page_size),
    )


def _to_int(value: Any) -> Optional[int]:
    """取开头的整数部分（``"12abc"`` -> 12，``"3.5"`` -> 3），没有数字返回 None。"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


class PaginationHelper:
    """通用分页查询工具类。"""

    @staticmethod
    def validate_params(raw: Mapping[str, Any]) -> PaginationParams:
        """校验并规范化分页参数。

        - page 最小为 1；
        - page_size 限制在 [1, 100]，缺省或为 0 时取 10；
        - order_direction 无法识别时取 DESC。

        Args:
            raw: 原始参数，支持 ``page``、``page_size``（或 ``pageSize``）、
                ``search``、``search_fields``（或 ``searchFields``）、
                ``order_by``（或 ``orderBy``）、``order_direction``
                （或 ``orderDirection``）。
        """
        def pick(*keys: str) -> Any:
            for key in keys:
                if raw.get(key) is not None:
                    return raw[key]
            return None

        page = _to_int(pick("page")) or 1
        page_size = _to_int(pick("page_size", "pageSize")) or DEFAULT_PAGE_SIZE

        return PaginationParams(
            page=max(1, page),
            page_size=min(MAX_PAGE_SIZE, max(1, page_size)),
            search=pick("search") or None,
            search_fields=list(pick("search_fields", "searchFields") or []),
            order_by=pick("order_by", "orderBy") or None,
            order_direction=normalize_direction(
                pick("order_direction", "orderDirection")
            ),
        )

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> PaginationParams:
        """从URL查询参数（不可信字符串）创建分页参数。

        非数字的 page / pageSize 分别回落为 1 / 10；``searchFields``
        可以是单个字符串或字符串列表。
        """
        search_fields = query.get("searchFields")
        if isinstance(search_fields, str):
            search_fields = [search_fields]

        return cls.validate_params({
            "page": _to_int(query.get("page")) or 1,
            "page_size": _to_int(query.get("pageSize")) or DEFAULT_PAGE_SIZE,
            "search": query.get("search") or None,
            "search_fields": search_fields or [],
            "order_by": query.get("orderBy") or None,
            "order_direction": query.get("orderDirection"),
        })

    @staticmethod
    async def paginate(db: DatabaseConnection, table: str,
                       params: PaginationParams,
                       row_mapper: Callable[[Dict[str, Any]], T],
                       default_order_by: str = "createdAt"
                       ) -> PaginationResult[T]:
        """执行分页查询。

        SELECT 与 COUNT 互不依赖，并发执行。

        Args:
            db: 数据库连接。
            table: 表名（代码常量）。
            params: 已校验的分页参数；order_by 必须是已知列名。
            row_mapper: 行数据映射函数。
            default_order_by: 未指定排序字段时使用的列。

        Returns:
            分页结果。
        """
        builder = QueryBuilder(table)

        if params.search and params.search_fields:
            builder.search(params.search, params.search_fields)

        builder.order_by(
            params.order_by or default_order_by,
            normalize_direction(params.order_direction),
        )
        builder.paginate(params.page, params.page_size)

        return await run_paginated(db, builder, params.page,
                                   params.page_size, row_mapper)


async def run_paginated(db: DatabaseConnection, builder: QueryBuilder,
                        page: int, page_size: int,
                        row_mapper: Callable[[Dict[str, Any]], T]
                        ) -> PaginationResult[T]:
    """并发执行构建器的 SELECT 与 COUNT，并组装分页结果。"""
    sql, params = builder.build_query()
    count_sql, count_params = builder.build_count_query()

    rows, total = await asyncio.gather(
        db.fetch_all(sql, params),
        db.fetch_value(count_sql, count_params),
    )

    return create_pagination_response(
        [row_mapper(row) for row in rows], int(total or 0), page, page_size
    )
