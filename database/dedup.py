"""重复订单清理。

订单的自然键 ``(shopId, productId, salesDate)`` 早期没有唯一约束，
积累了重复的观测行。清理规则：

1. 按自然键分组，只取行数大于 1 的组；
2. 组内按 id 倒序排列，id 最大的一行（最后插入）保留；
3. 删除组内其余各行；
4. 汇总处理的组数与删除的行数。

id 是严格按插入顺序递增的代理键，时间戳可能在秒级精度上相同，
所以用 id 而不是时间决定保留哪一行。

启动迁移与命令行脚本共用这里的查找和删除逻辑，只在确认与输出方式上不同。
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncConnection

from .business_repos import ORDER_UNIQUE_INDEX, OrderRepository
from .connection import DatabaseConnection


@dataclass
class DuplicateGroup:
    """一组自然键相同的订单。

    Attributes:
        rows: 组内各行的摘要（id、店铺、商品、创建时间、销量），按 id 倒序。
    """
    shop_id: str
    product_id: str
    sales_date: str
    rows: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ids(self) -> List[int]:
        return [row["id"] for row in self.rows]

    @property
    def keep_id(self) -> int:
        return self.rows[0]["id"]

    @property
    def delete_ids(self) -> List[int]:
        return [row["id"] for row in self.rows[1:]]


@dataclass
class DedupReport:
    """清理结果。"""
    groups: List[DuplicateGroup] = field(default_factory=list)
    deleted_count: int = 0

    @property
    def group_count(self) -> int:
        return len(self.groups)

    @property
    def kept_ids(self) -> List[int]:
        return [group.keep_id for group in self.groups]

    @property
    def planned_delete_count(self) -> int:
        return sum(len(group.delete_ids) for group in self.groups)


class DuplicateOrderResolver:
    """重复订单查找与清理。"""

    def __init__(self, conn: DatabaseConnection,
                 table: str = OrderRepository.table) -> None:
        self.conn = conn
        self.table = table

    async def find_groups(self, conn: Optional[AsyncConnection] = None
                          ) -> List[DuplicateGroup]:
        """查找所有重复组，组内各行按 id 倒序。"""
        keys = await self.conn.fetch_all(
            f"SELECT shopId, productId, salesDate, COUNT(*) AS count "
            f"FROM {self.table} "
            f"GROUP BY shopId, productId, salesDate "
            f"HAVING COUNT(*) > 1 "
            f"ORDER BY shopId, productId, salesDate",
            conn=conn
        )

        groups = []
        for key in keys:
            rows = await self.conn.fetch_all(
                f"SELECT id, shopName, productName, createdAt, salesQuantity "
                f"FROM {self.table} "
                f"WHERE shopId = ? AND productId = ? AND salesDate = ? "
                f"ORDER BY id DESC",
                [key["shopId"], key["productId"], key["salesDate"]], conn=conn
            )
            groups.append(DuplicateGroup(
                shop_id=key["shopId"],
                product_id=key["productId"],
                sales_date=key["salesDate"],
                rows=rows,
            ))
        return groups

    async def delete_groups(self, groups: List[DuplicateGroup],
                            conn: AsyncConnection) -> int:
        """删除各组中除保留行以外的行，返回删除的行数。

        必须在调用方的事务连接上执行。
        """
        deleted = 0
        for group in groups:
            ids = group.delete_ids
            if not ids:
                continue
            placeholders = ", ".join("?" for _ in ids)
            result = await self.conn.execute(
                f"DELETE FROM {self.table} WHERE id IN ({placeholders})",
                ids, conn=conn
            )
            deleted += result.rowcount
            logger.debug(
                f"重复订单 {group.shop_id}/{group.product_id}/{group.sales_date}: "
                f"保留 {group.keep_id}，删除 {ids}"
            )
        return deleted

    async def resolve(self, conn: Optional[AsyncConnection] = None) -> DedupReport:
        """查找并清理全部重复订单。

        传入 ``conn`` 时在调用方的事务中执行，否则自行开启事务。
        """
        async def _do(c: AsyncConnection) -> DedupReport:
            groups = await self.find_groups(conn=c)
            report = DedupReport(groups=groups)
            if groups:
                report.deleted_count = await self.delete_groups(groups, c)
                logger.info(
                    f"重复订单清理完成: {report.group_count} 组，"
                    f"删除 {report.deleted_count} 条"
                )
            return report

        if conn is not None:
            return await _do(conn)

        async with self.conn.transaction() as tx:
            return await _do(tx)

    async def count_duplicate_groups(self,
                                     conn: Optional[AsyncConnection] = None) -> int:
        """当前仍存在的重复组数。"""
        value = await self.conn.fetch_value(
            f"SELECT COUNT(*) FROM (SELECT 1 FROM {self.table} "
            f"GROUP BY shopId, productId, salesDate HAVING COUNT(*) > 1)",
            conn=conn
        )
        return int(value or 0)

    async def has_unique_index(self, conn: Optional[AsyncConnection] = None) -> bool:
        return await self.conn.index_exists(ORDER_UNIQUE_INDEX, conn=conn)
