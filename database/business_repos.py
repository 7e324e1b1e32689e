"""业务记录仓库 —— 核心业务数据的数据访问层。

管理系统中的核心业务记录（商品销售订单、每日配货、退货明细），
这些记录是日常仓储运营产生的数据，按日期查询、按状态组合过滤。
"""
import asyncio
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncConnection

from .base_crud import BaseCRUD, ColumnKind, FilterKind, IdStrategy
from .connection import DatabaseConnection
from .exceptions import InvariantViolationError

ORDER_UNIQUE_INDEX = "idx_orders_unique_key"

DISTRIBUTION_STATUS_LABELS = {0: "未配货", 1: "已配货", 3: "改配"}
WAREHOUSING_STATUS_LABELS = {0: "未入库", 1: "已入库"}
RETRIEVAL_STATUS_LABELS = {0: "未取回", 1: "已取回"}
RETURN_DATA_TYPE_LABELS = {0: "余货", 1: "客退"}

DISTRIBUTION_PENDING = 0
DISTRIBUTION_PICKED = 1
DISTRIBUTION_REASSIGNED = 3


def delivery_key(merchant_name: str, product_name: str, delivery_date: str) -> str:
    """配货记录的查重键：``商家|商品|日期``。"""
    return f"{merchant_name}|{product_name}|{delivery_date}"


class OrderRepository(BaseCRUD):
    """商品销售订单 仓库。

    一条订单是某店铺某商品在某销售日期的一次库存/销量观测，
    ``(shopId, productId, salesDate)`` 至多一行。入站数据通过 ``upsert``
    写入：已存在则原地更新（保留 id 与 createdAt），否则插入。
    同一进程内相同键的 upsert 串行执行。
    """

    table = "product_sales_orders"
    id_strategy = IdStrategy.AUTO
    columns = {
        "shopName": ColumnKind.TEXT,
        "shopId": ColumnKind.TEXT,
        "productId": ColumnKind.TEXT,
        "productName": ColumnKind.TEXT,
        "productImage": ColumnKind.TEXT,
        "salesArea": ColumnKind.TEXT,
        "warehouseInfo": ColumnKind.TEXT,
        "salesDate": ColumnKind.TEXT,
        "salesSpec": ColumnKind.TEXT,
        "totalStock": ColumnKind.INTEGER,
        "estimatedSales": ColumnKind.INTEGER,
        "totalSales": ColumnKind.INTEGER,
        "salesQuantity": ColumnKind.INTEGER,
        "updatedAt": ColumnKind.TEXT,
    }
    filters = {
        "shopName": FilterKind.LIKE,
        "productName": FilterKind.LIKE,
        "salesArea": FilterKind.LIKE,
        "salesDate": FilterKind.EXACT,
        "shopId": FilterKind.EXACT,
        "productId": FilterKind.EXACT,
    }
    search_fields = ("shopName", "productName", "salesArea")
    indexes = (
        ("idx_orders_sales_date",
         "CREATE INDEX IF NOT EXISTS idx_orders_sales_date ON product_sales_orders(salesDate)"),
    )
    unique_key_sql = (
        f"CREATE UNIQUE INDEX IF NOT EXISTS {ORDER_UNIQUE_INDEX} "
        "ON product_sales_orders(shopId, productId, salesDate)"
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)
        # 键 -> [锁, 持有或等待的调用数]
        self._key_locks: Dict[Tuple[str, str, str], list] = {}

    async def get_by_unique_key(self, shop_id: str, product_id: str,
                                sales_date: str,
                                conn: Optional[AsyncConnection] = None
                                ) -> Optional[Dict[str, Any]]:
        """按 (shopId, productId, salesDate) 查询订单。

        索引安装之前可能存在重复行，此时返回 id 最大的一行。
        """
        row = await self.conn.fetch_one(
            "SELECT * FROM product_sales_orders "
            "WHERE shopId = ? AND productId = ? AND salesDate = ? "
            "ORDER BY id DESC LIMIT 1",
            [shop_id, product_id, sales_date], conn=conn
        )
        return self._row_to_entity(row) if row else None

    async def get_by_sales_date(self, sales_date: str,
                                conn: Optional[AsyncConnection] = None
                                ) -> List[Dict[str, Any]]:
        rows = await self.conn.fetch_all(
            "SELECT * FROM product_sales_orders WHERE salesDate = ? ORDER BY id",
            [sales_date], conn=conn
        )
        return [self._row_to_entity(row) for row in rows]

    async def upsert(self, data: Mapping[str, Any],
                     conn: Optional[AsyncConnection] = None
                     ) -> Tuple[Dict[str, Any], bool]:
        """按唯一键插入或更新订单。

        Args:
            data: 订单字段，必须包含 shopId、productId、salesDate。
            conn: 外部连接（可选）。

        Returns:
            ``(订单, 是否为更新)``。
        """
        key = (str(data["shopId"]), str(data["productId"]), str(data["salesDate"]))

        entry = self._key_locks.get(key)
        if entry is None:
            entry = self._key_locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                existing = await self.get_by_unique_key(*key, conn=conn)
                if existing is not None:
                    order = await self.update(existing["id"], data, conn=conn)
                    logger.debug(f"订单已更新: {key} -> {existing['id']}")
                    return order, True
                order = await self.insert(data, conn=conn)
                logger.debug(f"订单已创建: {key} -> {order['id']}")
                return order, False
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._key_locks.pop(key, None)


class DailyDeliveryRepository(BaseCRUD):
    """每日配货 仓库。

    配货状态：0 未配货、1 已配货、3 改配；入库状态：0 未入库、1 已入库。
    ``operators`` 记录参与配货的员工编号列表。
    """

    table = "daily_deliveries"
    columns = {
        "merchantName": ColumnKind.TEXT,
        "productName": ColumnKind.TEXT,
        "unit": ColumnKind.TEXT,
        "dispatchQuantity": ColumnKind.INTEGER,
        "estimatedSales": ColumnKind.INTEGER,
        "surplusQuantity": ColumnKind.INTEGER,
        "distributionStatus": ColumnKind.INTEGER,
        "warehousingStatus": ColumnKind.INTEGER,
        "entryUser": ColumnKind.TEXT,
        "operators": ColumnKind.JSON_LIST,
        "deliveryDate": ColumnKind.TEXT,
        "updatedAt": ColumnKind.TEXT,
    }
    filters = {
        "merchantName": FilterKind.LIKE,
        "productName": FilterKind.LIKE,
        "entryUser": FilterKind.LIKE,
        "deliveryDate": FilterKind.EXACT,
        "distributionStatus": FilterKind.EXACT,
        "warehousingStatus": FilterKind.EXACT,
    }
    search_fields = ("merchantName", "productName")
    indexes = (
        ("idx_deliveries_date_status",
         "CREATE INDEX IF NOT EXISTS idx_deliveries_date_status "
         "ON daily_deliveries(deliveryDate, distributionStatus, warehousingStatus)"),
        ("idx_deliveries_merchant_product",
         "CREATE INDEX IF NOT EXISTS idx_deliveries_merchant_product "
         "ON daily_deliveries(merchantName, productName, deliveryDate)"),
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    async def delete_by_date(self, delivery_date: str,
                             conn: Optional[AsyncConnection] = None) -> int:
        """删除某日的全部配货记录，返回删除条数。"""
        return await self.delete_where("deliveryDate = ?", [delivery_date], conn=conn)

    async def get_undelivered(self, delivery_date: str) -> List[Dict[str, Any]]:
        """某日未配货的记录。"""
        rows = await self.conn.fetch_all(
            "SELECT * FROM daily_deliveries "
            "WHERE deliveryDate = ? AND distributionStatus = ? "
            "ORDER BY merchantName, productName",
            [delivery_date, DISTRIBUTION_PENDING]
        )
        return [self._row_to_entity(row) for row in rows]

    async def get_unstocked(self, delivery_date: str) -> List[Dict[str, Any]]:
        """某日已配货但未入库的记录。"""
        rows = await self.conn.fetch_all(
            "SELECT * FROM daily_deliveries "
            "WHERE deliveryDate = ? AND distributionStatus = ? AND warehousingStatus = 0 "
            "ORDER BY merchantName, productName",
            [delivery_date, DISTRIBUTION_PICKED]
        )
        return [self._row_to_entity(row) for row in rows]

    async def check_exist(self, items: Iterable[Mapping[str, Any]]) -> Set[str]:
        """批量查重。

        Args:
            items: 每项包含 merchantName、productName、deliveryDate。

        Returns:
            已存在记录的查重键集合，键格式见 ``delivery_key``。
        """
        items = list(items)
        if not items:
            return set()

        dates = sorted({str(item.get("deliveryDate", "")) for item in items})
        placeholders = ", ".join("?" for _ in dates)
        rows = await self.conn.fetch_all(
            "SELECT merchantName, productName, deliveryDate FROM daily_deliveries "
            f"WHERE deliveryDate IN ({placeholders})",
            dates
        )
        stored = {
            delivery_key(row["merchantName"], row["productName"], row["deliveryDate"])
            for row in rows
        }
        wanted = {
            delivery_key(item.get("merchantName", ""), item.get("productName", ""),
                         item.get("deliveryDate", ""))
            for item in items
        }
        return stored & wanted

    async def confirm_pick(self, delivery_id: str, operator: str,
                           conn: Optional[AsyncConnection] = None
                           ) -> Optional[Dict[str, Any]]:
        """确认配货：记录操作员并把状态置为已配货。

        Args:
            delivery_id: 配货记录ID。
            operator: 操作员员工编号，已在列表中则不重复追加。

        Returns:
            更新后的记录；记录不存在返回 None。

        Raises:
            InvariantViolationError: 记录已经是已配货状态。
        """
        delivery = await self.get_by_id(delivery_id, conn=conn)
        if delivery is None:
            return None
        if delivery["distributionStatus"] == DISTRIBUTION_PICKED:
            raise InvariantViolationError("该记录已配货，无需重复操作")

        operators = list(delivery["operators"])
        if operator and operator not in operators:
            operators.append(operator)
        return await self.update(delivery_id, {
            "operators": operators,
            "distributionStatus": DISTRIBUTION_PICKED,
        }, conn=conn)


class ReturnDetailRepository(BaseCRUD):
    """退货明细 仓库。

    数据类型：0 余货、1 客退；取回状态：0 未取回、1 已取回。
    """

    table = "return_details"
    columns = {
        "merchantName": ColumnKind.TEXT,
        "productName": ColumnKind.TEXT,
        "unit": ColumnKind.TEXT,
        "actualReturnQuantity": ColumnKind.INTEGER,
        "goodQuantity": ColumnKind.INTEGER,
        "defectiveQuantity": ColumnKind.INTEGER,
        "retrievalStatus": ColumnKind.INTEGER,
        "retrievedGoodQuantity": ColumnKind.INTEGER,
        "retrievedDefectiveQuantity": ColumnKind.INTEGER,
        "dataType": ColumnKind.INTEGER,
        "entryUser": ColumnKind.TEXT,
        "operators": ColumnKind.JSON_LIST,
        "returnDate": ColumnKind.TEXT,
        "updatedAt": ColumnKind.TEXT,
    }
    filters = {
        "merchantName": FilterKind.LIKE,
        "productName": FilterKind.LIKE,
        "entryUser": FilterKind.LIKE,
        "returnDate": FilterKind.EXACT,
        "retrievalStatus": FilterKind.EXACT,
        "dataType": FilterKind.EXACT,
    }
    search_fields = ("merchantName", "productName")
    indexes = (
        ("idx_returns_date_status",
         "CREATE INDEX IF NOT EXISTS idx_returns_date_status "
         "ON return_details(returnDate, retrievalStatus)"),
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    async def delete_by_date(self, return_date: str,
                             conn: Optional[AsyncConnection] = None) -> int:
        """删除某日的全部退货记录，返回删除条数。"""
        return await self.delete_where("returnDate = ?", [return_date], conn=conn)
