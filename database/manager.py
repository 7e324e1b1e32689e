"""数据库管理器 —— 统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.merchants``、``db.orders`` 等属性直接访问子仓库，
   返回实体字典，适合需要精细控制的场景。

2. **便捷方法**（粗粒度）：
   提供跨仓库的组合操作（如 ``ingest_order()``、``update_with_audit()``、
   ``warehouse_stats()``），适合上层接口直接调用。

使用前必须 ``await db.init()``：建表、执行迁移、写入默认数据，每个实例只执行一次。
"""
import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncConnection

from config.settings import Settings, settings as default_settings
from .base_crud import BaseCRUD
from .business_repos import (
    DISTRIBUTION_PENDING, DISTRIBUTION_PICKED, DISTRIBUTION_STATUS_LABELS,
    WAREHOUSING_STATUS_LABELS, DailyDeliveryRepository, OrderRepository,
    ReturnDetailRepository,
)
from .connection import DatabaseConnection
from .dedup import DuplicateOrderResolver
from .entity_repos import (
    EmployeeRepository, MerchantRepository, ProductRepository, UserRepository,
)
from .migrations import MigrationRunner
from .system_repos import (
    OperationActions, OperationLogRepository, OperatorTypes, SettingsRepository,
    diff_fields,
)

# 审计比较的字段与中文名
AUDITED_FIELDS: Dict[str, Dict[str, str]] = {
    "daily_deliveries": {
        "merchantName": "商家名称",
        "productName": "商品名称",
        "unit": "单位",
        "dispatchQuantity": "派单数量",
        "estimatedSales": "预估销售",
        "surplusQuantity": "昨日余货",
        "distributionStatus": "配货状态",
        "warehousingStatus": "入库状态",
        "entryUser": "录入人",
        "deliveryDate": "日期",
    },
    "return_details": {
        "merchantName": "商家名称",
        "productName": "商品名称",
        "unit": "单位",
        "actualReturnQuantity": "实退数量",
        "goodQuantity": "良品数量",
        "defectiveQuantity": "次品数量",
        "retrievalStatus": "取回状态",
        "retrievedGoodQuantity": "取回良品",
        "retrievedDefectiveQuantity": "取回次品",
        "dataType": "数据类型",
        "entryUser": "录入人",
        "returnDate": "日期",
    },
}

STATUS_FIELDS: Dict[str, Dict[str, str]] = {
    "distributionStatus": {str(k): v for k, v in DISTRIBUTION_STATUS_LABELS.items()},
    "warehousingStatus": {str(k): v for k, v in WAREHOUSING_STATUS_LABELS.items()},
    "retrievalStatus": {"0": "未取回", "1": "已取回"},
}

_DATE_FIELDS = {"daily_deliveries": "deliveryDate", "return_details": "returnDate"}


@dataclass
class Operator:
    """操作人信息，写入操作日志。"""
    type: str = OperatorTypes.ADMIN
    id: str = "unknown"
    name: str = "unknown"


class DatabaseManager:
    """数据库管理器 —— 统一门面。

    Attributes:
        conn: 数据库连接管理器。
        merchants: 商家仓库。
        products: 商品仓库。
        employees: 员工仓库。
        users: 后台账号仓库。
        orders: 销售订单仓库。
        deliveries: 每日配货仓库。
        returns: 退货明细仓库。
        settings: 键值设置仓库。
        logs: 操作日志仓库。
        duplicates: 重复订单清理器。

    Example::

        db = DatabaseManager("sqlite:///data/merchants.db")
        await db.init()

        merchant = await db.merchants.insert({"name": "鲜果铺", "warehouse1": "一仓"})
        page = await db.merchants.get_paginated(1, 20, filters={"name": "鲜果"})

        order, is_update = await db.ingest_order({...})
        await db.close()
    """

    def __init__(self, database_url: Optional[str] = None,
                 config: Optional[Settings] = None) -> None:
        """初始化数据库管理器（不会连接数据库）。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
            config: 配置对象，默认使用全局 settings。
        """
        self.config = config or default_settings

        # 基础设施层
        self.conn = DatabaseConnection(database_url or self.config.database_url,
                                       echo=self.config.database_echo)

        # 实体仓库
        self.merchants = MerchantRepository(self.conn)
        self.products = ProductRepository(self.conn)
        self.employees = EmployeeRepository(self.conn)
        self.users = UserRepository(self.conn)

        # 业务记录仓库
        self.orders = OrderRepository(self.conn)
        self.deliveries = DailyDeliveryRepository(self.conn)
        self.returns = ReturnDetailRepository(self.conn)

        # 系统数据仓库
        self.settings = SettingsRepository(self.conn)
        self.logs = OperationLogRepository(self.conn)

        self.duplicates = DuplicateOrderResolver(self.conn)
        self.migrations = MigrationRunner(
            self.conn, self.record_stores, self.settings, self.users,
            self.merchants, config=self.config
        )

        self._init_lock = asyncio.Lock()
        self._initialized = False

    @property
    def record_stores(self) -> List[BaseCRUD]:
        """所有基于 BaseCRUD 的仓库（拥有各自的表结构）。"""
        return [
            self.merchants, self.products, self.employees, self.users,
            self.orders, self.deliveries, self.returns, self.logs,
        ]

    # ================================================================
    # 基础设施方法
    # ================================================================

    @property
    def database_url(self) -> str:
        """数据库连接URL。"""
        return self.conn.database_url

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def init(self, import_legacy: bool = True) -> List[int]:
        """初始化数据库：建表、迁移、默认数据、旧 JSON 导入。

        并发调用只会执行一次，之后的调用直接返回。

        Args:
            import_legacy: 是否尝试旧 JSON 导入。

        Returns:
            本次执行的迁移版本号（已初始化时为空列表）。

        Raises:
            MigrationError: 迁移失败，此时实例保持未初始化状态。
        """
        if self._initialized:
            return []
        async with self._init_lock:
            if self._initialized:
                return []
            applied = await self.migrations.run()
            if import_legacy:
                await self.migrations.import_legacy_json()
            self._initialized = True
            logger.info(f"数据库初始化完成: {self.database_url}")
            return applied

    async def close(self) -> None:
        """关闭数据库连接。"""
        await self.conn.close()
        self._initialized = False

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncConnection]:
        """开启事务，见 ``DatabaseConnection.transaction``。"""
        async with self.conn.transaction() as tx:
            yield tx

    def _store_for(self, target_table: str) -> BaseCRUD:
        for repo in self.record_stores:
            if repo.table == target_table:
                return repo
        raise ValueError(f"未知的数据表: {target_table}")

    # ================================================================
    # 订单
    # ================================================================

    async def ingest_order(self, data: Mapping[str, Any]
                           ) -> Tuple[Dict[str, Any], bool]:
        """写入入站订单数据。

        先按店铺名称同步商家的多多买菜店铺ID，再按
        ``(shopId, productId, salesDate)`` 插入或更新订单。

        Returns:
            ``(订单, 是否为更新)``。
        """
        order = dict(data)
        for key in ("shopName", "shopId", "productId", "salesDate"):
            order[key] = str(order.get(key, ""))

        await self.merchants.sync_shop_id(order["shopName"], order["shopId"])
        return await self.orders.upsert(order)

    # ================================================================
    # 审计
    # ================================================================

    async def _write_log(self, target_table: str, target_id: Any, action: str,
                         operator: Operator, **fields: Any) -> None:
        # 日志写入失败不影响业务操作
        try:
            await self.logs.insert({
                "targetTable": target_table,
                "targetId": str(target_id),
                "action": action,
                "operatorType": operator.type,
                "operatorId": operator.id,
                "operatorName": operator.name,
                **fields,
            })
        except Exception as e:
            logger.error(f"写入操作日志失败 {target_table}/{target_id}: {e}")

    @staticmethod
    def _record_info(target_table: str, record: Mapping[str, Any]) -> str:
        date_value = record.get(_DATE_FIELDS.get(target_table, ""), "")
        return f"【{record.get('merchantName', '')}】{record.get('productName', '')} ({date_value})"

    async def insert_with_audit(self, target_table: str, data: Mapping[str, Any],
                                operator: Optional[Operator] = None
                                ) -> Dict[str, Any]:
        """新增配货/退货记录并写入 CREATE 日志。"""
        operator = operator or Operator()
        repo = self._store_for(target_table)
        record = await repo.insert(data)
        await self._write_log(
            target_table, record["id"], OperationActions.CREATE, operator,
            changeDetail=json.dumps({"record": record}, ensure_ascii=False),
            remark=f"{self._record_info(target_table, record)} 新增记录",
        )
        return record

    async def update_with_audit(self, target_table: str, entity_id: Any,
                                patch: Mapping[str, Any],
                                operator: Optional[Operator] = None
                                ) -> Optional[Dict[str, Any]]:
        """更新配货/退货记录并写入变更日志。

        有状态字段变化时动作记为 STATUS_CHANGE，否则为 UPDATE；
        没有任何字段变化时不写日志。

        Returns:
            更新后的记录；记录不存在返回 None。
        """
        operator = operator or Operator()
        repo = self._store_for(target_table)
        old = await repo.get_by_id(entity_id)
        if old is None:
            return None

        updated = await repo.update(entity_id, patch)
        changes = diff_fields(old, patch, AUDITED_FIELDS.get(target_table, {}))
        if not changes:
            return updated

        labels = AUDITED_FIELDS.get(target_table, {})
        status_changes = [c for c in changes if c["fieldName"] in STATUS_FIELDS]
        record_info = self._record_info(target_table, old)
        if status_changes:
            action = OperationActions.STATUS_CHANGE
            text = "; ".join(
                f"{labels.get(c['fieldName'], c['fieldName'])}: "
                f"{STATUS_FIELDS[c['fieldName']].get(c['oldValue'], c['oldValue'])} → "
                f"{STATUS_FIELDS[c['fieldName']].get(c['newValue'], c['newValue'])}"
                for c in status_changes
            )
            remark = f"{record_info} {text}"
        else:
            action = OperationActions.UPDATE
            names = ", ".join(labels.get(c["fieldName"], c["fieldName"]) for c in changes)
            remark = f"{record_info} 修改了 {names}"

        first = changes[0]
        await self._write_log(
            target_table, entity_id, action, operator,
            fieldName=first["fieldName"] if len(changes) == 1 else "",
            oldValue=first["oldValue"] if len(changes) == 1 else "",
            newValue=first["newValue"] if len(changes) == 1 else "",
            changeDetail=json.dumps({"changes": changes}, ensure_ascii=False),
            remark=remark,
        )
        return updated

    async def delete_with_audit(self, target_table: str, entity_id: Any,
                                operator: Optional[Operator] = None) -> bool:
        """删除配货/退货记录并写入 DELETE 日志。"""
        operator = operator or Operator()
        repo = self._store_for(target_table)
        old = await repo.get_by_id(entity_id)
        if old is None:
            return False

        deleted = await repo.delete(entity_id)
        if deleted:
            await self._write_log(
                target_table, entity_id, OperationActions.DELETE, operator,
                changeDetail=json.dumps({"record": old}, ensure_ascii=False),
                remark=f"{self._record_info(target_table, old)} 删除记录",
            )
        return deleted

    async def confirm_pick(self, delivery_id: str,
                           operator: Operator) -> Optional[Dict[str, Any]]:
        """员工确认配货，并写入状态变更日志。"""
        updated = await self.deliveries.confirm_pick(delivery_id, operator.id)
        if updated is not None:
            await self._write_log(
                "daily_deliveries", delivery_id, OperationActions.STATUS_CHANGE,
                operator,
                fieldName="distributionStatus",
                oldValue=str(DISTRIBUTION_PENDING),
                newValue=str(DISTRIBUTION_PICKED),
                remark=f"{self._record_info('daily_deliveries', updated)} 确认配货",
            )
        return updated

    # ================================================================
    # 仓库统计
    # ================================================================

    async def warehouse_stats(self, date: str) -> Dict[str, int]:
        """某日的仓库待办数量。

        Returns:
            ``pendingPickCount``（未配货）、``pendingStockCount``（已配货未入库）、
            ``pendingReturnCount``（退货未取回）。
        """
        pending_pick, pending_stock, pending_return = await asyncio.gather(
            self.deliveries.count({"deliveryDate": date,
                                   "distributionStatus": DISTRIBUTION_PENDING}),
            self.deliveries.count({"deliveryDate": date,
                                   "distributionStatus": DISTRIBUTION_PICKED,
                                   "warehousingStatus": 0}),
            self.returns.count({"returnDate": date, "retrievalStatus": 0}),
        )
        return {
            "pendingPickCount": pending_pick,
            "pendingStockCount": pending_stock,
            "pendingReturnCount": pending_return,
        }
