"""旧数据导入。

两种来源：
- 旧版商家库（SQLite，字段 id, createdAt, name, warehouse1, warehouse2,
  defaultWarehouse, groupName, sendMessage）；
- 更早的 JSON 文件（``{"merchants": [...]}``）。

两者都按同一张字段映射表转换为当前商家结构，旧库没有的字段取默认值，
``warehouse2`` 与 ``defaultWarehouse`` 被丢弃。
"""
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from .connection import DatabaseConnection
from .entity_repos import MerchantRepository

# 新字段 -> (旧字段, 旧字段缺失时的默认值)；旧字段为 None 表示旧结构中不存在
LEGACY_MERCHANT_FIELDS: Dict[str, Tuple[Optional[str], Any]] = {
    "id": ("id", None),
    "createdAt": ("createdAt", None),
    "name": ("name", ""),
    "merchantId": ("merchantId", ""),
    "pinduoduoName": ("pinduoduoName", ""),
    "warehouse1": ("warehouse1", ""),
    "groupName": ("groupName", ""),
    "sendMessage": ("sendMessage", False),
    "mentionList": ("mentionList", []),
    "subAccount": (None, ""),
    "pinduoduoPassword": (None, ""),
    "cookie": (None, ""),
    "pinduoduoShopId": (None, ""),
    "sendOrderScreenshot": (None, False),
}


def map_legacy_merchant(old: Mapping[str, Any]) -> Dict[str, Any]:
    """按映射表把旧商家记录转换为当前结构。"""
    merchant: Dict[str, Any] = {}
    for new_name, (old_name, default) in LEGACY_MERCHANT_FIELDS.items():
        value = old.get(old_name) if old_name else None
        if value is None:
            value = list(default) if isinstance(default, list) else default
        merchant[new_name] = value
    return merchant


@dataclass
class ImportOutcome:
    """单条记录的导入结果。status 取值 imported / skipped / failed。"""
    id: str
    name: str
    status: str
    error: str = ""


@dataclass
class ImportReport:
    outcomes: List[ImportOutcome] = field(default_factory=list)

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def imported(self) -> int:
        return self._count("imported")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def failed(self) -> int:
        return self._count("failed")


def load_json_merchants(path: str) -> List[Dict[str, Any]]:
    """读取 JSON 文件中的商家列表，支持 ``{"merchants": [...]}`` 或直接数组。"""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("merchants") or []
    return [item for item in data if isinstance(item, dict)]


async def read_old_merchants(old_db_path: str) -> List[Dict[str, Any]]:
    """读取旧版商家库中的全部商家。

    Raises:
        FileNotFoundError: 旧库文件不存在。
    """
    if not os.path.exists(old_db_path):
        raise FileNotFoundError(old_db_path)
    old_db = DatabaseConnection(f"sqlite:///{old_db_path}")
    try:
        return await old_db.fetch_all("SELECT * FROM merchants")
    finally:
        await old_db.close()


class LegacyMerchantImporter:
    """把旧商家记录导入当前商家表，目标库中已存在的ID跳过。"""

    def __init__(self, merchants: MerchantRepository) -> None:
        self.merchants = merchants

    async def import_rows(self, rows: List[Mapping[str, Any]]) -> ImportReport:
        """逐条导入，单条失败不影响其他记录。"""
        report = ImportReport()
        existing = {
            row["id"] for row in await self.merchants.conn.fetch_all(
                "SELECT id FROM merchants"
            )
        }

        for row in rows:
            merchant = map_legacy_merchant(row)
            outcome = ImportOutcome(id=str(merchant["id"] or ""),
                                    name=str(merchant["name"] or ""),
                                    status="imported")
            if merchant["id"] and merchant["id"] in existing:
                outcome.status = "skipped"
            else:
                try:
                    await self.merchants.insert(merchant)
                    existing.add(merchant["id"])
                except Exception as e:
                    outcome.status = "failed"
                    outcome.error = str(e)
                    logger.error(f"商家导入失败 {outcome.name} ({outcome.id}): {e}")
            report.outcomes.append(outcome)

        logger.info(
            f"旧商家导入完成: 成功 {report.imported}，跳过 {report.skipped}，"
            f"失败 {report.failed}"
        )
        return report
