"""实体仓库 —— 基础实体的数据访问层。

管理系统中的基础实体（商家、商品、员工、后台账号），
这些实体被订单、配货、退货等业务记录引用。

每个仓库继承 BaseCRUD 获得通用能力，并添加领域特定的查询方法与不变量校验。
"""
import re
import secrets
import string
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncConnection

from .base_crud import BaseCRUD, ColumnKind, FilterKind, IdStrategy, to_flag
from .connection import DatabaseConnection
from .exceptions import ConflictError, InvariantViolationError
from .security import hash_password, verify_and_upgrade

EMPLOYEE_NUMBER_FLOOR = 10000
EMPLOYEE_NUMBER_SEQUENCE = "employee_number"
LOGIN_CODE_LENGTH = 8
LOGIN_CODE_ALPHABET = string.ascii_uppercase + string.digits
LOGIN_CODE_MAX_ATTEMPTS = 10

_TRAILING_DIGITS = re.compile(r"(\d+)$")


def trailing_number(value: str) -> Optional[int]:
    """提取字符串末尾的连续数字，没有则返回 None。"""
    match = _TRAILING_DIGITS.search(value or "")
    return int(match.group(1)) if match else None


def random_login_code(length: int = LOGIN_CODE_LENGTH) -> str:
    """生成随机登录码（大写字母和数字）。"""
    return "".join(secrets.choice(LOGIN_CODE_ALPHABET) for _ in range(length))


class MerchantRepository(BaseCRUD):
    """商家 仓库。

    商家通过 ``pinduoduoShopId`` 与订单中的 ``shopId`` 关联，
    通过 ``id`` 被商品的 ``merchantId`` 引用。
    """

    table = "merchants"
    id_strategy = IdStrategy.TIME
    columns = {
        "name": ColumnKind.TEXT,
        "merchantId": ColumnKind.TEXT,
        "pinduoduoName": ColumnKind.TEXT,
        "pinduoduoShopId": ColumnKind.TEXT,
        "warehouse1": ColumnKind.TEXT,
        "groupName": ColumnKind.TEXT,
        "sendMessage": ColumnKind.BOOLEAN,
        "sendOrderScreenshot": ColumnKind.BOOLEAN,
        "mentionList": ColumnKind.JSON_LIST,
        "subAccount": ColumnKind.TEXT,
        "pinduoduoPassword": ColumnKind.TEXT,
        "cookie": ColumnKind.TEXT,
        "updatedAt": ColumnKind.TEXT,
    }
    filters = {
        "name": FilterKind.LIKE,
        "merchantId": FilterKind.LIKE,
        "pinduoduoName": FilterKind.LIKE,
        "warehouse1": FilterKind.LIKE,
        "groupName": FilterKind.LIKE,
        "sendMessage": FilterKind.FLAG,
    }
    search_fields = ("name", "merchantId", "pinduoduoName", "groupName")
    indexes = (
        ("idx_merchants_name", "CREATE INDEX IF NOT EXISTS idx_merchants_name ON merchants(name)"),
        ("idx_merchants_shop_id",
         "CREATE INDEX IF NOT EXISTS idx_merchants_shop_id ON merchants(pinduoduoShopId)"),
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    async def get_by_name(self, name: str,
                          conn: Optional[AsyncConnection] = None
                          ) -> Optional[Dict[str, Any]]:
        """按商家名称精确查询。"""
        return await self.find_by("name", name, conn=conn)

    async def get_by_pinduoduo_shop_id(self, shop_id: str,
                                       conn: Optional[AsyncConnection] = None
                                       ) -> Optional[Dict[str, Any]]:
        """按多多买菜店铺ID查询。空ID直接返回 None。"""
        if not shop_id:
            return None
        return await self.find_by("pinduoduoShopId", shop_id, conn=conn)

    async def sync_shop_id(self, shop_name: str, shop_id: str,
                           conn: Optional[AsyncConnection] = None) -> bool:
        """按店铺名称找到商家，店铺ID不同则更新。

        Returns:
            是否发生了更新。
        """
        merchant = await self.get_by_name(shop_name, conn=conn)
        if merchant is None:
            logger.info(f"未找到店铺对应的商家: {shop_name}")
            return False
        if merchant["pinduoduoShopId"] == shop_id:
            return False
        await self.update(merchant["id"], {"pinduoduoShopId": shop_id}, conn=conn)
        logger.info(f"商家 {shop_name} 店铺ID已更新为 {shop_id}")
        return True


class ProductRepository(BaseCRUD):
    """商品 仓库。

    商品属于唯一的商家；上游商品ID（pinduoduoProductId）只在同一商家内唯一。
    """

    table = "products"
    id_strategy = IdStrategy.TIME
    columns = {
        "pinduoduoProductId": ColumnKind.TEXT,
        "pinduoduoProductImage": ColumnKind.TEXT,
        "productName": ColumnKind.TEXT,
        "pinduoduoProductName": ColumnKind.TEXT,
        "productSpec": ColumnKind.TEXT,
        "merchantId": ColumnKind.TEXT,
        "updatedAt": ColumnKind.TEXT,
    }
    filters = {
        "productName": FilterKind.LIKE,
        "pinduoduoProductName": FilterKind.LIKE,
        "pinduoduoProductId": FilterKind.LIKE,
        "merchantId": FilterKind.EXACT,
    }
    search_fields = ("productName", "pinduoduoProductName", "pinduoduoProductId")
    indexes = (
        ("idx_products_merchant",
         "CREATE INDEX IF NOT EXISTS idx_products_merchant ON products(merchantId, pinduoduoProductId)"),
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    async def _find_in_merchant(self, merchant_id: str, product_id: str,
                                exclude_id: Optional[str] = None,
                                conn: Optional[AsyncConnection] = None
                                ) -> Optional[Dict[str, Any]]:
        sql = ("SELECT * FROM products WHERE merchantId = ? "
               "AND pinduoduoProductId = ?")
        params: List[Any] = [merchant_id, product_id]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        row = await self.conn.fetch_one(sql + " LIMIT 1", params, conn=conn)
        return self._row_to_entity(row) if row else None

    async def _before_insert(self, data: Dict[str, Any],
                             conn: Optional[AsyncConnection]) -> Dict[str, Any]:
        product_id = data.get("pinduoduoProductId") or ""
        if product_id and await self._find_in_merchant(
                data.get("merchantId") or "", product_id, conn=conn):
            raise ConflictError("pinduoduoProductId", "该商家下已存在相同的商品ID")
        return data

    async def _before_update(self, entity_id: Any, existing: Dict[str, Any],
                             patch: Dict[str, Any],
                             conn: Optional[AsyncConnection]) -> Dict[str, Any]:
        product_id = patch.get("pinduoduoProductId", existing["pinduoduoProductId"])
        merchant_id = patch.get("merchantId", existing["merchantId"])
        if product_id and await self._find_in_merchant(
                merchant_id, product_id, exclude_id=entity_id, conn=conn):
            raise ConflictError("pinduoduoProductId", "该商家下已存在相同的商品ID")
        return patch

    async def get_by_merchant(self, merchant_id: str,
                              conn: Optional[AsyncConnection] = None
                              ) -> List[Dict[str, Any]]:
        """查询商家下的全部商品。"""
        rows = await self.conn.fetch_all(
            "SELECT * FROM products WHERE merchantId = ? ORDER BY createdAt DESC",
            [merchant_id], conn=conn
        )
        return [self._row_to_entity(row) for row in rows]

    async def get_by_pinduoduo_id_and_shop_id(
            self, product_id: str, shop_id: str,
            conn: Optional[AsyncConnection] = None) -> Optional[Dict[str, Any]]:
        """按上游商品ID和店铺ID查询商品（店铺ID先解析为商家）。"""
        row = await self.conn.fetch_one(
            "SELECT p.* FROM products p "
            "JOIN merchants m ON p.merchantId = m.id "
            "WHERE p.pinduoduoProductId = ? AND m.pinduoduoShopId = ? LIMIT 1",
            [product_id, shop_id], conn=conn
        )
        return self._row_to_entity(row) if row else None


class EmployeeRepository(BaseCRUD):
    """员工 仓库。

    员工编号、登录码唯一，手机号非空时唯一。员工编号和登录码由系统生成：
    编号 = 姓名拼音首字母 + 数字后缀，后缀取已有编号末尾数字的最大值与
    持久化高水位中的较大者加 1，删除员工后也不会复用。
    密码哈希只在仓库内部使用，不会出现在返回的实体中。
    """

    table = "employees"
    columns = {
        "employeeNumber": ColumnKind.TEXT,
        "name": ColumnKind.TEXT,
        "realName": ColumnKind.TEXT,
        "phone": ColumnKind.TEXT,
        "password": ColumnKind.TEXT,
        "loginCode": ColumnKind.TEXT,
        "lastLoginTime": ColumnKind.TEXT,
        "updatedAt": ColumnKind.TEXT,
    }
    filters = {
        "name": FilterKind.LIKE,
        "employeeNumber": FilterKind.LIKE,
        "realName": FilterKind.LIKE,
        "phone": FilterKind.LIKE,
    }
    search_fields = ("name", "employeeNumber", "realName")
    hidden_fields = ("password",)
    immutable_fields = ("id", "createdAt", "lastLoginTime")

    # 唯一约束以索引形式安装，手机号为空时不参与唯一性判断
    unique_indexes = (
        ("idx_employees_number",
         "CREATE UNIQUE INDEX IF NOT EXISTS idx_employees_number ON employees(employeeNumber)"),
        ("idx_employees_login_code",
         "CREATE UNIQUE INDEX IF NOT EXISTS idx_employees_login_code ON employees(loginCode)"),
        ("idx_employees_phone",
         "CREATE UNIQUE INDEX IF NOT EXISTS idx_employees_phone ON employees(phone) "
         "WHERE phone != ''"),
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    async def _exists(self, field_name: str, value: str,
                      exclude_id: Optional[str],
                      conn: Optional[AsyncConnection]) -> bool:
        sql = f"SELECT id FROM employees WHERE {field_name} = ?"
        params: List[Any] = [value]
        if exclude_id is not None:
            sql += " AND id != ?"
            params.append(exclude_id)
        return await self.conn.fetch_value(sql + " LIMIT 1", params,
                                           conn=conn) is not None

    async def _check_unique(self, data: Dict[str, Any],
                            exclude_id: Optional[str],
                            conn: Optional[AsyncConnection]) -> None:
        if data.get("employeeNumber") and await self._exists(
                "employeeNumber", data["employeeNumber"], exclude_id, conn):
            raise ConflictError("employeeNumber", "员工编号已存在")
        if data.get("loginCode") and await self._exists(
                "loginCode", data["loginCode"], exclude_id, conn):
            raise ConflictError("loginCode", "登录码已存在")
        if data.get("phone") and await self._exists(
                "phone", data["phone"], exclude_id, conn):
            raise ConflictError("phone", "手机号已被注册")

    async def _before_insert(self, data: Dict[str, Any],
                             conn: Optional[AsyncConnection]) -> Dict[str, Any]:
        if not data.get("employeeNumber"):
            suffix = await self.get_next_employee_number_suffix(conn=conn)
            data["employeeNumber"] = f"{data.get('initials', '')}{suffix}"
        if not data.get("loginCode"):
            data["loginCode"] = await self.generate_login_code(conn=conn)
        await self._check_unique(data, None, conn)
        if data.get("password"):
            data["password"] = hash_password(data["password"])
        return data

    async def _before_update(self, entity_id: Any, existing: Dict[str, Any],
                             patch: Dict[str, Any],
                             conn: Optional[AsyncConnection]) -> Dict[str, Any]:
        await self._check_unique(patch, entity_id, conn)
        if "password" in patch:
            if patch["password"]:
                patch["password"] = hash_password(patch["password"])
            else:
                del patch["password"]
        return patch

    async def insert(self, data: Dict[str, Any],
                     conn: Optional[AsyncConnection] = None) -> Dict[str, Any]:
        """插入员工。

        未提供员工编号或登录码时自动生成（可传 ``initials`` 作为编号前缀）。

        Raises:
            ConflictError: 员工编号、登录码或手机号已存在。
        """
        employee = await super().insert(data, conn=conn)
        await self._record_number(employee["employeeNumber"], conn)
        return employee

    async def update(self, entity_id: Any, patch: Dict[str, Any],
                     conn: Optional[AsyncConnection] = None
                     ) -> Optional[Dict[str, Any]]:
        """更新员工，唯一字段与其他员工比对，密码为空时保持不变。"""
        employee = await super().update(entity_id, patch, conn=conn)
        if employee is not None and "employeeNumber" in patch:
            await self._record_number(employee["employeeNumber"], conn)
        return employee

    async def _record_number(self, employee_number: str,
                             conn: Optional[AsyncConnection]) -> None:
        suffix = trailing_number(employee_number)
        if suffix is None:
            return
        await self.conn.execute(
            "INSERT INTO id_sequences (name, value) VALUES (?, ?) "
            "ON CONFLICT(name) DO UPDATE SET value = MAX(value, excluded.value)",
            [EMPLOYEE_NUMBER_SEQUENCE, suffix], conn=conn
        )

    async def get_next_employee_number_suffix(
            self, conn: Optional[AsyncConnection] = None) -> int:
        """计算下一个员工编号的数字后缀。

        扫描全部员工编号末尾的数字取最大值，再与历史高水位比较，
        结果加 1，最小为 10000。
        """
        rows = await self.conn.fetch_all(
            "SELECT employeeNumber FROM employees", conn=conn
        )
        highest = 0
        for row in rows:
            suffix = trailing_number(row["employeeNumber"])
            if suffix is not None and suffix > highest:
                highest = suffix

        recorded = await self.conn.fetch_value(
            "SELECT value FROM id_sequences WHERE name = ?",
            [EMPLOYEE_NUMBER_SEQUENCE], conn=conn
        )
        highest = max(highest, int(recorded or 0))
        return max(highest + 1, EMPLOYEE_NUMBER_FLOOR)

    async def generate_login_code(
            self, conn: Optional[AsyncConnection] = None) -> str:
        """生成未被占用的 8 位登录码。

        Raises:
            ConflictError: 连续多次生成的登录码都已存在。
        """
        for _ in range(LOGIN_CODE_MAX_ATTEMPTS):
            code = random_login_code()
            if not await self._exists("loginCode", code, None, conn):
                return code
        raise ConflictError("loginCode", "无法生成唯一的登录码，请稍后重试")

    async def get_by_login_code(self, login_code: str,
                                conn: Optional[AsyncConnection] = None
                                ) -> Optional[Dict[str, Any]]:
        return await self.find_by("loginCode", login_code, conn=conn)

    async def get_by_phone(self, phone: str,
                           conn: Optional[AsyncConnection] = None
                           ) -> Optional[Dict[str, Any]]:
        if not phone:
            return None
        return await self.find_by("phone", phone, conn=conn)

    async def get_by_employee_number(self, employee_number: str,
                                     conn: Optional[AsyncConnection] = None
                                     ) -> Optional[Dict[str, Any]]:
        return await self.find_by("employeeNumber", employee_number, conn=conn)

    async def update_login_time(self, employee_id: str,
                                conn: Optional[AsyncConnection] = None) -> bool:
        """记录最近登录时间，每次认证成功后调用。"""
        result = await self.conn.execute(
            "UPDATE employees SET lastLoginTime = ? WHERE id = ?",
            [self._now(), employee_id], conn=conn
        )
        return result.rowcount > 0

    async def login_with_code(self, login_code: str) -> Optional[Dict[str, Any]]:
        """登录码登录，成功返回员工（已刷新登录时间），失败返回 None。"""
        if not login_code:
            return None
        employee = await self.get_by_login_code(login_code.strip().upper())
        if employee is None:
            return None
        await self.update_login_time(employee["id"])
        return await self.get_by_id(employee["id"])

    async def validate_by_phone(self, phone: str,
                                password: str) -> Optional[Dict[str, Any]]:
        """手机号 + 密码登录。

        旧格式的密码哈希校验通过后会被替换为新哈希。

        Returns:
            登录成功返回员工（已刷新登录时间），否则返回 None。
        """
        if not phone or not password:
            return None
        row = await self.conn.fetch_one(
            "SELECT id, password FROM employees WHERE phone = ? LIMIT 1", [phone]
        )
        if row is None:
            return None

        ok, new_hash = verify_and_upgrade(password, row["password"])
        if not ok:
            return None
        if new_hash:
            await self.conn.execute(
                "UPDATE employees SET password = ? WHERE id = ?",
                [new_hash, row["id"]]
            )
        await self.update_login_time(row["id"])
        return await self.get_by_id(row["id"])

    async def register(self, name: str, phone: str, password: str,
                       initials: str) -> Dict[str, Any]:
        """员工自助注册。

        Args:
            name: 姓名。
            phone: 手机号（必须未被注册）。
            password: 明文密码，存储前哈希。
            initials: 姓名拼音首字母，作为员工编号前缀。

        Raises:
            ConflictError: 手机号已被注册或登录码无法生成。
        """
        if await self.get_by_phone(phone):
            raise ConflictError("phone", "手机号已被注册")
        return await self.insert({
            "initials": (initials or "").upper(),
            "name": name,
            "realName": name,
            "phone": phone,
            "password": password,
        })


class UserRepository(BaseCRUD):
    """后台账号 仓库。

    用户名唯一；至少保留一个启用状态的账号，删除或停用最后一个启用账号
    都会被拒绝。
    """

    table = "users"
    columns = {
        "username": ColumnKind.TEXT,
        "password": ColumnKind.TEXT,
        "displayName": ColumnKind.TEXT,
        "isActive": ColumnKind.BOOLEAN,
        "updatedAt": ColumnKind.TEXT,
    }
    column_defaults = {"isActive": True}
    filters = {
        "username": FilterKind.LIKE,
        "displayName": FilterKind.LIKE,
        "isActive": FilterKind.FLAG,
    }
    search_fields = ("username", "displayName")
    hidden_fields = ("password",)
    unique_indexes = (
        ("idx_users_username",
         "CREATE UNIQUE INDEX IF NOT EXISTS idx_users_username ON users(username)"),
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def updatable_fields(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        # 用户名创建后不可修改
        return {
            key: value for key, value in patch.items()
            if key in ("displayName", "password", "isActive")
        }

    async def _before_update(self, entity_id: Any, existing: Dict[str, Any],
                             patch: Dict[str, Any],
                             conn: Optional[AsyncConnection]) -> Dict[str, Any]:
        if "password" in patch:
            if patch["password"]:
                patch["password"] = hash_password(patch["password"])
            else:
                del patch["password"]
        if (
            "isActive" in patch and existing["isActive"]
            and not to_flag(patch["isActive"])
            and await self.count_active(conn=conn) <= 1
        ):
            raise InvariantViolationError("无法停用最后一个管理员账号")
        return patch

    async def get_by_username(self, username: str,
                              conn: Optional[AsyncConnection] = None
                              ) -> Optional[Dict[str, Any]]:
        return await self.find_by("username", username, conn=conn)

    async def create(self, username: str, password: str, display_name: str,
                     is_active: bool = True,
                     conn: Optional[AsyncConnection] = None) -> Dict[str, Any]:
        """创建账号。

        Raises:
            ConflictError: 用户名已存在。
        """
        if await self.get_by_username(username, conn=conn):
            raise ConflictError("username", "用户名已存在")
        return await self.insert({
            "username": username,
            "password": hash_password(password),
            "displayName": display_name,
            "isActive": is_active,
        }, conn=conn)

    async def validate(self, username: str,
                       password: str) -> Optional[Dict[str, Any]]:
        """校验启用账号的用户名和密码，成功返回账号，否则返回 None。

        旧格式的密码哈希校验通过后会被替换为新哈希。
        """
        row = await self.conn.fetch_one(
            "SELECT id, password, isActive FROM users WHERE username = ?",
            [username]
        )
        if row is None or not row["isActive"]:
            return None

        ok, new_hash = verify_and_upgrade(password, row["password"])
        if not ok:
            return None
        if new_hash:
            await self.conn.execute(
                "UPDATE users SET password = ? WHERE id = ?",
                [new_hash, row["id"]]
            )
            logger.info(f"账号 {username} 的密码哈希已升级")
        return await self.get_by_id(row["id"])

    async def count_active(self, conn: Optional[AsyncConnection] = None) -> int:
        return await self.count({"isActive": True}, conn=conn)

    async def delete(self, entity_id: Any,
                     conn: Optional[AsyncConnection] = None) -> bool:
        """删除账号。

        Raises:
            InvariantViolationError: 目标是最后一个启用账号。
        """
        user = await self.get_by_id(entity_id, conn=conn)
        if user is None:
            return False
        if user["isActive"] and await self.count_active(conn=conn) <= 1:
            raise InvariantViolationError("无法删除最后一个管理员账号")
        return await super().delete(entity_id, conn=conn)
