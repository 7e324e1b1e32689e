"""Entity repository tests.

Tests for:
- MerchantRepository: insert, lookups, filtered pagination, shop id sync
- ProductRepository: per-merchant upstream id uniqueness, lookup by shop id
- EmployeeRepository: uniqueness conflicts, number / login code generation,
  password hashing, login methods, registration
- UserRepository: create, validate, legacy hash upgrade, last-active protection
"""
import hashlib
import string

import pytest

from database import entity_repos
from database.exceptions import ConflictError, InvariantViolationError
from tests.database.conftest import TEST_ADMIN_PASSWORD


# ============================================================
# MerchantRepository Tests
# ============================================================
class TestMerchantRepository:
    """Tests for MerchantRepository."""

    @pytest.mark.asyncio
    async def test_insert_generates_time_id(self, temp_db):
        first = await temp_db.merchants.insert({"name": "甲"})
        second = await temp_db.merchants.insert({"name": "乙"})
        assert first["id"].isdigit()
        assert int(second["id"]) > int(first["id"])

    @pytest.mark.asyncio
    async def test_get_by_name_and_shop_id(self, temp_db):
        merchant = await temp_db.merchants.insert({
            "name": "鲜果铺", "pinduoduoShopId": "S100",
        })
        assert (await temp_db.merchants.get_by_name("鲜果铺"))["id"] == merchant["id"]
        assert (await temp_db.merchants.get_by_pinduoduo_shop_id("S100"))["id"] == merchant["id"]
        assert await temp_db.merchants.get_by_pinduoduo_shop_id("") is None
        assert await temp_db.merchants.get_by_name("不存在") is None

    @pytest.mark.asyncio
    async def test_filters(self, temp_db):
        await temp_db.merchants.insert({"name": "鲜果铺", "warehouse1": "一仓", "sendMessage": True})
        await temp_db.merchants.insert({"name": "鲜菜铺", "warehouse1": "二仓", "sendMessage": False})
        await temp_db.merchants.insert({"name": "干货铺", "warehouse1": "一仓", "sendMessage": False})

        result = await temp_db.merchants.get_paginated(1, 10, filters={"name": "鲜"})
        assert result.total == 2

        result = await temp_db.merchants.get_paginated(
            1, 10, filters={"warehouse1": "一仓", "sendMessage": False})
        assert [m["name"] for m in result.items] == ["干货铺"]

        result = await temp_db.merchants.get_paginated(1, 10, filters={"sendMessage": "true"})
        assert [m["name"] for m in result.items] == ["鲜果铺"]

    @pytest.mark.asyncio
    async def test_empty_filters_use_generic_path(self, temp_db):
        await temp_db.merchants.insert({"name": "鲜果铺"})
        await temp_db.merchants.insert({"name": "干货铺"})
        result = await temp_db.merchants.get_paginated(
            1, 10, filters={"name": "", "groupName": None}, search="干货")
        assert [m["name"] for m in result.items] == ["干货铺"]

    @pytest.mark.asyncio
    async def test_sync_shop_id(self, temp_db):
        merchant = await temp_db.merchants.insert({"name": "鲜果铺"})
        assert await temp_db.merchants.sync_shop_id("鲜果铺", "S1") is True
        assert await temp_db.merchants.sync_shop_id("鲜果铺", "S1") is False
        assert await temp_db.merchants.sync_shop_id("没有这家", "S2") is False
        assert (await temp_db.merchants.get_by_id(merchant["id"]))["pinduoduoShopId"] == "S1"


# ============================================================
# ProductRepository Tests
# ============================================================
class TestProductRepository:
    """Tests for ProductRepository."""

    @pytest.mark.asyncio
    async def test_duplicate_upstream_id_in_same_merchant(self, temp_db):
        merchant = await temp_db.merchants.insert({"name": "鲜果铺"})
        await temp_db.products.insert({
            "productName": "苹果", "pinduoduoProductId": "G1", "merchantId": merchant["id"],
        })
        with pytest.raises(ConflictError) as exc:
            await temp_db.products.insert({
                "productName": "苹果2", "pinduoduoProductId": "G1",
                "merchantId": merchant["id"],
            })
        assert exc.value.field == "pinduoduoProductId"

    @pytest.mark.asyncio
    async def test_same_upstream_id_other_merchant_allowed(self, temp_db):
        a = await temp_db.merchants.insert({"name": "甲"})
        b = await temp_db.merchants.insert({"name": "乙"})
        await temp_db.products.insert({"productName": "苹果", "pinduoduoProductId": "G1",
                                       "merchantId": a["id"]})
        product = await temp_db.products.insert({"productName": "苹果", "pinduoduoProductId": "G1",
                                                 "merchantId": b["id"]})
        assert product["merchantId"] == b["id"]

    @pytest.mark.asyncio
    async def test_empty_upstream_id_not_unique(self, temp_db):
        merchant = await temp_db.merchants.insert({"name": "鲜果铺"})
        await temp_db.products.insert({"productName": "苹果", "merchantId": merchant["id"]})
        await temp_db.products.insert({"productName": "梨", "merchantId": merchant["id"]})
        assert len(await temp_db.products.get_by_merchant(merchant["id"])) == 2

    @pytest.mark.asyncio
    async def test_update_conflict(self, temp_db):
        merchant = await temp_db.merchants.insert({"name": "鲜果铺"})
        await temp_db.products.insert({"productName": "苹果", "pinduoduoProductId": "G1",
                                       "merchantId": merchant["id"]})
        pear = await temp_db.products.insert({"productName": "梨", "pinduoduoProductId": "G2",
                                              "merchantId": merchant["id"]})
        with pytest.raises(ConflictError):
            await temp_db.products.update(pear["id"], {"pinduoduoProductId": "G1"})
        updated = await temp_db.products.update(pear["id"], {"productSpec": "5斤"})
        assert updated["productSpec"] == "5斤"

    @pytest.mark.asyncio
    async def test_get_by_pinduoduo_id_and_shop_id(self, temp_db):
        merchant = await temp_db.merchants.insert({"name": "鲜果铺", "pinduoduoShopId": "S9"})
        product = await temp_db.products.insert({"productName": "苹果", "pinduoduoProductId": "G1",
                                                 "merchantId": merchant["id"]})
        found = await temp_db.products.get_by_pinduoduo_id_and_shop_id("G1", "S9")
        assert found["id"] == product["id"]
        assert await temp_db.products.get_by_pinduoduo_id_and_shop_id("G1", "S0") is None

    @pytest.mark.asyncio
    async def test_filter_by_merchant(self, temp_db):
        a = await temp_db.merchants.insert({"name": "甲"})
        b = await temp_db.merchants.insert({"name": "乙"})
        await temp_db.products.insert({"productName": "苹果", "merchantId": a["id"]})
        await temp_db.products.insert({"productName": "苹果", "merchantId": b["id"]})
        result = await temp_db.products.get_paginated(
            1, 10, filters={"merchantId": a["id"], "productName": "苹"})
        assert result.total == 1


# ============================================================
# EmployeeRepository Tests
# ============================================================
class TestEmployeeNumbers:
    """Tests for employee number and login code generation."""

    @pytest.mark.asyncio
    async def test_first_suffix_is_floor(self, temp_db):
        assert await temp_db.employees.get_next_employee_number_suffix() == 10000

    @pytest.mark.asyncio
    async def test_next_suffix_uses_max_and_never_reuses(self, temp_db):
        for number in ("ZS10000", "LS10007", "WW10003"):
            await temp_db.employees.insert({"employeeNumber": number, "name": number})
        assert await temp_db.employees.get_next_employee_number_suffix() == 10008

        newest = await temp_db.employees.insert({"employeeNumber": "ZL10008", "name": "赵六"})
        assert await temp_db.employees.delete(newest["id"]) is True
        assert await temp_db.employees.get_next_employee_number_suffix() == 10009

    @pytest.mark.asyncio
    async def test_generated_number_uses_initials(self, temp_db):
        employee = await temp_db.employees.insert({"name": "张三", "initials": "ZS"})
        assert employee["employeeNumber"] == "ZS10000"

    @pytest.mark.asyncio
    async def test_login_code_shape(self, temp_db):
        code = await temp_db.employees.generate_login_code()
        assert len(code) == 8
        assert set(code) <= set(string.ascii_uppercase + string.digits)

    @pytest.mark.asyncio
    async def test_login_code_exhaustion(self, temp_db, monkeypatch):
        await temp_db.employees.insert({"name": "张三", "loginCode": "AAAAAAAA"})
        monkeypatch.setattr(entity_repos, "random_login_code", lambda: "AAAAAAAA")
        with pytest.raises(ConflictError) as exc:
            await temp_db.employees.generate_login_code()
        assert exc.value.message == "无法生成唯一的登录码，请稍后重试"


class TestEmployeeRepository:
    """Tests for EmployeeRepository CRUD and authentication."""

    @pytest.mark.asyncio
    async def test_conflicts(self, temp_db):
        await temp_db.employees.insert({
            "employeeNumber": "ZS10000", "loginCode": "CODE0001", "phone": "13800000000",
        })
        with pytest.raises(ConflictError) as exc:
            await temp_db.employees.insert({"employeeNumber": "ZS10000"})
        assert exc.value.field == "employeeNumber"
        assert str(exc.value) == "员工编号已存在"

        with pytest.raises(ConflictError) as exc:
            await temp_db.employees.insert({"loginCode": "CODE0001"})
        assert exc.value.field == "loginCode"

        with pytest.raises(ConflictError) as exc:
            await temp_db.employees.insert({"phone": "13800000000"})
        assert exc.value.field == "phone"
        assert await temp_db.employees.count() == 1

    @pytest.mark.asyncio
    async def test_empty_phone_not_unique(self, temp_db):
        await temp_db.employees.insert({"name": "甲"})
        await temp_db.employees.insert({"name": "乙"})
        assert await temp_db.employees.count() == 2

    @pytest.mark.asyncio
    async def test_password_hashed_and_hidden(self, temp_db):
        employee = await temp_db.employees.insert({"name": "张三", "phone": "13800000001",
                                                   "password": "secret"})
        assert "password" not in employee
        stored = await temp_db.conn.fetch_value(
            "SELECT password FROM employees WHERE id = ?", [employee["id"]])
        assert stored != "secret"
        assert stored.startswith("$argon2")

    @pytest.mark.asyncio
    async def test_update_conflict_against_other_rows(self, temp_db):
        first = await temp_db.employees.insert({"name": "甲", "phone": "13800000001"})
        second = await temp_db.employees.insert({"name": "乙", "phone": "13800000002"})

        # 与自身相同不算冲突
        same = await temp_db.employees.update(first["id"], {"phone": "13800000001"})
        assert same["phone"] == "13800000001"
        with pytest.raises(ConflictError):
            await temp_db.employees.update(second["id"], {"phone": "13800000001"})

    @pytest.mark.asyncio
    async def test_update_empty_password_keeps_hash(self, temp_db):
        employee = await temp_db.employees.insert({"name": "张三", "phone": "13800000003",
                                                   "password": "secret"})
        await temp_db.employees.update(employee["id"], {"password": "", "realName": "张三丰"})
        assert await temp_db.employees.validate_by_phone("13800000003", "secret") is not None

    @pytest.mark.asyncio
    async def test_login_with_code_updates_login_time(self, temp_db):
        employee = await temp_db.employees.insert({"name": "张三", "loginCode": "ABCD1234"})
        assert employee["lastLoginTime"] == ""

        logged_in = await temp_db.employees.login_with_code("abcd1234")
        assert logged_in["id"] == employee["id"]
        assert logged_in["lastLoginTime"] != ""
        assert await temp_db.employees.login_with_code("ZZZZZZZZ") is None

    @pytest.mark.asyncio
    async def test_update_cannot_touch_last_login_time(self, temp_db):
        employee = await temp_db.employees.insert({"name": "张三"})
        updated = await temp_db.employees.update(employee["id"], {"lastLoginTime": "forged"})
        assert updated["lastLoginTime"] == ""

    @pytest.mark.asyncio
    async def test_validate_by_phone(self, temp_db):
        await temp_db.employees.insert({"name": "张三", "phone": "13800000004",
                                        "password": "secret"})
        employee = await temp_db.employees.validate_by_phone("13800000004", "secret")
        assert employee is not None
        assert employee["lastLoginTime"] != ""
        assert await temp_db.employees.validate_by_phone("13800000004", "wrong") is None
        assert await temp_db.employees.validate_by_phone("13900000000", "secret") is None

    @pytest.mark.asyncio
    async def test_legacy_hash_upgraded_on_login(self, temp_db):
        employee = await temp_db.employees.insert({"name": "张三", "phone": "13800000005"})
        legacy = hashlib.sha256("old-pass".encode("utf-8")).hexdigest()
        await temp_db.conn.execute(
            "UPDATE employees SET password = ? WHERE id = ?", [legacy, employee["id"]])

        assert await temp_db.employees.validate_by_phone("13800000005", "old-pass") is not None
        stored = await temp_db.conn.fetch_value(
            "SELECT password FROM employees WHERE id = ?", [employee["id"]])
        assert stored.startswith("$argon2")
        assert await temp_db.employees.validate_by_phone("13800000005", "old-pass") is not None

    @pytest.mark.asyncio
    async def test_register(self, temp_db):
        employee = await temp_db.employees.register("张三", "13800000006", "secret", "zs")
        assert employee["employeeNumber"] == "ZS10000"
        assert employee["realName"] == "张三"
        assert len(employee["loginCode"]) == 8

        with pytest.raises(ConflictError) as exc:
            await temp_db.employees.register("张三", "13800000006", "secret", "zs")
        assert str(exc.value) == "手机号已被注册"

    @pytest.mark.asyncio
    async def test_lookups(self, temp_db):
        employee = await temp_db.employees.insert({
            "employeeNumber": "ZS10000", "loginCode": "CODE0002", "phone": "13800000007",
        })
        assert (await temp_db.employees.get_by_employee_number("ZS10000"))["id"] == employee["id"]
        assert (await temp_db.employees.get_by_login_code("CODE0002"))["id"] == employee["id"]
        assert (await temp_db.employees.get_by_phone("13800000007"))["id"] == employee["id"]
        assert await temp_db.employees.get_by_phone("") is None


# ============================================================
# UserRepository Tests
# ============================================================
class TestUserRepository:
    """Tests for UserRepository."""

    @pytest.mark.asyncio
    async def test_seeded_admin_validates(self, temp_db):
        user = await temp_db.users.validate("admin", TEST_ADMIN_PASSWORD)
        assert user is not None
        assert user["isActive"] is True
        assert "password" not in user
        assert await temp_db.users.validate("admin", "wrong") is None
        assert await temp_db.users.validate("ghost", TEST_ADMIN_PASSWORD) is None

    @pytest.mark.asyncio
    async def test_duplicate_username(self, temp_db):
        with pytest.raises(ConflictError) as exc:
            await temp_db.users.create("admin", "x", "重复")
        assert exc.value.field == "username"

    @pytest.mark.asyncio
    async def test_inactive_user_cannot_log_in(self, temp_db):
        await temp_db.users.create("op", "pw", "运营", is_active=False)
        assert await temp_db.users.validate("op", "pw") is None

    @pytest.mark.asyncio
    async def test_update_limited_fields(self, temp_db):
        user = await temp_db.users.create("op", "pw", "运营")
        updated = await temp_db.users.update(user["id"], {
            "username": "renamed", "displayName": "运营二", "password": "pw2",
        })
        assert updated["username"] == "op"
        assert updated["displayName"] == "运营二"
        assert await temp_db.users.validate("op", "pw2") is not None

    @pytest.mark.asyncio
    async def test_cannot_delete_last_active_user(self, temp_db):
        admin = await temp_db.users.get_by_username("admin")
        assert await temp_db.users.count_active() == 1

        with pytest.raises(InvariantViolationError) as exc:
            await temp_db.users.delete(admin["id"])
        assert str(exc.value) == "无法删除最后一个管理员账号"
        assert await temp_db.users.get_by_id(admin["id"]) is not None

    @pytest.mark.asyncio
    async def test_delete_when_another_active_user_exists(self, temp_db):
        admin = await temp_db.users.get_by_username("admin")
        await temp_db.users.create("op", "pw", "运营")
        assert await temp_db.users.delete(admin["id"]) is True
        assert await temp_db.users.delete(admin["id"]) is False

    @pytest.mark.asyncio
    async def test_delete_inactive_user_allowed(self, temp_db):
        user = await temp_db.users.create("op", "pw", "运营", is_active=False)
        assert await temp_db.users.delete(user["id"]) is True

    @pytest.mark.asyncio
    async def test_cannot_deactivate_last_active_user(self, temp_db):
        admin = await temp_db.users.get_by_username("admin")

        with pytest.raises(InvariantViolationError) as exc:
            await temp_db.users.update(admin["id"], {"isActive": False})
        assert str(exc.value) == "无法停用最后一个管理员账号"
        assert (await temp_db.users.get_by_id(admin["id"]))["isActive"] is True
        assert await temp_db.users.count_active() == 1

        with pytest.raises(InvariantViolationError):
            await temp_db.users.update(admin["id"], {"isActive": "false"})

    @pytest.mark.asyncio
    async def test_deactivate_when_another_active_user_exists(self, temp_db):
        admin = await temp_db.users.get_by_username("admin")
        await temp_db.users.create("op", "pw", "运营")

        updated = await temp_db.users.update(admin["id"], {"isActive": False})
        assert updated["isActive"] is False
        assert await temp_db.users.count_active() == 1

    @pytest.mark.asyncio
    async def test_legacy_hash_upgraded(self, temp_db):
        user = await temp_db.users.create("legacy", "ignored", "旧账号")
        await temp_db.conn.execute(
            "UPDATE users SET password = ? WHERE id = ?",
            [hashlib.sha256(b"old-pass").hexdigest(), user["id"]])

        assert await temp_db.users.validate("legacy", "old-pass") is not None
        stored = await temp_db.conn.fetch_value(
            "SELECT password FROM users WHERE id = ?", [user["id"]])
        assert stored.startswith("$argon2")

    @pytest.mark.asyncio
    async def test_paginated_search(self, temp_db):
        await temp_db.users.create("op1", "pw", "运营一")
        await temp_db.users.create("op2", "pw", "仓管")
        result = await temp_db.users.get_paginated(1, 10, search="运营")
        assert [u["username"] for u in result.items] == ["op1"]
