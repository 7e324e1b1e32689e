"""Fixtures for isolated database module tests.

Provides reusable fixtures for all database test modules, including
a fresh temp-file SQLite DatabaseManager (migrated and seeded) for each test.
"""
import os
import shutil
import tempfile

import pytest
import pytest_asyncio

from config.settings import Settings
from database import DatabaseManager
from database.business_repos import ORDER_UNIQUE_INDEX

TEST_API_KEY = "test-api-key"
TEST_ADMIN_PASSWORD = "admin123"


@pytest.fixture
def temp_dir():
    """Yield a fresh temp directory, removed after the test."""
    path = tempfile.mkdtemp(prefix="db-tests-")
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir):
    """Settings pointing every file path into the temp directory."""
    return Settings(
        database_url=f"sqlite:///{os.path.join(temp_dir, 'test.db')}",
        legacy_json_path=os.path.join(temp_dir, "merchants.json"),
        default_api_key=TEST_API_KEY,
        default_admin_password=TEST_ADMIN_PASSWORD,
    )


@pytest_asyncio.fixture
async def temp_db(test_config):
    """Yield an initialized DatabaseManager bound to a temp SQLite database."""
    manager = DatabaseManager(config=test_config)
    await manager.init()
    try:
        yield manager
    finally:
        await manager.close()


@pytest_asyncio.fixture
async def db_conn(temp_db):
    """Yield the DatabaseConnection of the temp_db manager."""
    return temp_db.conn


def make_order(**overrides):
    """Helper: order payload with sensible defaults."""
    order = {
        "shopName": "鲜果铺",
        "shopId": "S100",
        "productId": "P200",
        "productName": "红富士苹果",
        "productImage": "",
        "salesArea": "华东",
        "warehouseInfo": "一仓",
        "salesDate": "2024-05-01",
        "salesSpec": "5斤装",
        "totalStock": 100,
        "estimatedSales": 80,
        "totalSales": 60,
        "salesQuantity": 12,
    }
    order.update(overrides)
    return order


def make_delivery(**overrides):
    """Helper: daily delivery payload with sensible defaults."""
    delivery = {
        "merchantName": "鲜果铺",
        "productName": "红富士苹果",
        "unit": "箱",
        "dispatchQuantity": 30,
        "estimatedSales": 25,
        "surplusQuantity": 5,
        "distributionStatus": 0,
        "warehousingStatus": 0,
        "entryUser": "admin",
        "deliveryDate": "2024-05-01",
    }
    delivery.update(overrides)
    return delivery


def make_return(**overrides):
    """Helper: return detail payload with sensible defaults."""
    detail = {
        "merchantName": "鲜果铺",
        "productName": "红富士苹果",
        "unit": "箱",
        "actualReturnQuantity": 4,
        "goodQuantity": 3,
        "defectiveQuantity": 1,
        "retrievalStatus": 0,
        "dataType": 0,
        "entryUser": "admin",
        "returnDate": "2024-05-01",
    }
    detail.update(overrides)
    return detail


async def drop_order_unique_index(db):
    """Helper: remove the order unique index so duplicates can be inserted."""
    await db.conn.execute(f"DROP INDEX IF EXISTS {ORDER_UNIQUE_INDEX}")


async def insert_order_with_id(db, order_id, **overrides):
    """Helper: insert an order, then move it to a fixed integer id.

    Order ids are always assigned by the database, so tests that need
    specific ids rewrite them after the insert.
    """
    order = await db.orders.insert(make_order(**overrides))
    await db.conn.execute(
        "UPDATE product_sales_orders SET id = ? WHERE id = ?", [order_id, order["id"]])
    return await db.orders.get_by_id(order_id)


class Clock:
    """Controllable replacement for ``now_iso``."""

    def __init__(self, value="2024-05-01T08:00:00.000Z"):
        self.value = value

    def __call__(self):
        return self.value
