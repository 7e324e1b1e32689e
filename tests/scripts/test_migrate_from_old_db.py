"""Legacy merchant database import script tests.

Tests for:
- Field mapping from the old merchant layout
- Imported / skipped counts, rerun skips everything
- main(): exit code for a missing source file
"""
import asyncio
import os

import pytest

from database.connection import DatabaseConnection
from database.legacy import map_legacy_merchant
from scripts import migrate_from_old_db

OLD_SCHEMA = (
    "CREATE TABLE merchants (id TEXT PRIMARY KEY, createdAt TEXT, name TEXT, "
    "warehouse1 TEXT, warehouse2 TEXT, defaultWarehouse TEXT, groupName TEXT, "
    "sendMessage INTEGER)"
)


async def build_old_database(path):
    conn = DatabaseConnection(f"sqlite:///{path}")
    try:
        await conn.execute(OLD_SCHEMA)
        await conn.execute(
            "INSERT INTO merchants VALUES "
            "('old-1', '2021-03-01T00:00:00.000Z', '鲜果铺', '一仓', '二仓', '一仓', '水果组', 1), "
            "('old-2', '2021-03-02T00:00:00.000Z', '干货铺', '二仓', '', '二仓', '', 0)"
        )
    finally:
        await conn.close()


class TestFieldMapping:
    """Tests for map_legacy_merchant()."""

    def test_defaults_for_missing_fields(self):
        merchant = map_legacy_merchant({
            "id": "old-1", "name": "鲜果铺", "warehouse2": "二仓", "sendMessage": 1,
        })
        assert merchant["id"] == "old-1"
        assert merchant["sendMessage"] == 1
        assert merchant["mentionList"] == []
        assert merchant["cookie"] == ""
        assert merchant["sendOrderScreenshot"] is False
        assert "warehouse2" not in merchant
        assert "defaultWarehouse" not in merchant


class TestMigrate:
    """Tests for migrate_from_old_db.migrate()."""

    @pytest.mark.asyncio
    async def test_import_then_skip(self, temp_db, temp_dir, capsys):
        old_path = os.path.join(temp_dir, "merchants_bak.db")
        await build_old_database(old_path)

        report = await migrate_from_old_db.migrate(old_path, temp_db.database_url)
        assert (report.imported, report.skipped, report.failed) == (2, 0, 0)

        merchant = await temp_db.merchants.get_by_id("old-1")
        assert merchant["name"] == "鲜果铺"
        assert merchant["groupName"] == "水果组"
        assert merchant["sendMessage"] is True
        assert merchant["createdAt"] == "2021-03-01T00:00:00.000Z"
        assert merchant["pinduoduoShopId"] == ""

        report = await migrate_from_old_db.migrate(old_path, temp_db.database_url)
        assert (report.imported, report.skipped) == (0, 2)
        assert await temp_db.merchants.count() == 2

        out = capsys.readouterr().out
        assert "✓ 成功迁移: 2 条" in out
        assert "已存在，跳过: 鲜果铺 (old-1)" in out

    @pytest.mark.asyncio
    async def test_missing_old_database(self, temp_db, temp_dir):
        with pytest.raises(FileNotFoundError):
            await migrate_from_old_db.migrate(os.path.join(temp_dir, "nope.db"),
                                              temp_db.database_url)


class TestMain:
    """Tests for migrate_from_old_db.main()."""

    def test_missing_file_exit_code(self, temp_dir, test_config, capsys):
        code = migrate_from_old_db.main([
            os.path.join(temp_dir, "nope.db"), "--database-url", test_config.database_url,
        ])
        assert code == 1
        assert "无法打开旧数据库" in capsys.readouterr().out

    def test_success_exit_code(self, temp_dir, test_config, monkeypatch):
        monkeypatch.chdir(temp_dir)
        old_path = os.path.join(temp_dir, "merchants_bak.db")
        asyncio.run(build_old_database(old_path))
        assert migrate_from_old_db.main(
            [old_path, "--database-url", test_config.database_url]) == 0
