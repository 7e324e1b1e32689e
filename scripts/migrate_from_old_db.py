"""从旧数据库迁移商家数据

旧库字段：id, createdAt, name, warehouse1, warehouse2, defaultWarehouse, groupName, sendMessage
新库中已存在的商家ID会被跳过，旧库没有的字段取默认值。

使用方法：
    python scripts/migrate_from_old_db.py data/merchants_bak.db [--database-url URL]
"""
import argparse
import asyncio
import os
import sys
from typing import List, Optional

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from loguru import logger

from config.settings import settings
from database import DatabaseManager
from database.legacy import ImportReport, LegacyMerchantImporter, read_old_merchants

SEPARATOR = "=" * 40


async def migrate(old_db_path: str,
                  database_url: Optional[str] = None) -> ImportReport:
    """把旧库商家导入新库，逐条输出结果。"""
    print(f"旧数据库: {old_db_path}")
    rows = await read_old_merchants(old_db_path)
    print(f"从旧数据库读取到 {len(rows)} 条商家数据")

    db = DatabaseManager(database_url)
    try:
        await db.init(import_legacy=False)
        print(f"新数据库: {db.database_url}")

        report = await LegacyMerchantImporter(db.merchants).import_rows(rows)
        total = len(report.outcomes)
        for index, outcome in enumerate(report.outcomes, start=1):
            if outcome.status == "imported":
                print(f"  ✓ [{index}/{total}] 已迁移: {outcome.name}")
            elif outcome.status == "skipped":
                print(f"  - [{index}/{total}] 已存在，跳过: {outcome.name} ({outcome.id})")
            else:
                print(f"  ✗ [{index}/{total}] 迁移失败: {outcome.name} ({outcome.id}) "
                      f"{outcome.error}")

        print(SEPARATOR)
        print("迁移完成!")
        print(f"✓ 成功迁移: {report.imported} 条")
        print(f"- 跳过: {report.skipped} 条")
        if report.failed:
            print(f"✗ 失败: {report.failed} 条")
        print(f"新数据库现有商家总数: {await db.merchants.count()}")
        print(SEPARATOR)
        return report
    finally:
        await db.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="从旧数据库迁移商家数据")
    parser.add_argument("old_db", help="旧数据库文件路径")
    parser.add_argument("--database-url", default=None,
                        help="新数据库连接URL，默认读取配置")
    args = parser.parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    try:
        report = asyncio.run(migrate(args.old_db, args.database_url))
    except FileNotFoundError as e:
        print(f"无法打开旧数据库: {e}")
        return 1
    except Exception as e:
        logger.error(f"迁移失败: {e}")
        return 1
    return 1 if report.failed else 0


if __name__ == "__main__":
    sys.exit(main())
