"""初始化数据库

建表、执行未完成的迁移、写入默认管理员与默认设置。可重复执行。

使用方法：
    python scripts/init_db.py [--database-url sqlite:///data/merchants.db]
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
from database import DatabaseManager, MigrationError


def configure_logging() -> None:
    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)


async def init_database(database_url: Optional[str] = None) -> List[int]:
    """初始化数据库，返回本次执行的迁移版本号。"""
    db = DatabaseManager(database_url)
    logger.info(f"Initializing database: {db.database_url}")
    try:
        applied = await db.init()
        versions = await db.migrations.applied_versions()
    finally:
        await db.close()

    if applied:
        print(f"✅ 已执行迁移: {', '.join(str(v) for v in applied)}")
    else:
        print("✅ 数据库已是最新结构，无需迁移")
    print(f"已记录的迁移版本: {', '.join(str(v) for v in sorted(versions))}")
    return applied


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="初始化数据库并执行迁移")
    parser.add_argument("--database-url", default=None,
                        help="数据库连接URL，默认读取配置")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        asyncio.run(init_database(args.database_url))
    except MigrationError as e:
        print(f"❌ 数据库迁移失败: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
