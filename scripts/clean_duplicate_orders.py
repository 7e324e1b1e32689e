"""清理重复订单

按 (shopId, productId, salesDate) 查找重复订单，每组保留 id 最大的一条。

使用方法：
    python scripts/clean_duplicate_orders.py            # 交互确认后删除
    python scripts/clean_duplicate_orders.py --dry-run  # 只预览，不删除
    python scripts/clean_duplicate_orders.py --force    # 不确认直接删除
"""
import argparse
import asyncio
import os
import sys
from typing import Callable, List, Optional

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from loguru import logger

from config.settings import settings
from database.connection import DatabaseConnection
from database.dedup import DedupReport, DuplicateGroup, DuplicateOrderResolver

SEPARATOR = "=" * 60


def print_groups(groups: List[DuplicateGroup]) -> None:
    for index, group in enumerate(groups, start=1):
        print(f"\n[{index}/{len(groups)}] 店铺 {group.shop_id} / 商品 {group.product_id} "
              f"/ 日期 {group.sales_date}（{len(group.rows)} 条）")
        for position, row in enumerate(group.rows):
            mark = "✅ 保留" if position == 0 else "❌ 删除"
            print(f"  {mark} id={row['id']} {row.get('shopName', '')} "
                  f"{row.get('productName', '')} 销量={row.get('salesQuantity', 0)} "
                  f"创建时间={row.get('createdAt', '')}")


async def run(database_url: Optional[str] = None, dry_run: bool = False,
              force: bool = False,
              confirm: Callable[[str], str] = input) -> DedupReport:
    """执行清理。

    Args:
        database_url: 数据库连接URL，默认读取配置。
        dry_run: 只预览，不删除。
        force: 不询问直接删除。
        confirm: 读取确认输入的函数，输入 yes / y 才会删除。

    Returns:
        清理结果；预览或取消时 deleted_count 为 0。
    """
    conn = DatabaseConnection(database_url)
    resolver = DuplicateOrderResolver(conn)
    try:
        print(SEPARATOR)
        print(f"数据库: {conn.database_url}")
        if not await conn.table_exists(resolver.table):
            print(f"❌ 表 {resolver.table} 不存在")
            return DedupReport()

        groups = await resolver.find_groups()
        report = DedupReport(groups=groups)
        if not groups:
            print("✅ 没有发现重复订单")
            return report

        print(f"发现 {report.group_count} 组重复订单，"
              f"共需删除 {report.planned_delete_count} 条")
        print_groups(groups)
        print(SEPARATOR)

        if dry_run:
            print("预览模式，未删除任何数据")
            return report

        if not force:
            answer = confirm("确认删除以上重复订单？(yes/no): ")
            if answer.strip().lower() not in ("yes", "y"):
                print("已取消，未删除任何数据")
                return report

        async with conn.transaction() as tx:
            report.deleted_count = await resolver.delete_groups(groups, tx)

        remaining = await resolver.count_duplicate_groups()
        print(f"处理重复组: {report.group_count}")
        print(f"删除订单: {report.deleted_count} 条")
        print(f"保留订单ID: {', '.join(str(i) for i in report.kept_ids)}")
        if remaining:
            print(f"⚠️ 仍有 {remaining} 组重复订单")
        else:
            print("✅ 验证通过，已无重复订单")
        return report
    finally:
        await conn.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="清理重复的商品销售订单")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="只预览，不删除")
    mode.add_argument("--force", action="store_true", help="不确认直接删除")
    parser.add_argument("--database-url", default=None,
                        help="数据库连接URL，默认读取配置")
    args = parser.parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=settings.log_level)

    try:
        asyncio.run(run(args.database_url, dry_run=args.dry_run, force=args.force))
    except Exception as e:
        logger.error(f"清理重复订单失败: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
