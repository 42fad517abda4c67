"""初始化数据库

建表、写入默认业务设置、创建初始超级管理员，
可选写入一组示例会员方案（--sample-plans）。
"""
import argparse
import sys
import os

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DatabaseManager
from loguru import logger

# (类型, 月数, 价格, 注册费, 赠送月数)
SAMPLE_PLANS = [
    ("adult", 1, 150, 50, 0),
    ("adult", 6, 810, 50, 0),
    ("adult", 12, 1500, 0, 1),
    ("youth", 1, 100, 30, 0),
    ("youth", 6, 540, 30, 0),
    ("youth", 12, 1000, 0, 1),
]


def init_database(database_url=None, sample_plans=False):
    """初始化数据库和种子数据"""
    logger.info("Initializing database...")

    db = DatabaseManager(database_url)
    result = db.initialize()
    logger.info(f"Settings created: {result['settings_created']}")
    if result["admin_created"]:
        logger.info("Bootstrap superadmin created")

    if sample_plans:
        if db.plans.list_plans(active_only=False):
            logger.info("Membership plans already exist, skipping samples")
        else:
            for member_type, months, price, fee, free in SAMPLE_PLANS:
                db.plans.create_plan(member_type, months, price, fee, free)
                logger.info(f"Created plan: {member_type} {months} month(s)")

    db.close()
    logger.info("Database initialization completed!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="初始化数据库")
    parser.add_argument("--db", default=None, help="数据库连接 URL")
    parser.add_argument("--sample-plans", action="store_true",
                        help="写入示例会员方案")
    args = parser.parse_args()
    init_database(args.db, args.sample_plans)
