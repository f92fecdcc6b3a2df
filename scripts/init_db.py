"""初始化数据库"""
import sys
import os

# 添加项目根目录到路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import DatabaseManager
from business.segments import SegmentRegistry
from loguru import logger


def init_database(usernames=None):
    """初始化数据库，并为已有店铺初始化系统分群"""
    logger.info("Initializing database...")

    # 创建数据库管理器
    db = DatabaseManager()

    # 创建所有表
    logger.info("Creating tables...")
    db.create_tables()

    # 创建店铺（可选）并初始化系统分群
    for username in usernames or []:
        db.profiles.get_or_create(username)
        logger.info(f"Profile ready: {username}")

    registry = SegmentRegistry(db)
    for profile_id in db.get_profile_ids():
        result = registry.initialize_system_segments(profile_id)
        if result["initialized"]:
            logger.info(f"Seeded system segments for profile {profile_id}")

    logger.info("Database initialization completed!")
    db.close()


if __name__ == "__main__":
    init_database(sys.argv[1:])
