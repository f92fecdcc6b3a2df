"""全局配置管理

所有用户可配置项均通过 .env 文件设置，运行时自动加载到此处。

使用方式：
    1. 手动创建 .env 文件（参考下方字段，键名大小写不敏感）
    2. 或直接通过环境变量覆盖，例如 ``DATABASE_URL=sqlite:///data/folio.db``
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/folio.db"

    # ========== 顾客分群 ==========
    # 计算分群人数时最多读取的顾客数（按最近来访排序）
    segment_customer_limit: int = 2000

    # ========== 自动化任务 ==========
    automation_batch_size: int = 50
    send_timeout_seconds: float = 30.0
    # processing 状态超过此时长视为认领失效
    claim_lease_minutes: int = 30
    process_interval_minutes: int = 5
    inactivity_scan_hour: int = 9
    cron_secret: str = ""

    # ========== 邮件文案 ==========
    default_business_name: str = "Folio"
    default_customer_name: str = "お客様"
    app_url: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
