"""全局配置管理

所有部署相关的配置项均通过 .env 文件设置，运行时自动加载到此处。
业务相关的可调整参数（宽限期、散客价格、优惠券价格等）存储在数据库
settings 表中，默认值见 config/defaults.py。
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/gym.db"

    # ========== Web 平台配置 ==========
    web_host: str = "0.0.0.0"
    web_port: int = 8080
    token_ttl_hours: int = 12

    # ========== 媒体文件 ==========
    media_dir: str = "data/media"
    media_url_prefix: str = "/media"

    # ========== 业务参数 ==========
    # 报表与日期分桶使用的固定时区偏移（GMT+8）
    timezone_offset_hours: int = 8
    default_grace_period_days: int = 7
    page_size: int = 15

    # ========== 定时任务（本地时间） ==========
    summary_job_hour: int = 0
    summary_job_minute: int = 5

    # ========== 初始管理员 ==========
    bootstrap_admin_email: str = "admin@gym.local"
    bootstrap_admin_password: str = "admin123"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
