"""全局配置管理

所有用户可配置项均通过 .env 文件设置，运行时自动加载到此处。

使用方式：
    1. 手动创建 .env 文件，写入需要覆盖的配置项
    2. 或直接设置同名环境变量（大小写不敏感）
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """应用配置 - 所有字段均可通过 .env 或环境变量覆盖"""

    # ========== 数据库 ==========
    database_url: str = "sqlite:///data/merchants.db"
    database_echo: bool = False

    # ========== 初始化种子数据 ==========
    default_admin_username: str = "admin"
    default_admin_password: str = "admin123"
    default_admin_display_name: str = "系统管理员"
    default_api_key: str = ""  # 为空时首次启动随机生成

    # ========== 旧数据迁移 ==========
    legacy_json_path: str = "data/merchants.json"

    # ========== 日志 ==========
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# 全局配置实例
settings = Settings()
