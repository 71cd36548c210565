"""
Configuration Management
"""

from pathlib import Path
from typing import List, Optional
from pydantic_settings import BaseSettings  # type: ignore

# 计算项目根目录，确保无论从哪里运行都能找到根目录下的 .env
_CURRENT_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CURRENT_DIR.parent
_PROJECT_ROOT = _PACKAGE_DIR.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

class Settings(BaseSettings):
    """应用配置"""

    # 应用配置
    APP_NAME: str = "Cluster Upgrade Monitor"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # 服务器配置
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:5173"]

    # 轮询配置（毫秒）
    POLL_INTERVAL_MS: int = 5000
    POLL_INTERVAL_MIN_MS: int = 3000
    POLL_INTERVAL_MAX_MS: int = 60000
    # 首次激活集群前的防抖延迟，避免快速切换时重复健康检查
    ACTIVATION_DEBOUNCE_MS: int = 100
    # 连接失败后的自动重连探测周期
    AUTO_RETRY_INTERVAL_MS: int = 60000

    # Elasticsearch 请求配置
    REQUEST_TIMEOUT_MS: int = 8000
    HEALTH_CHECK_TIMEOUT_MS: int = 3000
    REQUEST_RETRY_ATTEMPTS: int = 2
    REQUEST_RETRY_DELAY_MS: int = 500
    VERIFY_SSL: bool = True

    # 健康历史与通知
    HEALTH_HISTORY_LIMIT: int = 40
    NOTIFICATION_LIMIT: int = 50

    # 存储配置: memory|redis
    STORAGE_BACKEND: str = "memory"
    STORAGE_KEY_PREFIX: str = "eum/"
    REDIS_URL: str = "redis://localhost:6379/0"

    # 日志配置
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: Optional[str] = None

    class Config:
        env_file = _ENV_FILE
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"  # 忽略未声明的环境变量，避免启动失败

settings = Settings()
