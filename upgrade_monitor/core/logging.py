"""
Logging Configuration
"""

import logging
import re
import sys
from pathlib import Path
from typing import Optional

from upgrade_monitor.config.settings import settings


class CredentialFilter(logging.Filter):
    """
    屏蔽日志中的认证信息，避免 Basic 凭证或密码被写入日志。
    """

    _PATTERNS = (
        (re.compile(r"(Authorization['\"]?\s*[:=]\s*['\"]?Basic\s+)[A-Za-z0-9+/=]+", re.IGNORECASE), r"\1***"),
        (re.compile(r"(password['\"]?\s*[:=]\s*['\"]?)[^'\",\s}]+", re.IGNORECASE), r"\1***"),
    )

    def _redact(self, text: str) -> str:
        for pattern, replacement in self._PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            if isinstance(record.msg, str):
                record.msg = self._redact(record.msg)
            if isinstance(record.args, tuple) and record.args:
                record.args = tuple(
                    self._redact(a) if isinstance(a, str) else a for a in record.args
                )
        except Exception:  # pylint: disable=broad-except
            pass
        return True


def _tune_external_loggers():
    # 降低第三方库噪音，防止请求头被打印
    for name in (
        "httpx",
        "httpcore",
        "urllib3",
        "redis",
    ):
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(
    log_level: Optional[str] = None,
    log_file: Optional[str] = None,
    log_format: Optional[str] = None
):
    """
    配置日志系统

    Args:
        log_level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_file: 日志文件路径
        log_format: 日志格式
    """
    level = log_level or settings.LOG_LEVEL
    log_path = log_file or settings.LOG_FILE
    fmt = log_format or settings.LOG_FORMAT

    level_map = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }
    numeric_level = level_map.get(level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # 清除现有的处理器
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter(fmt))
    root_logger.addHandler(console_handler)

    if log_path:
        try:
            log_file_path = Path(log_path)
            log_file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_path, encoding='utf-8')
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(logging.Formatter(fmt))
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning("无法创建日志文件 %s: %s", log_path, e)

    credential_filter = CredentialFilter()
    for handler in root_logger.handlers:
        handler.addFilter(credential_filter)

    logging.getLogger('uvicorn').setLevel(logging.INFO)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('fastapi').setLevel(logging.INFO)
    logging.getLogger('asyncio').setLevel(logging.WARNING)

    _tune_external_loggers()


# 初始化日志
setup_logging()

# 创建全局日志记录器
logger = logging.getLogger('upgrade-monitor')
