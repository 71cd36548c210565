"""
Redis Configuration
"""

from typing import Optional

import redis
from upgrade_monitor.config.settings import settings

_redis_client: Optional[redis.Redis] = None

def get_redis() -> redis.Redis:
    """获取Redis客户端（首次调用时创建）"""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True
        )
    return _redis_client
