"""
Best-effort persistence for cluster connections and monitoring preferences.

Every read falls back to a default and every write swallows backend errors
after logging them: losing a preference must never stop monitoring.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import redis
from pydantic import ValidationError

from upgrade_monitor.config.settings import settings
from upgrade_monitor.core.constants import STORAGE_KEYS
from upgrade_monitor.core.logging import logger
from upgrade_monitor.schemas.cluster import ClusterConnection


class KeyValueStore:
    """键值存储接口，值为可 JSON 序列化的对象"""

    def get(self, key: str, fallback: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """进程内存储，值以 JSON 文本保存以保证与 Redis 行为一致"""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def get(self, key: str, fallback: Any = None) -> Any:
        raw = self._data.get(key)
        if raw is None:
            return fallback
        try:
            return json.loads(raw)
        except ValueError:
            return fallback

    def set(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.warning("存储写入失败 key=%s: %s", key, e)


class RedisKeyValueStore(KeyValueStore):
    """基于 Redis 的存储"""

    def __init__(self, client: redis.Redis):
        self.redis_client = client

    def get(self, key: str, fallback: Any = None) -> Any:
        try:
            value = self.redis_client.get(key)
            if value is None:
                return fallback
            return json.loads(value)
        except (redis.RedisError, ValueError, TypeError) as e:
            logger.warning("存储读取失败 key=%s: %s", key, e)
            return fallback

    def set(self, key: str, value: Any) -> None:
        try:
            self.redis_client.set(key, json.dumps(value))
        except (redis.RedisError, TypeError, ValueError) as e:
            logger.warning("存储写入失败 key=%s: %s", key, e)


class ConnectionStore:
    """集群连接列表存储"""

    def __init__(self, store: KeyValueStore, prefix: str = settings.STORAGE_KEY_PREFIX):
        self.store = store
        self.key = f"{prefix}{STORAGE_KEYS['CLUSTERS']}"

    def load(self) -> List[ClusterConnection]:
        raw = self.store.get(self.key, [])
        if not isinstance(raw, list):
            return []
        connections: List[ClusterConnection] = []
        seen = set()
        for item in raw:
            try:
                connection = ClusterConnection.model_validate(item)
            except ValidationError as e:
                logger.warning("忽略无效的集群配置: %s", e)
                continue
            # 名称必须唯一，重复时保留第一条
            if connection.label in seen:
                continue
            seen.add(connection.label)
            connections.append(connection)
        return connections

    def save(self, connections: List[ClusterConnection]) -> None:
        self.store.set(self.key, [connection.model_dump() for connection in connections])


class PreferenceStore:
    """轮询间隔与当前集群的存储"""

    def __init__(self, store: KeyValueStore, prefix: str = settings.STORAGE_KEY_PREFIX):
        self.store = store
        self.poll_interval_key = f"{prefix}{STORAGE_KEYS['POLL_INTERVAL']}"
        self.active_cluster_key = f"{prefix}{STORAGE_KEYS['ACTIVE_CLUSTER']}"

    def get_poll_interval(self, fallback: int) -> int:
        value = self.store.get(self.poll_interval_key, fallback)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return fallback
        return int(value)

    def set_poll_interval(self, value: int) -> None:
        self.store.set(self.poll_interval_key, value)

    def get_active_cluster(self) -> str:
        value = self.store.get(self.active_cluster_key, "")
        return value if isinstance(value, str) else ""

    def set_active_cluster(self, label: str) -> None:
        self.store.set(self.active_cluster_key, label)


def create_key_value_store(backend: str = settings.STORAGE_BACKEND) -> KeyValueStore:
    """根据配置创建存储后端"""
    if backend == "redis":
        from upgrade_monitor.config.redis import get_redis
        logger.info("使用 Redis 存储: %s", settings.REDIS_URL)
        return RedisKeyValueStore(get_redis())
    if backend != "memory":
        logger.warning("未知的存储后端 %s，使用内存存储", backend)
    return MemoryKeyValueStore()
