"""
HTTP client for the Elasticsearch monitoring endpoints.
"""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Dict, List, Optional

import httpx
from httpx import Timeout
from pydantic import ValidationError

from upgrade_monitor.config.settings import settings
from upgrade_monitor.core.constants import (
    ALLOCATION_ENABLE_SETTING,
    CLUSTER_SETTINGS_PATH,
    DEFAULT_HEADERS,
    ENDPOINTS,
    FLUSH_PATH,
    NETWORK_ERROR_TEMPLATE,
    REBALANCE_ENABLE_SETTING,
    RECOVERY_THROTTLE_SETTING,
)
from upgrade_monitor.core.exceptions import ElasticsearchRequestError, TransportErrorKind
from upgrade_monitor.core.logging import logger
from upgrade_monitor.schemas.cluster import (
    CatAllocationRow,
    CatHealthRow,
    ClusterConnection,
    ClusterHealth,
    ClusterSettings,
    NodeInfo,
    RecoveryRow,
)
from upgrade_monitor.schemas.monitoring import HealthCheckResult
from upgrade_monitor.services.upgrade_order_service import annotate_upgrade_order


def build_headers(cluster: ClusterConnection) -> Dict[str, str]:
    """构建请求头，用户名和密码都存在时附加 Basic 认证"""
    headers = dict(DEFAULT_HEADERS)
    if cluster.username and cluster.password:
        token = base64.b64encode(
            f"{cluster.username}:{cluster.password}".encode("utf-8")
        ).decode("utf-8")
        headers["Authorization"] = f"Basic {token}"
    return headers


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return 0


class ElasticsearchClient:
    """Elasticsearch REST 客户端"""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        request_timeout_ms: int = settings.REQUEST_TIMEOUT_MS,
        health_check_timeout_ms: int = settings.HEALTH_CHECK_TIMEOUT_MS,
        retry_attempts: int = settings.REQUEST_RETRY_ATTEMPTS,
        retry_delay_ms: int = settings.REQUEST_RETRY_DELAY_MS,
        verify_ssl: bool = settings.VERIFY_SSL,
    ):
        self.transport = transport
        self.request_timeout = Timeout(request_timeout_ms / 1000)
        self.health_check_timeout = Timeout(health_check_timeout_ms / 1000)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay_ms / 1000
        self.verify_ssl = verify_ssl

    def _client(self, timeout: Timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, verify=self.verify_ssl, transport=self.transport)

    async def _send(
        self,
        method: str,
        path: str,
        cluster: ClusterConnection,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{cluster.base_url}{path}"
        try:
            async with self._client(self.request_timeout) as client:
                response = await client.request(method, url, headers=build_headers(cluster), json=body)
        except httpx.TimeoutException as exc:
            raise ElasticsearchRequestError(TransportErrorKind.TIMEOUT, "Request timeout") from exc
        except (httpx.TransportError, httpx.InvalidURL) as exc:
            # 连接被拒绝、DNS 解析失败、网络不可达、地址无法解析等
            raise ElasticsearchRequestError(TransportErrorKind.NETWORK, "Network error") from exc

        if not response.is_success:
            raise ElasticsearchRequestError(
                TransportErrorKind.HTTP_STATUS,
                f"Elasticsearch {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ElasticsearchRequestError(
                TransportErrorKind.PARSE,
                f"Invalid JSON response from {path.split('?')[0]}",
                status_code=response.status_code,
            ) from exc

    async def request(self, endpoint: str, cluster: ClusterConnection) -> Any:
        """GET 只读接口，失败后延迟重试一次"""
        path = ENDPOINTS[endpoint]
        attempt = 1
        while True:
            try:
                return await self._send("GET", path, cluster)
            except ElasticsearchRequestError as exc:
                if attempt >= self.retry_attempts:
                    raise
                logger.debug(
                    "请求 %s 失败 (%s)，%.1fs 后重试: %s",
                    endpoint, exc.kind.value, self.retry_delay * attempt, exc.message
                )
                await asyncio.sleep(self.retry_delay * attempt)
                attempt += 1

    async def check_cluster_health(self, cluster: ClusterConnection) -> HealthCheckResult:
        """轻量健康检查，用于判断集群是否可达"""
        url = f"{cluster.base_url}{ENDPOINTS['cluster_health']}"
        try:
            async with self._client(self.health_check_timeout) as client:
                response = await client.get(url, headers=build_headers(cluster))
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.warning("集群 %s 健康检查失败: %s", cluster.label, exc)
            return HealthCheckResult(
                success=False,
                error=NETWORK_ERROR_TEMPLATE.format(base_url=cluster.base_url),
            )
        if response.is_success:
            return HealthCheckResult(success=True)
        return HealthCheckResult(
            success=False,
            error=f"Elasticsearch {response.status_code} {response.reason_phrase}",
        )

    @staticmethod
    def _expect_list(data: Any, endpoint: str) -> List[Dict[str, Any]]:
        if not isinstance(data, list):
            raise ElasticsearchRequestError(
                TransportErrorKind.PARSE, f"Unexpected response format from {endpoint}"
            )
        return data

    async def get_allocation(self, cluster: ClusterConnection) -> List[CatAllocationRow]:
        data = self._expect_list(await self.request("allocation", cluster), "allocation")
        try:
            return [
                CatAllocationRow(
                    shards=_to_int(row.get("shards")),
                    disk_avail=row.get("disk.avail") or "N/A",
                    node=row.get("node") or "",
                    ip=row.get("ip"),
                )
                for row in data
            ]
        except (AttributeError, ValidationError) as exc:
            raise ElasticsearchRequestError(TransportErrorKind.PARSE, f"Invalid allocation data: {exc}") from exc

    async def get_recovery(self, cluster: ClusterConnection) -> List[RecoveryRow]:
        data = self._expect_list(await self.request("recovery", cluster), "recovery")
        try:
            return [
                RecoveryRow(
                    index=row.get("index") or "",
                    shard=str(row.get("shard") or ""),
                    time=row.get("time") or "",
                    source_node=row.get("source_node") or "",
                    target_node=row.get("target_node") or "",
                    target=row.get("target") or row.get("target_node") or "",
                    files_percent=row.get("fp") or "0%",
                    bytes_percent=row.get("bytes_percent") or row.get("bp") or "0%",
                    stage=row.get("stage") or "",
                    translog=row.get("translog") or "",
                )
                for row in data
            ]
        except (AttributeError, ValidationError) as exc:
            raise ElasticsearchRequestError(TransportErrorKind.PARSE, f"Invalid recovery data: {exc}") from exc

    async def get_cluster_health(self, cluster: ClusterConnection) -> ClusterHealth:
        data = await self.request("cluster_health", cluster)
        try:
            return ClusterHealth.model_validate(data)
        except ValidationError as exc:
            raise ElasticsearchRequestError(TransportErrorKind.PARSE, f"Invalid cluster health: {exc}") from exc

    async def get_nodes(self, cluster: ClusterConnection) -> List[NodeInfo]:
        data = self._expect_list(await self.request("nodes", cluster), "nodes")
        try:
            nodes = [
                NodeInfo(
                    node_role=row.get("node.role") or "",
                    name=row.get("name") or "",
                    ip=row.get("ip"),
                    version=row.get("version") or "",
                    uptime=row.get("uptime") or "",
                )
                for row in data
            ]
        except (AttributeError, ValidationError) as exc:
            raise ElasticsearchRequestError(TransportErrorKind.PARSE, f"Invalid nodes data: {exc}") from exc
        return annotate_upgrade_order(nodes)

    async def get_cluster_settings(self, cluster: ClusterConnection) -> ClusterSettings:
        data = await self.request("cluster_settings", cluster)
        try:
            return ClusterSettings.model_validate(data)
        except ValidationError as exc:
            raise ElasticsearchRequestError(TransportErrorKind.PARSE, f"Invalid cluster settings: {exc}") from exc

    async def get_cat_health(self, cluster: ClusterConnection) -> List[CatHealthRow]:
        data = self._expect_list(await self.request("cat_health", cluster), "cat_health")
        try:
            return [CatHealthRow.model_validate(row) for row in data]
        except ValidationError as exc:
            raise ElasticsearchRequestError(TransportErrorKind.PARSE, f"Invalid cat health data: {exc}") from exc

    # ---- 写操作：不重试，结果只由 HTTP 响应决定 ----

    async def flush_cluster(self, cluster: ClusterConnection) -> None:
        await self._send("POST", FLUSH_PATH, cluster)

    async def _put_setting(self, cluster: ClusterConnection, scope: str, key: str, value: Any) -> None:
        await self._send("PUT", CLUSTER_SETTINGS_PATH, cluster, body={scope: {key: value}})

    async def disable_shard_allocation(self, cluster: ClusterConnection) -> None:
        await self._put_setting(cluster, "persistent", ALLOCATION_ENABLE_SETTING, "primaries")

    async def enable_shard_allocation(self, cluster: ClusterConnection) -> None:
        await self._put_setting(cluster, "persistent", ALLOCATION_ENABLE_SETTING, "all")

    async def stop_shard_rebalance(self, cluster: ClusterConnection) -> None:
        await self._put_setting(cluster, "persistent", REBALANCE_ENABLE_SETTING, "none")

    async def enable_shard_rebalance(self, cluster: ClusterConnection) -> None:
        await self._put_setting(cluster, "persistent", REBALANCE_ENABLE_SETTING, "all")

    async def update_recovery_setting(self, cluster: ClusterConnection, value: int) -> None:
        await self._put_setting(cluster, "transient", RECOVERY_THROTTLE_SETTING, value)
