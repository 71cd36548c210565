"""
Test Configuration
"""

import asyncio
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from upgrade_monitor.core.scheduler import ScheduledTask
from upgrade_monitor.main import create_app
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
from upgrade_monitor.services.monitoring_service import MonitoringService
from upgrade_monitor.services.storage_service import (
    ConnectionStore,
    MemoryKeyValueStore,
    PreferenceStore,
)
from upgrade_monitor.services.upgrade_order_service import annotate_upgrade_order


class ManualScheduler:
    """手动触发的调度器，记录所有定时任务"""

    def __init__(self):
        self.entries = []

    def call_later(self, delay, callback, name="once"):
        handle = ScheduledTask(name, delay, repeat=False)
        self.entries.append((handle, callback))
        return handle

    def call_every(self, interval, callback, name="every"):
        handle = ScheduledTask(name, interval, repeat=True)
        self.entries.append((handle, callback))
        return handle

    def active(self, prefix: str = "") -> List[ScheduledTask]:
        return [h for h, _ in self.entries if h.active and h.name.startswith(prefix)]

    @property
    def active_timers(self) -> int:
        return len(self.active())

    async def fire(self, prefix: str) -> int:
        """执行名称以 prefix 开头的所有活动定时任务一次"""
        fired = 0
        for handle, callback in list(self.entries):
            if not handle.active or not handle.name.startswith(prefix):
                continue
            if not handle.repeat:
                handle.mark_finished()
            await callback()
            fired += 1
        return fired

    async def shutdown(self):
        for handle, _ in self.entries:
            handle.cancel()


class FakeElasticsearchClient:
    """内存中的 Elasticsearch 客户端替身"""

    def __init__(self):
        self.health_results: Dict[str, HealthCheckResult] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.gate: Optional[asyncio.Event] = None
        self.tick = 0
        self.nodes = [
            NodeInfo(node_role="dim", name="data-1", ip="10.0.0.1", version="8.11.0", uptime="3d"),
            NodeInfo(node_role="m", name="master-1", ip="10.0.0.2", version="8.11.0", uptime="5d"),
            NodeInfo(node_role="h", name="hot-1", ip="10.0.0.3", version="8.12.0", uptime="1h"),
        ]

    def calls_of(self, name: str) -> List[str]:
        return [label for call, label in self.calls if call == name]

    async def check_cluster_health(self, cluster: ClusterConnection) -> HealthCheckResult:
        self.calls.append(("health_check", cluster.label))
        return self.health_results.get(cluster.label, HealthCheckResult(success=True))

    async def _get(self, name: str, cluster: ClusterConnection, value):
        self.calls.append((name, cluster.label))
        if self.gate is not None:
            await self.gate.wait()
        exc = self.failures.get(name)
        if exc is not None:
            raise exc
        return value

    async def get_allocation(self, cluster):
        rows = [
            CatAllocationRow(shards=10, disk_avail="100gb", node="data-1", ip="10.0.0.1"),
            CatAllocationRow(shards=4, disk_avail="40gb", node="hot-1", ip="10.0.0.3"),
        ]
        return await self._get("allocation", cluster, rows)

    async def get_recovery(self, cluster):
        rows = [
            RecoveryRow(index="logs", shard="0", stage="done", target_node="hot-1"),
            RecoveryRow(index="logs", shard="1", stage="index", target_node="data-1"),
            RecoveryRow(index="metrics", shard="0", stage="index", target="10.0.0.3", target_node="hot-1"),
            RecoveryRow(index="metrics", shard="1", stage="index", target="10.0.0.3"),
        ]
        return await self._get("recovery", cluster, rows)

    async def get_cluster_health(self, cluster):
        health = ClusterHealth(cluster_name=cluster.label, status="green", number_of_nodes=len(self.nodes))
        return await self._get("cluster_health", cluster, health)

    async def get_nodes(self, cluster):
        return await self._get("nodes", cluster, annotate_upgrade_order(self.nodes))

    async def get_cluster_settings(self, cluster):
        settings = ClusterSettings(
            persistent={"cluster.routing.allocation.enable": "all"},
            transient={"cluster.routing.allocation.node_initial_primaries_recoveries": "4"},
        )
        return await self._get("cluster_settings", cluster, settings)

    async def get_cat_health(self, cluster):
        self.tick += 1
        row = CatHealthRow(
            epoch=str(1700000000 + self.tick),
            timestamp=f"10:00:{self.tick:02d}",
            cluster=cluster.label,
            status="green",
        )
        return await self._get("cat_health", cluster, [row])

    async def _command(self, name: str, cluster: ClusterConnection):
        self.calls.append((name, cluster.label))
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    async def flush_cluster(self, cluster):
        await self._command("flush", cluster)

    async def disable_shard_allocation(self, cluster):
        await self._command("disable_allocation", cluster)

    async def enable_shard_allocation(self, cluster):
        await self._command("enable_allocation", cluster)

    async def stop_shard_rebalance(self, cluster):
        await self._command("stop_rebalance", cluster)

    async def enable_shard_rebalance(self, cluster):
        await self._command("enable_rebalance", cluster)

    async def update_recovery_setting(self, cluster, value):
        await self._command(f"recovery_setting:{value}", cluster)


PROD = ClusterConnection(label="prod", base_url="http://prod:9200", username="elastic", password="secret")
STAGING = ClusterConnection(label="staging", base_url="http://staging:9200")


@pytest.fixture
def es_client():
    """Elasticsearch 客户端替身"""
    return FakeElasticsearchClient()


@pytest.fixture
def scheduler():
    """手动调度器"""
    return ManualScheduler()


@pytest.fixture
def kv_store():
    """内存存储，预置两个集群"""
    return MemoryKeyValueStore({
        "eum/clusters": [PROD.model_dump(), STAGING.model_dump()],
        "eum/active-cluster": "prod",
    })


@pytest.fixture
def service_factory(es_client, scheduler):
    """创建监控服务"""

    def factory(store: Optional[MemoryKeyValueStore] = None) -> MonitoringService:
        store = store if store is not None else MemoryKeyValueStore()
        return MonitoringService(
            client=es_client,
            connection_store=ConnectionStore(store, prefix="eum/"),
            preference_store=PreferenceStore(store, prefix="eum/"),
            scheduler=scheduler,
        )

    return factory


@pytest.fixture
def service(service_factory, kv_store):
    """预置两个集群的监控服务（尚未启动）"""
    return service_factory(kv_store)


@pytest.fixture
def client(service):
    """创建测试客户端"""
    app = create_app()
    app.state.monitoring_service = service
    with TestClient(app) as test_client:
        yield test_client
