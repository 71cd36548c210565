"""
Test Monitoring Service
"""

import asyncio

import httpx
import pytest
from pydantic import ValidationError

from upgrade_monitor.core.exceptions import (
    CustomException,
    ElasticsearchRequestError,
    ErrorCode,
    TransportErrorKind,
)
from upgrade_monitor.schemas.cluster import ClusterConnection, ClusterConnectionCreate
from upgrade_monitor.schemas.monitoring import ConnectionState, ErrorKind, HealthCheckResult
from upgrade_monitor.services.elasticsearch_client import ElasticsearchClient
from upgrade_monitor.services.monitoring_service import MonitoringService
from upgrade_monitor.services.storage_service import ConnectionStore, MemoryKeyValueStore, PreferenceStore

UNREACHABLE = HealthCheckResult(
    success=False,
    error="Network error, cannot access your cluster. Cluster uri: http://prod:9200",
)


def network_error():
    return ElasticsearchRequestError(TransportErrorKind.NETWORK, "Network error")


async def started(service, scheduler):
    await service.start()
    await scheduler.fire("activate")
    return service


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


async def test_start_waits_for_debounce_then_fetches(service, scheduler, es_client):
    """测试激活后经过防抖延迟再检查健康并拉取"""
    await service.start()

    assert service.state == ConnectionState.UNINITIALIZED
    assert es_client.calls == []
    assert scheduler.active("activate")[0].delay == pytest.approx(0.1)

    await scheduler.fire("activate")

    assert service.state == ConnectionState.IDLE_POLLING
    assert es_client.calls_of("health_check") == ["prod"]
    assert service.snapshot.cluster_label == "prod"
    assert len(service.health_history) == 1
    assert service.last_updated == service.snapshot.fetched_at
    assert len(scheduler.active("poll:prod")) == 1
    assert not service.loading


async def test_health_check_runs_once_per_activation(service, scheduler, es_client):
    """测试同一次激活只做一次健康检查"""
    await started(service, scheduler)
    await service._initial_health_check(service.generation)

    assert es_client.calls_of("health_check") == ["prod"]


async def test_no_clusters_holds_in_no_connection(service_factory, scheduler):
    """测试没有集群时保持无连接状态"""
    service = service_factory(MemoryKeyValueStore())
    await service.start()
    await service.refresh()

    assert service.state == ConnectionState.NO_CONNECTION
    assert service.error.kind == ErrorKind.CONFIGURATION
    assert service.error.message == "Please add a cluster to start monitoring."
    assert scheduler.active_timers == 0


async def test_start_restores_preferences(service_factory, es_client):
    """测试启动时恢复轮询间隔，当前集群不存在时使用第一个"""
    store = MemoryKeyValueStore({
        "eum/clusters": [{"label": "a", "base_url": "http://a:9200"}, {"label": "b", "base_url": "http://b:9200"}],
        "eum/active-cluster": "gone",
        "eum/poll-interval": 999999,
    })
    service = service_factory(store)
    await service.start()

    assert service.active_cluster.label == "a"
    assert service.poll_interval_ms == 60000
    assert store.get("eum/active-cluster") == "a"


async def test_failed_health_check_enters_degraded(service, scheduler, es_client):
    """测试健康检查失败进入降级状态"""
    es_client.health_results["prod"] = UNREACHABLE
    await started(service, scheduler)

    assert service.state == ConnectionState.DEGRADED_RETRYING
    assert service.connection_failed
    assert service.error.kind == ErrorKind.CONNECTIVITY
    assert service.error.message == UNREACHABLE.error
    assert es_client.calls_of("allocation") == []
    assert scheduler.active("poll") == []
    assert len(scheduler.active("auto-retry")) == 1
    assert scheduler.active("auto-retry")[0].delay == 60


async def test_degraded_mode_keeps_single_retry_timer(service, scheduler, es_client):
    """测试多次连接失败只保留一个自动重连探测"""
    await started(service, scheduler)
    es_client.failures["nodes"] = network_error()
    es_client.health_results["prod"] = UNREACHABLE

    await scheduler.fire("poll")

    assert service.state == ConnectionState.DEGRADED_RETRYING
    assert service.error.message == "Network error, cannot access your cluster. Cluster uri: http://prod:9200"
    assert scheduler.active("poll") == []
    assert len(scheduler.active("auto-retry")) == 1

    await scheduler.fire("auto-retry")
    await scheduler.fire("auto-retry")
    await service.retry_connection()

    assert service.connection_failed
    assert len(scheduler.active("auto-retry")) == 1


async def test_degraded_skips_refresh(service, scheduler, es_client):
    """测试降级状态下跳过拉取"""
    es_client.health_results["prod"] = UNREACHABLE
    await started(service, scheduler)
    await service.refresh()

    assert es_client.calls_of("allocation") == []


async def test_auto_retry_recovers(service, scheduler, es_client):
    """测试自动重连成功后直接拉取并恢复轮询"""
    es_client.health_results["prod"] = UNREACHABLE
    await started(service, scheduler)

    del es_client.health_results["prod"]
    await scheduler.fire("auto-retry")

    assert not service.connection_failed
    assert service.state == ConnectionState.IDLE_POLLING
    assert service.error is None
    assert service.snapshot is not None
    assert scheduler.active("auto-retry") == []
    assert len(scheduler.active("poll")) == 1


async def test_manual_retry_recovers(service, scheduler, es_client):
    """测试手动重连"""
    es_client.health_results["prod"] = UNREACHABLE
    await started(service, scheduler)

    del es_client.health_results["prod"]
    await service.retry_connection()

    assert service.state == ConnectionState.IDLE_POLLING
    assert scheduler.active("auto-retry") == []


async def test_http_error_is_transient(service, scheduler, es_client):
    """测试 HTTP 错误为非致命错误：保留快照并继续轮询"""
    await started(service, scheduler)
    previous = service.snapshot
    es_client.failures["cluster_settings"] = ElasticsearchRequestError(
        TransportErrorKind.HTTP_STATUS, "Elasticsearch 403 Forbidden", status_code=403
    )

    await scheduler.fire("poll")

    assert service.state == ConnectionState.IDLE_POLLING
    assert not service.connection_failed
    assert service.error.kind == ErrorKind.TRANSIENT
    assert service.error.message == "Elasticsearch 403 Forbidden"
    assert not service.error.blocking
    assert service.snapshot is previous
    assert len(scheduler.active("poll")) == 1
    assert service.notifications[-1].title == "Data refresh failed"


async def test_transient_failure_on_first_fetch_starts_polling(service, scheduler, es_client):
    """测试首次拉取失败（非连接问题）也会开始轮询"""
    es_client.failures["nodes"] = ElasticsearchRequestError(TransportErrorKind.PARSE, "Invalid nodes data")
    await started(service, scheduler)

    assert service.snapshot is None
    assert service.error.kind == ErrorKind.TRANSIENT
    assert len(scheduler.active("poll")) == 1


async def test_timeout_with_healthy_check_is_transient(service, scheduler, es_client):
    """测试超时但健康检查成功时按非致命错误处理"""
    await started(service, scheduler)
    es_client.failures["recovery"] = ElasticsearchRequestError(TransportErrorKind.TIMEOUT, "Request timeout")

    await scheduler.fire("poll")

    assert es_client.calls_of("health_check") == ["prod", "prod"]
    assert not service.connection_failed
    assert service.error.kind == ErrorKind.TRANSIENT
    assert service.error.message == "Request timeout"


async def test_timeout_with_failed_check_is_connectivity(service, scheduler, es_client):
    """测试超时且健康检查失败时进入降级状态"""
    await started(service, scheduler)
    es_client.failures["recovery"] = ElasticsearchRequestError(TransportErrorKind.TIMEOUT, "Request timeout")
    es_client.health_results["prod"] = UNREACHABLE

    await scheduler.fire("poll")

    assert service.connection_failed
    assert service.state == ConnectionState.DEGRADED_RETRYING
    assert len(scheduler.active("auto-retry")) == 1


async def test_stale_fetch_is_discarded_after_switch(service, scheduler, es_client):
    """测试切换集群后旧集群的拉取结果被丢弃"""
    await service.start()
    es_client.gate = asyncio.Event()
    pending = asyncio.create_task(scheduler.fire("activate"))
    await settle()
    assert es_client.calls_of("allocation") == ["prod"]

    service.set_active_cluster("staging")
    es_client.gate.set()
    await pending

    assert service.snapshot is None
    assert service.state == ConnectionState.UNINITIALIZED
    assert scheduler.active("poll") == []

    await scheduler.fire("activate")

    assert service.snapshot.cluster_label == "staging"
    assert all(row.cluster == "staging" for row in service.health_history)


async def test_tick_skipped_while_fetch_outstanding(service, scheduler, es_client):
    """测试上一次拉取未完成时跳过轮询"""
    await started(service, scheduler)
    es_client.gate = asyncio.Event()
    pending = asyncio.create_task(service.refresh())
    await settle()

    await scheduler.fire("poll")
    await scheduler.fire("poll")
    es_client.gate.set()
    await pending

    assert es_client.calls_of("allocation") == ["prod", "prod"]


async def test_set_poll_interval_clamps_and_restarts(service, scheduler, kv_store):
    """测试轮询间隔被限制在范围内并重启定时器"""
    await started(service, scheduler)

    assert service.set_poll_interval(1000) == 3000
    assert service.set_poll_interval(120000) == 60000
    assert service.set_poll_interval(10000) == 10000

    active = scheduler.active("poll")
    assert len(active) == 1
    assert active[0].delay == 10
    assert kv_store.get("eum/poll-interval") == 10000


async def test_set_active_cluster(service, scheduler):
    """测试切换集群"""
    await started(service, scheduler)
    generation = service.generation

    service.set_active_cluster("prod")
    assert service.generation == generation

    service.set_active_cluster("staging")
    assert service.generation == generation + 1
    assert service.active_cluster.label == "staging"
    assert scheduler.active("poll") == []
    assert len(scheduler.active("activate:staging")) == 1

    with pytest.raises(CustomException) as exc_info:
        service.set_active_cluster("missing")
    assert exc_info.value.code == ErrorCode.CLUSTER_NOT_FOUND


async def test_delete_last_cluster_rejected(service_factory):
    """测试不能删除最后一个集群"""
    store = MemoryKeyValueStore({"eum/clusters": [{"label": "only", "base_url": "http://only:9200"}]})
    service = service_factory(store)
    await service.start()

    with pytest.raises(CustomException) as exc_info:
        service.delete_cluster("only")

    assert exc_info.value.code == ErrorCode.LAST_CLUSTER_DELETE_FORBIDDEN
    assert [c.label for c in service.clusters] == ["only"]


async def test_delete_active_cluster_activates_next(service, scheduler, kv_store):
    """测试删除当前集群后激活剩余的第一个并重新启动状态机"""
    await started(service, scheduler)

    service.delete_cluster("prod")

    assert service.active_cluster.label == "staging"
    assert service.state == ConnectionState.UNINITIALIZED
    assert service.snapshot is None
    assert scheduler.active("poll") == []
    assert len(scheduler.active("activate:staging")) == 1
    assert [c["label"] for c in kv_store.get("eum/clusters")] == ["staging"]
    assert kv_store.get("eum/active-cluster") == "staging"


async def test_delete_inactive_cluster_keeps_state(service, scheduler):
    """测试删除非当前集群不影响监控"""
    await started(service, scheduler)
    generation = service.generation

    service.delete_cluster("staging")

    assert service.generation == generation
    assert service.state == ConnectionState.IDLE_POLLING


async def test_add_cluster_normalizes_and_activates(service, scheduler, kv_store):
    """测试添加集群：规范化地址并设为当前集群"""
    await started(service, scheduler)

    created = service.add_cluster(ClusterConnectionCreate(base_url="  http://new:9200/  "))

    assert created == ClusterConnection(label="http://new:9200", base_url="http://new:9200")
    assert service.active_cluster.label == "http://new:9200"
    assert service.state == ConnectionState.UNINITIALIZED
    assert len(kv_store.get("eum/clusters")) == 3


async def test_add_cluster_with_existing_label_replaces(service, scheduler):
    """测试同名集群会被覆盖"""
    await service.start()
    service.add_cluster(ClusterConnectionCreate(label="staging", base_url="http://staging-2:9200"))

    staging = [c for c in service.clusters if c.label == "staging"]
    assert len(staging) == 1
    assert staging[0].base_url == "http://staging-2:9200"


async def test_update_active_cluster_restarts(service, scheduler, es_client):
    """测试修改当前集群后重新检查连接"""
    await started(service, scheduler)
    generation = service.generation

    service.update_cluster("prod", ClusterConnectionCreate(label="prod-eu", base_url="http://prod-eu:9200"))

    assert service.generation == generation + 1
    assert service.active_cluster.label == "prod-eu"
    await scheduler.fire("activate")
    assert service.snapshot.cluster_label == "prod-eu"


async def test_update_cluster_errors(service):
    """测试修改集群的错误情况"""
    await service.start()

    with pytest.raises(CustomException) as exc_info:
        service.update_cluster("missing", ClusterConnectionCreate(base_url="http://x:9200"))
    assert exc_info.value.code == ErrorCode.CLUSTER_NOT_FOUND

    with pytest.raises(CustomException) as exc_info:
        service.update_cluster("prod", ClusterConnectionCreate(label="staging", base_url="http://x:9200"))
    assert exc_info.value.code == ErrorCode.CLUSTER_ALREADY_EXISTS


@pytest.mark.parametrize("base_url", ["http://prod:92x0", "prod:9200", "http://"])
def test_create_rejects_unparseable_url(base_url):
    """测试无法解析的地址在创建时被拒绝"""
    with pytest.raises(ValidationError):
        ClusterConnectionCreate(base_url=base_url)


async def test_command_success_triggers_fetch(service, scheduler, es_client):
    """测试操作成功后立即刷新数据"""
    await started(service, scheduler)

    result = await service.disable_shard_allocation()

    assert result.success
    assert es_client.calls_of("disable_allocation") == ["prod"]
    assert es_client.calls_of("allocation") == ["prod", "prod"]
    assert service.notifications[-1].title == "Shard allocation disabled"


async def test_command_failure_does_not_change_connection_state(service, scheduler, es_client):
    """测试操作失败只产生通知，不影响连接状态"""
    await started(service, scheduler)
    es_client.failures["flush"] = ElasticsearchRequestError(
        TransportErrorKind.HTTP_STATUS, "Elasticsearch 500 Internal Server Error", status_code=500
    )

    result = await service.flush_cluster()

    assert not result.success
    assert result.error.kind == ErrorKind.COMMAND
    assert service.state == ConnectionState.IDLE_POLLING
    assert not service.connection_failed
    assert service.error is None
    assert service.notifications[-1].level == "error"
    assert es_client.calls_of("allocation") == ["prod"]


async def test_recovery_setting_command(service, scheduler, es_client):
    """测试设置恢复并发数"""
    await started(service, scheduler)

    result = await service.update_recovery_setting(8)

    assert result.success
    assert es_client.calls_of("recovery_setting:8") == ["prod"]


async def test_command_without_cluster(service_factory):
    """测试没有集群时执行操作"""
    service = service_factory(MemoryKeyValueStore())
    await service.start()

    with pytest.raises(CustomException) as exc_info:
        await service.enable_shard_rebalance()

    assert exc_info.value.code == ErrorCode.NO_ACTIVE_CLUSTER
    assert service.notifications[-1].title == "No active cluster"
    assert service.error.blocking


async def test_upgrade_plan_from_snapshot(service, scheduler):
    """测试根据快照生成升级计划"""
    plan = service.get_upgrade_plan()
    assert plan.nodes == []

    await started(service, scheduler)
    plan = service.get_upgrade_plan()

    assert plan.stats.highest_version == "8.12.0"
    assert plan.stats.upgraded == 1
    ordered = {n.name: n.sequential_order for n in plan.nodes}
    assert ordered == {"hot-1": None, "data-1": 1, "master-1": 2}


async def test_get_state_hides_passwords(service, scheduler):
    """测试状态视图不包含密码"""
    await started(service, scheduler)
    state = service.get_state().model_dump(mode="json")

    assert state["active_cluster"] == "prod"
    assert state["clusters"][0]["has_credentials"] is True
    assert "secret" not in str(state)


async def test_shutdown_cancels_timers(service, scheduler):
    """测试关闭时取消所有定时器"""
    await started(service, scheduler)
    await service.shutdown()

    assert scheduler.active_timers == 0


async def test_unparseable_stored_url_enters_degraded(scheduler):
    """测试已保存的地址无法解析时进入降级状态并保留自动重连"""
    store = MemoryKeyValueStore({"eum/clusters": [{"label": "bad", "base_url": "http://prod:92x0"}]})
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json={}))
    service = MonitoringService(
        client=ElasticsearchClient(transport=transport, retry_delay_ms=0),
        connection_store=ConnectionStore(store, prefix="eum/"),
        preference_store=PreferenceStore(store, prefix="eum/"),
        scheduler=scheduler,
    )
    await started(service, scheduler)

    assert service.state == ConnectionState.DEGRADED_RETRYING
    assert service.connection_failed
    assert not service.loading
    assert service.error.message == "Network error, cannot access your cluster. Cluster uri: http://prod:92x0"
    assert len(scheduler.active("auto-retry")) == 1

    result = await service.flush_cluster()
    assert not result.success
    assert result.error.kind == ErrorKind.COMMAND
