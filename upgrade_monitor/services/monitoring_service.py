"""
Cluster monitoring service.

Owns the known cluster connections, the active selection and the polling
state machine:

    uninitialized -> checking_health -> fetching -> idle_polling
                           |               |
                           +-> degraded_retrying <-+

Every activation (start, selection, add, edit or removal of the active
cluster) bumps a generation counter. Results of health checks and fetch
cycles are published only if their generation and cluster label still match
the current ones, so work started for a previous cluster is discarded when it
arrives.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Deque, List, Optional, Sequence, Set, Tuple

from upgrade_monitor.config.settings import settings
from upgrade_monitor.core.constants import NETWORK_ERROR_TEMPLATE, NO_CLUSTER_MESSAGE
from upgrade_monitor.core.exceptions import (
    CustomException,
    ElasticsearchRequestError,
    ErrorCode,
    TransportErrorKind,
)
from upgrade_monitor.core.logging import logger
from upgrade_monitor.core.scheduler import ScheduledTask, Scheduler
from upgrade_monitor.schemas.cluster import (
    ClusterConnection,
    ClusterConnectionCreate,
    ClusterConnectionResponse,
    MonitoringSnapshot,
)
from upgrade_monitor.schemas.monitoring import (
    CommandResult,
    ConnectionState,
    ErrorKind,
    MonitoringError,
    MonitoringState,
    Notification,
    UpgradePlan,
)
from upgrade_monitor.services.elasticsearch_client import ElasticsearchClient
from upgrade_monitor.services.health_history_service import merge_health_history, summarize_status
from upgrade_monitor.services.storage_service import ConnectionStore, PreferenceStore
from upgrade_monitor.services.upgrade_order_service import build_upgrade_plan

ClusterOperation = Callable[[ClusterConnection], Awaitable[None]]

# 多个子请求同时失败时，优先按连接类错误处理
_FAILURE_PRIORITY = {
    TransportErrorKind.NETWORK: 0,
    TransportErrorKind.TIMEOUT: 1,
}


def clamp_poll_interval(ms: int) -> int:
    return min(max(int(ms), settings.POLL_INTERVAL_MIN_MS), settings.POLL_INTERVAL_MAX_MS)


def _pick_failure(failures: Sequence[BaseException]) -> BaseException:
    def rank(exc: BaseException) -> int:
        if isinstance(exc, ElasticsearchRequestError):
            return _FAILURE_PRIORITY.get(exc.kind, 2)
        return 3
    return min(failures, key=rank)


class MonitoringService:
    """集群监控状态机"""

    def __init__(
        self,
        client: ElasticsearchClient,
        connection_store: ConnectionStore,
        preference_store: PreferenceStore,
        scheduler: Optional[Scheduler] = None,
        activation_debounce_ms: int = settings.ACTIVATION_DEBOUNCE_MS,
        auto_retry_interval_ms: int = settings.AUTO_RETRY_INTERVAL_MS,
        history_limit: int = settings.HEALTH_HISTORY_LIMIT,
        notification_limit: int = settings.NOTIFICATION_LIMIT,
    ):
        self.client = client
        self.connection_store = connection_store
        self.preference_store = preference_store
        self.scheduler = scheduler or Scheduler()
        self.activation_debounce = activation_debounce_ms / 1000
        self.auto_retry_interval = auto_retry_interval_ms / 1000
        self.history_limit = history_limit

        self._clusters: Tuple[ClusterConnection, ...] = ()
        self._active_label: Optional[str] = None
        self.poll_interval_ms = settings.POLL_INTERVAL_MS

        self.state = ConnectionState.UNINITIALIZED
        self.snapshot: Optional[MonitoringSnapshot] = None
        self.health_history = []
        self.loading = False
        self.refreshing = False
        self.error: Optional[MonitoringError] = None
        self.connection_failed = False
        self.last_updated: Optional[str] = None
        self.notifications: Deque[Notification] = deque(maxlen=notification_limit)

        self._generation = 0
        self._health_check_done = False
        self._inflight: Set[Tuple[str, int]] = set()
        self._activation_timer: Optional[ScheduledTask] = None
        self._poll_timer: Optional[ScheduledTask] = None
        self._auto_retry_timer: Optional[ScheduledTask] = None

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """加载持久化配置并激活当前集群"""
        self._clusters = tuple(self.connection_store.load())
        self.poll_interval_ms = clamp_poll_interval(
            self.preference_store.get_poll_interval(settings.POLL_INTERVAL_MS)
        )
        stored_label = self.preference_store.get_active_cluster()
        if self._find(stored_label) is not None:
            self._active_label = stored_label
        else:
            self._active_label = self._clusters[0].label if self._clusters else None
        self.preference_store.set_active_cluster(self._active_label or "")
        logger.info(
            "监控服务启动: clusters=%s, active=%s, poll_interval=%sms",
            len(self._clusters), self._active_label, self.poll_interval_ms
        )
        self._activate()

    async def shutdown(self) -> None:
        """取消所有定时器，丢弃尚未返回的结果"""
        self._cancel_timers()
        self._generation += 1
        await self.scheduler.shutdown()
        logger.info("监控服务已停止")

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    @property
    def clusters(self) -> List[ClusterConnection]:
        return list(self._clusters)

    @property
    def active_cluster(self) -> Optional[ClusterConnection]:
        return self._find(self._active_label)

    @property
    def generation(self) -> int:
        return self._generation

    def _find(self, label: Optional[str]) -> Optional[ClusterConnection]:
        if not label:
            return None
        for cluster in self._clusters:
            if cluster.label == label:
                return cluster
        return None

    def _is_current(self, generation: int, label: str) -> bool:
        return generation == self._generation and label == self._active_label

    def get_state(self) -> MonitoringState:
        return MonitoringState(
            state=self.state,
            snapshot=self.snapshot,
            health_history=list(self.health_history),
            status_summary=summarize_status(self.health_history),
            loading=self.loading,
            refreshing=self.refreshing,
            error=self.error,
            connection_failed=self.connection_failed,
            last_updated=self.last_updated,
            poll_interval_ms=self.poll_interval_ms,
            clusters=self.list_cluster_responses(),
            active_cluster=self._active_label,
        )

    def list_cluster_responses(self) -> List[ClusterConnectionResponse]:
        return [
            ClusterConnectionResponse.from_connection(cluster, self._active_label)
            for cluster in self._clusters
        ]

    def get_upgrade_plan(self) -> UpgradePlan:
        if self.snapshot is None:
            return build_upgrade_plan([])
        return build_upgrade_plan(self.snapshot.nodes)

    # ------------------------------------------------------------------
    # 状态迁移
    # ------------------------------------------------------------------

    def _activate(self) -> None:
        """为当前集群重新启动状态机"""
        self._cancel_timers()
        self._generation += 1
        self._health_check_done = False
        self.snapshot = None
        self.health_history = []
        self.last_updated = None
        self.connection_failed = False
        self.loading = False
        self.refreshing = False

        cluster = self.active_cluster
        if cluster is None:
            self._set_no_connection()
            return

        self.state = ConnectionState.UNINITIALIZED
        self.error = None
        generation = self._generation
        self._activation_timer = self.scheduler.call_later(
            self.activation_debounce,
            lambda: self._initial_health_check(generation),
            name=f"activate:{cluster.label}",
        )
        logger.info("激活集群 %s (generation=%s)", cluster.label, generation)

    def _set_no_connection(self) -> None:
        self.state = ConnectionState.NO_CONNECTION
        self.error = MonitoringError(kind=ErrorKind.CONFIGURATION, message=NO_CLUSTER_MESSAGE)
        self.loading = False
        self.refreshing = False
        self.connection_failed = False

    async def _initial_health_check(self, generation: int) -> None:
        cluster = self.active_cluster
        if cluster is None or generation != self._generation or self._health_check_done:
            return
        self._health_check_done = True
        self.state = ConnectionState.CHECKING_HEALTH
        self.loading = True
        self.error = None

        result = await self.client.check_cluster_health(cluster)
        if not self._is_current(generation, cluster.label):
            return
        if not result.success:
            self._enter_degraded(cluster, result.error)
            return
        self.connection_failed = False
        await self._fetch_cycle(cluster, generation)

    async def refresh(self) -> None:
        """立即执行一次完整拉取"""
        cluster = self.active_cluster
        if cluster is None:
            self._set_no_connection()
            return
        await self._fetch_cycle(cluster, self._generation)

    async def _fetch_cycle(self, cluster: ClusterConnection, generation: int) -> None:
        if self.connection_failed:
            logger.debug("集群 %s 处于连接失败状态，跳过本次拉取", cluster.label)
            return
        key = (cluster.label, generation)
        if key in self._inflight:
            logger.debug("集群 %s 上一次拉取尚未完成，跳过本次拉取", cluster.label)
            return

        self._inflight.add(key)
        self.state = ConnectionState.FETCHING
        self.refreshing = True
        try:
            # 子请求互不取消，全部返回后才判定本轮结果
            results = await asyncio.gather(
                self.client.get_allocation(cluster),
                self.client.get_recovery(cluster),
                self.client.get_cluster_health(cluster),
                self.client.get_nodes(cluster),
                self.client.get_cluster_settings(cluster),
                self.client.get_cat_health(cluster),
                return_exceptions=True,
            )
            if not self._is_current(generation, cluster.label):
                logger.info("丢弃集群 %s 的过期拉取结果", cluster.label)
                return

            failures = [item for item in results if isinstance(item, BaseException)]
            if failures:
                await self._handle_fetch_failure(cluster, generation, _pick_failure(failures))
            else:
                self._publish(cluster, generation, results)
        finally:
            self._inflight.discard(key)
            if self._is_current(generation, cluster.label):
                self.loading = False
                self.refreshing = False

    def _publish(self, cluster: ClusterConnection, generation: int, results: Sequence) -> None:
        allocation, recovery, health, nodes, cluster_settings, cat_health = results
        fetched_at = datetime.now(timezone.utc).isoformat()
        self.snapshot = MonitoringSnapshot(
            cluster_label=cluster.label,
            allocation=allocation,
            recovery=recovery,
            health=health,
            nodes=nodes,
            settings=cluster_settings,
            cat_health=cat_health,
            fetched_at=fetched_at,
        )
        self.health_history = merge_health_history(self.health_history, cat_health, self.history_limit)
        self.last_updated = fetched_at
        self.connection_failed = False
        self.error = None
        self.state = ConnectionState.IDLE_POLLING
        self._ensure_polling(cluster, generation)
        logger.debug("集群 %s 数据已更新: status=%s, nodes=%s", cluster.label, health.status, len(nodes))

    async def _handle_fetch_failure(
        self, cluster: ClusterConnection, generation: int, exc: BaseException
    ) -> None:
        message = getattr(exc, "message", None) or str(exc) or "Unknown error occurred"

        if isinstance(exc, ElasticsearchRequestError) and exc.is_timeout:
            # 超时不一定是集群不可达，用健康检查确认
            health = await self.client.check_cluster_health(cluster)
            if not self._is_current(generation, cluster.label):
                return
            if not health.success:
                self._enter_degraded(cluster, health.error)
            else:
                self._set_transient(cluster, generation, message)
        elif isinstance(exc, ElasticsearchRequestError) and exc.is_network:
            self._enter_degraded(cluster, NETWORK_ERROR_TEMPLATE.format(base_url=cluster.base_url))
        else:
            if not isinstance(exc, ElasticsearchRequestError):
                logger.error("集群 %s 拉取出现未预期的异常: %s", cluster.label, exc, exc_info=exc)
            self._set_transient(cluster, generation, message)

        self._notify("error", "Data refresh failed", message)

    def _set_transient(self, cluster: ClusterConnection, generation: int, message: str) -> None:
        """非致命错误：提示错误，保留上一次快照，继续轮询"""
        self.error = MonitoringError(kind=ErrorKind.TRANSIENT, message=message)
        self.connection_failed = False
        self.state = ConnectionState.IDLE_POLLING
        self._ensure_polling(cluster, generation)
        logger.warning("集群 %s 拉取失败（继续轮询）: %s", cluster.label, message)

    def _enter_degraded(self, cluster: ClusterConnection, message: Optional[str]) -> None:
        """连接失败：暂停轮询，启动唯一的低频自动重连探测"""
        self.connection_failed = True
        self.error = MonitoringError(
            kind=ErrorKind.CONNECTIVITY,
            message=message or NETWORK_ERROR_TEMPLATE.format(base_url=cluster.base_url),
        )
        self.state = ConnectionState.DEGRADED_RETRYING
        self.loading = False
        self.refreshing = False
        self._cancel_poll()

        if self._auto_retry_timer is None or not self._auto_retry_timer.active:
            generation = self._generation
            self._auto_retry_timer = self.scheduler.call_every(
                self.auto_retry_interval,
                lambda: self._auto_retry_check(generation),
                name=f"auto-retry:{cluster.label}",
            )
        logger.warning("集群 %s 连接失败: %s", cluster.label, self.error.message)

    async def _auto_retry_check(self, generation: int) -> None:
        cluster = self.active_cluster
        if cluster is None or generation != self._generation:
            return
        if not self.connection_failed:
            self._cancel_auto_retry()
            return

        result = await self.client.check_cluster_health(cluster)
        if not self._is_current(generation, cluster.label):
            return
        if not result.success:
            logger.info("集群 %s 仍不可达，%ss 后再次尝试", cluster.label, self.auto_retry_interval)
            return

        logger.info("集群 %s 已恢复连接", cluster.label)
        self._cancel_auto_retry()
        self.connection_failed = False
        self._health_check_done = True
        self.error = None
        await self._fetch_cycle(cluster, generation)

    async def retry_connection(self) -> None:
        """手动重连：重新启动自动重连定时器而不是叠加新的定时器"""
        cluster = self.active_cluster
        if cluster is None:
            return
        self._cancel_auto_retry()
        self._health_check_done = False
        generation = self._generation

        self.loading = True
        self.error = None
        self.connection_failed = False
        self.state = ConnectionState.CHECKING_HEALTH

        result = await self.client.check_cluster_health(cluster)
        if not self._is_current(generation, cluster.label):
            return
        if not result.success:
            self._enter_degraded(cluster, result.error)
            return
        self._health_check_done = True
        await self._fetch_cycle(cluster, generation)

    # ------------------------------------------------------------------
    # 定时器
    # ------------------------------------------------------------------

    def _ensure_polling(self, cluster: ClusterConnection, generation: int) -> None:
        if self._poll_timer is not None and self._poll_timer.active:
            return
        self._poll_timer = self.scheduler.call_every(
            self.poll_interval_ms / 1000,
            lambda: self._poll_tick(generation),
            name=f"poll:{cluster.label}",
        )

    async def _poll_tick(self, generation: int) -> None:
        cluster = self.active_cluster
        if cluster is None or generation != self._generation:
            return
        if self.connection_failed or (cluster.label, generation) in self._inflight:
            return
        await self._fetch_cycle(cluster, generation)

    def _cancel_poll(self) -> None:
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None

    def _cancel_auto_retry(self) -> None:
        if self._auto_retry_timer is not None:
            self._auto_retry_timer.cancel()
            self._auto_retry_timer = None

    def _cancel_timers(self) -> None:
        if self._activation_timer is not None:
            self._activation_timer.cancel()
            self._activation_timer = None
        self._cancel_poll()
        self._cancel_auto_retry()

    def set_poll_interval(self, ms: int) -> int:
        """设置轮询间隔（限制在允许范围内），正在轮询时重新启动定时器"""
        safe_value = clamp_poll_interval(ms)
        self.poll_interval_ms = safe_value
        self.preference_store.set_poll_interval(safe_value)

        if self._poll_timer is not None:
            self._cancel_poll()
            cluster = self.active_cluster
            if cluster is not None and not self.connection_failed:
                self._ensure_polling(cluster, self._generation)
        logger.info("轮询间隔已设置为 %sms", safe_value)
        return safe_value

    # ------------------------------------------------------------------
    # 集群连接管理（写时复制）
    # ------------------------------------------------------------------

    def _save_clusters(self, clusters: Sequence[ClusterConnection]) -> None:
        self._clusters = tuple(clusters)
        self.connection_store.save(list(self._clusters))

    def _select(self, label: Optional[str], force: bool = False) -> None:
        changed = label != self._active_label
        self._active_label = label
        self.preference_store.set_active_cluster(label or "")
        if changed or force:
            self._activate()

    def set_active_cluster(self, label: str) -> ClusterConnection:
        cluster = self._find(label)
        if cluster is None:
            raise CustomException(code=ErrorCode.CLUSTER_NOT_FOUND, message=f"Cluster '{label}' not found")
        if label != self._active_label:
            self._select(label)
        return cluster

    def add_cluster(self, data: ClusterConnectionCreate) -> ClusterConnection:
        """添加集群（同名时覆盖）并设为当前集群"""
        connection = data.to_connection()
        if self._find(connection.label) is not None:
            clusters = [connection if c.label == connection.label else c for c in self._clusters]
        else:
            clusters = list(self._clusters) + [connection]
        self._save_clusters(clusters)
        self._notify("success", "Cluster added", f"{connection.label} is now active.")
        self._select(connection.label, force=True)
        return connection

    def update_cluster(self, label: str, data: ClusterConnectionCreate) -> ClusterConnection:
        if self._find(label) is None:
            raise CustomException(code=ErrorCode.CLUSTER_NOT_FOUND, message=f"Cluster '{label}' not found")
        updated = data.to_connection()
        if updated.label != label and self._find(updated.label) is not None:
            raise CustomException(
                code=ErrorCode.CLUSTER_ALREADY_EXISTS,
                message=f"Cluster '{updated.label}' already exists",
            )
        self._save_clusters([updated if c.label == label else c for c in self._clusters])
        self._notify("success", "Cluster updated", f"{updated.label} has been updated.")
        if self._active_label == label:
            # 地址或凭证可能已改变，重新检查连接
            self._select(updated.label, force=True)
        return updated

    def delete_cluster(self, label: str) -> None:
        if self._find(label) is None:
            raise CustomException(code=ErrorCode.CLUSTER_NOT_FOUND, message=f"Cluster '{label}' not found")
        if len(self._clusters) == 1:
            self._notify("error", "Cannot delete", "At least one cluster must remain.")
            raise CustomException(
                code=ErrorCode.LAST_CLUSTER_DELETE_FORBIDDEN,
                message="At least one cluster must remain.",
            )
        remaining = [c for c in self._clusters if c.label != label]
        self._save_clusters(remaining)
        self._notify("success", "Cluster deleted", f"{label} has been removed.")
        if self._active_label == label:
            self._select(remaining[0].label if remaining else None, force=True)

    # ------------------------------------------------------------------
    # 集群写操作
    # ------------------------------------------------------------------

    async def _run_command(
        self,
        operation: ClusterOperation,
        success_title: str,
        success_description: str,
        failure_title: str,
    ) -> CommandResult:
        cluster = self.active_cluster
        if cluster is None:
            self._notify("error", "No active cluster", "Please select a cluster first.")
            raise CustomException(code=ErrorCode.NO_ACTIVE_CLUSTER, message="Please select a cluster first.")

        generation = self._generation
        try:
            await operation(cluster)
        except ElasticsearchRequestError as exc:
            logger.warning("集群 %s 操作失败 (%s): %s", cluster.label, failure_title, exc.message)
            self._notify("error", failure_title, exc.message)
            return CommandResult(
                success=False,
                message=exc.message,
                error=MonitoringError(kind=ErrorKind.COMMAND, message=exc.message),
            )

        logger.info("集群 %s 操作成功: %s", cluster.label, success_title)
        self._notify("success", success_title, success_description)
        if self._is_current(generation, cluster.label):
            await self._fetch_cycle(cluster, generation)
        return CommandResult(success=True, message=success_description)

    async def flush_cluster(self) -> CommandResult:
        return await self._run_command(
            self.client.flush_cluster,
            "Flush completed", "Cluster has been flushed successfully.", "Flush failed",
        )

    async def disable_shard_allocation(self) -> CommandResult:
        return await self._run_command(
            self.client.disable_shard_allocation,
            "Shard allocation disabled", "Primary shard allocation has been disabled.", "Failed",
        )

    async def enable_shard_allocation(self) -> CommandResult:
        return await self._run_command(
            self.client.enable_shard_allocation,
            "Shard allocation enabled", "Shard allocation has been enabled for all shards.", "Failed",
        )

    async def stop_shard_rebalance(self) -> CommandResult:
        return await self._run_command(
            self.client.stop_shard_rebalance,
            "Shard rebalance stopped", "Shard rebalancing has been disabled.", "Failed",
        )

    async def enable_shard_rebalance(self) -> CommandResult:
        return await self._run_command(
            self.client.enable_shard_rebalance,
            "Shard rebalance enabled", "Shard rebalancing has been enabled.", "Failed",
        )

    async def update_recovery_setting(self, value: int) -> CommandResult:
        async def operation(cluster: ClusterConnection) -> None:
            await self.client.update_recovery_setting(cluster, value)

        return await self._run_command(
            operation,
            "Recovery setting updated",
            f"node_initial_primaries_recoveries set to {value}.",
            "Failed",
        )

    # ------------------------------------------------------------------

    def _notify(self, level: str, title: str, description: Optional[str] = None) -> None:
        self.notifications.append(Notification(level=level, title=title, description=description))
        if level == "error":
            logger.warning("%s: %s", title, description)
        else:
            logger.info("%s: %s", title, description)
