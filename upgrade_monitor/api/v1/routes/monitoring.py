"""
Routes for the monitoring state, snapshot and polling control.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from upgrade_monitor.core.logging import logger
from upgrade_monitor.dependencies.monitoring import get_monitoring_service
from upgrade_monitor.schemas.cluster import ClusterConnectionResponse
from upgrade_monitor.schemas.monitoring import ActiveClusterRequest, PollIntervalRequest
from upgrade_monitor.services.health_history_service import summarize_status
from upgrade_monitor.services.monitoring_service import MonitoringService
from upgrade_monitor.services.snapshot_view_service import (
    ALLOCATION_TIERS,
    calculate_recovery_target_stats,
    filter_allocation,
    flatten_settings,
)

router = APIRouter()

ALLOCATION_TIER_PATTERN = "^(" + "|".join(ALLOCATION_TIERS) + ")$"


@router.get("/state", response_model=dict)
async def get_state(service: MonitoringService = Depends(get_monitoring_service)):
    """获取当前监控状态"""
    return {"code": 0, "message": "ok", "data": service.get_state().model_dump(mode="json")}


@router.get("/snapshot", response_model=dict)
async def get_snapshot(service: MonitoringService = Depends(get_monitoring_service)):
    """获取最近一次成功拉取的快照，尚无数据时返回 null"""
    snapshot = service.snapshot
    data = snapshot.model_dump(mode="json") if snapshot is not None else None
    return {"code": 0, "message": "ok", "data": data}


@router.get("/health-history", response_model=dict)
async def get_health_history(service: MonitoringService = Depends(get_monitoring_service)):
    """获取健康历史及各状态计数"""
    history = list(service.health_history)
    payload = {
        "list": [row.model_dump(mode="json", by_alias=True) for row in history],
        "total": len(history),
        "summary": summarize_status(history),
    }
    return {"code": 0, "message": "ok", "data": payload}


@router.get("/allocation", response_model=dict)
async def get_allocation(
    tier: str = Query("all", pattern=ALLOCATION_TIER_PATTERN),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """获取分片分配，可按节点名中的 hot/warm/cold 过滤"""
    snapshot = service.snapshot
    rows = filter_allocation(snapshot.allocation, tier) if snapshot is not None else []
    return {
        "code": 0,
        "message": "ok",
        "data": {"list": [row.model_dump(mode="json") for row in rows], "total": len(rows), "tier": tier},
    }


@router.get("/recovery", response_model=dict)
async def get_recovery(service: MonitoringService = Depends(get_monitoring_service)):
    """获取进行中的分片恢复及每个目标节点的恢复数量"""
    snapshot = service.snapshot
    rows = list(snapshot.recovery) if snapshot is not None else []
    payload = {
        "list": [row.model_dump(mode="json") for row in rows],
        "total": len(rows),
        "targets": [item.model_dump() for item in calculate_recovery_target_stats(rows)],
    }
    return {"code": 0, "message": "ok", "data": payload}


@router.get("/settings", response_model=dict)
async def get_cluster_settings(
    search: Optional[str] = Query(None, max_length=200),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """获取 persistent 与 transient 集群设置，search 按 key 或 value 过滤"""
    snapshot = service.snapshot
    entries = flatten_settings(snapshot.settings, search) if snapshot is not None else []
    return {
        "code": 0,
        "message": "ok",
        "data": {"list": [entry.model_dump() for entry in entries], "total": len(entries)},
    }


@router.get("/upgrade-plan", response_model=dict)
async def get_upgrade_plan(service: MonitoringService = Depends(get_monitoring_service)):
    """获取节点升级顺序与版本统计"""
    return {"code": 0, "message": "ok", "data": service.get_upgrade_plan().model_dump(mode="json")}


@router.get("/notifications", response_model=dict)
async def list_notifications(
    limit: int = Query(20, ge=1, le=100),
    service: MonitoringService = Depends(get_monitoring_service),
):
    """获取最近的通知，最新的在前"""
    items = list(service.notifications)[-limit:]
    items.reverse()
    return {
        "code": 0,
        "message": "ok",
        "data": {"list": [item.model_dump(mode="json") for item in items], "total": len(items)},
    }


@router.post("/refresh", response_model=dict)
async def refresh(service: MonitoringService = Depends(get_monitoring_service)):
    """立即拉取一次（连接失败或已有拉取进行中时跳过）"""
    await service.refresh()
    return {"code": 0, "message": "ok", "data": service.get_state().model_dump(mode="json")}


@router.post("/retry", response_model=dict)
async def retry_connection(service: MonitoringService = Depends(get_monitoring_service)):
    """手动重连当前集群"""
    await service.retry_connection()
    state = service.get_state()
    logger.info("手动重连完成: state=%s", state.state.value)
    return {"code": 0, "message": "ok", "data": state.model_dump(mode="json")}


@router.put("/poll-interval", response_model=dict)
async def set_poll_interval(
    payload: PollIntervalRequest,
    service: MonitoringService = Depends(get_monitoring_service),
):
    """设置轮询间隔，超出范围的值会被限制"""
    value = service.set_poll_interval(payload.poll_interval_ms)
    return {"code": 0, "message": "ok", "data": {"poll_interval_ms": value}}


@router.put("/active-cluster", response_model=dict)
async def set_active_cluster(
    payload: ActiveClusterRequest,
    service: MonitoringService = Depends(get_monitoring_service),
):
    """切换当前集群"""
    selected = service.set_active_cluster(payload.label)
    data = ClusterConnectionResponse.from_connection(selected, service.active_cluster.label).model_dump()
    return {"code": 0, "message": "ok", "data": data}
