"""
Routes for managing cluster connections.
"""

from fastapi import APIRouter, Depends, status

from upgrade_monitor.core.logging import logger
from upgrade_monitor.dependencies.monitoring import get_monitoring_service
from upgrade_monitor.schemas.cluster import ClusterConnectionCreate, ClusterConnectionResponse
from upgrade_monitor.services.monitoring_service import MonitoringService

router = APIRouter()


def _serialize(service: MonitoringService, label: str) -> dict:
    connection = next(c for c in service.clusters if c.label == label)
    return ClusterConnectionResponse.from_connection(
        connection, service.active_cluster.label if service.active_cluster else None
    ).model_dump()


@router.get("", response_model=dict)
async def list_clusters(service: MonitoringService = Depends(get_monitoring_service)):
    """获取所有集群连接（不返回密码）"""
    items = [item.model_dump() for item in service.list_cluster_responses()]
    active = service.active_cluster
    payload = {
        "list": items,
        "total": len(items),
        "active": active.label if active else None,
    }
    return {"code": 0, "message": "ok", "data": payload}


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_cluster(
    cluster: ClusterConnectionCreate,
    service: MonitoringService = Depends(get_monitoring_service),
):
    """添加集群连接并设为当前集群，同名连接会被覆盖"""
    created = service.add_cluster(cluster)
    logger.info("Created cluster connection %s", created.label)
    return {"code": 0, "message": "ok", "data": _serialize(service, created.label)}


@router.put("/{label:path}", response_model=dict)
async def update_cluster(
    label: str,
    cluster: ClusterConnectionCreate,
    service: MonitoringService = Depends(get_monitoring_service),
):
    """更新集群连接"""
    updated = service.update_cluster(label, cluster)
    logger.info("Updated cluster connection %s -> %s", label, updated.label)
    return {"code": 0, "message": "ok", "data": _serialize(service, updated.label)}


@router.delete("/{label:path}", response_model=dict)
async def delete_cluster(
    label: str,
    service: MonitoringService = Depends(get_monitoring_service),
):
    """删除集群连接，至少保留一个"""
    service.delete_cluster(label)
    logger.info("Deleted cluster connection %s", label)
    active = service.active_cluster
    return {"code": 0, "message": "ok", "data": {"active": active.label if active else None}}
