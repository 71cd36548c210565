"""
Routes for rolling-upgrade cluster commands.

Command failures are reported in the payload (``success: false``) and do not
change the connection state. Running a command with no active cluster is
rejected with ``NO_ACTIVE_CLUSTER`` (409).
"""

from fastapi import APIRouter, Depends

from upgrade_monitor.dependencies.monitoring import get_monitoring_service
from upgrade_monitor.schemas.monitoring import CommandResult, RecoverySettingRequest
from upgrade_monitor.services.monitoring_service import MonitoringService

router = APIRouter()


def _respond(result: CommandResult) -> dict:
    return {
        "code": 0 if result.success else 1,
        "message": result.message,
        "data": result.model_dump(mode="json"),
    }


@router.post("/flush", response_model=dict)
async def flush_cluster(service: MonitoringService = Depends(get_monitoring_service)):
    """执行 _flush"""
    return _respond(await service.flush_cluster())


@router.post("/disable-allocation", response_model=dict)
async def disable_shard_allocation(service: MonitoringService = Depends(get_monitoring_service)):
    """只允许主分片分配"""
    return _respond(await service.disable_shard_allocation())


@router.post("/enable-allocation", response_model=dict)
async def enable_shard_allocation(service: MonitoringService = Depends(get_monitoring_service)):
    return _respond(await service.enable_shard_allocation())


@router.post("/stop-rebalance", response_model=dict)
async def stop_shard_rebalance(service: MonitoringService = Depends(get_monitoring_service)):
    return _respond(await service.stop_shard_rebalance())


@router.post("/enable-rebalance", response_model=dict)
async def enable_shard_rebalance(service: MonitoringService = Depends(get_monitoring_service)):
    return _respond(await service.enable_shard_rebalance())


@router.put("/recovery-setting", response_model=dict)
async def update_recovery_setting(
    payload: RecoverySettingRequest,
    service: MonitoringService = Depends(get_monitoring_service),
):
    """设置 node_initial_primaries_recoveries（transient）"""
    return _respond(await service.update_recovery_setting(payload.value))
