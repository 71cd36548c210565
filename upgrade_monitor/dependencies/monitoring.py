"""
Monitoring Dependencies
"""

from fastapi import Request

from upgrade_monitor.services.monitoring_service import MonitoringService


def get_monitoring_service(request: Request) -> MonitoringService:
    """获取应用级的监控服务实例（在 lifespan 中创建）"""
    return request.app.state.monitoring_service
