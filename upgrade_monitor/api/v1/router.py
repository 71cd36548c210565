"""
API Router Configuration
"""

from fastapi import APIRouter
from upgrade_monitor.api.v1.routes import (
    monitoring,
    clusters,
    commands,
)

# 创建API路由器
api_router = APIRouter()

# 注册各个模块的路由
api_router.include_router(
    monitoring.router,
    prefix="/monitoring",
    tags=["集群监控"]
)
api_router.include_router(
    clusters.router,
    prefix="/clusters",
    tags=["集群连接"]
)
api_router.include_router(
    commands.router,
    prefix="/commands",
    tags=["集群操作"]
)
