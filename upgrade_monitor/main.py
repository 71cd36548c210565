"""
FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from upgrade_monitor.api.v1.router import api_router
from upgrade_monitor.core.exceptions import setup_exception_handlers
from upgrade_monitor.core.logging import logger
from upgrade_monitor.config.settings import settings
from upgrade_monitor.core.scheduler import Scheduler
from upgrade_monitor.middleware.logging import logging_middleware
from upgrade_monitor.services.elasticsearch_client import ElasticsearchClient
from upgrade_monitor.services.monitoring_service import MonitoringService
from upgrade_monitor.services.storage_service import (
    ConnectionStore,
    PreferenceStore,
    create_key_value_store,
)


def build_monitoring_service() -> MonitoringService:
    """按配置组装监控服务"""
    store = create_key_value_store(settings.STORAGE_BACKEND)
    return MonitoringService(
        client=ElasticsearchClient(),
        connection_store=ConnectionStore(store),
        preference_store=PreferenceStore(store),
        scheduler=Scheduler(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理 - 启动监控服务，关闭时取消所有定时器"""
    logger.info("配置: %s:%s, 存储后端: %s", settings.HOST, settings.PORT, settings.STORAGE_BACKEND)

    service = getattr(app.state, "monitoring_service", None)
    if service is None:
        service = build_monitoring_service()
        app.state.monitoring_service = service
    await service.start()

    logger.info("🚀 服务器启动完成")
    yield
    await service.shutdown()
    logger.info("👋 服务器关闭")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description="Elasticsearch 滚动升级监控 API",
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # 添加CORS中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    # 请求日志中间件（记录每个请求的开始、结束、状态码与耗时）
    app.middleware("http")(logging_middleware)

    setup_exception_handlers(app)

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/")
    async def root():
        """根路径"""
        return {"message": settings.APP_NAME, "version": settings.APP_VERSION}

    @app.get("/health")
    async def health_check():
        """健康检查"""
        service = getattr(app.state, "monitoring_service", None)
        state = service.state.value if service is not None else None
        return {"status": "healthy", "monitoring_state": state}

    return app


app = create_app()


def run():
    """命令行入口"""
    import uvicorn

    uvicorn.run(
        "upgrade_monitor.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
