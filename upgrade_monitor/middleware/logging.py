"""
Logging Middleware
"""

from fastapi import Request
import logging
import time
from datetime import datetime

logger = logging.getLogger(__name__)

async def logging_middleware(request: Request, call_next):
    """日志中间件"""
    start_time = time.time()

    logger.info("请求开始: %s %s", request.method, request.url.path)

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "请求结束: %s %s 状态码: %s 处理时间: %.3fs",
        request.method, request.url.path, response.status_code, process_time
    )

    response.headers["X-Process-Time"] = str(process_time)
    response.headers["X-Timestamp"] = datetime.now().isoformat()

    return response
