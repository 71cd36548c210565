"""
Exception Handlers
"""

from enum import Enum
from typing import Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
import logging

logger = logging.getLogger(__name__)

class ErrorCode:
    """错误代码定义"""
    VALIDATION_ERROR = "VALIDATION_ERROR"

    # 集群连接配置错误
    CLUSTER_NOT_FOUND = "CLUSTER_NOT_FOUND"
    CLUSTER_ALREADY_EXISTS = "CLUSTER_ALREADY_EXISTS"
    LAST_CLUSTER_DELETE_FORBIDDEN = "LAST_CLUSTER_DELETE_FORBIDDEN"
    NO_ACTIVE_CLUSTER = "NO_ACTIVE_CLUSTER"

    # Elasticsearch错误
    ELASTICSEARCH_REQUEST_FAILED = "ELASTICSEARCH_REQUEST_FAILED"

class CustomException(Exception):
    """自定义异常类"""
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(self.message)


class TransportErrorKind(str, Enum):
    """传输层错误类型，在 httpx 报告失败的位置标记"""
    TIMEOUT = "timeout"
    NETWORK = "network"
    HTTP_STATUS = "http_status"
    PARSE = "parse"


class ElasticsearchRequestError(CustomException):
    """Elasticsearch 请求失败"""

    def __init__(self, kind: TransportErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(ErrorCode.ELASTICSEARCH_REQUEST_FAILED, message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_timeout(self) -> bool:
        return self.kind == TransportErrorKind.TIMEOUT

    @property
    def is_network(self) -> bool:
        return self.kind == TransportErrorKind.NETWORK


_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.CLUSTER_ALREADY_EXISTS: 409,
    ErrorCode.LAST_CLUSTER_DELETE_FORBIDDEN: 409,
    ErrorCode.CLUSTER_NOT_FOUND: 404,
    ErrorCode.NO_ACTIVE_CLUSTER: 409,
    ErrorCode.ELASTICSEARCH_REQUEST_FAILED: 502,
}

def setup_exception_handlers(app: FastAPI):
    """设置异常处理器"""

    @app.exception_handler(CustomException)
    async def custom_exception_handler(request: Request, exc: CustomException):
        """业务异常处理器"""
        return JSONResponse(
            status_code=_STATUS_BY_CODE.get(exc.code, 400),
            content={
                "error": True,
                "code": exc.code,
                "message": exc.message,
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """HTTP异常处理器"""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": True,
                "message": exc.detail,
                "status_code": exc.status_code
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """请求验证异常处理器"""
        return JSONResponse(
            status_code=422,
            content={
                "error": True,
                "message": "请求参数验证失败",
                "details": jsonable_encoder(exc.errors())
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """通用异常处理器"""
        logger.error("未处理的异常: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": True,
                "message": "服务器内部错误",
                "status_code": 500
            }
        )
