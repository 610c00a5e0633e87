"""
FastAPI 应用配置

配置 CORS、异常映射、路由注册。
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..context import AdminContext
from ..errors import BackingOperationFailed, MalformedInput, NotFound, SourceUnreachable
from .routers import operations, statistics, view_models

logger = logging.getLogger(__name__)

PAGE_NOT_FOUND = "Page Not Found"


def register_exception_handlers(app: FastAPI):
    """把核心异常映射为 HTTP 响应"""

    @app.exception_handler(NotFound)
    async def not_found_handler(request: Request, exc: NotFound):
        logger.debug(f"{request.method} {request.url.path}: {exc}")
        return PlainTextResponse(PAGE_NOT_FOUND, status_code=404)

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_handler(request: Request, exc: StarletteHTTPException):
        # 兜底路由只接受变更方法，其余方法访问未知路径同样按 404 处理
        if exc.status_code in (404, 405):
            return PlainTextResponse(PAGE_NOT_FOUND, status_code=404)
        return await http_exception_handler(request, exc)

    @app.exception_handler(MalformedInput)
    async def malformed_input_handler(request: Request, exc: MalformedInput):
        logger.info(f"Rejected {request.method} {request.url.path}: {exc}")
        return PlainTextResponse(str(exc), status_code=400)

    @app.exception_handler(BackingOperationFailed)
    async def backing_failed_handler(request: Request, exc: BackingOperationFailed):
        # 后端状态码和响应体原样返回
        return Response(content=exc.body, status_code=exc.status_code, media_type=exc.content_type)

    @app.exception_handler(SourceUnreachable)
    async def source_unreachable_handler(request: Request, exc: SourceUnreachable):
        logger.warning(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse({"detail": str(exc)}, status_code=503)


def create_app(context: AdminContext) -> FastAPI:
    """
    创建 FastAPI 应用实例

    Args:
        context: 组装好的组件，挂在 app.state.context 上供依赖注入使用
    """
    app = FastAPI(
        title="Admin Aggregator",
        description="管理控制台视图模型聚合与刷新服务",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.context = context

    # CORS 中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=context.config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # 注册路由（变更操作的兜底路由放在最后）
    app.include_router(statistics.router)
    app.include_router(view_models.router)
    app.include_router(operations.router)

    @app.on_event("startup")
    async def startup_event():
        logger.info("Admin Aggregator API starting up...")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Admin Aggregator API shutting down...")

    return app
