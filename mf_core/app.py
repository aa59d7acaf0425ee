"""
MatFlow FastAPI 应用
原料管理 API + Shopify Webhook 入口，所有错误以 {"ok": false, "error": <problem>} 返回
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from mf_core.api import api_router
from mf_core.config import Settings, get_settings
from mf_core.database import get_db_manager
from mf_core.middleware.logging import LoggingMiddleware
from mf_core.services.catalog_sync import get_catalog_sync, set_catalog_sync
from mf_core.utils.errors import MatFlowException
from mf_core.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """启动：检查数据库、装配商品目录同步；关闭：释放 HTTP 客户端与连接池"""
    settings = get_settings()
    db_manager = get_db_manager()
    logger.info("Starting MatFlow", version=settings.api_version, commit_topic=settings.commit_topic)

    if not await db_manager.check_connection():
        raise RuntimeError("Database connection failed")

    # 测试可以预先注册目录同步
    if get_catalog_sync() is None:
        from plugins.mf.channels.shopify import create_catalog_sync
        set_catalog_sync(create_catalog_sync(settings))
    if get_catalog_sync() is None:
        logger.warning("Catalog sync disabled, sellable verdicts will not be pushed")

    yield

    catalog_sync = get_catalog_sync()
    if catalog_sync is not None and hasattr(catalog_sync.client, "close"):
        await catalog_sync.client.close()
    set_catalog_sync(None)
    await db_manager.close()
    logger.info("MatFlow stopped")


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(MatFlowException)
    async def matflow_exception_handler(request: Request, exc: MatFlowException):
        return exc.to_response(request)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        logger.warning("Request validation failed", path=request.url.path, errors=str(errors)[:2000])
        problem = MatFlowException(
            status=422,
            code="VALIDATION_ERROR",
            title="Validation Error",
            detail="Request validation failed",
            validation_errors=errors,
        )
        return problem.to_response(request)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        problem = MatFlowException(
            status=exc.status_code,
            code=f"HTTP_{exc.status_code}",
            title=str(exc.detail),
            detail=str(exc.detail),
        )
        return problem.to_response(request)


def _register_routes(app: FastAPI, settings: Settings) -> None:
    app.include_router(api_router, prefix=settings.api_prefix)

    from plugins.mf.channels.shopify import get_router as get_shopify_router
    app.include_router(get_shopify_router(), prefix=settings.api_prefix)

    @app.get("/healthz")
    async def health_check():
        db_healthy = await get_db_manager().check_connection()
        return {
            "status": "healthy" if db_healthy else "degraded",
            "database": db_healthy,
            "catalog_sync": get_catalog_sync() is not None,
        }


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(log_level=settings.log_level, log_format=settings.log_format)

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="MatFlow raw material inventory reconciliation API",
        docs_url="/docs" if settings.api_debug else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.api_debug else None,
        lifespan=lifespan,
    )

    # 嵌入式应用从 Shopify 后台调用
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.api_debug else ["https://admin.shopify.com"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)

    _register_exception_handlers(app)
    _register_routes(app, settings)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "mf_core.app:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_debug,
        log_level=settings.log_level.lower(),
        access_log=False,  # 由 LoggingMiddleware 记录
    )
