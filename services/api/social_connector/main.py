"""Social connector FastAPI application factory."""

import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, generate_latest, multiprocess
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_connector.config import Settings, get_settings
from social_connector.dependencies import get_session_factory, init_db, shutdown_db
from social_connector.middleware.error_handler import ErrorHandlerMiddleware, register_exception_handlers
from social_connector.middleware.logging import LoggingMiddleware, setup_logging
from social_connector.middleware.rate_limit import EXEMPT_PATHS, RateLimitMiddleware
from social_connector.routers import connection, content, credentials, oauth, sync

logger = logging.getLogger(__name__)

ROUTERS = (credentials, oauth, connection, content, sync)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(debug=settings.debug)
    logger.info("Social connector API starting (env=%s)", settings.app_env)
    if not settings.encryption_master_secret.get_secret_value():
        logger.error("ENCRYPTION_MASTER_SECRET is not set; credential operations will fail")
    init_db(settings)
    try:
        yield
    finally:
        await shutdown_db()
        logger.info("Social connector API stopped")


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    # Starlette wraps in reverse order: CORS ends up outermost, ErrorHandler innermost
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RateLimitMiddleware, settings=settings)

    origins = settings.cors_origins
    wildcard = origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if wildcard else origins,
        allow_origin_regex=r".*" if wildcard else None,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Tenant-ID"],
        max_age=600,
    )


async def check_database(session_factory: async_sessionmaker[AsyncSession]) -> str:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        return f"error: {type(e).__name__}"
    return "ok"


async def check_redis(redis_url: str) -> str:
    client = aioredis.from_url(redis_url, decode_responses=True)
    try:
        await client.ping()
    except Exception as e:
        return f"error: {type(e).__name__}"
    finally:
        await client.aclose()
    return "ok"


def check_encryption(settings: Settings) -> str:
    return "ok" if settings.encryption_master_secret.get_secret_value() else "error: not configured"


def metrics_payload() -> bytes:
    """Exposition text, aggregated across workers when PROMETHEUS_MULTIPROC_DIR is set."""
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return generate_latest(registry)
    return generate_latest(REGISTRY)


def create_app(settings: Settings | None = None) -> FastAPI:
    if settings is None:
        settings = get_settings()

    production = settings.app_env == "production"
    app = FastAPI(
        title=settings.app_name,
        description="Per-tenant OAuth connection and content sync for a social platform",
        version="1.0.0",
        lifespan=lifespan,
        docs_url=None if production else "/docs",
        redoc_url=None if production else "/redoc",
        openapi_url=None if production else "/openapi.json",
    )

    register_exception_handlers(app)
    _add_middleware(app, settings)
    for module in ROUTERS:
        app.include_router(module.router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "social-connector"}

    @app.get("/health/ready")
    async def health_ready(session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)):
        """Readiness: database, Redis and the encryption secret."""
        checks = {
            "database": await check_database(session_factory),
            "redis": await check_redis(settings.redis_url),
            "encryption": check_encryption(settings),
        }
        ready = all(v == "ok" for v in checks.values())
        return JSONResponse(
            status_code=200 if ready else 503,
            content={"status": "ready" if ready else "degraded", "checks": checks},
        )

    Instrumentator(
        excluded_handlers=[*EXEMPT_PATHS, "/docs", "/redoc", "/openapi.json"],
    ).instrument(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(content=metrics_payload(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
