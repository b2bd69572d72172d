"""FastAPI dependency injection."""

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from social_connector.config import Settings, get_settings
from social_connector.services.connector_service import ConnectorService
from social_connector.services.crypto_service import get_crypto_service
from social_connector.services.tenant_lock import get_refresh_lock
from social_connector.services.token_exchange import TokenExchangeClient

# Database engine and session factory (initialized in lifespan)
_engine = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

MAX_TENANT_ID_LENGTH = 255


def _create_engine(settings: Settings):
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(settings.database_url, echo=settings.debug)
    return create_async_engine(
        settings.database_url,
        echo=settings.debug,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


def init_db(settings: Settings) -> tuple:
    """Initialize database engine and session factory. Called from lifespan."""
    global _engine, _session_factory
    _engine = _create_engine(settings)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine, _session_factory


async def shutdown_db():
    """Dispose of the database engine. Called from lifespan."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory(settings: Settings = Depends(get_settings)) -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_db(settings)
    return _session_factory


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_tenant_id(x_tenant_id: str | None = Header(None)) -> str:
    """Tenant identity handed off by the surrounding application."""
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Tenant-ID header",
        )
    if len(tenant_id) > MAX_TENANT_ID_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-ID header",
        )
    return tenant_id


def get_connector_service(
    settings: Settings = Depends(get_settings),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> ConnectorService:
    return ConnectorService(
        settings,
        session_factory,
        get_crypto_service(settings),
        TokenExchangeClient(settings),
        get_refresh_lock(settings),
    )
