"""Celery tasks for token refresh and content sync sweeps."""

import asyncio
import logging
from datetime import timedelta

import redis.asyncio as aioredis
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from social_connector.config import get_settings
from social_connector.services.content_sync import ContentSyncWorker
from social_connector.services.credential_vault import CredentialVault
from social_connector.services.crypto_service import get_crypto_service
from social_connector.services.oauth_state_store import OAuthStateStore
from social_connector.services.tenant_lock import TenantLock
from social_connector.services.token_exchange import TokenExchangeClient
from social_connector.services.token_refresh import SweepOutcome, TokenRefreshScheduler
from social_connector.tasks.celery_app import shutdown_event

logger = logging.getLogger(__name__)


def _get_async_session() -> tuple[AsyncEngine, async_sessionmaker]:
    # Each asyncio.run() gets its own loop, so engines are not shared between runs
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


def _build_refresher(session_factory: async_sessionmaker, redis_client: aioredis.Redis) -> TokenRefreshScheduler:
    settings = get_settings()
    crypto = get_crypto_service(settings)
    return TokenRefreshScheduler(
        session_factory,
        crypto,
        CredentialVault(crypto),
        TokenExchangeClient(settings),
        TenantLock(redis_client, "token-refresh", settings.refresh_lock_ttl_seconds),
        threshold=timedelta(days=settings.token_refresh_threshold_days),
        concurrency=settings.sweep_concurrency,
    )


def _summary(outcome: SweepOutcome) -> dict:
    return {
        "succeeded": outcome.succeeded,
        "failed": outcome.failed,
        "skipped": len(outcome.skipped),
    }


@shared_task(name="social_connector.tasks.sync_tasks.refresh_expiring_tokens")
def refresh_expiring_tokens():
    """Periodic task: refresh long-lived tokens within the expiry threshold."""

    async def _refresh():
        settings = get_settings()
        engine, session_factory = _get_async_session()
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
        try:
            refresher = _build_refresher(session_factory, redis_client)
            return await refresher.refresh_all(cancel_event=shutdown_event)
        finally:
            await redis_client.aclose()
            await engine.dispose()

    return _summary(asyncio.run(_refresh()))


@shared_task(name="social_connector.tasks.sync_tasks.scheduled_content_sync")
def scheduled_content_sync():
    """Periodic task: refresh-then-sync every connected tenant."""

    async def _sync():
        settings = get_settings()
        engine, session_factory = _get_async_session()
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=True)
        try:
            refresher = _build_refresher(session_factory, redis_client)
            worker = ContentSyncWorker(
                session_factory,
                get_crypto_service(settings),
                TokenExchangeClient(settings),
                refresher,
                sweep_page_size=settings.sweep_page_size,
                concurrency=settings.sweep_concurrency,
            )
            return await worker.scheduled_sync(cancel_event=shutdown_event)
        finally:
            await redis_client.aclose()
            await engine.dispose()

    return _summary(asyncio.run(_sync()))


@shared_task(name="social_connector.tasks.sync_tasks.purge_expired_oauth_states")
def purge_expired_oauth_states():
    """Periodic task: delete OAuth states past their TTL."""

    async def _purge():
        settings = get_settings()
        engine, session_factory = _get_async_session()
        try:
            async with session_factory() as db:
                removed = await OAuthStateStore(settings.oauth_state_ttl_seconds).purge_expired(db)
                await db.commit()
            return removed
        finally:
            await engine.dispose()

    removed = asyncio.run(_purge())
    logger.info("Purged %d expired OAuth states", removed)
    return removed
