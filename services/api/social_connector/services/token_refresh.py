"""Keeps long-lived tokens from expiring without tenant interaction."""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_connector.errors import DecryptionError, ExternalApiError
from social_connector.metrics import sweep_duration_seconds, token_refreshes_total
from social_connector.models.base import as_utc, utcnow
from social_connector.models.external_account import ExternalAccount
from social_connector.services.credential_vault import CredentialVault
from social_connector.services.crypto_service import CryptoService
from social_connector.services.tenant_lock import TenantLock
from social_connector.services.token_exchange import TokenExchangeClient

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_THRESHOLD = timedelta(days=7)


@dataclass
class RefreshResult:
    tenant_id: str
    refreshed: bool
    reason: str | None = None
    new_expiry: datetime | None = None
    error_kind: str | None = None


@dataclass
class TenantOutcome:
    tenant_id: str
    ok: bool
    detail: str | None = None


@dataclass
class SweepOutcome:
    """Per-tenant results of one sweep."""

    outcomes: list[TenantOutcome] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)


async def list_connected_tenants(session_factory: async_sessionmaker[AsyncSession]) -> list[str]:
    async with session_factory() as db:
        result = await db.execute(select(ExternalAccount.tenant_id).order_by(ExternalAccount.tenant_id))
        return list(result.scalars().all())


async def run_bounded(
    tenant_ids: list[str],
    work,
    concurrency: int,
    cancel_event: threading.Event | None,
) -> SweepOutcome:
    """Run ``work(tenant_id) -> TenantOutcome`` with at most ``concurrency`` tenants in flight.

    Once ``cancel_event`` is set no further tenant is started; tenants already
    running finish normally.
    """
    outcome = SweepOutcome()
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _one(tenant_id: str) -> None:
        async with semaphore:
            if cancel_event is not None and cancel_event.is_set():
                outcome.skipped.append(tenant_id)
                return
            try:
                outcome.outcomes.append(await work(tenant_id))
            except Exception as e:
                logger.error("Sweep failed for tenant=%s: %s", tenant_id, e, exc_info=True)
                outcome.outcomes.append(TenantOutcome(tenant_id=tenant_id, ok=False, detail=str(e)))

    await asyncio.gather(*(_one(t) for t in tenant_ids))
    if outcome.skipped:
        logger.info("Sweep cancelled; %d tenant(s) not started", len(outcome.skipped))
    return outcome


class TokenRefreshScheduler:
    """Refreshes long-lived tokens that are close to expiry.

    Provider failures are soft: they come back as ``refreshed=False`` with the
    upstream message. Decryption failures are raised, because they mean stored
    data or keys are wrong and retrying will not help.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        crypto: CryptoService,
        vault: CredentialVault,
        client: TokenExchangeClient,
        lock: TenantLock,
        threshold: timedelta = DEFAULT_REFRESH_THRESHOLD,
        concurrency: int = 4,
    ) -> None:
        self._session_factory = session_factory
        self._crypto = crypto
        self._vault = vault
        self._client = client
        self._lock = lock
        self._threshold = threshold
        self._concurrency = concurrency

    def _skip_reason(self, account: ExternalAccount | None) -> str | None:
        if account is None:
            return "No connected account found"
        expires_at = as_utc(account.token_expires_at)
        if expires_at is None:
            return "Token does not expire"
        if expires_at > utcnow() + self._threshold:
            return "Token not close to expiry"
        return None

    async def refresh_if_needed(self, tenant_id: str) -> RefreshResult:
        async with self._session_factory() as db:
            reason = self._skip_reason(await db.get(ExternalAccount, tenant_id))
            if reason is not None:
                return RefreshResult(tenant_id, refreshed=False, reason=reason)
            credentials = await self._vault.get_active_credential_set(db, tenant_id)

        if credentials is None:
            token_refreshes_total.labels(outcome="not_configured").inc()
            return RefreshResult(
                tenant_id,
                refreshed=False,
                reason="No app credentials configured",
                error_kind="not_configured",
            )

        async with self._lock.hold(tenant_id) as acquired:
            if not acquired:
                token_refreshes_total.labels(outcome="in_progress").inc()
                return RefreshResult(tenant_id, refreshed=False, reason="Refresh already in progress")

            # Re-read under the lock: a refresh that finished while we waited
            # has already moved the expiry and replaced the token.
            async with self._session_factory() as db:
                account = await db.get(ExternalAccount, tenant_id)
                reason = self._skip_reason(account)
                if reason is not None:
                    return RefreshResult(tenant_id, refreshed=False, reason=reason)
                seen_updated_at = account.updated_at
                current_token = self._crypto.decrypt(tenant_id, account.encrypted_access_token)

            try:
                new_token = await self._client.upgrade_to_long_lived_token(
                    credentials.app_id,
                    credentials.app_secret,
                    current_token,
                )
            except ExternalApiError as e:
                token_refreshes_total.labels(outcome="failed").inc()
                logger.warning("Token refresh failed for tenant=%s: %s", tenant_id, e.message)
                return RefreshResult(
                    tenant_id,
                    refreshed=False,
                    reason=f"Refresh failed: {e.message}",
                    error_kind=e.kind.value,
                )

            now = utcnow()
            new_expiry = now + timedelta(seconds=new_token.expires_in) if new_token.expires_in else None
            async with self._session_factory() as db:
                # Compare-and-swap: only write if nobody replaced the account meanwhile
                result = await db.execute(
                    update(ExternalAccount)
                    .where(
                        ExternalAccount.tenant_id == tenant_id,
                        ExternalAccount.updated_at == seen_updated_at,
                    )
                    .values(
                        encrypted_access_token=self._crypto.encrypt(tenant_id, new_token.access_token),
                        token_expires_at=new_expiry,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

        if result.rowcount == 0:
            token_refreshes_total.labels(outcome="conflict").inc()
            logger.info("Account for tenant=%s changed during refresh; discarding new token", tenant_id)
            return RefreshResult(tenant_id, refreshed=False, reason="Account changed during refresh")

        token_refreshes_total.labels(outcome="refreshed").inc()
        logger.info("Refreshed long-lived token for tenant=%s (expires=%s)", tenant_id, new_expiry)
        return RefreshResult(tenant_id, refreshed=True, new_expiry=new_expiry)

    async def _refresh_tenant(self, tenant_id: str) -> TenantOutcome:
        try:
            result = await self.refresh_if_needed(tenant_id)
        except DecryptionError as e:
            logger.error("Stored secrets for tenant=%s failed to decrypt: %s", tenant_id, e.message)
            return TenantOutcome(tenant_id=tenant_id, ok=False, detail=e.message)
        ok = result.refreshed or result.error_kind is None
        return TenantOutcome(tenant_id=tenant_id, ok=ok, detail=result.reason)

    async def refresh_all(self, cancel_event: threading.Event | None = None) -> SweepOutcome:
        """Sweep every connected tenant, one tenant's failure never stopping the rest."""
        start = time.monotonic()
        tenant_ids = await list_connected_tenants(self._session_factory)
        outcome = await run_bounded(tenant_ids, self._refresh_tenant, self._concurrency, cancel_event)
        sweep_duration_seconds.labels(sweep="token_refresh").observe(time.monotonic() - start)
        logger.info(
            "Token refresh sweep done: %d ok, %d failed, %d skipped",
            outcome.succeeded,
            outcome.failed,
            len(outcome.skipped),
        )
        return outcome
