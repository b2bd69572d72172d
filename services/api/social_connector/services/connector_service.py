"""Tenant-facing connector operations.

This is the surface the surrounding application uses: store credentials,
run the OAuth round-trip, read synced content, trigger a sync, disconnect.
Interactive operations raise typed ConnectorErrors; nothing is swallowed.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_connector.config import Settings
from social_connector.errors import ExternalApiError, NotFoundError, StateError, ValidationError
from social_connector.metrics import oauth_completions_total
from social_connector.models.base import as_utc, utcnow
from social_connector.models.content_item import ContentItem, ContentKind
from social_connector.models.external_account import ExternalAccount
from social_connector.services import content_queries
from social_connector.services.content_sync import ContentSyncWorker
from social_connector.services.credential_vault import (
    AppCredentials,
    CredentialSummary,
    CredentialVault,
    validate_app_id,
    validate_app_secret,
)
from social_connector.services.crypto_service import CryptoService
from social_connector.services.oauth_state_store import OAuthStateStore
from social_connector.services.tenant_lock import TenantLock
from social_connector.services.token_exchange import CredentialCheck, Discovery, TokenExchangeClient
from social_connector.services.token_refresh import RefreshResult, TokenRefreshScheduler

logger = logging.getLogger(__name__)

# Replaced on reconnect; tenant_id and created_at are kept
_ACCOUNT_COLUMNS = (
    "encrypted_access_token",
    "token_expires_at",
    "external_user_id",
    "external_user_name",
    "sub_accounts",
    "secondary_account_id",
    "updated_at",
)


def account_upsert(db: AsyncSession, **values):
    """INSERT ... ON CONFLICT (tenant_id) DO UPDATE, so concurrent first connects cannot collide."""
    insert = sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert
    stmt = insert(ExternalAccount).values(**values)
    return stmt.on_conflict_do_update(
        index_elements=[ExternalAccount.tenant_id],
        set_={column: stmt.excluded[column] for column in _ACCOUNT_COLUMNS},
    )


@dataclass
class AuthStart:
    authorization_url: str
    state: str


@dataclass
class AuthResult:
    success: bool
    external_user_id: str
    external_user_name: str | None
    sub_account_count: int
    secondary_account_id: str | None
    token_expires_at: datetime | None


@dataclass
class SyncSummary:
    stored_count: int
    failed_count: int
    has_more: bool
    next_cursors: dict[str, str] = field(default_factory=dict)


@dataclass
class ConnectionStatus:
    connected: bool
    external_user_id: str | None = None
    external_user_name: str | None = None
    token_expires_at: datetime | None = None
    secondary_account_id: str | None = None
    # id/name pairs only; page tokens never leave the service
    sub_accounts: list[dict[str, str]] = field(default_factory=list)
    updated_at: datetime | None = None


class ConnectorService:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        crypto: CryptoService,
        client: TokenExchangeClient,
        lock: TenantLock,
    ) -> None:
        self._settings = settings
        self._crypto = crypto
        self._client = client
        self.vault = CredentialVault(crypto)
        self.states = OAuthStateStore(settings.oauth_state_ttl_seconds)
        self.refresher = TokenRefreshScheduler(
            session_factory,
            crypto,
            self.vault,
            client,
            lock,
            threshold=timedelta(days=settings.token_refresh_threshold_days),
            concurrency=settings.sweep_concurrency,
        )
        self.sync_worker = ContentSyncWorker(
            session_factory,
            crypto,
            client,
            self.refresher,
            sweep_page_size=settings.sweep_page_size,
            concurrency=settings.sweep_concurrency,
        )

    # --- Credentials ---

    async def store_credentials(
        self,
        db: AsyncSession,
        tenant_id: str,
        app_id: str,
        app_secret: str,
        redirect_uri: str,
        display_name: str | None = None,
    ) -> uuid.UUID:
        return await self.vault.store_credential_set(db, tenant_id, app_id, app_secret, redirect_uri, display_name)

    async def get_active_credentials(self, db: AsyncSession, tenant_id: str) -> AppCredentials:
        credentials = await self.vault.get_active_credential_set(db, tenant_id)
        if credentials is None:
            raise NotFoundError("No app credentials configured. Please add your app credentials first.")
        return credentials

    async def list_credentials(self, db: AsyncSession, tenant_id: str) -> list[CredentialSummary]:
        return await self.vault.list_credential_sets(db, tenant_id)

    async def validate_app_credentials(self, app_id: str, app_secret: str) -> CredentialCheck:
        """Check a pair against the provider without storing anything."""
        try:
            app_id = validate_app_id(app_id)
            app_secret = validate_app_secret(app_secret)
        except ValidationError as e:
            return CredentialCheck(valid=False, error=e.message)
        return await self._client.validate_app_credentials(app_id, app_secret)

    # --- OAuth ---

    async def begin_auth(self, db: AsyncSession, tenant_id: str) -> AuthStart:
        credentials = await self.get_active_credentials(db, tenant_id)
        state = await self.states.create_state(db, tenant_id)
        url = self._client.build_authorization_url(
            credentials.app_id,
            credentials.redirect_uri,
            state,
            self._settings.scopes,
        )
        logger.info("Started OAuth for tenant=%s", tenant_id)
        return AuthStart(authorization_url=url, state=state)

    async def complete_auth(self, db: AsyncSession, tenant_id: str, code: str, state: str) -> AuthResult:
        """Finish the redirect round-trip and persist the connected account.

        The state is consumed and committed before any provider call, so a
        failed exchange cannot be retried with the same state.
        """
        if not code:
            raise ValidationError("Missing authorization code")

        consumed = await self.states.validate_and_consume(db, state, tenant_id)
        if consumed is None:
            oauth_completions_total.labels(outcome="invalid_state").inc()
            raise StateError()
        await db.commit()

        credentials = await self.get_active_credentials(db, tenant_id)
        try:
            short_token = await self._client.exchange_code_for_short_lived_token(
                credentials.app_id,
                credentials.app_secret,
                credentials.redirect_uri,
                code,
            )
            long_token = await self._client.upgrade_to_long_lived_token(
                credentials.app_id,
                credentials.app_secret,
                short_token,
            )
            identity = await self._client.fetch_identity(long_token.access_token)
            discovery = await self._client.discover_connected_sub_accounts(long_token.access_token)
        except ExternalApiError as e:
            oauth_completions_total.labels(outcome=e.kind.value).inc()
            raise

        now = utcnow()
        expires_at = now + timedelta(seconds=long_token.expires_in) if long_token.expires_in else None
        await db.execute(
            account_upsert(
                db,
                tenant_id=tenant_id,
                encrypted_access_token=self._crypto.encrypt(tenant_id, long_token.access_token),
                token_expires_at=expires_at,
                external_user_id=identity.external_user_id,
                external_user_name=identity.display_name,
                sub_accounts=self._encrypt_sub_accounts(tenant_id, discovery),
                secondary_account_id=discovery.secondary_account_id,
                created_at=now,
                updated_at=now,
            )
        )
        # Keep any instance already loaded in this session in step with the row
        await db.get(ExternalAccount, tenant_id, populate_existing=True)
        await self.states.cleanup(db, state)

        oauth_completions_total.labels(outcome="success").inc()
        logger.info(
            "Connected tenant=%s to external user %s (%d sub-accounts)",
            tenant_id,
            identity.external_user_id,
            len(discovery.sub_accounts),
        )
        return AuthResult(
            success=True,
            external_user_id=identity.external_user_id,
            external_user_name=identity.display_name,
            sub_account_count=len(discovery.sub_accounts),
            secondary_account_id=discovery.secondary_account_id,
            token_expires_at=expires_at,
        )

    def _encrypt_sub_accounts(self, tenant_id: str, discovery: Discovery) -> list[dict]:
        return [
            {
                "id": s.id,
                "name": s.name,
                "encrypted_access_token": self._crypto.encrypt(tenant_id, s.access_token) if s.access_token else None,
            }
            for s in discovery.sub_accounts
        ]

    # --- Connection ---

    async def disconnect(self, db: AsyncSession, tenant_id: str) -> bool:
        """Remove the connected account and its synced content. Credentials are kept."""
        account = await db.get(ExternalAccount, tenant_id)
        if account is None:
            raise NotFoundError("No connected account found")

        result = await db.execute(
            delete(ContentItem)
            .where(ContentItem.tenant_id == tenant_id)
            .execution_options(synchronize_session=False)
        )
        await db.delete(account)
        await db.flush()
        logger.info("Disconnected tenant=%s (%d content items removed)", tenant_id, result.rowcount or 0)
        return True

    async def connection_status(self, db: AsyncSession, tenant_id: str) -> ConnectionStatus:
        account = await db.get(ExternalAccount, tenant_id)
        if account is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=True,
            external_user_id=account.external_user_id,
            external_user_name=account.external_user_name,
            token_expires_at=as_utc(account.token_expires_at),
            secondary_account_id=account.secondary_account_id,
            sub_accounts=[{"id": s["id"], "name": s.get("name", "")} for s in account.sub_accounts or []],
            updated_at=as_utc(account.updated_at),
        )

    async def refresh_connection(self, tenant_id: str) -> RefreshResult:
        return await self.refresher.refresh_if_needed(tenant_id)

    # --- Content ---

    async def list_content(
        self,
        db: AsyncSession,
        tenant_id: str,
        cursor: str | None = None,
        limit: int | None = None,
        kind: ContentKind | None = None,
        sub_account_id: str | None = None,
    ) -> content_queries.ContentListing:
        return await content_queries.list_content(
            db,
            tenant_id,
            cursor=cursor,
            limit=limit or self._settings.content_page_size,
            kind=kind,
            sub_account_id=sub_account_id,
        )

    async def count_content(
        self,
        db: AsyncSession,
        tenant_id: str,
        kind: ContentKind | None = None,
        sub_account_id: str | None = None,
    ) -> int:
        return await content_queries.count_content(db, tenant_id, kind=kind, sub_account_id=sub_account_id)

    async def recent_content(
        self,
        db: AsyncSession,
        tenant_id: str,
        days: int = 7,
        kind: ContentKind | None = None,
        sub_account_id: str | None = None,
    ) -> list[ContentItem]:
        return await content_queries.recent_content(
            db, tenant_id, days=days, kind=kind, sub_account_id=sub_account_id
        )

    async def trigger_sync(self, tenant_id: str, sub_account_id: str | None = None) -> SyncSummary:
        outcomes = await self.sync_worker.trigger_sync(
            tenant_id,
            sub_account_id=sub_account_id,
            limit=self._settings.content_page_size,
        )
        return SyncSummary(
            stored_count=sum(o.stored for o in outcomes),
            failed_count=sum(o.failed for o in outcomes),
            has_more=any(o.has_more for o in outcomes),
            next_cursors={o.sub_account_id: o.next_cursor for o in outcomes if o.next_cursor},
        )
