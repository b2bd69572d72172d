"""Incremental, idempotent ingestion of remote content."""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social_connector.errors import DecryptionError, NotFoundError
from social_connector.metrics import content_items_upserted_total, sweep_duration_seconds
from social_connector.models.base import as_utc, utcnow
from social_connector.models.content_item import ContentItem, ContentKind
from social_connector.models.external_account import ExternalAccount
from social_connector.schemas.graph import MediaEntry, PostEntry
from social_connector.services.crypto_service import CryptoService
from social_connector.services.token_exchange import TokenExchangeClient
from social_connector.services.token_refresh import (
    SweepOutcome,
    TenantOutcome,
    TokenRefreshScheduler,
    list_connected_tenants,
    run_bounded,
)

logger = logging.getLogger(__name__)

# Columns refreshed when an already-stored item is fetched again
_UPSERT_COLUMNS = ("media_type", "caption", "media_url", "permalink", "origin_timestamp", "children", "fetched_at")


@dataclass
class ContentRecord:
    """A remote item mapped into local ContentItem shape."""

    external_id: str
    tenant_id: str
    sub_account_id: str
    kind: ContentKind
    permalink: str
    origin_timestamp: datetime
    media_type: str | None = None
    caption: str | None = None
    media_url: str | None = None
    children: list[dict[str, Any]] | None = None


@dataclass
class ItemOutcome:
    external_id: str | None
    ok: bool
    error: str | None = None


@dataclass
class ContentPage:
    items: list[ContentRecord]
    next_cursor: str | None = None
    # Entries whose shape did not match the expected model
    rejected: list[ItemOutcome] = field(default_factory=list)


@dataclass
class SyncOutcome:
    tenant_id: str
    sub_account_id: str
    next_cursor: str | None
    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def stored(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


@dataclass
class ContentSource:
    account_id: str
    kind: ContentKind
    access_token: str


def map_media(entry: dict[str, Any], tenant_id: str, sub_account_id: str) -> ContentRecord:
    media = MediaEntry.model_validate(entry)
    children = None
    if media.children is not None:
        children = [c.model_dump() for c in media.children.data]
    return ContentRecord(
        external_id=media.id,
        tenant_id=tenant_id,
        sub_account_id=sub_account_id,
        kind=ContentKind.MEDIA,
        media_type=media.media_type,
        caption=media.caption,
        media_url=media.media_url,
        permalink=media.permalink,
        origin_timestamp=as_utc(media.timestamp).astimezone(timezone.utc),
        children=children,
    )


def map_post(entry: dict[str, Any], tenant_id: str, sub_account_id: str) -> ContentRecord:
    post = PostEntry.model_validate(entry)
    attachments = post.attachments.data if post.attachments is not None else []
    first = attachments[0] if attachments else None
    return ContentRecord(
        external_id=post.id,
        tenant_id=tenant_id,
        sub_account_id=sub_account_id,
        kind=ContentKind.POST,
        media_type=first.media_type if first else None,
        caption=post.message,
        media_url=first.media_url if first else None,
        permalink=post.permalink_url,
        origin_timestamp=as_utc(post.created_time).astimezone(timezone.utc),
        children=[a.model_dump() for a in attachments] or None,
    )


_MAPPERS = {ContentKind.MEDIA: map_media, ContentKind.POST: map_post}


def upsert_statement(db: AsyncSession, record: ContentRecord):
    """INSERT ... ON CONFLICT (external_id) DO UPDATE for the session's dialect."""
    insert = sqlite_insert if db.get_bind().dialect.name == "sqlite" else pg_insert
    now = utcnow()
    stmt = insert(ContentItem).values(
        external_id=record.external_id,
        tenant_id=record.tenant_id,
        sub_account_id=record.sub_account_id,
        kind=record.kind,
        media_type=record.media_type,
        caption=record.caption,
        media_url=record.media_url,
        permalink=record.permalink,
        origin_timestamp=record.origin_timestamp,
        children=record.children,
        created_at=now,
        fetched_at=now,
    )
    return stmt.on_conflict_do_update(
        index_elements=[ContentItem.external_id],
        set_={column: stmt.excluded[column] for column in _UPSERT_COLUMNS},
    )


class ContentSyncWorker:
    """Fetches provider listings page by page and upserts them locally.

    Each item is written in its own short transaction, so an item that fails
    to store is recorded and skipped without losing the rest of the page, and
    a cancelled sweep never leaves a half-written item behind.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        crypto: CryptoService,
        client: TokenExchangeClient,
        refresher: TokenRefreshScheduler,
        sweep_page_size: int = 10,
        concurrency: int = 4,
    ) -> None:
        self._session_factory = session_factory
        self._crypto = crypto
        self._client = client
        self._refresher = refresher
        self._sweep_page_size = sweep_page_size
        self._concurrency = concurrency

    async def _load_account(self, tenant_id: str) -> ExternalAccount:
        async with self._session_factory() as db:
            account = await db.get(ExternalAccount, tenant_id)
        if account is None:
            raise NotFoundError("No connected account found. Please connect first.")
        return account

    def _resolve_source(self, account: ExternalAccount, sub_account_id: str) -> ContentSource:
        tenant_id = account.tenant_id
        user_token = self._crypto.decrypt(tenant_id, account.encrypted_access_token)

        if account.secondary_account_id and sub_account_id == account.secondary_account_id:
            return ContentSource(account_id=sub_account_id, kind=ContentKind.MEDIA, access_token=user_token)

        for sub_account in account.sub_accounts or []:
            if sub_account.get("id") == sub_account_id:
                encrypted = sub_account.get("encrypted_access_token")
                token = self._crypto.decrypt(tenant_id, encrypted) if encrypted else user_token
                return ContentSource(account_id=sub_account_id, kind=ContentKind.POST, access_token=token)

        raise NotFoundError(f"Sub-account {sub_account_id} is not connected")

    async def fetch_page(
        self,
        tenant_id: str,
        sub_account_id: str,
        after: str | None = None,
        limit: int = 25,
    ) -> ContentPage:
        """Fetch and map one page of a sub-account's content. Nothing is stored."""
        account = await self._load_account(tenant_id)
        source = self._resolve_source(account, sub_account_id)
        payload = await self._client.list_content(
            source.account_id,
            source.access_token,
            source.kind,
            limit=limit,
            after=after,
        )

        mapper = _MAPPERS[source.kind]
        page = ContentPage(items=[], next_cursor=payload.next_cursor)
        for entry in payload.data:
            try:
                page.items.append(mapper(entry, tenant_id, sub_account_id))
            except PydanticValidationError as e:
                external_id = entry.get("id") if isinstance(entry.get("id"), str) else None
                logger.warning("Skipping unrecognized %s entry %s: %d invalid field(s)",
                               source.kind.value, external_id, e.error_count())
                page.rejected.append(ItemOutcome(external_id=external_id, ok=False, error="unrecognized shape"))
        return page

    async def _store(self, record: ContentRecord) -> ItemOutcome:
        try:
            async with self._session_factory() as db:
                await db.execute(upsert_statement(db, record))
                await db.commit()
        except Exception as e:
            content_items_upserted_total.labels(outcome="failed").inc()
            logger.warning("Failed to store %s %s: %s", record.kind.value, record.external_id, e)
            return ItemOutcome(external_id=record.external_id, ok=False, error=str(e))
        content_items_upserted_total.labels(outcome="stored").inc()
        return ItemOutcome(external_id=record.external_id, ok=True)

    async def sync_one(
        self,
        tenant_id: str,
        sub_account_id: str,
        limit: int = 25,
        after: str | None = None,
    ) -> SyncOutcome:
        """Fetch one page and upsert every item in it by external id."""
        page = await self.fetch_page(tenant_id, sub_account_id, after=after, limit=limit)
        outcome = SyncOutcome(
            tenant_id=tenant_id,
            sub_account_id=sub_account_id,
            next_cursor=page.next_cursor,
            outcomes=list(page.rejected),
        )
        for record in page.items:
            outcome.outcomes.append(await self._store(record))

        logger.info(
            "Synced %s/%s: %d stored, %d failed, has_more=%s",
            tenant_id,
            sub_account_id,
            outcome.stored,
            outcome.failed,
            outcome.has_more,
        )
        return outcome

    @staticmethod
    def source_ids(account: ExternalAccount) -> list[str]:
        """Secondary account first, then every connected sub-account."""
        ids = [account.secondary_account_id] if account.secondary_account_id else []
        ids.extend(p["id"] for p in account.sub_accounts or [] if p.get("id"))
        return ids

    async def trigger_sync(
        self,
        tenant_id: str,
        sub_account_id: str | None = None,
        limit: int = 25,
    ) -> list[SyncOutcome]:
        """On-demand sync for one tenant. Errors propagate to the caller."""
        await self._refresher.refresh_if_needed(tenant_id)
        if sub_account_id is not None:
            source_ids = [sub_account_id]
        else:
            source_ids = self.source_ids(await self._load_account(tenant_id))

        return [await self.sync_one(tenant_id, source_id, limit=limit) for source_id in source_ids]

    async def _sync_source(self, tenant_id: str, source_id: str) -> bool:
        try:
            await self.sync_one(tenant_id, source_id, limit=self._sweep_page_size)
        except DecryptionError:
            raise
        except Exception as e:
            logger.warning("Failed to sync %s for tenant=%s: %s", source_id, tenant_id, e)
            return False
        return True

    async def _sync_tenant(self, tenant_id: str) -> TenantOutcome:
        # Refresh finishes (or fails softly) before any of the tenant's syncs start
        refresh = await self._refresher.refresh_if_needed(tenant_id)
        if refresh.refreshed:
            logger.info("Refreshed token for tenant=%s before sync", tenant_id)

        account = await self._load_account(tenant_id)
        source_ids = self.source_ids(account)
        # Sources write disjoint keys, so they can run side by side
        results = await asyncio.gather(*(self._sync_source(tenant_id, s) for s in source_ids))
        failed = results.count(False)
        return TenantOutcome(
            tenant_id=tenant_id,
            ok=failed == 0,
            detail=f"{len(results) - failed}/{len(results)} sources synced",
        )

    async def scheduled_sync(self, cancel_event: threading.Event | None = None) -> SweepOutcome:
        """Refresh-then-sync every connected tenant with bounded concurrency."""
        start = time.monotonic()
        logger.info("Starting scheduled content sync")
        tenant_ids = await list_connected_tenants(self._session_factory)
        outcome = await run_bounded(tenant_ids, self._sync_tenant, self._concurrency, cancel_event)
        sweep_duration_seconds.labels(sweep="content_sync").observe(time.monotonic() - start)
        logger.info(
            "Completed scheduled content sync: %d ok, %d failed, %d skipped",
            outcome.succeeded,
            outcome.failed,
            len(outcome.skipped),
        )
        return outcome
