"""Read-side queries over synced content.

Listing is keyset-paginated, newest first, on ``(origin_timestamp,
external_id)``. The cursor is opaque to callers.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from social_connector.errors import ValidationError
from social_connector.models.base import as_utc, utcnow
from social_connector.models.content_item import ContentItem, ContentKind

DEFAULT_LIMIT = 25
MAX_LIMIT = 100
RECENT_LIMIT = 50


@dataclass
class ContentListing:
    items: list[ContentItem]
    next_cursor: str | None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


def encode_cursor(item: ContentItem) -> str:
    raw = json.dumps({"t": as_utc(item.origin_timestamp).isoformat(), "id": item.external_id})
    return base64.urlsafe_b64encode(raw.encode()).decode()


def decode_cursor(cursor: str) -> tuple[datetime, str]:
    try:
        data = json.loads(base64.urlsafe_b64decode(cursor.encode()))
        return as_utc(datetime.fromisoformat(data["t"])), str(data["id"])
    except (binascii.Error, ValueError, KeyError, TypeError) as e:
        raise ValidationError("Invalid content cursor") from e


def _filtered(query, tenant_id: str, kind: ContentKind | None, sub_account_id: str | None):
    query = query.where(ContentItem.tenant_id == tenant_id)
    if kind is not None:
        query = query.where(ContentItem.kind == kind)
    if sub_account_id is not None:
        query = query.where(ContentItem.sub_account_id == sub_account_id)
    return query


async def list_content(
    db: AsyncSession,
    tenant_id: str,
    cursor: str | None = None,
    limit: int = DEFAULT_LIMIT,
    kind: ContentKind | None = None,
    sub_account_id: str | None = None,
) -> ContentListing:
    if limit < 1 or limit > MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {MAX_LIMIT}")

    query = _filtered(select(ContentItem), tenant_id, kind, sub_account_id)
    if cursor:
        ts, external_id = decode_cursor(cursor)
        query = query.where(
            or_(
                ContentItem.origin_timestamp < ts,
                and_(ContentItem.origin_timestamp == ts, ContentItem.external_id < external_id),
            )
        )
    query = query.order_by(ContentItem.origin_timestamp.desc(), ContentItem.external_id.desc()).limit(limit + 1)

    result = await db.execute(query)
    rows = list(result.scalars().all())
    # One extra row tells us whether another page exists
    if len(rows) > limit:
        rows = rows[:limit]
        return ContentListing(items=rows, next_cursor=encode_cursor(rows[-1]))
    return ContentListing(items=rows, next_cursor=None)


async def count_content(
    db: AsyncSession,
    tenant_id: str,
    kind: ContentKind | None = None,
    sub_account_id: str | None = None,
) -> int:
    query = _filtered(select(func.count(ContentItem.id)), tenant_id, kind, sub_account_id)
    result = await db.execute(query)
    return result.scalar_one()


async def recent_content(
    db: AsyncSession,
    tenant_id: str,
    days: int = 7,
    kind: ContentKind | None = None,
    sub_account_id: str | None = None,
) -> list[ContentItem]:
    """Items published in the last ``days`` days, newest first, at most 50."""
    if days < 1:
        raise ValidationError("days must be positive")
    since = utcnow() - timedelta(days=days)
    query = (
        _filtered(select(ContentItem), tenant_id, kind, sub_account_id)
        .where(ContentItem.origin_timestamp >= since)
        .order_by(ContentItem.origin_timestamp.desc(), ContentItem.external_id.desc())
        .limit(RECENT_LIMIT)
    )
    result = await db.execute(query)
    return list(result.scalars().all())
