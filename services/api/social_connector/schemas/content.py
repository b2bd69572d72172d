"""Synced content and sync trigger schemas."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from social_connector.models.content_item import ContentKind


class ContentItemResponse(BaseModel):
    id: uuid.UUID
    external_id: str
    sub_account_id: str
    kind: ContentKind
    media_type: str | None = None
    caption: str | None = None
    media_url: str | None = None
    permalink: str
    origin_timestamp: datetime
    children: list[dict[str, Any]] | None = None
    fetched_at: datetime

    model_config = {"from_attributes": True}


class ContentListResponse(BaseModel):
    items: list[ContentItemResponse]
    next_cursor: str | None = None
    has_more: bool


class ContentCountResponse(BaseModel):
    count: int


class SyncRequest(BaseModel):
    sub_account_id: str | None = Field(None, max_length=255)


class SyncResponse(BaseModel):
    stored_count: int
    failed_count: int
    has_more: bool
