"""Typed shapes of Graph API response bodies.

One model per endpoint. Bodies that do not validate against the expected
model are rejected by the client instead of being passed through untyped.
"""

import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Graph API timestamps use "+0000"-style offsets
_COMPACT_OFFSET = re.compile(r"([+-]\d{2})(\d{2})$")


def _normalize_offset(value: Any) -> Any:
    if isinstance(value, str):
        return _COMPACT_OFFSET.sub(r"\1:\2", value)
    return value


class _GraphModel(BaseModel):
    # The provider adds fields over time; ignore what we don't read
    model_config = ConfigDict(extra="ignore")


class GraphError(_GraphModel):
    message: str
    type: str | None = None
    code: int | None = None
    error_subcode: int | None = None
    fbtrace_id: str | None = None


class GraphErrorEnvelope(_GraphModel):
    error: GraphError


class TokenPayload(_GraphModel):
    access_token: str = Field(..., min_length=1)
    token_type: str | None = None
    expires_in: int | None = None


class IdentityPayload(_GraphModel):
    id: str
    name: str | None = None


class Cursors(_GraphModel):
    before: str | None = None
    after: str | None = None


class Paging(_GraphModel):
    cursors: Cursors | None = None
    next: str | None = None


class PageEntry(_GraphModel):
    id: str
    name: str = ""
    access_token: str | None = None


class PageListPayload(_GraphModel):
    data: list[PageEntry] = Field(default_factory=list)
    paging: Paging | None = None


class LinkedAccountRef(_GraphModel):
    id: str


class SecondaryLookupPayload(_GraphModel):
    id: str | None = None
    instagram_business_account: LinkedAccountRef | None = None


class ContentListPayload(_GraphModel):
    """Listing envelope. Entries are validated one at a time by the sync worker."""

    data: list[dict[str, Any]] = Field(default_factory=list)
    paging: Paging | None = None

    @property
    def next_cursor(self) -> str | None:
        """The ``after`` cursor; absent on the last page. An empty page ends the walk."""
        if not self.data or self.paging is None or self.paging.cursors is None:
            return None
        return self.paging.cursors.after or None


class MediaChild(_GraphModel):
    media_type: str | None = None
    media_url: str | None = None


class MediaChildren(_GraphModel):
    data: list[MediaChild] = Field(default_factory=list)


class MediaEntry(_GraphModel):
    id: str
    caption: str | None = None
    media_type: str | None = None
    media_url: str | None = None
    permalink: str
    timestamp: datetime
    children: MediaChildren | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def normalize_timestamp(cls, v: Any) -> Any:
        return _normalize_offset(v)


class PostEntry(_GraphModel):
    id: str
    message: str | None = None
    permalink_url: str
    created_time: datetime
    attachments: MediaChildren | None = None

    @field_validator("created_time", mode="before")
    @classmethod
    def normalize_created_time(cls, v: Any) -> Any:
        return _normalize_offset(v)
