"""Synced remote content, upserted by external id."""

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from social_connector.models.base import Base, JSONType, UUIDPrimaryKeyMixin, utcnow


class ContentKind(str, enum.Enum):
    MEDIA = "media"
    POST = "post"


class ContentItem(Base, UUIDPrimaryKeyMixin):
    __tablename__ = "content_items"
    __table_args__ = (Index("ix_content_items_tenant_origin", "tenant_id", "origin_timestamp"),)

    external_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    sub_account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    kind: Mapped[ContentKind] = mapped_column(
        Enum(ContentKind, name="content_kind", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    # Provider media type, e.g. IMAGE, VIDEO, CAROUSEL_ALBUM
    media_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)
    media_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    permalink: Mapped[str] = mapped_column(Text, nullable=False)
    origin_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # children JSON stores: [{"media_type": "string", "media_url": "string"}]
    children: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<ContentItem {self.external_id} kind={self.kind.value} tenant_id={self.tenant_id}>"
