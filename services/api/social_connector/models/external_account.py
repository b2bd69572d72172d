"""Connected external identity with its long-lived token."""

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from social_connector.models.base import Base, JSONType, TimestampMixin


class ExternalAccount(Base, TimestampMixin):
    __tablename__ = "external_accounts"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    # Long-lived user token, encrypted with the tenant's vault key
    encrypted_access_token: Mapped[str] = mapped_column(Text, nullable=False)
    # None means the platform issued a non-expiring token
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external_user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_user_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # sub_accounts JSON stores:
    # [{"id": "string", "name": "string", "encrypted_access_token": "string | null"}]
    sub_accounts: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    secondary_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<ExternalAccount tenant_id={self.tenant_id} external_user_id={self.external_user_id}>"
