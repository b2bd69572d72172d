"""Per-tenant third-party app credentials, encrypted at rest."""

from sqlalchemy import Boolean, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from social_connector.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class AppCredential(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    __tablename__ = "app_credentials"
    __table_args__ = (
        # At most one active credential set per tenant
        Index(
            "uq_app_credentials_tenant_active",
            "tenant_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    # AES-256-GCM blobs, base64(nonce || ciphertext || tag)
    encrypted_app_id: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_app_secret: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="Facebook App")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<AppCredential {self.id} tenant_id={self.tenant_id} active={self.is_active}>"
