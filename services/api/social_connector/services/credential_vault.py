"""Encrypted storage of per-tenant third-party app credentials."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlparse

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from social_connector.errors import NotFoundError, ValidationError
from social_connector.models.app_credential import AppCredential
from social_connector.models.base import utcnow
from social_connector.services.crypto_service import CryptoService

logger = logging.getLogger(__name__)

MIN_APP_ID_LENGTH = 10
MIN_APP_SECRET_LENGTH = 20
DEFAULT_DISPLAY_NAME = "Facebook App"


@dataclass
class AppCredentials:
    """Decrypted credential set. Never serialize this to a client."""

    credential_id: uuid.UUID
    app_id: str
    app_secret: str
    redirect_uri: str
    display_name: str
    created_at: datetime
    updated_at: datetime


@dataclass
class CredentialSummary:
    credential_id: uuid.UUID
    display_name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


def validate_app_id(app_id: str | None) -> str:
    if not app_id or len(app_id.strip()) < MIN_APP_ID_LENGTH:
        raise ValidationError("Invalid app ID")
    return app_id.strip()


def validate_app_secret(app_secret: str | None) -> str:
    if not app_secret or len(app_secret.strip()) < MIN_APP_SECRET_LENGTH:
        raise ValidationError("Invalid app secret")
    return app_secret.strip()


def validate_redirect_uri(redirect_uri: str | None) -> str:
    if not redirect_uri:
        raise ValidationError("Invalid redirect URI. Must be a valid HTTP/HTTPS URL")
    parsed = urlparse(redirect_uri.strip())
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError("Invalid redirect URI. Must be a valid HTTP/HTTPS URL")
    return redirect_uri.strip()


def _summary(record: AppCredential) -> CredentialSummary:
    return CredentialSummary(
        credential_id=record.id,
        display_name=record.display_name,
        is_active=record.is_active,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class CredentialVault:
    """Owns the lifecycle of encrypted credential records.

    Only the vault encrypts, decrypts, or activates credentials. Storing a new
    set deactivates every earlier set for the tenant in the same transaction,
    so a tenant never has zero-or-two active records visible at once.
    """

    def __init__(self, crypto: CryptoService) -> None:
        self._crypto = crypto

    async def store_credential_set(
        self,
        db: AsyncSession,
        tenant_id: str,
        app_id: str,
        app_secret: str,
        redirect_uri: str,
        display_name: str | None = None,
    ) -> uuid.UUID:
        """Validate, encrypt, and store a new active credential set."""
        app_id = validate_app_id(app_id)
        app_secret = validate_app_secret(app_secret)
        redirect_uri = validate_redirect_uri(redirect_uri)

        record = AppCredential(
            tenant_id=tenant_id,
            encrypted_app_id=self._crypto.encrypt(tenant_id, app_id),
            encrypted_app_secret=self._crypto.encrypt(tenant_id, app_secret),
            encrypted_redirect_uri=self._crypto.encrypt(tenant_id, redirect_uri),
            display_name=display_name or DEFAULT_DISPLAY_NAME,
            is_active=True,
        )

        # Lock the tenant's active row so concurrent stores serialize here
        await db.execute(
            select(AppCredential.id)
            .where(AppCredential.tenant_id == tenant_id, AppCredential.is_active.is_(True))
            .with_for_update()
        )
        await db.execute(
            update(AppCredential)
            .where(AppCredential.tenant_id == tenant_id, AppCredential.is_active.is_(True))
            .values(is_active=False, updated_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        db.add(record)
        await db.flush()

        logger.info("Stored credential set %s for tenant=%s", record.id, tenant_id)
        return record.id

    async def _get_active_record(self, db: AsyncSession, tenant_id: str) -> AppCredential | None:
        result = await db.execute(
            select(AppCredential).where(
                AppCredential.tenant_id == tenant_id,
                AppCredential.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def get_active_credential_set(self, db: AsyncSession, tenant_id: str) -> AppCredentials | None:
        """Fetch and decrypt the tenant's active credential set, if any."""
        record = await self._get_active_record(db, tenant_id)
        if record is None:
            return None

        return AppCredentials(
            credential_id=record.id,
            app_id=self._crypto.decrypt(tenant_id, record.encrypted_app_id),
            app_secret=self._crypto.decrypt(tenant_id, record.encrypted_app_secret),
            redirect_uri=self._crypto.decrypt(tenant_id, record.encrypted_redirect_uri),
            display_name=record.display_name,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    async def list_credential_sets(self, db: AsyncSession, tenant_id: str) -> list[CredentialSummary]:
        """List the tenant's credential sets, newest first. Metadata only."""
        result = await db.execute(
            select(AppCredential)
            .where(AppCredential.tenant_id == tenant_id)
            .order_by(AppCredential.created_at.desc())
        )
        return [_summary(r) for r in result.scalars().all()]

    async def _get_record(
        self,
        db: AsyncSession,
        credential_id: uuid.UUID,
        tenant_id: str | None,
    ) -> AppCredential:
        record = await db.get(AppCredential, credential_id)
        if record is None or (tenant_id is not None and record.tenant_id != tenant_id):
            raise NotFoundError("Credentials not found")
        return record

    async def update_credential_set(
        self,
        db: AsyncSession,
        credential_id: uuid.UUID,
        *,
        tenant_id: str | None = None,
        app_id: str | None = None,
        app_secret: str | None = None,
        redirect_uri: str | None = None,
        display_name: str | None = None,
    ) -> CredentialSummary:
        """Re-encrypt only the supplied fields; everything else is preserved."""
        record = await self._get_record(db, credential_id, tenant_id)
        owner = record.tenant_id

        if app_id is not None:
            record.encrypted_app_id = self._crypto.encrypt(owner, validate_app_id(app_id))
        if app_secret is not None:
            record.encrypted_app_secret = self._crypto.encrypt(owner, validate_app_secret(app_secret))
        if redirect_uri is not None:
            record.encrypted_redirect_uri = self._crypto.encrypt(owner, validate_redirect_uri(redirect_uri))
        if display_name:
            record.display_name = display_name
        record.updated_at = utcnow()

        await db.flush()
        logger.info("Updated credential set %s for tenant=%s", record.id, owner)
        return _summary(record)

    async def delete_credential_set(
        self,
        db: AsyncSession,
        credential_id: uuid.UUID,
        *,
        tenant_id: str | None = None,
    ) -> None:
        record = await self._get_record(db, credential_id, tenant_id)
        await db.delete(record)
        await db.flush()
        logger.info("Deleted credential set %s for tenant=%s", credential_id, record.tenant_id)
