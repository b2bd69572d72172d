"""Short-lived, single-use CSRF state for the OAuth redirect round-trip."""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from social_connector.models.base import as_utc, utcnow
from social_connector.models.oauth_state import OAuthState

logger = logging.getLogger(__name__)

DEFAULT_STATE_TTL_SECONDS = 600


@dataclass
class StateRecord:
    token: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime


def _utcnow() -> datetime:
    return utcnow()


class OAuthStateStore:
    """Persists state tokens with a fixed TTL and consumes them atomically.

    Validation is a single ``DELETE ... WHERE token AND tenant AND not expired
    RETURNING``: of two concurrent callbacks carrying the same state, only the
    first deletes a row, so only the first succeeds.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)

    async def create_state(self, db: AsyncSession, tenant_id: str) -> str:
        """Mint and persist a random state token bound to ``tenant_id``."""
        token = secrets.token_urlsafe(32)
        now = _utcnow()
        db.add(OAuthState(token=token, tenant_id=tenant_id, created_at=now, expires_at=now + self._ttl))
        await db.flush()
        return token

    async def validate_and_consume(self, db: AsyncSession, token: str, tenant_id: str) -> StateRecord | None:
        """Consume the state if it exists, belongs to ``tenant_id`` and has not expired.

        Returns None otherwise (unknown, wrong tenant, expired, or already used).
        Rejected states are left in place.
        """
        if not token:
            return None

        result = await db.execute(
            delete(OAuthState)
            .where(
                OAuthState.token == token,
                OAuthState.tenant_id == tenant_id,
                OAuthState.expires_at > _utcnow(),
            )
            .returning(
                OAuthState.token,
                OAuthState.tenant_id,
                OAuthState.created_at,
                OAuthState.expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            logger.warning("Rejected OAuth state for tenant=%s", tenant_id)
            return None

        return StateRecord(
            token=row.token,
            tenant_id=row.tenant_id,
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
        )

    async def cleanup(self, db: AsyncSession, token: str) -> None:
        """Delete a state token. Deleting an absent token is not an error."""
        await db.execute(
            delete(OAuthState).where(OAuthState.token == token).execution_options(synchronize_session=False)
        )

    async def purge_expired(self, db: AsyncSession) -> int:
        """Delete every expired state. Returns the number of rows removed."""
        result = await db.execute(
            delete(OAuthState)
            .where(OAuthState.expires_at <= _utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
