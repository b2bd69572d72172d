"""Connection status schemas."""

from datetime import datetime

from pydantic import BaseModel


class SubAccountResponse(BaseModel):
    id: str
    name: str


class ConnectionStatusResponse(BaseModel):
    connected: bool
    external_user_id: str | None = None
    external_user_name: str | None = None
    token_expires_at: datetime | None = None
    secondary_account_id: str | None = None
    sub_accounts: list[SubAccountResponse] = []
    updated_at: datetime | None = None


class RefreshResponse(BaseModel):
    refreshed: bool
    reason: str | None = None
    new_expiry: datetime | None = None
    error_kind: str | None = None
