"""OAuth round-trip schemas."""

from datetime import datetime

from pydantic import BaseModel, Field


class AuthStartResponse(BaseModel):
    authorization_url: str
    state: str


class AuthCallbackRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=2048)
    state: str = Field(..., min_length=1, max_length=128)


class AuthCompleteResponse(BaseModel):
    success: bool
    external_user_id: str
    external_user_name: str | None = None
    sub_account_count: int
    secondary_account_id: str | None = None
    token_expires_at: datetime | None = None
