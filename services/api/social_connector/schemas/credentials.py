"""App credential request/response schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, Field


class CredentialCreate(BaseModel):
    app_id: str = Field(..., max_length=255)
    app_secret: str = Field(..., max_length=255)
    redirect_uri: str = Field(..., max_length=2048)
    display_name: str | None = Field(None, max_length=255)


class CredentialUpdate(BaseModel):
    app_id: str | None = Field(None, max_length=255)
    app_secret: str | None = Field(None, max_length=255)
    redirect_uri: str | None = Field(None, max_length=2048)
    display_name: str | None = Field(None, max_length=255)


class CredentialCreated(BaseModel):
    credential_id: uuid.UUID


class CredentialResponse(BaseModel):
    credential_id: uuid.UUID
    display_name: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ActiveCredentialResponse(BaseModel):
    """Active set with the app id masked. The secret is never returned."""

    credential_id: uuid.UUID
    display_name: str
    app_id_masked: str
    redirect_uri: str
    created_at: datetime
    updated_at: datetime


class CredentialValidateRequest(BaseModel):
    app_id: str = Field(..., max_length=255)
    app_secret: str = Field(..., max_length=255)


class CredentialValidateResponse(BaseModel):
    valid: bool
    error: str | None = None
