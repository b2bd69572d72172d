"""App credential routes."""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from social_connector.dependencies import get_connector_service, get_db, get_tenant_id
from social_connector.schemas.credentials import (
    ActiveCredentialResponse,
    CredentialCreate,
    CredentialCreated,
    CredentialResponse,
    CredentialUpdate,
    CredentialValidateRequest,
    CredentialValidateResponse,
)
from social_connector.services.connector_service import ConnectorService

router = APIRouter(prefix="/credentials", tags=["credentials"])


def mask_app_id(app_id: str) -> str:
    return f"****{app_id[-4:]}" if len(app_id) > 4 else "****"


@router.post("", response_model=CredentialCreated, status_code=status.HTTP_201_CREATED)
async def store_credentials(
    body: CredentialCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    """Store a new credential set and make it the tenant's active one."""
    credential_id = await service.store_credentials(
        db,
        tenant_id,
        body.app_id,
        body.app_secret,
        body.redirect_uri,
        body.display_name,
    )
    return CredentialCreated(credential_id=credential_id)


@router.get("", response_model=list[CredentialResponse])
async def list_credentials(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    return await service.list_credentials(db, tenant_id)


@router.get("/active", response_model=ActiveCredentialResponse)
async def get_active_credentials(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    credentials = await service.get_active_credentials(db, tenant_id)
    return ActiveCredentialResponse(
        credential_id=credentials.credential_id,
        display_name=credentials.display_name,
        app_id_masked=mask_app_id(credentials.app_id),
        redirect_uri=credentials.redirect_uri,
        created_at=credentials.created_at,
        updated_at=credentials.updated_at,
    )


@router.post("/validate", response_model=CredentialValidateResponse)
async def validate_credentials(
    body: CredentialValidateRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: ConnectorService = Depends(get_connector_service),
):
    """Check an app id/secret pair against the provider without storing it."""
    check = await service.validate_app_credentials(body.app_id, body.app_secret)
    return CredentialValidateResponse(valid=check.valid, error=check.error)


@router.patch("/{credential_id}", response_model=CredentialResponse)
async def update_credentials(
    credential_id: uuid.UUID,
    body: CredentialUpdate,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    return await service.vault.update_credential_set(
        db,
        credential_id,
        tenant_id=tenant_id,
        app_id=body.app_id,
        app_secret=body.app_secret,
        redirect_uri=body.redirect_uri,
        display_name=body.display_name,
    )


@router.delete("/{credential_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_credentials(
    credential_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    await service.vault.delete_credential_set(db, credential_id, tenant_id=tenant_id)
