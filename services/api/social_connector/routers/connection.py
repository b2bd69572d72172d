"""Connected account routes."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from social_connector.dependencies import get_connector_service, get_db, get_tenant_id
from social_connector.schemas.connection import ConnectionStatusResponse, RefreshResponse, SubAccountResponse
from social_connector.services.connector_service import ConnectorService

router = APIRouter(prefix="/connection", tags=["connection"])


@router.get("", response_model=ConnectionStatusResponse)
async def connection_status(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    status = await service.connection_status(db, tenant_id)
    return ConnectionStatusResponse(
        connected=status.connected,
        external_user_id=status.external_user_id,
        external_user_name=status.external_user_name,
        token_expires_at=status.token_expires_at,
        secondary_account_id=status.secondary_account_id,
        sub_accounts=[SubAccountResponse(**s) for s in status.sub_accounts],
        updated_at=status.updated_at,
    )


@router.delete("")
async def disconnect(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    """Remove the connected account and its content. Credentials are kept."""
    success = await service.disconnect(db, tenant_id)
    return {"success": success}


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_connection(
    tenant_id: str = Depends(get_tenant_id),
    service: ConnectorService = Depends(get_connector_service),
):
    result = await service.refresh_connection(tenant_id)
    return RefreshResponse(
        refreshed=result.refreshed,
        reason=result.reason,
        new_expiry=result.new_expiry,
        error_kind=result.error_kind,
    )
