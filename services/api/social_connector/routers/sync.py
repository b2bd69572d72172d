"""On-demand content sync."""

from fastapi import APIRouter, Body, Depends

from social_connector.dependencies import get_connector_service, get_tenant_id
from social_connector.schemas.content import SyncRequest, SyncResponse
from social_connector.services.connector_service import ConnectorService

router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("", response_model=SyncResponse)
async def trigger_sync(
    body: SyncRequest | None = Body(None),
    tenant_id: str = Depends(get_tenant_id),
    service: ConnectorService = Depends(get_connector_service),
):
    """Refresh the token if needed, then fetch one page per source."""
    summary = await service.trigger_sync(tenant_id, sub_account_id=body.sub_account_id if body else None)
    return SyncResponse(
        stored_count=summary.stored_count,
        failed_count=summary.failed_count,
        has_more=summary.has_more,
    )
