"""Synced content routes."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from social_connector.dependencies import get_connector_service, get_db, get_tenant_id
from social_connector.models.content_item import ContentKind
from social_connector.schemas.content import ContentCountResponse, ContentItemResponse, ContentListResponse
from social_connector.services.connector_service import ConnectorService

router = APIRouter(prefix="/content", tags=["content"])


@router.get("", response_model=ContentListResponse)
async def list_content(
    cursor: str | None = Query(None, max_length=512),
    limit: int | None = Query(None, ge=1, le=100),
    kind: ContentKind | None = Query(None),
    sub_account_id: str | None = Query(None, max_length=255),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    """List synced content, newest first."""
    listing = await service.list_content(
        db,
        tenant_id,
        cursor=cursor,
        limit=limit,
        kind=kind,
        sub_account_id=sub_account_id,
    )
    return ContentListResponse(
        items=[ContentItemResponse.model_validate(i) for i in listing.items],
        next_cursor=listing.next_cursor,
        has_more=listing.has_more,
    )


@router.get("/count", response_model=ContentCountResponse)
async def count_content(
    kind: ContentKind | None = Query(None),
    sub_account_id: str | None = Query(None, max_length=255),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    count = await service.count_content(db, tenant_id, kind=kind, sub_account_id=sub_account_id)
    return ContentCountResponse(count=count)


@router.get("/recent", response_model=list[ContentItemResponse])
async def recent_content(
    days: int = Query(7, ge=1, le=365),
    kind: ContentKind | None = Query(None),
    sub_account_id: str | None = Query(None, max_length=255),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    items = await service.recent_content(db, tenant_id, days=days, kind=kind, sub_account_id=sub_account_id)
    return [ContentItemResponse.model_validate(i) for i in items]
