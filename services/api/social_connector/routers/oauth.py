"""OAuth round-trip routes.

The provider redirects the browser to the registered redirect URI, which
either calls ``POST /oauth/callback`` or points straight at the GET variant.
Completion is this explicit call; nothing polls.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from social_connector.dependencies import get_connector_service, get_db, get_tenant_id
from social_connector.schemas.oauth import AuthCallbackRequest, AuthCompleteResponse, AuthStartResponse
from social_connector.services.connector_service import AuthResult, ConnectorService

router = APIRouter(prefix="/oauth", tags=["oauth"])


def _complete_response(result: AuthResult) -> AuthCompleteResponse:
    return AuthCompleteResponse(
        success=result.success,
        external_user_id=result.external_user_id,
        external_user_name=result.external_user_name,
        sub_account_count=result.sub_account_count,
        secondary_account_id=result.secondary_account_id,
        token_expires_at=result.token_expires_at,
    )


@router.post("/start", response_model=AuthStartResponse)
async def begin_auth(
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    start = await service.begin_auth(db, tenant_id)
    return AuthStartResponse(authorization_url=start.authorization_url, state=start.state)


@router.post("/callback", response_model=AuthCompleteResponse)
async def complete_auth(
    body: AuthCallbackRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    result = await service.complete_auth(db, tenant_id, body.code, body.state)
    return _complete_response(result)


@router.get("/callback", response_model=AuthCompleteResponse)
async def complete_auth_redirect(
    code: str = Query(..., min_length=1, max_length=2048),
    state: str = Query(..., min_length=1, max_length=128),
    tenant_id: str = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    service: ConnectorService = Depends(get_connector_service),
):
    result = await service.complete_auth(db, tenant_id, code, state)
    return _complete_response(result)
