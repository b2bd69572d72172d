"""Graph API client: token exchange, identity, and page discovery.

Every method is a plain request/response call with a request timeout and no
local state. Nothing is retried here; callers decide.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, TypeVar
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from social_connector.config import Settings
from social_connector.errors import ExternalApiError
from social_connector.metrics import graph_request_duration_seconds, graph_request_errors_total
from social_connector.models.content_item import ContentKind
from social_connector.schemas.graph import (
    ContentListPayload,
    GraphErrorEnvelope,
    IdentityPayload,
    PageListPayload,
    SecondaryLookupPayload,
    TokenPayload,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

SECONDARY_ACCOUNT_FIELD = "instagram_business_account"

# Listing endpoint and fields per content kind
CONTENT_EDGES: dict[ContentKind, tuple[str, str]] = {
    ContentKind.MEDIA: (
        "media",
        "id,caption,media_type,media_url,permalink,timestamp,children{media_type,media_url}",
    ),
    ContentKind.POST: (
        "feed",
        "id,message,permalink_url,created_time,attachments{media_type,media_url}",
    ),
}


@dataclass
class LongLivedToken:
    access_token: str
    # None means the platform issued a non-expiring token
    expires_in: int | None = None


@dataclass
class Identity:
    external_user_id: str
    display_name: str | None = None


@dataclass
class SubAccount:
    id: str
    name: str
    access_token: str | None = None


@dataclass
class Discovery:
    sub_accounts: list[SubAccount] = field(default_factory=list)
    secondary_account_id: str | None = None


@dataclass
class CredentialCheck:
    valid: bool
    error: str | None = None


class TokenExchangeClient:
    """Talks to the external OAuth authority (Graph API)."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self._base_url = settings.graph_api_base_url.rstrip("/")
        self._authorize_url = settings.graph_authorize_url
        self._timeout = httpx.Timeout(settings.http_timeout_seconds)
        self._http_client = http_client

    @property
    def token_url(self) -> str:
        return f"{self._base_url}/oauth/access_token"

    def build_authorization_url(self, app_id: str, redirect_uri: str, state: str, scopes: list[str]) -> str:
        """Build the authorization redirect URL. No network call."""
        params = {
            "client_id": app_id,
            "redirect_uri": redirect_uri,
            "state": state,
            "scope": ",".join(scopes),
            "response_type": "code",
        }
        return f"{self._authorize_url}?{urlencode(params)}"

    async def exchange_code_for_short_lived_token(
        self,
        app_id: str,
        app_secret: str,
        redirect_uri: str,
        code: str,
    ) -> str:
        payload = await self._call(
            "POST",
            self.token_url,
            {
                "client_id": app_id,
                "redirect_uri": redirect_uri,
                "client_secret": app_secret,
                "code": code,
            },
            TokenPayload,
            endpoint="code_exchange",
        )
        return payload.access_token

    async def upgrade_to_long_lived_token(self, app_id: str, app_secret: str, token: str) -> LongLivedToken:
        """Exchange a short-lived (or current long-lived) token for a fresh long-lived one."""
        payload = await self._call(
            "GET",
            self.token_url,
            {
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": token,
            },
            TokenPayload,
            endpoint="token_upgrade",
        )
        expires_in = payload.expires_in if payload.expires_in and payload.expires_in > 0 else None
        return LongLivedToken(access_token=payload.access_token, expires_in=expires_in)

    async def fetch_identity(self, access_token: str) -> Identity:
        payload = await self._call(
            "GET",
            f"{self._base_url}/me",
            {"access_token": access_token, "fields": "id,name"},
            IdentityPayload,
            endpoint="identity",
        )
        return Identity(external_user_id=payload.id, display_name=payload.name)

    async def discover_connected_sub_accounts(self, access_token: str) -> Discovery:
        """List connected pages, then find the first page with a linked business account.

        The secondary lookup is best-effort and sequential: pages are probed in
        the order the provider returns them and the scan stops at the first
        page that reports a linked account.
        """
        pages = await self._call(
            "GET",
            f"{self._base_url}/me/accounts",
            {"access_token": access_token, "fields": "id,name,access_token"},
            PageListPayload,
            endpoint="sub_accounts",
        )
        sub_accounts = [SubAccount(id=p.id, name=p.name, access_token=p.access_token) for p in pages.data]

        secondary_account_id = None
        for sub_account in sub_accounts:
            try:
                lookup = await self._call(
                    "GET",
                    f"{self._base_url}/{sub_account.id}",
                    {"access_token": access_token, "fields": SECONDARY_ACCOUNT_FIELD},
                    SecondaryLookupPayload,
                    endpoint="secondary_lookup",
                )
            except ExternalApiError as e:
                logger.warning("Secondary account lookup failed for page %s: %s", sub_account.id, e.message)
                continue
            if lookup.instagram_business_account is not None:
                secondary_account_id = lookup.instagram_business_account.id
                break

        return Discovery(sub_accounts=sub_accounts, secondary_account_id=secondary_account_id)

    async def list_content(
        self,
        account_id: str,
        access_token: str,
        kind: ContentKind,
        limit: int,
        after: str | None = None,
    ) -> ContentListPayload:
        """Fetch one page of an account's media (``media``) or page feed (``post``)."""
        edge, fields = CONTENT_EDGES[kind]
        params: dict[str, Any] = {"access_token": access_token, "fields": fields, "limit": str(limit)}
        if after:
            params["after"] = after
        return await self._call(
            "GET",
            f"{self._base_url}/{account_id}/{edge}",
            params,
            ContentListPayload,
            endpoint=f"content_{kind.value}",
        )

    async def validate_app_credentials(self, app_id: str, app_secret: str) -> CredentialCheck:
        """Check an app id/secret pair with a client-credentials grant. Nothing is stored."""
        try:
            await self._call(
                "POST",
                self.token_url,
                {"client_id": app_id, "client_secret": app_secret, "grant_type": "client_credentials"},
                TokenPayload,
                endpoint="credential_check",
            )
        except ExternalApiError as e:
            if e.transport_error:
                return CredentialCheck(valid=False, error="Network error during validation")
            return CredentialCheck(valid=False, error=e.message)
        return CredentialCheck(valid=True)

    async def _send(self, method: str, url: str, params: dict[str, Any]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.request(method, url, params=params, timeout=self._timeout)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, params=params)

    async def _call(
        self,
        method: str,
        url: str,
        params: dict[str, Any],
        model: type[ModelT],
        *,
        endpoint: str,
    ) -> ModelT:
        start = time.monotonic()
        try:
            response = await self._send(method, url, params)
        except httpx.HTTPError as e:
            # Request URLs carry tokens; log the endpoint name only
            logger.warning("Graph API %s request failed: %s", endpoint, type(e).__name__)
            error = ExternalApiError(f"Network error calling {endpoint}: {type(e).__name__}", transport_error=True)
            graph_request_errors_total.labels(endpoint=endpoint, kind=error.kind.value).inc()
            raise error from e
        finally:
            graph_request_duration_seconds.labels(endpoint=endpoint).observe(time.monotonic() - start)

        try:
            return parse_graph_response(response, model, endpoint)
        except ExternalApiError as e:
            graph_request_errors_total.labels(endpoint=endpoint, kind=e.kind.value).inc()
            logger.warning(
                "Graph API %s failed (status=%s code=%s): %s",
                endpoint,
                e.http_status,
                e.error_code,
                e.message,
            )
            raise


def parse_graph_response(response: httpx.Response, model: type[ModelT], endpoint: str) -> ModelT:
    """Turn a provider response into ``model`` or raise ExternalApiError.

    An ``{"error": {...}}`` body always wins, whatever the HTTP status.
    Non-JSON bodies, non-2xx statuses, and bodies that do not match ``model``
    are all rejected.
    """
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict) and "error" in body:
        try:
            envelope = GraphErrorEnvelope.model_validate(body)
        except PydanticValidationError:
            raise ExternalApiError(
                f"Unrecognized error response from {endpoint}",
                http_status=response.status_code,
            ) from None
        raise ExternalApiError(
            envelope.error.message,
            http_status=response.status_code,
            error_code=envelope.error.code,
            error_type=envelope.error.type,
        )

    if not response.is_success:
        detail = response.text[:500] if response.text else f"HTTP {response.status_code}"
        raise ExternalApiError(f"{endpoint} failed: {detail}", http_status=response.status_code)

    if not isinstance(body, dict):
        raise ExternalApiError(f"Unrecognized response from {endpoint}", http_status=response.status_code)

    try:
        return model.model_validate(body)
    except PydanticValidationError as e:
        raise ExternalApiError(
            f"Unrecognized response shape from {endpoint}: {e.error_count()} invalid field(s)",
            http_status=response.status_code,
        ) from e
