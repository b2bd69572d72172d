"""Unit tests for the HTTP routers."""

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from social_connector.dependencies import get_connector_service, get_db
from social_connector.errors import ConfigurationError, ExternalApiError, NotFoundError, StateError
from social_connector.middleware.error_handler import register_exception_handlers
from social_connector.models.content_item import ContentKind
from social_connector.routers import connection, content, credentials, oauth, sync
from social_connector.services.connector_service import AuthResult, AuthStart, ConnectionStatus, SyncSummary
from social_connector.services.content_queries import ContentListing
from social_connector.services.credential_vault import AppCredentials, CredentialSummary
from social_connector.services.token_exchange import CredentialCheck

TENANT_HEADERS = {"X-Tenant-ID": "tenant-a"}
NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)
CREDENTIAL_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")


@pytest.fixture
def mock_db():
    return AsyncMock()


@pytest.fixture
def mock_service():
    service = MagicMock()
    service.vault = MagicMock()
    return service


@pytest.fixture
def app(mock_db, mock_service):
    test_app = FastAPI()
    register_exception_handlers(test_app)
    for module in (credentials, oauth, connection, content, sync):
        test_app.include_router(module.router, prefix="/api/v1")

    async def _get_db():
        yield mock_db

    test_app.dependency_overrides[get_db] = _get_db
    test_app.dependency_overrides[get_connector_service] = lambda: mock_service
    return test_app


@pytest.fixture
def client(app):
    return TestClient(app)


def _content_item(external_id: str) -> MagicMock:
    item = MagicMock()
    item.id = uuid.uuid4()
    item.external_id = external_id
    item.sub_account_id = "ig-1"
    item.kind = ContentKind.MEDIA
    item.media_type = "IMAGE"
    item.caption = "hello"
    item.media_url = "https://cdn.test/1.jpg"
    item.permalink = "https://ig.test/p/1"
    item.origin_timestamp = NOW
    item.children = None
    item.fetched_at = NOW
    return item


class TestTenantHeader:
    def test_missing_header_is_401(self, client):
        resp = client.get("/api/v1/connection")
        assert resp.status_code == 401

    def test_oversized_header_is_400(self, client):
        resp = client.get("/api/v1/connection", headers={"X-Tenant-ID": "t" * 300})
        assert resp.status_code == 400


class TestCredentials:
    def test_store(self, client, mock_service, mock_db):
        mock_service.store_credentials = AsyncMock(return_value=CREDENTIAL_ID)

        resp = client.post(
            "/api/v1/credentials",
            json={"app_id": "1234567890", "app_secret": "abcdefghijklmnopqrst", "redirect_uri": "https://x.test/cb"},
            headers=TENANT_HEADERS,
        )

        assert resp.status_code == 201
        assert resp.json() == {"credential_id": str(CREDENTIAL_ID)}
        mock_service.store_credentials.assert_awaited_once_with(
            mock_db, "tenant-a", "1234567890", "abcdefghijklmnopqrst", "https://x.test/cb", None
        )

    def test_active_masks_app_id_and_omits_secret(self, client, mock_service):
        mock_service.get_active_credentials = AsyncMock(
            return_value=AppCredentials(
                credential_id=CREDENTIAL_ID,
                app_id="1234567890",
                app_secret="abcdefghijklmnopqrst",
                redirect_uri="https://x.test/cb",
                display_name="Facebook App",
                created_at=NOW,
                updated_at=NOW,
            )
        )

        resp = client.get("/api/v1/credentials/active", headers=TENANT_HEADERS)

        assert resp.status_code == 200
        data = resp.json()
        assert data["app_id_masked"] == "****7890"
        assert "abcdefghijklmnopqrst" not in resp.text
        assert "1234567890" not in resp.text

    def test_active_not_found(self, client, mock_service):
        mock_service.get_active_credentials = AsyncMock(side_effect=NotFoundError("No app credentials configured"))

        resp = client.get("/api/v1/credentials/active", headers=TENANT_HEADERS)

        assert resp.status_code == 404
        assert resp.json() == {
            "detail": "No app credentials configured",
            "code": "E_NOT_FOUND",
            "kind": "not_found",
        }

    def test_list(self, client, mock_service):
        mock_service.list_credentials = AsyncMock(
            return_value=[CredentialSummary(CREDENTIAL_ID, "Facebook App", True, NOW, NOW)]
        )
        resp = client.get("/api/v1/credentials", headers=TENANT_HEADERS)
        assert resp.status_code == 200
        assert resp.json()[0]["credential_id"] == str(CREDENTIAL_ID)
        assert resp.json()[0]["is_active"] is True

    def test_validate(self, client, mock_service):
        mock_service.validate_app_credentials = AsyncMock(
            return_value=CredentialCheck(valid=False, error="Error validating client secret.")
        )
        resp = client.post(
            "/api/v1/credentials/validate",
            json={"app_id": "1234567890", "app_secret": "abcdefghijklmnopqrst"},
            headers=TENANT_HEADERS,
        )
        assert resp.status_code == 200
        assert resp.json() == {"valid": False, "error": "Error validating client secret."}

    def test_delete(self, client, mock_service, mock_db):
        mock_service.vault.delete_credential_set = AsyncMock(return_value=None)
        resp = client.delete(f"/api/v1/credentials/{CREDENTIAL_ID}", headers=TENANT_HEADERS)
        assert resp.status_code == 204
        mock_service.vault.delete_credential_set.assert_awaited_once_with(
            mock_db, CREDENTIAL_ID, tenant_id="tenant-a"
        )

    def test_missing_master_secret_is_503(self, client, mock_service):
        mock_service.list_credentials = AsyncMock(side_effect=ConfigurationError("ENCRYPTION_MASTER_SECRET is not set"))
        resp = client.get("/api/v1/credentials", headers=TENANT_HEADERS)
        assert resp.status_code == 503
        assert resp.json()["kind"] == "not_configured"


class TestOAuth:
    def test_start(self, client, mock_service):
        mock_service.begin_auth = AsyncMock(
            return_value=AuthStart(authorization_url="https://auth.test/dialog/oauth?state=s1", state="s1")
        )
        resp = client.post("/api/v1/oauth/start", headers=TENANT_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["state"] == "s1"

    def test_callback_post_and_get(self, client, mock_service, mock_db):
        mock_service.complete_auth = AsyncMock(
            return_value=AuthResult(
                success=True,
                external_user_id="fb-user-1",
                external_user_name="Jane",
                sub_account_count=1,
                secondary_account_id="ig-1",
                token_expires_at=NOW,
            )
        )

        post = client.post("/api/v1/oauth/callback", json={"code": "c", "state": "s"}, headers=TENANT_HEADERS)
        get = client.get("/api/v1/oauth/callback", params={"code": "c", "state": "s"}, headers=TENANT_HEADERS)

        assert post.status_code == 200
        assert get.status_code == 200
        assert post.json()["external_user_id"] == "fb-user-1"
        assert mock_service.complete_auth.await_count == 2

    def test_bad_state_is_400(self, client, mock_service):
        mock_service.complete_auth = AsyncMock(side_effect=StateError())
        resp = client.post("/api/v1/oauth/callback", json={"code": "c", "state": "s"}, headers=TENANT_HEADERS)
        assert resp.status_code == 400
        assert resp.json()["code"] == "E_INVALID_STATE"

    def test_expired_token_needs_reconnect(self, client, mock_service):
        mock_service.complete_auth = AsyncMock(side_effect=ExternalApiError("Session has expired", error_code=190))
        resp = client.post("/api/v1/oauth/callback", json={"code": "c", "state": "s"}, headers=TENANT_HEADERS)
        assert resp.status_code == 502
        assert resp.json()["kind"] == "needs_reconnect"

    def test_transient_provider_error_is_503(self, client, mock_service):
        mock_service.complete_auth = AsyncMock(side_effect=ExternalApiError("down", http_status=500))
        resp = client.post("/api/v1/oauth/callback", json={"code": "c", "state": "s"}, headers=TENANT_HEADERS)
        assert resp.status_code == 503
        assert resp.json()["kind"] == "transient"


class TestConnection:
    def test_status(self, client, mock_service):
        mock_service.connection_status = AsyncMock(
            return_value=ConnectionStatus(
                connected=True,
                external_user_id="fb-user-1",
                sub_accounts=[{"id": "p1", "name": "Page"}],
                secondary_account_id="ig-1",
                token_expires_at=NOW,
            )
        )
        resp = client.get("/api/v1/connection", headers=TENANT_HEADERS)
        assert resp.status_code == 200
        assert resp.json()["sub_accounts"] == [{"id": "p1", "name": "Page"}]

    def test_disconnect(self, client, mock_service):
        mock_service.disconnect = AsyncMock(return_value=True)
        resp = client.delete("/api/v1/connection", headers=TENANT_HEADERS)
        assert resp.status_code == 200
        assert resp.json() == {"success": True}


class TestContent:
    def test_list_passes_filters(self, client, mock_service, mock_db):
        mock_service.list_content = AsyncMock(
            return_value=ContentListing(items=[_content_item("m1")], next_cursor="abc")
        )

        resp = client.get(
            "/api/v1/content",
            params={"limit": 10, "kind": "media", "sub_account_id": "ig-1", "cursor": "xyz"},
            headers=TENANT_HEADERS,
        )

        assert resp.status_code == 200
        data = resp.json()
        assert data["has_more"] is True
        assert data["next_cursor"] == "abc"
        assert data["items"][0]["external_id"] == "m1"
        mock_service.list_content.assert_awaited_once_with(
            mock_db, "tenant-a", cursor="xyz", limit=10, kind=ContentKind.MEDIA, sub_account_id="ig-1"
        )

    def test_limit_out_of_range(self, client):
        resp = client.get("/api/v1/content", params={"limit": 500}, headers=TENANT_HEADERS)
        assert resp.status_code == 422

    def test_count(self, client, mock_service):
        mock_service.count_content = AsyncMock(return_value=7)
        resp = client.get("/api/v1/content/count", headers=TENANT_HEADERS)
        assert resp.json() == {"count": 7}


class TestSync:
    def test_trigger(self, client, mock_service):
        mock_service.trigger_sync = AsyncMock(return_value=SyncSummary(stored_count=3, failed_count=0, has_more=True))

        resp = client.post("/api/v1/sync", json={"sub_account_id": "ig-1"}, headers=TENANT_HEADERS)

        assert resp.status_code == 200
        assert resp.json() == {"stored_count": 3, "failed_count": 0, "has_more": True}
        mock_service.trigger_sync.assert_awaited_once_with("tenant-a", sub_account_id="ig-1")

    def test_trigger_without_body(self, client, mock_service):
        mock_service.trigger_sync = AsyncMock(return_value=SyncSummary(stored_count=0, failed_count=0, has_more=False))
        resp = client.post("/api/v1/sync", headers=TENANT_HEADERS)
        assert resp.status_code == 200
        mock_service.trigger_sync.assert_awaited_once_with("tenant-a", sub_account_id=None)
