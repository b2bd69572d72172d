"""Shared test fixtures."""

from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import social_connector.models  # noqa: F401  (registers tables on Base.metadata)
from social_connector.config import Settings
from social_connector.models.base import Base, utcnow
from social_connector.models.external_account import ExternalAccount
from social_connector.services.credential_vault import CredentialVault
from social_connector.services.crypto_service import CryptoService
from social_connector.services.tenant_lock import TenantLock
from social_connector.services.token_exchange import TokenExchangeClient

TENANT_ID = "tenant-a"
OTHER_TENANT_ID = "tenant-b"
APP_ID = "1234567890"
APP_SECRET = "abcdefghijklmnopqrst"
REDIRECT_URI = "https://x.test/cb"
GRAPH_BASE = "https://graph.test/v19.0"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        app_env="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'connector.db'}",
        redis_url="redis://localhost:6379/0",
        encryption_master_secret="test-master-secret-do-not-use",
        graph_api_base_url=GRAPH_BASE,
        graph_authorize_url="https://auth.test/dialog/oauth",
        http_timeout_seconds=2.0,
    )


@pytest.fixture
async def session_factory(settings):
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def crypto(settings) -> CryptoService:
    return CryptoService(settings)


@pytest.fixture
def vault(crypto) -> CredentialVault:
    return CredentialVault(crypto)


@pytest.fixture
def fake_redis():
    """Redis stand-in: every SET NX succeeds, every release deletes."""
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=True)
    redis.eval = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def lock(fake_redis) -> TenantLock:
    return TenantLock(fake_redis, "token-refresh", 60)


class GraphStub:
    """Routes provider requests to canned responses and records every call."""

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses):
        """Queue responses for ``method path``; the last one repeats."""
        self.routes.setdefault((method, path), []).extend(responses)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": {"message": "Unknown path", "code": 803}})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if isinstance(response, httpx.Response):
            return response
        return httpx.Response(200, json=response)


@pytest.fixture
def graph() -> GraphStub:
    return GraphStub()


@pytest.fixture
def client(settings, graph) -> TokenExchangeClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(graph.handler))
    return TokenExchangeClient(settings, http_client=http_client)


def graph_path(suffix: str) -> str:
    return "/v19.0" + suffix


async def add_account(
    session_factory,
    crypto,
    tenant_id=TENANT_ID,
    token="long-token",
    expires_in_days=30,
    sub_accounts=None,
    secondary_account_id=None,
):
    """Insert a connected account for ``tenant_id`` directly."""
    async with session_factory() as db:
        account = ExternalAccount(
            tenant_id=tenant_id,
            encrypted_access_token=crypto.encrypt(tenant_id, token),
            token_expires_at=utcnow() + timedelta(days=expires_in_days) if expires_in_days is not None else None,
            external_user_id="user-1",
            external_user_name="Test User",
            sub_accounts=sub_accounts or [],
            secondary_account_id=secondary_account_id,
        )
        db.add(account)
        await db.commit()
    return account


async def add_credentials(session_factory, vault, tenant_id=TENANT_ID):
    async with session_factory() as db:
        credential_id = await vault.store_credential_set(db, tenant_id, APP_ID, APP_SECRET, REDIRECT_URI)
        await db.commit()
    return credential_id
