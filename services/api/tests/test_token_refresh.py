"""Tests for threshold-based token refresh and the refresh sweep."""

import asyncio
import threading
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import update

from social_connector.errors import DecryptionError
from social_connector.models.base import as_utc, utcnow
from social_connector.models.external_account import ExternalAccount
from social_connector.services.tenant_lock import TenantLock
from social_connector.services.token_exchange import LongLivedToken
from social_connector.services.token_refresh import TenantOutcome, TokenRefreshScheduler, run_bounded

from conftest import OTHER_TENANT_ID, TENANT_ID, add_account, add_credentials, graph_path

TOKEN_PATH = graph_path("/oauth/access_token")


@pytest.fixture
def refresher(session_factory, crypto, vault, client, lock):
    return TokenRefreshScheduler(session_factory, crypto, vault, client, lock)


async def _stored(session_factory, crypto, tenant_id=TENANT_ID):
    async with session_factory() as db:
        account = await db.get(ExternalAccount, tenant_id)
        return crypto.decrypt(tenant_id, account.encrypted_access_token), as_utc(account.token_expires_at)


class TestRefreshIfNeeded:
    async def test_far_from_expiry_makes_no_call(self, refresher, session_factory, crypto, vault, graph):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, expires_in_days=30)

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert result.refreshed is False
        assert result.reason == "Token not close to expiry"
        assert graph.requests == []

    async def test_within_threshold_refreshes_once(self, refresher, session_factory, crypto, vault, graph):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, token="old-long", expires_in_days=3)
        graph.add("GET", TOKEN_PATH, {"access_token": "new-long", "expires_in": 5184000})

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert result.refreshed is True
        assert len(graph.requests) == 1
        assert graph.requests[0].url.params["fb_exchange_token"] == "old-long"
        token, expires_at = await _stored(session_factory, crypto)
        assert token == "new-long"
        assert abs(expires_at - (utcnow() + timedelta(days=60))) < timedelta(minutes=1)
        assert result.new_expiry == expires_at

    async def test_non_expiring_token_is_left_alone(self, refresher, session_factory, crypto, vault, graph):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, expires_in_days=None)

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert result.refreshed is False
        assert result.reason == "Token does not expire"
        assert graph.requests == []

    async def test_no_account(self, refresher):
        result = await refresher.refresh_if_needed(TENANT_ID)
        assert result.refreshed is False
        assert result.reason == "No connected account found"

    async def test_provider_failure_is_soft(self, refresher, session_factory, crypto, vault, graph):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, token="old-long", expires_in_days=1)
        graph.add(
            "GET",
            TOKEN_PATH,
            httpx.Response(400, json={"error": {"message": "Error validating access token", "code": 190}}),
        )

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert result.refreshed is False
        assert result.reason == "Refresh failed: Error validating access token"
        assert result.error_kind == "needs_reconnect"
        token, _ = await _stored(session_factory, crypto)
        assert token == "old-long"

    async def test_missing_credentials_is_soft(self, refresher, session_factory, crypto, graph):
        await add_account(session_factory, crypto, expires_in_days=1)

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert result.refreshed is False
        assert result.error_kind == "not_configured"
        assert graph.requests == []

    async def test_decryption_failure_is_hard(self, refresher, session_factory, crypto, vault):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, expires_in_days=1)
        async with session_factory() as db:
            await db.execute(update(ExternalAccount).values(encrypted_access_token="AAAA" * 10))
            await db.commit()

        with pytest.raises(DecryptionError):
            await refresher.refresh_if_needed(TENANT_ID)


class TestSerialization:
    async def test_lock_held_elsewhere_skips_refresh(self, session_factory, crypto, vault, client, graph):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, expires_in_days=1)
        busy_redis = AsyncMock()
        busy_redis.set = AsyncMock(return_value=None)
        refresher = TokenRefreshScheduler(session_factory, crypto, vault, client, TenantLock(busy_redis, "t", 60))

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert result.refreshed is False
        assert result.reason == "Refresh already in progress"
        assert graph.requests == []

    async def test_lock_is_released_with_owner_token(self, refresher, session_factory, crypto, vault, graph, fake_redis):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, expires_in_days=1)
        graph.add("GET", TOKEN_PATH, {"access_token": "new", "expires_in": 100})

        await refresher.refresh_if_needed(TENANT_ID)

        key, owner = fake_redis.set.await_args.args
        assert key == f"lock:token-refresh:{TENANT_ID}"
        assert fake_redis.set.await_args.kwargs == {"nx": True, "ex": 60}
        assert fake_redis.eval.await_args.args[1:] == (1, key, owner)

    async def test_redis_down_fails_open(self, session_factory, crypto, vault, client, graph):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, expires_in_days=1)
        broken_redis = AsyncMock()
        broken_redis.set = AsyncMock(side_effect=RedisConnectionError("down"))
        refresher = TokenRefreshScheduler(session_factory, crypto, vault, client, TenantLock(broken_redis, "t", 60))
        graph.add("GET", TOKEN_PATH, {"access_token": "new", "expires_in": 100})

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert result.refreshed is True

    async def test_concurrent_change_wins_over_refresh(self, session_factory, crypto, vault, lock):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, token="old", expires_in_days=1)

        async def reconnect_meanwhile(*args):
            # Someone reconnects the tenant while the refresh call is in flight
            async with session_factory() as db:
                await db.execute(
                    update(ExternalAccount)
                    .where(ExternalAccount.tenant_id == TENANT_ID)
                    .values(encrypted_access_token=crypto.encrypt(TENANT_ID, "reconnected"), updated_at=utcnow())
                )
                await db.commit()
            return LongLivedToken(access_token="refreshed", expires_in=100)

        client = AsyncMock()
        client.upgrade_to_long_lived_token = AsyncMock(side_effect=reconnect_meanwhile)
        refresher = TokenRefreshScheduler(session_factory, crypto, vault, client, lock)

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert result.refreshed is False
        assert result.reason == "Account changed during refresh"
        token, _ = await _stored(session_factory, crypto)
        assert token == "reconnected"

    async def test_refresh_finished_while_waiting_for_lock_is_not_repeated(
        self, session_factory, crypto, vault, client, graph, lock
    ):
        await add_credentials(session_factory, vault)
        await add_account(session_factory, crypto, token="old-long", expires_in_days=1)
        graph.add("GET", TOKEN_PATH, {"access_token": "new-long", "expires_in": 5184000})
        other_worker = TokenRefreshScheduler(session_factory, crypto, vault, client, lock)
        other_results = []

        async def other_worker_refreshes_first(*args, **kwargs):
            # Another worker takes and releases the lock before ours is granted
            other_results.append(await other_worker.refresh_if_needed(TENANT_ID))
            return True

        slow_redis = AsyncMock()
        slow_redis.set = AsyncMock(side_effect=other_worker_refreshes_first)
        refresher = TokenRefreshScheduler(
            session_factory, crypto, vault, client, TenantLock(slow_redis, "token-refresh", 60)
        )

        result = await refresher.refresh_if_needed(TENANT_ID)

        assert other_results[0].refreshed is True
        assert result.refreshed is False
        assert result.reason == "Token not close to expiry"
        assert len(graph.calls("GET", TOKEN_PATH)) == 1
        token, _ = await _stored(session_factory, crypto)
        assert token == "new-long"


class TestRefreshAll:
    async def test_one_tenant_failure_does_not_stop_others(self, refresher, session_factory, crypto, vault, graph):
        await add_credentials(session_factory, vault, TENANT_ID)
        await add_credentials(session_factory, vault, OTHER_TENANT_ID)
        await add_account(session_factory, crypto, TENANT_ID, expires_in_days=1)
        await add_account(session_factory, crypto, OTHER_TENANT_ID, expires_in_days=1)
        async with session_factory() as db:
            await db.execute(
                update(ExternalAccount)
                .where(ExternalAccount.tenant_id == TENANT_ID)
                .values(encrypted_access_token="corrupt" * 8)
            )
            await db.commit()
        graph.add("GET", TOKEN_PATH, {"access_token": "new", "expires_in": 100})

        outcome = await refresher.refresh_all()

        by_tenant = {o.tenant_id: o for o in outcome.outcomes}
        assert by_tenant[TENANT_ID].ok is False
        assert by_tenant[OTHER_TENANT_ID].ok is True
        token, _ = await _stored(session_factory, crypto, OTHER_TENANT_ID)
        assert token == "new"


class TestRunBounded:
    async def test_respects_concurrency(self):
        in_flight = 0
        peak = 0

        async def work(tenant_id):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return TenantOutcome(tenant_id=tenant_id, ok=True)

        outcome = await run_bounded([f"t{i}" for i in range(10)], work, concurrency=3, cancel_event=None)

        assert outcome.succeeded == 10
        assert peak <= 3

    async def test_cancel_stops_new_tenants(self):
        cancel = threading.Event()
        started = []

        async def work(tenant_id):
            started.append(tenant_id)
            cancel.set()
            return TenantOutcome(tenant_id=tenant_id, ok=True)

        outcome = await run_bounded(["t1", "t2", "t3"], work, concurrency=1, cancel_event=cancel)

        assert started == ["t1"]
        assert sorted(outcome.skipped) == ["t2", "t3"]
        assert outcome.succeeded == 1

    async def test_unexpected_exception_is_recorded(self):
        async def work(tenant_id):
            if tenant_id == "bad":
                raise RuntimeError("boom")
            return TenantOutcome(tenant_id=tenant_id, ok=True)

        outcome = await run_bounded(["bad", "good"], work, concurrency=2, cancel_event=None)

        assert outcome.failed == 1
        assert outcome.succeeded == 1
