"""HTTP-level tests for the balance and admin routers.

Services are wired with in-memory fakes on app.state; the lifespan (DB, Redis,
RPC) is not run.
"""

from collections.abc import AsyncGenerator
from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from config.settings import settings
from src.main import app
from src.tb_balance.application.service import BalanceApplicationService
from src.tb_common.database import get_db_session
from src.tb_common.errors import PermanentSourceError, TransientSourceError
from src.tb_common.retry import ExponentialBackoff
from src.tb_reconcile.application.scheduler import ReconciliationScheduler

ACCOUNT = "0x" + "a" * 40
TOKEN = "0x" + "1" * 40
ADMIN_KEY = "test-admin-key"


async def _fake_db() -> AsyncGenerator[MagicMock, None]:
    yield MagicMock()


@pytest.fixture
async def client(chain, cache, repo, session_factory, persist_worker, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for the app with fake collaborators."""
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    service = BalanceApplicationService(
        chain,
        cache,
        persist_worker,
        repo=repo,
        max_retries=1,
        backoff_factory=lambda: ExponentialBackoff(0, 2, 0),
    )
    app.state.balance_service = service
    app.state.persist_worker = persist_worker
    app.state.reconciliation_scheduler = ReconciliationScheduler(
        service, session_factory, repo=repo, chunk_delay_seconds=0
    )
    app.dependency_overrides[get_db_session] = _fake_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app.state.reconciliation_scheduler.stop()
    app.dependency_overrides.clear()


class TestBalanceRoutes:
    async def test_get_balance(self, client, chain) -> None:
        chain.add_token(TOKEN, "Wrapped Ether", "WETH", 18)
        chain.balances[(ACCOUNT, TOKEN)] = "1500000000000000000"

        resp = await client.get(f"/api/v1/balances/{ACCOUNT}/tokens/{TOKEN}")

        assert resp.status_code == 200
        body = resp.json()
        assert body["code"] == 0
        assert body["data"]["balance"] == "1500000000000000000"
        assert body["data"]["balance_formatted"] == "1.5"
        assert body["request_id"] == resp.headers["X-Request-ID"]

    async def test_fetch_failure_maps_to_503(self, client, chain) -> None:
        chain.always_fail[TOKEN] = TransientSourceError("node unreachable")

        resp = await client.get(f"/api/v1/balances/{ACCOUNT}/tokens/{TOKEN}")

        assert resp.status_code == 503
        body = resp.json()
        assert body["code"] == 1003
        assert "node unreachable" in body["message"]

    async def test_permanent_fetch_failure_maps_to_422(self, client, chain) -> None:
        chain.always_fail[TOKEN] = PermanentSourceError("execution reverted: not a contract")

        resp = await client.get(f"/api/v1/balances/{ACCOUNT}/tokens/{TOKEN}")

        assert resp.status_code == 422
        assert resp.json()["code"] == 1003

    async def test_batch_skips_failed_tokens(self, client, chain) -> None:
        other = "0x" + "2" * 40
        chain.always_fail[other] = TransientSourceError("down")

        resp = await client.get(f"/api/v1/balances/{ACCOUNT}/batch", params={"tokens": f"{TOKEN},{other}"})

        assert resp.status_code == 200
        assert [item["token_address"] for item in resp.json()["data"]] == [TOKEN]

    async def test_batch_rejects_empty_list(self, client) -> None:
        resp = await client.get(f"/api/v1/balances/{ACCOUNT}/batch", params={"tokens": " , "})

        assert resp.status_code == 400
        assert resp.json()["code"] == 9003

    async def test_batch_rejects_too_many(self, client) -> None:
        tokens = ",".join("0x" + format(n, "040x") for n in range(settings.MAX_BATCH_TOKENS + 1))

        resp = await client.get(f"/api/v1/balances/{ACCOUNT}/batch", params={"tokens": tokens})

        assert resp.status_code == 400

    async def test_watch_then_list_and_history(self, client, chain, persist_worker) -> None:
        chain.balances[(ACCOUNT, TOKEN)] = "5"

        resp = await client.post(
            f"/api/v1/balances/{ACCOUNT}/watch",
            json={"token_address": TOKEN, "is_favorite": True},
        )
        assert resp.status_code == 200
        await persist_worker.join()

        watched = (await client.get(f"/api/v1/balances/{ACCOUNT}/watched")).json()["data"]
        assert watched["items"][0]["is_favorite"] is True
        history = (await client.get(f"/api/v1/balances/{ACCOUNT}/history/{TOKEN}")).json()["data"]
        assert [item["balance"] for item in history["items"]] == ["5"]

    async def test_unknown_watched_pair_is_404(self, client) -> None:
        resp = await client.get(f"/api/v1/balances/{ACCOUNT}/watched/{TOKEN}")

        assert resp.status_code == 404
        assert resp.json()["code"] == 1006

    async def test_history_limit_validated(self, client) -> None:
        resp = await client.get(f"/api/v1/balances/{ACCOUNT}/history/{TOKEN}", params={"limit": 101})
        assert resp.status_code == 422

    async def test_clear_cache(self, client, cache) -> None:
        cache.data[f"token_balance:{ACCOUNT}:{TOKEN}"] = "{}"

        resp = await client.delete(f"/api/v1/balances/{ACCOUNT}/cache/{TOKEN}")

        assert resp.status_code == 200
        assert cache.data == {}


class TestAdminRoutes:
    async def test_requires_admin_key(self, client) -> None:
        resp = await client.post("/api/v1/admin/reconciliation")

        assert resp.status_code == 403
        assert resp.json()["code"] == 9004

    async def test_wrong_admin_key(self, client) -> None:
        resp = await client.get("/api/v1/admin/reconciliation", headers={"X-Admin-Key": "nope"})
        assert resp.status_code == 403

    async def test_trigger_clears_caches(self, client, cache) -> None:
        cache.data[f"token_balance:{ACCOUNT}:{TOKEN}"] = "{}"
        cache.data[f"token_info:{TOKEN}"] = "{}"

        resp = await client.post(
            "/api/v1/admin/reconciliation", headers={"X-Admin-Key": ADMIN_KEY}
        )

        data = resp.json()["data"]
        assert data["started"] is True
        assert data["caches_cleared"] == 1
        assert f"token_info:{TOKEN}" in cache.data

    async def test_status(self, client) -> None:
        await app.state.reconciliation_scheduler.run_once()

        resp = await client.get("/api/v1/admin/reconciliation", headers={"X-Admin-Key": ADMIN_KEY})

        data = resp.json()["data"]
        assert data["state"] == "IDLE"
        assert data["running"] is False
        assert data["last_report"]["selected"] == 0
        assert data["persistence"]["failed"] == 0

    async def test_clear_all_caches(self, client, cache) -> None:
        cache.data[f"token_balance:{ACCOUNT}:{TOKEN}"] = "{}"

        resp = await client.delete("/api/v1/admin/cache", headers={"X-Admin-Key": ADMIN_KEY})

        assert resp.json()["data"] == {"deleted": 1}


class TestHealth:
    async def test_health(self, client) -> None:
        resp = await client.get("/health")
        assert resp.json()["status"] == "ok"


class TestRequestId:
    async def test_upstream_request_id_echoed(self, client, chain) -> None:
        resp = await client.get(
            f"/api/v1/balances/{ACCOUNT}/tokens/{TOKEN}", headers={"X-Request-ID": "gw-123"}
        )

        assert resp.headers["X-Request-ID"] == "gw-123"
        assert resp.json()["request_id"] == "gw-123"

    async def test_unusable_upstream_id_replaced(self, client) -> None:
        resp = await client.get("/health", headers={"X-Request-ID": "bad id with spaces"})

        assert resp.headers["X-Request-ID"].startswith("req_")
