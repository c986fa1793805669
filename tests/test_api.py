from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from generation_credits.api.app import create_app
from generation_credits.config import Settings
from generation_credits.db.memory import InMemoryLedgerStore
from generation_credits.db.mongo import MongoLedgerStore

from fakes import GOOD, ScriptedDetectionBackend, ScriptedGenerationBackend


class IndexRecordingMongoStore(MongoLedgerStore):
    def __init__(self) -> None:
        super().__init__(database=None)
        self.indexed = False

    async def ensure_indexes(self) -> None:
        self.indexed = True


@pytest.fixture
def api_store() -> InMemoryLedgerStore:
    return InMemoryLedgerStore()


@pytest.fixture
def app(api_store, tmp_path):
    settings = Settings(ledger_log_path=str(tmp_path / "ledger.log"), retry_base_delay_seconds=0)
    return create_app(
        settings,
        store=api_store,
        generation=ScriptedGenerationBackend(),
        detection=ScriptedDetectionBackend([GOOD]),
    )


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def funded_user(app):
    await app.state.services.ledger.open_account("user-1", opening_balance=100)
    return "user-1"


@pytest.mark.asyncio
async def test_balance(client, funded_user):
    resp = await client.get(f"/credits/balance/{funded_user}")

    assert resp.status_code == 200
    assert resp.json() == {"user_id": "user-1", "balance": 100}


@pytest.mark.asyncio
async def test_balance_unknown_user(client):
    resp = await client.get("/credits/balance/ghost")

    assert resp.status_code == 404
    body = resp.json()
    assert body["success"] is False
    assert body["error_code"] == "USER_NOT_FOUND"


@pytest.mark.asyncio
async def test_estimate(client):
    resp = await client.post(
        "/credits/estimate",
        json={"word_count": 210, "tool_type": "writing", "quality_tier": "premium"},
    )

    assert resp.status_code == 200
    assert resp.json()["required_credits"] == 140


@pytest.mark.asyncio
async def test_estimate_rejects_zero_words(client):
    resp = await client.post("/credits/estimate", json={"word_count": 0})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_refund_and_history(client, funded_user):
    resp = await client.post(
        "/credits/refund",
        json={"user_id": funded_user, "amount": 25, "reason": "support", "external_ref": "tkt-9"},
    )
    assert resp.status_code == 200
    assert resp.json()["new_balance"] == 125

    history = await client.get(f"/credits/history/{funded_user}", params={"limit": 5})
    assert history.status_code == 200
    assert [t["kind"] for t in history.json()] == ["refund"]


@pytest.mark.asyncio
async def test_payment_succeeded(client, funded_user):
    resp = await client.post(
        "/billing/payment-succeeded",
        json={"event_id": "evt_1", "user_id": funded_user, "plan": "pro"},
    )

    assert resp.status_code == 200
    assert resp.json()["data"]["new_balance"] == 2100


@pytest.mark.asyncio
async def test_generate_requires_user_header(client):
    resp = await client.post(
        "/writer/generate", json={"prompt": "hello", "requested_word_count": 10}
    )

    assert resp.status_code == 401
    assert resp.json()["code"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_generate(client, funded_user, api_store):
    resp = await client.post(
        "/writer/generate",
        json={"prompt": "Explain tides", "requested_word_count": 210},
        headers={"X-User-Id": funded_user, "X-Request-Id": "req-7"},
    )

    assert resp.status_code == 200
    assert resp.headers["X-Request-Id"] == "req-7"
    data = resp.json()["data"]
    assert data["credits_used"] == 70
    assert data["new_balance"] == 30
    assert data["is_acceptable"] is True
    assert any(e.correlation_id == "req-7" for e in api_store.ledger_entries)


@pytest.mark.asyncio
async def test_generate_insufficient_credits(client, app):
    await app.state.services.ledger.open_account("poor-user", opening_balance=10)

    resp = await client.post(
        "/writer/generate",
        json={"prompt": "Explain tides", "requested_word_count": 210},
        headers={"X-User-Id": "poor-user"},
    )

    assert resp.status_code == 402
    body = resp.json()
    assert body["error_code"] == "INSUFFICIENT_CREDITS"
    assert body["data"] == {"required": 70, "available": 10}


@pytest.mark.asyncio
async def test_startup_prepares_mongo_indexes(tmp_path):
    store = IndexRecordingMongoStore()
    app = create_app(
        Settings(ledger_log_path=str(tmp_path / "ledger.log")),
        store=store,
        generation=ScriptedGenerationBackend(),
    )

    async with app.router.lifespan_context(app):
        assert store.indexed
