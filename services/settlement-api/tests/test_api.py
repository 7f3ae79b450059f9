"""Tests for the REST API endpoints.

Endpoints that never reach the database use FastAPI's TestClient with a
mocked session.  The rest run through httpx's ASGI transport against the
SQLite test database, with the processor replaced by a FakeProcessor.
"""

import json
import time
import uuid
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from jose import jwt

from app.api.routes import get_processor
from app.core.config import settings
from app.core.database import get_session
from app.main import app
from app.models.settlement import SettlementStatus
from app.services import ledger
from tests.conftest import (
    WEBHOOK_SECRET,
    FakeProcessor,
    make_intent_event,
    make_job,
    make_poster,
    make_profile,
    make_record,
    sign,
)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _token(user_id: str, **claims) -> str:
    payload = {
        "sub": user_id,
        "aud": settings.auth_jwt_audience,
        "exp": int(time.time()) + 3600,
        **claims,
    }
    return jwt.encode(payload, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)


def _auth(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {_token(user_id)}"}


def _override_session(mock_session: AsyncMock):
    """Override the FastAPI get_session dependency."""

    async def _mock_get_session():
        yield mock_session

    app.dependency_overrides[get_session] = _mock_get_session


def _clear_overrides():
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "processor_webhook_secret", WEBHOOK_SECRET)


@pytest_asyncio.fixture
async def client(session_maker):
    """AsyncClient over the app, bound to the SQLite test database."""
    processor = FakeProcessor()

    async def _get_session():
        async with session_maker() as s:
            try:
                yield s
                await s.commit()
            except Exception:
                await s.rollback()
                raise

    app.dependency_overrides[get_session] = _get_session
    app.dependency_overrides[get_processor] = lambda: processor
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        c.processor = processor
        yield c
    _clear_overrides()


async def _seed(session_maker, *objs):
    async with session_maker() as s:
        s.add_all(objs)
        await s.commit()


# ═══════════════════════════════════════════════════════════════════════════════
# Mocked-session endpoints
# ═══════════════════════════════════════════════════════════════════════════════


class TestHealth:
    def setup_method(self):
        self.client = TestClient(app)

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "settlement-api"}
        assert "X-Request-ID" in response.headers


class TestWebhookSignature:
    """Signature failures are the only non-2xx a signed-path delivery gets."""

    def setup_method(self):
        self.client = TestClient(app)
        self.session = AsyncMock()
        _override_session(self.session)

    def teardown_method(self):
        _clear_overrides()

    def test_forged_delivery_rejected(self):
        body = json.dumps(make_intent_event()).encode()
        response = self.client.post(
            "/v1/webhooks/processor",
            content=body,
            headers={"Stripe-Signature": "t=1700000000,v1=forged"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        self.session.execute.assert_not_called()

    def test_missing_signature_rejected(self):
        response = self.client.post("/v1/webhooks/processor", content=b"{}")
        assert response.status_code == 400

    def test_missing_secret_is_500(self, monkeypatch):
        monkeypatch.setattr(settings, "processor_webhook_secret", None)
        raw, header = sign(make_intent_event())
        response = self.client.post(
            "/v1/webhooks/processor", content=raw, headers={"Stripe-Signature": header}
        )
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "SERVER_MISCONFIGURED"


class TestAuthentication:
    def setup_method(self):
        self.client = TestClient(app)
        _override_session(AsyncMock())

    def teardown_method(self):
        _clear_overrides()

    def test_missing_token(self):
        response = self.client.post("/v1/charges", json={"job_id": "job_1"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"

    def test_wrong_audience(self):
        token = _token("poster_1", aud="someone-else")
        response = self.client.get("/v1/settlements", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_expired_token(self):
        token = _token("poster_1", exp=int(time.time()) - 10)
        response = self.client.get("/v1/settlements", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_validation_error_shape(self):
        response = self.client.post("/v1/charges", json={}, headers=_auth("poster_1"))
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


# ═══════════════════════════════════════════════════════════════════════════════
# Database-backed flows
# ═══════════════════════════════════════════════════════════════════════════════


class TestChargeEndpoint:
    @pytest.mark.asyncio
    async def test_create_charge(self, client, session_maker):
        await _seed(session_maker, make_job(), make_profile(), make_poster())

        response = await client.post("/v1/charges", json={"job_id": "job_1"}, headers=_auth("poster_1"))

        assert response.status_code == 201
        body = response.json()
        assert body == {
            "client_secret": "pi_test_1_secret_x",
            "processor_reference": "pi_test_1",
            "total_amount_minor": 2500,
            "platform_fee_minor": 250,
            "estimated_processor_fee_minor": 103,
            "estimated_net_amount_minor": 2147,
            "currency": "USD",
        }
        async with session_maker() as s:
            row = await ledger.get_by_reference(s, "pi_test_1")
        assert row.status is SettlementStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_worker_cannot_pay(self, client, session_maker):
        await _seed(session_maker, make_job(), make_profile(), make_poster())

        response = await client.post("/v1/charges", json={"job_id": "job_1"}, headers=_auth("worker_1"))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"
        assert client.processor.charges == []

    @pytest.mark.asyncio
    async def test_already_paid_is_409(self, client, session_maker):
        await _seed(
            session_maker,
            make_job(),
            make_profile(),
            make_poster(),
            make_record(status=SettlementStatus.SUCCEEDED),
        )

        response = await client.post("/v1/charges", json={"job_id": "job_1"}, headers=_auth("poster_1"))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_STATE"

    @pytest.mark.asyncio
    async def test_payee_not_ready(self, client, session_maker):
        await _seed(session_maker, make_job(), make_profile(payouts_enabled=False), make_poster())

        response = await client.post("/v1/charges", json={"job_id": "job_1"}, headers=_auth("poster_1"))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PAYEE_NOT_READY"


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_settles_and_returns_receipt(self, client, session_maker):
        await _seed(session_maker, make_record())
        raw, header = sign(make_intent_event())

        response = await client.post(
            "/v1/webhooks/processor", content=raw, headers={"Stripe-Signature": header}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["receipt"]["status"] == "succeeded"
        assert body["receipt"]["net_amount_minor"] == 2147

    @pytest.mark.asyncio
    async def test_unmatched_event_acknowledged(self, client):
        raw, header = sign(make_intent_event(intent_id="pi_nobody", job_id=None))

        response = await client.post(
            "/v1/webhooks/processor", content=raw, headers={"Stripe-Signature": header}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True}


class TestReceiptEndpoints:
    @pytest.mark.asyncio
    async def test_payer_and_payee_views(self, client, session_maker):
        record = make_record(status=SettlementStatus.SUCCEEDED, processor_fee_estimated=False)
        await _seed(session_maker, record)
        url = f"/v1/settlements/{record.id}/receipt"

        payer = (await client.get(url, headers=_auth("poster_1"))).json()
        payee = (await client.get(url, headers=_auth("worker_1"))).json()

        assert payer["role"] == "payer"
        assert payer["headline_display"] == "$25.00"
        assert payee["role"] == "payee"
        assert payee["headline_display"] == "$21.47"

    @pytest.mark.asyncio
    async def test_stranger_and_missing_are_indistinguishable(self, client, session_maker):
        record = make_record()
        await _seed(session_maker, record)

        stranger = await client.get(f"/v1/settlements/{record.id}/receipt", headers=_auth("stranger"))
        missing = await client.get(f"/v1/settlements/{uuid.uuid4()}/receipt", headers=_auth("stranger"))

        assert stranger.status_code == missing.status_code == 404
        assert stranger.json()["error"]["message"] == missing.json()["error"]["message"]
        assert "worker_1" not in stranger.text

    @pytest.mark.asyncio
    async def test_list_settlements(self, client, session_maker):
        await _seed(
            session_maker,
            make_record(ref="pi_1", job_id="job_a"),
            make_record(ref="pi_2", job_id="job_b", payer_id="worker_1", payee_id="poster_1"),
        )

        response = await client.get("/v1/settlements", headers=_auth("poster_1"))

        assert response.status_code == 200
        body = response.json()
        assert [r["job_id"] for r in body["sent"]] == ["job_a"]
        assert [r["job_id"] for r in body["received"]] == ["job_b"]
