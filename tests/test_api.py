"""
HTTP surface: routing, authentication, error mapping and the payment webhook,
driven through httpx against the ASGI app with services bound to the test database.
"""
import hashlib
import hmac
import json
import uuid

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from eventswap.auth import create_access_token, hash_password
from eventswap.config import get_settings
from eventswap.database import get_session_factory
from eventswap.dependencies import (
    get_dispute_service,
    get_escrow_service,
    get_listing_service,
    get_messaging_service,
    get_offer_service,
)
from eventswap.main import app


def auth_headers(user) -> dict:
    token = create_access_token(user_id=str(user.id), role=user.role.value, full_name=user.full_name)
    return {"Authorization": f"Bearer {token}"}


WEBHOOK_HEADERS = {"x-webhook-token": "test-webhook-token"}


@pytest_asyncio.fixture
async def client(sessions, escrow, offers, disputes, listings, chat):
    app.dependency_overrides.update({
        get_session_factory: lambda: sessions,
        get_escrow_service: lambda: escrow,
        get_offer_service: lambda: offers,
        get_dispute_service: lambda: disputes,
        get_listing_service: lambda: listings,
        get_messaging_service: lambda: chat,
    })
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


async def checkout(client, listing, buyer) -> dict:
    response = await client.post(
        "/api/transactions", json={"listing_id": str(listing.id)}, headers=auth_headers(buyer),
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestHealthAndHeaders:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"


class TestAuth:
    @pytest.mark.asyncio
    async def test_login_and_me(self, client, make_user):
        user = await make_user("Login Person", password_hash=hash_password("password123"))

        response = await client.post(
            "/api/auth/login", data={"username": user.email, "password": "password123"},
        )
        assert response.status_code == 200
        assert "eventswap_refresh_token" in response.headers.get("set-cookie", "")
        token = response.json()["access_token"]

        me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert me.status_code == 200
        assert me.json()["email"] == user.email

    @pytest.mark.asyncio
    async def test_wrong_password(self, client, make_user):
        user = await make_user("Login Person", password_hash=hash_password("password123"))
        response = await client.post("/api/auth/login", data={"username": user.email, "password": "nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        assert (await client.get("/api/transactions")).status_code == 401


class TestTransactionsApi:
    @pytest.mark.asyncio
    async def test_checkout(self, client, listing, buyer):
        body = await checkout(client, listing, buyer)

        assert body["transaction"]["status"] == "AWAITING_PAYMENT"
        assert body["transaction"]["buyer_total"] == 1050.0
        assert body["transaction"]["seller_net"] == 920.0
        assert body["payment"]["status"] == "PENDING"
        assert body["payment_pending_retry"] is False

    @pytest.mark.asyncio
    async def test_duplicate_is_conflict(self, client, listing, buyer):
        first = await checkout(client, listing, buyer)
        response = await client.post(
            "/api/transactions", json={"listing_id": str(listing.id)}, headers=auth_headers(buyer),
        )
        assert response.status_code == 409
        error = response.json()
        assert error["error_code"] == "duplicate_active_transaction"
        assert error["details"]["existing_transaction_id"] == first["transaction"]["id"]

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client, buyer):
        response = await client.get(f"/api/transactions/{uuid.uuid4()}", headers=auth_headers(buyer))
        assert response.status_code == 404
        assert response.json()["kind"] == "not_found"

    @pytest.mark.asyncio
    async def test_outsider_is_forbidden(self, client, listing, buyer, make_user):
        body = await checkout(client, listing, buyer)
        outsider = await make_user("Outsider")
        response = await client.get(
            f"/api/transactions/{body['transaction']['id']}", headers=auth_headers(outsider),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_refund_requires_authority(self, client, listing, buyer):
        body = await checkout(client, listing, buyer)
        response = await client.post(
            f"/api/transactions/{body['transaction']['id']}/refund",
            json={"reason": "please"},
            headers=auth_headers(buyer),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_listing_price_out_of_range(self, client, seller):
        response = await client.post(
            "/api/listings",
            json={"title": "Balloon arch", "asking_price": "10.00"},
            headers=auth_headers(seller),
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "invalid_amount"


class TestPaymentWebhook:
    @pytest.mark.asyncio
    async def test_rejects_missing_token(self, client):
        response = await client.post(
            "/api/webhooks/payments", json={"event": "PAYMENT_CONFIRMED", "payment": {"id": "pay_x"}},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_settlement_and_replay(self, client, listing, buyer):
        body = await checkout(client, listing, buyer)
        event = {
            "event": "PAYMENT_CONFIRMED",
            "payment": {"id": body["payment"]["external_id"], "status": "CONFIRMED", "billingType": "PIX"},
            "dateCreated": "2026-03-02 10:05:00",
        }

        first = await client.post("/api/webhooks/payments", json=event, headers=WEBHOOK_HEADERS)
        replay = await client.post("/api/webhooks/payments", json=event, headers=WEBHOOK_HEADERS)

        assert first.status_code == 200
        assert first.json()["result"] == "applied"
        assert replay.json()["result"] == "duplicate"

        txn = await client.get(f"/api/transactions/{body['transaction']['id']}", headers=auth_headers(buyer))
        assert txn.json()["status"] == "ESCROW_HELD"

    @pytest.mark.asyncio
    async def test_unhandled_event_is_ignored(self, client):
        response = await client.post(
            "/api/webhooks/payments",
            json={"event": "PAYMENT_CREATED", "payment": {"id": "pay_y"}},
            headers=WEBHOOK_HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["result"] == "ignored"

    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        response = await client.post(
            "/api/webhooks/payments", content=b"not json", headers=WEBHOOK_HEADERS,
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_hmac_signature(self, client, monkeypatch):
        monkeypatch.setattr(get_settings(), "WEBHOOK_SECRET", "signing-key")
        raw = json.dumps({"event": "PAYMENT_CREATED", "payment": {"id": "pay_z"}}).encode()
        good = hmac.new(b"signing-key", raw, hashlib.sha256).hexdigest()

        ok = await client.post(
            "/api/webhooks/payments", content=raw,
            headers={"x-webhook-signature": good, "content-type": "application/json"},
        )
        bad = await client.post(
            "/api/webhooks/payments", content=raw,
            headers={"x-webhook-signature": "0" * 64, "content-type": "application/json"},
        )
        assert ok.status_code == 200
        assert bad.status_code == 401


class TestDisputesAndChatApi:
    @pytest.mark.asyncio
    async def test_short_description_is_rejected(self, client, listing, buyer):
        body = await checkout(client, listing, buyer)
        response = await client.post(
            "/api/disputes",
            json={"transaction_id": body["transaction"]["id"], "reason": "OTHER", "description": "too short"},
            headers=auth_headers(buyer),
        )
        assert response.status_code == 422
        assert response.json()["error_code"] == "description_too_short"

    @pytest.mark.asyncio
    async def test_blocked_message_is_not_an_error(self, client, listing, buyer):
        body = await checkout(client, listing, buyer)
        response = await client.post(
            f"/api/messages/{body['transaction']['id']}",
            json={"content": "Me liga no 99999-8888"},
            headers=auth_headers(buyer),
        )
        assert response.status_code == 200
        result = response.json()
        assert result["delivered"] is False
        assert result["severity"] == "high"
        assert "phone_number" in result["violations"]
        assert result["penalty_level"] == "warning"
