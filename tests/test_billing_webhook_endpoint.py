from __future__ import annotations

import hashlib
import hmac
import json
import time

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from couponhub_api.core.settings import settings
from couponhub_api.models import WebhookEvent
from couponhub_api.observability.entitlements import get_entitlement_store
from couponhub_api.services.entitlements import EntitlementEngine


def _signed_headers(payload: str, secret: str | None = None, timestamp: int | None = None) -> dict[str, str]:
    secret = secret or settings.stripe_webhook_secret
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _subscription_payload(event_id: str, account_id, *, status: str = "active", created: int = 1_760_000_000) -> str:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": "customer.subscription.updated",
            "created": created,
            "data": {
                "object": {
                    "object": "subscription",
                    "id": "sub_http",
                    "customer": "cus_http",
                    "status": status,
                    "cancel_at_period_end": False,
                    "current_period_start": created,
                    "current_period_end": created + 30 * 24 * 3600,
                    "metadata": {"account_id": str(account_id)},
                }
            },
        }
    )


async def _open_account(session_factory, user_ref: str = "user-webhook"):
    async with session_factory() as session:
        account = await EntitlementEngine(session).open_account(user_ref)
        return account.id


async def _webhook_rows(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(WebhookEvent))


@pytest.mark.asyncio
async def test_signed_activation_upgrades_account(app_with_db):
    app, session_factory = app_with_db
    account_id = await _open_account(session_factory)
    payload = _subscription_payload("evt_http_active", account_id)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/v1/webhooks/billing", content=payload, headers=_signed_headers(payload))
        entitlement = await client.get(f"/api/v1/accounts/{account_id}/entitlement")

    assert response.status_code == 200
    assert response.json() == {"status": "applied", "eventId": "evt_http_active"}
    assert entitlement.status_code == 200
    body = entitlement.json()
    assert body["state"] == "active"
    assert body["unlimited"] is True


@pytest.mark.asyncio
async def test_redelivery_is_acknowledged_as_duplicate(app_with_db):
    app, session_factory = app_with_db
    account_id = await _open_account(session_factory)
    payload = _subscription_payload("evt_http_dup", account_id)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await client.post("/api/v1/webhooks/billing", content=payload, headers=_signed_headers(payload))
        second = await client.post("/api/v1/webhooks/billing", content=payload, headers=_signed_headers(payload))

    assert first.json()["status"] == "applied"
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"
    assert await _webhook_rows(session_factory) == 1


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_side_effects(app_with_db):
    app, session_factory = app_with_db
    account_id = await _open_account(session_factory)
    payload = _subscription_payload("evt_http_forged", account_id)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        forged = await client.post(
            "/api/v1/webhooks/billing",
            content=payload,
            headers=_signed_headers(payload, secret="whsec_someone_else"),
        )
        unsigned = await client.post(
            "/api/v1/webhooks/billing",
            content=payload,
            headers={"Content-Type": "application/json"},
        )

    assert forged.status_code == 400
    assert unsigned.status_code == 400
    assert await _webhook_rows(session_factory) == 0
    assert get_entitlement_store().snapshot().as_dict()["webhooks"]["totals"] == {}


@pytest.mark.asyncio
async def test_expired_signature_timestamp_is_rejected(app_with_db):
    app, session_factory = app_with_db
    account_id = await _open_account(session_factory)
    payload = _subscription_payload("evt_http_old", account_id)
    stale = int(time.time()) - settings.stripe_webhook_tolerance_seconds - 60

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/v1/webhooks/billing",
            content=payload,
            headers=_signed_headers(payload, timestamp=stale),
        )

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(app_with_db):
    app, session_factory = app_with_db
    account_id = await _open_account(session_factory)
    payload = json.dumps(
        {
            "id": "evt_http_customer",
            "object": "event",
            "type": "customer.updated",
            "created": 1_760_000_000,
            "data": {"object": {"object": "customer", "id": "cus_http", "metadata": {"account_id": str(account_id)}}},
        }
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/v1/webhooks/billing", content=payload, headers=_signed_headers(payload))

    assert response.status_code == 200
    assert response.json()["status"] == "ignored"


@pytest.mark.asyncio
async def test_webhook_requires_configured_secret(app_with_db, monkeypatch):
    app, _session_factory = app_with_db
    monkeypatch.setattr(settings, "stripe_webhook_secret", "")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post("/api/v1/webhooks/billing", content="{}", headers={"Stripe-Signature": "t=1,v1=x"})

    assert response.status_code == 503
