from __future__ import annotations

from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update

from couponhub_api.core.settings import settings
from couponhub_api.models import Account


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _open(client: AsyncClient, user_ref: str = "user-http") -> dict:
    response = await client.post("/api/v1/accounts", json={"userRef": user_ref})
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
async def test_open_account_returns_snapshot(app_with_db):
    app, _session_factory = app_with_db

    async with _client(app) as client:
        body = await _open(client)
        again = await client.post("/api/v1/accounts", json={"userRef": "user-http"})
        fetched = await client.get(f"/api/v1/accounts/{body['id']}")

    assert body["userRef"] == "user-http"
    assert body["points"] == 100
    assert body["level"] == 2
    assert body["achievements"] == ["first_century"]
    assert body["entitlement"]["state"] == "free"
    assert body["entitlement"]["dailyRemaining"] == 3
    assert again.json()["id"] == body["id"]
    assert fetched.status_code == 200
    assert fetched.json()["points"] == 100


@pytest.mark.asyncio
async def test_claims_until_daily_limit_then_429(app_with_db):
    app, _session_factory = app_with_db

    async with _client(app) as client:
        account = await _open(client)
        url = f"/api/v1/accounts/{account['id']}/claims"
        balances = []
        for index in range(3):
            response = await client.post(url, json={"couponId": f"cpn-{index}"})
            assert response.status_code == 200
            balances.append((response.json()["balance"], response.json()["dailyRemaining"]))
        blocked = await client.post(url, json={"couponId": "cpn-3"})

    assert balances == [(90, 2), (80, 1), (70, 0)]
    assert blocked.status_code == 429
    detail = blocked.json()["detail"]
    assert detail["code"] == "daily_limit_reached"
    assert detail["limit"] == 3
    assert detail["upgradeUrl"] == settings.upgrade_url


@pytest.mark.asyncio
async def test_boost_without_points_returns_402(app_with_db):
    app, session_factory = app_with_db

    async with _client(app) as client:
        account = await _open(client)
        async with session_factory() as session:
            await session.execute(update(Account).where(Account.id == UUID(account["id"])).values(points=15))
            await session.commit()
        response = await client.post(f"/api/v1/accounts/{account['id']}/boosts", json={"couponId": "cpn-b"})

    assert response.status_code == 402
    detail = response.json()["detail"]
    assert detail["code"] == "insufficient_points"
    assert detail["shortfall"] == 5
    assert detail["required"] == 20
    assert detail["available"] == 15


@pytest.mark.asyncio
async def test_upload_bonus_and_refund_endpoints(app_with_db):
    app, _session_factory = app_with_db

    async with _client(app) as client:
        account = await _open(client)
        base = f"/api/v1/accounts/{account['id']}"

        upload = await client.post(f"{base}/uploads", json={"couponId": "cpn-up"})
        bonus = await client.post(f"{base}/daily-bonus")
        bonus_again = await client.post(f"{base}/daily-bonus")
        claim = await client.post(f"{base}/claims", json={"couponId": "cpn-c"})
        refund = await client.post(f"{base}/refunds", json={"couponId": "cpn-c"})
        refund_again = await client.post(f"{base}/refunds", json={"couponId": "cpn-c"})

    assert upload.json()["balance"] == 105
    assert bonus.json()["balance"] == 115
    assert bonus_again.status_code == 409
    assert bonus_again.json()["detail"]["code"] == "daily_bonus_claimed"
    assert claim.json()["balance"] == 105
    assert refund.status_code == 200
    assert refund.json()["balance"] == 115
    assert refund_again.status_code == 409
    assert refund_again.json()["detail"]["code"] == "claim_not_refundable"


@pytest.mark.asyncio
async def test_ledger_pages_with_cursor(app_with_db):
    app, _session_factory = app_with_db

    async with _client(app) as client:
        account = await _open(client)
        base = f"/api/v1/accounts/{account['id']}"
        for index in range(3):
            await client.post(f"{base}/uploads", json={"couponId": f"cpn-{index}"})

        first = await client.get(f"{base}/ledger", params={"limit": 2})
        cursor = first.json()["nextCursor"]
        second = await client.get(f"{base}/ledger", params={"limit": 2, "cursor": cursor})

    assert first.status_code == 200
    assert [entry["sequence"] for entry in first.json()["entries"]] == [4, 3]
    assert cursor == 3
    assert [entry["sequence"] for entry in second.json()["entries"]] == [2, 1]
    assert second.json()["nextCursor"] is None
    assert second.json()["entries"][-1]["reason"] == "starting_balance"


@pytest.mark.asyncio
async def test_unknown_account_returns_404(app_with_db):
    app, _session_factory = app_with_db

    async with _client(app) as client:
        response = await client.post(f"/api/v1/accounts/{uuid4()}/claims", json={"couponId": "cpn-x"})
        ledger = await client.get(f"/api/v1/accounts/{uuid4()}/ledger")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "account_not_found"
    assert ledger.status_code == 404


@pytest.mark.asyncio
async def test_collaborator_endpoints_require_api_key(app_with_db, monkeypatch):
    app, _session_factory = app_with_db
    monkeypatch.setattr(settings, "internal_api_key", "collab-key")

    async with _client(app) as client:
        missing = await client.post("/api/v1/accounts", json={"userRef": "user-key"})
        wrong = await client.post("/api/v1/accounts", json={"userRef": "user-key"}, headers={"X-API-Key": "nope"})
        allowed = await client.post(
            "/api/v1/accounts", json={"userRef": "user-key"}, headers={"X-API-Key": "collab-key"}
        )
        snapshot = await client.get("/api/v1/observability/entitlements", headers={"X-API-Key": "collab-key"})

    assert missing.status_code == 401
    assert wrong.status_code == 401
    assert allowed.status_code == 201
    assert snapshot.status_code == 200
    assert set(snapshot.json()) == {"actions", "webhooks", "rewards"}
