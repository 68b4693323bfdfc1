import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from couponhub_api.models import Account, LedgerEntry, LedgerReasonEnum
from couponhub_api.observability.entitlements import get_entitlement_store
from couponhub_api.services.entitlements import (
    ClaimNotRefundableError,
    DailyBonusAlreadyClaimedError,
    InsufficientFundsError,
    PointsLedger,
    QuotaExceededError,
    SubscriptionSynchronizer,
    UnknownAccountError,
)
from couponhub_api.services.entitlements import engine as engine_module
from couponhub_api.services.entitlements.achievements import AchievementEvaluator

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


async def _open(session_factory, engine_for, user_ref: str = "user-engine"):
    async with session_factory() as session:
        account = await engine_for(session).open_account(user_ref)
        return account.id


async def _claim(session_factory, engine_for, account_id, coupon_ref, now=NOW):
    async with session_factory() as session:
        return await engine_for(session).claim(account_id, coupon_ref, now=now)


async def _activate(session_factory, account_locks, account_id) -> None:
    async with session_factory() as session:
        await SubscriptionSynchronizer(session, locks=account_locks).ingest(
            {
                "id": "evt_activate",
                "type": "customer.subscription.created",
                "created": 1_760_000_000,
                "data": {
                    "object": {
                        "object": "subscription",
                        "id": "sub_engine",
                        "customer": "cus_engine",
                        "status": "active",
                        "current_period_start": int(NOW.timestamp()),
                        "current_period_end": int((NOW + timedelta(days=30)).timestamp()),
                        "metadata": {"account_id": str(account_id)},
                    }
                },
            }
        )


@pytest.mark.asyncio
async def test_open_account_is_idempotent_per_user(session_factory, engine_for):
    first = await _open(session_factory, engine_for, "user-twice")
    second = await _open(session_factory, engine_for, "user-twice")

    assert first == second
    async with session_factory() as session:
        count = await session.scalar(select(func.count()).select_from(Account))
        entries = await session.scalar(select(func.count()).select_from(LedgerEntry))
    assert count == 1
    assert entries == 1


@pytest.mark.asyncio
async def test_free_user_claims_until_quota_then_upgrades(session_factory, engine_for, account_locks):
    account_id = await _open(session_factory, engine_for)

    results = [await _claim(session_factory, engine_for, account_id, f"cpn-{n}") for n in range(3)]
    assert [result.balance for result in results] == [90, 80, 70]
    assert [result.daily_remaining for result in results] == [2, 1, 0]
    assert all(result.delta == -10 for result in results)

    with pytest.raises(QuotaExceededError) as excinfo:
        await _claim(session_factory, engine_for, account_id, "cpn-3")
    assert excinfo.value.limit == 3
    assert excinfo.value.upgrade_url.endswith("/premium")

    async with session_factory() as session:
        assert await PointsLedger(session).balance(account_id) == 70
        account = await session.get(Account, account_id)
        assert account.daily_quota_used == 3
        assert account.claims_count == 3

    await _activate(session_factory, account_locks, account_id)

    fifth = await _claim(session_factory, engine_for, account_id, "cpn-4")
    assert fifth.balance == 60
    assert fifth.unlimited is True

    async with session_factory() as session:
        ledger = PointsLedger(session)
        assert await ledger.replay_balance(account_id) == 60
        account = await session.get(Account, account_id)
        assert account.daily_quota_used == 3

    totals = get_entitlement_store().snapshot().as_dict()["actions"]["claim"]
    assert totals == {"succeeded": 4, "quota_exceeded": 1}


@pytest.mark.asyncio
async def test_failed_debit_rolls_back_quota_unit(session_factory, engine_for):
    account_id = await _open(session_factory, engine_for)

    async with session_factory() as session:
        engine = engine_for(session)
        await engine.boost(account_id, "cpn-a")
        await engine.boost(account_id, "cpn-b")
        await engine.boost(account_id, "cpn-c")
        await engine.boost(account_id, "cpn-d")
        # 100 - 4 * 20 = 20 left; a 10 point claim still fits twice.

    await _claim(session_factory, engine_for, account_id, "cpn-1")
    await _claim(session_factory, engine_for, account_id, "cpn-2")

    async with session_factory() as session:
        with pytest.raises(InsufficientFundsError) as excinfo:
            await engine_for(session).claim(account_id, "cpn-3", now=NOW)
    assert excinfo.value.shortfall == 10

    async with session_factory() as session:
        account = await session.get(Account, account_id)
        assert account.points == 0
        assert account.daily_quota_used == 2
        assert account.claims_count == 2


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_factory, engine_for):
    account_id = await _open(session_factory, engine_for)
    cost = 30

    async def _debit(index: int):
        async with session_factory() as session:
            return await engine_for(session).debit(
                account_id, cost, LedgerReasonEnum.BOOST_COST, reference_id=f"cpn-{index}"
            )

    outcomes = await asyncio.gather(*(_debit(index) for index in range(6)), return_exceptions=True)

    successes = [outcome for outcome in outcomes if isinstance(outcome, int)]
    failures = [outcome for outcome in outcomes if isinstance(outcome, InsufficientFundsError)]
    assert len(successes) == 100 // cost
    assert len(failures) == 6 - 100 // cost
    assert sorted(successes, reverse=True) == [70, 40, 10]

    async with session_factory() as session:
        ledger = PointsLedger(session)
        assert await ledger.balance(account_id) == 10
        assert await ledger.replay_balance(account_id) == 10
        sequences = (
            await session.execute(
                select(LedgerEntry.sequence)
                .where(LedgerEntry.account_id == account_id)
                .order_by(LedgerEntry.sequence)
            )
        ).scalars().all()
    assert sequences == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_concurrent_claims_respect_daily_limit(session_factory, engine_for):
    account_id = await _open(session_factory, engine_for)

    async def _attempt(index: int):
        async with session_factory() as session:
            return await engine_for(session).claim(account_id, f"cpn-{index}", now=NOW)

    outcomes = await asyncio.gather(*(_attempt(index) for index in range(5)), return_exceptions=True)

    allowed = [outcome for outcome in outcomes if not isinstance(outcome, BaseException)]
    denied = [outcome for outcome in outcomes if isinstance(outcome, QuotaExceededError)]
    assert len(allowed) == 3
    assert len(denied) == 2
    assert sorted(result.daily_remaining for result in allowed) == [0, 1, 2]

    async with session_factory() as session:
        assert await PointsLedger(session).balance(account_id) == 70


@pytest.mark.asyncio
async def test_refund_returns_debited_points_once(session_factory, engine_for):
    account_id = await _open(session_factory, engine_for)
    await _claim(session_factory, engine_for, account_id, "cpn-r")

    async with session_factory() as session:
        engine = engine_for(session)
        refund = await engine.refund_claim(account_id, "cpn-r")
        assert refund.delta == 10
        assert refund.balance == 100

        with pytest.raises(ClaimNotRefundableError):
            await engine.refund_claim(account_id, "cpn-r")
        with pytest.raises(ClaimNotRefundableError):
            await engine.refund_claim(account_id, "cpn-never-claimed")

    async with session_factory() as session:
        account = await session.get(Account, account_id)
        assert account.daily_quota_used == 1
        reasons = (
            await session.execute(
                select(LedgerEntry.reason)
                .where(LedgerEntry.account_id == account_id)
                .order_by(LedgerEntry.sequence)
            )
        ).scalars().all()
    assert reasons == [
        LedgerReasonEnum.STARTING_BALANCE,
        LedgerReasonEnum.CLAIM_COST,
        LedgerReasonEnum.CLAIM_REFUND,
    ]


@pytest.mark.asyncio
async def test_daily_bonus_once_per_utc_day(session_factory, engine_for):
    account_id = await _open(session_factory, engine_for)

    async with session_factory() as session:
        engine = engine_for(session)
        first = await engine.claim_daily_bonus(account_id, now=NOW)
        assert first.balance == 110

        with pytest.raises(DailyBonusAlreadyClaimedError):
            await engine.claim_daily_bonus(account_id, now=NOW.replace(hour=23))

        next_day = await engine.claim_daily_bonus(account_id, now=NOW + timedelta(days=1))
        assert next_day.balance == 120

    async with session_factory() as session:
        references = (
            await session.execute(
                select(LedgerEntry.reference_id).where(
                    LedgerEntry.account_id == account_id,
                    LedgerEntry.reason == LedgerReasonEnum.DAILY_BONUS,
                )
            )
        ).scalars().all()
    assert sorted(references) == ["2026-10-18", "2026-10-19"]


@pytest.mark.asyncio
async def test_upload_credits_points_and_counts(session_factory, engine_for):
    account_id = await _open(session_factory, engine_for)

    async with session_factory() as session:
        result = await engine_for(session).record_upload(account_id, "cpn-up")

    assert result.delta == 5
    assert result.balance == 105

    async with session_factory() as session:
        snapshot = await engine_for(session).account_snapshot(account_id, now=NOW)
    assert snapshot.uploads == 1
    assert snapshot.points == 105
    assert snapshot.level == 2
    assert snapshot.achievements == ["first_century"]
    assert snapshot.badges == []
    assert snapshot.entitlement.daily_remaining == 3


@pytest.mark.asyncio
async def test_reward_failure_keeps_mutation_and_schedules_reconciliation(
    session_factory, engine_for, monkeypatch
):
    account_id = await _open(session_factory, engine_for)

    async with session_factory() as session:
        await session.execute(update(Account).where(Account.id == account_id).values(uploads_count=4))
        await session.commit()

    original = AchievementEvaluator.evaluate
    calls = {"count": 0}

    async def flaky_evaluate(self, account_id, trigger):
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("reward store unavailable")
        return await original(self, account_id, trigger)

    monkeypatch.setattr(AchievementEvaluator, "evaluate", flaky_evaluate)

    async with session_factory() as session:
        result = await engine_for(session).record_upload(account_id, "cpn-flaky")

    assert result.rewards == []
    assert result.balance == 105

    await asyncio.gather(*list(engine_module._BACKGROUND_TASKS))

    async with session_factory() as session:
        held = await AchievementEvaluator(session).held_rewards(account_id)
    assert "uploader" in held
    rewards = get_entitlement_store().snapshot().as_dict()["rewards"]
    assert rewards["totals"]["failed"] == 1
    assert rewards["last_failure_reason"] == "reward store unavailable"


@pytest.mark.asyncio
async def test_operations_on_unknown_account(session_factory, engine_for):
    async with session_factory() as session:
        engine = engine_for(session)
        with pytest.raises(UnknownAccountError):
            await engine.claim(uuid4(), "cpn-x", now=NOW)
        with pytest.raises(UnknownAccountError):
            await engine.entitlement(uuid4())
        with pytest.raises(UnknownAccountError):
            await engine.claim_daily_bonus(uuid4(), now=NOW)
