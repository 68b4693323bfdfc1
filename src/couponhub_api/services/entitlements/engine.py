"""Entitlement engine facade used by the claim, boost and upload workflows."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import InstrumentedAttribute

from couponhub_api.core.clock import ensure_utc, utc_today
from couponhub_api.core.settings import Settings, settings
from couponhub_api.models import (
    Account,
    AccountReward,
    EntitlementStateEnum,
    LedgerEntry,
    LedgerReasonEnum,
    RewardKindEnum,
)
from couponhub_api.observability.entitlements import get_entitlement_store
from couponhub_api.observability.tracing import get_tracer

from .achievements import AchievementEvaluator, GrantedReward, StatName, StatTrigger
from .errors import (
    ClaimNotRefundableError,
    DailyBonusAlreadyClaimedError,
    InsufficientFundsError,
    QuotaExceededError,
    TransientStoreError,
    UnknownAccountError,
)
from .ledger import DEFAULT_PAGE_SIZE, LedgerPage, PointsLedger, level_for
from .quota import QuotaDecision, QuotaGate
from .serialization import AccountLockRegistry, account_critical_section, get_account_locks
from .subscriptions import effective_entitlement

# Strong references to in-flight reconciliation tasks.
_BACKGROUND_TASKS: set[asyncio.Task] = set()


@dataclass(slots=True)
class EntitlementSummary:
    state: EntitlementStateEnum
    daily_remaining: int
    daily_limit: int
    unlimited: bool
    period_end: datetime | None = None


@dataclass(slots=True)
class ActionResult:
    """Outcome of a claim, boost, upload, bonus or refund."""

    account_id: UUID
    action: str
    delta: int
    balance: int
    level: int
    daily_remaining: int | None = None
    unlimited: bool = False
    rewards: list[GrantedReward] = field(default_factory=list)


@dataclass(slots=True)
class AccountSnapshot:
    account_id: UUID
    user_ref: str
    points: int
    level: int
    points_earned: int
    points_spent: int
    uploads: int
    claims: int
    boosts: int
    badges: list[str]
    achievements: list[str]
    entitlement: EntitlementSummary
    created_at: datetime | None = None


class EntitlementEngine:
    """Orchestrates the quota gate, points ledger and achievement evaluator.

    Every public mutation runs in its own per-account critical section and
    commits before returning. Reward grants run in a second unit of work
    after the triggering change has committed; if they fail, the change
    stands and a background reconciliation is scheduled instead.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        locks: AccountLockRegistry | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        config: Settings | None = None,
    ) -> None:
        self._db = session
        self._locks = locks or get_account_locks()
        self._session_factory = session_factory
        self._config = config or settings
        self._ledger = PointsLedger(session, level_step=self._config.level_points_step)
        self._quota = QuotaGate(session)
        self._achievements = AchievementEvaluator(session, ledger=self._ledger)

    @property
    def ledger(self) -> PointsLedger:
        return self._ledger

    @property
    def quota(self) -> QuotaGate:
        return self._quota

    async def open_account(self, user_ref: str) -> Account:
        """Create the account for ``user_ref`` with its opening balance; idempotent per user."""

        existing = await self._find_by_user_ref(user_ref)
        if existing is not None:
            return existing

        try:
            async with self._critical(f"user:{user_ref}", "open_account"):
                existing = await self._find_by_user_ref(user_ref)
                if existing is not None:
                    return existing

                account = Account(
                    id=uuid4(),
                    user_ref=user_ref,
                    daily_quota_limit=self._config.daily_claims_limit,
                    entitlement=EntitlementStateEnum.FREE,
                )
                self._db.add(account)
                await self._db.flush()
                await self._ledger.open_balance(account, self._config.starting_points)
        except TransientStoreError as exc:
            if not isinstance(exc.__cause__, IntegrityError):
                raise
            logger.warning("Detected race when opening account", user_ref=user_ref)
            account = await self._find_by_user_ref(user_ref)
            if account is None:
                raise
            return account

        logger.info("Opened account", user_ref=user_ref, account_id=str(account.id), points=account.points)
        await self._grant_rewards(
            account.id,
            [StatTrigger(StatName.POINTS, account.points, previous_value=0)],
        )
        return account

    async def credit(
        self,
        account_id: UUID,
        amount: int,
        reason: LedgerReasonEnum,
        *,
        reference_id: str | None = None,
    ) -> int:
        async with self._critical(account_id, "credit"):
            balance = await self._ledger.credit(account_id, amount, reason, reference_id=reference_id)
        await self._grant_rewards(
            account_id,
            [StatTrigger(StatName.POINTS, balance, previous_value=balance - amount)],
        )
        return balance

    async def debit(
        self,
        account_id: UUID,
        amount: int,
        reason: LedgerReasonEnum,
        *,
        reference_id: str | None = None,
    ) -> int:
        async with self._critical(account_id, "debit"):
            return await self._ledger.debit(account_id, amount, reason, reference_id=reference_id)

    async def try_consume(self, account_id: UUID, *, now: datetime | None = None) -> QuotaDecision:
        async with self._critical(account_id, "try_consume"):
            return await self._quota.try_consume(account_id, now=now)

    async def claim(self, account_id: UUID, coupon_ref: str, *, now: datetime | None = None) -> ActionResult:
        """Quota check, CLAIM_COST debit and claim counter in one unit of work."""

        cost = self._config.points_claim
        store = get_entitlement_store()
        with get_tracer().start_as_current_span("entitlements.claim") as span:
            span.set_attribute("account.id", str(account_id))
            span.set_attribute("coupon.id", coupon_ref)
            try:
                async with self._critical(account_id, "claim"):
                    decision = await self._quota.try_consume(account_id, now=now)
                    if not decision.allowed:
                        raise QuotaExceededError(decision.limit, self._config.upgrade_url)
                    balance = await self._ledger.debit(
                        account_id, cost, LedgerReasonEnum.CLAIM_COST, reference_id=coupon_ref
                    )
                    claims_after = await self._increment(account_id, Account.claims_count)
            except QuotaExceededError:
                store.record_action("claim", "quota_exceeded")
                span.set_attribute("claim.outcome", "quota_exceeded")
                raise
            except InsufficientFundsError:
                store.record_action("claim", "insufficient_points")
                span.set_attribute("claim.outcome", "insufficient_points")
                raise
            store.record_action("claim", "succeeded")
            span.set_attribute("claim.outcome", "succeeded")

        rewards = await self._grant_rewards(
            account_id,
            [
                StatTrigger(StatName.CLAIMS, claims_after, previous_value=claims_after - 1),
                StatTrigger(StatName.POINTS, balance, previous_value=balance + cost),
            ],
        )
        return self._result(
            account_id,
            "claim",
            -cost,
            balance,
            rewards,
            daily_remaining=decision.remaining,
            unlimited=decision.unlimited,
        )

    async def boost(self, account_id: UUID, coupon_ref: str) -> ActionResult:
        cost = self._config.points_boost
        with get_tracer().start_as_current_span("entitlements.boost") as span:
            span.set_attribute("account.id", str(account_id))
            try:
                async with self._critical(account_id, "boost"):
                    balance = await self._ledger.debit(
                        account_id, cost, LedgerReasonEnum.BOOST_COST, reference_id=coupon_ref
                    )
                    await self._increment(account_id, Account.boosts_count)
            except InsufficientFundsError:
                get_entitlement_store().record_action("boost", "insufficient_points")
                raise
        get_entitlement_store().record_action("boost", "succeeded")
        return self._result(account_id, "boost", -cost, balance, [])

    async def record_upload(self, account_id: UUID, coupon_ref: str) -> ActionResult:
        reward = self._config.points_upload
        with get_tracer().start_as_current_span("entitlements.upload") as span:
            span.set_attribute("account.id", str(account_id))
            async with self._critical(account_id, "record_upload"):
                balance = await self._ledger.credit(
                    account_id, reward, LedgerReasonEnum.UPLOAD_REWARD, reference_id=coupon_ref
                )
                uploads_after = await self._increment(account_id, Account.uploads_count)
        get_entitlement_store().record_action("upload", "succeeded")

        rewards = await self._grant_rewards(
            account_id,
            [
                StatTrigger(StatName.UPLOADS, uploads_after, previous_value=uploads_after - 1),
                StatTrigger(StatName.POINTS, balance, previous_value=balance - reward),
            ],
        )
        return self._result(account_id, "upload", reward, balance, rewards)

    async def claim_daily_bonus(self, account_id: UUID, *, now: datetime | None = None) -> ActionResult:
        bonus = self._config.daily_bonus_points
        today = utc_today(now)
        with get_tracer().start_as_current_span("entitlements.daily_bonus") as span:
            span.set_attribute("account.id", str(account_id))
            async with self._critical(account_id, "claim_daily_bonus"):
                result = await self._db.execute(
                    update(Account)
                    .where(
                        Account.id == account_id,
                        (Account.last_daily_bonus_on.is_(None)) | (Account.last_daily_bonus_on != today),
                    )
                    .values(last_daily_bonus_on=today)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await self._require_account(account_id)
                    get_entitlement_store().record_action("daily_bonus", "already_claimed")
                    raise DailyBonusAlreadyClaimedError(f"Daily bonus already claimed for {today.isoformat()}")
                balance = await self._ledger.credit(
                    account_id, bonus, LedgerReasonEnum.DAILY_BONUS, reference_id=today.isoformat()
                )
        get_entitlement_store().record_action("daily_bonus", "succeeded")

        rewards = await self._grant_rewards(
            account_id,
            [StatTrigger(StatName.POINTS, balance, previous_value=balance - bonus)],
        )
        return self._result(account_id, "daily_bonus", bonus, balance, rewards)

    async def refund_claim(self, account_id: UUID, coupon_ref: str) -> ActionResult:
        """Compensating credit for a claim whose downstream step failed.

        Refunds the amount actually debited, once per claim debit. The daily
        quota unit stays consumed.
        """

        async with self._critical(account_id, "refund_claim"):
            await self._require_account(account_id)
            debited = await self._refundable_amount(account_id, coupon_ref)
            if debited is None:
                raise ClaimNotRefundableError(coupon_ref)
            balance = await self._ledger.credit(
                account_id, debited, LedgerReasonEnum.CLAIM_REFUND, reference_id=coupon_ref
            )
        get_entitlement_store().record_action("refund", "succeeded")

        rewards = await self._grant_rewards(
            account_id,
            [StatTrigger(StatName.POINTS, balance, previous_value=balance - debited)],
        )
        return self._result(account_id, "refund", debited, balance, rewards)

    async def evaluate_achievements(self, account_id: UUID, trigger: StatTrigger) -> list[GrantedReward]:
        async with self._critical(account_id, "evaluate_achievements"):
            return await self._achievements.evaluate(account_id, trigger)

    async def reconcile_rewards(self, account_id: UUID) -> list[GrantedReward]:
        """Grant anything the stored stats qualify for but the account does not hold yet."""

        async with self._critical(account_id, "reconcile_rewards"):
            granted = await self._achievements.reconcile(account_id)
        get_entitlement_store().record_rewards_granted(len(granted))
        if granted:
            logger.info(
                "Reconciled missing rewards",
                account_id=str(account_id),
                rewards=[reward.reward_id for reward in granted],
            )
        return granted

    async def entitlement(self, account_id: UUID, *, now: datetime | None = None) -> EntitlementSummary:
        """Read-only entitlement view; lapsed cancellations read as FREE."""

        row = (
            await self._db.execute(
                select(Account.entitlement, Account.entitlement_period_end).where(Account.id == account_id)
            )
        ).one_or_none()
        if row is None:
            raise UnknownAccountError(account_id)
        stored_state, period_end = row
        quota = await self._quota.peek(account_id, now=now)
        state = effective_entitlement(stored_state, period_end, now=now)
        return EntitlementSummary(
            state=state,
            daily_remaining=quota.remaining,
            daily_limit=quota.limit,
            unlimited=quota.unlimited,
            period_end=ensure_utc(period_end),
        )

    async def account_snapshot(self, account_id: UUID, *, now: datetime | None = None) -> AccountSnapshot:
        account = await self._load_account(account_id)
        rewards = (
            await self._db.execute(
                select(AccountReward.reward_id, AccountReward.kind)
                .where(AccountReward.account_id == account_id)
                .order_by(AccountReward.granted_at.asc(), AccountReward.reward_id.asc())
            )
        ).all()
        summary = await self.entitlement(account_id, now=now)
        return AccountSnapshot(
            account_id=account.id,
            user_ref=account.user_ref,
            points=account.points,
            level=account.level,
            points_earned=account.points_earned,
            points_spent=account.points_spent,
            uploads=account.uploads_count,
            claims=account.claims_count,
            boosts=account.boosts_count,
            badges=[reward_id for reward_id, kind in rewards if kind == RewardKindEnum.BADGE],
            achievements=[reward_id for reward_id, kind in rewards if kind == RewardKindEnum.ACHIEVEMENT],
            entitlement=summary,
            created_at=ensure_utc(account.created_at),
        )

    async def list_entries(
        self,
        account_id: UUID,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        before_sequence: int | None = None,
    ) -> LedgerPage:
        await self._require_account(account_id)
        return await self._ledger.list_entries(account_id, limit=limit, before_sequence=before_sequence)

    def _critical(self, key, operation: str):
        return account_critical_section(self._db, key, locks=self._locks, operation=operation)

    async def _grant_rewards(self, account_id: UUID, triggers: Sequence[StatTrigger]) -> list[GrantedReward]:
        try:
            async with self._critical(account_id, "grant_rewards"):
                granted: list[GrantedReward] = []
                for trigger in triggers:
                    granted.extend(await self._achievements.evaluate(account_id, trigger))
        except Exception as exc:
            logger.exception(
                "Reward grant failed; scheduling reconciliation",
                account_id=str(account_id),
                error=str(exc),
            )
            get_entitlement_store().record_reward_failure(str(account_id), str(exc))
            self._schedule_reconciliation(account_id)
            return []

        get_entitlement_store().record_rewards_granted(len(granted))
        return granted

    def _schedule_reconciliation(self, account_id: UUID) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        factory = self._session_factory
        if factory is None:
            from couponhub_api.db.session import async_session

            factory = async_session

        async def _run() -> None:
            async with factory() as session:
                engine = EntitlementEngine(session, locks=self._locks, session_factory=factory, config=self._config)
                try:
                    await engine.reconcile_rewards(account_id)
                except Exception as exc:
                    logger.exception("Reward reconciliation failed", account_id=str(account_id), error=str(exc))

        task = loop.create_task(_run())
        _BACKGROUND_TASKS.add(task)
        task.add_done_callback(_BACKGROUND_TASKS.discard)

    async def _increment(self, account_id: UUID, column: InstrumentedAttribute) -> int:
        await self._db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values({column: column + 1})
            .execution_options(synchronize_session=False)
        )
        return await self._db.scalar(select(column).where(Account.id == account_id))

    async def _refundable_amount(self, account_id: UUID, coupon_ref: str) -> int | None:
        """Amount of the oldest claim debit for ``coupon_ref`` that has no refund yet."""

        rows = (
            await self._db.execute(
                select(LedgerEntry.reason, LedgerEntry.delta)
                .where(
                    LedgerEntry.account_id == account_id,
                    LedgerEntry.reference_id == coupon_ref,
                    LedgerEntry.reason.in_((LedgerReasonEnum.CLAIM_COST, LedgerReasonEnum.CLAIM_REFUND)),
                )
                .order_by(LedgerEntry.sequence.asc())
            )
        ).all()
        debits = [-delta for reason, delta in rows if reason == LedgerReasonEnum.CLAIM_COST]
        refunds = sum(1 for reason, _ in rows if reason == LedgerReasonEnum.CLAIM_REFUND)
        if refunds >= len(debits):
            return None
        return debits[refunds]

    async def _require_account(self, account_id: UUID) -> None:
        found = await self._db.scalar(select(func.count()).select_from(Account).where(Account.id == account_id))
        if not found:
            raise UnknownAccountError(account_id)

    async def _load_account(self, account_id: UUID) -> Account:
        stmt = select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        account = (await self._db.execute(stmt)).scalar_one_or_none()
        if account is None:
            raise UnknownAccountError(account_id)
        return account

    async def _find_by_user_ref(self, user_ref: str) -> Account | None:
        stmt = select(Account).where(Account.user_ref == user_ref).execution_options(populate_existing=True)
        return (await self._db.execute(stmt)).scalar_one_or_none()

    def _result(
        self,
        account_id: UUID,
        action: str,
        delta: int,
        balance: int,
        rewards: Iterable[GrantedReward],
        *,
        daily_remaining: int | None = None,
        unlimited: bool = False,
    ) -> ActionResult:
        rewards = list(rewards)
        final_balance = balance + sum(reward.bonus_points for reward in rewards)
        return ActionResult(
            account_id=account_id,
            action=action,
            delta=delta,
            balance=final_balance,
            level=level_for(final_balance, self._config.level_points_step),
            daily_remaining=daily_remaining,
            unlimited=unlimited,
            rewards=rewards,
        )


__all__ = ["AccountSnapshot", "ActionResult", "EntitlementEngine", "EntitlementSummary"]
