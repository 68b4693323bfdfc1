"""Daily claim quota for free-tier accounts."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from couponhub_api.core.clock import utc_today
from couponhub_api.models import Account
from couponhub_api.models.account import ENTITLED_STATES

from .errors import UnknownAccountError


@dataclass(slots=True, frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: int
    limit: int
    unlimited: bool = False


class QuotaGate:
    """Consumes one unit of the account's daily allowance per call.

    The window is the UTC calendar day. A stale window is reset inside the
    same UPDATE that consumes from it, so the reset and the increment can
    never interleave with a concurrent consumer. Entitled accounts bypass the
    gate and their counter is left untouched.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._db = session

    async def try_consume(self, account_id: UUID, *, now: datetime | None = None) -> QuotaDecision:
        today = utc_today(now)
        window_is_today = Account.daily_quota_window_start == today
        used_today = case((window_is_today, Account.daily_quota_used), else_=0)

        result = await self._db.execute(
            update(Account)
            .where(
                Account.id == account_id,
                Account.entitlement.not_in(tuple(ENTITLED_STATES)),
                used_today < Account.daily_quota_limit,
            )
            .values(
                daily_quota_used=used_today + 1,
                daily_quota_window_start=today,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            used, limit = (
                await self._db.execute(
                    select(Account.daily_quota_used, Account.daily_quota_limit).where(Account.id == account_id)
                )
            ).one()
            return QuotaDecision(allowed=True, remaining=max(limit - used, 0), limit=limit)

        state = await self._load(account_id)
        if state.entitlement in ENTITLED_STATES:
            remaining = state.daily_quota_limit - self._used_today(state, today)
            return QuotaDecision(allowed=True, remaining=max(remaining, 0), limit=state.daily_quota_limit, unlimited=True)

        return QuotaDecision(allowed=False, remaining=0, limit=state.daily_quota_limit)

    async def peek(self, account_id: UUID, *, now: datetime | None = None) -> QuotaDecision:
        """Report the allowance without consuming it."""

        today = utc_today(now)
        state = await self._load(account_id)
        remaining = max(state.daily_quota_limit - self._used_today(state, today), 0)
        unlimited = state.entitlement in ENTITLED_STATES
        return QuotaDecision(
            allowed=unlimited or remaining > 0,
            remaining=remaining,
            limit=state.daily_quota_limit,
            unlimited=unlimited,
        )

    async def _load(self, account_id: UUID):
        row = (
            await self._db.execute(
                select(
                    Account.entitlement,
                    Account.daily_quota_used,
                    Account.daily_quota_limit,
                    Account.daily_quota_window_start,
                ).where(Account.id == account_id)
            )
        ).one_or_none()
        if row is None:
            raise UnknownAccountError(account_id)
        return row

    @staticmethod
    def _used_today(state, today) -> int:
        if state.daily_quota_window_start != today:
            return 0
        return state.daily_quota_used


__all__ = ["QuotaDecision", "QuotaGate"]
