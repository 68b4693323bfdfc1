"""Append-only points ledger backed by conditional balance updates."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from couponhub_api.core.logging import audit_logger
from couponhub_api.core.settings import settings
from couponhub_api.models import Account, LedgerEntry, LedgerReasonEnum

from .errors import InsufficientFundsError, UnknownAccountError

DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 200


def level_for(points: int, step: int | None = None) -> int:
    """Level is one plus every full step of points held."""

    step = step or settings.level_points_step
    return max(points, 0) // step + 1


@dataclass(slots=True)
class LedgerPage:
    entries: Sequence[LedgerEntry] = field(default_factory=list)
    next_cursor: int | None = None


class PointsLedger:
    """Credits and debits for one session.

    The caller owns the transaction: each method issues a single conditional
    UPDATE against ``accounts`` plus the matching ``ledger_entries`` insert and
    leaves committing to the surrounding critical section.
    """

    def __init__(self, session: AsyncSession, *, level_step: int | None = None) -> None:
        self._db = session
        self._level_step = level_step or settings.level_points_step

    async def open_balance(self, account: Account, amount: int) -> LedgerEntry:
        """Record the opening balance of a freshly inserted account."""

        account.points = amount
        account.level = level_for(amount, self._level_step)
        account.ledger_sequence = 1
        account.points_earned = amount
        entry = LedgerEntry(
            account_id=account.id,
            sequence=1,
            delta=amount,
            reason=LedgerReasonEnum.STARTING_BALANCE,
            resulting_balance=amount,
        )
        self._db.add(entry)
        await self._db.flush()
        return entry

    async def credit(
        self,
        account_id: UUID,
        amount: int,
        reason: LedgerReasonEnum,
        *,
        reference_id: str | None = None,
    ) -> int:
        if amount <= 0:
            raise ValueError("credit amount must be positive")

        new_points = Account.points + amount
        result = await self._db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(
                points=new_points,
                level=new_points // self._level_step + 1,
                points_earned=Account.points_earned + amount,
                ledger_sequence=Account.ledger_sequence + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise UnknownAccountError(account_id)
        return await self._append(account_id, amount, reason, reference_id)

    async def debit(
        self,
        account_id: UUID,
        amount: int,
        reason: LedgerReasonEnum,
        *,
        reference_id: str | None = None,
    ) -> int:
        if amount <= 0:
            raise ValueError("debit amount must be positive")

        new_points = Account.points - amount
        result = await self._db.execute(
            update(Account)
            .where(Account.id == account_id, Account.points >= amount)
            .values(
                points=new_points,
                level=new_points // self._level_step + 1,
                points_spent=Account.points_spent + amount,
                ledger_sequence=Account.ledger_sequence + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            available = await self.balance(account_id)
            raise InsufficientFundsError(required=amount, available=available)
        return await self._append(account_id, -amount, reason, reference_id)

    async def balance(self, account_id: UUID) -> int:
        points = await self._db.scalar(select(Account.points).where(Account.id == account_id))
        if points is None:
            raise UnknownAccountError(account_id)
        return points

    async def list_entries(
        self,
        account_id: UUID,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        before_sequence: int | None = None,
    ) -> LedgerPage:
        """Newest-first page of ledger entries; ``next_cursor`` feeds ``before_sequence``."""

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.sequence.desc())
            .limit(limit + 1)
        )
        if before_sequence is not None:
            stmt = stmt.where(LedgerEntry.sequence < before_sequence)

        rows = list((await self._db.execute(stmt)).scalars().all())
        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = rows[-1].sequence
        return LedgerPage(entries=rows, next_cursor=next_cursor)

    async def replay_balance(self, account_id: UUID) -> int:
        """Sum of every recorded delta; equals the stored balance when the ledger is intact."""

        entries = await self._db.execute(select(LedgerEntry.delta).where(LedgerEntry.account_id == account_id))
        return sum(delta for (delta,) in entries)

    async def _append(
        self,
        account_id: UUID,
        delta: int,
        reason: LedgerReasonEnum,
        reference_id: str | None,
    ) -> int:
        row = (
            await self._db.execute(
                select(Account.points, Account.ledger_sequence).where(Account.id == account_id)
            )
        ).one()
        balance, sequence = row
        self._db.add(
            LedgerEntry(
                account_id=account_id,
                sequence=sequence,
                delta=delta,
                reason=reason,
                resulting_balance=balance,
                reference_id=reference_id,
            )
        )
        await self._db.flush()
        audit_logger.info(
            "Ledger entry recorded",
            account_id=str(account_id),
            sequence=sequence,
            delta=delta,
            reason=reason.value,
            balance=balance,
            reference_id=reference_id,
        )
        return balance


__all__ = ["DEFAULT_PAGE_SIZE", "LedgerPage", "PointsLedger", "level_for"]
