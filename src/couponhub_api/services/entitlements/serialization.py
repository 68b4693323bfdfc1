"""Per-account critical sections.

Every mutation of an account (ledger, quota, subscription sync) runs inside
``account_critical_section``: an in-process lock keyed by account id that is
held across the whole unit of work, including the commit. The SQL issued
inside is itself conditional (``UPDATE ... WHERE points >= :cost``) and the
subscription synchronizer locks the account row before reading the current
record, so the invariants still hold when several worker processes share
the database.
"""

from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import TransientStoreError


class AccountLockRegistry:
    """Hands out one ``asyncio.Lock`` per key; unused locks are garbage collected."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self.lock_for(key)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


_LOCKS = AccountLockRegistry()


def get_account_locks() -> AccountLockRegistry:
    return _LOCKS


@asynccontextmanager
async def account_critical_section(
    session: AsyncSession,
    key: Hashable,
    *,
    locks: AccountLockRegistry | None = None,
    operation: str,
) -> AsyncIterator[AsyncSession]:
    """Serialize work on ``key`` and commit it atomically.

    Domain errors roll back and propagate unchanged. Store failures roll back
    and surface as ``TransientStoreError`` so callers can retry.
    """

    registry = locks or get_account_locks()
    async with registry.hold(key):
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.exception(
                "Entitlement store failure; rolled back",
                operation=operation,
                key=str(key),
                error=str(exc),
            )
            raise TransientStoreError(f"{operation} failed; no changes were committed") from exc
        except BaseException:
            await session.rollback()
            raise


__all__ = ["AccountLockRegistry", "account_critical_section", "get_account_locks"]
