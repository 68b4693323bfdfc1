"""Periodic purge of the webhook idempotency index."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from couponhub_api.core.settings import settings
from couponhub_api.services.entitlements.retention import purge_expired_webhook_events

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class WebhookRetentionWorker:
    """Deletes ``webhook_events`` rows once they fall outside the retention window."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        retention_days: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.webhook_retention_interval_seconds
        self.retention_days = retention_days or settings.webhook_event_retention_days
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Webhook retention worker started",
            interval_seconds=self.interval_seconds,
            retention_days=self.retention_days,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Webhook retention worker stopped")

    async def run_once(self) -> int:
        session = await self._ensure_session()
        async with session as managed_session:
            try:
                return await purge_expired_webhook_events(managed_session, retention_days=self.retention_days)
            except Exception:
                await managed_session.rollback()
                raise

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:
                logger.exception("Webhook retention sweep failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _ensure_session(self) -> AsyncSession:
        maybe_session = self._session_factory()
        if isinstance(maybe_session, AsyncSession):
            return maybe_session
        return await maybe_session


__all__ = ["WebhookRetentionWorker"]
