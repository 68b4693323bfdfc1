"""Retention for the webhook idempotency index."""

from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from couponhub_api.core.clock import utcnow
from couponhub_api.core.settings import settings
from couponhub_api.models import WebhookEvent


async def purge_expired_webhook_events(
    session: AsyncSession,
    *,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> int:
    """Delete index rows older than the retention window and commit; returns rows removed."""

    days = retention_days or settings.webhook_event_retention_days
    cutoff = (now or utcnow()) - timedelta(days=days)
    result = await session.execute(
        delete(WebhookEvent)
        .where(WebhookEvent.received_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    purged = result.rowcount or 0
    if purged:
        logger.info("Purged expired webhook events", purged=purged, cutoff=cutoff.isoformat())
    return purged


__all__ = ["purge_expired_webhook_events"]
