"""Subscription state machine and effective entitlement reads."""

from __future__ import annotations

from datetime import datetime

from couponhub_api.core.clock import ensure_utc, utcnow
from couponhub_api.models.account import EntitlementStateEnum

ALLOWED_TRANSITIONS: dict[EntitlementStateEnum, set[EntitlementStateEnum]] = {
    EntitlementStateEnum.FREE: {
        EntitlementStateEnum.TRIALING,
        EntitlementStateEnum.ACTIVE,
    },
    EntitlementStateEnum.TRIALING: {
        EntitlementStateEnum.ACTIVE,
        EntitlementStateEnum.PAST_DUE,
        EntitlementStateEnum.CANCELING,
        EntitlementStateEnum.CANCELED,
    },
    EntitlementStateEnum.ACTIVE: {
        EntitlementStateEnum.PAST_DUE,
        EntitlementStateEnum.CANCELING,
        EntitlementStateEnum.CANCELED,
    },
    EntitlementStateEnum.PAST_DUE: {
        EntitlementStateEnum.ACTIVE,
        EntitlementStateEnum.CANCELING,
        EntitlementStateEnum.CANCELED,
    },
    EntitlementStateEnum.CANCELING: {
        EntitlementStateEnum.ACTIVE,
        EntitlementStateEnum.PAST_DUE,
        EntitlementStateEnum.CANCELED,
    },
    EntitlementStateEnum.CANCELED: {
        EntitlementStateEnum.FREE,
        EntitlementStateEnum.TRIALING,
        EntitlementStateEnum.ACTIVE,
    },
}

_LAPSING_STATES = {EntitlementStateEnum.CANCELING, EntitlementStateEnum.CANCELED}


def can_transition(current: EntitlementStateEnum, target: EntitlementStateEnum) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def effective_entitlement(
    state: EntitlementStateEnum,
    period_end: datetime | None,
    *,
    now: datetime | None = None,
) -> EntitlementStateEnum:
    """Degrade a lapsing subscription to FREE once its paid period is over.

    The stored state is left alone; the provider's own deletion event will
    catch it up later.
    """

    if state in _LAPSING_STATES and period_end is not None:
        if ensure_utc(now or utcnow()) >= ensure_utc(period_end):
            return EntitlementStateEnum.FREE
    return state


__all__ = ["ALLOWED_TRANSITIONS", "can_transition", "effective_entitlement"]
