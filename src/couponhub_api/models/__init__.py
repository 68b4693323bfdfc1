"""ORM models for the entitlement engine."""

from .account import Account, AccountReward, EntitlementStateEnum, RewardKindEnum  # noqa: F401
from .ledger import LedgerEntry, LedgerReasonEnum  # noqa: F401
from .subscription import SubscriptionRecord  # noqa: F401
from .webhook_event import WebhookEvent, WebhookOutcomeEnum, WebhookProviderEnum  # noqa: F401

__all__ = [
    "Account",
    "AccountReward",
    "EntitlementStateEnum",
    "LedgerEntry",
    "LedgerReasonEnum",
    "RewardKindEnum",
    "SubscriptionRecord",
    "WebhookEvent",
    "WebhookOutcomeEnum",
    "WebhookProviderEnum",
]
