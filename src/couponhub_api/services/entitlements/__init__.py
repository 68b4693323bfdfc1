"""Entitlement engine: points ledger, quota gate, achievements and subscription sync."""

from .achievements import (
    ACHIEVEMENT_RULES,
    AchievementEvaluator,
    AchievementRule,
    GrantedReward,
    StatName,
    StatTrigger,
    match_rules,
)
from .engine import AccountSnapshot, ActionResult, EntitlementEngine, EntitlementSummary
from .errors import (
    ClaimNotRefundableError,
    DailyBonusAlreadyClaimedError,
    EntitlementError,
    InsufficientFundsError,
    InvalidWebhookSignatureError,
    QuotaExceededError,
    TransientStoreError,
    UnknownAccountError,
)
from .ledger import LedgerPage, PointsLedger, level_for
from .provider_events import ProviderEvent, ProviderTransition, translate
from .quota import QuotaDecision, QuotaGate
from .retention import purge_expired_webhook_events
from .serialization import AccountLockRegistry, account_critical_section, get_account_locks
from .subscriptions import ALLOWED_TRANSITIONS, can_transition, effective_entitlement
from .synchronizer import SubscriptionSynchronizer, SyncResult

__all__ = [
    "ACHIEVEMENT_RULES",
    "ALLOWED_TRANSITIONS",
    "AccountLockRegistry",
    "AccountSnapshot",
    "AchievementEvaluator",
    "AchievementRule",
    "ActionResult",
    "ClaimNotRefundableError",
    "DailyBonusAlreadyClaimedError",
    "EntitlementEngine",
    "EntitlementError",
    "EntitlementSummary",
    "GrantedReward",
    "InsufficientFundsError",
    "InvalidWebhookSignatureError",
    "LedgerPage",
    "PointsLedger",
    "ProviderEvent",
    "ProviderTransition",
    "QuotaDecision",
    "QuotaExceededError",
    "QuotaGate",
    "StatName",
    "StatTrigger",
    "SubscriptionSynchronizer",
    "SyncResult",
    "TransientStoreError",
    "UnknownAccountError",
    "account_critical_section",
    "can_transition",
    "effective_entitlement",
    "get_account_locks",
    "level_for",
    "match_rules",
    "purge_expired_webhook_events",
    "translate",
]
