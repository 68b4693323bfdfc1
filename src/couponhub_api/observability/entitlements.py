"""In-memory counters for claims, webhook deliveries and reward grants."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Dict

from couponhub_api.core.clock import utcnow


@dataclass
class RewardFailureLog:
    last_failure_at: datetime | None = None
    last_failure_account_id: str | None = None
    last_failure_reason: str | None = None


@dataclass
class EntitlementObservabilitySnapshot:
    action_totals: Dict[str, Dict[str, int]]
    webhook_totals: Dict[str, Dict[str, int]]
    reward_totals: Dict[str, int]
    reward_failures: RewardFailureLog
    last_webhook_at: datetime | None

    def as_dict(self) -> Dict[str, object]:
        return {
            "actions": self.action_totals,
            "webhooks": {
                "totals": self.webhook_totals,
                "last_event_at": self.last_webhook_at.isoformat() if self.last_webhook_at else None,
            },
            "rewards": {
                "totals": self.reward_totals,
                "last_failure_at": self.reward_failures.last_failure_at.isoformat()
                if self.reward_failures.last_failure_at
                else None,
                "last_failure_account_id": self.reward_failures.last_failure_account_id,
                "last_failure_reason": self.reward_failures.last_failure_reason,
            },
        }


@dataclass
class EntitlementObservabilityStore:
    _lock: Lock = field(default_factory=Lock)
    _action_totals: Dict[str, Counter] = field(default_factory=dict)
    _webhook_totals: Dict[str, Counter] = field(default_factory=dict)
    _reward_totals: Counter = field(default_factory=Counter)
    _reward_failures: RewardFailureLog = field(default_factory=RewardFailureLog)
    _last_webhook_at: datetime | None = None

    def record_action(self, action: str, outcome: str) -> None:
        """Count a claim/boost/upload/bonus attempt by outcome (``succeeded``, ``quota_exceeded`` ...)."""

        with self._lock:
            self._action_totals.setdefault(action, Counter())[outcome] += 1

    def record_webhook(self, event_type: str, outcome: str) -> None:
        with self._lock:
            self._webhook_totals.setdefault(outcome, Counter())[event_type] += 1
            self._last_webhook_at = utcnow()

    def record_rewards_granted(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._reward_totals["granted"] += count

    def record_reward_failure(self, account_id: str, reason: str) -> None:
        with self._lock:
            self._reward_totals["failed"] += 1
            self._reward_failures = RewardFailureLog(
                last_failure_at=utcnow(),
                last_failure_account_id=account_id,
                last_failure_reason=reason,
            )

    def snapshot(self) -> EntitlementObservabilitySnapshot:
        with self._lock:
            return EntitlementObservabilitySnapshot(
                action_totals={name: dict(counter) for name, counter in self._action_totals.items()},
                webhook_totals={name: dict(counter) for name, counter in self._webhook_totals.items()},
                reward_totals=dict(self._reward_totals),
                reward_failures=RewardFailureLog(
                    last_failure_at=self._reward_failures.last_failure_at,
                    last_failure_account_id=self._reward_failures.last_failure_account_id,
                    last_failure_reason=self._reward_failures.last_failure_reason,
                ),
                last_webhook_at=self._last_webhook_at,
            )

    def reset(self) -> None:
        with self._lock:
            self._action_totals.clear()
            self._webhook_totals.clear()
            self._reward_totals.clear()
            self._reward_failures = RewardFailureLog()
            self._last_webhook_at = None


_ENTITLEMENT_STORE = EntitlementObservabilityStore()


def get_entitlement_store() -> EntitlementObservabilityStore:
    return _ENTITLEMENT_STORE


__all__ = [
    "EntitlementObservabilitySnapshot",
    "EntitlementObservabilityStore",
    "get_entitlement_store",
]
