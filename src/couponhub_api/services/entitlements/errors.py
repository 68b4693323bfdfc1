"""Failure taxonomy for entitlement operations."""

from __future__ import annotations


class EntitlementError(RuntimeError):
    """Base exception for entitlement engine failures."""


class InsufficientFundsError(EntitlementError):
    """Raised when a debit exceeds the current balance."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"Insufficient points. Required: {required}, available: {available}")
        self.required = required
        self.available = available

    @property
    def shortfall(self) -> int:
        return max(self.required - self.available, 0)


class QuotaExceededError(EntitlementError):
    """Raised when a free-tier account has used its daily claims."""

    def __init__(self, limit: int, upgrade_url: str | None = None) -> None:
        super().__init__(f"Daily claim limit of {limit} reached")
        self.limit = limit
        self.upgrade_url = upgrade_url


class DailyBonusAlreadyClaimedError(EntitlementError):
    """Raised when the daily bonus was already credited for the current UTC day."""


class ClaimNotRefundableError(EntitlementError):
    """Raised when a refund has no matching, not yet refunded claim debit."""

    def __init__(self, coupon_ref: str) -> None:
        super().__init__(f"No refundable claim for coupon {coupon_ref}")
        self.coupon_ref = coupon_ref


class InvalidWebhookSignatureError(EntitlementError):
    """Raised when a provider payload fails signature verification."""


class UnknownAccountError(EntitlementError):
    """Raised when an operation references an account that does not exist."""

    def __init__(self, account_ref: object) -> None:
        super().__init__(f"Account {account_ref} not found")
        self.account_ref = account_ref


class TransientStoreError(EntitlementError):
    """Raised when persistence fails inside a critical section; nothing was committed."""


__all__ = [
    "ClaimNotRefundableError",
    "DailyBonusAlreadyClaimedError",
    "EntitlementError",
    "InsufficientFundsError",
    "InvalidWebhookSignatureError",
    "QuotaExceededError",
    "TransientStoreError",
    "UnknownAccountError",
]
