"""Translate entitlement failures into HTTP responses."""

from __future__ import annotations

from fastapi import HTTPException, status

from couponhub_api.core.settings import settings
from couponhub_api.services.entitlements import (
    ClaimNotRefundableError,
    DailyBonusAlreadyClaimedError,
    EntitlementError,
    InsufficientFundsError,
    QuotaExceededError,
    TransientStoreError,
    UnknownAccountError,
)


def entitlement_http_error(exc: EntitlementError) -> HTTPException:
    if isinstance(exc, InsufficientFundsError):
        return HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "code": "insufficient_points",
                "message": f"Not enough points: you need {exc.shortfall} more.",
                "shortfall": exc.shortfall,
                "required": exc.required,
                "available": exc.available,
            },
        )
    if isinstance(exc, QuotaExceededError):
        return HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "code": "daily_limit_reached",
                "message": f"You have used all {exc.limit} claims for today. Upgrade to Premium for unlimited claims.",
                "limit": exc.limit,
                "upgradeUrl": exc.upgrade_url or settings.upgrade_url,
            },
        )
    if isinstance(exc, DailyBonusAlreadyClaimedError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "daily_bonus_claimed", "message": "Daily bonus already claimed today."},
        )
    if isinstance(exc, ClaimNotRefundableError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "claim_not_refundable", "message": "No refundable claim for this coupon."},
        )
    if isinstance(exc, UnknownAccountError):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "account_not_found", "message": "Account not found."},
        )
    if isinstance(exc, TransientStoreError):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "temporarily_unavailable", "message": "Please try again shortly."},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "internal_error", "message": "Something went wrong."},
    )


__all__ = ["entitlement_http_error"]
