"""Claim, boost, upload, bonus and refund endpoints."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends

from couponhub_api.api.dependencies.engine import get_entitlement_engine
from couponhub_api.api.dependencies.security import require_internal_api_key
from couponhub_api.api.errors import entitlement_http_error
from couponhub_api.schemas.entitlements import ActionResponse, CouponActionRequest, RewardResponse
from couponhub_api.services.entitlements import ActionResult, EntitlementEngine, EntitlementError

router = APIRouter(
    prefix="/accounts",
    tags=["coupon-actions"],
    dependencies=[Depends(require_internal_api_key)],
)


def _serialize_result(result: ActionResult) -> ActionResponse:
    return ActionResponse(
        account_id=result.account_id,
        action=result.action,
        delta=result.delta,
        balance=result.balance,
        level=result.level,
        daily_remaining=result.daily_remaining,
        unlimited=result.unlimited,
        rewards=[
            RewardResponse(reward_id=reward.reward_id, kind=reward.kind, bonus_points=reward.bonus_points)
            for reward in result.rewards
        ],
    )


@router.post("/{account_id}/claims", response_model=ActionResponse)
async def claim_coupon(
    account_id: UUID,
    payload: CouponActionRequest,
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> ActionResponse:
    """Spend points and one daily claim on a coupon."""

    try:
        result = await engine.claim(account_id, payload.coupon_id)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return _serialize_result(result)


@router.post("/{account_id}/boosts", response_model=ActionResponse)
async def boost_coupon(
    account_id: UUID,
    payload: CouponActionRequest,
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> ActionResponse:
    try:
        result = await engine.boost(account_id, payload.coupon_id)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return _serialize_result(result)


@router.post("/{account_id}/uploads", response_model=ActionResponse)
async def record_upload(
    account_id: UUID,
    payload: CouponActionRequest,
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> ActionResponse:
    try:
        result = await engine.record_upload(account_id, payload.coupon_id)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return _serialize_result(result)


@router.post("/{account_id}/daily-bonus", response_model=ActionResponse)
async def claim_daily_bonus(
    account_id: UUID,
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> ActionResponse:
    try:
        result = await engine.claim_daily_bonus(account_id)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return _serialize_result(result)


@router.post("/{account_id}/refunds", response_model=ActionResponse)
async def refund_claim(
    account_id: UUID,
    payload: CouponActionRequest,
    engine: EntitlementEngine = Depends(get_entitlement_engine),
) -> ActionResponse:
    """Compensating credit when the claim could not be completed downstream."""

    try:
        result = await engine.refund_claim(account_id, payload.coupon_id)
    except EntitlementError as exc:
        raise entitlement_http_error(exc) from exc
    return _serialize_result(result)
