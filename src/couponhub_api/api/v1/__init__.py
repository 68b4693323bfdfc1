from fastapi import APIRouter

from .endpoints import accounts, billing_webhooks, coupon_actions, observability

router = APIRouter()
router.include_router(accounts.router)
router.include_router(coupon_actions.router)
router.include_router(billing_webhooks.router)
router.include_router(observability.router)
