"""Webhook endpoint for the billing provider."""

from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from couponhub_api.db.session import get_session
from couponhub_api.schemas.entitlements import WebhookAckResponse
from couponhub_api.services.entitlements import (
    InvalidWebhookSignatureError,
    SubscriptionSynchronizer,
    TransientStoreError,
    UnknownAccountError,
)
from couponhub_api.services.payments import StripeService

router = APIRouter(prefix="/webhooks", tags=["billing-webhooks"])


@router.post("/billing", response_model=WebhookAckResponse)
async def billing_webhook(request: Request, db: AsyncSession = Depends(get_session)) -> WebhookAckResponse:
    """Apply a signed Stripe event to the account's entitlement.

    Bad signatures are rejected with 400 and never retried. Anything that
    verified is acknowledged with 200, including event types we do not
    handle; only store failures answer 5xx so the provider redelivers.
    """

    stripe_service = StripeService()
    if not stripe_service.is_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stripe webhook secret not configured",
        )

    payload_bytes = await request.body()
    try:
        payload_text = payload_bytes.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc

    try:
        stripe_service.construct_webhook_event(payload_text, request.headers.get("Stripe-Signature"))
    except InvalidWebhookSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        payload: dict[str, Any] = json.loads(payload_text)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload body")

    synchronizer = SubscriptionSynchronizer(db)
    try:
        result = await synchronizer.ingest(payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UnknownAccountError as exc:
        logger.warning("Dropping provider event; account disappeared", event_id=payload.get("id"), error=str(exc))
        return WebhookAckResponse(status="dropped", event_id=payload.get("id"))
    except TransientStoreError as exc:
        logger.exception("Billing webhook processing failed", event_id=payload.get("id"))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookAckResponse(
        status="duplicate" if result.duplicate else result.outcome.value,
        event_id=result.event_id,
    )
