"""Stripe webhook verification."""

from __future__ import annotations

import stripe

from couponhub_api.core.logging import security_logger
from couponhub_api.core.settings import Settings, get_settings
from couponhub_api.services.entitlements.errors import InvalidWebhookSignatureError


class StripeService:
    """Thin wrapper over the Stripe SDK for the billing webhook."""

    def __init__(self, config: Settings | None = None) -> None:
        config = config or get_settings()
        if config.stripe_secret_key:
            stripe.api_key = config.stripe_secret_key
        self.webhook_secret = config.stripe_webhook_secret
        self.tolerance_seconds = config.stripe_webhook_tolerance_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_secret)

    def construct_webhook_event(self, payload: str, signature: str | None) -> stripe.Event:
        """Verify ``signature`` over the raw payload and return the event.

        Raises:
            InvalidWebhookSignatureError: missing header, bad signature, stale
                timestamp or a body that is not a Stripe event.
        """

        if not signature:
            security_logger.warning("Rejected billing webhook without signature header")
            raise InvalidWebhookSignatureError("Missing Stripe signature header")

        try:
            event = stripe.Webhook.construct_event(
                payload,
                signature,
                self.webhook_secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            security_logger.warning("Rejected billing webhook with invalid signature", error=str(exc))
            raise InvalidWebhookSignatureError("Invalid Stripe signature") from exc
        except ValueError as exc:
            security_logger.warning("Rejected billing webhook with malformed body", error=str(exc))
            raise InvalidWebhookSignatureError("Invalid payload body") from exc

        return event


__all__ = ["StripeService"]
