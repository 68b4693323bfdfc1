from .stripe_service import StripeService

__all__ = ["StripeService"]
