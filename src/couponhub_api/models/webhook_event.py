from enum import Enum
from uuid import uuid4

from sqlalchemy import BigInteger, Column, DateTime, Enum as SqlEnum, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from couponhub_api.db.base import Base
from couponhub_api.core.clock import utcnow


class WebhookProviderEnum(str, Enum):
    STRIPE = "stripe"


class WebhookOutcomeEnum(str, Enum):
    APPLIED = "applied"
    STALE = "stale"
    IGNORED = "ignored"
    REJECTED = "rejected"
    UNRESOLVED = "unresolved"


class WebhookEvent(Base):
    """Bounded-retention idempotency index of processed provider deliveries."""

    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    provider = Column(SqlEnum(WebhookProviderEnum, name="webhook_provider_enum"), nullable=False)
    external_id = Column(String(128), nullable=False)
    event_type = Column(String(128), nullable=True)
    account_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    sequence = Column(BigInteger, nullable=True)
    outcome = Column(SqlEnum(WebhookOutcomeEnum, name="webhook_outcome_enum"), nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_webhook_events_provider_external"),
    )
