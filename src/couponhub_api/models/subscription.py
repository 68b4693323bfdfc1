"""Subscription history mirrored from the billing provider."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, Index, String, func, text
from sqlalchemy.dialects.postgresql import UUID

from couponhub_api.db.base import Base
from couponhub_api.models.account import EntitlementStateEnum


class SubscriptionRecord(Base):
    """One row per subscription state; the row with ``is_current`` set is authoritative.

    Rows are superseded on every state change and never deleted. At most one
    row per account is current, enforced by a partial unique index.
    """

    __tablename__ = "subscription_records"
    __table_args__ = (
        Index(
            "uq_subscription_records_current_account",
            "account_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    external_customer_ref = Column(String(128), nullable=True, index=True)
    external_subscription_ref = Column(String(128), nullable=True, index=True)
    state = Column(
        SqlEnum(EntitlementStateEnum, name="entitlement_state_enum"),
        nullable=False,
    )
    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False, server_default="false")
    last_applied_event_id = Column(String(128), nullable=True)
    last_applied_sequence = Column(BigInteger, nullable=True)
    is_current = Column(Boolean, nullable=False, default=True, server_default="true", index=True)
    superseded_by_id = Column(UUID(as_uuid=True), nullable=True)
    superseded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
