"""Append-only points ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from couponhub_api.db.base import Base


class LedgerReasonEnum(str, Enum):
    """Why a balance changed."""

    STARTING_BALANCE = "starting_balance"
    UPLOAD_REWARD = "upload_reward"
    CLAIM_COST = "claim_cost"
    BOOST_COST = "boost_cost"
    DAILY_BONUS = "daily_bonus"
    ACHIEVEMENT_REWARD = "achievement_reward"
    CLAIM_REFUND = "claim_refund"


class LedgerEntry(Base):
    """Immutable record of one balance change."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("account_id", "sequence", name="uq_ledger_entries_account_sequence"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    reason = Column(SqlEnum(LedgerReasonEnum, name="ledger_reason_enum"), nullable=False)
    resulting_balance = Column(Integer, nullable=False)
    reference_id = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
