"""Account state owned by the entitlement engine."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from couponhub_api.db.base import Base


class EntitlementStateEnum(str, Enum):
    """Subscription-derived entitlement states."""

    FREE = "free"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELING = "canceling"
    CANCELED = "canceled"


ENTITLED_STATES = frozenset({EntitlementStateEnum.ACTIVE, EntitlementStateEnum.TRIALING})


class RewardKindEnum(str, Enum):
    BADGE = "badge"
    ACHIEVEMENT = "achievement"


class Account(Base):
    """Per-user points, quota and entitlement state.

    Rows are only mutated through conditional UPDATE statements issued by the
    entitlement services, never by assigning attributes from request handlers.
    """

    __tablename__ = "accounts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_ref = Column(String(128), nullable=False, unique=True, index=True)

    points = Column(Integer, nullable=False, default=0, server_default="0")
    level = Column(Integer, nullable=False, default=1, server_default="1")
    ledger_sequence = Column(Integer, nullable=False, default=0, server_default="0")
    points_earned = Column(Integer, nullable=False, default=0, server_default="0")
    points_spent = Column(Integer, nullable=False, default=0, server_default="0")

    daily_quota_used = Column(Integer, nullable=False, default=0, server_default="0")
    daily_quota_limit = Column(Integer, nullable=False)
    daily_quota_window_start = Column(Date, nullable=True)
    last_daily_bonus_on = Column(Date, nullable=True)

    uploads_count = Column(Integer, nullable=False, default=0, server_default="0")
    claims_count = Column(Integer, nullable=False, default=0, server_default="0")
    boosts_count = Column(Integer, nullable=False, default=0, server_default="0")

    entitlement = Column(
        SqlEnum(EntitlementStateEnum, name="entitlement_state_enum"),
        nullable=False,
        default=EntitlementStateEnum.FREE,
        server_default=EntitlementStateEnum.FREE.name,
    )
    entitlement_period_end = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    rewards = relationship("AccountReward", back_populates="account", cascade="all, delete-orphan")


class AccountReward(Base):
    """Badge or achievement held by an account; the unique key makes grants set-like."""

    __tablename__ = "account_rewards"
    __table_args__ = (
        UniqueConstraint("account_id", "reward_id", name="uq_account_rewards_account_reward"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    account_id = Column(UUID(as_uuid=True), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    reward_id = Column(String(64), nullable=False)
    kind = Column(SqlEnum(RewardKindEnum, name="reward_kind_enum"), nullable=False)
    stat_name = Column(String(32), nullable=False)
    threshold = Column(Integer, nullable=False)
    bonus_points = Column(Integer, nullable=False, default=0, server_default="0")
    granted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    account = relationship("Account", back_populates="rewards")
