from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from couponhub_api.models import EntitlementStateEnum, LedgerReasonEnum, RewardKindEnum


class OpenAccountRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_ref: str = Field(..., alias="userRef", min_length=1, max_length=128)


class CouponActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    coupon_id: str = Field(..., alias="couponId", min_length=1, max_length=128)


class EntitlementResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    state: EntitlementStateEnum
    daily_remaining: int = Field(..., alias="dailyRemaining")
    daily_limit: int = Field(..., alias="dailyLimit")
    unlimited: bool
    period_end: datetime | None = Field(None, alias="periodEnd")


class AccountResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    account_id: UUID = Field(..., alias="id")
    user_ref: str = Field(..., alias="userRef")
    points: int
    level: int
    points_earned: int = Field(..., alias="pointsEarned")
    points_spent: int = Field(..., alias="pointsSpent")
    uploads: int
    claims: int
    boosts: int
    badges: list[str] = Field(default_factory=list)
    achievements: list[str] = Field(default_factory=list)
    entitlement: EntitlementResponse
    created_at: datetime | None = Field(None, alias="createdAt")


class LedgerEntryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    sequence: int
    delta: int
    reason: LedgerReasonEnum
    resulting_balance: int = Field(..., alias="resultingBalance")
    reference_id: str | None = Field(None, alias="referenceId")
    created_at: datetime | None = Field(None, alias="createdAt")


class LedgerWindowResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    entries: list[LedgerEntryResponse]
    next_cursor: int | None = Field(None, alias="nextCursor")


class RewardResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    reward_id: str = Field(..., alias="rewardId")
    kind: RewardKindEnum
    bonus_points: int = Field(..., alias="bonusPoints")


class ActionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    account_id: UUID = Field(..., alias="accountId")
    action: str
    delta: int
    balance: int
    level: int
    daily_remaining: int | None = Field(None, alias="dailyRemaining")
    unlimited: bool = False
    rewards: list[RewardResponse] = Field(default_factory=list)


class WebhookAckResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    event_id: str | None = Field(None, alias="eventId")
