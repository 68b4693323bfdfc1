"""Declarative badge and achievement rules."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Iterable, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from couponhub_api.core.logging import audit_logger
from couponhub_api.models import Account, AccountReward, LedgerReasonEnum, RewardKindEnum

from .errors import UnknownAccountError
from .ledger import PointsLedger


class StatName(str, Enum):
    POINTS = "points"
    UPLOADS = "uploads"
    CLAIMS = "claims"


@dataclass(frozen=True, slots=True)
class AchievementRule:
    stat: StatName
    threshold: int
    reward_id: str
    kind: RewardKindEnum
    bonus_points: int = 0
    title: str = ""


ACHIEVEMENT_RULES: tuple[AchievementRule, ...] = (
    AchievementRule(StatName.POINTS, 100, "first_century", RewardKindEnum.ACHIEVEMENT, title="First Century"),
    AchievementRule(StatName.POINTS, 500, "point_master", RewardKindEnum.ACHIEVEMENT, title="Point Master"),
    AchievementRule(StatName.POINTS, 1000, "point_legend", RewardKindEnum.ACHIEVEMENT, title="Point Legend"),
    AchievementRule(StatName.POINTS, 5000, "point_god", RewardKindEnum.ACHIEVEMENT, title="Point God"),
    AchievementRule(StatName.UPLOADS, 5, "uploader", RewardKindEnum.BADGE, 10, "Uploader"),
    AchievementRule(StatName.UPLOADS, 25, "content_creator", RewardKindEnum.BADGE, 25, "Content Creator"),
    AchievementRule(StatName.UPLOADS, 100, "coupon_master", RewardKindEnum.BADGE, 50, "Coupon Master"),
    AchievementRule(StatName.CLAIMS, 10, "claimer", RewardKindEnum.BADGE, 10, "Claimer"),
    AchievementRule(StatName.CLAIMS, 50, "savings_hunter", RewardKindEnum.BADGE, 25, "Savings Hunter"),
    AchievementRule(StatName.CLAIMS, 100, "deal_finder", RewardKindEnum.BADGE, 50, "Deal Finder"),
)

_STAT_COLUMNS = {
    StatName.POINTS: Account.points,
    StatName.UPLOADS: Account.uploads_count,
    StatName.CLAIMS: Account.claims_count,
}


@dataclass(frozen=True, slots=True)
class StatTrigger:
    """A tracked stat moved from ``previous_value`` to ``new_value``.

    ``previous_value=None`` means the previous value is unknown, in which case
    every threshold at or below ``new_value`` counts as crossed.
    """

    stat: StatName
    new_value: int
    previous_value: int | None = None


@dataclass(frozen=True, slots=True)
class GrantedReward:
    reward_id: str
    kind: RewardKindEnum
    stat: StatName
    threshold: int
    bonus_points: int


def match_rules(
    trigger: StatTrigger,
    held: AbstractSet[str],
    rules: Iterable[AchievementRule] = ACHIEVEMENT_RULES,
) -> list[AchievementRule]:
    """Rules newly crossed by ``trigger`` that are not already held, in table order."""

    matched: list[AchievementRule] = []
    for rule in rules:
        if rule.stat != trigger.stat or rule.reward_id in held:
            continue
        if trigger.new_value < rule.threshold:
            continue
        if trigger.previous_value is not None and trigger.previous_value >= rule.threshold:
            continue
        matched.append(rule)
    return matched


class AchievementEvaluator:
    """Grants rewards for crossed thresholds inside the caller's transaction."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        ledger: PointsLedger | None = None,
        rules: Sequence[AchievementRule] = ACHIEVEMENT_RULES,
    ) -> None:
        self._db = session
        self._ledger = ledger or PointsLedger(session)
        self._rules = tuple(rules)

    async def held_rewards(self, account_id: UUID) -> set[str]:
        result = await self._db.execute(
            select(AccountReward.reward_id).where(AccountReward.account_id == account_id)
        )
        return set(result.scalars().all())

    async def evaluate(self, account_id: UUID, trigger: StatTrigger) -> list[GrantedReward]:
        held = await self.held_rewards(account_id)
        granted: list[GrantedReward] = []
        pending = [trigger]

        while pending:
            current = pending.pop(0)
            for rule in match_rules(current, held, self._rules):
                held.add(rule.reward_id)
                self._db.add(
                    AccountReward(
                        account_id=account_id,
                        reward_id=rule.reward_id,
                        kind=rule.kind,
                        stat_name=rule.stat.value,
                        threshold=rule.threshold,
                        bonus_points=rule.bonus_points,
                    )
                )
                await self._db.flush()
                granted.append(
                    GrantedReward(
                        reward_id=rule.reward_id,
                        kind=rule.kind,
                        stat=rule.stat,
                        threshold=rule.threshold,
                        bonus_points=rule.bonus_points,
                    )
                )
                audit_logger.info(
                    "Reward granted",
                    account_id=str(account_id),
                    reward_id=rule.reward_id,
                    kind=rule.kind.value,
                    bonus_points=rule.bonus_points,
                )

                if rule.bonus_points:
                    balance = await self._ledger.credit(
                        account_id,
                        rule.bonus_points,
                        LedgerReasonEnum.ACHIEVEMENT_REWARD,
                        reference_id=rule.reward_id,
                    )
                    # Bonus points can cross points thresholds in turn.
                    pending.append(
                        StatTrigger(StatName.POINTS, balance, previous_value=balance - rule.bonus_points)
                    )

        return granted

    async def reconcile(self, account_id: UUID) -> list[GrantedReward]:
        """Re-check every tracked stat against the full table."""

        row = (
            await self._db.execute(
                select(*(_STAT_COLUMNS[stat] for stat in StatName)).where(Account.id == account_id)
            )
        ).one_or_none()
        if row is None:
            raise UnknownAccountError(account_id)

        granted: list[GrantedReward] = []
        for stat, value in zip(StatName, row):
            granted.extend(await self.evaluate(account_id, StatTrigger(stat, value)))
        return granted


__all__ = [
    "ACHIEVEMENT_RULES",
    "AchievementEvaluator",
    "AchievementRule",
    "GrantedReward",
    "StatName",
    "StatTrigger",
    "match_rules",
]
