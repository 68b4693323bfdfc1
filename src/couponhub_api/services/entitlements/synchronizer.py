"""Idempotent, order-tolerant application of billing provider events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from couponhub_api.core.clock import utcnow
from couponhub_api.core.logging import audit_logger
from couponhub_api.models import (
    Account,
    EntitlementStateEnum,
    SubscriptionRecord,
    WebhookEvent,
    WebhookOutcomeEnum,
    WebhookProviderEnum,
)
from couponhub_api.observability.entitlements import get_entitlement_store
from couponhub_api.observability.tracing import get_tracer

from .errors import TransientStoreError, UnknownAccountError
from .provider_events import ProviderEvent, translate
from .serialization import AccountLockRegistry, account_critical_section
from .subscriptions import can_transition


@dataclass(slots=True)
class SyncResult:
    event_id: str
    event_type: str
    outcome: WebhookOutcomeEnum
    duplicate: bool = False
    account_id: UUID | None = None
    previous_state: EntitlementStateEnum | None = None
    state: EntitlementStateEnum | None = None

    @property
    def applied(self) -> bool:
        return not self.duplicate and self.outcome == WebhookOutcomeEnum.APPLIED


class SubscriptionSynchronizer:
    """Converges local entitlement onto the billing provider's subscription state.

    ``ingest`` is the webhook entry point: it filters duplicate deliveries
    through the ``webhook_events`` index, resolves the account and then runs
    ``apply`` plus the index insert inside the account's critical section.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        locks: AccountLockRegistry | None = None,
        provider: WebhookProviderEnum = WebhookProviderEnum.STRIPE,
    ) -> None:
        self._db = session
        self._locks = locks
        self._provider = provider

    async def ingest(self, payload: Mapping[str, Any]) -> SyncResult:
        event = ProviderEvent.from_payload(payload)
        with get_tracer().start_as_current_span("entitlements.webhook") as span:
            span.set_attribute("webhook.event_id", event.event_id)
            span.set_attribute("webhook.event_type", event.event_type)
            result = await self._ingest(event)
            span.set_attribute("webhook.outcome", "duplicate" if result.duplicate else result.outcome.value)

        get_entitlement_store().record_webhook(
            event.event_type, "duplicate" if result.duplicate else result.outcome.value
        )
        return result

    async def _ingest(self, event: ProviderEvent) -> SyncResult:
        try:
            seen = await self._find_event(event.event_id)
            if seen is not None:
                duplicate = self._duplicate(event, seen)
                await self._db.rollback()
                return duplicate
            account_id = await self.resolve_account(event)
            # End the read-only transaction before queueing on the account lock.
            await self._db.rollback()
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise TransientStoreError("webhook lookup failed") from exc

        if account_id is None:
            logger.warning(
                "Dropping provider event for unknown account",
                event_id=event.event_id,
                event_type=event.event_type,
                customer_ref=event.customer_ref,
                subscription_ref=event.subscription_ref,
            )
            return await self._record_unresolved(event)

        async with account_critical_section(
            self._db, account_id, locks=self._locks, operation="subscription_sync"
        ):
            seen = await self._find_event(event.event_id)
            if seen is not None:
                return self._duplicate(event, seen)

            result = await self.apply(event, account_id=account_id)
            self._db.add(
                WebhookEvent(
                    provider=self._provider,
                    external_id=event.event_id,
                    event_type=event.event_type,
                    account_id=account_id,
                    sequence=event.sequence,
                    outcome=result.outcome,
                )
            )
            await self._db.flush()
        return result

    async def apply(self, event: ProviderEvent, *, account_id: UUID) -> SyncResult:
        """Apply one event to the account's current subscription record.

        Runs inside the caller's transaction and performs no idempotency
        check of its own.
        """

        # Row lock orders concurrent appliers across processes; SQLite ignores it.
        account_state = await self._db.scalar(
            select(Account.entitlement).where(Account.id == account_id).with_for_update()
        )
        if account_state is None:
            raise UnknownAccountError(account_id)

        record = await self.current_record(account_id)
        current = record.state if record is not None else account_state
        result = SyncResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=WebhookOutcomeEnum.IGNORED,
            account_id=account_id,
            previous_state=current,
            state=current,
        )

        transition = translate(event)
        if transition is None:
            logger.info("Ignoring unmapped provider event", event_id=event.event_id, event_type=event.event_type)
            return result

        if self._is_stale(record, event):
            logger.info(
                "Provider event older than last applied; keeping current state",
                event_id=event.event_id,
                event_type=event.event_type,
                sequence=event.sequence,
                last_applied_sequence=record.last_applied_sequence if record else None,
            )
            result.outcome = WebhookOutcomeEnum.STALE
            return result

        if transition.link_only:
            record = await self._refresh(record, account_id, event, state=current)
            result.outcome = WebhookOutcomeEnum.APPLIED
            return result

        target = transition.target
        if target is None:
            logger.info(
                "Provider event carries no entitlement change",
                event_id=event.event_id,
                event_type=event.event_type,
                note=transition.note,
            )
            return result

        if target == current:
            record = await self._refresh(record, account_id, event, state=current)
            await self._mirror_onto_account(account_id, record)
            result.outcome = WebhookOutcomeEnum.APPLIED
            return result

        if not can_transition(current, target):
            logger.warning(
                "Rejecting provider event with disallowed transition",
                event_id=event.event_id,
                event_type=event.event_type,
                current_state=current.value,
                requested_state=target.value,
            )
            await self._advance_watermark(record, account_id, event, state=current)
            result.outcome = WebhookOutcomeEnum.REJECTED
            return result

        new_record = await self._supersede(record, account_id, event, target)
        await self._mirror_onto_account(account_id, new_record)
        audit_logger.info(
            "Subscription state changed",
            account_id=str(account_id),
            event_id=event.event_id,
            event_type=event.event_type,
            previous_state=current.value,
            state=target.value,
            period_end=new_record.current_period_end.isoformat() if new_record.current_period_end else None,
        )
        result.outcome = WebhookOutcomeEnum.APPLIED
        result.state = target
        return result

    async def resolve_account(self, event: ProviderEvent) -> UUID | None:
        """Find the account an event belongs to, or ``None`` when it cannot be tied to one."""

        hint = event.account_hint
        if hint is not None:
            found = await self._db.scalar(select(Account.id).where(Account.id == hint))
            if found is not None:
                return found

        for column, ref in (
            (SubscriptionRecord.external_subscription_ref, event.subscription_ref),
            (SubscriptionRecord.external_customer_ref, event.customer_ref),
        ):
            if not ref:
                continue
            found = await self._db.scalar(
                select(SubscriptionRecord.account_id)
                .where(column == ref)
                .order_by(SubscriptionRecord.is_current.desc(), SubscriptionRecord.created_at.desc())
                .limit(1)
            )
            if found is not None:
                return found
        return None

    async def current_record(self, account_id: UUID) -> SubscriptionRecord | None:
        stmt = select(SubscriptionRecord).where(
            SubscriptionRecord.account_id == account_id,
            SubscriptionRecord.is_current.is_(True),
        )
        return (await self._db.execute(stmt)).scalars().first()

    async def history(self, account_id: UUID) -> list[SubscriptionRecord]:
        stmt = (
            select(SubscriptionRecord)
            .where(SubscriptionRecord.account_id == account_id)
            .order_by(SubscriptionRecord.created_at.asc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    @staticmethod
    def _is_stale(record: SubscriptionRecord | None, event: ProviderEvent) -> bool:
        if record is None or record.last_applied_sequence is None or event.sequence is None:
            return False
        return event.sequence < record.last_applied_sequence

    async def _refresh(
        self,
        record: SubscriptionRecord | None,
        account_id: UUID,
        event: ProviderEvent,
        *,
        state: EntitlementStateEnum,
    ) -> SubscriptionRecord:
        """Update refs, period and bookkeeping on the current record without a state change."""

        if record is None:
            record = SubscriptionRecord(id=uuid4(), account_id=account_id, state=state, is_current=True)
            self._db.add(record)

        record.external_customer_ref = event.customer_ref or record.external_customer_ref
        record.external_subscription_ref = event.subscription_ref or record.external_subscription_ref
        record.current_period_start = event.period_start or record.current_period_start
        record.current_period_end = event.period_end or record.current_period_end
        if event.object_type == "subscription":
            record.cancel_at_period_end = event.cancel_at_period_end
        self._stamp(record, event)
        await self._db.flush()
        return record

    async def _supersede(
        self,
        record: SubscriptionRecord | None,
        account_id: UUID,
        event: ProviderEvent,
        target: EntitlementStateEnum,
    ) -> SubscriptionRecord:
        new_record = SubscriptionRecord(
            id=uuid4(),
            account_id=account_id,
            external_customer_ref=event.customer_ref or (record.external_customer_ref if record else None),
            external_subscription_ref=event.subscription_ref or (record.external_subscription_ref if record else None),
            state=target,
            current_period_start=event.period_start or (record.current_period_start if record else None),
            current_period_end=event.period_end or (record.current_period_end if record else None),
            cancel_at_period_end=(
                event.cancel_at_period_end
                if event.object_type == "subscription"
                else bool(record.cancel_at_period_end) if record else False
            ),
            is_current=True,
        )
        self._stamp(new_record, event, previous=record)

        if record is not None:
            retired = await self._db.execute(
                update(SubscriptionRecord)
                .where(SubscriptionRecord.id == record.id, SubscriptionRecord.is_current.is_(True))
                .values(is_current=False, superseded_by_id=new_record.id, superseded_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if retired.rowcount != 1:
                raise TransientStoreError("subscription record was superseded concurrently")
            await self._db.refresh(record)

        self._db.add(new_record)
        await self._db.flush()
        return new_record

    async def _advance_watermark(
        self,
        record: SubscriptionRecord | None,
        account_id: UUID,
        event: ProviderEvent,
        *,
        state: EntitlementStateEnum,
    ) -> None:
        """Remember a rejected event's sequence so older deliveries resolve as stale."""

        if event.sequence is None:
            return
        if record is None:
            record = SubscriptionRecord(
                id=uuid4(),
                account_id=account_id,
                external_customer_ref=event.customer_ref,
                external_subscription_ref=event.subscription_ref,
                state=state,
                is_current=True,
            )
            self._db.add(record)
        if record.last_applied_sequence is None or event.sequence > record.last_applied_sequence:
            record.last_applied_sequence = event.sequence
        await self._db.flush()

    @staticmethod
    def _stamp(
        record: SubscriptionRecord,
        event: ProviderEvent,
        *,
        previous: SubscriptionRecord | None = None,
    ) -> None:
        source = previous or record
        last_sequence = source.last_applied_sequence
        record.last_applied_event_id = event.event_id
        if event.sequence is not None and (last_sequence is None or event.sequence > last_sequence):
            record.last_applied_sequence = event.sequence
        else:
            record.last_applied_sequence = last_sequence

    async def _mirror_onto_account(self, account_id: UUID, record: SubscriptionRecord) -> None:
        await self._db.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(entitlement=record.state, entitlement_period_end=record.current_period_end)
            .execution_options(synchronize_session=False)
        )

    async def _find_event(self, event_id: str) -> WebhookEvent | None:
        stmt = select(WebhookEvent).where(
            WebhookEvent.provider == self._provider,
            WebhookEvent.external_id == event_id,
        )
        return (await self._db.execute(stmt)).scalars().first()

    async def _record_unresolved(self, event: ProviderEvent) -> SyncResult:
        self._db.add(
            WebhookEvent(
                provider=self._provider,
                external_id=event.event_id,
                event_type=event.event_type,
                sequence=event.sequence,
                outcome=WebhookOutcomeEnum.UNRESOLVED,
            )
        )
        try:
            await self._db.commit()
        except IntegrityError:
            await self._db.rollback()
            seen = await self._find_event(event.event_id)
            duplicate = self._duplicate(event, seen) if seen is not None else None
            await self._db.rollback()
            if duplicate is None:
                raise TransientStoreError("webhook index insert failed")
            return duplicate
        except SQLAlchemyError as exc:
            await self._db.rollback()
            raise TransientStoreError("webhook index insert failed") from exc
        return SyncResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=WebhookOutcomeEnum.UNRESOLVED,
        )

    @staticmethod
    def _duplicate(event: ProviderEvent, seen: WebhookEvent) -> SyncResult:
        return SyncResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=seen.outcome,
            duplicate=True,
            account_id=seen.account_id,
        )


__all__ = ["SubscriptionSynchronizer", "SyncResult"]
