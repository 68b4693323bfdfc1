"""Translation of Stripe subscription events into entitlement transitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping
from uuid import UUID

from couponhub_api.core.clock import from_epoch
from couponhub_api.models.account import EntitlementStateEnum


@dataclass(frozen=True, slots=True)
class ProviderEvent:
    """The parts of a verified provider event the synchronizer cares about."""

    event_id: str
    event_type: str
    sequence: int | None
    data_object: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProviderEvent":
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise ValueError("provider event is missing id or type")
        data = payload.get("data") or {}
        data_object = data.get("object") or {}
        created = payload.get("created")
        return cls(
            event_id=str(event_id),
            event_type=str(event_type),
            sequence=int(created) if created is not None else None,
            data_object=data_object,
        )

    @property
    def object_type(self) -> str | None:
        return self.data_object.get("object")

    @property
    def account_hint(self) -> UUID | None:
        """Account id stamped on the checkout session or subscription metadata."""

        candidates = [
            (self.data_object.get("metadata") or {}).get("account_id"),
            self.data_object.get("client_reference_id"),
            ((self.data_object.get("subscription_details") or {}).get("metadata") or {}).get("account_id"),
        ]
        for candidate in candidates:
            if not candidate:
                continue
            try:
                return UUID(str(candidate))
            except ValueError:
                continue
        return None

    @property
    def customer_ref(self) -> str | None:
        return _ref(self.data_object.get("customer"))

    @property
    def subscription_ref(self) -> str | None:
        if self.object_type == "subscription":
            return _ref(self.data_object.get("id"))
        ref = _ref(self.data_object.get("subscription"))
        if ref is None:
            parent = (self.data_object.get("parent") or {}).get("subscription_details") or {}
            ref = _ref(parent.get("subscription"))
        return ref

    @property
    def period_start(self) -> datetime | None:
        if self.object_type == "invoice":
            return from_epoch(self._invoice_period().get("start"))
        return from_epoch(self._subscription_field("current_period_start"))

    @property
    def period_end(self) -> datetime | None:
        if self.object_type == "invoice":
            return from_epoch(self._invoice_period().get("end"))
        return from_epoch(self._subscription_field("current_period_end"))

    @property
    def cancel_at_period_end(self) -> bool:
        return bool(self.data_object.get("cancel_at_period_end"))

    def _subscription_field(self, name: str) -> Any:
        value = self.data_object.get(name)
        if value is not None:
            return value
        # Newer API versions carry billing periods on the subscription items.
        items = (self.data_object.get("items") or {}).get("data") or []
        return items[0].get(name) if items else None

    def _invoice_period(self) -> Mapping[str, Any]:
        lines = (self.data_object.get("lines") or {}).get("data") or []
        if not lines:
            return {}
        return lines[0].get("period") or {}


def _ref(value: Any) -> str | None:
    # Expanded objects arrive as dicts carrying their own id.
    if isinstance(value, Mapping):
        value = value.get("id")
    return str(value) if value else None


@dataclass(frozen=True, slots=True)
class ProviderTransition:
    """What an event asks of the synchronizer.

    ``target`` is the requested state; ``None`` means the event only links
    provider references (``link_only``) or carries no state at all.
    """

    target: EntitlementStateEnum | None
    link_only: bool = False
    note: str | None = None


_STATUS_TO_STATE: dict[str, EntitlementStateEnum] = {
    "trialing": EntitlementStateEnum.TRIALING,
    "active": EntitlementStateEnum.ACTIVE,
    "past_due": EntitlementStateEnum.PAST_DUE,
    "unpaid": EntitlementStateEnum.PAST_DUE,
    "canceled": EntitlementStateEnum.CANCELED,
    "incomplete_expired": EntitlementStateEnum.CANCELED,
}


def _checkout_completed(event: ProviderEvent) -> ProviderTransition | None:
    if event.data_object.get("mode") != "subscription":
        return None
    return ProviderTransition(target=None, link_only=True)


def _subscription_status(event: ProviderEvent) -> ProviderTransition:
    status = str(event.data_object.get("status") or "")
    target = _STATUS_TO_STATE.get(status)
    if target is None:
        # incomplete / paused: nothing the quota gate should act on yet.
        return ProviderTransition(target=None, note=f"status {status or 'missing'} carries no entitlement")
    if target in {EntitlementStateEnum.ACTIVE, EntitlementStateEnum.TRIALING} and event.cancel_at_period_end:
        target = EntitlementStateEnum.CANCELING
    return ProviderTransition(target=target)


def _subscription_deleted(event: ProviderEvent) -> ProviderTransition:
    return ProviderTransition(target=EntitlementStateEnum.CANCELED)


def _invoice_paid(event: ProviderEvent) -> ProviderTransition | None:
    if event.subscription_ref is None:
        return None
    return ProviderTransition(target=EntitlementStateEnum.ACTIVE)


def _invoice_failed(event: ProviderEvent) -> ProviderTransition | None:
    if event.subscription_ref is None:
        return None
    return ProviderTransition(target=EntitlementStateEnum.PAST_DUE)


def _trial_will_end(event: ProviderEvent) -> ProviderTransition:
    return ProviderTransition(target=None, note="trial ends soon")


EVENT_TABLE: dict[str, Callable[[ProviderEvent], ProviderTransition | None]] = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.created": _subscription_status,
    "customer.subscription.updated": _subscription_status,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.paid": _invoice_paid,
    "invoice.payment_succeeded": _invoice_paid,
    "invoice.payment_failed": _invoice_failed,
    "customer.subscription.trial_will_end": _trial_will_end,
}


def translate(event: ProviderEvent) -> ProviderTransition | None:
    """Map a provider event onto a transition; ``None`` for unmapped events."""

    handler = EVENT_TABLE.get(event.event_type)
    if handler is None:
        return None
    return handler(event)


__all__ = ["EVENT_TABLE", "ProviderEvent", "ProviderTransition", "translate"]
