from datetime import datetime, timedelta, timezone

import pytest

from couponhub_api.models import EntitlementStateEnum
from couponhub_api.services.entitlements import (
    ALLOWED_TRANSITIONS,
    ProviderEvent,
    can_transition,
    effective_entitlement,
    translate,
)

State = EntitlementStateEnum


@pytest.mark.parametrize(
    "current,target",
    [
        (State.FREE, State.TRIALING),
        (State.FREE, State.ACTIVE),
        (State.TRIALING, State.ACTIVE),
        (State.ACTIVE, State.PAST_DUE),
        (State.PAST_DUE, State.ACTIVE),
        (State.ACTIVE, State.CANCELING),
        (State.CANCELING, State.ACTIVE),
        (State.CANCELING, State.CANCELED),
        (State.CANCELED, State.ACTIVE),
        (State.CANCELED, State.FREE),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    "current,target",
    [
        (State.FREE, State.PAST_DUE),
        (State.FREE, State.CANCELED),
        (State.FREE, State.CANCELING),
        (State.ACTIVE, State.TRIALING),
        (State.ACTIVE, State.FREE),
        (State.CANCELED, State.PAST_DUE),
    ],
)
def test_disallowed_transitions(current, target):
    assert not can_transition(current, target)


def test_every_state_has_an_entry():
    assert set(ALLOWED_TRANSITIONS) == set(State)


def test_lapsed_cancellation_reads_as_free():
    period_end = datetime(2026, 11, 1, tzinfo=timezone.utc)
    before = period_end - timedelta(seconds=1)

    assert effective_entitlement(State.CANCELING, period_end, now=before) == State.CANCELING
    assert effective_entitlement(State.CANCELING, period_end, now=period_end) == State.FREE
    assert effective_entitlement(State.CANCELED, period_end, now=period_end + timedelta(days=3)) == State.FREE
    # Active subscriptions are never degraded by the clock alone.
    assert effective_entitlement(State.ACTIVE, period_end, now=period_end + timedelta(days=3)) == State.ACTIVE


def test_naive_period_end_is_treated_as_utc():
    period_end = datetime(2026, 11, 1)
    assert effective_entitlement(State.CANCELING, period_end, now=datetime(2026, 11, 2, tzinfo=timezone.utc)) == State.FREE


def _event(event_type, data_object, created=1_700_000_000):
    return ProviderEvent.from_payload(
        {"id": "evt_1", "type": event_type, "created": created, "data": {"object": data_object}}
    )


def test_subscription_status_translation():
    active = _event("customer.subscription.updated", {"object": "subscription", "id": "sub_1", "status": "active"})
    assert translate(active).target == State.ACTIVE

    canceling = _event(
        "customer.subscription.updated",
        {"object": "subscription", "id": "sub_1", "status": "active", "cancel_at_period_end": True},
    )
    assert translate(canceling).target == State.CANCELING

    unpaid = _event("customer.subscription.updated", {"object": "subscription", "id": "sub_1", "status": "unpaid"})
    assert translate(unpaid).target == State.PAST_DUE

    incomplete = _event(
        "customer.subscription.created", {"object": "subscription", "id": "sub_1", "status": "incomplete"}
    )
    transition = translate(incomplete)
    assert transition.target is None
    assert not transition.link_only


def test_deleted_and_invoice_translation():
    deleted = _event("customer.subscription.deleted", {"object": "subscription", "id": "sub_1", "status": "canceled"})
    assert translate(deleted).target == State.CANCELED

    paid = _event("invoice.paid", {"object": "invoice", "subscription": "sub_1"})
    assert translate(paid).target == State.ACTIVE

    failed = _event("invoice.payment_failed", {"object": "invoice", "subscription": "sub_1"})
    assert translate(failed).target == State.PAST_DUE

    one_off = _event("invoice.paid", {"object": "invoice"})
    assert translate(one_off) is None


def test_checkout_completion_only_links_subscription_mode():
    subscription_checkout = _event(
        "checkout.session.completed",
        {"object": "checkout.session", "mode": "subscription", "customer": "cus_1", "subscription": "sub_1"},
    )
    transition = translate(subscription_checkout)
    assert transition.link_only
    assert transition.target is None

    payment_checkout = _event("checkout.session.completed", {"object": "checkout.session", "mode": "payment"})
    assert translate(payment_checkout) is None


def test_unmapped_event_type():
    assert translate(_event("customer.updated", {"object": "customer", "id": "cus_1"})) is None


def test_provider_event_reads_periods_and_refs():
    event = _event(
        "invoice.paid",
        {
            "object": "invoice",
            "customer": {"id": "cus_9"},
            "parent": {"subscription_details": {"subscription": "sub_9", "metadata": {}}},
            "lines": {"data": [{"period": {"start": 1_700_000_000, "end": 1_702_592_000}}]},
        },
        created=1_700_000_123,
    )
    assert event.customer_ref == "cus_9"
    assert event.subscription_ref == "sub_9"
    assert event.sequence == 1_700_000_123
    assert event.period_end == datetime.fromtimestamp(1_702_592_000, tz=timezone.utc)


def test_provider_event_requires_id_and_type():
    with pytest.raises(ValueError):
        ProviderEvent.from_payload({"type": "invoice.paid", "data": {"object": {}}})
