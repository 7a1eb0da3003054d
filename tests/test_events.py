import pytest

from plansync.billing import EventKind, MalformedPayload, parse_envelope, parse_payload
from plansync.billing.events import (
    CheckoutCompleted,
    InvoiceFailed,
    InvoicePaid,
    SubscriptionChanged,
    SubscriptionDeleted,
)

from conftest import checkout_event, subscription_event, invoice_event, make_event


@pytest.mark.parametrize("raw, reason", [
    ([], "not a JSON object"),
    ({"type": "invoice.paid", "created": 1, "data": {"object": {}}}, "id"),
    ({"id": "evt_1", "created": 1, "data": {"object": {}}}, "type"),
    ({"id": "evt_1", "type": "invoice.paid", "data": {"object": {}}}, "created"),
    ({"id": "evt_1", "type": "invoice.paid", "created": True, "data": {"object": {}}}, "created"),
    ({"id": "evt_1", "type": "invoice.paid", "created": 1, "data": {}}, "data.object"),
])
def test_envelope_validation(raw, reason):
    with pytest.raises(MalformedPayload) as exc:
        parse_envelope(raw)
    assert reason in exc.value.message


def test_envelope_fields():
    event = parse_envelope(make_event("evt_1", "invoice.paid", {"customer": "cus_1"}, created=1700000000))
    assert event.id == "evt_1"
    assert event.created == 1700000000
    assert event.livemode is False
    assert event.kind is EventKind.INVOICE_PAID


def test_unknown_type_has_no_kind():
    event = parse_envelope(make_event("evt_1", "charge.refunded", {}))
    assert event.kind is None
    with pytest.raises(ValueError):
        parse_payload(event)


def test_checkout_payload():
    payload = parse_payload(parse_envelope(checkout_event("evt_1", user_id=" u1 ", amount=999)))
    assert isinstance(payload, CheckoutCompleted)
    assert payload.user_id == "u1"
    assert payload.session_id == "cs_1"
    assert payload.amount_total == 999
    assert payload.is_paid


def test_checkout_zero_amount_is_not_a_payment():
    payload = parse_payload(parse_envelope(checkout_event("evt_1", amount=0)))
    assert not payload.is_paid


def test_expanded_references_collapse_to_ids():
    raw = invoice_event("evt_1")
    raw["data"]["object"]["customer"] = {"id": "cus_9", "object": "customer", "email": "x@example.com"}
    payload = parse_payload(parse_envelope(raw))
    assert isinstance(payload, InvoicePaid)
    assert payload.customer_id == "cus_9"
    assert payload.amount_paid == 1500


def test_invoice_failed_payload():
    payload = parse_payload(parse_envelope(invoice_event("evt_1", paid=False, amount=700)))
    assert isinstance(payload, InvoiceFailed)
    assert payload.amount_due == 700
    assert payload.attempt_count == 1


def test_subscription_payloads():
    updated = parse_payload(parse_envelope(subscription_event("evt_1", "past_due")))
    assert updated == SubscriptionChanged(subscription_id="sub_1", status="past_due", customer_id="cus_1")
    deleted = parse_payload(parse_envelope(subscription_event("evt_2", "canceled", deleted=True)))
    assert deleted == SubscriptionDeleted(subscription_id="sub_1", customer_id="cus_1")


@pytest.mark.parametrize("ev_type, obj", [
    ("customer.subscription.updated", {"id": "sub_1"}),
    ("customer.subscription.deleted", {"status": "canceled"}),
    ("invoice.paid", {"id": "in_1"}),
    ("invoice.payment_failed", {"id": "in_1", "customer": None}),
])
def test_required_payload_fields(ev_type, obj):
    with pytest.raises(MalformedPayload) as exc:
        parse_payload(parse_envelope(make_event("evt_1", ev_type, obj)))
    assert exc.value.context["event_id"] == "evt_1"
    assert exc.value.context["event_type"] == ev_type
