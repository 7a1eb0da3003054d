"""
Typed view of Stripe webhook envelopes.

Stripe sends one envelope shape ``{id, type, created, data: {object: {...}}}``
whose ``data.object`` differs per event type. ``parse_envelope`` validates the
envelope, ``parse_payload`` turns ``data.object`` into one frozen dataclass per
kind so handlers never probe raw dicts for field presence.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from .errors import MalformedPayload


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout-completed"
    SUBSCRIPTION_UPDATED = "subscription-updated"
    SUBSCRIPTION_DELETED = "subscription-deleted"
    INVOICE_PAID = "invoice-paid"
    INVOICE_FAILED = "invoice-failed"


# Stripe type string -> kind. Anything else is an unknown kind (acknowledged no-op).
STRIPE_EVENT_KINDS: Dict[str, EventKind] = {
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_DELETED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
    "invoice.payment_failed": EventKind.INVOICE_FAILED,
}

# Metadata keys the checkout flow may use to carry our user id
USER_CORRELATION_KEYS = ("userId", "user_id")


@dataclass(frozen=True)
class PaymentEvent:
    id: str
    type: str
    created: int
    data_object: Dict[str, Any] = field(default_factory=dict)
    livemode: Optional[bool] = None

    @property
    def kind(self) -> Optional[EventKind]:
        return STRIPE_EVENT_KINDS.get(self.type)


@dataclass(frozen=True)
class CheckoutCompleted:
    session_id: Optional[str]
    user_id: Optional[str]
    customer_id: Optional[str]
    subscription_id: Optional[str]
    amount_total: Optional[int]
    currency: str
    payment_status: Optional[str]
    payment_intent_id: Optional[str] = None
    mode: Optional[str] = None
    customer_email: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid" and bool(self.amount_total)


@dataclass(frozen=True)
class SubscriptionChanged:
    subscription_id: str
    status: str
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionDeleted:
    subscription_id: str
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaid:
    customer_id: str
    invoice_id: Optional[str]
    subscription_id: Optional[str]
    amount_paid: Optional[int]
    currency: Optional[str]
    payment_intent_id: Optional[str] = None
    number: Optional[str] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None


@dataclass(frozen=True)
class InvoiceFailed:
    customer_id: str
    invoice_id: Optional[str]
    subscription_id: Optional[str]
    amount_due: Optional[int]
    currency: Optional[str]
    attempt_count: Optional[int] = None
    next_payment_attempt: Optional[int] = None
    number: Optional[str] = None


EventPayload = Union[CheckoutCompleted, SubscriptionChanged, SubscriptionDeleted, InvoicePaid, InvoiceFailed]


def _ref(value) -> Optional[str]:
    """Stripe fields like ``customer`` are an id or, when expanded, an object."""
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def _int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_envelope(raw: Any) -> PaymentEvent:
    """Validate the outer envelope. Raises MalformedPayload."""
    if not isinstance(raw, dict):
        raise MalformedPayload("event body is not a JSON object")

    ev_id = raw.get("id")
    ev_type = raw.get("type")
    created = raw.get("created")
    data = raw.get("data")

    if not ev_id or not isinstance(ev_id, str):
        raise MalformedPayload("event id missing")
    if not ev_type or not isinstance(ev_type, str):
        raise MalformedPayload("event type missing", event_id=ev_id)
    if isinstance(created, bool) or not isinstance(created, (int, float)):
        raise MalformedPayload("event created timestamp missing", event_id=ev_id, event_type=ev_type)
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedPayload("event data.object missing", event_id=ev_id, event_type=ev_type)

    livemode = raw.get("livemode")
    return PaymentEvent(
        id=ev_id,
        type=ev_type,
        created=int(created),
        data_object=data["object"],
        livemode=livemode if isinstance(livemode, bool) else None,
    )


def parse_checkout_session(obj: Dict[str, Any]) -> CheckoutCompleted:
    """Shape a Checkout Session object (webhook payload or API retrieve)."""
    meta = obj.get("metadata") or {}
    user_id = None
    for key in USER_CORRELATION_KEYS:
        if meta.get(key):
            user_id = str(meta[key]).strip() or None
            break
    details = obj.get("customer_details") or {}
    return CheckoutCompleted(
        session_id=_ref(obj.get("id")),
        user_id=user_id,
        customer_id=_ref(obj.get("customer")),
        subscription_id=_ref(obj.get("subscription")),
        amount_total=_int(obj.get("amount_total")),
        currency=(obj.get("currency") or "usd").lower(),
        payment_status=obj.get("payment_status"),
        payment_intent_id=_ref(obj.get("payment_intent")),
        mode=obj.get("mode"),
        customer_email=details.get("email"),
    )


def _subscription_changed(obj: Dict[str, Any]) -> SubscriptionChanged:
    sub_id = _ref(obj.get("id"))
    status = obj.get("status")
    if not sub_id or not status:
        raise MalformedPayload("subscription id or status missing")
    return SubscriptionChanged(subscription_id=sub_id, status=str(status), customer_id=_ref(obj.get("customer")))


def _subscription_deleted(obj: Dict[str, Any]) -> SubscriptionDeleted:
    sub_id = _ref(obj.get("id"))
    if not sub_id:
        raise MalformedPayload("subscription id missing")
    return SubscriptionDeleted(subscription_id=sub_id, customer_id=_ref(obj.get("customer")))


def _invoice_paid(obj: Dict[str, Any]) -> InvoicePaid:
    customer_id = _ref(obj.get("customer"))
    if not customer_id:
        raise MalformedPayload("invoice customer missing")
    return InvoicePaid(
        customer_id=customer_id,
        invoice_id=_ref(obj.get("id")),
        subscription_id=_ref(obj.get("subscription")),
        amount_paid=_int(obj.get("amount_paid")),
        currency=(obj.get("currency") or None),
        payment_intent_id=_ref(obj.get("payment_intent")),
        number=obj.get("number"),
        period_start=_int(obj.get("period_start")),
        period_end=_int(obj.get("period_end")),
    )


def _invoice_failed(obj: Dict[str, Any]) -> InvoiceFailed:
    customer_id = _ref(obj.get("customer"))
    if not customer_id:
        raise MalformedPayload("invoice customer missing")
    return InvoiceFailed(
        customer_id=customer_id,
        invoice_id=_ref(obj.get("id")),
        subscription_id=_ref(obj.get("subscription")),
        amount_due=_int(obj.get("amount_due")),
        currency=(obj.get("currency") or None),
        attempt_count=_int(obj.get("attempt_count")),
        next_payment_attempt=_int(obj.get("next_payment_attempt")),
        number=obj.get("number"),
    )


_PARSERS = {
    EventKind.CHECKOUT_COMPLETED: parse_checkout_session,
    EventKind.SUBSCRIPTION_UPDATED: _subscription_changed,
    EventKind.SUBSCRIPTION_DELETED: _subscription_deleted,
    EventKind.INVOICE_PAID: _invoice_paid,
    EventKind.INVOICE_FAILED: _invoice_failed,
}


def parse_payload(event: PaymentEvent) -> EventPayload:
    """Shape ``data.object`` for a known kind. Raises MalformedPayload."""
    kind = event.kind
    if kind is None:
        raise ValueError(f"no payload shape for event type {event.type!r}")
    try:
        return _PARSERS[kind](event.data_object)
    except MalformedPayload as exc:
        exc.context.update(event_id=event.id, event_type=event.type)
        raise
