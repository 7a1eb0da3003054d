"""
Plan reconciliation: the state machine behind Stripe subscription events.

Per user, ``(plan, subscription_status)`` transitions:

    checkout completed                      -> (pro, active)
    invoice paid                            -> (pro, active)
    invoice failed                          -> (<unchanged>, past_due)
    subscription updated, active            -> (pro, active)
    subscription updated, canceled|unpaid|past_due -> (free, <status>)
    subscription deleted                    -> (free, canceled)

Every mutating handler runs as one transaction: claim the event id in
``processed_events`` (the unique constraint is the race gate between
concurrent deliveries), lock and update the plan row, append the ledger entry
in a savepoint, commit. A storage failure rolls all of it back, so the dedup
marker never exists without the plan change.

Event ``created`` ordering is not enforced: the last committed write wins.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from plansync.extensions import db
from plansync.models import PLAN_FREE, PLAN_PRO, LEDGER_SUCCEEDED, LEDGER_FAILED
from plansync.observability import log_event

from . import ledger, store
from .errors import DuplicateEvent, MissingUserCorrelation, ReconciliationError, StorageError, UserNotFound
from .events import (
    CheckoutCompleted,
    InvoiceFailed,
    InvoicePaid,
    PaymentEvent,
    SubscriptionChanged,
    SubscriptionDeleted,
)

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_UNPAID = "unpaid"

# Provider statuses that end paid access on subscription updates
DOWNGRADE_STATUSES = frozenset({STATUS_CANCELED, STATUS_UNPAID, STATUS_PAST_DUE})

INVOICE_FAILURE_REASON = "Payment failed - marked as past due"


def _ts(epoch: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(epoch, tz=timezone.utc) if epoch else None


def _iso(epoch: Optional[int]) -> Optional[str]:
    dt = _ts(epoch)
    return dt.isoformat() if dt else None


@contextmanager
def _transaction(event_id: str, event_type: str, user_id: Optional[str] = None):
    """Commit on success; roll back on any failure, DB failures become StorageError."""
    try:
        yield
        db.session.commit()
    except ReconciliationError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageError(
            f"{type(exc).__name__} while reconciling",
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
        ) from exc
    except Exception:
        db.session.rollback()
        raise


def _ensure_new(event: PaymentEvent, user_id: Optional[str]) -> None:
    try:
        seen = store.is_event_processed(event.id)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageError("dedup lookup failed", event_id=event.id, event_type=event.type, user_id=user_id) from exc
    if seen:
        raise DuplicateEvent("event already processed", event_id=event.id, event_type=event.type, user_id=user_id)


def _lookup(finder, ref: str, event: PaymentEvent, ref_name: str) -> str:
    try:
        user_id = finder(ref)
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageError("user lookup failed", event_id=event.id, event_type=event.type, **{ref_name: ref}) from exc
    if not user_id:
        raise UserNotFound(f"no user plan for {ref_name}", event_id=event.id, event_type=event.type, **{ref_name: ref})
    return user_id


def _claim_meta(event: PaymentEvent, extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    meta = {
        "webhook_created": _iso(event.created),
        "processed_via": "webhook",
        "livemode": event.livemode,
    }
    meta.update(extra or {})
    return {k: v for k, v in meta.items() if v is not None}


# ----- checkout.session.completed -----

def apply_checkout_completed(event: PaymentEvent, payload: CheckoutCompleted, meta: Optional[Dict[str, Any]] = None) -> str:
    """Upgrade the correlated user to (pro, active). Returns the user id."""
    user_id = payload.user_id
    if not user_id:
        raise MissingUserCorrelation(
            "checkout session has no user correlation metadata",
            event_id=event.id,
            event_type=event.type,
            session_id=payload.session_id,
        )

    _ensure_new(event, user_id)

    with _transaction(event.id, event.type, user_id):
        store.record_processed_event(
            event.id,
            event.type,
            user_id=user_id,
            amount=payload.amount_total,
            currency=payload.currency,
            session_id=payload.session_id,
            customer_id=payload.customer_id,
            subscription_id=payload.subscription_id,
            metadata=_claim_meta(event, dict(meta or {}, payment_intent=payload.payment_intent_id)),
        )
        store.upsert_user_plan(
            user_id,
            plan=PLAN_PRO,
            status=STATUS_ACTIVE,
            customer_id=payload.customer_id,
            subscription_id=payload.subscription_id,
            ended_at=None,
        )
        if payload.is_paid:
            ledger.append_entry(
                user_id, event.type, event.id,
                amount=payload.amount_total,
                currency=payload.currency,
                status=LEDGER_SUCCEEDED,
                description="Pro plan subscription payment",
                payment_intent_id=payload.payment_intent_id,
                subscription_id=payload.subscription_id,
                stripe_created_at=_ts(event.created),
                metadata={k: v for k, v in {"session_id": payload.session_id, "mode": payload.mode}.items() if v},
            )

    log_event(
        logger, logging.INFO, "plan_upgraded",
        event_id=event.id, event_type=event.type, user_id=user_id,
        session_id=payload.session_id, amount=payload.amount_total,
    )
    return user_id


def upgrade_from_verified_session(session_id: str, user_id: str, payload: CheckoutCompleted, meta: Optional[Dict[str, Any]] = None) -> bool:
    """
    Return-from-checkout path: same upgrade as the webhook, claimed under
    ``session:<id>`` so either path may win. No ledger entry: financial rows
    belong to the webhook. Returns False when the session was already applied.
    """
    claim_id = f"session:{session_id}"
    kind = "checkout.session.verified"
    try:
        if store.is_session_processed(session_id):
            return False
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageError("session lookup failed", session_id=session_id, user_id=user_id) from exc

    try:
        with _transaction(claim_id, kind, user_id):
            store.record_processed_event(
                claim_id,
                kind,
                user_id=user_id,
                amount=payload.amount_total,
                currency=payload.currency,
                session_id=session_id,
                customer_id=payload.customer_id,
                subscription_id=payload.subscription_id,
                metadata=dict(meta or {}, processed_via="session_verification"),
            )
            store.upsert_user_plan(
                user_id,
                plan=PLAN_PRO,
                status=STATUS_ACTIVE,
                customer_id=payload.customer_id,
                subscription_id=payload.subscription_id,
                ended_at=None,
            )
    except DuplicateEvent:
        return False

    log_event(logger, logging.INFO, "plan_upgraded", event_type=kind, user_id=user_id, session_id=session_id)
    return True


# ----- customer.subscription.updated -----

def apply_subscription_updated(event: PaymentEvent, payload: SubscriptionChanged, meta: Optional[Dict[str, Any]] = None) -> str:
    user_id = _lookup(store.find_user_by_subscription_id, payload.subscription_id, event, "subscription_id")
    status = payload.status

    if status in DOWNGRADE_STATUSES:
        plan = PLAN_FREE
    elif status == STATUS_ACTIVE:
        plan = PLAN_PRO
    else:
        # trialing, incomplete, paused, ...: nothing to reconcile on our side
        log_event(
            logger, logging.INFO, "subscription_status_ignored",
            event_id=event.id, event_type=event.type, user_id=user_id,
            subscription_id=payload.subscription_id, status=status,
        )
        return user_id

    _ensure_new(event, user_id)
    with _transaction(event.id, event.type, user_id):
        store.record_processed_event(
            event.id, event.type,
            user_id=user_id,
            customer_id=payload.customer_id,
            subscription_id=payload.subscription_id,
            metadata=_claim_meta(event, dict(meta or {}, status=status)),
        )
        store.upsert_user_plan(user_id, plan=plan, status=status)

    log_event(
        logger, logging.INFO, "plan_downgraded" if plan == PLAN_FREE else "plan_reactivated",
        event_id=event.id, event_type=event.type, user_id=user_id,
        subscription_id=payload.subscription_id, status=status,
    )
    return user_id


# ----- customer.subscription.deleted -----

def apply_subscription_deleted(event: PaymentEvent, payload: SubscriptionDeleted, meta: Optional[Dict[str, Any]] = None) -> str:
    user_id = _lookup(store.find_user_by_subscription_id, payload.subscription_id, event, "subscription_id")

    _ensure_new(event, user_id)
    with _transaction(event.id, event.type, user_id):
        store.record_processed_event(
            event.id, event.type,
            user_id=user_id,
            customer_id=payload.customer_id,
            subscription_id=payload.subscription_id,
            metadata=_claim_meta(event, meta),
        )
        store.upsert_user_plan(
            user_id,
            plan=PLAN_FREE,
            status=STATUS_CANCELED,
            customer_id=None,
            subscription_id=None,
            ended_at=store.utcnow(),
        )

    log_event(
        logger, logging.INFO, "subscription_cancelled",
        event_id=event.id, event_type=event.type, user_id=user_id, subscription_id=payload.subscription_id,
    )
    return user_id


# ----- invoice.paid / invoice.payment_succeeded -----

def apply_invoice_paid(event: PaymentEvent, payload: InvoicePaid, meta: Optional[Dict[str, Any]] = None) -> str:
    user_id = _lookup(store.find_user_by_customer_id, payload.customer_id, event, "customer_id")

    _ensure_new(event, user_id)
    with _transaction(event.id, event.type, user_id):
        store.record_processed_event(
            event.id, event.type,
            user_id=user_id,
            amount=payload.amount_paid,
            currency=payload.currency,
            customer_id=payload.customer_id,
            subscription_id=payload.subscription_id,
            metadata=_claim_meta(event, dict(meta or {}, invoice_id=payload.invoice_id)),
        )
        # A successful recurring charge always means active pro
        store.upsert_user_plan(user_id, plan=PLAN_PRO, status=STATUS_ACTIVE)
        ledger.append_entry(
            user_id, event.type, event.id,
            amount=payload.amount_paid,
            currency=payload.currency,
            status=LEDGER_SUCCEEDED,
            description="Recurring subscription payment",
            invoice_id=payload.invoice_id,
            payment_intent_id=payload.payment_intent_id,
            subscription_id=payload.subscription_id,
            stripe_created_at=_ts(event.created),
            metadata={k: v for k, v in {
                "invoice_number": payload.number,
                "period_start": _iso(payload.period_start),
                "period_end": _iso(payload.period_end),
            }.items() if v},
        )

    log_event(
        logger, logging.INFO, "invoice_paid",
        event_id=event.id, event_type=event.type, user_id=user_id,
        invoice_id=payload.invoice_id, amount=payload.amount_paid,
    )
    return user_id


# ----- invoice.payment_failed -----

def apply_invoice_failed(event: PaymentEvent, payload: InvoiceFailed, meta: Optional[Dict[str, Any]] = None) -> str:
    """Grace period: status goes past_due, plan stays as is until Stripe gives up."""
    user_id = _lookup(store.find_user_by_customer_id, payload.customer_id, event, "customer_id")

    _ensure_new(event, user_id)
    with _transaction(event.id, event.type, user_id):
        store.record_processed_event(
            event.id, event.type,
            user_id=user_id,
            amount=payload.amount_due,
            currency=payload.currency,
            customer_id=payload.customer_id,
            subscription_id=payload.subscription_id,
            metadata=_claim_meta(event, dict(meta or {}, invoice_id=payload.invoice_id)),
        )
        store.upsert_user_plan(user_id, status=STATUS_PAST_DUE)
        ledger.append_entry(
            user_id, event.type, event.id,
            amount=payload.amount_due,
            currency=payload.currency,
            status=LEDGER_FAILED,
            reason=INVOICE_FAILURE_REASON,
            description="Failed subscription payment",
            invoice_id=payload.invoice_id,
            subscription_id=payload.subscription_id,
            stripe_created_at=_ts(event.created),
            metadata={k: v for k, v in {
                "invoice_number": payload.number,
                "attempt_count": payload.attempt_count,
                "next_payment_attempt": _iso(payload.next_payment_attempt),
            }.items() if v is not None},
        )

    log_event(
        logger, logging.WARNING, "invoice_payment_failed",
        event_id=event.id, event_type=event.type, user_id=user_id,
        invoice_id=payload.invoice_id, amount=payload.amount_due, attempt_count=payload.attempt_count,
    )
    return user_id
