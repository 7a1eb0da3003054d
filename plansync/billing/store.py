"""
Persistence primitives for plan reconciliation.

Nothing here commits: callers own the transaction boundary so that the dedup
claim, the plan mutation and the ledger append land (or roll back) together.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from plansync.extensions import db
from plansync.models import UserPlan, ProcessedEvent, BillingLedgerEntry, PLAN_FREE

from .errors import DuplicateEvent

# Distinguishes "leave column alone" from "set column to NULL"
_UNSET = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_user_plan(user_id: str, *, for_update: bool = False) -> Optional[UserPlan]:
    q = db.session.query(UserPlan).filter_by(user_id=user_id)
    if for_update:
        # Row lock on Postgres; SQLite ignores it (single writer anyway)
        q = q.with_for_update()
    return q.one_or_none()


def upsert_user_plan(
    user_id: str,
    *,
    plan: Optional[str] = None,
    status: Any = _UNSET,
    customer_id: Any = _UNSET,
    subscription_id: Any = _UNSET,
    ended_at: Any = _UNSET,
) -> UserPlan:
    """
    Lock-and-update the user's plan row, creating it (as free) on first sight.
    Only the fields passed are touched.
    """
    row = get_user_plan(user_id, for_update=True)
    if row is None:
        row = UserPlan(user_id=user_id, plan=PLAN_FREE)
        db.session.add(row)

    if plan is not None:
        row.plan = plan
    if status is not _UNSET:
        row.subscription_status = status
    if customer_id is not _UNSET:
        row.stripe_customer_id = customer_id
    if subscription_id is not _UNSET:
        row.stripe_subscription_id = subscription_id
    if ended_at is not _UNSET:
        row.subscription_ended_at = ended_at
    row.updated_at = utcnow()

    db.session.flush()
    return row


def is_event_processed(event_id: str) -> bool:
    return db.session.query(ProcessedEvent.id).filter_by(event_id=event_id).first() is not None


def is_session_processed(session_id: str) -> bool:
    return db.session.query(ProcessedEvent.id).filter_by(stripe_session_id=session_id).first() is not None


def record_processed_event(
    event_id: str,
    event_type: str,
    *,
    user_id: Optional[str] = None,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    session_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> ProcessedEvent:
    """
    Claim ``event_id``. Must be the first write of the transaction: a unique
    violation here means another delivery already won, and the caller must
    roll back.
    """
    rec = ProcessedEvent(
        event_id=event_id,
        event_type=event_type,
        user_id=user_id,
        amount=amount,
        currency=currency,
        stripe_session_id=session_id,
        stripe_customer_id=customer_id,
        stripe_subscription_id=subscription_id,
        meta=metadata or {},
    )
    db.session.add(rec)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise DuplicateEvent("event already processed", event_id=event_id, event_type=event_type) from exc
    return rec


def append_billing_ledger_entry(
    user_id: str,
    event_type: str,
    event_id: str,
    *,
    amount: Optional[int],
    currency: Optional[str],
    status: str,
    reason: Optional[str] = None,
    description: Optional[str] = None,
    invoice_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    stripe_created_at: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> BillingLedgerEntry:
    entry = BillingLedgerEntry(
        user_id=user_id,
        event_type=event_type,
        event_id=event_id,
        amount=amount,
        currency=currency,
        status=status,
        failure_reason=reason,
        description=description,
        stripe_invoice_id=invoice_id,
        stripe_payment_intent_id=payment_intent_id,
        stripe_subscription_id=subscription_id,
        stripe_created_at=stripe_created_at,
        meta=metadata or {},
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def find_user_by_subscription_id(subscription_id: str) -> Optional[str]:
    row = (
        db.session.query(UserPlan.user_id)
        .filter(UserPlan.stripe_subscription_id == subscription_id)
        .first()
    )
    return row[0] if row else None


def find_user_by_customer_id(customer_id: str) -> Optional[str]:
    row = (
        db.session.query(UserPlan.user_id)
        .filter(UserPlan.stripe_customer_id == customer_id)
        .first()
    )
    return row[0] if row else None
