import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from plansync.extensions import db
from plansync.models import BillingLedgerEntry
from plansync.observability import log_event

from . import store

logger = logging.getLogger(__name__)


def append_entry(user_id: str, event_type: str, event_id: str, **fields) -> Optional[BillingLedgerEntry]:
    """
    Append an audit row inside a SAVEPOINT of the caller's transaction.

    The plan change is the primary effect and the ledger is secondary: a
    failed insert rolls back only the savepoint, is logged, and returns None
    so the caller can still commit the plan transition.
    """
    try:
        with db.session.begin_nested():
            return store.append_billing_ledger_entry(user_id, event_type, event_id, **fields)
    except SQLAlchemyError as exc:
        log_event(
            logger, logging.ERROR, "billing_ledger_write_failed",
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            status=fields.get("status"),
            amount=fields.get("amount"),
            error=type(exc).__name__,
        )
        return None
