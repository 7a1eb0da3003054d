from .user_plan import UserPlan, PLAN_FREE, PLAN_PRO
from .processed_event import ProcessedEvent
from .billing_ledger import BillingLedgerEntry, LEDGER_SUCCEEDED, LEDGER_FAILED

__all__ = [
    "UserPlan",
    "ProcessedEvent",
    "BillingLedgerEntry",
    "PLAN_FREE",
    "PLAN_PRO",
    "LEDGER_SUCCEEDED",
    "LEDGER_FAILED",
]
