from sqlalchemy import func
from plansync.extensions import db

LEDGER_SUCCEEDED = "succeeded"
LEDGER_FAILED = "failed"

class BillingLedgerEntry(db.Model):
    __tablename__ = "billing_ledger_entries"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    event_type = db.Column(db.String(80), nullable=False)
    # Traceability only: not unique, an event may or may not produce a row
    event_id = db.Column(db.String(255), nullable=False, index=True)

    amount = db.Column(db.Integer, nullable=True)  # minor units (cents)
    currency = db.Column(db.String(8), nullable=True)
    status = db.Column(db.String(20), nullable=False, index=True)  # succeeded | failed
    failure_reason = db.Column(db.String(255), nullable=True)
    description = db.Column(db.String(255), nullable=True)

    stripe_invoice_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_payment_intent_id = db.Column(db.String(64), nullable=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True)

    meta = db.Column(db.JSON, nullable=False, default=dict)
    stripe_created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<BillingLedgerEntry id={self.id} user_id={self.user_id!r} status={self.status!r} amount={self.amount}>"
