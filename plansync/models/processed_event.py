from sqlalchemy import func
from plansync.extensions import db

class ProcessedEvent(db.Model):
    """
    Durable idempotency marker: one row per distinct Stripe event id.
    The unique constraint on event_id is the gate concurrent deliveries race on.
    Write-once; never updated or deleted by the reconciler.
    """
    __tablename__ = "processed_events"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=True, index=True)

    amount = db.Column(db.Integer, nullable=True)  # minor units (cents)
    currency = db.Column(db.String(8), nullable=True)

    stripe_session_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_customer_id = db.Column(db.String(64), nullable=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True)

    meta = db.Column(db.JSON, nullable=False, default=dict)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<ProcessedEvent event_id={self.event_id!r} type={self.event_type!r} user_id={self.user_id!r}>"
