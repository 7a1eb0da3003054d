from sqlalchemy import func
from plansync.extensions import db

PLAN_FREE = "free"
PLAN_PRO = "pro"

class UserPlan(db.Model):
    __tablename__ = "user_plans"

    # Owning key issued by the auth backend (opaque string, e.g. a UUID)
    user_id = db.Column(db.String(64), primary_key=True)
    plan = db.Column(db.String(16), nullable=False, default=PLAN_FREE, server_default=PLAN_FREE)
    # Mirrors Stripe's vocabulary: active | past_due | canceled | unpaid | trialing | ...
    subscription_status = db.Column(db.String(32), nullable=True, index=True)

    stripe_customer_id = db.Column(db.String(64), nullable=True, index=True)
    stripe_subscription_id = db.Column(db.String(64), nullable=True, index=True)
    subscription_ended_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    @property
    def is_pro(self) -> bool:
        return self.plan == PLAN_PRO

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "plan": self.plan,
            "subscription_status": self.subscription_status,
            "stripe_customer_id": self.stripe_customer_id,
            "stripe_subscription_id": self.stripe_subscription_id,
            "subscription_ended_at": self.subscription_ended_at.isoformat() if self.subscription_ended_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        return f"<UserPlan user_id={self.user_id!r} plan={self.plan!r} status={self.subscription_status!r}>"
