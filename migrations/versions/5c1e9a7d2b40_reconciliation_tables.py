"""reconciliation tables: user_plans, processed_events, billing_ledger_entries

Revision ID: 5c1e9a7d2b40
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "5c1e9a7d2b40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "user_plans",
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("plan", sa.String(length=16), nullable=False, server_default="free"),
        sa.Column("subscription_status", sa.String(length=32), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("subscription_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("user_id"),
    )
    op.create_index("ix_user_plans_subscription_status", "user_plans", ["subscription_status"], unique=False)
    op.create_index("ix_user_plans_stripe_customer_id", "user_plans", ["stripe_customer_id"], unique=False)
    op.create_index("ix_user_plans_stripe_subscription_id", "user_plans", ["stripe_subscription_id"], unique=False)

    op.create_table(
        "processed_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("stripe_session_id", sa.String(length=255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    # Unique: the dedup gate concurrent deliveries race on
    op.create_index("ix_processed_events_event_id", "processed_events", ["event_id"], unique=True)
    op.create_index("ix_processed_events_event_type", "processed_events", ["event_type"], unique=False)
    op.create_index("ix_processed_events_user_id", "processed_events", ["user_id"], unique=False)
    op.create_index("ix_processed_events_stripe_session_id", "processed_events", ["stripe_session_id"], unique=False)

    op.create_table(
        "billing_ledger_entries",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=80), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("stripe_invoice_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(length=64), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(length=64), nullable=True),
        sa.Column("meta", sa.JSON(), nullable=False),
        sa.Column("stripe_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_billing_ledger_entries_user_id", "billing_ledger_entries", ["user_id"], unique=False)
    op.create_index("ix_billing_ledger_entries_event_id", "billing_ledger_entries", ["event_id"], unique=False)
    op.create_index("ix_billing_ledger_entries_status", "billing_ledger_entries", ["status"], unique=False)
    op.create_index("ix_billing_ledger_entries_stripe_invoice_id", "billing_ledger_entries", ["stripe_invoice_id"], unique=False)


def downgrade():
    op.drop_index("ix_billing_ledger_entries_stripe_invoice_id", table_name="billing_ledger_entries")
    op.drop_index("ix_billing_ledger_entries_status", table_name="billing_ledger_entries")
    op.drop_index("ix_billing_ledger_entries_event_id", table_name="billing_ledger_entries")
    op.drop_index("ix_billing_ledger_entries_user_id", table_name="billing_ledger_entries")
    op.drop_table("billing_ledger_entries")

    op.drop_index("ix_processed_events_stripe_session_id", table_name="processed_events")
    op.drop_index("ix_processed_events_user_id", table_name="processed_events")
    op.drop_index("ix_processed_events_event_type", table_name="processed_events")
    op.drop_index("ix_processed_events_event_id", table_name="processed_events")
    op.drop_table("processed_events")

    op.drop_index("ix_user_plans_stripe_subscription_id", table_name="user_plans")
    op.drop_index("ix_user_plans_stripe_customer_id", table_name="user_plans")
    op.drop_index("ix_user_plans_subscription_status", table_name="user_plans")
    op.drop_table("user_plans")
