import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from plansync.extensions import db
from plansync.models import UserPlan, ProcessedEvent, BillingLedgerEntry
from plansync.billing import (
    DuplicateEvent,
    MissingUserCorrelation,
    StorageError,
    UserNotFound,
    parse_envelope,
    parse_payload,
)
from plansync.billing import reconciler, store

from conftest import checkout_event, subscription_event, invoice_event


def _apply(handler, raw, meta=None):
    event = parse_envelope(raw)
    return handler(event, parse_payload(event), meta)


def _seed_pro(user_id="u1", customer="cus_1", subscription="sub_1"):
    _apply(reconciler.apply_checkout_completed,
           checkout_event("evt_seed", user_id=user_id, customer=customer, subscription=subscription))


def test_checkout_creates_plan_row_lazily(app):
    with app.app_context():
        assert db.session.get(UserPlan, "u1") is None
        user_id = _apply(reconciler.apply_checkout_completed, checkout_event("evt_1"))
        assert user_id == "u1"
        row = db.session.get(UserPlan, "u1")
        assert row.is_pro
        assert row.subscription_status == "active"
        assert row.subscription_ended_at is None


def test_checkout_unpaid_skips_ledger(app):
    with app.app_context():
        _apply(reconciler.apply_checkout_completed, checkout_event("evt_1", payment_status="unpaid"))
        assert db.session.get(UserPlan, "u1").is_pro
        assert BillingLedgerEntry.query.count() == 0
        assert ProcessedEvent.query.count() == 1


def test_checkout_without_user_raises_before_any_write(app):
    with app.app_context():
        with pytest.raises(MissingUserCorrelation) as exc:
            _apply(reconciler.apply_checkout_completed, checkout_event("evt_1", user_id=None))
        assert exc.value.acknowledged
        assert exc.value.context["session_id"] == "cs_1"
        assert ProcessedEvent.query.count() == 0


def test_handler_rejects_processed_event(app):
    with app.app_context():
        raw = checkout_event("evt_1")
        _apply(reconciler.apply_checkout_completed, raw)
        with pytest.raises(DuplicateEvent):
            _apply(reconciler.apply_checkout_completed, raw)
        assert BillingLedgerEntry.query.count() == 1


def test_subscription_active_reactivates(app):
    with app.app_context():
        _seed_pro()
        _apply(reconciler.apply_subscription_updated, subscription_event("evt_1", "unpaid"))
        row = db.session.get(UserPlan, "u1")
        assert (row.plan, row.subscription_status) == ("free", "unpaid")

        _apply(reconciler.apply_subscription_updated, subscription_event("evt_2", "active"))
        db.session.refresh(row)
        assert (row.plan, row.subscription_status) == ("pro", "active")


@pytest.mark.parametrize("status", ["canceled", "unpaid", "past_due"])
def test_subscription_downgrade_statuses(app, status):
    with app.app_context():
        _seed_pro()
        _apply(reconciler.apply_subscription_updated, subscription_event("evt_1", status))
        row = db.session.get(UserPlan, "u1")
        assert (row.plan, row.subscription_status) == ("free", status)


def test_subscription_trialing_is_noop(app):
    with app.app_context():
        _seed_pro()
        before = ProcessedEvent.query.count()
        user_id = _apply(reconciler.apply_subscription_updated, subscription_event("evt_1", "trialing"))
        assert user_id == "u1"
        row = db.session.get(UserPlan, "u1")
        assert (row.plan, row.subscription_status) == ("pro", "active")
        assert ProcessedEvent.query.count() == before


def test_subscription_for_unknown_user(app):
    with app.app_context():
        with pytest.raises(UserNotFound) as exc:
            _apply(reconciler.apply_subscription_deleted,
                   subscription_event("evt_1", "canceled", subscription="sub_x", deleted=True))
        assert exc.value.context["subscription_id"] == "sub_x"
        assert ProcessedEvent.query.count() == 0


def test_invoice_for_unknown_customer(app):
    with app.app_context():
        with pytest.raises(UserNotFound):
            _apply(reconciler.apply_invoice_paid, invoice_event("evt_1", customer="cus_x"))
        assert BillingLedgerEntry.query.count() == 0


def test_invoice_failed_keeps_plan(app):
    with app.app_context():
        _seed_pro()
        _apply(reconciler.apply_invoice_failed, invoice_event("evt_1", paid=False))
        row = db.session.get(UserPlan, "u1")
        assert (row.plan, row.subscription_status) == ("pro", "past_due")
        entry = BillingLedgerEntry.query.filter_by(event_id="evt_1").one()
        assert entry.meta["attempt_count"] == 1


def test_deleted_then_invoice_for_old_customer_is_unmatched(app):
    with app.app_context():
        _seed_pro()
        _apply(reconciler.apply_subscription_deleted, subscription_event("evt_1", "canceled", deleted=True))
        with pytest.raises(UserNotFound):
            _apply(reconciler.apply_invoice_paid, invoice_event("evt_2"))


def test_ledger_failure_does_not_block_plan_change(app, monkeypatch):
    def broken_append(*args, **kwargs):
        raise IntegrityError("INSERT INTO billing_ledger_entries", {}, Exception("constraint"))

    monkeypatch.setattr(store, "append_billing_ledger_entry", broken_append)
    with app.app_context():
        _seed_pro()
        _apply(reconciler.apply_invoice_paid, invoice_event("evt_1"))
        assert db.session.get(UserPlan, "u1").subscription_status == "active"
        assert ProcessedEvent.query.filter_by(event_id="evt_1").count() == 1
        assert BillingLedgerEntry.query.count() == 0


def test_storage_failure_rolls_back_claim(app, monkeypatch):
    def locked(*args, **kwargs):
        raise OperationalError("UPDATE user_plans", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "upsert_user_plan", locked)
    with app.app_context():
        with pytest.raises(StorageError) as exc:
            _apply(reconciler.apply_checkout_completed, checkout_event("evt_1"))
        assert exc.value.status_code == 500
        assert exc.value.context["event_id"] == "evt_1"
        assert ProcessedEvent.query.count() == 0
        assert UserPlan.query.count() == 0


def test_verified_session_then_webhook_for_same_session(app):
    with app.app_context():
        raw = checkout_event("evt_1")
        event = parse_envelope(raw)
        payload = parse_payload(event)

        assert reconciler.upgrade_from_verified_session("cs_1", "u1", payload) is True
        assert db.session.get(UserPlan, "u1").is_pro
        assert reconciler.upgrade_from_verified_session("cs_1", "u1", payload) is False

        # The webhook still records its own event id and the ledger row
        reconciler.apply_checkout_completed(event, payload)
        assert ProcessedEvent.query.count() == 2
        assert BillingLedgerEntry.query.count() == 1


def test_verified_session_after_webhook_is_noop(app):
    with app.app_context():
        _apply(reconciler.apply_checkout_completed, checkout_event("evt_1", session_id="cs_9"))
        payload = parse_payload(parse_envelope(checkout_event("evt_1", session_id="cs_9")))
        assert reconciler.upgrade_from_verified_session("cs_9", "u1", payload) is False
