import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import hashlib
import hmac
import json
import time

import pytest
from plansync import create_app
from plansync.extensions import db
from plansync.billing import build_replay_guard

WEBHOOK_SECRET = "whsec_test_x"


@pytest.fixture(scope="session")
def app():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "STRIPE_SECRET_KEY": "sk_test_x",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "WTF_CSRF_ENABLED": False,
        "RATELIMIT_ENABLED": False,
        "CHECKOUT_VERIFY_BASE_DELAY": 0.0,
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


def _wipe():
    db.session.rollback()
    for tbl in reversed(db.metadata.sorted_tables):
        db.session.execute(tbl.delete())
    db.session.commit()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test; a fresh replay cache too, it outlives requests
    with app.app_context():
        _wipe()
    app.extensions["replay_guard"] = build_replay_guard(app.config)
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        _wipe()


# ---- Stripe webhook helpers ----

def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Stripe-Signature header: t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<payload>")."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    mac = hmac.new(secret.encode("utf-8"), f"{ts}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def make_event(event_id: str, event_type: str, obj: dict, created=None) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else int(created),
        "livemode": False,
        "data": {"object": obj},
    }


def checkout_event(event_id="evt_1", user_id="u1", session_id="cs_1", customer="cus_1",
                   subscription="sub_1", amount=999, payment_status="paid", **extra) -> dict:
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "mode": "subscription",
        "customer": customer,
        "subscription": subscription,
        "amount_total": amount,
        "currency": "usd",
        "payment_status": payment_status,
        "payment_intent": "pi_1",
        "metadata": {"userId": user_id} if user_id else {},
    }
    obj.update(extra)
    return make_event(event_id, "checkout.session.completed", obj)


def subscription_event(event_id, status, subscription="sub_1", customer="cus_1", deleted=False) -> dict:
    ev_type = "customer.subscription.deleted" if deleted else "customer.subscription.updated"
    return make_event(event_id, ev_type, {
        "id": subscription, "object": "subscription", "status": status, "customer": customer,
    })


def invoice_event(event_id, paid=True, customer="cus_1", subscription="sub_1", amount=1500, invoice="in_1") -> dict:
    obj = {"id": invoice, "object": "invoice", "customer": customer, "subscription": subscription,
           "currency": "usd", "number": "A-0001"}
    if paid:
        obj.update(amount_paid=amount, payment_intent="pi_2", period_start=1700000000, period_end=1702592000)
        return make_event(event_id, "invoice.paid", obj)
    obj.update(amount_due=amount, attempt_count=1, next_payment_attempt=int(time.time()) + 86400)
    return make_event(event_id, "invoice.payment_failed", obj)


@pytest.fixture()
def deliver(client):
    """POST an event dict to the webhook endpoint the way Stripe does."""
    def _deliver(event, secret=WEBHOOK_SECRET, headers=None, body=None):
        raw = body if body is not None else json.dumps(event).encode("utf-8")
        hdrs = {"Content-Type": "application/json", "Stripe-Signature": sign(raw, secret)}
        hdrs.update(headers or {})
        return client.post("/webhooks/stripe", data=raw, headers=hdrs)
    return _deliver
