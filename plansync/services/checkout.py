import logging
from typing import Any, Dict

import stripe
from flask import current_app
from stripe import StripeClient

from plansync.billing import reconciler
from plansync.billing.events import parse_checkout_session
from plansync.billing.retry import retry
from plansync.observability import log_event

logger = logging.getLogger(__name__)


class CheckoutVerificationError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def _client() -> StripeClient:
    key = current_app.config.get("STRIPE_SECRET_KEY")
    if not key:
        raise RuntimeError("STRIPE_SECRET_KEY is not configured")
    return StripeClient(key)


def _as_dict(obj) -> Dict[str, Any]:
    # Stripe objects may need converting to dicts
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    if hasattr(obj, "to_dict_recursive"):
        return obj.to_dict_recursive()
    return dict(obj)


def verify_checkout_session(*, session_id: str, user_id: str) -> Dict[str, Any]:
    """
    Confirm a completed Checkout Session on the customer's return and apply
    the Pro upgrade without waiting for the webhook.
    Raises CheckoutVerificationError with the HTTP status to surface.
    """
    if not session_id or not user_id:
        raise CheckoutVerificationError(400, "Missing session ID or user ID")

    try:
        session = _as_dict(_client().checkout.sessions.retrieve(session_id))
    except stripe.StripeError as exc:
        log_event(logger, logging.WARNING, "checkout_session_retrieve_failed", session_id=session_id, error=type(exc).__name__)
        raise CheckoutVerificationError(400, "Invalid session ID or session not found")

    payload = parse_checkout_session(session)
    if payload.user_id != str(user_id):
        log_event(
            logger, logging.ERROR, "checkout_session_user_mismatch",
            session_id=session_id, session_user_id=payload.user_id, request_user_id=user_id,
        )
        raise CheckoutVerificationError(403, "Session does not belong to the current user")

    if payload.payment_status != "paid":
        raise CheckoutVerificationError(400, f"Payment not completed. Status: {payload.payment_status}")

    applied = retry(
        lambda: reconciler.upgrade_from_verified_session(
            session_id, str(user_id), payload, meta={"manual_verification": True, "mode": payload.mode},
        ),
        base_delay=float(current_app.config.get("CHECKOUT_VERIFY_BASE_DELAY", 0.2)),
        label="checkout_session_upgrade",
    )

    if not applied:
        return {"success": True, "message": "Payment already processed", "already_processed": True}
    return {"success": True, "message": "Payment verified and plan updated successfully", "plan_updated": True}
