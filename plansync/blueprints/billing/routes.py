from flask import Blueprint, request, current_app, jsonify
from plansync.extensions import csrf, limiter
from plansync.billing import StorageError
from plansync.services.checkout import CheckoutVerificationError, verify_checkout_session

billing_bp = Blueprint("billing", __name__)


@billing_bp.post("/verify-session")
@csrf.exempt
@limiter.limit("10/minute")
def verify_session():
    """
    Called by the success page after Stripe Checkout redirects back.
    Body: {"session_id": "...", "user_id": "..."}. Idempotent with the webhook.
    """
    data = request.get_json(silent=True) or {}
    session_id = (data.get("session_id") or data.get("sessionId") or "").strip()
    user_id = str(data.get("user_id") or data.get("userId") or "").strip()

    try:
        result = verify_checkout_session(session_id=session_id, user_id=user_id)
    except CheckoutVerificationError as e:
        return jsonify({"success": False, "message": e.message}), e.status_code
    except StorageError:
        current_app.logger.exception(
            "billing.verify_session.upgrade_failed",
            extra={"session_id": session_id, "user_id": user_id},
        )
        return jsonify({"success": False, "message": "Failed to upgrade user to Pro plan"}), 500

    return jsonify(result), 200
