import json
import logging
import time
import uuid

from flask import request, jsonify, current_app
from . import bp
from plansync.extensions import csrf
from plansync.billing import (
    EventTooOld,
    InvalidSignature,
    MalformedPayload,
    ReconciliationError,
    parse_envelope,
    verify_signature,
)
from plansync.observability import log_event

logger = logging.getLogger(__name__)


def _request_meta(request_id: str) -> dict:
    # Request metadata only: the payload may carry customer data
    return {
        "request_id": request_id,
        "ip": request.headers.get("X-Forwarded-For") or request.remote_addr or "unknown",
        "user_agent": request.headers.get("User-Agent") or "unknown",
    }


def _reject(exc: ReconciliationError, request_id: str, **extra):
    fields = dict(exc.context)
    fields.update(extra)
    fields.update(_request_meta(request_id))
    log_event(logger, exc.log_level, f"stripe_webhook_{exc.code}", message=exc.message, **fields)
    return jsonify({"error": exc.message}), exc.status_code


# ----- Stripe Webhook (plan reconciliation) -----
@csrf.exempt
@bp.post("/stripe")
def stripe_webhook():
    """
    Stripe → /webhooks/stripe
    Verifies signature, drops stale/replayed deliveries, then routes the event
    to the plan reconciler. 200 = stop retrying; 4xx = rejected; 5xx = retry.
    """
    started = time.monotonic()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    # 1) Cheap header checks before touching the body
    content_type = (request.headers.get("Content-Type") or "").lower()
    if "application/json" not in content_type:
        return _reject(MalformedPayload("Invalid content-type. Expected application/json"), request_id,
                       content_type=content_type or None)

    sig_header = request.headers.get("Stripe-Signature", "")
    if not sig_header:
        return _reject(InvalidSignature("Missing stripe-signature header"), request_id)

    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        log_event(logger, logging.ERROR, "stripe_webhook_secret_missing", request_id=request_id)
        return jsonify({"error": "Webhook endpoint not properly configured"}), 500

    # 2) Raw bytes, read exactly once; signature covers these bytes
    raw_bytes = request.get_data(cache=False, as_text=False)
    if not raw_bytes:
        return _reject(MalformedPayload("Empty request body"), request_id)

    try:
        verify_signature(raw_bytes, sig_header, secret, tolerance=current_app.config.get("WEBHOOK_SIGNATURE_TOLERANCE", 300))
    except InvalidSignature as exc:
        return _reject(InvalidSignature("Invalid webhook signature", reason=exc.message), request_id)

    # 3) Parse only what the signature vouched for
    try:
        event = parse_envelope(json.loads(raw_bytes))
    except ValueError:
        return _reject(MalformedPayload("Invalid event structure"), request_id)
    except MalformedPayload as exc:
        return _reject(MalformedPayload("Invalid event structure", reason=exc.message, **exc.context), request_id)

    # 4) Freshness + fast-path dedup
    guard = current_app.extensions["replay_guard"]
    try:
        duplicate = guard.check(event)
    except EventTooOld as exc:
        return _reject(EventTooOld("Event too old", **exc.context), request_id)

    if duplicate:
        log_event(logger, logging.INFO, "stripe_webhook_duplicate",
                  event_id=event.id, event_type=event.type, request_id=request_id, source="replay_cache")
        return jsonify({"received": True, "duplicate": True}), 200

    log_event(logger, logging.INFO, "stripe_webhook_verified",
              event_id=event.id, event_type=event.type, request_id=request_id)

    # 5) Route to the reconciler; the DB unique constraint is the real dedup gate
    outcome = current_app.extensions["event_router"].dispatch(event, meta={"request_id": request_id})
    if not outcome.acknowledged:
        # Let Stripe's retry reach the handler instead of the replay cache
        guard.release(event.id)

    log_event(
        logger, logging.INFO if outcome.acknowledged else logging.ERROR, "stripe_webhook_processed",
        event_id=event.id, event_type=event.type, user_id=outcome.user_id,
        status=outcome.status_code, request_id=request_id,
        processing_ms=int((time.monotonic() - started) * 1000),
    )
    return jsonify(outcome.body), outcome.status_code
