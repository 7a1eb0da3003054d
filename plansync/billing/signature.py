from typing import Optional

import stripe

from .errors import InvalidSignature


def verify_signature(raw_body: bytes, sig_header: Optional[str], secret: Optional[str], tolerance: int = 300) -> None:
    """
    Check a Stripe-Signature header against the exact request bytes.

    The header looks like ``t=<unix ts>,v1=<hex hmac>[,v1=...]``; the expected
    signature is HMAC-SHA256(secret, "<ts>.<raw body>"). The body must be the
    bytes as received: re-serialised JSON will not match.

    Raises InvalidSignature on a missing header/secret, an undecodable body,
    a mismatch, or a signature timestamp outside ``tolerance`` seconds.
    """
    if not secret:
        raise InvalidSignature("webhook secret not configured")
    if not sig_header:
        raise InvalidSignature("missing Stripe-Signature header")
    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        raise InvalidSignature("body is not valid UTF-8")

    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(str(exc) or "signature mismatch")
