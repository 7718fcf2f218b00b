from __future__ import annotations

from typing import Optional

import stripe

from billing_sync.core.errors import SignatureInvalid

SIGNATURE_HEADER = "stripe-signature"


def verify_signature(
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    *,
    tolerance: Optional[int] = None,
) -> None:
    """Check ``sig_header`` against the raw request body.

    The body must be the exact bytes Stripe sent; re-serialized JSON will
    not verify even when it is semantically identical.
    """
    if not secret:
        raise SignatureInvalid("Webhook secret is not configured")
    if not sig_header:
        raise SignatureInvalid(f"Missing {SIGNATURE_HEADER} header")
    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise SignatureInvalid("Request body is not valid UTF-8") from exc
    try:
        if tolerance is None:
            stripe.WebhookSignature.verify_header(body, sig_header, secret)
        else:
            stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalid(str(exc) or "Invalid signature") from exc
