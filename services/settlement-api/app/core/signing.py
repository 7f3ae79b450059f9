"""Webhook signature verification for processor-delivered events.

The processor signs each delivery with HMAC-SHA256 over ``"{timestamp}.{raw_body}"``
using the endpoint's shared secret and sends::

    Stripe-Signature: t=1700000000,v1=5257a869e7ec...,v1=...

Verification is delegated to the ``stripe`` SDK and must happen against the
raw bytes before any JSON parsing.
"""

from __future__ import annotations

import stripe

from app.core.errors import SignatureError


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance_seconds: int = 300,
) -> None:
    """Verify ``header`` against ``payload``.

    A ``tolerance_seconds`` of 0 disables the timestamp age check.

    Raises:
        SignatureError: header missing or malformed, no signature matches, or
            the timestamp is older than the tolerance window.
    """
    if not header:
        raise SignatureError("Missing signature header")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise SignatureError("Webhook body is not valid UTF-8") from None

    try:
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance_seconds)
    except stripe.SignatureVerificationError as exc:
        raise SignatureError("Webhook signature verification failed") from exc
