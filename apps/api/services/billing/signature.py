from __future__ import annotations

import logging
from typing import Optional

import stripe

from core.exceptions import SignatureInvalid

logger = logging.getLogger(__name__)


def verify_event_signature(
    *,
    payload: bytes,
    sig_header: Optional[str],
    secret: str,
    tolerance: Optional[int] = 300,
) -> None:
    """
    Check the Stripe-Signature header against the raw request body.

    `payload` must be the exact bytes Stripe sent: the HMAC covers
    "<timestamp>.<body>", so a re-serialized body (different key order or
    whitespace) fails even when it decodes to the same JSON.
    """
    if not sig_header:
        raise SignatureInvalid("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(payload.decode("utf-8"), sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe signature verification failed: {e}")
        raise SignatureInvalid(str(e)) from e
    except UnicodeDecodeError as e:
        raise SignatureInvalid("Webhook body is not valid UTF-8") from e
