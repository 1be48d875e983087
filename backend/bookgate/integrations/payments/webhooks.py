"""
Payment provider webhook verification and parsing.

Signature header format:

    Stripe-Signature: t=<unix ts>,v1=<hex hmac-sha256>[,v1=<hex>...]

The signed payload is "<ts>.<raw body>" keyed with the endpoint secret.
Several v1 entries may be present while the secret is being rotated.
"""

import hashlib
import hmac
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

PAYMENT_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("PAYMENT_WEBHOOK_TOLERANCE_SECONDS", "300"))


class WebhookSignatureError(Exception):
    """Signature header missing, malformed, stale or not matching."""


@dataclass
class PaymentEvent:
    """Provider event envelope; data_object is event.data.object."""
    id: str
    type: str
    data_object: Dict[str, Any] = field(default_factory=dict)
    created: Optional[int] = None

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.data_object.get("metadata") or {}


def compute_signature(payload: bytes, timestamp: int, secret: str) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = PAYMENT_WEBHOOK_TOLERANCE_SECONDS,
    now: Optional[int] = None,
) -> None:
    """
    Verify a webhook signature.

    Raises:
        WebhookSignatureError: if the header is missing or malformed, the
            timestamp is outside the tolerance window, or no v1 entry matches
    """
    if not signature_header or not secret:
        raise WebhookSignatureError("Missing signature header or secret")

    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp")
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    now = int(time.time()) if now is None else now
    if tolerance and abs(now - timestamp) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance window")

    expected = compute_signature(payload, timestamp, secret)
    # Constant-time comparison to prevent timing attacks
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise WebhookSignatureError("Signature mismatch")


def parse_event(payload: bytes) -> PaymentEvent:
    """Parse a verified webhook body into a PaymentEvent."""
    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid webhook JSON: {e}")

    if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
        raise ValueError("Webhook body missing id or type")

    data_object = (body.get("data") or {}).get("object") or {}
    return PaymentEvent(
        id=body["id"],
        type=body["type"],
        data_object=data_object,
        created=body.get("created"),
    )


def payload_hash(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()
