"""
Payment provider integration module.
"""

from bookgate.integrations.payments.client import (
    CheckoutSession,
    PaymentProviderClient,
    PaymentProviderError,
)
from bookgate.integrations.payments.webhooks import (
    PaymentEvent,
    WebhookSignatureError,
    parse_event,
    verify_webhook_signature,
)

__all__ = [
    "CheckoutSession",
    "PaymentProviderClient",
    "PaymentProviderError",
    "PaymentEvent",
    "WebhookSignatureError",
    "parse_event",
    "verify_webhook_signature",
]
