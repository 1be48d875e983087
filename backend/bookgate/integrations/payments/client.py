"""
Payment provider API client for checkout sessions.

The provider's REST API takes form-encoded bodies with bracketed keys
(metadata[userId]=..., line_items[0][price_data][currency]=...) and
bearer-token authentication.

Timeouts are bounded (PAYMENT_TIMEOUT_SECONDS). A timeout is surfaced as
PaymentProviderError(timeout=True); no local state is written for a
session that may or may not exist on the provider side.
"""

import os
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

PAYMENT_API_BASE_URL = os.getenv("PAYMENT_API_BASE_URL", "https://api.stripe.com/v1")
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS", "15"))


@dataclass
class CheckoutSession:
    """Checkout session created on the provider."""
    id: str
    url: str
    payment_status: Optional[str] = None


class PaymentProviderError(Exception):
    """Error communicating with the payment provider."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict] = None,
        timeout: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response = response
        self.timeout = timeout


def encode_form(data: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """
    Flatten nested dicts/lists into bracketed form keys.

    >>> encode_form({"metadata": {"userId": "u1"}, "items": [{"q": 1}]})
    {'metadata[userId]': 'u1', 'items[0][q]': '1'}
    """
    encoded: Dict[str, str] = {}
    for key, value in data.items():
        full_key = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            encoded.update(encode_form(value, full_key))
        elif isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                item_key = f"{full_key}[{index}]"
                if isinstance(item, dict):
                    encoded.update(encode_form(item, item_key))
                else:
                    encoded[item_key] = str(item)
        elif isinstance(value, bool):
            encoded[full_key] = "true" if value else "false"
        else:
            encoded[full_key] = str(value)
    return encoded


class PaymentProviderClient:
    """
    Client for the payment provider's checkout API.

    Usage:
        async with PaymentProviderClient() as client:
            session = await client.create_checkout_session(...)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key or os.getenv("PAYMENT_API_KEY")
        if not self.api_key:
            raise ValueError("PAYMENT_API_KEY is required")

        self.base_url = (base_url or PAYMENT_API_BASE_URL).rstrip("/")
        timeout = timeout or PAYMENT_TIMEOUT_SECONDS

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            headers={"Authorization": f"Bearer {self.api_key}"},
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post(self, path: str, data: Dict[str, Any], idempotency_key: Optional[str] = None) -> dict:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = await self._client.post(
                f"{self.base_url}{path}",
                data=encode_form(data),
                headers=headers,
            )
        except httpx.TimeoutException:
            logger.error("Payment provider timed out", extra={"path": path})
            raise PaymentProviderError("Payment provider timed out", timeout=True)
        except httpx.HTTPError as e:
            logger.error("Payment provider unreachable", extra={"path": path, "error": str(e)})
            raise PaymentProviderError(f"Payment provider unreachable: {e}")

        if response.status_code == 401:
            logger.error("Payment provider authentication failed", extra={"path": path})
            raise PaymentProviderError("Authentication failed - API key may be invalid", status_code=401)

        if response.status_code == 429:
            logger.warning("Payment provider rate limited", extra={"path": path})
            raise PaymentProviderError("Rate limited - please retry after a delay", status_code=429)

        if response.status_code >= 400:
            body = response.json() if response.text else None
            logger.error("Payment provider error", extra={
                "path": path,
                "status_code": response.status_code,
                "response_text": response.text[:500],
            })
            message = ((body or {}).get("error") or {}).get("message") or f"status {response.status_code}"
            raise PaymentProviderError(
                f"Payment provider error: {message}",
                status_code=response.status_code,
                response=body,
            )

        return response.json()

    async def create_checkout_session(
        self,
        product_name: str,
        unit_amount_cents: int,
        currency: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        payment_method_types: List[str],
        customer_email: Optional[str] = None,
        product_description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSession:
        """
        Create a one-time payment checkout session.

        Subscriptions are sold as one-time payments covering the plan
        period; renewals arrive through subscription lifecycle events.
        """
        data = {
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "payment_method_types": payment_method_types,
            "customer_email": customer_email,
            "line_items": [{
                "quantity": 1,
                "price_data": {
                    "currency": currency,
                    "unit_amount": unit_amount_cents,
                    "product_data": {
                        "name": product_name,
                        "description": product_description,
                    },
                },
            }],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }

        result = await self._post("/checkout/sessions", data, idempotency_key=idempotency_key)

        if not result.get("id") or not result.get("url"):
            raise PaymentProviderError("Checkout session response missing id or url", response=result)

        logger.info("Checkout session created", extra={"provider_id": result["id"]})
        return CheckoutSession(
            id=result["id"],
            url=result["url"],
            payment_status=result.get("payment_status"),
        )
