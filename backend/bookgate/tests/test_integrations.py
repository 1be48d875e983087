"""
Tests for the payment provider and content catalog integrations.

HTTP is served by httpx.MockTransport; nothing leaves the process.
"""

import json
import time
from urllib.parse import parse_qs

import httpx
import pytest

from bookgate.integrations.catalog.client import CatalogAPIError, CatalogClient
from bookgate.integrations.payments.client import (
    PaymentProviderClient,
    PaymentProviderError,
    encode_form,
)
from bookgate.integrations.payments.webhooks import (
    WebhookSignatureError,
    compute_signature,
    parse_event,
    payload_hash,
    verify_webhook_signature,
)

SECRET = "whsec_test"
BODY = b'{"id":"evt_1","type":"checkout.session.completed","data":{"object":{"id":"cs_1"}}}'


def _header(payload=BODY, timestamp=None, secret=SECRET):
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(payload, timestamp, secret)}"


class TestWebhookSignature:
    """Tests for webhook signature verification."""

    def test_valid_signature(self):
        verify_webhook_signature(BODY, _header(), SECRET)

    def test_tampered_body(self):
        header = _header()

        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(BODY + b" ", header, SECRET)

    def test_wrong_secret(self):
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(BODY, _header(secret="whsec_other"), SECRET)

    def test_stale_timestamp(self):
        old = int(time.time()) - 3600

        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(BODY, _header(timestamp=old), SECRET, tolerance=300)

    def test_explicit_clock(self):
        verify_webhook_signature(BODY, _header(timestamp=1000), SECRET, tolerance=300, now=1200)

    def test_rotated_secret_second_entry_matches(self):
        timestamp = int(time.time())
        header = (
            f"t={timestamp},v1={compute_signature(BODY, timestamp, 'whsec_old')},"
            f"v1={compute_signature(BODY, timestamp, SECRET)}"
        )

        verify_webhook_signature(BODY, header, SECRET)

    @pytest.mark.parametrize("header", [None, "", "v1=abc", "t=123", "t=abc,v1=def"])
    def test_malformed_header(self, header):
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(BODY, header, SECRET)

    def test_missing_secret(self):
        with pytest.raises(WebhookSignatureError):
            verify_webhook_signature(BODY, _header(), "")


class TestParseEvent:
    def test_parses_envelope(self):
        event = parse_event(json.dumps({
            "id": "evt_1",
            "type": "checkout.session.completed",
            "created": 1700000000,
            "data": {"object": {"id": "cs_1", "metadata": {"userId": "u1"}}},
        }).encode())

        assert event.id == "evt_1"
        assert event.type == "checkout.session.completed"
        assert event.created == 1700000000
        assert event.data_object["id"] == "cs_1"
        assert event.metadata == {"userId": "u1"}

    def test_missing_metadata_is_empty(self):
        event = parse_event(b'{"id":"evt_2","type":"invoice.created","data":{"object":{}}}')

        assert event.metadata == {}

    @pytest.mark.parametrize("payload", [b"not json", b"[]", b'{"type":"x"}', b'{"id":"evt"}', b"\xff\xfe"])
    def test_invalid_bodies(self, payload):
        with pytest.raises(ValueError):
            parse_event(payload)

    def test_payload_hash(self):
        assert payload_hash(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestEncodeForm:
    def test_nested_values(self):
        encoded = encode_form({
            "mode": "payment",
            "metadata": {"userId": "u1", "empty": None},
            "payment_method_types": ["card", "oxxo"],
            "line_items": [{"quantity": 1, "price_data": {"unit_amount": 19900}}],
            "flag": True,
        })

        assert encoded == {
            "mode": "payment",
            "metadata[userId]": "u1",
            "payment_method_types[0]": "card",
            "payment_method_types[1]": "oxxo",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][unit_amount]": "19900",
            "flag": "true",
        }


def _payment_client(handler):
    client = PaymentProviderClient(api_key="sk_test_123", base_url="https://payments.test/v1")
    client._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        headers={"Authorization": "Bearer sk_test_123"},
    )
    return client


def _checkout_kwargs():
    return dict(
        product_name="Algebra 1",
        unit_amount_cents=19900,
        currency="mxn",
        metadata={"userId": "u1", "bookSanityId": "book-1"},
        success_url="https://site.test/ok",
        cancel_url="https://site.test/cancel",
        payment_method_types=["card", "oxxo"],
        customer_email="ana@example.com",
    )


class TestPaymentProviderClient:
    """Tests for checkout session creation."""

    def test_requires_api_key(self, monkeypatch):
        monkeypatch.delenv("PAYMENT_API_KEY", raising=False)

        with pytest.raises(ValueError):
            PaymentProviderClient()

    @pytest.mark.asyncio
    async def test_create_checkout_session(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"id": "cs_1", "url": "https://pay.test/cs_1"})

        async with _payment_client(handler) as client:
            session = await client.create_checkout_session(**_checkout_kwargs())

        assert session.id == "cs_1"
        assert session.url == "https://pay.test/cs_1"
        assert captured["url"] == "https://payments.test/v1/checkout/sessions"
        assert captured["auth"] == "Bearer sk_test_123"
        form = captured["form"]
        assert form["mode"] == ["payment"]
        assert form["metadata[userId]"] == ["u1"]
        assert form["payment_intent_data[metadata][bookSanityId]"] == ["book-1"]
        assert form["line_items[0][price_data][unit_amount]"] == ["19900"]

    @pytest.mark.asyncio
    async def test_provider_error_response(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "Invalid currency"}})

        async with _payment_client(handler) as client:
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.create_checkout_session(**_checkout_kwargs())

        assert exc_info.value.status_code == 400
        assert "Invalid currency" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_authentication_failure(self):
        async with _payment_client(lambda request: httpx.Response(401)) as client:
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.create_checkout_session(**_checkout_kwargs())

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with _payment_client(handler) as client:
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.create_checkout_session(**_checkout_kwargs())

        assert exc_info.value.timeout is True

    @pytest.mark.asyncio
    async def test_response_without_url(self):
        async with _payment_client(lambda request: httpx.Response(200, json={"id": "cs_1"})) as client:
            with pytest.raises(PaymentProviderError):
                await client.create_checkout_session(**_checkout_kwargs())


def _catalog_client(handler):
    client = CatalogClient(project_id="proj123", dataset="production", api_version="2024-01-01")
    client._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


class TestCatalogClient:
    """Tests for GROQ queries against the content catalog."""

    def test_requires_project_id(self, monkeypatch):
        monkeypatch.setattr("bookgate.integrations.catalog.client.CATALOG_PROJECT_ID", None)

        with pytest.raises(ValueError):
            CatalogClient()

    @pytest.mark.asyncio
    async def test_get_book_by_slug(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["host"] = request.url.host
            captured["path"] = request.url.path
            captured["slug"] = request.url.params["$slug"]
            return httpx.Response(200, json={"result": {
                "_id": "book-1",
                "name": "Algebra 1",
                "slug": "algebra-1",
                "isPublic": False,
                "price": 199.0,
                "subscriptionPrices": {"MONTHLY": 49.0, "ANNUAL": None},
            }})

        async with _catalog_client(handler) as catalog:
            book = await catalog.get_book_by_slug("algebra-1")

        assert captured["host"] == "proj123.api.sanity.io"
        assert captured["path"] == "/v2024-01-01/data/query/production"
        assert captured["slug"] == '"algebra-1"'
        assert book.id == "book-1"
        assert book.price == 199.0
        assert book.subscription_prices["MONTHLY"] == 49.0

    @pytest.mark.asyncio
    async def test_missing_book(self):
        async with _catalog_client(lambda request: httpx.Response(200, json={"result": None})) as catalog:
            assert await catalog.get_book_by_id("nope") is None

    @pytest.mark.asyncio
    async def test_get_coupon(self):
        def handler(request):
            return httpx.Response(200, json={"result": {
                "code": "SAVE20",
                "discountType": "percentage",
                "discountValue": 20,
                "validUntil": "2099-01-01T00:00:00Z",
                "applicableProducts": ["book-1", None],
                "maxUses": 10,
            }})

        async with _catalog_client(handler) as catalog:
            coupon = await catalog.get_coupon("SAVE20")

        assert coupon.discount_value == 20.0
        assert coupon.valid_until.year == 2099
        assert coupon.applicable_products == ["book-1"]
        assert coupon.max_uses == 10

    @pytest.mark.asyncio
    async def test_error_status(self):
        async with _catalog_client(lambda request: httpx.Response(500, text="boom")) as catalog:
            with pytest.raises(CatalogAPIError) as exc_info:
                await catalog.get_book_by_slug("x")

        assert exc_info.value.status_code == 500
