#!/usr/bin/env python3
"""
Script to send signed payment webhooks to a local server.

Usage:
    # Start your server first
    uvicorn main:app --reload

    # Then run this script from backend/
    python -m scripts.send_test_webhook --event completed --user-id <id> --book <sanity id>
    python -m scripts.send_test_webhook --event failed --session cs_test_123
    python -m scripts.send_test_webhook --event invalid_signature
"""

import argparse
import json
import os
import time
import uuid

import httpx

from bookgate.integrations.payments.webhooks import compute_signature

DEFAULT_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "whsec_test_secret")
DEFAULT_BASE_URL = os.getenv("TEST_BASE_URL", "http://localhost:8000")
WEBHOOK_PATH = "/api/webhooks/payments"


def send_webhook(base_url: str, secret: str, event: dict, signature: str = None):
    """Sign and POST one event."""
    url = f"{base_url}{WEBHOOK_PATH}"
    payload = json.dumps(event).encode("utf-8")
    timestamp = int(time.time())
    signature = signature or compute_signature(payload, timestamp, secret)

    headers = {
        "Content-Type": "application/json",
        "Stripe-Signature": f"t={timestamp},v1={signature}",
    }

    print(f"\n{'='*60}")
    print(f"Sending webhook: {event['type']} ({event['id']})")
    print(f"URL: {url}")
    print(f"Payload: {json.dumps(event, indent=2)}")
    print(f"{'='*60}\n")

    try:
        response = httpx.post(url, content=payload, headers=headers)
    except httpx.HTTPError as e:
        print(f"Error: {e}")
        return None
    print(f"Response Status: {response.status_code}")
    print(f"Response Body: {response.text}")
    return response


def _event(event_type: str, data_object: dict) -> dict:
    return {
        "id": f"evt_test_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": data_object},
    }


def completed_event(args) -> dict:
    return _event("checkout.session.completed", {
        "id": args.session,
        "object": "checkout.session",
        "amount_total": args.amount,
        "currency": "mxn",
        "payment_status": "paid",
        "metadata": {
            "userId": args.user_id,
            "bookSanityId": args.book,
            "bookName": args.book,
            "purchaseType": "SUBSCRIPTION" if args.plan else "SINGLE_BOOK",
            "subscriptionPlan": args.plan or "",
            "originalAmount": str(args.amount),
            "discountAmount": "0",
            "couponCode": "",
        },
    })


def failed_event(args) -> dict:
    return _event("checkout.session.async_payment_failed", {
        "id": args.session,
        "object": "checkout.session",
        "metadata": {"userId": args.user_id, "bookSanityId": args.book},
    })


def canceled_event(args) -> dict:
    return _event("customer.subscription.deleted", {
        "id": args.subscription,
        "object": "subscription",
        "status": "canceled",
        "metadata": {"userId": args.user_id, "bookSanityId": args.book},
    })


EVENTS = {
    "completed": completed_event,
    "failed": failed_event,
    "subscription_canceled": canceled_event,
    "invalid_signature": completed_event,
}


def main():
    parser = argparse.ArgumentParser(description="Send signed payment webhooks locally")
    parser.add_argument("--event", choices=list(EVENTS.keys()), default="completed")
    parser.add_argument("--user-id", default="00000000-0000-0000-0000-000000000000")
    parser.add_argument("--book", default="book-test")
    parser.add_argument("--session", default=f"cs_test_{uuid.uuid4().hex[:12]}")
    parser.add_argument("--subscription", default="sub_test_123")
    parser.add_argument("--plan", default=None, help="MONTHLY, QUARTERLY, ANNUAL or LIFETIME")
    parser.add_argument("--amount", type=int, default=19900, help="Amount in cents")
    parser.add_argument(
        "--secret",
        default=DEFAULT_SECRET,
        help="Webhook secret (default: PAYMENT_WEBHOOK_SECRET env var)"
    )
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL)

    args = parser.parse_args()
    event = EVENTS[args.event](args)

    if args.event == "invalid_signature":
        response = send_webhook(args.base_url, args.secret, event, signature="invalid_signature_here")
        if response is not None and response.status_code == 400:
            print("\nCorrectly rejected invalid signature")
        else:
            print("\nWARNING: Invalid signature was NOT rejected")
        return

    send_webhook(args.base_url, args.secret, event)


if __name__ == "__main__":
    main()
