"""
Payment provider webhook route.

SECURITY: Every webhook MUST pass signature verification before parsing.
The provider signs "<timestamp>.<raw body>" with the endpoint secret.

Answering non-2xx makes the provider retry, so only processing failures
(ReconciliationError, 500) do that. Duplicates and ignored types are
acknowledged with 200.
"""

import os
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from bookgate.database.session import get_db_session
from bookgate.integrations.payments.webhooks import (
    WebhookSignatureError,
    parse_event,
    payload_hash,
    verify_webhook_signature,
)
from bookgate.services.payment_reconciliation import PaymentReconciliationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    processed: bool = False
    message: str = "Webhook processed"
    skipped_reason: Optional[str] = None


def get_webhook_secret() -> str:
    secret = os.getenv("PAYMENT_WEBHOOK_SECRET")
    if not secret:
        logger.error("PAYMENT_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured",
        )
    return secret


def get_reconciliation_engine(db_session: Session = Depends(get_db_session)) -> PaymentReconciliationEngine:
    return PaymentReconciliationEngine(db_session)


@router.post("/payments", response_model=WebhookResponse)
async def handle_payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    secret: str = Depends(get_webhook_secret),
    engine: PaymentReconciliationEngine = Depends(get_reconciliation_engine),
):
    body = await request.body()

    try:
        verify_webhook_signature(body, stripe_signature, secret)
    except WebhookSignatureError as e:
        logger.warning("Invalid payment webhook signature", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        )

    try:
        event = parse_event(body)
    except ValueError as e:
        logger.error("Invalid payment webhook body", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook body",
        )

    logger.info(
        "Payment webhook received",
        extra={"event_id": event.id, "event_type": event.type},
    )

    # ReconciliationError propagates: 500 makes the provider retry
    result = await engine.handle_event(event, payload_hash=payload_hash(body))
    return WebhookResponse(
        processed=result.processed,
        message=result.message,
        skipped_reason=result.skipped_reason,
    )
