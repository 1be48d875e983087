"""
Checkout route: turns a purchase intent into a provider checkout URL.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from bookgate.api.dependencies.identity import get_current_identity
from bookgate.database.session import get_db_session
from bookgate.services.checkout_service import CheckoutService
from bookgate.services.identity_resolver import ResolvedIdentity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkout", tags=["checkout"])


class CreateCheckoutRequest(BaseModel):
    """Request to create a checkout URL."""
    book_slug: str = Field(..., min_length=1, description="Catalog slug of the book")
    plan: Optional[str] = Field(None, description="MONTHLY, QUARTERLY, ANNUAL or LIFETIME; omit for a single purchase")
    coupon_code: Optional[str] = None


class CheckoutResponse(BaseModel):
    """Response with checkout URL."""
    checkout_url: str
    provider_id: str
    amount_cents: int
    discount_cents: int


def get_checkout_service(db_session: Session = Depends(get_db_session)) -> CheckoutService:
    return CheckoutService(db_session)


@router.post("", response_model=CheckoutResponse)
async def create_checkout(
    request: CreateCheckoutRequest,
    identity: ResolvedIdentity = Depends(get_current_identity),
    service: CheckoutService = Depends(get_checkout_service),
):
    result = await service.create_checkout_intent(
        identity.user_id,
        request.book_slug,
        plan=request.plan,
        coupon_code=request.coupon_code,
    )
    return CheckoutResponse(
        checkout_url=result.checkout_url,
        provider_id=result.provider_id,
        amount_cents=result.amount_cents,
        discount_cents=result.discount_cents,
    )
