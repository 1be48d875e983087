"""
Coupon validation and discount calculation.

Coupons are authored in the content catalog. Usage is counted from local
purchases so the max-uses limit reflects completed payments only.
Amounts are integer minor units (cents); catalog values are major units.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from bookgate.integrations.catalog.client import CatalogCoupon
from bookgate.models.base import ensure_utc, utcnow
from bookgate.models.purchase import Purchase

logger = logging.getLogger(__name__)

PERCENTAGE = "percentage"
FIXED = "fixed"


def to_cents(amount: Optional[float]) -> int:
    return int(round((amount or 0) * 100))


@dataclass
class CouponResult:
    valid: bool
    coupon: Optional[CatalogCoupon] = None
    discount_cents: int = 0
    final_amount_cents: int = 0
    error: Optional[str] = None


def calculate_discount(amount_cents: int, coupon: CatalogCoupon) -> int:
    """Discount in cents, never more than the amount itself."""
    if coupon.discount_type == PERCENTAGE:
        discount = int(round(amount_cents * coupon.discount_value / 100))
    else:
        discount = to_cents(coupon.discount_value)
    return max(0, min(discount, amount_cents))


class CouponValidator:
    def __init__(self, db_session: Session):
        self.db = db_session

    def count_uses(self, code: str) -> int:
        return (
            self.db.query(func.count(Purchase.id))
            .filter(Purchase.coupon_code == code)
            .scalar()
        ) or 0

    def validate(
        self,
        coupon: Optional[CatalogCoupon],
        book_sanity_id: str,
        amount_cents: int,
        now: Optional[datetime] = None,
    ) -> CouponResult:
        """Check a coupon against the purchase and compute the discount."""
        now = ensure_utc(now) if now else utcnow()

        if coupon is None or not coupon.is_active:
            return CouponResult(valid=False, error="Coupon not found or inactive")

        if coupon.valid_from and now < ensure_utc(coupon.valid_from):
            return CouponResult(valid=False, coupon=coupon, error="Coupon is not valid yet")

        if coupon.valid_until and now > ensure_utc(coupon.valid_until):
            return CouponResult(valid=False, coupon=coupon, error="Coupon has expired")

        if coupon.max_uses and self.count_uses(coupon.code) >= coupon.max_uses:
            return CouponResult(valid=False, coupon=coupon, error="Coupon usage limit reached")

        if coupon.min_purchase_amount and amount_cents < to_cents(coupon.min_purchase_amount):
            return CouponResult(
                valid=False,
                coupon=coupon,
                error=f"Minimum purchase amount is {coupon.min_purchase_amount}",
            )

        if coupon.applicable_products and book_sanity_id not in coupon.applicable_products:
            return CouponResult(valid=False, coupon=coupon, error="Coupon does not apply to this book")

        discount = calculate_discount(amount_cents, coupon)
        return CouponResult(
            valid=True,
            coupon=coupon,
            discount_cents=discount,
            final_amount_cents=amount_cents - discount,
        )
