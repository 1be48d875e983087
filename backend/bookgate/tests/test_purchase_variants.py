"""
Tests for purchase variant parsing and coupon validation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from bookgate.errors import ValidationError
from bookgate.integrations.catalog.client import CatalogCoupon
from bookgate.models.base import SENTINEL_END_DATE, utcnow
from bookgate.models.purchase import Purchase, PurchaseType
from bookgate.models.subscription import PlanType
from bookgate.services.coupons import CouponValidator, calculate_discount, to_cents
from bookgate.services.purchase_variants import (
    SingleBook,
    SubscriptionPurchase,
    parse_plan,
    parse_purchase,
)

from conftest import _create_user

START = datetime(2024, 1, 31, 12, 0, tzinfo=timezone.utc)


class TestParsePurchase:
    @pytest.mark.parametrize("plan", [None, "", "undefined", "null", "MONTHLY"])
    def test_single_book_ignores_plan(self, plan):
        variant = parse_purchase("SINGLE_BOOK", plan)

        assert variant == SingleBook()
        assert variant.grant_end_date(START) == SENTINEL_END_DATE

    def test_missing_type_is_single_book(self):
        assert isinstance(parse_purchase(None, None), SingleBook)

    def test_subscription_plan_is_normalized(self):
        variant = parse_purchase("subscription", "annual")

        assert variant == SubscriptionPurchase(plan=PlanType.ANNUAL)
        assert variant.purchase_type == PurchaseType.SUBSCRIPTION

    def test_subscription_without_plan(self):
        with pytest.raises(ValidationError):
            parse_purchase("SUBSCRIPTION", "undefined")

    def test_unknown_type(self):
        with pytest.raises(ValidationError):
            parse_purchase("GIFT", None)

    def test_unknown_plan(self):
        with pytest.raises(ValidationError):
            parse_plan("WEEKLY")


class TestGrantWindows:
    """End dates per plan, using calendar months."""

    @pytest.mark.parametrize("plan,expected", [
        (PlanType.MONTHLY, datetime(2024, 2, 29, 12, 0, tzinfo=timezone.utc)),
        (PlanType.QUARTERLY, datetime(2024, 7, 31, 12, 0, tzinfo=timezone.utc)),
        (PlanType.ANNUAL, datetime(2025, 1, 31, 12, 0, tzinfo=timezone.utc)),
        (PlanType.LIFETIME, SENTINEL_END_DATE),
    ])
    def test_plan_end_dates(self, plan, expected):
        assert SubscriptionPurchase(plan=plan).grant_end_date(START) == expected

    def test_lifetime_is_not_recurring(self):
        assert SubscriptionPurchase(plan=PlanType.LIFETIME).is_recurring is False
        assert SubscriptionPurchase(plan=PlanType.MONTHLY).is_recurring is True
        assert SingleBook().is_recurring is False


class TestDiscounts:
    def test_to_cents(self):
        assert to_cents(199.99) == 19999
        assert to_cents(None) == 0

    def test_percentage(self):
        coupon = CatalogCoupon(code="P10", discount_type="percentage", discount_value=10)

        assert calculate_discount(19900, coupon) == 1990

    def test_fixed_is_capped_at_amount(self):
        coupon = CatalogCoupon(code="F500", discount_type="fixed", discount_value=500)

        assert calculate_discount(19900, coupon) == 19900


class TestCouponValidator:
    """Tests for coupon eligibility checks."""

    def test_valid_coupon(self, db_session):
        coupon = CatalogCoupon(code="SAVE20", discount_type="percentage", discount_value=20)

        result = CouponValidator(db_session).validate(coupon, "book-1", 10000)

        assert result.valid is True
        assert result.discount_cents == 2000
        assert result.final_amount_cents == 8000

    def test_missing_coupon(self, db_session):
        result = CouponValidator(db_session).validate(None, "book-1", 10000)

        assert result.valid is False

    def test_not_yet_valid(self, db_session):
        coupon = CatalogCoupon(
            code="SOON", discount_type="fixed", discount_value=10,
            valid_from=utcnow() + timedelta(days=1),
        )

        assert CouponValidator(db_session).validate(coupon, "book-1", 10000).valid is False

    def test_expired(self, db_session):
        coupon = CatalogCoupon(
            code="OLD", discount_type="fixed", discount_value=10,
            valid_until=utcnow() - timedelta(days=1),
        )

        result = CouponValidator(db_session).validate(coupon, "book-1", 10000)

        assert result.valid is False
        assert result.error == "Coupon has expired"

    def test_minimum_purchase(self, db_session):
        coupon = CatalogCoupon(
            code="BIG", discount_type="fixed", discount_value=10, min_purchase_amount=500
        )

        assert CouponValidator(db_session).validate(coupon, "book-1", 10000).valid is False

    def test_applicable_products(self, db_session):
        coupon = CatalogCoupon(
            code="ONLY1", discount_type="fixed", discount_value=10, applicable_products=["book-1"]
        )
        validator = CouponValidator(db_session)

        assert validator.validate(coupon, "book-1", 10000).valid is True
        assert validator.validate(coupon, "book-2", 10000).valid is False

    def test_usage_limit_counts_purchases(self, db_session):
        user = _create_user(db_session, roles=["PUBLIC"])
        db_session.add(Purchase(
            user_id=user.id,
            book_sanity_id="book-1",
            purchase_type=PurchaseType.SINGLE_BOOK,
            amount_cents=8000,
            discount_cents=2000,
            coupon_code="ONCE",
            expires_at=SENTINEL_END_DATE,
        ))
        db_session.commit()
        coupon = CatalogCoupon(code="ONCE", discount_type="percentage", discount_value=20, max_uses=1)

        result = CouponValidator(db_session).validate(coupon, "book-1", 10000)

        assert result.valid is False
        assert result.error == "Coupon usage limit reached"
