"""
Checkout intent creation.

Flow:
1. Load the book and its prices from the content catalog
2. Pick the price for the purchase variant, apply an optional coupon
3. Create the provider checkout session
4. Only then record a PENDING transaction keyed by the session id

If the provider call fails or times out nothing is written locally: a
session that was created despite a timeout is still reconciled by its
checkout.session.completed webhook, which creates the transaction.
"""

import os
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookgate.errors import ConflictError, ExternalServiceError, NotFound, ValidationError
from bookgate.integrations.catalog.client import CatalogAPIError, CatalogClient
from bookgate.integrations.payments.client import PaymentProviderClient, PaymentProviderError
from bookgate.models.purchase import Transaction, TransactionStatus
from bookgate.models.user import User
from bookgate.services.coupons import CouponValidator, to_cents
from bookgate.services.purchase_variants import (
    PurchaseVariant,
    SingleBook,
    SubscriptionPurchase,
    parse_plan,
)

logger = logging.getLogger(__name__)

CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "mxn")
CHECKOUT_PAYMENT_METHODS = [
    m.strip() for m in os.getenv("CHECKOUT_PAYMENT_METHODS", "card,oxxo").split(",") if m.strip()
]
SITE_URL = os.getenv("SITE_URL", "http://localhost:3000")


@dataclass
class CheckoutResult:
    """Result of creating a checkout intent."""
    checkout_url: str
    provider_id: str
    transaction_id: str
    amount_cents: int
    discount_cents: int = 0


def get_payment_client() -> PaymentProviderClient:
    return PaymentProviderClient()


def get_catalog_client() -> CatalogClient:
    return CatalogClient()


class CheckoutService:
    """
    Creates provider checkout sessions for book purchases.

    Client factories are injectable so tests can substitute mocks.
    """

    def __init__(
        self,
        db_session: Session,
        payment_client_factory: Callable[[], PaymentProviderClient] = get_payment_client,
        catalog_client_factory: Callable[[], CatalogClient] = get_catalog_client,
    ):
        self.db = db_session
        self._payment_client_factory = payment_client_factory
        self._catalog_client_factory = catalog_client_factory

    async def create_checkout_intent(
        self,
        user_id: str,
        book_slug: str,
        plan: Optional[str] = None,
        coupon_code: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Create a checkout session and its PENDING transaction.

        Raises:
            NotFound: user or book missing
            ValidationError: bad plan, non-positive price, invalid coupon
            ExternalServiceError: catalog or payment provider failure
        """
        user = self.db.get(User, user_id)
        if user is None or user.is_deleted:
            raise NotFound("User not found", user_id=user_id)
        if not book_slug:
            raise ValidationError("Book slug is required")

        parsed_plan = parse_plan(plan)
        variant: PurchaseVariant = (
            SubscriptionPurchase(plan=parsed_plan) if parsed_plan else SingleBook()
        )
        coupon_code = (coupon_code or "").strip().upper() or None

        try:
            async with self._catalog_client_factory() as catalog:
                book = await catalog.get_book_by_slug(book_slug)
                coupon = None
                if book is not None and coupon_code:
                    coupon = await catalog.get_coupon(coupon_code)
        except CatalogAPIError as e:
            raise ExternalServiceError(
                "Content catalog unavailable", service="catalog", status_code=e.status_code
            )

        if book is None:
            raise NotFound("Book not found", book_slug=book_slug)

        if variant.plan is not None:
            price = book.subscription_prices.get(variant.plan.value) or book.price
        else:
            price = book.price
        original_cents = to_cents(price)
        if original_cents <= 0:
            raise ValidationError("Book has no valid price", book_slug=book_slug)

        discount_cents = 0
        if coupon_code:
            coupon_result = CouponValidator(self.db).validate(coupon, book.id, original_cents)
            if not coupon_result.valid:
                raise ValidationError(coupon_result.error, coupon_code=coupon_code)
            discount_cents = coupon_result.discount_cents

        final_cents = original_cents - discount_cents
        if final_cents <= 0:
            raise ValidationError("Discounted amount must be greater than zero")

        metadata = {
            "userId": user.id,
            "bookSanityId": book.id,
            "bookName": book.name,
            "purchaseType": variant.purchase_type.value,
            "subscriptionPlan": variant.plan.value if variant.plan else "",
            "originalAmount": str(original_cents),
            "discountAmount": str(discount_cents),
            "couponCode": coupon_code or "",
        }
        product_name = book.name
        if variant.plan is not None:
            product_name = f"{book.name} - {variant.plan.value.capitalize()}"

        try:
            async with self._payment_client_factory() as payments:
                session = await payments.create_checkout_session(
                    product_name=product_name,
                    unit_amount_cents=final_cents,
                    currency=CHECKOUT_CURRENCY,
                    metadata=metadata,
                    success_url=f"{SITE_URL}/mis-libros?success=true&session_id={{CHECKOUT_SESSION_ID}}",
                    cancel_url=f"{SITE_URL}/libros/{book_slug}?canceled=true",
                    payment_method_types=CHECKOUT_PAYMENT_METHODS,
                    customer_email=user.email,
                )
        except PaymentProviderError as e:
            logger.error(
                "Checkout session creation failed",
                extra={"user_id": user_id, "book_sanity_id": book.id, "timeout": e.timeout},
            )
            raise ExternalServiceError(
                "Payment provider unavailable",
                service="payment_provider",
                status_code=e.status_code,
            )

        transaction = Transaction(
            user_id=user.id,
            provider_id=session.id,
            type=variant.transaction_type,
            status=TransactionStatus.PENDING,
            amount_cents=final_cents,
            currency=CHECKOUT_CURRENCY,
            extra_metadata=metadata,
        )
        try:
            self.db.add(transaction)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("Checkout session already recorded", provider_id=session.id)

        logger.info(
            "Checkout intent created",
            extra={
                "user_id": user_id,
                "book_sanity_id": book.id,
                "provider_id": session.id,
                "amount_cents": final_cents,
                "discount_cents": discount_cents,
            },
        )
        return CheckoutResult(
            checkout_url=session.url,
            provider_id=session.id,
            transaction_id=transaction.id,
            amount_cents=final_cents,
            discount_cents=discount_cents,
        )
