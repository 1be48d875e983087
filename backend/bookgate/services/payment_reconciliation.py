"""
Payment Reconciliation Engine.

Translates payment provider webhook events into entitlement state,
exactly once. Processes events with:
- Deduplication on the provider event id (webhook_events ledger)
- Idempotency on the checkout session id (Transaction.provider_id)
- Out-of-order tolerance: grants and subscription periods only move forward
- Notifications sent after commit; their failure never undoes a grant

Processing failures roll back and raise ReconciliationError so the webhook
route answers 5xx and the provider retries the delivery.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookgate.errors import (
    BookAccessError,
    IdempotentNoop,
    ReconciliationError,
)
from bookgate.integrations.catalog.client import CatalogClient
from bookgate.integrations.payments.webhooks import PaymentEvent
from bookgate.models.base import ensure_utc, utcnow
from bookgate.models.book import Book
from bookgate.models.purchase import Purchase, Transaction, TransactionStatus
from bookgate.models.subscription import Subscription, SubscriptionStatus
from bookgate.models.user import User
from bookgate.models.webhook_event import WebhookEvent
from bookgate.services.book_projection import BookProjectionService
from bookgate.services.license_allocation import LicenseAllocationManager
from bookgate.services.notification_service import NotificationService
from bookgate.services.purchase_variants import SubscriptionPurchase, parse_purchase

logger = logging.getLogger(__name__)


COMPLETED_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
FAILED_EVENTS = {
    "payment_intent.payment_failed",
    "checkout.session.async_payment_failed",
    "checkout.session.expired",
}
LIFECYCLE_EVENTS = {
    "customer.subscription.updated",
    "customer.subscription.deleted",
}

# Provider subscription status -> local status. Anything else is EXPIRED.
PROVIDER_SUBSCRIPTION_STATUS = {
    "active": SubscriptionStatus.ACTIVE,
    "canceled": SubscriptionStatus.CANCELED,
    "past_due": SubscriptionStatus.SUSPENDED,
}


@dataclass
class ReconciliationResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    transaction_id: Optional[str] = None
    access_id: Optional[str] = None
    subscription_id: Optional[str] = None
    skipped_reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "message": self.message,
            "skipped_reason": self.skipped_reason,
        }


class PaymentMetadata(BaseModel):
    """Checkout metadata written by CheckoutService. Amounts in cents."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(alias="userId", min_length=1)
    book_sanity_id: str = Field(alias="bookSanityId", min_length=1)
    book_name: Optional[str] = Field(default=None, alias="bookName")
    purchase_type: Optional[str] = Field(default=None, alias="purchaseType")
    subscription_plan: Optional[str] = Field(default=None, alias="subscriptionPlan")
    original_amount: Optional[int] = Field(default=None, alias="originalAmount")
    discount_amount: int = Field(default=0, alias="discountAmount")
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")

    @field_validator("book_name", "purchase_type", "subscription_plan", "coupon_code", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("original_amount", mode="before")
    @classmethod
    def blank_amount_to_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("discount_amount", mode="before")
    @classmethod
    def blank_discount_to_zero(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            return 0
        return v


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class PaymentReconciliationEngine:
    """
    Handler for payment provider events with idempotency.

    Usage:
        engine = PaymentReconciliationEngine(db)
        result = await engine.handle_event(parse_event(body))
    """

    def __init__(
        self,
        db_session: Session,
        catalog_client_factory: Optional[Callable[[], CatalogClient]] = None,
    ):
        self.db = db_session
        self.allocation = LicenseAllocationManager(db_session)
        self.projection = BookProjectionService(db_session)
        self.notifications = NotificationService(db_session)
        self._catalog_client_factory = catalog_client_factory or CatalogClient

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle_event(
        self,
        event: PaymentEvent,
        payload_hash: Optional[str] = None,
    ) -> ReconciliationResult:
        obj = event.data_object

        if event.type in COMPLETED_EVENTS:
            if event.type == "checkout.session.completed" and obj.get("payment_status") == "unpaid":
                # Voucher payments (OXXO) settle later via async_payment_succeeded
                logger.info(
                    "Checkout completed awaiting asynchronous payment",
                    extra={"event_id": event.id, "provider_id": obj.get("id")},
                )
                return ReconciliationResult(
                    processed=False,
                    message="Awaiting asynchronous payment",
                    skipped_reason="awaiting_payment",
                )
            return await self.handle_payment_completed(
                event_id=event.id,
                metadata=event.metadata,
                provider_id=obj.get("id"),
                amount_cents=obj.get("amount_total"),
                currency=obj.get("currency"),
                payment_intent_id=obj.get("payment_intent"),
                event_type=event.type,
                payload_hash=payload_hash,
            )

        if event.type in FAILED_EVENTS:
            is_intent = event.type.startswith("payment_intent.")
            return await self.handle_payment_failed(
                event_id=event.id,
                provider_id=None if is_intent else obj.get("id"),
                payment_intent_id=obj.get("id") if is_intent else obj.get("payment_intent"),
                metadata=event.metadata,
                event_type=event.type,
                notify=event.type != "checkout.session.expired",
                payload_hash=payload_hash,
            )

        if event.type in LIFECYCLE_EVENTS:
            return await self.handle_subscription_lifecycle_change(event, payload_hash=payload_hash)

        logger.info("Ignoring unhandled event type", extra={"event_id": event.id, "event_type": event.type})
        return ReconciliationResult(
            processed=False,
            message=f"Unhandled event type: {event.type}",
            skipped_reason="ignored_event_type",
        )

    # =========================================================================
    # Payment completed
    # =========================================================================

    async def handle_payment_completed(
        self,
        event_id: str,
        metadata: Dict[str, Any],
        provider_id: str,
        amount_cents: Optional[int] = None,
        currency: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        event_type: str = "checkout.session.completed",
        payload_hash: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Grant access for a completed payment, exactly once per provider_id.

        Creates or extends the BookAccess grant, writes the Purchase,
        completes the Transaction and, for recurring plans, creates or
        extends the Subscription. All in one commit.
        """
        if self._is_duplicate(event_id):
            return self._duplicate_result(event_id)

        if not provider_id:
            raise ReconciliationError("Completed event without checkout session id", event_id=event_id)

        try:
            meta = PaymentMetadata.model_validate(metadata or {})
            variant = parse_purchase(meta.purchase_type, meta.subscription_plan)
        except (PydanticValidationError, BookAccessError) as e:
            logger.error(
                "Payment metadata invalid, event recorded without grant",
                extra={"event_id": event_id, "provider_id": provider_id, "error": str(e)},
            )
            return self._record_skip(event_id, event_type, payload_hash, "invalid_metadata")

        user = self.db.get(User, meta.user_id)
        if user is None:
            logger.error(
                "Payment for unknown user, event recorded without grant",
                extra={"event_id": event_id, "provider_id": provider_id, "user_id": meta.user_id},
            )
            return self._record_skip(event_id, event_type, payload_hash, "user_not_found")

        transaction = self._get_transaction(provider_id)
        if transaction is not None and transaction.status == TransactionStatus.COMPLETED:
            return self._already_completed(event_id, event_type, payload_hash, provider_id)

        book = await self._ensure_book(meta.book_sanity_id, meta.book_name)

        now = utcnow()
        grant_end = variant.grant_end_date(now)
        original = meta.original_amount if meta.original_amount is not None else amount_cents
        final_amount = amount_cents if amount_cents is not None else max(
            (original or 0) - meta.discount_amount, 0
        )
        currency = (currency or (transaction.currency if transaction else None) or "mxn").lower()

        subscription = None
        try:
            transaction = self._claim_transaction(
                transaction, user.id, provider_id, variant, metadata, final_amount, currency, now
            )
            if transaction is None:
                self.db.rollback()
                return self._already_completed(event_id, event_type, payload_hash, provider_id)

            if variant.is_recurring:
                subscription = self._create_or_extend_subscription(user.id, book, variant.plan, now)
                grant_end = max(grant_end, ensure_utc(subscription.end_date))

            access = self.allocation.grant_purchased_access(user.id, book, grant_end, now=now)

            purchase = Purchase(
                user_id=user.id,
                book_sanity_id=book.sanity_id,
                book_name=meta.book_name or book.title,
                purchase_type=variant.purchase_type,
                plan=variant.plan.value if variant.plan else None,
                amount_cents=final_amount,
                original_amount_cents=original,
                discount_cents=meta.discount_amount,
                coupon_code=meta.coupon_code,
                currency=currency,
                expires_at=ensure_utc(access.end_date),
                transaction_id=transaction.id,
            )
            self.db.add(purchase)
            self.db.flush()

            transaction.status = TransactionStatus.COMPLETED
            transaction.amount_cents = final_amount
            transaction.currency = currency
            transaction.completed_at = now
            transaction.failed_at = None
            transaction.purchase_id = purchase.id
            transaction.provider_payment_id = payment_intent_id or transaction.provider_payment_id

            self._record_event(event_id, event_type, payload_hash, "processed")
            self.db.commit()

        except IntegrityError:
            # Lost a race with a concurrent delivery of the same payment
            self.db.rollback()
            if self._is_duplicate(event_id) or self._is_completed(provider_id):
                return self._duplicate_result(event_id)
            logger.error("Integrity error reconciling payment", extra={"event_id": event_id}, exc_info=True)
            raise ReconciliationError("Payment reconciliation failed", event_id=event_id)
        except Exception as e:
            self.db.rollback()
            logger.error(
                "Error reconciling completed payment",
                extra={"event_id": event_id, "provider_id": provider_id, "error": str(e)},
                exc_info=True,
            )
            raise ReconciliationError("Payment reconciliation failed", event_id=event_id) from e

        logger.info(
            "Payment reconciled",
            extra={
                "event_id": event_id,
                "provider_id": provider_id,
                "user_id": user.id,
                "book_id": book.id,
                "purchase_type": variant.purchase_type.value,
                "amount_cents": final_amount,
            },
        )

        self._notify_purchase(user.id, book, provider_id, final_amount, currency, subscription)

        return ReconciliationResult(
            processed=True,
            message="Payment reconciled",
            transaction_id=transaction.id,
            access_id=access.id,
            subscription_id=subscription.id if subscription else None,
        )

    # =========================================================================
    # Payment failed
    # =========================================================================

    async def handle_payment_failed(
        self,
        event_id: str,
        provider_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        event_type: str = "payment_intent.payment_failed",
        notify: bool = True,
        payload_hash: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Mark the PENDING transaction FAILED.

        Never touches access: a failure arriving after a success (retried
        charge, out-of-order delivery) leaves the COMPLETED transaction and
        its grant alone.
        """
        if self._is_duplicate(event_id):
            return self._duplicate_result(event_id)

        transaction = self._find_failed_transaction(provider_id, payment_intent_id, metadata or {})
        if transaction is None:
            logger.warning(
                "No transaction for failed payment",
                extra={"event_id": event_id, "provider_id": provider_id},
            )
            return self._record_skip(event_id, event_type, payload_hash, "transaction_not_found")

        if transaction.status != TransactionStatus.PENDING:
            logger.info(
                "Failed payment for non-pending transaction ignored",
                extra={
                    "event_id": event_id,
                    "provider_id": transaction.provider_id,
                    "status": transaction.status.value,
                },
            )
            return self._record_skip(event_id, event_type, payload_hash, IdempotentNoop.code)

        try:
            transaction.status = TransactionStatus.FAILED
            transaction.failed_at = utcnow()
            if payment_intent_id and not transaction.provider_payment_id:
                transaction.provider_payment_id = payment_intent_id
            self._record_event(event_id, event_type, payload_hash, "processed")
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error("Error recording failed payment", extra={"event_id": event_id}, exc_info=True)
            raise ReconciliationError("Failed-payment reconciliation failed", event_id=event_id) from e

        logger.info(
            "Transaction marked failed",
            extra={"event_id": event_id, "provider_id": transaction.provider_id},
        )

        if notify:
            try:
                self.notifications.notify_payment_failed(transaction.user_id, transaction.provider_id)
            except Exception:
                self.db.rollback()
                logger.warning(
                    "Payment failed notification could not be created",
                    extra={"provider_id": transaction.provider_id},
                    exc_info=True,
                )

        return ReconciliationResult(
            processed=True,
            message="Transaction marked failed",
            transaction_id=transaction.id,
        )

    # =========================================================================
    # Subscription lifecycle
    # =========================================================================

    async def handle_subscription_lifecycle_change(
        self,
        event: PaymentEvent,
        payload_hash: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Sync a subscription's status and period from the provider.

        Renewal (active with a later period end) extends the subscription
        and the book grant. Cancellation keeps access until end_date.
        """
        if self._is_duplicate(event.id):
            return self._duplicate_result(event.id)

        obj = event.data_object
        provider_subscription_id = obj.get("id")
        subscription = self._find_subscription(provider_subscription_id, event.metadata)
        if subscription is None:
            logger.warning(
                "Subscription not found for lifecycle event",
                extra={"event_id": event.id, "provider_subscription_id": provider_subscription_id},
            )
            return self._record_skip(event.id, event.type, payload_hash, "subscription_not_found")

        if event.type == "customer.subscription.deleted":
            new_status = SubscriptionStatus.CANCELED
        else:
            new_status = PROVIDER_SUBSCRIPTION_STATUS.get(
                (obj.get("status") or "").lower(), SubscriptionStatus.EXPIRED
            )
        period_end = _from_timestamp(obj.get("current_period_end"))
        now = utcnow()

        try:
            if provider_subscription_id and not subscription.provider_subscription_id:
                subscription.provider_subscription_id = provider_subscription_id

            current_end = ensure_utc(subscription.end_date)
            renewed = (
                new_status == SubscriptionStatus.ACTIVE
                and period_end is not None
                and period_end > current_end
            )

            if renewed:
                subscription.end_date = period_end
                subscription.next_billing_date = period_end
                subscription.status = SubscriptionStatus.ACTIVE
                subscription.auto_renew = not obj.get("cancel_at_period_end", False)
                subscription.canceled_at = None
                if subscription.book_id:
                    self.allocation.extend_until(subscription.user_id, subscription.book_id, period_end)
            elif new_status == SubscriptionStatus.ACTIVE:
                if subscription.status in (SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED):
                    # Stale "active" delivered after a cancellation: keep the later state
                    logger.info(
                        "Out-of-order active event ignored",
                        extra={"event_id": event.id, "subscription_id": subscription.id},
                    )
                else:
                    subscription.status = SubscriptionStatus.ACTIVE
                    subscription.auto_renew = not obj.get("cancel_at_period_end", False)
            elif new_status == SubscriptionStatus.CANCELED:
                subscription.status = SubscriptionStatus.CANCELED
                subscription.auto_renew = False
                subscription.next_billing_date = None
                subscription.canceled_at = subscription.canceled_at or now
            else:
                subscription.status = new_status

            self._record_event(event.id, event.type, payload_hash, "processed")
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(
                "Error processing subscription lifecycle event",
                extra={"event_id": event.id, "subscription_id": subscription.id},
                exc_info=True,
            )
            raise ReconciliationError("Subscription lifecycle processing failed", event_id=event.id) from e

        logger.info(
            "Subscription lifecycle synced",
            extra={
                "event_id": event.id,
                "subscription_id": subscription.id,
                "status": subscription.status.value,
                "renewed": renewed,
            },
        )
        return ReconciliationResult(
            processed=True,
            message="Subscription updated",
            subscription_id=subscription.id,
        )

    # =========================================================================
    # Internals
    # =========================================================================

    def _is_duplicate(self, event_id: str) -> bool:
        existing = self.db.query(WebhookEvent.id).filter(
            WebhookEvent.provider_event_id == event_id
        ).first()
        return existing is not None

    def _is_completed(self, provider_id: str) -> bool:
        transaction = self._get_transaction(provider_id)
        return transaction is not None and transaction.status == TransactionStatus.COMPLETED

    def _duplicate_result(self, event_id: str) -> ReconciliationResult:
        logger.info("Duplicate webhook skipped", extra={"event_id": event_id})
        return ReconciliationResult(
            processed=False,
            message="Duplicate webhook - already processed",
            skipped_reason="duplicate",
        )

    def _record_event(self, event_id: str, event_type: str, payload_hash: Optional[str], outcome: str) -> None:
        self.db.add(WebhookEvent(
            provider_event_id=event_id,
            event_type=event_type,
            payload_hash=payload_hash,
            outcome=outcome,
            processed_at=utcnow(),
        ))

    def _record_skip(
        self,
        event_id: str,
        event_type: str,
        payload_hash: Optional[str],
        reason: str,
    ) -> ReconciliationResult:
        """Record a non-retryable event so redeliveries are skipped."""
        try:
            self._record_event(event_id, event_type, payload_hash, reason)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            return self._duplicate_result(event_id)
        return ReconciliationResult(
            processed=False,
            message=f"Event skipped: {reason}",
            skipped_reason=reason,
        )

    def _already_completed(
        self,
        event_id: str,
        event_type: str,
        payload_hash: Optional[str],
        provider_id: str,
    ) -> ReconciliationResult:
        noop = IdempotentNoop("Transaction already completed", provider_id=provider_id)
        logger.info(noop.message, extra={"event_id": event_id, "provider_id": provider_id})
        return self._record_skip(event_id, event_type, payload_hash, noop.code)

    def _claim_transaction(
        self,
        transaction: Optional[Transaction],
        user_id: str,
        provider_id: str,
        variant,
        metadata: Dict[str, Any],
        amount_cents: int,
        currency: str,
        now: datetime,
    ) -> Optional[Transaction]:
        """
        Move the checkout session's transaction to COMPLETED before any
        other write in the unit of work.

        The status-guarded UPDATE takes the row lock and re-checks the
        status against committed data, so of two deliveries racing on one
        session exactly one claims it. Returns None for the loser.
        """
        if transaction is None:
            # Session created but never recorded locally (checkout timeout).
            # provider_id is unique, so a concurrent insert fails the flush.
            transaction = Transaction(
                user_id=user_id,
                provider_id=provider_id,
                type=variant.transaction_type,
                status=TransactionStatus.COMPLETED,
                amount_cents=amount_cents,
                currency=currency,
                completed_at=now,
                extra_metadata=dict(metadata),
            )
            self.db.add(transaction)
            self.db.flush()
            return transaction

        claimed = (
            self.db.query(Transaction)
            .filter(
                Transaction.id == transaction.id,
                Transaction.status != TransactionStatus.COMPLETED,
            )
            .update(
                {
                    Transaction.status: TransactionStatus.COMPLETED,
                    Transaction.completed_at: now,
                },
                synchronize_session=False,
            )
        )
        if claimed != 1:
            logger.info(
                "Transaction completed by a concurrent delivery",
                extra={"provider_id": provider_id},
            )
            return None

        self.db.refresh(transaction)
        return transaction

    def _get_transaction(self, provider_id: Optional[str]) -> Optional[Transaction]:
        if not provider_id:
            return None
        return self.db.query(Transaction).filter(Transaction.provider_id == provider_id).first()

    def _find_failed_transaction(
        self,
        provider_id: Optional[str],
        payment_intent_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> Optional[Transaction]:
        transaction = self._get_transaction(provider_id)
        if transaction is not None:
            return transaction

        if payment_intent_id:
            transaction = self.db.query(Transaction).filter(
                Transaction.provider_payment_id == payment_intent_id
            ).first()
            if transaction is not None:
                return transaction

        # Payment intents carry the checkout metadata but not the session id
        user_id = metadata.get("userId")
        book_sanity_id = metadata.get("bookSanityId")
        if not user_id or not book_sanity_id:
            return None
        pending = (
            self.db.query(Transaction)
            .filter(
                Transaction.user_id == user_id,
                Transaction.status == TransactionStatus.PENDING,
            )
            .order_by(Transaction.created_at.desc())
            .all()
        )
        for candidate in pending:
            if (candidate.extra_metadata or {}).get("bookSanityId") == book_sanity_id:
                return candidate
        return None

    def _find_subscription(
        self,
        provider_subscription_id: Optional[str],
        metadata: Dict[str, Any],
    ) -> Optional[Subscription]:
        if provider_subscription_id:
            subscription = self.db.query(Subscription).filter(
                Subscription.provider_subscription_id == provider_subscription_id
            ).first()
            if subscription is not None:
                return subscription

        user_id = metadata.get("userId")
        book_sanity_id = metadata.get("bookSanityId")
        if not user_id or not book_sanity_id:
            return None
        return (
            self.db.query(Subscription)
            .join(Book, Book.id == Subscription.book_id)
            .filter(Subscription.user_id == user_id, Book.sanity_id == book_sanity_id)
            .order_by(Subscription.end_date.desc())
            .first()
        )

    def _create_or_extend_subscription(self, user_id: str, book: Book, plan, now: datetime) -> Subscription:
        """
        A new period starts when the current one ends, so paying early
        never loses days.
        """
        subscription = (
            self.db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.book_id == book.id)
            .order_by(Subscription.end_date.desc())
            .first()
        )

        if subscription is not None and subscription.is_current(now):
            base = max(now, ensure_utc(subscription.end_date))
        else:
            base = now

        end_date = SubscriptionPurchase(plan=plan).grant_end_date(base)

        if subscription is None:
            subscription = Subscription(user_id=user_id, book_id=book.id, start_date=now)
            self.db.add(subscription)
        elif not subscription.is_current(now):
            subscription.start_date = now

        subscription.plan_type = plan
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.end_date = end_date
        subscription.next_billing_date = end_date
        subscription.auto_renew = True
        subscription.canceled_at = None
        self.db.flush()
        return subscription

    async def _ensure_book(self, sanity_id: str, fallback_title: Optional[str]) -> Book:
        book = self.projection.get(sanity_id)
        if book is not None:
            return book

        try:
            catalog = self._catalog_client_factory()
        except ValueError as e:
            logger.warning("Catalog not configured", extra={"error": str(e)})
            return await self.projection.ensure(sanity_id, None, fallback_title=fallback_title)

        async with catalog:
            return await self.projection.ensure(sanity_id, catalog, fallback_title=fallback_title)

    def _notify_purchase(
        self,
        user_id: str,
        book: Book,
        provider_id: str,
        amount_cents: int,
        currency: str,
        subscription: Optional[Subscription],
    ) -> None:
        try:
            self.notifications.notify_purchase_completed(
                user_id, book.title, provider_id, amount_cents, currency
            )
            if subscription is not None:
                self.notifications.notify_subscription_activated(
                    user_id,
                    subscription.id,
                    subscription.plan_type.value,
                    ensure_utc(subscription.end_date),
                )
        except Exception:
            self.db.rollback()
            logger.warning(
                "Purchase notification could not be created",
                extra={"user_id": user_id, "provider_id": provider_id},
                exc_info=True,
            )
