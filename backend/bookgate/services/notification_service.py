"""
Notification service for purchase and expiry events.

Notifications are fire-and-forget relative to entitlement changes: callers
create them after the grant is committed and log (never raise) on failure.
Email delivery belongs to the external mail component, which reads rows
flagged email_queued.

Idempotency: every notification carries a deterministic idempotency key
(event + entity), so re-processing an event never notifies twice.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookgate.models.notification import Notification, NotificationEventType

logger = logging.getLogger(__name__)


class NotificationService:
    def __init__(self, db_session: Session):
        self.db = db_session

    def notify(
        self,
        user_id: str,
        event_type: NotificationEventType,
        title: str,
        message: str,
        idempotency_key: str,
        event_metadata: Optional[dict] = None,
        commit: bool = True,
    ) -> Optional[Notification]:
        """
        Create a notification.

        Returns None when a notification with the same idempotency key
        already exists. With commit=False the row is only flushed and the
        caller owns the transaction.
        """
        existing = (
            self.db.query(Notification.id)
            .filter(Notification.idempotency_key == idempotency_key)
            .first()
        )
        if existing is not None:
            logger.debug(
                "Duplicate notification skipped",
                extra={"idempotency_key": idempotency_key},
            )
            return None

        notification = Notification(
            user_id=user_id,
            event_type=event_type,
            title=title,
            message=message,
            event_metadata=event_metadata,
            idempotency_key=idempotency_key,
            email_queued=True,
        )

        try:
            self.db.add(notification)
            if commit:
                self.db.commit()
            else:
                self.db.flush()
        except IntegrityError:
            # Concurrent writer won the idempotency key
            self.db.rollback()
            logger.debug(
                "Duplicate notification skipped",
                extra={"idempotency_key": idempotency_key},
            )
            return None

        logger.info(
            "Notification created",
            extra={
                "notification_id": notification.id,
                "event_type": event_type.value,
                "user_id": user_id,
            },
        )
        return notification

    def notify_purchase_completed(
        self,
        user_id: str,
        book_name: str,
        provider_id: str,
        amount_cents: int,
        currency: str,
    ) -> Optional[Notification]:
        return self.notify(
            user_id=user_id,
            event_type=NotificationEventType.PURCHASE_COMPLETED,
            title="Purchase completed",
            message=f"Your purchase of {book_name} is complete. The book is now in your library.",
            idempotency_key=f"purchase_completed:{provider_id}",
            event_metadata={
                "provider_id": provider_id,
                "amount_cents": amount_cents,
                "currency": currency,
            },
        )

    def notify_subscription_activated(
        self,
        user_id: str,
        subscription_id: str,
        plan: str,
        end_date: datetime,
    ) -> Optional[Notification]:
        return self.notify(
            user_id=user_id,
            event_type=NotificationEventType.SUBSCRIPTION_ACTIVATED,
            title="Subscription active",
            message=f"Your {plan.lower()} subscription is active until {end_date.date().isoformat()}.",
            idempotency_key=f"subscription_activated:{subscription_id}:{end_date.date().isoformat()}",
            event_metadata={"subscription_id": subscription_id, "plan": plan},
        )

    def notify_payment_failed(self, user_id: str, provider_id: str) -> Optional[Notification]:
        return self.notify(
            user_id=user_id,
            event_type=NotificationEventType.PAYMENT_FAILED,
            title="Payment failed",
            message="We could not process your payment. No charge was made; please try again.",
            idempotency_key=f"payment_failed:{provider_id}",
            event_metadata={"provider_id": provider_id},
        )

    def notify_access_expiring(
        self,
        user_id: str,
        access_id: str,
        book_title: str,
        end_date: datetime,
        commit: bool = True,
    ) -> Optional[Notification]:
        return self.notify(
            user_id=user_id,
            event_type=NotificationEventType.ACCESS_EXPIRING,
            title="Access expiring soon",
            message=f"Your access to {book_title} ends on {end_date.date().isoformat()}.",
            idempotency_key=f"access_expiring:{access_id}:{end_date.date().isoformat()}",
            event_metadata={"access_id": access_id},
            commit=commit,
        )

    def notify_access_expired(
        self,
        user_id: str,
        access_id: str,
        book_title: str,
        end_date: datetime,
        commit: bool = True,
    ) -> Optional[Notification]:
        return self.notify(
            user_id=user_id,
            event_type=NotificationEventType.ACCESS_EXPIRED,
            title="Access expired",
            message=f"Your access to {book_title} has expired.",
            idempotency_key=f"access_expired:{access_id}:{end_date.date().isoformat()}",
            event_metadata={"access_id": access_id},
            commit=commit,
        )
