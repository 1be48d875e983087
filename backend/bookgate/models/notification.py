"""
Notification model for purchase and expiry notifications.

Rows are the hand-off to the external mail component: it picks up rows
with email_queued set. Delivery itself is outside this service.
"""

import enum

from sqlalchemy import Column, String, Text, Enum, DateTime, Boolean, Index

from bookgate.db_base import Base
from bookgate.models.base import TimestampMixin, generate_uuid
from bookgate.models.purchase import JSONType


class NotificationEventType(str, enum.Enum):
    """Types of events that can trigger notifications."""
    PURCHASE_COMPLETED = "purchase_completed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    ACCESS_EXPIRING = "access_expiring"
    ACCESS_EXPIRED = "access_expired"
    PAYMENT_FAILED = "payment_failed"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    READ = "read"


class Notification(Base, TimestampMixin):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(String(36), nullable=False, index=True)
    event_type = Column(Enum(NotificationEventType), nullable=False, index=True)

    title = Column(String(500), nullable=False)
    message = Column(Text, nullable=False)
    event_metadata = Column(JSONType, nullable=True)

    idempotency_key = Column(String(255), nullable=False, unique=True)

    status = Column(
        Enum(NotificationStatus),
        nullable=False,
        default=NotificationStatus.PENDING,
    )
    email_queued = Column(Boolean, nullable=False, default=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_notifications_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return f"<Notification(id={self.id}, user_id={self.user_id}, event={self.event_type})>"
