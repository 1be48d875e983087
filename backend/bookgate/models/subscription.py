"""
Subscription model for recurring book plans.

Status is synced from payment provider lifecycle webhooks. Cancellation
never revokes the current period: access stays valid until end_date.
LIFETIME plans use the sentinel end date instead of NULL.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, String, Boolean, DateTime, Enum, ForeignKey, Index
)
from sqlalchemy.orm import relationship

from bookgate.db_base import Base
from bookgate.models.base import (
    TimestampMixin, generate_uuid, ensure_utc, utcnow, SENTINEL_END_DATE
)


class PlanType(str, enum.Enum):
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"
    LIFETIME = "LIFETIME"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"            # Paid and within period
    CANCELED = "CANCELED"        # Will not renew; access kept until end_date
    SUSPENDED = "SUSPENDED"      # Payment past due
    EXPIRED = "EXPIRED"          # Period ended


class Subscription(Base, TimestampMixin):
    """
    Recurring plan for one user.

    book_id is the book the plan was bought for; renewals extend that
    book's BookAccess grant together with the subscription period.
    """

    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    book_id = Column(
        String(36),
        ForeignKey("books.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    plan_type = Column(Enum(PlanType), nullable=False)
    status = Column(
        Enum(SubscriptionStatus),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    start_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_date = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: SENTINEL_END_DATE,
    )
    auto_renew = Column(Boolean, nullable=False, default=True)
    next_billing_date = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    provider_subscription_id = Column(
        String(255),
        nullable=True,
        unique=True,
        comment="Payment provider subscription id"
    )

    book = relationship("Book")

    __table_args__ = (
        Index("ix_subscriptions_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan={self.plan_type}, status={self.status})>"
        )

    def is_current(self, now: Optional[datetime] = None) -> bool:
        """ACTIVE or CANCELED subscriptions keep access until end_date."""
        if self.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED):
            return False
        return ensure_utc(self.end_date) >= (now or utcnow())
