"""
Purchase and Transaction models: append-only financial history.

CRITICAL: Purchases are never updated or deleted. Transactions only move
PENDING -> COMPLETED or PENDING -> FAILED (FAILED -> COMPLETED when a
retried charge later succeeds). provider_id is the idempotency key used to
reconcile payment webhooks exactly once.
"""

import enum

from sqlalchemy import (
    Column, String, Integer, DateTime, Enum, ForeignKey, Index, JSON
)
from sqlalchemy.dialects.postgresql import JSONB

from bookgate.db_base import Base
from bookgate.models.base import TimestampMixin, generate_uuid


JSONType = JSON().with_variant(JSONB(), "postgresql")


class PurchaseType(str, enum.Enum):
    SINGLE_BOOK = "SINGLE_BOOK"
    SUBSCRIPTION = "SUBSCRIPTION"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TransactionType(str, enum.Enum):
    PURCHASE = "PURCHASE"
    SUBSCRIPTION = "SUBSCRIPTION"


class Purchase(Base, TimestampMixin):
    """Immutable record of a completed purchase (amounts in minor units)."""

    __tablename__ = "purchases"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    book_sanity_id = Column(String(255), nullable=False, index=True)
    book_name = Column(String(500), nullable=True)

    purchase_type = Column(Enum(PurchaseType), nullable=False)
    plan = Column(String(32), nullable=True, comment="PlanType value for subscriptions")

    amount_cents = Column(Integer, nullable=False, comment="Final amount after discount")
    original_amount_cents = Column(Integer, nullable=True)
    discount_cents = Column(Integer, nullable=False, default=0)
    coupon_code = Column(String(64), nullable=True, index=True)
    currency = Column(String(8), nullable=False, default="mxn")

    expires_at = Column(DateTime(timezone=True), nullable=False)

    # One purchase per paid checkout session
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="RESTRICT", use_alter=True),
        nullable=True,
        unique=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Purchase(id={self.id}, user_id={self.user_id}, "
            f"book={self.book_sanity_id}, amount={self.amount_cents})>"
        )


class Transaction(Base, TimestampMixin):
    """
    Payment attempt keyed by the provider checkout session id.

    A PENDING row exists only once the provider session was actually
    created; at most one COMPLETED row exists per provider_id.
    """

    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    provider_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Provider checkout session id (idempotency key)"
    )
    provider_payment_id = Column(String(255), nullable=True, index=True)

    type = Column(Enum(TransactionType), nullable=False)
    status = Column(
        Enum(TransactionStatus),
        nullable=False,
        default=TransactionStatus.PENDING,
        index=True,
    )

    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False, default="mxn")

    purchase_id = Column(
        String(36),
        ForeignKey("purchases.id", ondelete="SET NULL"),
        nullable=True,
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    extra_metadata = Column(JSONType, nullable=True)

    __table_args__ = (
        Index("ix_transactions_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Transaction(id={self.id}, provider_id={self.provider_id}, "
            f"status={self.status})>"
        )
