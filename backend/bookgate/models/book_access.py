"""
BookAccess model: direct per-user entitlement grants.

A grant is effectively active iff is_active and status == ACTIVE and now
falls inside [start_date, end_date]. The time window is always checked
directly so a lagging expiry sweep never extends access.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, String, Boolean, DateTime, Enum, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from bookgate.db_base import Base
from bookgate.models.base import (
    TimestampMixin, generate_uuid, ensure_utc, utcnow, SENTINEL_END_DATE
)


class AccessStatus(str, enum.Enum):
    """BookAccess lifecycle. EXPIRED and REVOKED are terminal."""
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"
    SUSPENDED = "SUSPENDED"


class BookAccess(Base, TimestampMixin):
    """
    Direct book grant for one user.

    group_id / grade_id record which bulk scope created the row (provenance
    only, no foreign key). (user_id, book_id) is unique: re-granting updates
    the existing row instead of inserting a second one.
    """

    __tablename__ = "book_access"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    book_id = Column(
        String(36),
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    start_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_date = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: SENTINEL_END_DATE,
        comment="Sentinel 2099-12-31 for permanent grants"
    )

    is_active = Column(Boolean, nullable=False, default=True)
    status = Column(
        Enum(AccessStatus),
        nullable=False,
        default=AccessStatus.ACTIVE,
        index=True,
    )

    group_id = Column(String(36), nullable=True, comment="Provenance: bulk grant by group")
    grade_id = Column(String(36), nullable=True, comment="Provenance: bulk grant by grade")
    assigned_by = Column(String(36), nullable=True, comment="User who created the grant")

    expiry_warning_sent_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Set once the ACCESS_EXPIRING notification was emitted"
    )

    book = relationship("Book")

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", name="uq_book_access_user_book"),
        Index("ix_book_access_status_end", "status", "end_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<BookAccess(id={self.id}, user_id={self.user_id}, "
            f"book_id={self.book_id}, status={self.status})>"
        )

    def is_effectively_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if not self.is_active or self.status != AccessStatus.ACTIVE:
            return False
        start = ensure_utc(self.start_date)
        end = ensure_utc(self.end_date)
        return start <= now <= end
