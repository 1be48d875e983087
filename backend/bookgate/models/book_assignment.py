"""
BookAssignment model: hierarchical grants evaluated at read time.

An assignment says "this book is available to everyone currently in this
scope". Membership is joined at resolution time, never fanned out per user.
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, String, Boolean, DateTime, Enum, Index

from bookgate.db_base import Base
from bookgate.models.base import TimestampMixin, generate_uuid, ensure_utc, utcnow


class AssignmentTargetType(str, enum.Enum):
    SCHOOL = "school"
    GRADE = "grade"
    GROUP = "group"
    TEACHER = "teacher"
    STUDENT = "student"


class BookAssignment(Base, TimestampMixin):
    __tablename__ = "book_assignments"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    book_sanity_id = Column(
        String(255),
        nullable=False,
        index=True,
        comment="Catalog id of the assigned book"
    )

    assigned_to_type = Column(Enum(AssignmentTargetType), nullable=False)
    assigned_to_id = Column(String(36), nullable=False)

    end_date = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="NULL means unbounded"
    )
    is_active = Column(Boolean, nullable=False, default=True)
    assigned_by = Column(String(36), nullable=True)

    __table_args__ = (
        Index(
            "ix_book_assignments_lookup",
            "book_sanity_id",
            "assigned_to_type",
            "assigned_to_id",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<BookAssignment(id={self.id}, book={self.book_sanity_id}, "
            f"{self.assigned_to_type}={self.assigned_to_id})>"
        )

    def is_effectively_active(self, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        if self.end_date is None:
            return True
        return ensure_utc(self.end_date) >= (now or utcnow())
