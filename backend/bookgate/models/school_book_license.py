"""
SchoolBookLicense model: a school's seat pool for one book.

used_licenses is a materialized count. It is recomputed from BookAccess
rows inside the same transaction as every grant/revoke and is never
accepted as caller input.
"""

from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey,
    UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship

from bookgate.db_base import Base
from bookgate.models.base import TimestampMixin, generate_uuid, utcnow, SENTINEL_END_DATE


class SchoolBookLicense(Base, TimestampMixin):
    __tablename__ = "school_book_licenses"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    school_id = Column(
        String(36),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    book_id = Column(
        String(36),
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    total_licenses = Column(Integer, nullable=False)
    used_licenses = Column(Integer, nullable=False, default=0)

    start_date = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    end_date = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: SENTINEL_END_DATE,
    )
    is_active = Column(Boolean, nullable=False, default=True)

    book = relationship("Book")

    __table_args__ = (
        UniqueConstraint("school_id", "book_id", name="uq_school_book_license"),
        CheckConstraint("total_licenses >= 1", name="ck_license_total_positive"),
        CheckConstraint(
            "used_licenses >= 0 AND used_licenses <= total_licenses",
            name="ck_license_used_within_total",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<SchoolBookLicense(school_id={self.school_id}, book_id={self.book_id}, "
            f"used={self.used_licenses}/{self.total_licenses})>"
        )

    @property
    def remaining(self) -> int:
        return max(self.total_licenses - (self.used_licenses or 0), 0)
