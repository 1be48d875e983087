"""
Book model: local projection of an externally authored catalog entry.

Only the fields needed for entitlement checks and indexing live here;
description, cover art and file URLs stay in the content catalog.
"""

from sqlalchemy import Column, String, Boolean

from bookgate.db_base import Base
from bookgate.models.base import TimestampMixin, generate_uuid


class Book(Base, TimestampMixin):
    """
    Local book projection.

    sanity_id is the join key into the content catalog. At most one local
    Book exists per catalog id; callers go through BookProjectionService.upsert
    rather than inserting directly.
    """

    __tablename__ = "books"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    sanity_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="Catalog document id"
    )

    title = Column(String(500), nullable=False)
    subject = Column(String(255), nullable=True)
    slug = Column(String(255), nullable=True, index=True)

    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Free book readable by everyone"
    )

    def __repr__(self) -> str:
        return f"<Book(id={self.id}, sanity_id={self.sanity_id}, title={self.title})>"
