"""
User model for the multi-tenant reading platform.

User represents a local user record linked to the external identity provider.
Roles are evaluated as "has role", never "is role": a teacher who also
coordinates a school holds both TEACHER and COORDINATOR.

CRITICAL:
- NO PASSWORDS are stored locally - the identity provider owns authentication
- Users are soft-deleted (deleted_at) so purchase and access history survives
- Role claims inside session tokens are never trusted; roles live here
"""

import enum
from typing import Iterable, List

from sqlalchemy import Column, String, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship

from bookgate.db_base import Base
from bookgate.models.base import TimestampMixin, generate_uuid


class UserRole(str, enum.Enum):
    """Platform roles. A user holds one or more."""
    ADMIN = "ADMIN"
    COORDINATOR = "COORDINATOR"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"
    PUBLIC = "PUBLIC"


STAFF_ROLES = frozenset({UserRole.COORDINATOR, UserRole.TEACHER})


class User(Base, TimestampMixin):
    """
    Local user record.

    Key concepts:
    - external_id is the identity provider's subject (may be linked lazily on first login)
    - school_id is the owning institution (tenant boundary), optional for public readers
    - group memberships go through GroupMembership
    """

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    external_id = Column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        comment="Identity provider subject id"
    )

    email = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
    )

    name = Column(String(255), nullable=True)

    roles = Column(
        JSON,
        nullable=False,
        default=lambda: [UserRole.PUBLIC.value],
        comment="Non-empty list of UserRole values"
    )

    school_id = Column(
        String(36),
        ForeignKey("schools.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    deleted_at = Column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Tombstone; set instead of deleting the row"
    )

    school = relationship("School", foreign_keys=[school_id], back_populates="members")
    memberships = relationship(
        "GroupMembership",
        back_populates="user",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, roles={self.roles})>"

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def role_set(self) -> frozenset:
        return frozenset(UserRole(r) for r in (self.roles or []))

    def has_role(self, role: UserRole) -> bool:
        return role in self.role_set

    def has_any_role(self, roles: Iterable[UserRole]) -> bool:
        return bool(self.role_set & frozenset(roles))

    def add_role(self, role: UserRole) -> None:
        # Reassign so the JSON column is flagged dirty
        current: List[str] = list(self.roles or [])
        if role.value not in current:
            current.append(role.value)
        self.roles = current
