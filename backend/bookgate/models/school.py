"""
Organizational hierarchy: School -> Grade -> Group, plus group membership.

School is the tenant boundary. A coordinator coordinates exactly one school;
the unique constraint on coordinator_id backs the write-time check in
SchoolService.assign_coordinator.
"""

from sqlalchemy import (
    Column, String, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship

from bookgate.db_base import Base
from bookgate.models.base import TimestampMixin, generate_uuid


class School(Base, TimestampMixin):
    __tablename__ = "schools"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=True, unique=True, index=True)

    coordinator_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL", use_alter=True, name="fk_schools_coordinator"),
        nullable=True,
        unique=True,
        comment="At most one school per coordinator"
    )

    members = relationship("User", foreign_keys="User.school_id", back_populates="school")
    grades = relationship("Grade", back_populates="school", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<School(id={self.id}, name={self.name})>"


class Grade(Base, TimestampMixin):
    __tablename__ = "grades"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    school_id = Column(
        String(36),
        ForeignKey("schools.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)

    school = relationship("School", back_populates="grades")
    groups = relationship("Group", back_populates="grade", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Grade(id={self.id}, school_id={self.school_id}, name={self.name})>"


class Group(Base, TimestampMixin):
    __tablename__ = "groups"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    grade_id = Column(
        String(36),
        ForeignKey("grades.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    teacher_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    grade = relationship("Grade", back_populates="groups")
    memberships = relationship(
        "GroupMembership",
        back_populates="group",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Group(id={self.id}, grade_id={self.grade_id}, name={self.name})>"


class GroupMembership(Base, TimestampMixin):
    """Join row between a user and a group. (user, group) is unique."""

    __tablename__ = "group_memberships"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    group_id = Column(
        String(36),
        ForeignKey("groups.id", ondelete="CASCADE"),
        nullable=False,
    )

    user = relationship("User", back_populates="memberships")
    group = relationship("Group", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("user_id", "group_id", name="uq_group_memberships_user_group"),
        Index("ix_group_memberships_group", "group_id"),
    )
