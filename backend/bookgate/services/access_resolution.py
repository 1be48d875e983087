"""
Access Resolution Engine.

Decides at read time whether a user may open a book, until when, and
through which grant. Six mechanisms are evaluated, in precedence order:

    1. public/free book
    2. direct BookAccess row
    3. direct BookAssignment (student/teacher targeting the user)
    4. group assignment (groups the user belongs to or teaches)
    5. grade assignment (grades reachable through those groups)
    6. school assignment (the user's school)

The first matching mechanism names the reason; the expiry is the latest
among ALL matching grants, with an unbounded grant beating any date.

This module never writes. Decisions are not cached across calls because
grants change between requests (purchases, revocations).
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from bookgate.models.base import ensure_utc, utcnow
from bookgate.models.book import Book
from bookgate.models.book_access import AccessStatus, BookAccess
from bookgate.models.book_assignment import AssignmentTargetType, BookAssignment
from bookgate.models.user import User, UserRole
from bookgate.services.identity_resolver import load_memberships

logger = logging.getLogger(__name__)


class AccessReason(str, enum.Enum):
    """Reason codes reported with every decision."""
    # Granted
    PUBLIC = "public"
    DIRECT_ACCESS = "direct_access"
    DIRECT_ASSIGNMENT = "direct_assignment"
    GROUP_ASSIGNMENT = "group_assignment"
    GRADE_ASSIGNMENT = "grade_assignment"
    SCHOOL_ASSIGNMENT = "school_assignment"
    ADMIN = "admin"
    # Denied
    NOT_ASSIGNED = "not_assigned"
    EXPIRED = "expired"
    REVOKED = "revoked"
    SUSPENDED = "suspended"
    NOT_STARTED = "not_started"
    USER_NOT_FOUND = "user_not_found"
    ROLE_NOT_ALLOWED = "role_not_allowed"


# Precedence of granting mechanisms, first wins for the reported reason
MECHANISM_PRECEDENCE = [
    AccessReason.PUBLIC,
    AccessReason.DIRECT_ACCESS,
    AccessReason.DIRECT_ASSIGNMENT,
    AccessReason.GROUP_ASSIGNMENT,
    AccessReason.GRADE_ASSIGNMENT,
    AccessReason.SCHOOL_ASSIGNMENT,
]

ASSIGNMENT_MECHANISMS = {
    AssignmentTargetType.STUDENT: AccessReason.DIRECT_ASSIGNMENT,
    AssignmentTargetType.TEACHER: AccessReason.DIRECT_ASSIGNMENT,
    AssignmentTargetType.GROUP: AccessReason.GROUP_ASSIGNMENT,
    AssignmentTargetType.GRADE: AccessReason.GRADE_ASSIGNMENT,
    AssignmentTargetType.SCHOOL: AccessReason.SCHOOL_ASSIGNMENT,
}

GUIDE_ROLES = (UserRole.TEACHER, UserRole.COORDINATOR, UserRole.ADMIN)


@dataclass(frozen=True)
class MatchedGrant:
    """One grant that currently authorizes the user. expires_at None = unbounded."""
    mechanism: AccessReason
    expires_at: Optional[datetime]
    source_id: Optional[str] = None


@dataclass
class AccessDecision:
    """Result of resolving (user, book)."""
    granted: bool
    reason: AccessReason
    expires_at: Optional[datetime] = None
    matches: List[MatchedGrant] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "granted": self.granted,
            "reason": self.reason.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "mechanisms": [m.mechanism.value for m in self.matches],
        }


def latest_expiry(grants: List[MatchedGrant]) -> Optional[datetime]:
    """Most generous expiry; any unbounded grant makes the result unbounded."""
    if any(g.expires_at is None for g in grants):
        return None
    return max(g.expires_at for g in grants)


def _denial_for_access_row(row: BookAccess, now: datetime) -> AccessReason:
    if row.status == AccessStatus.REVOKED:
        return AccessReason.REVOKED
    if row.status == AccessStatus.SUSPENDED:
        return AccessReason.SUSPENDED
    if row.status == AccessStatus.EXPIRED or ensure_utc(row.end_date) < now:
        return AccessReason.EXPIRED
    if ensure_utc(row.start_date) > now:
        return AccessReason.NOT_STARTED
    # is_active False with an ACTIVE status is a manual deactivation
    return AccessReason.REVOKED


class AccessResolutionEngine:
    """
    Read-only resolver over the entitlement store.

    Usage:
        engine = AccessResolutionEngine(db)
        decision = engine.resolve(user_id, book_sanity_id)
        if not decision.granted:
            ...  # route to purchase flow using decision.reason
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def resolve(
        self,
        user_id: str,
        book_sanity_id: str,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        now = ensure_utc(now) if now else utcnow()

        user = self.db.get(User, user_id)
        if user is None or user.is_deleted:
            return AccessDecision(granted=False, reason=AccessReason.USER_NOT_FOUND)

        book = (
            self.db.query(Book)
            .filter(Book.sanity_id == book_sanity_id)
            .first()
        )

        matches: List[MatchedGrant] = []
        denial = AccessReason.NOT_ASSIGNED

        if book is not None and book.is_public and book.is_active:
            matches.append(MatchedGrant(AccessReason.PUBLIC, None, book.id))

        if book is not None:
            row = (
                self.db.query(BookAccess)
                .filter(
                    BookAccess.user_id == user_id,
                    BookAccess.book_id == book.id,
                )
                .first()
            )
            if row is not None:
                if row.is_effectively_active(now):
                    matches.append(MatchedGrant(
                        AccessReason.DIRECT_ACCESS,
                        ensure_utc(row.end_date),
                        row.id,
                    ))
                else:
                    denial = _denial_for_access_row(row, now)

        group_ids, grade_ids = load_memberships(self.db, user_id)
        assignments = self._scoped_assignments(
            user, group_ids, grade_ids, book_sanity_id=book_sanity_id
        )
        saw_expired_assignment = False
        for assignment in assignments:
            if assignment.is_effectively_active(now):
                matches.append(MatchedGrant(
                    ASSIGNMENT_MECHANISMS[assignment.assigned_to_type],
                    ensure_utc(assignment.end_date),
                    assignment.id,
                ))
            else:
                saw_expired_assignment = True

        if not matches:
            if denial == AccessReason.NOT_ASSIGNED and saw_expired_assignment:
                denial = AccessReason.EXPIRED
            logger.debug(
                "Book access denied",
                extra={"user_id": user_id, "book_sanity_id": book_sanity_id, "reason": denial.value},
            )
            return AccessDecision(granted=False, reason=denial)

        matches.sort(key=lambda m: MECHANISM_PRECEDENCE.index(m.mechanism))
        return AccessDecision(
            granted=True,
            reason=matches[0].mechanism,
            expires_at=latest_expiry(matches),
            matches=matches,
        )

    def list_accessible_books(self, user_id: str, now: Optional[datetime] = None) -> List[str]:
        """
        Sanity ids of every book the user can open right now.

        Used by the catalog listing to mark owned books. Same mechanisms
        as resolve(), one query per mechanism.
        """
        now = ensure_utc(now) if now else utcnow()

        user = self.db.get(User, user_id)
        if user is None or user.is_deleted:
            return []

        accessible: Set[str] = set()

        public_rows = (
            self.db.query(Book.sanity_id)
            .filter(Book.is_public.is_(True), Book.is_active.is_(True))
            .all()
        )
        accessible.update(r.sanity_id for r in public_rows)

        direct_rows = (
            self.db.query(BookAccess, Book.sanity_id)
            .join(Book, Book.id == BookAccess.book_id)
            .filter(
                BookAccess.user_id == user_id,
                BookAccess.is_active.is_(True),
                BookAccess.status == AccessStatus.ACTIVE,
            )
            .all()
        )
        accessible.update(
            sanity_id for row, sanity_id in direct_rows if row.is_effectively_active(now)
        )

        group_ids, grade_ids = load_memberships(self.db, user_id)
        for assignment in self._scoped_assignments(user, group_ids, grade_ids):
            if assignment.is_effectively_active(now):
                accessible.add(assignment.book_sanity_id)

        return sorted(accessible)

    def check_guide_access(
        self,
        user_id: str,
        book_sanity_id: str,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """
        Teacher guides: staff roles only, and the book itself must be accessible.

        Admins always see guides.
        """
        user = self.db.get(User, user_id)
        if user is None or user.is_deleted:
            return AccessDecision(granted=False, reason=AccessReason.USER_NOT_FOUND)

        if not user.has_any_role(GUIDE_ROLES):
            return AccessDecision(granted=False, reason=AccessReason.ROLE_NOT_ALLOWED)

        if user.has_role(UserRole.ADMIN):
            return AccessDecision(granted=True, reason=AccessReason.ADMIN)

        return self.resolve(user_id, book_sanity_id, now=now)

    def _scoped_assignments(
        self,
        user: User,
        group_ids,
        grade_ids,
        book_sanity_id: Optional[str] = None,
    ) -> List[BookAssignment]:
        """
        Active assignments targeting the user or any scope the user is in.

        All four assignment mechanisms are fetched in one query; the end
        date is checked by the caller.
        """
        scope_filters = [
            and_(
                BookAssignment.assigned_to_type.in_(
                    [AssignmentTargetType.STUDENT, AssignmentTargetType.TEACHER]
                ),
                BookAssignment.assigned_to_id == user.id,
            )
        ]
        if group_ids:
            scope_filters.append(and_(
                BookAssignment.assigned_to_type == AssignmentTargetType.GROUP,
                BookAssignment.assigned_to_id.in_(list(group_ids)),
            ))
        if grade_ids:
            scope_filters.append(and_(
                BookAssignment.assigned_to_type == AssignmentTargetType.GRADE,
                BookAssignment.assigned_to_id.in_(list(grade_ids)),
            ))
        if user.school_id:
            scope_filters.append(and_(
                BookAssignment.assigned_to_type == AssignmentTargetType.SCHOOL,
                BookAssignment.assigned_to_id == user.school_id,
            ))

        query = self.db.query(BookAssignment).filter(
            BookAssignment.is_active.is_(True),
            or_(*scope_filters),
        )
        if book_sanity_id is not None:
            query = query.filter(BookAssignment.book_sanity_id == book_sanity_id)
        return query.all()
