"""
License Allocation Manager.

Mutates BookAccess rows in bulk and keeps school license pools honest.

CRITICAL:
- One logical transaction per operation: any failure rolls back everything
- Grants are idempotent per (user, book); existing rows are reused
- used_licenses is recomputed from BookAccess rows while the license row
  is locked (SELECT ... FOR UPDATE), never read-modify-written
- Overflow policy: a grant that would exceed a pool rejects the WHOLE batch
"""

import enum
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookgate.errors import (
    BookAccessError,
    CapacityExceeded,
    ConflictError,
    EmptyScope,
    NotFound,
    ValidationError,
)
from bookgate.models.base import SENTINEL_END_DATE, ensure_utc, utcnow
from bookgate.models.book import Book
from bookgate.models.book_access import AccessStatus, BookAccess
from bookgate.models.school import Grade, Group, GroupMembership, School
from bookgate.models.school_book_license import SchoolBookLicense
from bookgate.models.user import STAFF_ROLES, User

logger = logging.getLogger(__name__)


class ScopeType(str, enum.Enum):
    INDIVIDUAL = "individual"
    SCHOOL = "school"
    GRADE = "grade"
    GROUP = "group"


@dataclass(frozen=True)
class GrantScope:
    """Target of a bulk grant. user_ids is only read for INDIVIDUAL scopes."""
    type: ScopeType
    target_id: Optional[str] = None
    user_ids: Sequence[str] = ()


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime = SENTINEL_END_DATE

    def __post_init__(self):
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))
        if self.end <= self.start:
            raise ValidationError(
                "End date must be after start date",
                start=self.start.isoformat(),
                end=self.end.isoformat(),
            )

    @classmethod
    def from_optional(cls, start: Optional[datetime] = None, end: Optional[datetime] = None):
        return cls(start=start or utcnow(), end=end or SENTINEL_END_DATE)


@dataclass
class BulkGrantResult:
    assigned_count: int = 0
    already_had_access_count: int = 0
    reactivated_count: int = 0
    granted_user_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "assigned_count": self.assigned_count,
            "already_had_access_count": self.already_had_access_count,
            "reactivated_count": self.reactivated_count,
        }


@dataclass
class RevokeResult:
    revoked_count: int
    used_licenses: Optional[int] = None

    def to_dict(self) -> dict:
        return {"revoked_count": self.revoked_count, "used_licenses": self.used_licenses}


@dataclass
class MoveResult:
    moved_count: int
    already_in_target_count: int = 0

    def to_dict(self) -> dict:
        return {
            "moved_count": self.moved_count,
            "already_in_target_count": self.already_in_target_count,
        }


@dataclass
class _Provenance:
    group_id: Optional[str] = None
    grade_id: Optional[str] = None


class LicenseAllocationManager:
    """
    Bulk grant/revoke of book access with license pool enforcement.

    Usage:
        manager = LicenseAllocationManager(db)
        result = manager.grant_bulk(
            book_id,
            GrantScope(ScopeType.GROUP, target_id=group_id),
            DateRange.from_optional(),
            assigned_by=admin_id,
        )
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    # =========================================================================
    # Bulk grant / revoke
    # =========================================================================

    def grant_bulk(
        self,
        book_id: str,
        scope: GrantScope,
        date_range: Optional[DateRange] = None,
        assigned_by: Optional[str] = None,
    ) -> BulkGrantResult:
        """
        Grant a book to every user in a scope.

        Raises:
            NotFound: book, scope target or an individual user does not exist
            EmptyScope: the scope resolved to zero users
            CapacityExceeded: a license pool would overflow (nothing granted)
        """
        date_range = date_range or DateRange.from_optional()
        book = self._get_book(book_id)
        user_ids, provenance = self._resolve_scope(scope)

        try:
            result = self._apply_grants(book, user_ids, date_range, provenance, assigned_by)
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(
                "Concurrent grant detected, batch rolled back",
                extra={"book_id": book_id, "error": str(e.orig)},
            )
            raise ConflictError("Access was granted concurrently, retry the request")
        except BookAccessError:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error("Bulk grant failed", extra={"book_id": book_id}, exc_info=True)
            raise

        logger.info(
            "Bulk grant completed",
            extra={
                "book_id": book_id,
                "scope_type": scope.type.value,
                "target_id": scope.target_id,
                "assigned_count": result.assigned_count,
                "already_had_access_count": result.already_had_access_count,
                "reactivated_count": result.reactivated_count,
            },
        )
        return result

    def revoke_bulk(self, book_id: str, user_ids: Sequence[str], school_id: str) -> RevokeResult:
        """
        Delete the grants of the given school users for a book.

        The license pool's used count is recomputed afterwards, which also
        repairs any earlier drift.
        """
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            raise ValidationError("No users selected for revocation")

        self._get_book(book_id)
        if self.db.get(School, school_id) is None:
            raise NotFound("School not found", school_id=school_id)

        in_school = {
            r.id for r in self.db.query(User.id).filter(
                User.id.in_(user_ids), User.school_id == school_id
            )
        }
        outside = [u for u in user_ids if u not in in_school]
        if outside:
            raise ValidationError(
                "Some users do not belong to the school",
                user_ids=outside,
            )

        try:
            license_row = self._lock_license(school_id, book_id)
            revoked = (
                self.db.query(BookAccess)
                .filter(BookAccess.book_id == book_id, BookAccess.user_id.in_(user_ids))
                .delete(synchronize_session=False)
            )
            used = None
            if license_row is not None:
                used = self._store_used_count(license_row)
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("Bulk revoke failed", extra={"book_id": book_id}, exc_info=True)
            raise

        logger.info(
            "Bulk revoke completed",
            extra={"book_id": book_id, "school_id": school_id, "revoked_count": revoked},
        )
        return RevokeResult(revoked_count=revoked, used_licenses=used)

    def move_students(
        self,
        student_ids: Sequence[str],
        source_group_id: str,
        target_group_id: str,
    ) -> MoveResult:
        """
        Move students between two groups of the same grade, atomically.

        Either every student leaves the source and joins the target, or
        nothing changes.
        """
        student_ids = list(dict.fromkeys(student_ids))
        if not student_ids:
            raise ValidationError("No students selected")
        if source_group_id == target_group_id:
            raise ValidationError("Source and target group are the same")

        source = self.db.get(Group, source_group_id)
        target = self.db.get(Group, target_group_id)
        if source is None or target is None:
            raise NotFound(
                "Group not found",
                group_id=source_group_id if source is None else target_group_id,
            )
        if source.grade_id != target.grade_id:
            raise ValidationError("Students can only be moved between groups of the same grade")

        memberships = (
            self.db.query(GroupMembership)
            .filter(
                GroupMembership.group_id == source_group_id,
                GroupMembership.user_id.in_(student_ids),
            )
            .all()
        )
        found = {m.user_id for m in memberships}
        missing = [s for s in student_ids if s not in found]
        if missing:
            raise ValidationError("Some students are not in the source group", user_ids=missing)

        already_in_target = {
            r.user_id for r in self.db.query(GroupMembership.user_id).filter(
                GroupMembership.group_id == target_group_id,
                GroupMembership.user_id.in_(student_ids),
            )
        }

        try:
            for membership in memberships:
                self.db.delete(membership)
            self.db.flush()
            for student_id in student_ids:
                if student_id not in already_in_target:
                    self.db.add(GroupMembership(user_id=student_id, group_id=target_group_id))
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error(
                "Move students failed",
                extra={"source_group_id": source_group_id, "target_group_id": target_group_id},
                exc_info=True,
            )
            raise

        moved = len(student_ids) - len(already_in_target)
        logger.info(
            "Students moved",
            extra={
                "source_group_id": source_group_id,
                "target_group_id": target_group_id,
                "moved_count": moved,
            },
        )
        return MoveResult(moved_count=moved, already_in_target_count=len(already_in_target))

    # =========================================================================
    # School license pools
    # =========================================================================

    def create_school_license(
        self,
        school_id: str,
        book_id: str,
        total_licenses: int,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        granted_by: Optional[str] = None,
    ) -> SchoolBookLicense:
        """
        Create a school's pool for a book and grant it to the school staff.

        Coordinators and teachers of the school receive access through the
        same capacity-checked path; if the staff alone exceeds the pool,
        nothing is created.
        """
        if total_licenses is None or total_licenses < 1:
            raise ValidationError("total_licenses must be at least 1")
        date_range = DateRange.from_optional(start_date, end_date)

        school = self.db.get(School, school_id)
        if school is None:
            raise NotFound("School not found", school_id=school_id)
        book = self._get_book(book_id)

        existing = (
            self.db.query(SchoolBookLicense)
            .filter(
                SchoolBookLicense.school_id == school_id,
                SchoolBookLicense.book_id == book_id,
            )
            .first()
        )
        if existing is not None:
            raise ConflictError(
                "School already has a license for this book",
                license_id=existing.id,
            )

        staff_ids = self._school_staff_ids(school)

        try:
            license_row = SchoolBookLicense(
                school_id=school_id,
                book_id=book_id,
                total_licenses=total_licenses,
                used_licenses=0,
                start_date=date_range.start,
                end_date=date_range.end,
                is_active=True,
            )
            self.db.add(license_row)
            self.db.flush()

            if staff_ids:
                self._apply_grants(book, staff_ids, date_range, _Provenance(), granted_by)
            self._store_used_count(license_row)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("School already has a license for this book")
        except BookAccessError:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(
                "Failed to create school license",
                extra={"school_id": school_id, "book_id": book_id},
                exc_info=True,
            )
            raise

        logger.info(
            "School license created",
            extra={
                "school_id": school_id,
                "book_id": book_id,
                "total_licenses": total_licenses,
                "staff_granted": len(staff_ids),
            },
        )
        return license_row

    def update_school_license(
        self,
        license_id: str,
        total_licenses: Optional[int] = None,
        end_date: Optional[datetime] = None,
        is_active: Optional[bool] = None,
    ) -> SchoolBookLicense:
        """Update pool size, end date or active flag. used_licenses is never an input."""
        license_row = (
            self.db.query(SchoolBookLicense)
            .filter(SchoolBookLicense.id == license_id)
            .with_for_update()
            .first()
        )
        if license_row is None:
            raise NotFound("License not found", license_id=license_id)

        try:
            used = self.count_used_licenses(license_row.school_id, license_row.book_id)
            if total_licenses is not None:
                if total_licenses < 1:
                    raise ValidationError("total_licenses must be at least 1")
                if total_licenses < used:
                    raise ValidationError(
                        "total_licenses cannot be lower than the licenses in use",
                        used_licenses=used,
                    )
                license_row.total_licenses = total_licenses
            if end_date is not None:
                end_date = ensure_utc(end_date)
                if end_date <= ensure_utc(license_row.start_date):
                    raise ValidationError("End date must be after start date")
                license_row.end_date = end_date
            if is_active is not None:
                license_row.is_active = is_active
            license_row.used_licenses = used
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return license_row

    def count_used_licenses(self, school_id: str, book_id: str) -> int:
        """Distinct school users holding a BookAccess row for the book."""
        return (
            self.db.query(func.count(func.distinct(BookAccess.user_id)))
            .join(User, User.id == BookAccess.user_id)
            .filter(BookAccess.book_id == book_id, User.school_id == school_id)
            .scalar()
        ) or 0

    def recompute_used_licenses(self, school_id: str, book_id: str) -> Optional[int]:
        """Re-derive and persist used_licenses for one pool. None if there is no pool."""
        try:
            license_row = self._lock_license(school_id, book_id)
            if license_row is None:
                return None
            used = self._store_used_count(license_row)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return used

    # =========================================================================
    # Single grants
    # =========================================================================

    def revoke_access(self, access_id: str) -> BookAccess:
        """Mark one grant REVOKED. The row is kept for audit."""
        access = self.db.get(BookAccess, access_id)
        if access is None:
            raise NotFound("Book access not found", access_id=access_id)

        if access.status == AccessStatus.REVOKED and not access.is_active:
            return access

        access.status = AccessStatus.REVOKED
        access.is_active = False
        self.db.commit()

        logger.info(
            "Book access revoked",
            extra={"access_id": access_id, "user_id": access.user_id, "book_id": access.book_id},
        )
        return access

    def extend_access(self, access_id: str, new_end_date: datetime) -> BookAccess:
        """Move a grant's end date forward, reactivating it if it had expired."""
        access = self.db.get(BookAccess, access_id)
        if access is None:
            raise NotFound("Book access not found", access_id=access_id)
        if access.status == AccessStatus.REVOKED:
            raise ValidationError("Revoked access must be granted again, not extended")

        new_end_date = ensure_utc(new_end_date)
        if new_end_date <= utcnow() or new_end_date <= ensure_utc(access.start_date):
            raise ValidationError("New end date must be in the future and after the start date")

        access.end_date = new_end_date
        access.status = AccessStatus.ACTIVE
        access.is_active = True
        access.expiry_warning_sent_at = None
        self.db.commit()

        logger.info(
            "Book access extended",
            extra={"access_id": access_id, "end_date": new_end_date.isoformat()},
        )
        return access

    def claim_free_book(self, user_id: str, book_sanity_id: str) -> BookAccess:
        """
        Give a user a permanent grant for a public book.

        Claiming twice returns the existing grant.
        """
        user = self.db.get(User, user_id)
        if user is None or user.is_deleted:
            raise NotFound("User not found", user_id=user_id)

        book = self.db.query(Book).filter(Book.sanity_id == book_sanity_id).first()
        if book is None:
            raise NotFound("Book not found", book_sanity_id=book_sanity_id)
        if not book.is_public or not book.is_active:
            raise ValidationError("This book is not free", book_sanity_id=book_sanity_id)

        existing = (
            self.db.query(BookAccess)
            .filter(BookAccess.user_id == user_id, BookAccess.book_id == book.id)
            .first()
        )
        if existing is not None and existing.is_effectively_active():
            return existing

        try:
            self._apply_grants(book, [user_id], DateRange.from_optional(), _Provenance(), None)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Free book claimed", extra={"user_id": user_id, "book_id": book.id})
        return (
            self.db.query(BookAccess)
            .filter(BookAccess.user_id == user_id, BookAccess.book_id == book.id)
            .one()
        )

    def grant_purchased_access(
        self,
        user_id: str,
        book: Book,
        end_date: datetime,
        now: Optional[datetime] = None,
    ) -> BookAccess:
        """
        Materialize a paid grant inside the caller's transaction.

        A still-active grant keeps its start and is only ever extended;
        an expired or missing one starts now. Paid access is not drawn
        from school license pools.
        """
        now = ensure_utc(now) if now else utcnow()
        end_date = ensure_utc(end_date)

        access = (
            self.db.query(BookAccess)
            .filter(BookAccess.user_id == user_id, BookAccess.book_id == book.id)
            .first()
        )
        if access is None:
            access = BookAccess(
                user_id=user_id,
                book_id=book.id,
                start_date=now,
                end_date=end_date,
                is_active=True,
                status=AccessStatus.ACTIVE,
            )
            self.db.add(access)
        elif access.is_effectively_active(now):
            access.end_date = max(ensure_utc(access.end_date), end_date)
        else:
            access.start_date = now
            access.end_date = end_date
            access.status = AccessStatus.ACTIVE
            access.is_active = True
            access.expiry_warning_sent_at = None

        self.db.flush()
        return access

    def extend_until(self, user_id: str, book_id: str, end_date: datetime) -> Optional[BookAccess]:
        """Push an existing grant's end date forward (renewals). Never shortens."""
        end_date = ensure_utc(end_date)
        access = (
            self.db.query(BookAccess)
            .filter(BookAccess.user_id == user_id, BookAccess.book_id == book_id)
            .first()
        )
        if access is None or access.status == AccessStatus.REVOKED:
            return access

        if ensure_utc(access.end_date) < end_date:
            access.end_date = end_date
            access.expiry_warning_sent_at = None
        if access.status == AccessStatus.EXPIRED or not access.is_active:
            access.status = AccessStatus.ACTIVE
            access.is_active = True
        self.db.flush()
        return access

    # =========================================================================
    # Internals
    # =========================================================================

    def _get_book(self, book_id: str) -> Book:
        book = self.db.get(Book, book_id)
        if book is None:
            raise NotFound("Book not found", book_id=book_id)
        return book

    def _resolve_scope(self, scope: GrantScope):
        """Return (ordered distinct user ids, provenance) for a scope."""
        provenance = _Provenance()

        if scope.type == ScopeType.INDIVIDUAL:
            user_ids = list(dict.fromkeys(scope.user_ids or ()))
            if not user_ids:
                raise EmptyScope(scope.type.value)
            found = {
                r.id for r in self.db.query(User.id).filter(
                    User.id.in_(user_ids), User.deleted_at.is_(None)
                )
            }
            missing = [u for u in user_ids if u not in found]
            if missing:
                raise NotFound("Some users were not found", user_ids=missing)
            return user_ids, provenance

        if not scope.target_id:
            raise ValidationError(f"A target id is required for {scope.type.value} scope")

        if scope.type == ScopeType.SCHOOL:
            if self.db.get(School, scope.target_id) is None:
                raise NotFound("School not found", school_id=scope.target_id)
            query = self.db.query(User.id).filter(
                User.school_id == scope.target_id,
                User.deleted_at.is_(None),
            )

        elif scope.type == ScopeType.GRADE:
            if self.db.get(Grade, scope.target_id) is None:
                raise NotFound("Grade not found", grade_id=scope.target_id)
            provenance.grade_id = scope.target_id
            query = (
                self.db.query(User.id)
                .join(GroupMembership, GroupMembership.user_id == User.id)
                .join(Group, Group.id == GroupMembership.group_id)
                .filter(Group.grade_id == scope.target_id, User.deleted_at.is_(None))
            )

        elif scope.type == ScopeType.GROUP:
            group = self.db.get(Group, scope.target_id)
            if group is None:
                raise NotFound("Group not found", group_id=scope.target_id)
            provenance.group_id = group.id
            provenance.grade_id = group.grade_id
            query = (
                self.db.query(User.id)
                .join(GroupMembership, GroupMembership.user_id == User.id)
                .filter(GroupMembership.group_id == scope.target_id, User.deleted_at.is_(None))
            )

        else:
            raise ValidationError(f"Unknown scope type: {scope.type}")

        user_ids = list(dict.fromkeys(r.id for r in query.order_by(User.id)))
        if not user_ids:
            raise EmptyScope(scope.type.value, scope.target_id)
        return user_ids, provenance

    def _apply_grants(
        self,
        book: Book,
        user_ids: Sequence[str],
        date_range: DateRange,
        provenance: _Provenance,
        assigned_by: Optional[str],
    ) -> BulkGrantResult:
        """
        Insert or reactivate grants inside the caller's transaction.

        Capacity is checked per school pool before anything is written.
        Existing rows (active or not) already hold a seat, so only users
        without any row consume new seats.
        """
        now = utcnow()
        result = BulkGrantResult()

        existing: Dict[str, BookAccess] = {
            row.user_id: row
            for row in self.db.query(BookAccess).filter(
                BookAccess.book_id == book.id,
                BookAccess.user_id.in_(list(user_ids)),
            )
        }
        new_ids = [u for u in user_ids if u not in existing]

        new_by_school: Dict[str, List[str]] = defaultdict(list)
        if new_ids:
            for row in self.db.query(User.id, User.school_id).filter(User.id.in_(new_ids)):
                if row.school_id:
                    new_by_school[row.school_id].append(row.id)

        locked: List[SchoolBookLicense] = []
        for school_id in sorted(new_by_school):
            license_row = self._lock_license(school_id, book.id)
            if license_row is None:
                continue
            if not license_row.is_active or ensure_utc(license_row.end_date) < now:
                raise ValidationError(
                    "The school license for this book is inactive or expired",
                    school_id=school_id,
                    book_id=book.id,
                )
            used = self.count_used_licenses(school_id, book.id)
            requested = len(new_by_school[school_id])
            if used + requested > license_row.total_licenses:
                logger.warning(
                    "License pool would overflow, rejecting batch",
                    extra={
                        "school_id": school_id,
                        "book_id": book.id,
                        "requested": requested,
                        "used": used,
                        "total": license_row.total_licenses,
                    },
                )
                raise CapacityExceeded(
                    school_id=school_id,
                    book_id=book.id,
                    requested=requested,
                    remaining=max(license_row.total_licenses - used, 0),
                )
            locked.append(license_row)

        for user_id in user_ids:
            row = existing.get(user_id)
            if row is None:
                self.db.add(BookAccess(
                    user_id=user_id,
                    book_id=book.id,
                    start_date=date_range.start,
                    end_date=date_range.end,
                    is_active=True,
                    status=AccessStatus.ACTIVE,
                    group_id=provenance.group_id,
                    grade_id=provenance.grade_id,
                    assigned_by=assigned_by,
                ))
                result.assigned_count += 1
                result.granted_user_ids.append(user_id)
            elif row.is_effectively_active(now):
                result.already_had_access_count += 1
            else:
                row.status = AccessStatus.ACTIVE
                row.is_active = True
                row.start_date = date_range.start
                row.end_date = date_range.end
                row.expiry_warning_sent_at = None
                if assigned_by:
                    row.assigned_by = assigned_by
                result.reactivated_count += 1
                result.granted_user_ids.append(user_id)

        self.db.flush()
        for license_row in locked:
            self._store_used_count(license_row)

        return result

    def _lock_license(self, school_id: str, book_id: str) -> Optional[SchoolBookLicense]:
        return (
            self.db.query(SchoolBookLicense)
            .filter(
                SchoolBookLicense.school_id == school_id,
                SchoolBookLicense.book_id == book_id,
            )
            .with_for_update()
            .first()
        )

    def _store_used_count(self, license_row: SchoolBookLicense) -> int:
        self.db.flush()
        used = self.count_used_licenses(license_row.school_id, license_row.book_id)
        if used > license_row.total_licenses:
            # Individually purchased copies also hold rows; grants are
            # checked against the live count before this point.
            logger.warning(
                "License pool holds more grants than seats",
                extra={
                    "license_id": license_row.id,
                    "used": used,
                    "total": license_row.total_licenses,
                },
            )
        license_row.used_licenses = min(used, license_row.total_licenses)
        return used

    def _school_staff_ids(self, school: School) -> List[str]:
        users = (
            self.db.query(User)
            .filter(User.school_id == school.id, User.deleted_at.is_(None))
            .order_by(User.id)
            .all()
        )
        staff = [u.id for u in users if u.has_any_role(STAFF_ROLES)]
        if school.coordinator_id and school.coordinator_id not in staff:
            coordinator = self.db.get(User, school.coordinator_id)
            if coordinator is not None and not coordinator.is_deleted:
                staff.append(coordinator.id)
        return staff
