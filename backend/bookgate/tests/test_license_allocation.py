"""
Tests for LicenseAllocationManager.

Tests cover:
- Scope resolution and EmptyScope
- Idempotent grants (no duplicate rows, no double counting)
- Capacity invariant and whole-batch rejection
- Revocation with used-count recomputation
- Atomic student moves
- Failures after the first write leaving prior state unchanged
- Interleaved grants against one pool
- School license creation and update
- Single grant lifecycle and free claims
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from bookgate.errors import (
    CapacityExceeded,
    ConflictError,
    EmptyScope,
    NotFound,
    ValidationError,
)
from bookgate.models.base import SENTINEL_END_DATE, ensure_utc, utcnow
from bookgate.models.book_access import AccessStatus, BookAccess
from bookgate.models.school import GroupMembership
from bookgate.models.school_book_license import SchoolBookLicense
from bookgate.services.access_resolution import AccessReason, AccessResolutionEngine
from bookgate.services.license_allocation import (
    DateRange,
    GrantScope,
    LicenseAllocationManager,
    ScopeType,
)

from conftest import (
    _add_member,
    _create_access,
    _create_book,
    _create_grade,
    _create_group,
    _create_license,
    _create_school,
    _create_user,
)


@pytest.fixture
def manager(db_session):
    return LicenseAllocationManager(db_session)


def _individual(*users):
    return GrantScope(ScopeType.INDIVIDUAL, user_ids=[u.id for u in users])


def _access_rows(db_session, book):
    return db_session.query(BookAccess).filter(BookAccess.book_id == book.id).all()


class TestScopeResolution:
    """Tests for resolving scopes to users."""

    def test_school_scope_grants_active_users_only(self, db_session, manager):
        school = _create_school(db_session)
        active = _create_user(db_session, school=school)
        _create_user(db_session, school=school, deleted=True)
        book = _create_book(db_session)

        result = manager.grant_bulk(book.id, GrantScope(ScopeType.SCHOOL, target_id=school.id))

        assert result.assigned_count == 1
        assert [r.user_id for r in _access_rows(db_session, book)] == [active.id]

    def test_group_scope_records_provenance(self, db_session, manager):
        school = _create_school(db_session)
        grade = _create_grade(db_session, school)
        group = _create_group(db_session, grade)
        student = _create_user(db_session, school=school)
        _add_member(db_session, student, group)
        book = _create_book(db_session)

        manager.grant_bulk(book.id, GrantScope(ScopeType.GROUP, target_id=group.id))

        row = _access_rows(db_session, book)[0]
        assert row.group_id == group.id
        assert row.grade_id == grade.id

    def test_grade_scope_covers_all_groups(self, db_session, manager):
        school = _create_school(db_session)
        grade = _create_grade(db_session, school)
        group_a = _create_group(db_session, grade, name="A")
        group_b = _create_group(db_session, grade, name="B")
        s1 = _create_user(db_session, school=school)
        s2 = _create_user(db_session, school=school)
        _add_member(db_session, s1, group_a)
        _add_member(db_session, s2, group_b)
        book = _create_book(db_session)

        result = manager.grant_bulk(book.id, GrantScope(ScopeType.GRADE, target_id=grade.id))

        assert result.assigned_count == 2

    @pytest.mark.parametrize("scope_type", [ScopeType.SCHOOL, ScopeType.GRADE, ScopeType.GROUP])
    def test_empty_scope_raises(self, db_session, manager, scope_type):
        """Test that a scope with no users raises EmptyScope with a per-type message."""
        school = _create_school(db_session)
        grade = _create_grade(db_session, school)
        group = _create_group(db_session, grade)
        target = {ScopeType.SCHOOL: school.id, ScopeType.GRADE: grade.id, ScopeType.GROUP: group.id}
        book = _create_book(db_session)

        with pytest.raises(EmptyScope) as exc_info:
            manager.grant_bulk(book.id, GrantScope(scope_type, target_id=target[scope_type]))

        assert exc_info.value.scope_type == scope_type.value
        assert exc_info.value.message == EmptyScope.MESSAGES[scope_type.value]

    def test_empty_individual_scope_raises(self, db_session, manager):
        book = _create_book(db_session)

        with pytest.raises(EmptyScope):
            manager.grant_bulk(book.id, GrantScope(ScopeType.INDIVIDUAL, user_ids=[]))

    def test_unknown_individual_user_raises(self, db_session, manager):
        book = _create_book(db_session)

        with pytest.raises(NotFound):
            manager.grant_bulk(book.id, GrantScope(ScopeType.INDIVIDUAL, user_ids=["nobody"]))

    def test_unknown_book_raises(self, db_session, manager):
        user = _create_user(db_session)

        with pytest.raises(NotFound):
            manager.grant_bulk("missing-book", _individual(user))


class TestIdempotentGrant:
    """Granting the same (user, book) twice."""

    def test_second_grant_does_not_duplicate_rows(self, db_session, manager):
        school = _create_school(db_session)
        user = _create_user(db_session, school=school)
        book = _create_book(db_session)
        license_row = _create_license(db_session, school, book, total=5)

        first = manager.grant_bulk(book.id, _individual(user))
        second = manager.grant_bulk(book.id, _individual(user))

        assert first.assigned_count == 1
        assert second.assigned_count == 0
        assert second.already_had_access_count == 1
        assert len(_access_rows(db_session, book)) == 1
        db_session.refresh(license_row)
        assert license_row.used_licenses == 1

    def test_duplicate_ids_in_one_request(self, db_session, manager):
        user = _create_user(db_session)
        book = _create_book(db_session)

        result = manager.grant_bulk(
            book.id, GrantScope(ScopeType.INDIVIDUAL, user_ids=[user.id, user.id])
        )

        assert result.assigned_count == 1
        assert len(_access_rows(db_session, book)) == 1

    def test_expired_grant_is_reactivated_not_duplicated(self, db_session, manager):
        user = _create_user(db_session)
        book = _create_book(db_session)
        _create_access(
            db_session, user, book,
            end_date=utcnow() - timedelta(days=1),
            status=AccessStatus.EXPIRED,
            is_active=False,
        )

        result = manager.grant_bulk(book.id, _individual(user))

        assert result.reactivated_count == 1
        rows = _access_rows(db_session, book)
        assert len(rows) == 1
        assert rows[0].status == AccessStatus.ACTIVE
        assert rows[0].is_active is True


class TestCapacity:
    """License pools never exceed their total."""

    def test_two_seat_pool_rejects_third_student(self, db_session, manager):
        """Test that a third grant fails once two seats are used."""
        school = _create_school(db_session)
        book = _create_book(db_session)
        license_row = _create_license(db_session, school, book, total=2)
        u1 = _create_user(db_session, school=school)
        u2 = _create_user(db_session, school=school)
        u3 = _create_user(db_session, school=school)

        result = manager.grant_bulk(book.id, _individual(u1, u2))
        assert result.assigned_count == 2
        db_session.refresh(license_row)
        assert license_row.used_licenses == 2

        with pytest.raises(CapacityExceeded) as exc_info:
            manager.grant_bulk(book.id, _individual(u3))

        assert exc_info.value.remaining == 0
        assert exc_info.value.requested == 1
        db_session.refresh(license_row)
        assert license_row.used_licenses == 2
        assert len(_access_rows(db_session, book)) == 2

    def test_overflowing_batch_is_rejected_whole(self, db_session, manager):
        """Test that no partial grants are made when a batch overflows."""
        school = _create_school(db_session)
        book = _create_book(db_session)
        license_row = _create_license(db_session, school, book, total=2)
        users = [_create_user(db_session, school=school) for _ in range(3)]

        with pytest.raises(CapacityExceeded) as exc_info:
            manager.grant_bulk(book.id, _individual(*users))

        assert exc_info.value.remaining == 2
        assert _access_rows(db_session, book) == []
        db_session.refresh(license_row)
        assert license_row.used_licenses == 0

    def test_existing_holders_do_not_consume_new_seats(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)
        _create_license(db_session, school, book, total=2)
        u1 = _create_user(db_session, school=school)
        u2 = _create_user(db_session, school=school)
        manager.grant_bulk(book.id, _individual(u1))

        result = manager.grant_bulk(book.id, _individual(u1, u2))

        assert result.assigned_count == 1
        assert result.already_had_access_count == 1

    def test_inactive_license_rejects_grants(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)
        _create_license(db_session, school, book, total=5, is_active=False)
        user = _create_user(db_session, school=school)

        with pytest.raises(ValidationError):
            manager.grant_bulk(book.id, _individual(user))

    def test_school_without_pool_is_not_limited(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)
        users = [_create_user(db_session, school=school) for _ in range(4)]

        result = manager.grant_bulk(book.id, _individual(*users))

        assert result.assigned_count == 4

    def test_used_count_stays_within_bounds(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)
        _create_license(db_session, school, book, total=3)
        users = [_create_user(db_session, school=school) for _ in range(3)]

        manager.grant_bulk(book.id, _individual(*users))
        manager.revoke_bulk(book.id, [users[0].id], school.id)

        for row in db_session.query(SchoolBookLicense).all():
            assert 0 <= row.used_licenses <= row.total_licenses

    def test_failure_after_rows_written_grants_nothing(self, db_session, manager):
        """Test a failure once the grant rows are flushed rolls back the batch."""
        school = _create_school(db_session)
        book = _create_book(db_session)
        license_row = _create_license(db_session, school, book, total=5)
        users = [_create_user(db_session, school=school) for _ in range(2)]

        with patch.object(
            LicenseAllocationManager, "_store_used_count", side_effect=RuntimeError("connection lost")
        ):
            with pytest.raises(RuntimeError):
                manager.grant_bulk(book.id, _individual(*users))

        assert _access_rows(db_session, book) == []
        db_session.refresh(license_row)
        assert license_row.used_licenses == 0


class TestInterleavedGrants:
    """
    Two grant requests racing for the last seat of one pool.

    SQLite has no row locks, so this covers the ordering only: the seat
    count is taken after the pool is locked and from committed rows, never
    from a counter read earlier.
    """

    def test_request_sees_seat_taken_while_in_flight(self, file_sessions):
        first_db, second_db = file_sessions
        school = _create_school(first_db)
        book = _create_book(first_db)
        license_row = _create_license(first_db, school, book, total=1)
        u1 = _create_user(first_db, school=school)
        u2 = _create_user(first_db, school=school)
        book_id, license_id, u1_id, u2_id = book.id, license_row.id, u1.id, u2.id

        first = LicenseAllocationManager(first_db)
        second = LicenseAllocationManager(second_db)
        count_used = first.count_used_licenses

        def count_after_other_request(school_id, book_id):
            result = second.grant_bulk(book_id, GrantScope(ScopeType.INDIVIDUAL, user_ids=[u2_id]))
            assert result.assigned_count == 1
            return count_used(school_id, book_id)

        first.count_used_licenses = count_after_other_request

        with pytest.raises(CapacityExceeded) as exc_info:
            first.grant_bulk(book_id, GrantScope(ScopeType.INDIVIDUAL, user_ids=[u1_id]))

        assert exc_info.value.remaining == 0
        first_db.expire_all()
        rows = first_db.query(BookAccess).filter(BookAccess.book_id == book_id).all()
        assert [r.user_id for r in rows] == [u2_id]
        assert first_db.get(SchoolBookLicense, license_id).used_licenses == 1


class TestRevokeBulk:
    """Revocation removes grants and recomputes the pool."""

    def test_revoked_user_loses_access_and_seat(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)
        license_row = _create_license(db_session, school, book, total=2)
        u1 = _create_user(db_session, school=school)
        u2 = _create_user(db_session, school=school)
        manager.grant_bulk(book.id, _individual(u1, u2))

        result = manager.revoke_bulk(book.id, [u1.id], school.id)

        assert result.revoked_count == 1
        assert result.used_licenses == 1
        db_session.refresh(license_row)
        assert license_row.used_licenses == 1

        decision = AccessResolutionEngine(db_session).resolve(u1.id, book.sanity_id)
        assert decision.granted is False
        assert decision.reason == AccessReason.NOT_ASSIGNED

    def test_revoke_repairs_drifted_counter(self, db_session, manager):
        """Test that used_licenses is recomputed, not decremented."""
        school = _create_school(db_session)
        book = _create_book(db_session)
        license_row = _create_license(db_session, school, book, total=5, used=4)
        u1 = _create_user(db_session, school=school)
        u2 = _create_user(db_session, school=school)
        _create_access(db_session, u1, book)
        _create_access(db_session, u2, book)

        manager.revoke_bulk(book.id, [u1.id], school.id)

        db_session.refresh(license_row)
        assert license_row.used_licenses == 1

    def test_user_outside_school_is_rejected(self, db_session, manager):
        school = _create_school(db_session)
        other = _create_school(db_session)
        book = _create_book(db_session)
        outsider = _create_user(db_session, school=other)

        with pytest.raises(ValidationError):
            manager.revoke_bulk(book.id, [outsider.id], school.id)

    def test_empty_user_list_is_rejected(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)

        with pytest.raises(ValidationError):
            manager.revoke_bulk(book.id, [], school.id)

    def test_failure_before_commit_keeps_grants(self, db_session, manager):
        """Test a failed commit after the delete leaves grants and counter as they were."""
        school = _create_school(db_session)
        book = _create_book(db_session)
        license_row = _create_license(db_session, school, book, total=3)
        users = [_create_user(db_session, school=school) for _ in range(2)]
        manager.grant_bulk(book.id, _individual(*users))

        with patch.object(db_session, "commit", side_effect=RuntimeError("connection lost")):
            with pytest.raises(RuntimeError):
                manager.revoke_bulk(book.id, [u.id for u in users], school.id)

        assert {r.user_id for r in _access_rows(db_session, book)} == {u.id for u in users}
        db_session.refresh(license_row)
        assert license_row.used_licenses == 2


class TestMoveStudents:
    """Moves between groups are all-or-nothing."""

    @pytest.fixture
    def groups(self, db_session):
        school = _create_school(db_session)
        grade = _create_grade(db_session, school)
        source = _create_group(db_session, grade, name="A")
        target = _create_group(db_session, grade, name="B")
        students = [_create_user(db_session, school=school) for _ in range(2)]
        for student in students:
            _add_member(db_session, student, source)
        return school, grade, source, target, students

    def _members(self, db_session, group):
        return {
            m.user_id for m in db_session.query(GroupMembership).filter(GroupMembership.group_id == group.id)
        }

    def test_move_students(self, db_session, manager, groups):
        _, _, source, target, students = groups

        result = manager.move_students([s.id for s in students], source.id, target.id)

        assert result.moved_count == 2
        assert self._members(db_session, source) == set()
        assert self._members(db_session, target) == {s.id for s in students}

    def test_student_not_in_source_aborts_move(self, db_session, manager, groups):
        school, _, source, target, students = groups
        stranger = _create_user(db_session, school=school)

        with pytest.raises(ValidationError):
            manager.move_students([students[0].id, stranger.id], source.id, target.id)

        assert self._members(db_session, source) == {s.id for s in students}
        assert self._members(db_session, target) == set()

    def test_groups_of_different_grades_are_rejected(self, db_session, manager, groups):
        school, _, source, _, students = groups
        other_grade = _create_grade(db_session, school, name="2nd")
        elsewhere = _create_group(db_session, other_grade)

        with pytest.raises(ValidationError):
            manager.move_students([students[0].id], source.id, elsewhere.id)

    def test_already_in_target_is_not_duplicated(self, db_session, manager, groups):
        _, _, source, target, students = groups
        _add_member(db_session, students[0], target)

        result = manager.move_students([s.id for s in students], source.id, target.id)

        assert result.moved_count == 1
        assert result.already_in_target_count == 1
        assert self._members(db_session, target) == {s.id for s in students}

    def test_failure_after_removal_restores_memberships(self, db_session, manager, groups):
        """Test a failure once students left the source puts everyone back."""
        _, _, source, target, students = groups

        with patch.object(db_session, "commit", side_effect=RuntimeError("connection lost")):
            with pytest.raises(RuntimeError):
                manager.move_students([s.id for s in students], source.id, target.id)

        assert self._members(db_session, source) == {s.id for s in students}
        assert self._members(db_session, target) == set()

    def test_failed_insert_into_target_restores_source(self, db_session, manager, groups):
        """Test that a failing insert after the removals were flushed changes nothing."""
        _, _, source, target, students = groups
        add = db_session.add
        calls = []

        def add_then_fail(instance):
            calls.append(instance)
            if len(calls) == 2:
                raise RuntimeError("insert failed")
            return add(instance)

        with patch.object(db_session, "add", side_effect=add_then_fail):
            with pytest.raises(RuntimeError):
                manager.move_students([s.id for s in students], source.id, target.id)

        assert self._members(db_session, source) == {s.id for s in students}
        assert self._members(db_session, target) == set()


class TestSchoolLicense:
    """Tests for creating and updating school license pools."""

    def test_create_grants_staff(self, db_session, manager):
        school = _create_school(db_session)
        teacher = _create_user(db_session, roles=["TEACHER"], school=school)
        _create_user(db_session, roles=["STUDENT"], school=school)
        book = _create_book(db_session)

        license_row = manager.create_school_license(school.id, book.id, total_licenses=10)

        assert license_row.used_licenses == 1
        assert [r.user_id for r in _access_rows(db_session, book)] == [teacher.id]

    def test_staff_larger_than_pool_creates_nothing(self, db_session, manager):
        school = _create_school(db_session)
        for _ in range(2):
            _create_user(db_session, roles=["TEACHER"], school=school)
        book = _create_book(db_session)

        with pytest.raises(CapacityExceeded):
            manager.create_school_license(school.id, book.id, total_licenses=1)

        assert db_session.query(SchoolBookLicense).count() == 0
        assert _access_rows(db_session, book) == []

    def test_duplicate_license_conflicts(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)
        manager.create_school_license(school.id, book.id, total_licenses=3)

        with pytest.raises(ConflictError):
            manager.create_school_license(school.id, book.id, total_licenses=3)

    @pytest.mark.parametrize("total", [0, -1])
    def test_total_must_be_positive(self, db_session, manager, total):
        school = _create_school(db_session)
        book = _create_book(db_session)

        with pytest.raises(ValidationError):
            manager.create_school_license(school.id, book.id, total_licenses=total)

    def test_end_must_follow_start(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)
        start = utcnow()

        with pytest.raises(ValidationError):
            manager.create_school_license(
                school.id, book.id, total_licenses=3,
                start_date=start, end_date=start - timedelta(days=1),
            )

    def test_update_cannot_shrink_below_used(self, db_session, manager):
        school = _create_school(db_session)
        book = _create_book(db_session)
        license_row = _create_license(db_session, school, book, total=3)
        users = [_create_user(db_session, school=school) for _ in range(2)]
        manager.grant_bulk(book.id, _individual(*users))

        with pytest.raises(ValidationError):
            manager.update_school_license(license_row.id, total_licenses=1)

        updated = manager.update_school_license(license_row.id, total_licenses=2)
        assert updated.total_licenses == 2
        assert updated.used_licenses == 2


class TestSingleGrantLifecycle:
    """revoke_access, extend_access and claim_free_book."""

    def test_revoke_access_keeps_row(self, db_session, manager):
        user = _create_user(db_session)
        book = _create_book(db_session)
        access = _create_access(db_session, user, book)

        revoked = manager.revoke_access(access.id)

        assert revoked.status == AccessStatus.REVOKED
        assert revoked.is_active is False
        assert len(_access_rows(db_session, book)) == 1

    def test_extend_reactivates_expired_grant(self, db_session, manager):
        user = _create_user(db_session)
        book = _create_book(db_session)
        access = _create_access(
            db_session, user, book,
            end_date=utcnow() - timedelta(days=2),
            status=AccessStatus.EXPIRED,
            is_active=False,
        )
        new_end = utcnow() + timedelta(days=30)

        extended = manager.extend_access(access.id, new_end)

        assert extended.status == AccessStatus.ACTIVE
        assert extended.is_effectively_active()

    def test_extend_revoked_grant_is_rejected(self, db_session, manager):
        user = _create_user(db_session)
        book = _create_book(db_session)
        access = _create_access(db_session, user, book, status=AccessStatus.REVOKED, is_active=False)

        with pytest.raises(ValidationError):
            manager.extend_access(access.id, utcnow() + timedelta(days=30))

    def test_claim_free_book_is_permanent_and_idempotent(self, db_session, manager):
        user = _create_user(db_session, roles=["PUBLIC"])
        book = _create_book(db_session, is_public=True)

        first = manager.claim_free_book(user.id, book.sanity_id)
        second = manager.claim_free_book(user.id, book.sanity_id)

        assert first.id == second.id
        assert ensure_utc(first.end_date) == SENTINEL_END_DATE
        assert len(_access_rows(db_session, book)) == 1

    def test_claim_paid_book_is_rejected(self, db_session, manager):
        user = _create_user(db_session)
        book = _create_book(db_session, is_public=False)

        with pytest.raises(ValidationError):
            manager.claim_free_book(user.id, book.sanity_id)


class TestDateRange:
    def test_default_is_unbounded(self):
        date_range = DateRange.from_optional()
        assert date_range.end == SENTINEL_END_DATE

    def test_end_before_start_rejected(self):
        start = utcnow()
        with pytest.raises(ValidationError):
            DateRange(start=start, end=start - timedelta(seconds=1))
