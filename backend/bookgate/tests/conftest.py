"""
Root test configuration and fixtures.

Every test gets its own SQLite in-memory database so services can commit
for real. PostgreSQL-only behavior (row locks) is a no-op on SQLite;
file_sessions gives two connections to one file for interleaving tests.
"""

import os
import uuid
from datetime import timedelta
from typing import Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment
os.environ.setdefault("ENV", "test")

from bookgate.db_base import Base
from bookgate import models  # noqa: F401 - registers every table
from bookgate.models.base import SENTINEL_END_DATE, utcnow
from bookgate.models.book import Book
from bookgate.models.book_access import AccessStatus, BookAccess
from bookgate.models.book_assignment import AssignmentTargetType, BookAssignment
from bookgate.models.purchase import Transaction, TransactionStatus, TransactionType
from bookgate.models.school import Grade, Group, GroupMembership, School
from bookgate.models.school_book_license import SchoolBookLicense
from bookgate.models.user import User


@pytest.fixture(scope="function")
def db_engine():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def file_sessions(tmp_path):
    """
    Two sessions on separate connections to one database file.

    Used to interleave two units of work the way two concurrent requests
    would. SQLite serializes writers on a database lock rather than on
    row locks, so these tests cover the ordering, not FOR UPDATE itself.
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'bookgate.db'}")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    first, second = SessionLocal(), SessionLocal()
    try:
        yield first, second
    finally:
        first.close()
        second.close()
        engine.dispose()


# =============================================================================
# Factories
# =============================================================================

def _uid(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _create_school(db: Session, name: Optional[str] = None) -> School:
    school = School(name=name or _uid("school"))
    db.add(school)
    db.commit()
    return school


def _create_user(
    db: Session,
    roles: Optional[List[str]] = None,
    school: Optional[School] = None,
    email: Optional[str] = None,
    external_id: Optional[str] = None,
    deleted: bool = False,
) -> User:
    user = User(
        email=email or f"{_uid('user')}@example.com",
        external_id=external_id,
        roles=roles or ["STUDENT"],
        school_id=school.id if school else None,
        deleted_at=utcnow() if deleted else None,
    )
    db.add(user)
    db.commit()
    return user


def _create_book(
    db: Session,
    sanity_id: Optional[str] = None,
    is_public: bool = False,
    title: Optional[str] = None,
) -> Book:
    sanity_id = sanity_id or _uid("book")
    book = Book(sanity_id=sanity_id, title=title or f"Book {sanity_id}", is_public=is_public)
    db.add(book)
    db.commit()
    return book


def _create_grade(db: Session, school: School, name: str = "1st") -> Grade:
    grade = Grade(school_id=school.id, name=name)
    db.add(grade)
    db.commit()
    return grade


def _create_group(db: Session, grade: Grade, name: str = "A", teacher: Optional[User] = None) -> Group:
    group = Group(grade_id=grade.id, name=name, teacher_id=teacher.id if teacher else None)
    db.add(group)
    db.commit()
    return group


def _add_member(db: Session, user: User, group: Group) -> GroupMembership:
    membership = GroupMembership(user_id=user.id, group_id=group.id)
    db.add(membership)
    db.commit()
    return membership


def _create_license(
    db: Session,
    school: School,
    book: Book,
    total: int,
    used: int = 0,
    end_date=None,
    is_active: bool = True,
) -> SchoolBookLicense:
    license_row = SchoolBookLicense(
        school_id=school.id,
        book_id=book.id,
        total_licenses=total,
        used_licenses=used,
        start_date=utcnow() - timedelta(days=1),
        end_date=end_date or SENTINEL_END_DATE,
        is_active=is_active,
    )
    db.add(license_row)
    db.commit()
    return license_row


def _create_access(
    db: Session,
    user: User,
    book: Book,
    start_date=None,
    end_date=None,
    status: AccessStatus = AccessStatus.ACTIVE,
    is_active: bool = True,
) -> BookAccess:
    access = BookAccess(
        user_id=user.id,
        book_id=book.id,
        start_date=start_date or utcnow() - timedelta(days=30),
        end_date=end_date or SENTINEL_END_DATE,
        status=status,
        is_active=is_active,
    )
    db.add(access)
    db.commit()
    return access


def _create_assignment(
    db: Session,
    book: Book,
    target_type: AssignmentTargetType,
    target_id: str,
    end_date=None,
    is_active: bool = True,
) -> BookAssignment:
    assignment = BookAssignment(
        book_sanity_id=book.sanity_id,
        assigned_to_type=target_type,
        assigned_to_id=target_id,
        end_date=end_date,
        is_active=is_active,
    )
    db.add(assignment)
    db.commit()
    return assignment


def _create_pending_transaction(
    db: Session,
    user: User,
    provider_id: str,
    metadata: Optional[dict] = None,
    amount_cents: int = 19900,
) -> Transaction:
    transaction = Transaction(
        user_id=user.id,
        provider_id=provider_id,
        type=TransactionType.PURCHASE,
        status=TransactionStatus.PENDING,
        amount_cents=amount_cents,
        currency="mxn",
        extra_metadata=metadata,
    )
    db.add(transaction)
    db.commit()
    return transaction
