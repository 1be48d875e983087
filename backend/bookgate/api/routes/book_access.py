"""
Book grant routes.

Bulk grants plus the lifecycle of a single grant (revoke, extend).
Admins act anywhere; coordinators only inside their own school.
"""

import logging
from datetime import datetime
from typing import List, Optional, Set

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from bookgate.api.dependencies.identity import require_roles
from bookgate.database.session import get_db_session
from bookgate.errors import NotFound, ValidationError
from bookgate.models.book_access import BookAccess
from bookgate.models.school import Grade, Group
from bookgate.models.user import User, UserRole
from bookgate.services.identity_resolver import ResolvedIdentity, require_same_school
from bookgate.services.license_allocation import (
    DateRange,
    GrantScope,
    LicenseAllocationManager,
    ScopeType,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/book-access", tags=["book-access"])


class BulkGrantRequest(BaseModel):
    book_id: str
    scope_type: ScopeType
    target_id: Optional[str] = Field(None, description="School, grade or group id")
    user_ids: List[str] = Field(default_factory=list, description="Users for individual scope")
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class BulkGrantResponse(BaseModel):
    assigned_count: int
    already_had_access_count: int
    reactivated_count: int


class ExtendAccessRequest(BaseModel):
    end_date: datetime


class GrantResponse(BaseModel):
    """One BookAccess row."""
    id: str
    user_id: str
    book_id: str
    status: str
    is_active: bool
    start_date: str
    end_date: str


def _grant_response(access: BookAccess) -> GrantResponse:
    return GrantResponse(
        id=access.id,
        user_id=access.user_id,
        book_id=access.book_id,
        status=access.status.value,
        is_active=access.is_active,
        start_date=access.start_date.isoformat(),
        end_date=access.end_date.isoformat(),
    )


def _scope_school_ids(db_session: Session, scope: GrantScope) -> Set[Optional[str]]:
    """Schools a scope reaches, for the coordinator same-school check."""
    if scope.type == ScopeType.INDIVIDUAL:
        rows = db_session.query(User.school_id).filter(User.id.in_(list(scope.user_ids))).all()
        return {r.school_id for r in rows}

    if not scope.target_id:
        raise ValidationError(f"A target id is required for {scope.type.value} scope")
    if scope.type == ScopeType.SCHOOL:
        return {scope.target_id}
    if scope.type == ScopeType.GRADE:
        grade = db_session.get(Grade, scope.target_id)
        if grade is None:
            raise NotFound("Grade not found", grade_id=scope.target_id)
        return {grade.school_id}
    group = db_session.get(Group, scope.target_id)
    if group is None:
        raise NotFound("Group not found", group_id=scope.target_id)
    return {group.grade.school_id}


def _get_grant_in_scope(db_session: Session, identity: ResolvedIdentity, access_id: str) -> BookAccess:
    access = db_session.get(BookAccess, access_id)
    if access is None:
        raise NotFound("Book access not found", access_id=access_id)
    if not identity.is_admin:
        holder = db_session.get(User, access.user_id)
        require_same_school(identity, [holder.school_id if holder else None])
    return access


@router.post("", response_model=BulkGrantResponse)
async def grant_book_access(
    request: BulkGrantRequest,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR)),
    db_session: Session = Depends(get_db_session),
):
    scope = GrantScope(type=request.scope_type, target_id=request.target_id, user_ids=request.user_ids)
    if not identity.is_admin:
        require_same_school(identity, _scope_school_ids(db_session, scope))

    result = LicenseAllocationManager(db_session).grant_bulk(
        request.book_id,
        scope,
        DateRange.from_optional(request.start_date, request.end_date),
        assigned_by=identity.user_id,
    )
    return BulkGrantResponse(**result.to_dict())


@router.post("/{access_id}/revoke", response_model=GrantResponse)
async def revoke_grant(
    access_id: str,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR)),
    db_session: Session = Depends(get_db_session),
):
    """Mark one grant REVOKED. The row is kept."""
    _get_grant_in_scope(db_session, identity, access_id)
    access = LicenseAllocationManager(db_session).revoke_access(access_id)
    return _grant_response(access)


@router.post("/{access_id}/extend", response_model=GrantResponse)
async def extend_grant(
    access_id: str,
    request: ExtendAccessRequest,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR)),
    db_session: Session = Depends(get_db_session),
):
    _get_grant_in_scope(db_session, identity, access_id)
    access = LicenseAllocationManager(db_session).extend_access(access_id, request.end_date)
    logger.info(
        "Book access extended via API",
        extra={"access_id": access_id, "actor_id": identity.user_id},
    )
    return _grant_response(access)
