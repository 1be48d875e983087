"""
Book assignment routes.

Assignments attach a book to a school, grade, group, teacher or student.
Admins assign anywhere; coordinators only inside their own school.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from bookgate.api.dependencies.identity import require_roles
from bookgate.database.session import get_db_session
from bookgate.errors import NotFound, ValidationError
from bookgate.models.book_assignment import AssignmentTargetType, BookAssignment
from bookgate.models.school import Grade, Group
from bookgate.models.user import User, UserRole
from bookgate.services.assignment_service import BookAssignmentService
from bookgate.services.identity_resolver import ResolvedIdentity, require_same_school

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/book-assignments", tags=["book-assignments"])


class CreateAssignmentRequest(BaseModel):
    book_sanity_id: str = Field(..., min_length=1)
    assigned_to_type: str = Field(..., description="school, grade, group, teacher or student")
    assigned_to_id: str = Field(..., min_length=1)
    end_date: Optional[datetime] = None


class AssignmentResponse(BaseModel):
    id: str
    book_sanity_id: str
    assigned_to_type: str
    assigned_to_id: str
    end_date: Optional[str] = None
    is_active: bool


def _assignment_response(assignment: BookAssignment) -> AssignmentResponse:
    return AssignmentResponse(
        id=assignment.id,
        book_sanity_id=assignment.book_sanity_id,
        assigned_to_type=assignment.assigned_to_type.value,
        assigned_to_id=assignment.assigned_to_id,
        end_date=assignment.end_date.isoformat() if assignment.end_date else None,
        is_active=assignment.is_active,
    )


def _target_school_id(db_session: Session, target_type: str, target_id: str) -> Optional[str]:
    """School that owns an assignment target."""
    try:
        kind = AssignmentTargetType(target_type)
    except ValueError:
        raise ValidationError(
            f"Invalid assignment target type: {target_type}",
            allowed=[t.value for t in AssignmentTargetType],
        )

    if kind == AssignmentTargetType.SCHOOL:
        return target_id
    if kind == AssignmentTargetType.GRADE:
        grade = db_session.get(Grade, target_id)
        if grade is None:
            raise NotFound("Grade not found", target_id=target_id)
        return grade.school_id
    if kind == AssignmentTargetType.GROUP:
        group = db_session.get(Group, target_id)
        if group is None:
            raise NotFound("Group not found", target_id=target_id)
        return group.grade.school_id
    user = db_session.get(User, target_id)
    if user is None:
        raise NotFound(f"{kind.value.capitalize()} not found", target_id=target_id)
    return user.school_id


@router.post("", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
async def create_assignment(
    request: CreateAssignmentRequest,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR)),
    db_session: Session = Depends(get_db_session),
):
    if not identity.is_admin:
        require_same_school(
            identity,
            [_target_school_id(db_session, request.assigned_to_type, request.assigned_to_id)],
        )

    assignment = BookAssignmentService(db_session).create_assignment(
        request.book_sanity_id,
        request.assigned_to_type,
        request.assigned_to_id,
        end_date=request.end_date,
        assigned_by=identity.user_id,
    )
    return _assignment_response(assignment)


@router.delete("/{assignment_id}", response_model=AssignmentResponse)
async def deactivate_assignment(
    assignment_id: str,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR)),
    db_session: Session = Depends(get_db_session),
):
    """Deactivate an assignment. The row is kept so it can be reactivated."""
    assignment = db_session.get(BookAssignment, assignment_id)
    if assignment is None:
        raise NotFound("Assignment not found", assignment_id=assignment_id)
    if not identity.is_admin:
        require_same_school(
            identity,
            [_target_school_id(db_session, assignment.assigned_to_type.value, assignment.assigned_to_id)],
        )

    assignment = BookAssignmentService(db_session).deactivate_assignment(assignment_id)
    return _assignment_response(assignment)
