"""
Group roster routes.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from bookgate.api.dependencies.identity import require_roles
from bookgate.database.session import get_db_session
from bookgate.errors import NotFound
from bookgate.models.school import Group
from bookgate.models.user import UserRole
from bookgate.services.identity_resolver import ResolvedIdentity, require_same_school
from bookgate.services.license_allocation import LicenseAllocationManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/groups", tags=["groups"])


class MoveStudentsRequest(BaseModel):
    student_ids: List[str] = Field(..., min_length=1)
    target_group_id: str


class MoveStudentsResponse(BaseModel):
    moved_count: int
    already_in_target_count: int


@router.post("/{group_id}/move-students", response_model=MoveStudentsResponse)
async def move_students(
    group_id: str,
    request: MoveStudentsRequest,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN, UserRole.COORDINATOR)),
    db_session: Session = Depends(get_db_session),
):
    """Move students to another group of the same grade. Coordinators: own school only."""
    source = db_session.get(Group, group_id)
    if source is None:
        raise NotFound("Group not found", group_id=group_id)
    require_same_school(identity, [source.grade.school_id])

    result = LicenseAllocationManager(db_session).move_students(
        request.student_ids, group_id, request.target_group_id
    )
    return MoveStudentsResponse(**result.to_dict())
