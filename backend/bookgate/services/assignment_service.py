"""
Book assignment management.

Assignments attach a book to an organizational scope; the resolution
engine joins through current membership at read time.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from bookgate.errors import NotFound, ValidationError
from bookgate.models.base import ensure_utc, utcnow
from bookgate.models.book_assignment import AssignmentTargetType, BookAssignment
from bookgate.models.school import Grade, Group, School
from bookgate.models.user import User, UserRole

logger = logging.getLogger(__name__)


class BookAssignmentService:
    def __init__(self, db_session: Session):
        self.db = db_session

    def create_assignment(
        self,
        book_sanity_id: str,
        assigned_to_type: str,
        assigned_to_id: str,
        end_date: Optional[datetime] = None,
        assigned_by: Optional[str] = None,
    ) -> BookAssignment:
        """
        Assign a book to a school, grade, group, teacher or student.

        Re-assigning the same book to the same target reactivates the
        existing assignment and replaces its end date.
        """
        if not book_sanity_id:
            raise ValidationError("book_sanity_id is required")
        try:
            target_type = AssignmentTargetType(assigned_to_type)
        except ValueError:
            raise ValidationError(
                f"Invalid assignment target type: {assigned_to_type}",
                allowed=[t.value for t in AssignmentTargetType],
            )

        if end_date is not None:
            end_date = ensure_utc(end_date)
            if end_date <= utcnow():
                raise ValidationError("End date must be in the future")

        self._require_target(target_type, assigned_to_id)

        assignment = (
            self.db.query(BookAssignment)
            .filter(
                BookAssignment.book_sanity_id == book_sanity_id,
                BookAssignment.assigned_to_type == target_type,
                BookAssignment.assigned_to_id == assigned_to_id,
            )
            .first()
        )
        if assignment is None:
            assignment = BookAssignment(
                book_sanity_id=book_sanity_id,
                assigned_to_type=target_type,
                assigned_to_id=assigned_to_id,
            )
            self.db.add(assignment)

        assignment.end_date = end_date
        assignment.is_active = True
        assignment.assigned_by = assigned_by
        self.db.commit()

        logger.info(
            "Book assigned",
            extra={
                "book_sanity_id": book_sanity_id,
                "assigned_to_type": target_type.value,
                "assigned_to_id": assigned_to_id,
            },
        )
        return assignment

    def deactivate_assignment(self, assignment_id: str) -> BookAssignment:
        assignment = self.db.get(BookAssignment, assignment_id)
        if assignment is None:
            raise NotFound("Assignment not found", assignment_id=assignment_id)
        assignment.is_active = False
        self.db.commit()
        logger.info("Book assignment deactivated", extra={"assignment_id": assignment_id})
        return assignment

    def _require_target(self, target_type: AssignmentTargetType, target_id: str) -> None:
        if not target_id:
            raise ValidationError("assigned_to_id is required")

        if target_type == AssignmentTargetType.SCHOOL:
            found = self.db.get(School, target_id) is not None
        elif target_type == AssignmentTargetType.GRADE:
            found = self.db.get(Grade, target_id) is not None
        elif target_type == AssignmentTargetType.GROUP:
            found = self.db.get(Group, target_id) is not None
        else:
            user = self.db.get(User, target_id)
            found = user is not None and not user.is_deleted
            if found and target_type == AssignmentTargetType.TEACHER and not user.has_role(UserRole.TEACHER):
                raise ValidationError("Target user is not a teacher", user_id=target_id)

        if not found:
            raise NotFound(f"{target_type.value.capitalize()} not found", target_id=target_id)
