"""
School administration: coordinator assignment.

A coordinator coordinates exactly one school. The check happens here at
write time; the unique constraint on schools.coordinator_id backs it.
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bookgate.errors import ConflictError, NotFound
from bookgate.models.school import School
from bookgate.models.user import User, UserRole

logger = logging.getLogger(__name__)


class SchoolService:
    def __init__(self, db_session: Session):
        self.db = db_session

    def assign_coordinator(self, school_id: str, user_id: str) -> School:
        """
        Make user_id the coordinator of school_id.

        The user gains the COORDINATOR role and joins the school. Assigning
        the current coordinator again is a no-op.

        Raises:
            NotFound: school or user missing
            ConflictError: the user already coordinates another school
        """
        school = self.db.get(School, school_id)
        if school is None:
            raise NotFound("School not found", school_id=school_id)

        user = self.db.get(User, user_id)
        if user is None or user.is_deleted:
            raise NotFound("User not found", user_id=user_id)

        if school.coordinator_id == user_id:
            return school

        other = (
            self.db.query(School)
            .filter(School.coordinator_id == user_id, School.id != school_id)
            .first()
        )
        if other is not None:
            raise ConflictError(
                "User already coordinates another school",
                user_id=user_id,
                school_id=other.id,
            )

        try:
            school.coordinator_id = user_id
            user.school_id = school_id
            user.add_role(UserRole.COORDINATOR)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConflictError("User already coordinates another school", user_id=user_id)

        logger.info(
            "Coordinator assigned",
            extra={"school_id": school_id, "user_id": user_id},
        )
        return school
