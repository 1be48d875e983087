"""
Identity resolution: authenticated principal -> internal user context.

The session token only proves who the caller is. Roles, school and group
memberships always come from the local database, re-read on every request.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from bookgate.auth.session_verifier import Principal
from bookgate.errors import Forbidden, NotFound
from bookgate.models.school import Group, GroupMembership
from bookgate.models.user import User, UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedIdentity:
    """
    Request-scoped view of a user.

    group_ids covers groups the user is a member of and groups the user
    teaches; grade_ids are the grades reachable through those groups.
    """
    user_id: str
    email: str
    roles: FrozenSet[UserRole]
    school_id: Optional[str] = None
    group_ids: FrozenSet[str] = field(default_factory=frozenset)
    grade_ids: FrozenSet[str] = field(default_factory=frozenset)

    def has_role(self, role: UserRole) -> bool:
        return role in self.roles

    def has_any_role(self, *roles: UserRole) -> bool:
        return bool(self.roles & frozenset(roles))

    @property
    def is_admin(self) -> bool:
        return UserRole.ADMIN in self.roles

    def require_any_role(self, *roles: UserRole) -> None:
        if not self.has_any_role(*roles):
            raise Forbidden(
                "Insufficient role for this operation",
                required=sorted(r.value for r in roles),
            )


def load_memberships(db: Session, user_id: str):
    """
    Return (group_ids, grade_ids) for a user.

    One round trip regardless of how many groups the user belongs to.
    """
    member_of = select(GroupMembership.group_id).where(
        GroupMembership.user_id == user_id
    )
    rows = (
        db.query(Group.id, Group.grade_id)
        .filter((Group.id.in_(member_of)) | (Group.teacher_id == user_id))
        .all()
    )
    group_ids = frozenset(r.id for r in rows)
    grade_ids = frozenset(r.grade_id for r in rows)
    return group_ids, grade_ids


class IdentityResolver:
    """Maps principals and user ids to ResolvedIdentity."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def resolve(self, principal: Principal) -> ResolvedIdentity:
        """
        Resolve the local user for an authenticated principal.

        Looks up by external_id first, then by email. A user matched by
        email gets its external_id linked so later lookups hit the index.

        Raises:
            NotFound: no local user for this principal
            Forbidden: the user was deleted
        """
        user = (
            self.db.query(User)
            .filter(User.external_id == principal.external_id)
            .first()
        )

        if user is None and principal.email:
            user = (
                self.db.query(User)
                .filter(func.lower(User.email) == principal.email.lower())
                .first()
            )
            if user is not None and user.external_id is None:
                user.external_id = principal.external_id
                self.db.commit()
                logger.info(
                    "Linked external identity to user",
                    extra={"user_id": user.id},
                )

        if user is None:
            logger.warning(
                "No local user for authenticated principal",
                extra={"external_id": principal.external_id},
            )
            raise NotFound("User not found")

        return self._build(user)

    def load(self, user_id: str) -> ResolvedIdentity:
        user = self.db.get(User, user_id)
        if user is None:
            raise NotFound("User not found", user_id=user_id)
        return self._build(user)

    def _build(self, user: User) -> ResolvedIdentity:
        if user.is_deleted:
            raise Forbidden("User account is disabled", user_id=user.id)

        group_ids, grade_ids = load_memberships(self.db, user.id)
        return ResolvedIdentity(
            user_id=user.id,
            email=user.email,
            roles=user.role_set,
            school_id=user.school_id,
            group_ids=group_ids,
            grade_ids=grade_ids,
        )


def require_same_school(identity: ResolvedIdentity, school_ids: Iterable[Optional[str]]) -> None:
    """Non-admins may only act inside their own school."""
    if identity.is_admin:
        return
    for school_id in school_ids:
        if school_id is None or school_id != identity.school_id:
            raise Forbidden("Operation outside of your school", school_id=school_id)
