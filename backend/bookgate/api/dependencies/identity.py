"""
Identity dependencies.

Every authenticated route resolves the caller the same way: verify the
session bearer token, then load roles and memberships from the database.
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from bookgate.auth.session_verifier import SessionVerifier
from bookgate.database.session import get_db_session
from bookgate.errors import Unauthenticated
from bookgate.models.user import UserRole
from bookgate.services.identity_resolver import IdentityResolver, ResolvedIdentity

logger = logging.getLogger(__name__)


def get_session_verifier() -> SessionVerifier:
    return SessionVerifier()


def get_current_identity(
    authorization: Optional[str] = Header(None),
    db_session: Session = Depends(get_db_session),
    verifier: SessionVerifier = Depends(get_session_verifier),
) -> ResolvedIdentity:
    """Resolve the caller from the Authorization header."""
    if not authorization:
        raise Unauthenticated("Authorization header is required", reason="missing_token")

    principal = verifier.verify(authorization)
    return IdentityResolver(db_session).resolve(principal)


def require_roles(*roles: UserRole) -> Callable:
    """
    Factory for a dependency that admits only callers holding one of roles.

    Usage:
        @router.post("/x")
        async def x(identity=Depends(require_roles(UserRole.ADMIN))):
            ...
    """

    def check_roles(identity: ResolvedIdentity = Depends(get_current_identity)) -> ResolvedIdentity:
        if not identity.has_any_role(*roles):
            logger.warning(
                "Role check failed",
                extra={
                    "user_id": identity.user_id,
                    "required": [r.value for r in roles],
                },
            )
        identity.require_any_role(*roles)
        return identity

    return check_roles
