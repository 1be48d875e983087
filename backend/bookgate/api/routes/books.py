"""
Book access routes.

Reads answer "can this user open this book"; writes are limited to free
claims and admin revocation. All routes require a session token.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from bookgate.api.dependencies.identity import get_current_identity, require_roles
from bookgate.database.session import get_db_session
from bookgate.models.user import UserRole
from bookgate.services.access_resolution import AccessResolutionEngine
from bookgate.services.identity_resolver import ResolvedIdentity
from bookgate.services.license_allocation import LicenseAllocationManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["books"])


# Request/Response models
class AccessResponse(BaseModel):
    """Access decision for one book."""
    granted: bool
    reason: str
    expires_at: Optional[str] = None
    mechanisms: List[str] = []


class MyBooksResponse(BaseModel):
    book_ids: List[str]


class ClaimFreeRequest(BaseModel):
    book_sanity_id: str = Field(..., min_length=1)


class ClaimFreeResponse(BaseModel):
    access_id: str
    book_id: str
    end_date: str


class RevokeAccessRequest(BaseModel):
    school_id: str = Field(..., description="School the users belong to")
    user_ids: List[str] = Field(..., min_length=1)


class RevokeAccessResponse(BaseModel):
    revoked_count: int
    used_licenses: Optional[int] = None


@router.get("/books/{book_sanity_id}/access", response_model=AccessResponse)
async def get_book_access(
    book_sanity_id: str,
    guide: bool = Query(False, description="Check teacher guide access instead"),
    identity: ResolvedIdentity = Depends(get_current_identity),
    db_session: Session = Depends(get_db_session),
):
    engine = AccessResolutionEngine(db_session)
    if guide:
        decision = engine.check_guide_access(identity.user_id, book_sanity_id)
    else:
        decision = engine.resolve(identity.user_id, book_sanity_id)
    return AccessResponse(**decision.to_dict())


@router.get("/me/books", response_model=MyBooksResponse)
async def list_my_books(
    identity: ResolvedIdentity = Depends(get_current_identity),
    db_session: Session = Depends(get_db_session),
):
    book_ids = AccessResolutionEngine(db_session).list_accessible_books(identity.user_id)
    return MyBooksResponse(book_ids=book_ids)


@router.post("/books/claim-free", response_model=ClaimFreeResponse)
async def claim_free_book(
    request: ClaimFreeRequest,
    identity: ResolvedIdentity = Depends(get_current_identity),
    db_session: Session = Depends(get_db_session),
):
    access = LicenseAllocationManager(db_session).claim_free_book(
        identity.user_id, request.book_sanity_id
    )
    return ClaimFreeResponse(
        access_id=access.id,
        book_id=access.book_id,
        end_date=access.end_date.isoformat(),
    )


@router.post("/books/{book_id}/revoke-access", response_model=RevokeAccessResponse)
async def revoke_book_access(
    book_id: str,
    request: RevokeAccessRequest,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN)),
    db_session: Session = Depends(get_db_session),
):
    result = LicenseAllocationManager(db_session).revoke_bulk(
        book_id, request.user_ids, request.school_id
    )
    logger.info(
        "Book access revoked via API",
        extra={"book_id": book_id, "admin_id": identity.user_id, "revoked_count": result.revoked_count},
    )
    return RevokeAccessResponse(**result.to_dict())
