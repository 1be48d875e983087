"""
School administration routes (admin only): license pools and the coordinator.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from bookgate.api.dependencies.identity import require_roles
from bookgate.database.session import get_db_session
from bookgate.errors import NotFound
from bookgate.models.school_book_license import SchoolBookLicense
from bookgate.models.user import UserRole
from bookgate.services.identity_resolver import ResolvedIdentity
from bookgate.services.license_allocation import LicenseAllocationManager
from bookgate.services.school_service import SchoolService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/schools", tags=["schools"])


class CreateLicenseRequest(BaseModel):
    book_id: str
    total_licenses: int = Field(..., ge=1)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class LicenseResponse(BaseModel):
    id: str
    school_id: str
    book_id: str
    total_licenses: int
    used_licenses: int
    start_date: str
    end_date: str
    is_active: bool


class UpdateLicenseRequest(BaseModel):
    """Fields left out are unchanged. used_licenses is always derived."""
    total_licenses: Optional[int] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class AssignCoordinatorRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class CoordinatorResponse(BaseModel):
    school_id: str
    coordinator_id: str


def _license_response(license_row: SchoolBookLicense) -> LicenseResponse:
    return LicenseResponse(
        id=license_row.id,
        school_id=license_row.school_id,
        book_id=license_row.book_id,
        total_licenses=license_row.total_licenses,
        used_licenses=license_row.used_licenses,
        start_date=license_row.start_date.isoformat(),
        end_date=license_row.end_date.isoformat(),
        is_active=license_row.is_active,
    )


@router.post(
    "/{school_id}/book-licenses",
    response_model=LicenseResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_book_license(
    school_id: str,
    request: CreateLicenseRequest,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN)),
    db_session: Session = Depends(get_db_session),
):
    license_row = LicenseAllocationManager(db_session).create_school_license(
        school_id,
        request.book_id,
        request.total_licenses,
        start_date=request.start_date,
        end_date=request.end_date,
        granted_by=identity.user_id,
    )
    return _license_response(license_row)


@router.patch("/{school_id}/book-licenses/{license_id}", response_model=LicenseResponse)
async def update_book_license(
    school_id: str,
    license_id: str,
    request: UpdateLicenseRequest,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN)),
    db_session: Session = Depends(get_db_session),
):
    license_row = db_session.get(SchoolBookLicense, license_id)
    if license_row is None or license_row.school_id != school_id:
        raise NotFound("License not found", license_id=license_id, school_id=school_id)

    license_row = LicenseAllocationManager(db_session).update_school_license(
        license_id,
        total_licenses=request.total_licenses,
        end_date=request.end_date,
        is_active=request.is_active,
    )
    logger.info(
        "School license updated via API",
        extra={"license_id": license_id, "admin_id": identity.user_id},
    )
    return _license_response(license_row)


@router.put("/{school_id}/coordinator", response_model=CoordinatorResponse)
async def assign_coordinator(
    school_id: str,
    request: AssignCoordinatorRequest,
    identity: ResolvedIdentity = Depends(require_roles(UserRole.ADMIN)),
    db_session: Session = Depends(get_db_session),
):
    """Make a user the school's coordinator. A user coordinates one school at most."""
    school = SchoolService(db_session).assign_coordinator(school_id, request.user_id)
    return CoordinatorResponse(school_id=school.id, coordinator_id=school.coordinator_id)
