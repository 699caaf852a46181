# Applications Router for TrustWork
# Freelancers apply and withdraw; employers review

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from auth.decorators import require_permission
from auth.dependencies import get_current_principal
from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from database.config import get_db
from database.models import ApplicationStatus
from routers.deps import get_bus, get_deadline
from schemas.marketplace import (
    ApplicationCreate,
    ApplicationDecisionResponse,
    ApplicationResponse,
    ApplicationStatusUpdate,
    ApplicationWithdraw,
    AssignmentSummary,
    EmployerApplicationView,
    FreelancerApplicationView,
    FreelancerSummary,
)
from services.application_service import ApplicationService

router = APIRouter(prefix="/applications", tags=["Applications"])


def get_application_service(
    db: Session = Depends(get_db),
    bus=Depends(get_bus),
    deadline: Deadline = Depends(get_deadline),
) -> ApplicationService:
    return ApplicationService(db, bus, deadline)


# ============================================================================
# FREELANCER ENDPOINTS
# ============================================================================

@router.post("", response_model=ApplicationResponse, status_code=status.HTTP_201_CREATED)
def submit_application(
    data: ApplicationCreate,
    principal: Principal = Depends(require_permission(Permission.SUBMIT_APPLICATIONS)),
    service: ApplicationService = Depends(get_application_service),
):
    """
    Apply to an open assignment.
    """
    return service.submit(principal, data)


@router.get("/mine", response_model=List[FreelancerApplicationView])
def list_my_applications(
    principal: Principal = Depends(get_current_principal),
    service: ApplicationService = Depends(get_application_service),
    status_filter: Optional[ApplicationStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """
    The current freelancer's applications with assignment summaries.
    """
    rows = service.list_for_freelancer(principal, status=status_filter, page=page, limit=limit)
    return [
        FreelancerApplicationView(
            application=ApplicationResponse.model_validate(row.application),
            assignment=AssignmentSummary.model_validate(row.assignment),
        )
        for row in rows
    ]


@router.post("/{application_id}/withdraw", response_model=ApplicationResponse)
def withdraw_application(
    application_id: str,
    data: ApplicationWithdraw,
    principal: Principal = Depends(get_current_principal),
    service: ApplicationService = Depends(get_application_service),
):
    return service.withdraw(principal, application_id, data.reason)


# ============================================================================
# EMPLOYER ENDPOINTS
# ============================================================================

@router.get("/assignment/{assignment_id}", response_model=List[EmployerApplicationView])
def list_assignment_applications(
    assignment_id: str,
    principal: Principal = Depends(require_permission(Permission.REVIEW_APPLICATIONS)),
    service: ApplicationService = Depends(get_application_service),
    status_filter: Optional[ApplicationStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """
    Applications to one of the employer's assignments, with applicant summaries.
    """
    rows = service.list_for_employer(principal, assignment_id, status=status_filter, page=page, limit=limit)
    return [
        EmployerApplicationView(
            application=ApplicationResponse.model_validate(row.application),
            freelancer=FreelancerSummary.model_validate(row.freelancer),
        )
        for row in rows
    ]


@router.patch("/{application_id}/status", response_model=ApplicationDecisionResponse)
def update_application_status(
    application_id: str,
    data: ApplicationStatusUpdate,
    principal: Principal = Depends(require_permission(Permission.REVIEW_APPLICATIONS)),
    service: ApplicationService = Depends(get_application_service),
):
    """
    Shortlist, accept or reject an application.
    Accepting fills the assignment and creates the gig.
    """
    application, gig = service.update_status(principal, application_id, data)
    return ApplicationDecisionResponse(
        application=ApplicationResponse.model_validate(application),
        gig_id=gig.id if gig else None,
    )


# ============================================================================
# SHARED
# ============================================================================

@router.get("/{application_id}", response_model=ApplicationResponse)
def get_application(
    application_id: str,
    principal: Principal = Depends(get_current_principal),
    service: ApplicationService = Depends(get_application_service),
):
    return service.get(principal, application_id)
