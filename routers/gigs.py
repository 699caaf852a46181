# Gigs Router for TrustWork
# Gig contracts and their milestone plans

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from auth.decorators import require_permission
from auth.dependencies import get_current_principal
from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from database.config import get_db
from database.models import Gig, GigStatus
from routers.deps import get_bus, get_deadline
from schemas.marketplace import (
    GigCreate,
    GigResponse,
    MilestoneResponse,
    MilestonesDefine,
    MilestoneTransition,
)
from services.gig_service import GigService

router = APIRouter(prefix="/gigs", tags=["Gigs"])


def get_gig_service(
    db: Session = Depends(get_db),
    bus=Depends(get_bus),
    deadline: Deadline = Depends(get_deadline),
) -> GigService:
    return GigService(db, bus, deadline)


def gig_response(gig: Gig) -> GigResponse:
    response = GigResponse.model_validate(gig)
    response.progress = GigService.progress(gig)
    return response


# ============================================================================
# GIGS
# ============================================================================

@router.post("", response_model=GigResponse, status_code=status.HTTP_201_CREATED)
def create_gig(
    data: GigCreate,
    principal: Principal = Depends(require_permission(Permission.DEFINE_MILESTONES)),
    service: GigService = Depends(get_gig_service),
):
    """
    Hire a freelancer directly, without an assignment.
    """
    return gig_response(service.create_gig(principal, data))


@router.get("", response_model=List[GigResponse])
def list_my_gigs(
    principal: Principal = Depends(get_current_principal),
    service: GigService = Depends(get_gig_service),
    status_filter: Optional[GigStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    gigs = service.list_for_principal(principal, status=status_filter, page=page, limit=limit)
    return [gig_response(gig) for gig in gigs]


@router.get("/{gig_id}", response_model=GigResponse)
def get_gig(
    gig_id: str,
    principal: Principal = Depends(get_current_principal),
    service: GigService = Depends(get_gig_service),
):
    """
    Gig with its milestones and weighted progress.
    """
    return gig_response(service.get(principal, gig_id))


@router.post("/{gig_id}/complete", response_model=GigResponse)
def complete_gig(
    gig_id: str,
    principal: Principal = Depends(require_permission(Permission.REVIEW_MILESTONES)),
    service: GigService = Depends(get_gig_service),
):
    return gig_response(service.complete_gig(principal, gig_id))


# ============================================================================
# MILESTONES
# ============================================================================

@router.put("/{gig_id}/milestones", response_model=List[MilestoneResponse])
def define_milestones(
    gig_id: str,
    data: MilestonesDefine,
    principal: Principal = Depends(require_permission(Permission.DEFINE_MILESTONES)),
    service: GigService = Depends(get_gig_service),
):
    """
    Replace the milestone plan. Percentages must add up to 100
    and amounts to the gig budget.
    """
    return service.define_milestones(principal, gig_id, data.milestones)


@router.post("/milestones/{milestone_id}/transition", response_model=MilestoneResponse)
def transition_milestone(
    milestone_id: str,
    data: MilestoneTransition,
    principal: Principal = Depends(require_permission(Permission.WORK_MILESTONES, Permission.REVIEW_MILESTONES)),
    service: GigService = Depends(get_gig_service),
):
    return service.transition_milestone(
        principal, milestone_id, data.action,
        expected_status=data.expected_status, notes=data.notes,
    )
