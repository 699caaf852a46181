# Assignments Router for TrustWork

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from auth.decorators import require_permission
from auth.dependencies import get_current_principal
from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from database.config import get_db
from routers.deps import get_deadline
from schemas.marketplace import AssignmentCreate, AssignmentResponse
from services.assignment_service import AssignmentService

router = APIRouter(prefix="/assignments", tags=["Assignments"])


def get_assignment_service(
    db: Session = Depends(get_db),
    deadline: Deadline = Depends(get_deadline),
) -> AssignmentService:
    return AssignmentService(db, deadline)


@router.get("", response_model=List[AssignmentResponse])
def list_open_assignments(
    service: AssignmentService = Depends(get_assignment_service),
    category: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    """
    Open assignments, newest first. Public.
    """
    return service.list_open(page=page, limit=limit, category=category)


@router.post("", response_model=AssignmentResponse, status_code=status.HTTP_201_CREATED)
def create_assignment(
    data: AssignmentCreate,
    principal: Principal = Depends(require_permission(Permission.POST_ASSIGNMENTS)),
    service: AssignmentService = Depends(get_assignment_service),
):
    return service.create(principal, data)


@router.get("/mine", response_model=List[AssignmentResponse])
def list_my_assignments(
    principal: Principal = Depends(require_permission(Permission.POST_ASSIGNMENTS)),
    service: AssignmentService = Depends(get_assignment_service),
):
    return service.list_mine(principal)


@router.get("/{assignment_id}", response_model=AssignmentResponse)
def get_assignment(
    assignment_id: str,
    principal: Principal = Depends(get_current_principal),
    service: AssignmentService = Depends(get_assignment_service),
):
    return service.get(principal, assignment_id)


@router.post("/{assignment_id}/publish", response_model=AssignmentResponse)
def publish_assignment(
    assignment_id: str,
    principal: Principal = Depends(require_permission(Permission.POST_ASSIGNMENTS)),
    service: AssignmentService = Depends(get_assignment_service),
):
    return service.publish(principal, assignment_id)


@router.post("/{assignment_id}/close", response_model=AssignmentResponse)
def close_assignment(
    assignment_id: str,
    principal: Principal = Depends(require_permission(Permission.POST_ASSIGNMENTS)),
    service: AssignmentService = Depends(get_assignment_service),
):
    return service.close(principal, assignment_id)
