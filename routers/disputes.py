# Disputes Router for TrustWork
# Parties raise and answer disputes over held escrow; admins decide them

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional

from auth.decorators import require_permission
from auth.dependencies import get_current_principal
from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from core.payment_processor import PaymentProcessor
from database.config import get_db
from database.models import DisputeStatus
from routers.deps import get_bus, get_deadline, get_processor
from schemas.payments import DisputeCreate, DisputeResolve, DisputeRespond, DisputeResponse
from services.dispute_service import DisputeService

router = APIRouter(prefix="/disputes", tags=["Disputes"])


def get_dispute_service(
    db: Session = Depends(get_db),
    bus=Depends(get_bus),
    processor: PaymentProcessor = Depends(get_processor),
    deadline: Deadline = Depends(get_deadline),
) -> DisputeService:
    return DisputeService(db, bus, processor, deadline)


# ============================================================================
# PARTY ENDPOINTS
# ============================================================================

@router.post("", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
def open_dispute(
    data: DisputeCreate,
    principal: Principal = Depends(require_permission(Permission.RAISE_DISPUTES)),
    service: DisputeService = Depends(get_dispute_service),
):
    """
    Freeze a held payment and open a dispute against the other party.
    """
    return service.open_dispute(principal, data)


@router.get("", response_model=List[DisputeResponse])
def list_disputes(
    principal: Principal = Depends(get_current_principal),
    service: DisputeService = Depends(get_dispute_service),
    status_filter: Optional[DisputeStatus] = Query(None, alias="status"),
):
    """
    Disputes the user is party to. Admins see all of them.
    """
    return service.list_for_principal(principal, status=status_filter)


@router.get("/{dispute_id}", response_model=DisputeResponse)
def get_dispute(
    dispute_id: str,
    principal: Principal = Depends(get_current_principal),
    service: DisputeService = Depends(get_dispute_service),
):
    return service.get(principal, dispute_id)


@router.post("/{dispute_id}/respond", response_model=DisputeResponse)
def respond_to_dispute(
    dispute_id: str,
    data: DisputeRespond,
    principal: Principal = Depends(get_current_principal),
    service: DisputeService = Depends(get_dispute_service),
):
    return service.respond(principal, dispute_id, data.response)


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@router.post("/admin/{dispute_id}/resolve", response_model=DisputeResponse)
def resolve_dispute(
    dispute_id: str,
    data: DisputeResolve,
    principal: Principal = Depends(require_permission(Permission.RESOLVE_DISPUTES)),
    service: DisputeService = Depends(get_dispute_service),
):
    """
    Release the disputed funds to the freelancer or refund the client.
    """
    return service.resolve(principal, dispute_id, data)
