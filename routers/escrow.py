# Escrow Router for TrustWork
# Funding, gateway callbacks, release and refund

import logging

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from typing import Optional

from auth.decorators import require_permission
from auth.dependencies import get_current_principal
from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from core.errors import IllegalTransition, ValidationFailed
from core.payment_processor import PaymentProcessor
from database.config import get_db
from routers.deps import get_bus, get_deadline, get_processor
from schemas.payments import (
    CallbackAck,
    CheckoutCreate,
    CheckoutResponse,
    EscrowPaymentResponse,
    PaymentHistory,
    PaymentStats,
)
from services.escrow_service import EscrowService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/escrow", tags=["Escrow"])


def get_escrow_service(
    db: Session = Depends(get_db),
    bus=Depends(get_bus),
    processor: PaymentProcessor = Depends(get_processor),
    deadline: Deadline = Depends(get_deadline),
) -> EscrowService:
    return EscrowService(db, bus, processor, deadline)


# ============================================================================
# FUNDING
# ============================================================================

@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def create_checkout(
    data: CheckoutCreate,
    principal: Principal = Depends(require_permission(Permission.FUND_ESCROW)),
    service: EscrowService = Depends(get_escrow_service),
):
    """
    Create a pending escrow payment and return the gateway redirect URL.
    """
    result = service.create_checkout(principal, data)
    payment = result.payment
    return CheckoutResponse(
        payment_id=payment.id,
        redirect_url=result.redirect_url,
        gateway_ref=payment.gateway_ref,
        amount=payment.amount,
        payment_fee=payment.payment_fee,
        platform_fee=payment.platform_fee,
        total_charge=payment.total_charge,
        freelancer_net=payment.freelancer_net,
    )


@router.post("/callback", response_model=CallbackAck)
async def gateway_callback(
    request: Request,
    service: EscrowService = Depends(get_escrow_service),
):
    """
    Signed payment notification from the gateway.

    A notification that arrives after the payment already moved on is
    acknowledged and ignored so the gateway stops redelivering it.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/x-www-form-urlencoded") or content_type.startswith("multipart/"):
        payload = dict(await request.form())
    else:
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationFailed({"body": "Callback body must be JSON or form-encoded"})
    if not isinstance(payload, dict):
        raise ValidationFailed({"body": "Callback body must be an object"})

    logger.info(f"Gateway callback received for reference {payload.get('reference')}")

    try:
        payment = await run_in_threadpool(service.ingest_callback, payload)
    except IllegalTransition as e:
        logger.warning(f"Out-of-order callback for {payload.get('reference')} ignored: {e.detail}")
        return CallbackAck(status="ignored")

    return CallbackAck(status="ok", payment_id=payment.id, escrow_status=payment.status)


# ============================================================================
# RELEASE & REFUND
# ============================================================================

@router.post("/{payment_id}/release", response_model=EscrowPaymentResponse)
def release_payment(
    payment_id: str,
    expected_version: Optional[int] = Query(None),
    principal: Principal = Depends(require_permission(Permission.RELEASE_ESCROW)),
    service: EscrowService = Depends(get_escrow_service),
):
    """
    Release held funds to the freelancer. Releasing twice is harmless.
    """
    return service.release(principal, payment_id, expected_version)


@router.post("/{payment_id}/refund", response_model=EscrowPaymentResponse)
def refund_payment(
    payment_id: str,
    principal: Principal = Depends(require_permission(Permission.RELEASE_ESCROW)),
    service: EscrowService = Depends(get_escrow_service),
):
    return service.refund(principal, payment_id)


# ============================================================================
# HISTORY
# ============================================================================

@router.get("/mine", response_model=PaymentHistory)
def list_my_payments(
    principal: Principal = Depends(require_permission(Permission.VIEW_OWN_PAYMENTS)),
    service: EscrowService = Depends(get_escrow_service),
):
    return service.list_my_payments(principal)


@router.get("/stats", response_model=PaymentStats)
def payment_stats(
    principal: Principal = Depends(require_permission(Permission.VIEW_OWN_PAYMENTS)),
    service: EscrowService = Depends(get_escrow_service),
):
    return service.payment_stats(principal)


@router.get("/{payment_id}", response_model=EscrowPaymentResponse)
def get_payment(
    payment_id: str,
    principal: Principal = Depends(get_current_principal),
    service: EscrowService = Depends(get_escrow_service),
):
    return service.get(principal, payment_id)


# ============================================================================
# ADMIN
# ============================================================================

@router.post("/{payment_id}/retry-payout", response_model=EscrowPaymentResponse)
def retry_payout(
    payment_id: str,
    principal: Principal = Depends(require_permission(Permission.MANAGE_PAYOUTS)),
    service: EscrowService = Depends(get_escrow_service),
):
    """
    Put a failed payout back in the payout queue.
    """
    return service.retry_payout(principal, payment_id)
