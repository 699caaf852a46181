# Dispute Service for TrustWork
# A party freezes held escrow by opening a dispute; only an admin can settle it.

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import desc, or_
from sqlalchemy.orm import Session

from auth.principal import Principal
from auth.roles import Permission
from config import app_config
from core.deadline import Deadline
from core.errors import IllegalTransition, NotFound, Unauthorized
from core.events import DomainEvent, EventType
from core.payment_processor import PaymentProcessor
from database.models import (
    Dispute, DisputeDecision, DisputeStatus, EscrowPayment, EscrowStatus, Gig, GigStatus, utcnow,
)
from schemas.base import validated
from schemas.payments import DisputeCreate, DisputeResolve
from services.escrow_service import instruct_refund, mark_refunded, mark_released, payment_payload
from services.persistence import Repository, transaction

logger = logging.getLogger(__name__)

RESPONDABLE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.ESCALATED)


def dispute_payload(dispute: Dispute, **extra) -> dict:
    payload = {
        "dispute_id": dispute.id,
        "gig_id": dispute.gig_id,
        "payment_id": dispute.escrow_payment_id,
        "initiated_by": dispute.initiated_by,
        "respondent_id": dispute.respondent_id,
        "reason": dispute.reason,
        "status": dispute.status,
    }
    payload.update(extra)
    return payload


class DisputeService:
    """Command handlers for escrow disputes."""

    def __init__(self, db: Session, bus, processor: PaymentProcessor, deadline: Optional[Deadline] = None):
        self.db = db
        self.bus = bus
        self.processor = processor
        self.deadline = deadline or Deadline.none()

    def _lock(self, model, id: str):
        row = self.db.query(model).filter(model.id == id).with_for_update().first()
        if row is None:
            raise NotFound(f"{model.__name__} not found")
        return row

    def open_dispute(self, principal: Principal, data: Union[DisputeCreate, dict]) -> Dispute:
        """Freeze a held payment and its gig pending admin review."""
        data = validated(DisputeCreate, data)

        with transaction(self.db, self.bus, self.deadline):
            payment = Repository(self.db, EscrowPayment, principal).get(data.payment_id, for_update=True)
            if principal.user_id not in (payment.payer_id, payment.recipient_id):
                raise Unauthorized("Only the client or freelancer on this payment can dispute it")

            current = EscrowStatus(payment.status)
            if current != EscrowStatus.HELD:
                raise IllegalTransition(current.value, EscrowStatus.DISPUTED.value)

            now = utcnow()
            payment.status = EscrowStatus.DISPUTED
            payment.disputed_at = now

            gig = self._lock(Gig, payment.gig_id)
            if GigStatus(gig.status) in (GigStatus.OPEN, GigStatus.IN_PROGRESS):
                gig.status = GigStatus.DISPUTED

            respondent = payment.recipient_id if principal.user_id == payment.payer_id else payment.payer_id
            dispute = Dispute(
                gig_id=gig.id,
                escrow_payment_id=payment.id,
                initiated_by=principal.user_id,
                respondent_id=respondent,
                reason=data.reason,
                description=data.description,
                status=DisputeStatus.OPEN,
                response_deadline=now + timedelta(days=app_config.DISPUTE_RESPONSE_DAYS),
            )
            self.db.add(dispute)
            self.db.flush()

            self.bus.emit(self.db, DomainEvent(
                EventType.PAYMENT_DISPUTED, "escrow_payment", payment.id, payment_payload(payment),
            ))
            self.bus.emit(self.db, DomainEvent(
                EventType.DISPUTE_OPENED, "dispute", dispute.id, dispute_payload(dispute),
            ))

        logger.info(f"Dispute {dispute.id} opened on escrow {payment.id} by {principal.user_id}")
        return dispute

    def get(self, principal: Principal, dispute_id: str) -> Dispute:
        return Repository(self.db, Dispute, principal).get(dispute_id)

    def list_for_principal(self, principal: Principal, status: Optional[DisputeStatus] = None) -> List[Dispute]:
        query = self.db.query(Dispute)
        if not principal.is_admin:
            query = query.filter(or_(
                Dispute.initiated_by == principal.user_id,
                Dispute.respondent_id == principal.user_id,
            ))
        if status is not None:
            query = query.filter(Dispute.status == DisputeStatus(status))
        return query.order_by(desc(Dispute.created_at)).all()

    def respond(self, principal: Principal, dispute_id: str, response: str) -> Dispute:
        """The other party answers; the dispute moves to admin review."""
        with transaction(self.db, self.bus, self.deadline):
            Repository(self.db, Dispute, principal).get(dispute_id)
            dispute = self._lock(Dispute, dispute_id)
            if dispute.respondent_id != principal.user_id:
                raise Unauthorized("Only the other party can respond to this dispute")

            current = DisputeStatus(dispute.status)
            if current not in RESPONDABLE_STATUSES:
                raise IllegalTransition(current.value, DisputeStatus.UNDER_REVIEW.value)

            dispute.response = response
            dispute.responded_at = utcnow()
            dispute.status = DisputeStatus.UNDER_REVIEW
            self.db.flush()

        return dispute

    def resolve(self, principal: Principal, dispute_id: str, data: Union[DisputeResolve, dict]) -> Dispute:
        """
        Admin decision: release the funds to the freelancer or refund the client.

        The gig resumes after a release and is cancelled after a refund.
        """
        principal.require_permission(Permission.RESOLVE_DISPUTES)
        data = validated(DisputeResolve, data)
        decision = DisputeDecision(data.decision)

        with transaction(self.db, self.bus, self.deadline):
            dispute = self._lock(Dispute, dispute_id)
            current = DisputeStatus(dispute.status)
            if current == DisputeStatus.RESOLVED:
                raise IllegalTransition(current.value, DisputeStatus.RESOLVED.value)

            payment = self._lock(EscrowPayment, dispute.escrow_payment_id)
            if EscrowStatus(payment.status) != EscrowStatus.DISPUTED:
                raise IllegalTransition(
                    EscrowStatus(payment.status).value,
                    EscrowStatus.RELEASED.value if decision == DisputeDecision.RELEASE else EscrowStatus.REFUNDED.value,
                )
            gig = self._lock(Gig, dispute.gig_id)

            if decision == DisputeDecision.RELEASE:
                mark_released(self.db, self.bus, payment)
                if GigStatus(gig.status) == GigStatus.DISPUTED:
                    gig.status = GigStatus.IN_PROGRESS
            else:
                mark_refunded(self.db, self.bus, payment)
                if GigStatus(gig.status) == GigStatus.DISPUTED:
                    gig.status = GigStatus.CANCELLED

            dispute.status = DisputeStatus.RESOLVED
            dispute.decision = decision
            dispute.resolution_notes = data.notes
            dispute.resolved_by = principal.user_id
            dispute.resolved_at = utcnow()
            self.db.flush()

            self.bus.emit(self.db, DomainEvent(
                EventType.DISPUTE_RESOLVED, "dispute", dispute.id, dispute_payload(dispute, decision=decision),
            ))

        if decision == DisputeDecision.REFUND:
            instruct_refund(self.processor, self.bus.session_factory, payment, self.deadline)

        logger.info(f"Dispute {dispute.id} resolved: {decision.value}")
        return dispute


def sweep_overdue_disputes(session_factory, bus, now: Optional[datetime] = None) -> int:
    """
    Escalate open disputes whose respondent missed the response deadline.

    Returns:
        Number of disputes escalated
    """
    now = now or utcnow()
    with session_factory() as db:
        overdue = [
            row.id for row in db.query(Dispute.id).filter(
                Dispute.status == DisputeStatus.OPEN,
                Dispute.response_deadline < now,
            ).all()
        ]

    escalated = 0
    for dispute_id in overdue:
        with session_factory() as db:
            with transaction(db, bus):
                dispute = db.query(Dispute).filter(
                    Dispute.id == dispute_id, Dispute.status == DisputeStatus.OPEN,
                ).with_for_update().first()
                if dispute is None:
                    continue
                dispute.status = DisputeStatus.ESCALATED
                dispute.escalated_at = now
                db.flush()
                bus.emit(db, DomainEvent(EventType.SAFETY_FLAG, "dispute", dispute.id, dispute_payload(
                    dispute,
                    subject_ids=[dispute.initiated_by, dispute.respondent_id],
                    reason=f"Dispute \"{dispute.reason}\" received no response in time and was escalated to our team.",
                    action_url=f"/disputes/{dispute.id}",
                )))
                escalated += 1

    if escalated:
        logger.info(f"Escalated {escalated} overdue disputes")
    return escalated
