# Escrow Service for TrustWork
# Funds are captured through the gateway, held, then released to the
# freelancer (paid out by the payout worker) or refunded to the client.

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import desc, func, or_
from sqlalchemy.orm import Session

from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from core.errors import (
    Conflict, GatewayError, IllegalTransition, NotFound, Timeout, Unauthorized, ValidationFailed,
)
from core.events import DomainEvent, EventType
from core.fees import calculate_fees, to_money
from core.payment_processor import CheckoutRequest, PaymentProcessor
from database.models import (
    BankAccount, EscrowPayment, EscrowStatus, Gig, GigStatus, Milestone, MilestoneStatus,
    PaymentMethod, PayoutStatus, utcnow,
)
from schemas.base import validated
from schemas.payments import CheckoutCreate
from services.event_bus import record_audit
from services.persistence import Repository, transaction

logger = logging.getLogger(__name__)

FUNDABLE_GIG_STATUSES = (GigStatus.OPEN, GigStatus.IN_PROGRESS)

# Escrow states reached only after a successful capture; a repeated "paid" callback is a no-op here
CAPTURED_STATUSES = frozenset({
    EscrowStatus.HELD,
    EscrowStatus.RELEASED,
    EscrowStatus.REFUNDED,
    EscrowStatus.DISPUTED,
})


@dataclass
class CheckoutResult:
    payment: EscrowPayment
    redirect_url: str


def payment_payload(payment: EscrowPayment, **extra) -> Dict[str, Any]:
    payload = {
        "payment_id": payment.id,
        "gig_id": payment.gig_id,
        "milestone_id": payment.milestone_id,
        "payer_id": payment.payer_id,
        "recipient_id": payment.recipient_id,
        "amount": payment.amount,
        "platform_fee": payment.platform_fee,
        "net": payment.freelancer_net,
        "status": payment.status,
    }
    payload.update(extra)
    return payload


def mark_released(db: Session, bus, payment: EscrowPayment) -> EscrowPayment:
    """Move a held (or disputed) payment to released and queue its payout."""
    now = utcnow()
    payment.status = EscrowStatus.RELEASED
    payment.released_at = now
    payment.payout_status = PayoutStatus.PENDING
    payment.payout_attempts = 0
    payment.next_payout_attempt_at = None
    payment.payout_error = None

    if payment.milestone_id:
        milestone = db.get(Milestone, payment.milestone_id)
        if milestone is not None and MilestoneStatus(milestone.status) == MilestoneStatus.APPROVED:
            milestone.payment_released = True
            milestone.payment_released_at = now

    db.flush()
    bus.emit(db, DomainEvent(EventType.PAYMENT_RELEASED, "escrow_payment", payment.id, payment_payload(payment)))
    logger.info(f"Escrow {payment.id} released; net {payment.freelancer_net} queued for payout")
    return payment


def mark_refunded(db: Session, bus, payment: EscrowPayment) -> EscrowPayment:
    payment.status = EscrowStatus.REFUNDED
    payment.refunded_at = utcnow()
    db.flush()
    bus.emit(db, DomainEvent(EventType.PAYMENT_REFUNDED, "escrow_payment", payment.id, payment_payload(payment)))
    logger.info(f"Escrow {payment.id} refunded")
    return payment


def release_for_milestone(db: Session, bus, milestone: Milestone) -> Optional[EscrowPayment]:
    """Release the held escrow funding an approved milestone, inside the caller's transaction."""
    payment = db.query(EscrowPayment).filter(
        EscrowPayment.milestone_id == milestone.id,
        EscrowPayment.status == EscrowStatus.HELD,
    ).with_for_update().first()

    if payment is None:
        released = db.query(EscrowPayment).filter(
            EscrowPayment.milestone_id == milestone.id,
            EscrowPayment.status == EscrowStatus.RELEASED,
        ).first()
        if released is not None and not milestone.payment_released:
            milestone.payment_released = True
            milestone.payment_released_at = released.released_at
        else:
            logger.info(f"No held escrow for milestone {milestone.id}; nothing to release")
        return released

    return mark_released(db, bus, payment)


def instruct_refund(processor: PaymentProcessor, session_factory, payment: EscrowPayment,
                    deadline: Optional[Deadline] = None) -> bool:
    """
    Ask the gateway to return the client's money.

    The escrow row is already refunded; gateway trouble is retried once when
    transient and otherwise written to the audit log.

    Returns:
        True if the gateway accepted the instruction
    """
    if not payment.gateway_ref:
        logger.warning(f"Escrow {payment.id} has no gateway reference; refund must be handled manually")
        return False

    for attempt in (1, 2):
        try:
            processor.refund(payment.gateway_ref, payment.total_charge, payment.id, deadline=deadline)
            return True
        except (GatewayError, Timeout) as e:
            retryable = isinstance(e, GatewayError) and e.retryable
            logger.warning(f"Refund instruction for {payment.id} failed (attempt {attempt}): {e.detail}")
            if attempt == 1 and retryable:
                continue
            with session_factory() as db:
                record_audit(db, "gateway_failure", f"refund: {e.detail}", payment.id,
                             {"gateway_ref": payment.gateway_ref, "amount": payment.total_charge})
                db.commit()
            return False
    return False


class EscrowService:
    """Command handlers for escrow payments."""

    def __init__(self, db: Session, bus, processor: PaymentProcessor, deadline: Optional[Deadline] = None):
        self.db = db
        self.bus = bus
        self.processor = processor
        self.deadline = deadline or Deadline.none()

    def _session_factory(self):
        return self.bus.session_factory

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    def create_checkout(self, principal: Principal, data: Union[CheckoutCreate, dict]) -> CheckoutResult:
        """
        Record a pending escrow payment and start the gateway checkout.

        The escrow row is committed before the gateway call so the callback
        can always find it by reference.
        """
        data = validated(CheckoutCreate, data)

        with transaction(self.db, None, self.deadline):
            gig = Repository(self.db, Gig, principal).get(data.gig_id)
            if gig.client_id != principal.user_id:
                raise Unauthorized("Only the gig's client can fund escrow")
            if GigStatus(gig.status) not in FUNDABLE_GIG_STATUSES:
                raise IllegalTransition(GigStatus(gig.status).value, None,
                                        detail="Escrow can only be funded for open or active gigs")
            if data.freelancer_id != gig.freelancer_id:
                raise ValidationFailed({"freelancer_id": "Freelancer is not the gig's freelancer"})

            if data.milestone_id is not None:
                milestone = self.db.get(Milestone, data.milestone_id)
                if milestone is None or milestone.gig_id != gig.id:
                    raise ValidationFailed({"milestone_id": "Milestone does not belong to this gig"})
                if to_money(data.gross_amount) != to_money(milestone.amount):
                    raise ValidationFailed({"gross_amount": "Amount must equal the milestone amount"})

            bank = self.db.query(BankAccount).filter(BankAccount.owner_id == data.freelancer_id).first()
            if bank is None or not bank.verified:
                raise ValidationFailed({"freelancer_id": "The freelancer has no verified bank account for payouts"})

            fees = calculate_fees(data.gross_amount, data.method)
            payment = EscrowPayment(
                gig_id=gig.id,
                milestone_id=data.milestone_id,
                application_id=data.application_id or gig.application_id,
                payer_id=principal.user_id,
                recipient_id=gig.freelancer_id,
                amount=fees.gross_amount,
                platform_fee=fees.platform_fee,
                payment_method=PaymentMethod(data.method),
                payment_fee=fees.payment_fee,
                status=EscrowStatus.PENDING,
            )
            self.db.add(payment)
            self.db.flush()
            title = gig.title

        try:
            checkout = self.processor.create_checkout(
                CheckoutRequest(
                    reference=payment.id,
                    amount=fees.total_charge,
                    item_name=f"TrustWork escrow: {title}",
                    buyer_email=data.buyer_email,
                ),
                deadline=self.deadline,
            )
        except (GatewayError, Timeout) as e:
            logger.error(f"Checkout for escrow {payment.id} failed: {e.detail}")
            with transaction(self.db):
                payment = self.db.get(EscrowPayment, payment.id)
                payment.status = EscrowStatus.DISCARDED
                payment.discarded_at = utcnow()
                record_audit(self.db, "gateway_failure", f"checkout: {e.detail}", payment.id)
            raise

        with transaction(self.db, None, self.deadline):
            payment = self.db.get(EscrowPayment, payment.id)
            payment.gateway_ref = checkout.gateway_ref
            self.db.flush()

        logger.info(f"Escrow {payment.id} awaiting payment of {fees.total_charge} ({data.method.value})")
        return CheckoutResult(payment=payment, redirect_url=checkout.redirect_url)

    def ingest_callback(self, payload: Dict[str, Any]) -> EscrowPayment:
        """
        Apply a signed gateway notification.

        Deliveries are at-least-once: a repeat of an outcome already applied
        changes nothing. A "paid" after a "failed" (or the reverse once funds
        are captured) raises IllegalTransition.
        """
        result = self.processor.verify_callback(payload)

        with transaction(self.db, self.bus, self.deadline):
            payment = self.db.query(EscrowPayment).filter(
                EscrowPayment.id == result.reference
            ).with_for_update().first()
            if payment is None:
                raise NotFound(f"No escrow payment for reference {result.reference}")
            if payment.gateway_ref and payment.gateway_ref != result.gateway_ref:
                raise ValidationFailed({"gatewayRef": "Does not match the checkout for this payment"})

            current = EscrowStatus(payment.status)
            if result.status == "paid":
                if current in CAPTURED_STATUSES:
                    logger.info(f"Duplicate paid callback for escrow {payment.id} ignored")
                    return payment
                if current != EscrowStatus.PENDING:
                    raise IllegalTransition(current.value, EscrowStatus.HELD.value)
                if result.gross_amount not in (to_money(payment.total_charge), to_money(payment.amount)):
                    raise ValidationFailed({"grossAmount": f"Expected {payment.total_charge}, got {result.gross_amount}"})

                payment.status = EscrowStatus.HELD
                payment.held_at = utcnow()
                payment.gateway_ref = result.gateway_ref
                self.db.flush()
                self.bus.emit(self.db, DomainEvent(
                    EventType.PAYMENT_HELD, "escrow_payment", payment.id, payment_payload(payment),
                ))
                logger.info(f"Escrow {payment.id} held")
            else:
                if current == EscrowStatus.DISCARDED:
                    logger.info(f"Duplicate failed callback for escrow {payment.id} ignored")
                    return payment
                if current != EscrowStatus.PENDING:
                    raise IllegalTransition(current.value, EscrowStatus.DISCARDED.value)

                payment.status = EscrowStatus.DISCARDED
                payment.discarded_at = utcnow()
                payment.gateway_ref = result.gateway_ref
                self.db.flush()
                logger.info(f"Escrow {payment.id} discarded after failed payment")

        return payment

    # ------------------------------------------------------------------
    # Release & refund
    # ------------------------------------------------------------------

    def get(self, principal: Principal, payment_id: str) -> EscrowPayment:
        return Repository(self.db, EscrowPayment, principal).get(payment_id)

    def _payer_payment(self, principal: Principal, payment_id: str) -> EscrowPayment:
        payment = Repository(self.db, EscrowPayment, principal).get(payment_id, for_update=True)
        if payment.payer_id != principal.user_id:
            raise Unauthorized("Only the paying client can do this")
        return payment

    def release(self, principal: Principal, payment_id: str, expected_version: Optional[int] = None) -> EscrowPayment:
        """Release held funds to the freelancer. Releasing twice returns the released row."""
        try:
            with transaction(self.db, self.bus, self.deadline):
                payment = self._payer_payment(principal, payment_id)
                current = EscrowStatus(payment.status)
                if current == EscrowStatus.RELEASED:
                    return payment
                if current != EscrowStatus.HELD:
                    raise IllegalTransition(current.value, EscrowStatus.RELEASED.value)
                if expected_version is not None and payment.version != expected_version:
                    raise Conflict("The payment was changed by someone else; reload and retry")
                mark_released(self.db, self.bus, payment)
        except Conflict:
            # A concurrent release may have won; report its result rather than the clash
            self.db.expire_all()
            payment = Repository(self.db, EscrowPayment, principal).get(payment_id)
            if EscrowStatus(payment.status) == EscrowStatus.RELEASED:
                return payment
            raise
        return payment

    def refund(self, principal: Principal, payment_id: str) -> EscrowPayment:
        """Return held funds to the client."""
        with transaction(self.db, self.bus, self.deadline):
            payment = self._payer_payment(principal, payment_id)
            current = EscrowStatus(payment.status)
            if current == EscrowStatus.REFUNDED:
                return payment
            if current != EscrowStatus.HELD:
                raise IllegalTransition(current.value, EscrowStatus.REFUNDED.value)
            mark_refunded(self.db, self.bus, payment)

        instruct_refund(self.processor, self._session_factory(), payment, self.deadline)
        return payment

    # ------------------------------------------------------------------
    # History & admin
    # ------------------------------------------------------------------

    def list_my_payments(self, principal: Principal) -> Dict[str, List[EscrowPayment]]:
        sent = self.db.query(EscrowPayment).filter(
            EscrowPayment.payer_id == principal.user_id
        ).order_by(desc(EscrowPayment.created_at)).all()
        received = self.db.query(EscrowPayment).filter(
            EscrowPayment.recipient_id == principal.user_id
        ).order_by(desc(EscrowPayment.created_at)).all()
        return {"sent": sent, "received": received}

    def payment_stats(self, principal: Principal) -> Dict[str, Any]:
        uid = principal.user_id
        zero = Decimal("0.00")

        def total(expr, *criteria) -> Decimal:
            value = self.db.query(func.coalesce(func.sum(expr), 0)).filter(*criteria).scalar()
            return to_money(value or zero)

        captured = (EscrowStatus.HELD, EscrowStatus.RELEASED, EscrowStatus.DISPUTED)
        return {
            "total_paid": total(EscrowPayment.amount, EscrowPayment.payer_id == uid,
                                EscrowPayment.status.in_(captured)),
            "total_received": total(EscrowPayment.amount - EscrowPayment.platform_fee,
                                    EscrowPayment.recipient_id == uid,
                                    EscrowPayment.payout_status == PayoutStatus.COMPLETED),
            "pending_payments": self.db.query(EscrowPayment).filter(
                EscrowPayment.payer_id == uid, EscrowPayment.status == EscrowStatus.PENDING,
            ).count(),
            "held_in_escrow": total(EscrowPayment.amount,
                                    or_(EscrowPayment.payer_id == uid, EscrowPayment.recipient_id == uid),
                                    EscrowPayment.status == EscrowStatus.HELD),
            "pending_payouts": total(EscrowPayment.amount - EscrowPayment.platform_fee,
                                     EscrowPayment.recipient_id == uid,
                                     EscrowPayment.status == EscrowStatus.RELEASED,
                                     EscrowPayment.payout_status.in_((PayoutStatus.PENDING, PayoutStatus.PROCESSING))),
        }

    def retry_payout(self, principal: Principal, payment_id: str) -> EscrowPayment:
        """Admin: put a failed payout back in the queue."""
        principal.require_permission(Permission.MANAGE_PAYOUTS)

        with transaction(self.db, self.bus, self.deadline):
            payment = self.db.query(EscrowPayment).filter(
                EscrowPayment.id == payment_id
            ).with_for_update().first()
            if payment is None:
                raise NotFound("Payment not found")
            if payment.payout_status != PayoutStatus.FAILED:
                raise IllegalTransition(
                    PayoutStatus(payment.payout_status).value if payment.payout_status else None,
                    PayoutStatus.PENDING.value,
                )
            payment.payout_status = PayoutStatus.PENDING
            payment.payout_error = None
            payment.payout_ref = None
            payment.payout_attempts = 0
            payment.next_payout_attempt_at = None
            self.db.flush()

        logger.info(f"Payout for escrow {payment.id} re-queued by {principal.user_id}")
        return payment
