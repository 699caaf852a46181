# Payout worker for TrustWork
# Moves released escrow to the freelancer's bank account through the gateway.
#
#   payout pending --(verified bank account)--> processing --ack--> completed
#                                                          \--error--> failed
#
# Transient gateway errors keep the row in processing and schedule the next
# attempt using PAYOUT_BACKOFF_SECONDS.

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import or_

from config import app_config
from core.errors import GatewayError, Timeout
from core.events import DomainEvent, EventType
from core.payment_processor import GatewayClient, PaymentProcessor
from database.config import SessionLocal
from database.models import BankAccount, EscrowPayment, EscrowStatus, PayoutStatus, Profile, utcnow
from services.bank_account_service import recipient_bank_details
from services.escrow_service import payment_payload
from services.event_bus import get_event_bus, record_audit
from services.persistence import transaction

logger = logging.getLogger(__name__)

BATCH_SIZE = 50


@dataclass
class PayoutRunSummary:
    started: int = 0
    waiting_for_bank: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0


class PayoutWorker:
    """
    Usage:
        worker = PayoutWorker(SessionLocal, GatewayClient(), get_event_bus())
        worker.run_once()
    """

    def __init__(
        self,
        session_factory,
        processor: PaymentProcessor,
        bus,
        backoff: Optional[Sequence[float]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.bus = bus
        self.backoff = list(backoff or app_config.PAYOUT_BACKOFF_SECONDS)
        self.clock = clock

    def backoff_for(self, attempts: int) -> timedelta:
        index = min(max(attempts, 1), len(self.backoff)) - 1
        return timedelta(seconds=self.backoff[index])

    def run_once(self) -> PayoutRunSummary:
        """One pass: start queued payouts, then advance the ones in flight."""
        summary = PayoutRunSummary()
        for payment_id in self._queued_ids():
            self._start(payment_id, summary)
        for payment_id in self._in_flight_ids():
            self._advance(payment_id, summary)

        if summary.started or summary.completed or summary.failed or summary.retrying:
            logger.info(f"Payout run: {summary}")
        return summary

    def _queued_ids(self) -> List[str]:
        with self.session_factory() as db:
            return [row.id for row in db.query(EscrowPayment.id).filter(
                EscrowPayment.status == EscrowStatus.RELEASED,
                EscrowPayment.payout_status == PayoutStatus.PENDING,
            ).order_by(EscrowPayment.released_at).limit(BATCH_SIZE).all()]

    def _in_flight_ids(self) -> List[str]:
        now = self.clock()
        with self.session_factory() as db:
            return [row.id for row in db.query(EscrowPayment.id).filter(
                EscrowPayment.status == EscrowStatus.RELEASED,
                EscrowPayment.payout_status == PayoutStatus.PROCESSING,
                or_(EscrowPayment.next_payout_attempt_at.is_(None),
                    EscrowPayment.next_payout_attempt_at <= now),
            ).order_by(EscrowPayment.payout_started_at).limit(BATCH_SIZE).all()]

    def _load(self, db, payment_id: str) -> Optional[EscrowPayment]:
        return db.query(EscrowPayment).filter(EscrowPayment.id == payment_id).with_for_update().first()

    def _bank_details(self, db, payment: EscrowPayment) -> Optional[dict]:
        account = db.query(BankAccount).filter(BankAccount.owner_id == payment.recipient_id).first()
        if account is None or not account.verified:
            return None
        return recipient_bank_details(account, db.get(Profile, payment.recipient_id))

    # ------------------------------------------------------------------
    # pending -> processing
    # ------------------------------------------------------------------

    def _start(self, payment_id: str, summary: PayoutRunSummary) -> None:
        with self.session_factory() as db:
            with transaction(db, self.bus):
                payment = self._load(db, payment_id)
                if payment is None or payment.payout_status != PayoutStatus.PENDING:
                    return
                bank = self._bank_details(db, payment)
                if bank is None:
                    # Stays pending without an error until a verified account appears
                    logger.debug(f"Escrow {payment_id}: recipient has no verified bank account yet")
                    summary.waiting_for_bank += 1
                    return
                payment.payout_status = PayoutStatus.PROCESSING
                payment.payout_started_at = self.clock()
                payment.payout_attempts = 0
                payment.next_payout_attempt_at = None
                payment.payout_error = None
                net = payment.freelancer_net

        summary.started += 1
        logger.info(f"Escrow {payment_id}: payout processing")
        self._execute(payment_id, bank, net, summary)

    # ------------------------------------------------------------------
    # processing -> completed | failed
    # ------------------------------------------------------------------

    def _execute(self, payment_id: str, bank: dict, net, summary: PayoutRunSummary) -> None:
        try:
            receipt = self.processor.execute_payout(bank, net, payment_id)
        except (GatewayError, Timeout) as e:
            self._on_error(payment_id, e, summary)
            return

        if receipt.state == "accepted" and receipt.payout_ref:
            with self.session_factory() as db:
                with transaction(db, self.bus):
                    payment = self._load(db, payment_id)
                    payment.payout_ref = receipt.payout_ref
                    payment.next_payout_attempt_at = None
            logger.info(f"Escrow {payment_id}: payout accepted as {receipt.payout_ref}")
        else:
            self._fail(payment_id, receipt.error or "Payout rejected by gateway", summary)

    def _advance(self, payment_id: str, summary: PayoutRunSummary) -> None:
        with self.session_factory() as db:
            payment = db.get(EscrowPayment, payment_id)
            if payment is None or payment.payout_status != PayoutStatus.PROCESSING:
                return
            payout_ref = payment.payout_ref
            net = payment.freelancer_net
            bank = None if payout_ref else self._bank_details(db, payment)

        if payout_ref is None:
            # The instruction never reached the gateway; send it again
            if bank is None:
                self._requeue(payment_id)
                summary.waiting_for_bank += 1
                return
            self._execute(payment_id, bank, net, summary)
            return

        try:
            state = self.processor.query_payout(payout_ref)
        except (GatewayError, Timeout) as e:
            self._on_error(payment_id, e, summary)
            return

        if state.state == "completed":
            self._complete(payment_id, summary)
        elif state.state == "failed":
            self._fail(payment_id, state.error or "Payout failed at the bank", summary)
        else:
            with self.session_factory() as db:
                with transaction(db, self.bus):
                    payment = self._load(db, payment_id)
                    payment.next_payout_attempt_at = self.clock() + self.backoff_for(1)

    def _complete(self, payment_id: str, summary: PayoutRunSummary) -> None:
        with self.session_factory() as db:
            with transaction(db, self.bus):
                payment = self._load(db, payment_id)
                payment.payout_status = PayoutStatus.COMPLETED
                payment.payout_completed_at = self.clock()
                payment.next_payout_attempt_at = None
                payment.payout_error = None
                db.flush()
                self.bus.emit(db, DomainEvent(
                    EventType.PAYOUT_COMPLETED, "escrow_payment", payment.id, payment_payload(payment),
                ))
        summary.completed += 1
        logger.info(f"Escrow {payment_id}: payout completed")

    def _fail(self, payment_id: str, error: str, summary: PayoutRunSummary) -> None:
        with self.session_factory() as db:
            with transaction(db, self.bus):
                payment = self._load(db, payment_id)
                payment.payout_status = PayoutStatus.FAILED
                payment.payout_error = error
                payment.next_payout_attempt_at = None
                db.flush()
                self.bus.emit(db, DomainEvent(
                    EventType.PAYOUT_FAILED, "escrow_payment", payment.id, payment_payload(payment, error=error),
                ))
        summary.failed += 1
        logger.warning(f"Escrow {payment_id}: payout failed: {error}")

    def _requeue(self, payment_id: str) -> None:
        with self.session_factory() as db:
            with transaction(db, self.bus):
                payment = self._load(db, payment_id)
                payment.payout_status = PayoutStatus.PENDING
                payment.payout_attempts = 0
                payment.next_payout_attempt_at = None
        logger.info(f"Escrow {payment_id}: bank account gone, payout back to pending")

    def _on_error(self, payment_id: str, error: Exception, summary: PayoutRunSummary) -> None:
        detail = getattr(error, "detail", str(error))
        retryable = isinstance(error, Timeout) or getattr(error, "retryable", False)
        if not retryable:
            self._fail(payment_id, detail, summary)
            return

        with self.session_factory() as db:
            with transaction(db, self.bus):
                payment = self._load(db, payment_id)
                payment.payout_attempts = (payment.payout_attempts or 0) + 1
                payment.next_payout_attempt_at = self.clock() + self.backoff_for(payment.payout_attempts)
                record_audit(db, "gateway_failure", f"payout: {detail}", payment_id,
                             {"attempts": payment.payout_attempts})
                attempts = payment.payout_attempts
        summary.retrying += 1
        logger.warning(f"Escrow {payment_id}: transient payout error ({detail}); attempt {attempts}, backing off")


def run_payouts(session_factory=None, processor: Optional[PaymentProcessor] = None, bus=None) -> PayoutRunSummary:
    """Entry point for the scheduler and the worker CLI."""
    worker = PayoutWorker(
        session_factory or SessionLocal,
        processor or GatewayClient(),
        bus or get_event_bus(),
    )
    return worker.run_once()
