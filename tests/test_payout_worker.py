"""Payout worker: released escrow to the freelancer's bank account."""
from datetime import timedelta
from decimal import Decimal

import pytest

from core.errors import GatewayError
from core.payment_processor import PayoutReceipt, PayoutState
from database.models import AuditLog, EscrowPayment, EscrowStatus, Notification, PayoutStatus, utcnow
from services.payout_worker import PayoutWorker


class Clock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def worker(session_factory, processor, bus, clock):
    return PayoutWorker(session_factory, processor, bus, backoff=[30, 120], clock=clock)


@pytest.fixture
def released(make_gig, make_payment):
    def _make():
        payment = make_payment(make_gig(), status=EscrowStatus.RELEASED)
        return payment
    return _make


def reload(db, payment_id):
    db.expire_all()
    return db.get(EscrowPayment, payment_id)


def queue(db, payment):
    payment.payout_status = PayoutStatus.PENDING
    payment.released_at = utcnow()
    db.commit()
    return payment


def test_payout_waits_for_bank_account(db, worker, processor, released, bank_account):
    payment = queue(db, released())

    summary = worker.run_once()

    assert summary.waiting_for_bank == 1
    assert summary.started == 0
    payment = reload(db, payment.id)
    assert payment.status == EscrowStatus.RELEASED
    assert payment.payout_status == PayoutStatus.PENDING
    assert payment.payout_error is None
    assert processor.payouts == []

    bank_account(verified=False)
    assert worker.run_once().waiting_for_bank == 1
    assert processor.payouts == []


def test_payout_completes(db, worker, processor, released, bank_account):
    bank_account()
    payment = queue(db, released())

    summary = worker.run_once()

    assert summary.started == 1
    assert summary.completed == 1
    recipient, amount, reference = processor.payouts[0]
    assert amount == Decimal("900.00")
    assert reference == payment.id
    assert recipient["accountNumber"] == "62000012345"
    assert recipient["email"] == "freelancer@trustwork.test"

    payment = reload(db, payment.id)
    assert payment.payout_status == PayoutStatus.COMPLETED
    assert payment.payout_ref == f"PO-{payment.id}"
    assert payment.payout_completed_at is not None
    notification = db.query(Notification).filter(Notification.title == "Payout Complete! 🏦").one()
    assert notification.user_id == payment.recipient_id


def test_payout_polls_until_bank_confirms(db, worker, processor, clock, released, bank_account):
    bank_account()
    payment = queue(db, released())
    processor.payout_states[f"PO-{payment.id}"] = PayoutState(state="processing")

    summary = worker.run_once()
    assert summary.started == 1
    assert summary.completed == 0
    assert reload(db, payment.id).payout_status == PayoutStatus.PROCESSING

    # Not due yet
    worker.run_once()
    assert len(processor.queries) == 1

    clock.advance(31)
    processor.payout_states[f"PO-{payment.id}"] = PayoutState(state="completed")
    assert worker.run_once().completed == 1
    assert reload(db, payment.id).payout_status == PayoutStatus.COMPLETED


def test_transient_error_backs_off(db, worker, processor, clock, released, bank_account):
    bank_account()
    payment = queue(db, released())
    processor.payout_results = [GatewayError("Gateway returned 503", retryable=True)]

    summary = worker.run_once()

    assert summary.retrying == 1
    payment = reload(db, payment.id)
    assert payment.payout_status == PayoutStatus.PROCESSING
    assert payment.payout_attempts == 1
    assert payment.next_payout_attempt_at == clock.now + timedelta(seconds=30)
    assert db.query(AuditLog).filter(AuditLog.kind == "gateway_failure").count() == 1

    # Still backing off
    worker.run_once()
    assert len(processor.payouts) == 1

    clock.advance(30)
    worker.run_once()
    assert len(processor.payouts) == 2
    assert reload(db, payment.id).payout_ref == f"PO-{payment.id}"

    assert worker.run_once().completed == 1
    assert reload(db, payment.id).payout_status == PayoutStatus.COMPLETED


def test_rejected_payout_fails(db, worker, processor, released, bank_account):
    bank_account()
    payment = queue(db, released())
    processor.payout_results = [PayoutReceipt(payout_ref=None, state="rejected", error="Invalid account")]

    summary = worker.run_once()

    assert summary.failed == 1
    payment = reload(db, payment.id)
    assert payment.payout_status == PayoutStatus.FAILED
    assert payment.payout_error == "Invalid account"
    assert payment.status == EscrowStatus.RELEASED
    notification = db.query(Notification).filter(Notification.title == "Payout Failed").one()
    assert "Invalid account" in notification.message


def test_bank_reports_failure(db, worker, processor, released, bank_account):
    bank_account()
    payment = queue(db, released())
    processor.payout_states[f"PO-{payment.id}"] = PayoutState(state="failed", error="Account closed")

    assert worker.run_once().failed == 1
    assert reload(db, payment.id).payout_error == "Account closed"


def test_held_payments_are_not_paid_out(db, worker, processor, make_gig, make_payment, bank_account):
    bank_account()
    make_payment(make_gig())

    summary = worker.run_once()

    assert summary.started == 0
    assert processor.payouts == []


def test_backoff_schedule():
    worker = PayoutWorker(None, None, None, backoff=[30, 120, 600])

    assert worker.backoff_for(1) == timedelta(seconds=30)
    assert worker.backoff_for(2) == timedelta(seconds=120)
    assert worker.backoff_for(9) == timedelta(seconds=600)
