"""Escrow funding, gateway callbacks, release and refund."""
from decimal import Decimal

import pytest

from core.errors import (
    Conflict, GatewayError, IllegalTransition, InvalidSignature, Unauthorized, ValidationFailed,
)
from database.models import (
    AuditLog, EscrowPayment, EscrowStatus, Notification, OutboxEvent, PayoutStatus,
)
from services.escrow_service import EscrowService


@pytest.fixture
def service(db, bus, processor):
    return EscrowService(db, bus, processor)


def checkout_data(gig, **extra):
    data = {
        "gig_id": gig.id,
        "freelancer_id": gig.freelancer_id,
        "gross_amount": "1000",
        "buyer_email": "employer@example.com",
        "method": "eft",
        "agreed_to_terms": True,
    }
    data.update(extra)
    return data


def count_events(db, event_type):
    return db.query(OutboxEvent).filter(OutboxEvent.event_type == event_type).count()


# =============================================================================
# Checkout
# =============================================================================

def test_checkout_creates_pending_payment(service, processor, principals, make_gig, bank_account):
    gig = make_gig()
    bank_account()

    result = service.create_checkout(principals["employer"], checkout_data(gig))

    payment = result.payment
    assert payment.status == EscrowStatus.PENDING
    assert payment.amount == Decimal("1000.00")
    assert payment.payment_fee == Decimal("8.50")
    assert payment.platform_fee == Decimal("100.00")
    assert payment.gateway_ref == "GW-1"
    assert result.redirect_url == "https://pay.test/GW-1"

    request = processor.checkouts[0]
    assert request.reference == payment.id
    assert request.amount == Decimal("1008.50")


def test_checkout_needs_verified_bank_account(service, principals, make_gig, bank_account):
    gig = make_gig()
    bank_account(verified=False)

    with pytest.raises(ValidationFailed) as exc:
        service.create_checkout(principals["employer"], checkout_data(gig))
    assert "freelancer_id" in exc.value.fields


def test_checkout_requires_terms(service, principals, make_gig, bank_account):
    gig = make_gig()
    bank_account()

    with pytest.raises(ValidationFailed) as exc:
        service.create_checkout(principals["employer"], checkout_data(gig, agreed_to_terms=False))
    assert "agreed_to_terms" in exc.value.fields


def test_milestone_checkout_must_match_amount(service, principals, make_gig, bank_account):
    gig = make_gig()
    bank_account()

    with pytest.raises(ValidationFailed) as exc:
        service.create_checkout(principals["employer"],
                                checkout_data(gig, milestone_id=gig.milestones[0].id, gross_amount="1000"))
    assert "gross_amount" in exc.value.fields


def test_only_client_funds(service, principals, make_gig, bank_account):
    gig = make_gig()
    bank_account()

    with pytest.raises(Unauthorized):
        service.create_checkout(principals["freelancer"], checkout_data(gig))


def test_gateway_failure_discards_payment(db, service, processor, principals, make_gig, bank_account):
    gig = make_gig()
    bank_account()
    processor.checkout_error = GatewayError("Gateway returned 503", retryable=True)

    with pytest.raises(GatewayError):
        service.create_checkout(principals["employer"], checkout_data(gig))

    db.expire_all()
    payment = db.query(EscrowPayment).one()
    assert payment.status == EscrowStatus.DISCARDED
    assert payment.discarded_at is not None
    failure = db.query(AuditLog).filter(AuditLog.kind == "gateway_failure").one()
    assert failure.aggregate_id == payment.id


# =============================================================================
# Callbacks
# =============================================================================

def funded(service, principals, make_gig, bank_account):
    gig = make_gig()
    bank_account()
    return service.create_checkout(principals["employer"], checkout_data(gig)).payment


def test_paid_callback_holds_funds(db, service, processor, principals, make_gig, bank_account):
    payment = funded(service, principals, make_gig, bank_account)

    held = service.ingest_callback(processor.callback(payment))

    assert held.status == EscrowStatus.HELD
    assert held.held_at is not None
    assert count_events(db, "PaymentHeld") == 1
    notification = db.query(Notification).filter(Notification.user_id == payment.recipient_id).one()
    assert notification.title == "Funds Secured 🔒"


def test_callback_replay_is_idempotent(db, service, processor, principals, make_gig, bank_account):
    payment = funded(service, principals, make_gig, bank_account)
    payload = processor.callback(payment)

    first = service.ingest_callback(payload)
    held_at, version = first.held_at, first.version
    second = service.ingest_callback(dict(payload))

    db.expire_all()
    reloaded = db.get(EscrowPayment, payment.id)
    assert second.status == EscrowStatus.HELD
    assert reloaded.held_at == held_at
    assert reloaded.version == version
    assert count_events(db, "PaymentHeld") == 1


def test_callback_signature_is_checked(service, processor, principals, make_gig, bank_account):
    payment = funded(service, principals, make_gig, bank_account)
    payload = processor.callback(payment)
    payload["grossAmount"] = "1.00"

    with pytest.raises(InvalidSignature):
        service.ingest_callback(payload)


def test_callback_amount_must_match(service, processor, principals, make_gig, bank_account):
    payment = funded(service, principals, make_gig, bank_account)

    with pytest.raises(ValidationFailed) as exc:
        service.ingest_callback(processor.callback(payment, gross_amount="10.00"))
    assert "grossAmount" in exc.value.fields


def test_paid_after_failed_is_illegal(db, service, processor, principals, make_gig, bank_account):
    payment = funded(service, principals, make_gig, bank_account)

    discarded = service.ingest_callback(processor.callback(payment, status="failed"))
    assert discarded.status == EscrowStatus.DISCARDED
    # A repeated failure is a no-op
    service.ingest_callback(processor.callback(payment, status="failed"))

    with pytest.raises(IllegalTransition):
        service.ingest_callback(processor.callback(payment, status="paid"))
    db.expire_all()
    assert db.get(EscrowPayment, payment.id).status == EscrowStatus.DISCARDED


# =============================================================================
# Release & refund
# =============================================================================

def test_release_queues_payout(db, service, principals, make_gig, make_payment):
    payment = make_payment(make_gig())

    released = service.release(principals["employer"], payment.id)

    assert released.status == EscrowStatus.RELEASED
    assert released.payout_status == PayoutStatus.PENDING
    assert released.released_at >= released.held_at
    assert count_events(db, "PaymentReleased") == 1


def test_racing_releases_publish_once(db, session_factory, bus, processor, principals, make_gig, make_payment):
    payment = make_payment(make_gig())

    other_db = session_factory()
    try:
        other = EscrowService(other_db, bus, processor)
        # The second session read the payment before the first release committed
        other_db.get(EscrowPayment, payment.id)

        first = EscrowService(db, bus, processor).release(principals["employer"], payment.id)
        second = other.release(principals["employer"], payment.id)
    finally:
        other_db.close()

    assert first.status == EscrowStatus.RELEASED
    assert second.status == EscrowStatus.RELEASED
    assert second.released_at == first.released_at
    assert count_events(db, "PaymentReleased") == 1


def test_release_twice_sequentially(db, service, principals, make_gig, make_payment):
    payment = make_payment(make_gig())

    service.release(principals["employer"], payment.id)
    again = service.release(principals["employer"], payment.id)

    assert again.status == EscrowStatus.RELEASED
    assert count_events(db, "PaymentReleased") == 1


def test_release_with_stale_version(service, principals, make_gig, make_payment):
    payment = make_payment(make_gig())

    with pytest.raises(Conflict):
        service.release(principals["employer"], payment.id, expected_version=payment.version + 1)


def test_freelancer_cannot_release(service, principals, make_gig, make_payment):
    payment = make_payment(make_gig())

    with pytest.raises(Unauthorized):
        service.release(principals["freelancer"], payment.id)


def test_pending_payment_cannot_be_released(service, principals, make_gig, make_payment):
    payment = make_payment(make_gig(), status=EscrowStatus.PENDING)

    with pytest.raises(IllegalTransition):
        service.release(principals["employer"], payment.id)


def test_refund_instructs_gateway(db, service, processor, principals, make_gig, make_payment):
    payment = make_payment(make_gig())

    refunded = service.refund(principals["employer"], payment.id)

    assert refunded.status == EscrowStatus.REFUNDED
    assert processor.refunds == [("GW-SEED", Decimal("1008.50"), payment.id)]
    assert count_events(db, "PaymentRefunded") == 1


def test_refund_gateway_failure_is_audited(db, service, processor, principals, make_gig, make_payment):
    payment = make_payment(make_gig())
    processor.refund_errors = [
        GatewayError("Gateway timed out on /refund", retryable=True),
        GatewayError("Gateway returned 502", retryable=True),
    ]

    refunded = service.refund(principals["employer"], payment.id)

    assert refunded.status == EscrowStatus.REFUNDED
    assert processor.refunds == []
    failure = db.query(AuditLog).filter(AuditLog.kind == "gateway_failure").one()
    assert failure.aggregate_id == payment.id
    assert "502" in failure.detail


# =============================================================================
# History & admin
# =============================================================================

def test_payment_stats(service, principals, make_gig, make_payment):
    gig = make_gig()
    make_payment(gig, amount="1000.00")
    make_payment(gig, amount="500.00", status=EscrowStatus.PENDING)

    client_stats = service.payment_stats(principals["employer"])
    assert client_stats["total_paid"] == Decimal("1000.00")
    assert client_stats["pending_payments"] == 1
    assert client_stats["held_in_escrow"] == Decimal("1000.00")

    freelancer_stats = service.payment_stats(principals["freelancer"])
    assert freelancer_stats["held_in_escrow"] == Decimal("1000.00")
    assert freelancer_stats["total_received"] == Decimal("0.00")


def test_list_my_payments(service, principals, make_gig, make_payment):
    payment = make_payment(make_gig())

    assert [p.id for p in service.list_my_payments(principals["employer"])["sent"]] == [payment.id]
    assert [p.id for p in service.list_my_payments(principals["freelancer"])["received"]] == [payment.id]


def test_retry_failed_payout(db, service, principals, make_gig, make_payment):
    payment = make_payment(make_gig(), status=EscrowStatus.RELEASED)
    payment.payout_status = PayoutStatus.FAILED
    payment.payout_error = "Account closed"
    db.commit()

    with pytest.raises(Unauthorized):
        service.retry_payout(principals["employer"], payment.id)

    retried = service.retry_payout(principals["admin"], payment.id)
    assert retried.payout_status == PayoutStatus.PENDING
    assert retried.payout_error is None

    with pytest.raises(IllegalTransition):
        service.retry_payout(principals["admin"], payment.id)
