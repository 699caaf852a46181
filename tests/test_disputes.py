"""Disputes on held escrow: open, respond, resolve and the overdue sweep."""
from datetime import timedelta

import pytest

from core.errors import IllegalTransition, Unauthorized, ValidationFailed
from database.models import (
    Dispute, DisputeDecision, DisputeStatus, EscrowStatus, Gig, GigStatus, Notification, OutboxEvent,
    PayoutStatus, utcnow,
)
from services.dispute_service import DisputeService, sweep_overdue_disputes


@pytest.fixture
def service(db, bus, processor):
    return DisputeService(db, bus, processor)


@pytest.fixture
def disputed(db, service, principals, make_gig, make_payment):
    """A held payment the client has disputed."""
    def _make():
        gig = make_gig(status=GigStatus.IN_PROGRESS)
        payment = make_payment(gig)
        dispute = service.open_dispute(principals["employer"], {
            "payment_id": payment.id,
            "reason": "Work not delivered",
            "description": "The site was never deployed.",
        })
        return dispute, payment, gig
    return _make


def test_open_dispute_freezes_payment_and_gig(db, principals, disputed):
    dispute, payment, gig = disputed()

    db.expire_all()
    assert dispute.status == DisputeStatus.OPEN
    assert dispute.respondent_id == principals["freelancer"].user_id
    assert dispute.response_deadline > utcnow() + timedelta(days=6)
    assert db.get(type(payment), payment.id).status == EscrowStatus.DISPUTED
    assert db.get(Gig, gig.id).status == GigStatus.DISPUTED

    notification = db.query(Notification).filter(Notification.user_id == principals["freelancer"].user_id).one()
    assert notification.title == "Dispute Opened ⚠️"
    assert notification.action_url == f"/disputes/{dispute.id}"


def test_only_held_payments_can_be_disputed(service, principals, make_gig, make_payment):
    payment = make_payment(make_gig(), status=EscrowStatus.PENDING)

    with pytest.raises(IllegalTransition):
        service.open_dispute(principals["employer"], {"payment_id": payment.id, "reason": "Changed my mind"})


def test_dispute_reason_is_validated(service, principals, make_gig, make_payment):
    payment = make_payment(make_gig())

    with pytest.raises(ValidationFailed):
        service.open_dispute(principals["employer"], {"payment_id": payment.id, "reason": "x"})


def test_respondent_answers(service, principals, disputed):
    dispute, _, _ = disputed()

    with pytest.raises(Unauthorized):
        service.respond(principals["employer"], dispute.id, "I am the one who opened it.")

    answered = service.respond(principals["freelancer"], dispute.id, "The site is live at the agreed URL.")
    assert answered.status == DisputeStatus.UNDER_REVIEW
    assert answered.responded_at is not None

    with pytest.raises(IllegalTransition):
        service.respond(principals["freelancer"], dispute.id, "Answering a second time.")


def test_resolve_release_resumes_gig(db, service, principals, disputed):
    dispute, payment, gig = disputed()

    resolved = service.resolve(principals["admin"], dispute.id, {"decision": "release", "notes": "Delivered"})

    db.expire_all()
    assert resolved.status == DisputeStatus.RESOLVED
    assert resolved.decision == DisputeDecision.RELEASE
    payment = db.get(type(payment), payment.id)
    assert payment.status == EscrowStatus.RELEASED
    assert payment.payout_status == PayoutStatus.PENDING
    assert db.get(Gig, gig.id).status == GigStatus.IN_PROGRESS
    types = [e.event_type for e in db.query(OutboxEvent).order_by(OutboxEvent.id)]
    assert types[-2:] == ["PaymentReleased", "DisputeResolved"]


def test_resolve_refund_cancels_gig(db, service, processor, principals, disputed):
    dispute, payment, gig = disputed()

    service.resolve(principals["admin"], dispute.id, {"decision": "refund"})

    db.expire_all()
    assert db.get(type(payment), payment.id).status == EscrowStatus.REFUNDED
    assert db.get(Gig, gig.id).status == GigStatus.CANCELLED
    assert [r[2] for r in processor.refunds] == [payment.id]

    with pytest.raises(IllegalTransition):
        service.resolve(principals["admin"], dispute.id, {"decision": "release"})


def test_only_admin_resolves(service, principals, disputed):
    dispute, _, _ = disputed()

    with pytest.raises(Unauthorized):
        service.resolve(principals["employer"], dispute.id, {"decision": "refund"})


def test_sweep_escalates_overdue_disputes(db, session_factory, bus, principals, disputed):
    dispute, _, _ = disputed()

    assert sweep_overdue_disputes(session_factory, bus) == 0
    later = utcnow() + timedelta(days=8)
    assert sweep_overdue_disputes(session_factory, bus, now=later) == 1
    assert sweep_overdue_disputes(session_factory, bus, now=later) == 0

    db.expire_all()
    escalated = db.get(Dispute, dispute.id)
    assert escalated.status == DisputeStatus.ESCALATED
    assert escalated.escalated_at == later

    alerts = db.query(Notification).filter(Notification.title == "Safety Alert").all()
    assert {n.user_id for n in alerts} == {principals["employer"].user_id, principals["freelancer"].user_id}


def test_list_for_principal(service, principals, disputed):
    dispute, _, _ = disputed()

    assert [d.id for d in service.list_for_principal(principals["freelancer"])] == [dispute.id]
    assert service.list_for_principal(principals["freelancer2"]) == []
    assert [d.id for d in service.list_for_principal(principals["admin"], status=DisputeStatus.OPEN)] == [dispute.id]
