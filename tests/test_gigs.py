"""Gig creation, milestone plans and the milestone state machine."""
from decimal import Decimal

import pytest

from core.errors import IllegalTransition, NotFound, OutOfOrder, StaleState, Unauthorized, ValidationFailed
from database.models import (
    EscrowPayment, EscrowStatus, Gig, GigStatus, Milestone, MilestoneStatus, OutboxEvent, PayoutStatus,
)
from services.gig_service import GigService


@pytest.fixture
def service(db, bus):
    return GigService(db, bus)


def events(db, event_type):
    return db.query(OutboxEvent).filter(OutboxEvent.event_type == event_type).order_by(OutboxEvent.id).all()


def run(service, principals, milestone, *steps):
    for who, action in steps:
        milestone = service.transition_milestone(principals[who], milestone.id, action)
    return milestone


def test_milestone_ordering_and_release(db, service, principals, make_gig, make_payment):
    gig = make_gig()
    first, second = gig.milestones
    make_payment(gig, amount="5000.00", milestone=first)

    with pytest.raises(OutOfOrder):
        service.transition_milestone(principals["freelancer"], second.id, "start")

    run(service, principals, first,
        ("freelancer", "start"), ("freelancer", "submit"), ("employer", "approve"))

    released = events(db, "PaymentReleased")
    assert len(released) == 1
    assert released[0].payload["amount"] == "5000.00"
    assert released[0].payload["net"] == "4500.00"

    started = service.transition_milestone(principals["freelancer"], second.id, "start")
    assert started.status == MilestoneStatus.IN_PROGRESS

    db.expire_all()
    assert db.get(Milestone, first.id).payment_released is True
    payment = db.query(EscrowPayment).one()
    assert payment.status == EscrowStatus.RELEASED
    assert payment.payout_status == PayoutStatus.PENDING


def test_start_moves_gig_in_progress(db, service, principals, make_gig):
    gig = make_gig()
    service.transition_milestone(principals["freelancer"], gig.milestones[0].id, "start")

    db.expire_all()
    gig = db.get(Gig, gig.id)
    assert gig.status == GigStatus.IN_PROGRESS
    assert gig.started_at is not None


def test_revision_cap_rejects_milestone(db, service, principals, make_gig):
    gig = make_gig(max_revisions=2)
    milestone = run(service, principals, gig.milestones[0],
                    ("freelancer", "start"), ("freelancer", "submit"),
                    ("employer", "request_revision"), ("freelancer", "resubmit"),
                    ("employer", "request_revision"), ("freelancer", "resubmit"))
    assert milestone.status == MilestoneStatus.SUBMITTED
    assert milestone.revision_count == 2

    milestone = service.transition_milestone(principals["employer"], milestone.id, "request_revision",
                                             notes="Still not responsive on mobile")
    assert milestone.status == MilestoneStatus.REJECTED
    assert milestone.revision_count == 3
    assert len(events(db, "MilestoneRejected")) == 1
    assert len(events(db, "MilestoneRevisionRequested")) == 2


def test_double_approve_is_a_noop(db, service, principals, make_gig, make_payment):
    gig = make_gig()
    first = gig.milestones[0]
    make_payment(gig, amount="5000.00", milestone=first)
    milestone = run(service, principals, first,
                    ("freelancer", "start"), ("freelancer", "submit"), ("employer", "approve"))
    version = milestone.version

    again = service.transition_milestone(principals["employer"], first.id, "approve")

    assert again.status == MilestoneStatus.APPROVED
    assert again.version == version
    assert len(events(db, "MilestoneApproved")) == 1
    assert len(events(db, "PaymentReleased")) == 1


def test_approving_every_milestone_completes_gig(db, service, principals, make_gig):
    gig = make_gig()
    for milestone in gig.milestones:
        run(service, principals, milestone,
            ("freelancer", "start"), ("freelancer", "submit"), ("employer", "approve"))

    db.expire_all()
    gig = db.get(Gig, gig.id)
    assert gig.status == GigStatus.COMPLETED
    assert gig.completed_at is not None
    assert GigService.progress(gig) == 100
    assert len(events(db, "GigCompleted")) == 1


def test_progress_is_weighted(db, service, principals, make_gig):
    gig = make_gig(splits=((30, "3000.00"), (70, "7000.00")))
    run(service, principals, gig.milestones[0],
        ("freelancer", "start"), ("freelancer", "submit"), ("employer", "approve"))
    service.transition_milestone(principals["freelancer"], gig.milestones[1].id, "start")

    db.expire_all()
    # 30 approved + 70 * 0.3 in progress
    assert GigService.progress(db.get(Gig, gig.id)) == 51


def test_wrong_party_cannot_act(service, principals, make_gig):
    gig = make_gig()
    with pytest.raises(Unauthorized):
        service.transition_milestone(principals["employer"], gig.milestones[0].id, "start")


def test_outsider_cannot_see_milestone(service, principals, make_gig):
    gig = make_gig()
    with pytest.raises(NotFound):
        service.transition_milestone(principals["freelancer2"], gig.milestones[0].id, "start")


def test_stale_expected_status(service, principals, make_gig):
    gig = make_gig()
    milestone = run(service, principals, gig.milestones[0], ("freelancer", "start"))

    with pytest.raises(StaleState):
        service.transition_milestone(principals["freelancer"], milestone.id, "submit",
                                     expected_status=MilestoneStatus.PENDING)


def test_illegal_action(service, principals, make_gig):
    gig = make_gig()
    with pytest.raises(IllegalTransition):
        service.transition_milestone(principals["employer"], gig.milestones[0].id, "approve")


def test_create_gig_and_define_milestones(db, service, principals):
    gig = service.create_gig(principals["employer"], {
        "freelancer_id": principals["freelancer"].user_id,
        "title": "Logo refresh",
        "budget": "4000",
    })
    assert gig.status == GigStatus.OPEN
    assert gig.budget == Decimal("4000.00")

    milestones = service.define_milestones(principals["employer"], gig.id, [
        {"title": "Concepts", "amount": "1000", "percentage": 25},
        {"title": "Final artwork", "amount": "3000", "percentage": 75, "max_revisions": 3},
    ])
    assert [m.ordinal for m in milestones] == [0, 1]
    assert milestones[0].max_revisions == 2
    assert milestones[1].max_revisions == 3
    assert all(m.status == MilestoneStatus.PENDING for m in milestones)

    replaced = service.define_milestones(principals["employer"], gig.id, [
        {"title": "Everything", "amount": "4000", "percentage": 100},
    ])
    db.expire_all()
    assert [m.id for m in db.get(Gig, gig.id).milestones] == [replaced[0].id]


def test_funded_plan_cannot_be_replaced(db, service, principals, make_gig, make_payment):
    gig = make_gig()
    first, second = gig.milestones
    payment = make_payment(gig, amount="5000.00", milestone=first)

    with pytest.raises(IllegalTransition):
        service.define_milestones(principals["employer"], gig.id, [
            {"title": "Everything", "amount": "10000", "percentage": 100},
        ])

    db.expire_all()
    assert [m.id for m in db.get(Gig, gig.id).milestones] == [first.id, second.id]
    assert db.get(EscrowPayment, payment.id).milestone_id == first.id

    # The funded milestone still releases its escrow on approval
    run(service, principals, first,
        ("freelancer", "start"), ("freelancer", "submit"), ("employer", "approve"))
    db.expire_all()
    assert db.get(EscrowPayment, payment.id).status == EscrowStatus.RELEASED
    assert len(events(db, "PaymentReleased")) == 1


def test_discarded_checkout_does_not_block_new_plan(db, service, principals, make_gig, make_payment):
    gig = make_gig()
    payment = make_payment(gig, amount="5000.00", milestone=gig.milestones[0], status=EscrowStatus.DISCARDED)

    replaced = service.define_milestones(principals["employer"], gig.id, [
        {"title": "Everything", "amount": "10000", "percentage": 100},
    ])

    db.expire_all()
    assert [m.id for m in db.get(Gig, gig.id).milestones] == [replaced[0].id]
    discarded = db.get(EscrowPayment, payment.id)
    assert discarded.milestone_id is None
    assert discarded.status == EscrowStatus.DISCARDED


def test_define_milestones_validates_split(service, principals, make_gig):
    gig = make_gig()
    with pytest.raises(ValidationFailed) as exc:
        service.define_milestones(principals["employer"], gig.id, [
            {"title": "Half", "amount": "5000", "percentage": 60},
            {"title": "Other half", "amount": "5000", "percentage": 50},
        ])
    assert "percentage" in exc.value.fields


def test_define_milestones_only_while_open(service, principals, make_gig):
    gig = make_gig(status=GigStatus.IN_PROGRESS)
    with pytest.raises(IllegalTransition):
        service.define_milestones(principals["employer"], gig.id, [
            {"title": "All", "amount": "10000", "percentage": 100},
        ])


def test_gig_requires_a_freelancer(service, principals):
    with pytest.raises(ValidationFailed):
        service.create_gig(principals["employer"], {
            "freelancer_id": principals["employer2"].user_id,
            "title": "Logo refresh",
            "budget": "4000",
        })


def test_complete_gig_requires_all_approved(service, principals, make_gig):
    gig = make_gig()
    with pytest.raises(IllegalTransition):
        service.complete_gig(principals["employer"], gig.id)
