"""Transactional outbox and subscriber isolation."""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from core.events import DomainEvent, EventType
from database.models import AuditLog, Notification, OutboxEvent, utcnow
from services.event_bus import EventBus, to_jsonable
from services.persistence import transaction


def held_event(principals, payment_id="pay-1"):
    return DomainEvent(EventType.PAYMENT_HELD, "escrow_payment", payment_id, {
        "recipient_id": principals["freelancer"].user_id,
        "gig_id": "gig-1",
        "amount": Decimal("1000.00"),
    })


def test_events_commit_with_the_transaction(db, bus, principals):
    with transaction(db, bus):
        bus.emit(db, held_event(principals))

    db.expire_all()
    row = db.query(OutboxEvent).one()
    assert row.dispatched_at is not None
    assert row.payload["amount"] == "1000.00"
    assert db.query(Notification).count() == 1
    assert db.query(AuditLog).filter(AuditLog.kind == "event").count() == 1


def test_rolled_back_events_are_never_published(db, bus, principals):
    with pytest.raises(RuntimeError):
        with transaction(db, bus):
            bus.emit(db, held_event(principals))
            raise RuntimeError("boom")

    assert db.query(OutboxEvent).count() == 0
    assert db.query(Notification).count() == 0


def test_failing_subscriber_does_not_affect_others(db, session_factory, principals):
    bus = EventBus(session_factory)
    seen = []

    def broken(session, event):
        raise ValueError("template missing")

    def recorder(session, event):
        seen.append(event.aggregate_id)

    bus.subscribe([EventType.PAYMENT_HELD], broken, name="broken")
    bus.subscribe([EventType.PAYMENT_HELD], recorder, name="recorder")

    with transaction(db, bus):
        bus.emit(db, held_event(principals))

    db.expire_all()
    assert seen == ["pay-1"]
    failure = db.query(AuditLog).filter(AuditLog.kind == "subscriber_failure").one()
    assert failure.subscriber == "broken"
    assert failure.event_type == "PaymentHeld"
    assert "template missing" in failure.detail
    assert db.query(OutboxEvent).one().dispatched_at is not None


def test_per_aggregate_order(db, session_factory, principals):
    bus = EventBus(session_factory, audit=False)
    seen = []
    bus.subscribe(None, lambda session, event: seen.append((event.aggregate_id, event.type)), name="order")

    with transaction(db):
        bus.emit(db, DomainEvent(EventType.PAYMENT_HELD, "escrow_payment", "pay-1"))
        bus.emit(db, DomainEvent(EventType.PAYMENT_HELD, "escrow_payment", "pay-2"))
        bus.emit(db, DomainEvent(EventType.PAYMENT_RELEASED, "escrow_payment", "pay-1"))

    assert bus.dispatch_pending() == 3
    assert [t for a, t in seen if a == "pay-1"] == [EventType.PAYMENT_HELD, EventType.PAYMENT_RELEASED]
    assert bus.dispatch_pending() == 0


def test_stale_claims_are_retried(db, session_factory):
    bus = EventBus(session_factory, audit=False)
    seen = []
    bus.subscribe(None, lambda session, event: seen.append(event.aggregate_id), name="seen")

    db.add(OutboxEvent(event_type="PaymentHeld", aggregate_type="escrow_payment", aggregate_id="fresh",
                       payload={}, claimed_at=utcnow()))
    db.add(OutboxEvent(event_type="PaymentHeld", aggregate_type="escrow_payment", aggregate_id="stale",
                       payload={}, claimed_at=utcnow() - timedelta(minutes=10)))
    db.commit()

    assert bus.dispatch_pending() == 1
    assert seen == ["stale"]


def test_to_jsonable():
    value = {
        "amount": Decimal("12.50"),
        "when": datetime(2024, 5, 1, 12, 30),
        "type": EventType.PAYMENT_HELD,
        "ids": ("a", "b"),
    }
    assert to_jsonable(value) == {
        "amount": "12.50",
        "when": "2024-05-01T12:30:00",
        "type": "PaymentHeld",
        "ids": ["a", "b"],
    }
