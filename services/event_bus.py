# In-process event bus backed by a transactional outbox
#
# Publishers call emit() inside their transaction; the event is an outbox row
# that commits or rolls back with the change. dispatch_pending() runs after
# commit (and periodically from the scheduler) and hands each event to the
# subscribers, each in its own session so one failing subscriber cannot undo
# another or the publisher.

import logging
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from core.events import DomainEvent, EventType
from database.config import SessionLocal, get_db_context
from database.models import AuditLog, OutboxEvent, utcnow

logger = logging.getLogger(__name__)

Subscriber = Callable[[Session, DomainEvent], None]

# A claimed event that was never marked dispatched (crashed dispatcher) is retried after this
CLAIM_TIMEOUT = timedelta(minutes=5)


def to_jsonable(value: Any) -> Any:
    """Convert payload values into JSON-friendly types."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


class EventBus:
    """
    Publish/subscribe over the outbox table.

    Usage:
        bus = EventBus(SessionLocal)
        bus.subscribe([EventType.PAYMENT_RELEASED], handler, name="payouts")
        with transaction(db, bus):
            bus.emit(db, DomainEvent(...))
    """

    def __init__(self, session_factory=None, audit: bool = True):
        self.session_factory = session_factory or SessionLocal
        self._subscribers: Dict[Optional[EventType], List[Tuple[str, Subscriber]]] = defaultdict(list)
        self._dispatch_lock = threading.Lock()
        if audit:
            self.subscribe(None, audit_subscriber, name="audit")

    def subscribe(self, event_types: Optional[Iterable[EventType]], handler: Subscriber,
                  name: Optional[str] = None) -> None:
        """Register a handler for the given event types, or for every event when None."""
        name = name or getattr(handler, "__name__", repr(handler))
        if event_types is None:
            self._subscribers[None].append((name, handler))
            return
        for event_type in event_types:
            self._subscribers[EventType(event_type)].append((name, handler))

    def subscribers_for(self, event_type: EventType) -> List[Tuple[str, Subscriber]]:
        return list(self._subscribers.get(event_type, [])) + list(self._subscribers.get(None, []))

    def emit(self, db: Session, event: DomainEvent) -> OutboxEvent:
        """Buffer an event in the caller's transaction."""
        row = OutboxEvent(
            event_type=event.type.value,
            aggregate_type=event.aggregate_type,
            aggregate_id=str(event.aggregate_id),
            payload=to_jsonable(event.payload),
        )
        db.add(row)
        return row

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatchable(self, now: datetime):
        return (
            OutboxEvent.dispatched_at.is_(None),
            or_(OutboxEvent.claimed_at.is_(None), OutboxEvent.claimed_at < now - CLAIM_TIMEOUT),
        )

    def dispatch_pending(self, limit: int = 100) -> int:
        """
        Deliver committed, undelivered events in outbox order.

        Returns:
            Number of events this call delivered
        """
        delivered = 0
        with self._dispatch_lock:
            now = utcnow()
            with get_db_context(self.session_factory) as db:
                ids = [
                    row.id for row in db.query(OutboxEvent.id)
                    .filter(*self._dispatchable(now))
                    .order_by(OutboxEvent.id)
                    .limit(limit)
                    .all()
                ]

            for event_id in ids:
                event = self._claim(event_id)
                if event is None:
                    continue
                self._deliver(event)
                self._mark_dispatched(event_id)
                delivered += 1

        if delivered:
            logger.debug(f"Dispatched {delivered} outbox events")
        return delivered

    def _claim(self, event_id: int) -> Optional[DomainEvent]:
        now = utcnow()
        with get_db_context(self.session_factory) as db:
            claimed = db.query(OutboxEvent).filter(
                OutboxEvent.id == event_id, *self._dispatchable(now)
            ).update({"claimed_at": now}, synchronize_session=False)
            if claimed != 1:
                return None
            row = db.query(OutboxEvent).filter(OutboxEvent.id == event_id).one()
            return DomainEvent(
                type=EventType(row.event_type),
                aggregate_type=row.aggregate_type,
                aggregate_id=row.aggregate_id,
                payload=dict(row.payload or {}),
            )

    def _deliver(self, event: DomainEvent) -> None:
        for name, handler in self.subscribers_for(event.type):
            try:
                with get_db_context(self.session_factory) as db:
                    handler(db, event)
            except Exception as e:
                logger.exception(f"Subscriber {name} failed on {event.type.value} for {event.aggregate_id}")
                self._record_failure(name, event, e)

    def _record_failure(self, subscriber: str, event: DomainEvent, error: Exception) -> None:
        with get_db_context(self.session_factory) as db:
            db.add(AuditLog(
                kind="subscriber_failure",
                event_type=event.type.value,
                aggregate_id=event.aggregate_id,
                subscriber=subscriber,
                detail=f"{type(error).__name__}: {error}",
                payload=event.payload,
            ))

    def _mark_dispatched(self, event_id: int) -> None:
        with get_db_context(self.session_factory) as db:
            db.query(OutboxEvent).filter(OutboxEvent.id == event_id).update(
                {"dispatched_at": utcnow()}, synchronize_session=False
            )


def audit_subscriber(db: Session, event: DomainEvent) -> None:
    """Record every dispatched event in the audit log."""
    db.add(AuditLog(
        kind="event",
        event_type=event.type.value,
        aggregate_id=event.aggregate_id,
        payload=event.payload,
    ))


def record_audit(db: Session, kind: str, detail: str, aggregate_id: Optional[str] = None,
                 payload: Optional[dict] = None) -> AuditLog:
    """Write an audit entry for a background failure (gateway, payout)."""
    entry = AuditLog(kind=kind, aggregate_id=aggregate_id, detail=detail, payload=to_jsonable(payload or {}))
    db.add(entry)
    return entry


_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Process-wide bus with the default subscribers wired in."""
    global _bus
    if _bus is None:
        from services.notification_service import NotificationFanout

        _bus = EventBus(SessionLocal)
        NotificationFanout.register(_bus)
    return _bus
