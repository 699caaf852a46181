# Realtime change feed for TrustWork
# Row changes are captured from SQLAlchemy session events, held until the
# transaction commits, then pushed to per-user subscriptions filtered by the
# row-access predicate of their table.

import asyncio
import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, attributes

from auth.principal import Principal
from services.access import ROW_ACCESS_BY_TABLE, RowAccess
from services.event_bus import to_jsonable

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"

_PENDING_KEY = "realtime_pending"

SUBSCRIPTION_QUEUE_SIZE = 1000


@dataclass
class RowChange:
    table: str
    event: str
    old: Optional[Dict[str, Any]] = None
    new: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"table": self.table, "event": self.event, "old": self.old, "new": self.new}


def _snapshot(obj, old: bool = False) -> Dict[str, Any]:
    mapper = inspect(obj).mapper
    values = {}
    for column_attr in mapper.column_attrs:
        key = column_attr.key
        if old:
            history = attributes.get_history(obj, key)
            if history.deleted:
                value = history.deleted[0]
            elif history.unchanged:
                value = history.unchanged[0]
            else:
                value = getattr(obj, key)
        else:
            value = getattr(obj, key)
        values[key] = to_jsonable(value)
    return values


def _is_tracked(obj) -> bool:
    table = getattr(obj, "__tablename__", None)
    return table in ROW_ACCESS_BY_TABLE


@dataclass
class Subscription:
    """
    A per-user stream of row changes for one table.

    Blocking consumers call get(). An event-loop consumer calls bind_loop()
    once and then awaits next(); changes are handed to the loop with
    call_soon_threadsafe so no worker thread waits on the stream.
    """
    hub: "RealtimeHub"
    principal: Principal
    table: str
    access: RowAccess
    filter: Dict[str, Any] = field(default_factory=dict)
    queue: "queue.Queue[RowChange]" = field(default_factory=lambda: queue.Queue(maxsize=SUBSCRIPTION_QUEUE_SIZE))
    loop: Optional[asyncio.AbstractEventLoop] = None
    async_queue: Optional["asyncio.Queue[RowChange]"] = None

    def _passes(self, row: Optional[Dict[str, Any]]) -> bool:
        if row is None or not self.access.allows(self.principal, row):
            return False
        return all(row.get(key) == to_jsonable(value) for key, value in self.filter.items())

    def matches(self, change: RowChange) -> bool:
        if change.table != self.table:
            return False
        if change.event == DELETE:
            return self._passes(change.old)
        return self._passes(change.new)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Deliver changes to an asyncio queue owned by ``loop``."""
        self.async_queue = asyncio.Queue(maxsize=SUBSCRIPTION_QUEUE_SIZE)
        self.loop = loop

    def _dropped(self) -> None:
        logger.warning(f"Realtime queue full for user {self.principal.user_id} on {self.table}; dropping change")

    def _put_async(self, change: RowChange) -> None:
        try:
            self.async_queue.put_nowait(change)
        except asyncio.QueueFull:
            self._dropped()

    def offer(self, change: RowChange) -> None:
        if self.loop is not None:
            try:
                self.loop.call_soon_threadsafe(self._put_async, change)
            except RuntimeError:
                logger.warning(f"Realtime loop for user {self.principal.user_id} is closed; dropping change")
            return
        try:
            self.queue.put_nowait(change)
        except queue.Full:
            self._dropped()

    def get(self, timeout: Optional[float] = None) -> Optional[RowChange]:
        """Next change, or None when nothing arrived within the timeout."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    async def next(self) -> RowChange:
        return await self.async_queue.get()

    def close(self) -> None:
        self.hub.unsubscribe(self)


class RealtimeHub:
    """Fan committed row changes out to subscriptions."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        principal: Principal,
        table: str,
        filter: Optional[Dict[str, Any]] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Subscription:
        """Register a stream; pass ``loop`` to consume it with ``await subscription.next()``."""
        access = ROW_ACCESS_BY_TABLE.get(table)
        if access is None:
            raise KeyError(table)
        subscription = Subscription(hub=self, principal=principal, table=table, access=access,
                                    filter=dict(filter or {}))
        if loop is not None:
            subscription.bind_loop(loop)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, changes: List[RowChange]) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for change in changes:
            for subscription in subscriptions:
                if subscription.matches(change):
                    subscription.offer(change)

    # ------------------------------------------------------------------
    # Session wiring
    # ------------------------------------------------------------------

    def attach(self, session_factory) -> None:
        """Listen to flush/commit/rollback on sessions made by the factory."""
        event.listen(session_factory, "after_flush", self._after_flush)
        event.listen(session_factory, "after_commit", self._after_commit)
        event.listen(session_factory, "after_soft_rollback", self._after_rollback)

    def _after_flush(self, session: Session, flush_context) -> None:
        pending = session.info.setdefault(_PENDING_KEY, [])
        for obj in session.new:
            if _is_tracked(obj):
                pending.append(RowChange(obj.__tablename__, INSERT, new=_snapshot(obj)))
        for obj in session.dirty:
            if _is_tracked(obj) and session.is_modified(obj, include_collections=False):
                pending.append(RowChange(obj.__tablename__, UPDATE, old=_snapshot(obj, old=True),
                                         new=_snapshot(obj)))
        for obj in session.deleted:
            if _is_tracked(obj):
                pending.append(RowChange(obj.__tablename__, DELETE, old=_snapshot(obj, old=True)))

    def _after_commit(self, session: Session) -> None:
        changes = session.info.pop(_PENDING_KEY, [])
        if changes:
            self.publish(changes)

    def _after_rollback(self, session: Session, previous_transaction) -> None:
        session.info.pop(_PENDING_KEY, None)


hub = RealtimeHub()


def get_realtime_hub() -> RealtimeHub:
    return hub
