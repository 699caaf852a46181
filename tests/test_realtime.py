"""Realtime change feed: commit-only delivery, row access and filters."""
import asyncio
import threading

import pytest

from database.models import Notification, NotificationType
from services.notification_service import NotificationService
from services.realtime import DELETE, INSERT, UPDATE, RealtimeHub, RowChange, hub


@pytest.fixture
def subscribe(principals):
    opened = []

    def _subscribe(who, table, filter=None):
        subscription = hub.subscribe(principals[who], table, filter)
        opened.append(subscription)
        return subscription

    yield _subscribe
    for subscription in opened:
        subscription.close()


def drain(subscription):
    changes = []
    while True:
        change = subscription.get(timeout=0)
        if change is None:
            return changes
        changes.append(change)


def test_changes_arrive_after_commit(db, principals, subscribe):
    feed = subscribe("freelancer", "notifications")
    service = NotificationService(db)

    service.create(principals["freelancer"].user_id, NotificationType.SYSTEM, "Hello", "World")
    assert drain(feed) == []

    db.commit()
    changes = drain(feed)
    assert [c.event for c in changes] == [INSERT]
    frame = changes[0].to_dict()
    assert frame["table"] == "notifications"
    assert frame["new"]["title"] == "Hello"
    assert frame["new"]["read"] is False
    assert frame["old"] is None


def test_rolled_back_changes_are_discarded(db, principals, subscribe):
    feed = subscribe("freelancer", "notifications")

    NotificationService(db).create(principals["freelancer"].user_id, NotificationType.SYSTEM, "Draft", "Gone")
    db.rollback()

    assert drain(feed) == []
    assert db.query(Notification).count() == 0


def test_rows_are_filtered_by_access(db, principals, subscribe):
    mine = subscribe("freelancer", "notifications")
    theirs = subscribe("employer", "notifications")
    admin = subscribe("admin", "notifications")

    NotificationService(db).create(principals["freelancer"].user_id, NotificationType.SYSTEM, "Private", "Only me")
    db.commit()

    assert len(drain(mine)) == 1
    assert drain(theirs) == []
    assert len(drain(admin)) == 1


def test_update_and_delete_frames(db, principals, subscribe):
    me = principals["freelancer"]
    service = NotificationService(db)
    notification = service.create(me.user_id, NotificationType.SYSTEM, "Hi", "There")
    db.commit()

    feed = subscribe("freelancer", "notifications")
    service.mark_read(me, notification.id)
    db.commit()
    service.delete(me, notification.id)
    db.commit()

    update, delete = drain(feed)
    assert update.event == UPDATE
    assert update.old["read"] is False
    assert update.new["read"] is True
    assert delete.event == DELETE
    assert delete.old["id"] == notification.id
    assert delete.new is None


def test_equality_filter(db, principals, subscribe):
    me = principals["freelancer"]
    unread = subscribe("freelancer", "notifications", {"read": False})
    service = NotificationService(db)

    notification = service.create(me.user_id, NotificationType.PAYMENT, "Paid", "Money")
    db.commit()
    service.mark_read(me, notification.id)
    db.commit()

    assert [c.event for c in drain(unread)] == [INSERT]


def test_public_rows_reach_everyone(principals, subscribe, make_assignment):
    feed = subscribe("freelancer2", "assignments")

    make_assignment()

    changes = drain(feed)
    assert len(changes) == 1
    assert changes[0].new["status"] == "open"


def test_decimal_values_are_serialised(principals, subscribe, make_gig):
    feed = subscribe("freelancer", "gigs")

    make_gig()

    (change,) = drain(feed)
    assert change.new["budget"] == "10000.00"


def test_unknown_table():
    with pytest.raises(KeyError):
        RealtimeHub().subscribe(None, "secrets")


def test_closed_subscription_stops_receiving(principals):
    local = RealtimeHub()
    subscription = local.subscribe(principals["freelancer"], "notifications")
    subscription.close()

    local.publish([RowChange("notifications", INSERT, new={"user_id": principals["freelancer"].user_id})])

    assert subscription.get(timeout=0) is None


def test_loop_bound_subscription_is_fed_from_other_threads(session_factory, principals):
    user_id = principals["freelancer"].user_id

    def commit_from_worker():
        session = session_factory()
        try:
            NotificationService(session).create(user_id, NotificationType.SYSTEM, "Async", "Pushed")
            session.commit()
        finally:
            session.close()

    async def consume():
        feed = hub.subscribe(principals["freelancer"], "notifications", loop=asyncio.get_running_loop())
        try:
            worker = threading.Thread(target=commit_from_worker)
            worker.start()
            change = await asyncio.wait_for(feed.next(), timeout=5)
            worker.join()
            return change, feed.get(timeout=0)
        finally:
            feed.close()

    change, blocking = asyncio.run(consume())

    assert change.event == INSERT
    assert change.new["title"] == "Async"
    assert blocking is None
