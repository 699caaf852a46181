# Notification Service for TrustWork
# Per-user inbox, fan-out of domain events into notifications, unread counting

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import desc
from sqlalchemy.orm import Session

from auth.principal import Principal
from core.errors import NotFound
from core.events import DomainEvent, EventType
from core.fees import format_rand
from database.models import Notification, NotificationPriority, NotificationType, utcnow
from services.persistence import page_window

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Service for creating and managing user notifications.
    Writes go through the caller's session; the caller commits.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: str,
        type: Union[NotificationType, str],
        title: str,
        message: str,
        priority: Union[NotificationPriority, str] = NotificationPriority.MEDIUM,
        action_url: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> Notification:
        """
        Create a new notification for a user.

        Args:
            user_id: The user to notify
            type: Notification type
            title: Short notification title
            message: Full notification message
            priority: low, medium or high
            action_url: Optional URL for the notification action
            data: Optional additional data as JSON

        Returns:
            The created Notification object
        """
        notification = Notification(
            user_id=user_id,
            type=NotificationType(type),
            priority=NotificationPriority(priority),
            title=title,
            message=message,
            action_url=action_url,
            data=data or {},
            read=False,
        )
        self.db.add(notification)
        self.db.flush()  # Get the ID without committing
        return notification

    def create_batch(
        self,
        user_ids: List[str],
        type: Union[NotificationType, str],
        title: str,
        message: str,
        priority: Union[NotificationPriority, str] = NotificationPriority.MEDIUM,
        action_url: Optional[str] = None,
        data: Optional[dict] = None,
    ) -> List[Notification]:
        """Create the same notification for several users."""
        return [
            self.create(user_id, type, title, message, priority=priority, action_url=action_url, data=data)
            for user_id in dict.fromkeys(user_ids)
        ]

    def _owned(self, principal: Principal, notification_id: str) -> Notification:
        notification = self.db.query(Notification).filter(
            Notification.id == notification_id,
            Notification.user_id == principal.user_id,
        ).first()
        if notification is None:
            raise NotFound("Notification not found")
        return notification

    def list(
        self,
        principal: Principal,
        unread_only: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> List[Notification]:
        """The principal's inbox, newest first."""
        query = self.db.query(Notification).filter(Notification.user_id == principal.user_id)
        if unread_only:
            query = query.filter(Notification.read == False)  # noqa: E712

        offset, limit = page_window(page, limit)
        return query.order_by(desc(Notification.created_at), Notification.id).offset(offset).limit(limit).all()

    def mark_read(self, principal: Principal, notification_id: str) -> Notification:
        """Mark one notification read. Marking an already-read notification changes nothing."""
        notification = self._owned(principal, notification_id)
        if not notification.read:
            notification.read = True
            notification.read_at = utcnow()
            self.db.flush()
        return notification

    def mark_all_read(self, principal: Principal) -> int:
        """
        Mark every unread notification read.

        Rows are updated one by one so each change reaches realtime listeners.

        Returns:
            Number of notifications marked as read
        """
        unread = self.db.query(Notification).filter(
            Notification.user_id == principal.user_id,
            Notification.read == False,  # noqa: E712
        ).all()
        now = utcnow()
        for notification in unread:
            notification.read = True
            notification.read_at = now
        self.db.flush()
        return len(unread)

    def get_unread_count(self, principal: Principal) -> int:
        """Get unread notification count for a user."""
        return self.db.query(Notification).filter(
            Notification.user_id == principal.user_id,
            Notification.read == False,  # noqa: E712
        ).count()

    def delete(self, principal: Principal, notification_id: str) -> None:
        """Owner-only hard delete."""
        notification = self._owned(principal, notification_id)
        self.db.delete(notification)
        self.db.flush()


# Convenience function to get service
def get_notification_service(db: Session) -> NotificationService:
    """Get NotificationService instance."""
    return NotificationService(db)


# ============================================================================
# EVENT FAN-OUT
# ============================================================================

@dataclass(frozen=True)
class NotificationTemplate:
    recipients: Callable[[DomainEvent], List[str]]
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: Callable[[DomainEvent], str]
    action_url: Callable[[DomainEvent], Optional[str]]


def _payload(*keys: str) -> Callable[[DomainEvent], List[str]]:
    return lambda e: [e.get(k) for k in keys if e.get(k)]


TEMPLATES: Dict[EventType, NotificationTemplate] = {
    EventType.APPLICATION_SUBMITTED: NotificationTemplate(
        recipients=_payload("employer_id"),
        type=NotificationType.APPLICATION,
        priority=NotificationPriority.MEDIUM,
        title="New Application",
        message=lambda e: f"{e.get('freelancer_name', 'A freelancer')} applied to \"{e.get('assignment_title')}\".",
        action_url=lambda e: f"/assignments/{e.get('assignment_id')}/applications",
    ),
    EventType.APPLICATION_SHORTLISTED: NotificationTemplate(
        recipients=_payload("freelancer_id"),
        type=NotificationType.APPLICATION,
        priority=NotificationPriority.MEDIUM,
        title="You've Been Shortlisted",
        message=lambda e: f"Your application for \"{e.get('assignment_title')}\" has been shortlisted.",
        action_url=lambda e: "/applications",
    ),
    EventType.APPLICATION_ACCEPTED: NotificationTemplate(
        recipients=_payload("freelancer_id"),
        type=NotificationType.APPLICATION,
        priority=NotificationPriority.MEDIUM,
        title="Application Accepted! 🎉",
        message=lambda e: f"Your application for \"{e.get('assignment_title')}\" was accepted.",
        action_url=lambda e: f"/gigs/{e.get('gig_id')}" if e.get("gig_id") else "/applications",
    ),
    EventType.APPLICATION_REJECTED: NotificationTemplate(
        recipients=_payload("freelancer_id"),
        type=NotificationType.APPLICATION,
        priority=NotificationPriority.MEDIUM,
        title="Application Update",
        message=lambda e: (
            f"Your application for \"{e.get('assignment_title')}\" was not successful."
            + (f" {e.get('employer_message')}" if e.get("employer_message") else "")
        ),
        action_url=lambda e: "/applications",
    ),
    EventType.APPLICATION_WITHDRAWN: NotificationTemplate(
        recipients=_payload("employer_id"),
        type=NotificationType.APPLICATION,
        priority=NotificationPriority.MEDIUM,
        title="Application Withdrawn",
        message=lambda e: f"An applicant withdrew from \"{e.get('assignment_title')}\".",
        action_url=lambda e: f"/assignments/{e.get('assignment_id')}/applications",
    ),
    EventType.MILESTONE_SUBMITTED: NotificationTemplate(
        recipients=_payload("client_id"),
        type=NotificationType.PAYMENT,
        priority=NotificationPriority.MEDIUM,
        title="Milestone Submitted 📤",
        message=lambda e: f"\"{e.get('title')}\" was submitted for your review.",
        action_url=lambda e: f"/gigs/{e.get('gig_id')}",
    ),
    EventType.MILESTONE_REVISION_REQUESTED: NotificationTemplate(
        recipients=_payload("freelancer_id"),
        type=NotificationType.PAYMENT,
        priority=NotificationPriority.MEDIUM,
        title="Revision Requested 🔄",
        message=lambda e: f"The client requested changes to \"{e.get('title')}\".",
        action_url=lambda e: f"/gigs/{e.get('gig_id')}",
    ),
    EventType.MILESTONE_APPROVED: NotificationTemplate(
        recipients=_payload("freelancer_id"),
        type=NotificationType.PAYMENT,
        priority=NotificationPriority.HIGH,
        title="Milestone Approved! ✅",
        message=lambda e: f"\"{e.get('title')}\" was approved ({format_rand(e.get('amount', 0))}).",
        action_url=lambda e: f"/gigs/{e.get('gig_id')}",
    ),
    EventType.PAYMENT_HELD: NotificationTemplate(
        recipients=_payload("recipient_id"),
        type=NotificationType.PAYMENT,
        priority=NotificationPriority.MEDIUM,
        title="Funds Secured 🔒",
        message=lambda e: f"{format_rand(e.get('amount', 0))} is held in escrow for your gig.",
        action_url=lambda e: f"/gigs/{e.get('gig_id')}",
    ),
    EventType.PAYMENT_RELEASED: NotificationTemplate(
        recipients=_payload("recipient_id"),
        type=NotificationType.PAYMENT,
        priority=NotificationPriority.HIGH,
        title="Payment Released! 💰",
        message=lambda e: f"{format_rand(e.get('net', 0))} has been released to you and will be paid out shortly.",
        action_url=lambda e: "/payments",
    ),
    EventType.PAYOUT_COMPLETED: NotificationTemplate(
        recipients=_payload("recipient_id"),
        type=NotificationType.PAYMENT,
        priority=NotificationPriority.HIGH,
        title="Payout Complete! 🏦",
        message=lambda e: f"{format_rand(e.get('net', 0))} has been sent to your bank account.",
        action_url=lambda e: "/payments",
    ),
    EventType.PAYOUT_FAILED: NotificationTemplate(
        recipients=_payload("recipient_id"),
        type=NotificationType.PAYMENT,
        priority=NotificationPriority.HIGH,
        title="Payout Failed",
        message=lambda e: f"We could not pay out {format_rand(e.get('net', 0))}: {e.get('error') or 'unknown error'}.",
        action_url=lambda e: "/settings/bank-account",
    ),
    EventType.DISPUTE_OPENED: NotificationTemplate(
        recipients=_payload("respondent_id"),
        type=NotificationType.SAFETY,
        priority=NotificationPriority.HIGH,
        title="Dispute Opened ⚠️",
        message=lambda e: f"A dispute was opened on your gig: {e.get('reason')}. Please respond.",
        action_url=lambda e: f"/disputes/{e.aggregate_id}",
    ),
    EventType.DISPUTE_RESOLVED: NotificationTemplate(
        recipients=_payload("initiated_by", "respondent_id"),
        type=NotificationType.SYSTEM,
        priority=NotificationPriority.MEDIUM,
        title="Dispute Resolved",
        message=lambda e: f"The dispute was resolved: funds were {'released' if e.get('decision') == 'release' else 'refunded'}.",
        action_url=lambda e: f"/disputes/{e.aggregate_id}",
    ),
    EventType.SAFETY_FLAG: NotificationTemplate(
        recipients=lambda e: list(e.get("subject_ids") or []),
        type=NotificationType.SAFETY,
        priority=NotificationPriority.HIGH,
        title="Safety Alert",
        message=lambda e: e.get("reason") or "Our team has flagged activity on your account for review.",
        action_url=lambda e: e.get("action_url"),
    ),
}


class NotificationFanout:
    """Turns domain events into inbox entries."""

    def __init__(self, templates: Optional[Dict[EventType, NotificationTemplate]] = None):
        self.templates = templates or TEMPLATES

    @classmethod
    def register(cls, bus) -> "NotificationFanout":
        fanout = cls()
        bus.subscribe(list(fanout.templates), fanout, name="notifications")
        return fanout

    def __call__(self, db: Session, event: DomainEvent) -> List[Notification]:
        template = self.templates.get(event.type)
        if template is None:
            return []
        recipients = template.recipients(event)
        if not recipients:
            logger.warning(f"No recipient for {event.type.value} on {event.aggregate_id}")
            return []
        return NotificationService(db).create_batch(
            recipients,
            type=template.type,
            title=template.title,
            message=template.message(event),
            priority=template.priority,
            action_url=template.action_url(event),
            data={"event": event.type.value, "aggregate_id": event.aggregate_id, **event.payload},
        )


# ============================================================================
# UNREAD COUNTER
# ============================================================================

class UnreadCounter:
    """
    Client-side unread badge kept in step with realtime change frames.

    Frames are dicts or RowChange objects with ``event``, ``old`` and ``new``.
    """

    def __init__(self, user_id: str, initial: int = 0):
        self.user_id = user_id
        self.count = initial

    def _mine(self, row: Optional[Dict[str, Any]]) -> bool:
        return row is not None and row.get("user_id") == self.user_id

    def apply(self, change) -> int:
        if not isinstance(change, dict):
            change = change.to_dict()
        kind, old, new = change.get("event"), change.get("old"), change.get("new")

        if kind == "insert" and self._mine(new) and not new.get("read"):
            self.count += 1
        elif kind == "update" and self._mine(new) and old is not None:
            if bool(old.get("read")) != bool(new.get("read")):
                self.count += -1 if new.get("read") else 1
        elif kind == "delete" and self._mine(old) and not old.get("read"):
            self.count -= 1
        return self.count

    def reconcile(self, authoritative: int) -> int:
        """Reset to the server-side count, e.g. after a reconnect."""
        self.count = authoritative
        return self.count
