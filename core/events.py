# Domain events published through the outbox

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class EventType(str, Enum):
    APPLICATION_SUBMITTED = "ApplicationSubmitted"
    APPLICATION_ACCEPTED = "ApplicationAccepted"
    APPLICATION_REJECTED = "ApplicationRejected"
    APPLICATION_WITHDRAWN = "ApplicationWithdrawn"
    APPLICATION_SHORTLISTED = "ApplicationShortlisted"

    GIG_CREATED = "GigCreated"
    GIG_COMPLETED = "GigCompleted"

    MILESTONE_STARTED = "MilestoneStarted"
    MILESTONE_SUBMITTED = "MilestoneSubmitted"
    MILESTONE_APPROVED = "MilestoneApproved"
    MILESTONE_REVISION_REQUESTED = "MilestoneRevisionRequested"
    MILESTONE_REJECTED = "MilestoneRejected"

    PAYMENT_HELD = "PaymentHeld"
    PAYMENT_RELEASED = "PaymentReleased"
    PAYMENT_REFUNDED = "PaymentRefunded"
    PAYMENT_DISPUTED = "PaymentDisputed"
    PAYOUT_COMPLETED = "PayoutCompleted"
    PAYOUT_FAILED = "PayoutFailed"

    DISPUTE_OPENED = "DisputeOpened"
    DISPUTE_RESOLVED = "DisputeResolved"
    SAFETY_FLAG = "SafetyFlag"


@dataclass
class DomainEvent:
    """Something that happened to one aggregate.

    ``aggregate_id`` is the ordering key: events for the same aggregate are
    delivered in the order they were recorded.
    """
    type: EventType
    aggregate_type: str
    aggregate_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.type = EventType(self.type)

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)
