# Milestone state machine and gig progress rules
# Pure functions over the gig + milestones aggregate; no database access here

from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, List, NamedTuple, Optional, Sequence

from core.errors import IllegalTransition, OutOfOrder, StaleState, ValidationFailed
from core.fees import to_money
from database.models import MilestoneStatus

PERCENTAGE_TOLERANCE = Decimal("0.01")
AMOUNT_TOLERANCE = Decimal("0.01")

PROGRESS_WEIGHTS = {
    MilestoneStatus.APPROVED: Decimal("1.00"),
    MilestoneStatus.SUBMITTED: Decimal("0.80"),
    MilestoneStatus.IN_PROGRESS: Decimal("0.30"),
}


class MilestoneAction(str, Enum):
    START = "start"
    SUBMIT = "submit"
    APPROVE = "approve"
    REQUEST_REVISION = "request_revision"
    REJECT = "reject"
    RESUBMIT = "resubmit"


class Actor(str, Enum):
    CLIENT = "client"
    FREELANCER = "freelancer"


class TransitionRule(NamedTuple):
    required: frozenset
    actor: Actor
    target: MilestoneStatus


TRANSITIONS = {
    MilestoneAction.START: TransitionRule(
        frozenset({MilestoneStatus.PENDING}), Actor.FREELANCER, MilestoneStatus.IN_PROGRESS),
    MilestoneAction.SUBMIT: TransitionRule(
        frozenset({MilestoneStatus.IN_PROGRESS}), Actor.FREELANCER, MilestoneStatus.SUBMITTED),
    MilestoneAction.APPROVE: TransitionRule(
        frozenset({MilestoneStatus.SUBMITTED}), Actor.CLIENT, MilestoneStatus.APPROVED),
    MilestoneAction.REQUEST_REVISION: TransitionRule(
        frozenset({MilestoneStatus.SUBMITTED}), Actor.CLIENT, MilestoneStatus.REVISION_REQUESTED),
    MilestoneAction.REJECT: TransitionRule(
        frozenset({MilestoneStatus.SUBMITTED}), Actor.CLIENT, MilestoneStatus.REJECTED),
    MilestoneAction.RESUBMIT: TransitionRule(
        frozenset({MilestoneStatus.REVISION_REQUESTED}), Actor.FREELANCER, MilestoneStatus.SUBMITTED),
}


class MilestoneDraftData(NamedTuple):
    title: str
    amount: Decimal
    percentage: Decimal
    description: Optional[str] = None
    due_date: Optional[object] = None
    max_revisions: Optional[int] = None


def plan_transition(
    current: MilestoneStatus,
    action: MilestoneAction,
    expected: Optional[MilestoneStatus] = None,
) -> Optional[MilestoneStatus]:
    """
    Decide the next status for an action.

    Returns the target status, or None when the action was already applied
    (the milestone already sits in the action's target status), which callers
    treat as an idempotent no-op.

    Raises:
        StaleState: the caller's expected status no longer matches
        IllegalTransition: the action is not allowed from the current status
    """
    rule = TRANSITIONS[MilestoneAction(action)]
    current = MilestoneStatus(current)

    if current == rule.target:
        return None

    if expected is not None and MilestoneStatus(expected) != current:
        raise StaleState(MilestoneStatus(expected).value, current.value)

    if current not in rule.required:
        raise IllegalTransition(current.value, rule.target.value)

    return rule.target


def required_actor(action: MilestoneAction) -> Actor:
    return TRANSITIONS[MilestoneAction(action)].actor


def check_start_order(ordinal: int, siblings: Iterable) -> None:
    """A milestone may only start once every lower-ordinal milestone is approved."""
    blocking = [
        m for m in siblings
        if m.ordinal < ordinal and MilestoneStatus(m.status) != MilestoneStatus.APPROVED
    ]
    if blocking:
        first = min(blocking, key=lambda m: m.ordinal)
        raise OutOfOrder(
            MilestoneStatus.PENDING.value,
            MilestoneStatus.IN_PROGRESS.value,
            detail=f"Milestone {first.ordinal + 1} ('{first.title}') must be approved first",
        )


def apply_revision_request(revision_count: int, max_revisions: int):
    """Return (new_count, new_status) after a client asks for a revision."""
    new_count = revision_count + 1
    if new_count > max_revisions:
        return new_count, MilestoneStatus.REJECTED
    return new_count, MilestoneStatus.REVISION_REQUESTED


def compute_progress(milestones: Iterable) -> int:
    """Weighted completion percentage of a gig, as an integer in [0, 100]."""
    total = Decimal(0)
    for m in milestones:
        weight = PROGRESS_WEIGHTS.get(MilestoneStatus(m.status), Decimal(0))
        total += weight * Decimal(str(m.percentage))
    rounded = int(total.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return max(0, min(100, rounded))


def all_approved(milestones: Sequence) -> bool:
    return bool(milestones) and all(
        MilestoneStatus(m.status) == MilestoneStatus.APPROVED for m in milestones
    )


def validate_milestone_drafts(drafts: Sequence[MilestoneDraftData], budget) -> List[MilestoneDraftData]:
    """Check that drafts split the whole budget and add up to 100%."""
    fields = {}
    if not drafts:
        fields["milestones"] = "At least one milestone is required"
        raise ValidationFailed(fields)

    for index, draft in enumerate(drafts):
        if not draft.title or not draft.title.strip():
            fields[f"milestones[{index}].title"] = "Title is required"
        if to_money(draft.amount) <= 0:
            fields[f"milestones[{index}].amount"] = "Amount must be positive"
        if Decimal(str(draft.percentage)) <= 0:
            fields[f"milestones[{index}].percentage"] = "Percentage must be positive"
        if draft.max_revisions is not None and draft.max_revisions < 0:
            fields[f"milestones[{index}].max_revisions"] = "Must not be negative"

    total_percentage = sum((Decimal(str(d.percentage)) for d in drafts), Decimal(0))
    if abs(total_percentage - Decimal(100)) > PERCENTAGE_TOLERANCE:
        fields["percentage"] = f"Milestone percentages must add up to 100 (got {total_percentage})"

    total_amount = sum((to_money(d.amount) for d in drafts), Decimal(0))
    if abs(total_amount - to_money(budget)) > AMOUNT_TOLERANCE:
        fields["amount"] = f"Milestone amounts must add up to the gig budget {to_money(budget)} (got {total_amount})"

    if fields:
        raise ValidationFailed(fields)
    return list(drafts)
