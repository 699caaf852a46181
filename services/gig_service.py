# Gig & Milestone engine for TrustWork
# Runs the milestone state machine from core.milestone_rules against the database

import logging
from typing import List, Optional, Sequence, Union

from sqlalchemy import desc, or_
from sqlalchemy.orm import Session

from auth.principal import Principal
from auth.roles import UserType
from config import app_config
from core.deadline import Deadline
from core.errors import IllegalTransition, NotFound, Unauthorized, ValidationFailed
from core.events import DomainEvent, EventType
from core.fees import to_money
from core.milestone_rules import (
    Actor, MilestoneAction, MilestoneDraftData, all_approved, apply_revision_request,
    check_start_order, compute_progress, plan_transition, required_actor, validate_milestone_drafts,
)
from database.models import (
    Application, Assignment, EscrowPayment, EscrowStatus, Gig, GigStatus, Milestone, MilestoneStatus,
    Profile, UserRole, utcnow,
)
from schemas.base import validated
from schemas.marketplace import GigCreate, MilestoneDraft
from services.escrow_service import release_for_milestone
from services.persistence import Repository, page_window, transaction

logger = logging.getLogger(__name__)

WORKABLE_GIG_STATUSES = (GigStatus.OPEN, GigStatus.IN_PROGRESS)

MILESTONE_EVENTS = {
    MilestoneAction.START: EventType.MILESTONE_STARTED,
    MilestoneAction.SUBMIT: EventType.MILESTONE_SUBMITTED,
    MilestoneAction.RESUBMIT: EventType.MILESTONE_SUBMITTED,
    MilestoneAction.APPROVE: EventType.MILESTONE_APPROVED,
    MilestoneAction.REQUEST_REVISION: EventType.MILESTONE_REVISION_REQUESTED,
    MilestoneAction.REJECT: EventType.MILESTONE_REJECTED,
}


def milestone_payload(milestone: Milestone, **extra) -> dict:
    payload = {
        "milestone_id": milestone.id,
        "gig_id": milestone.gig_id,
        "title": milestone.title,
        "ordinal": milestone.ordinal,
        "amount": milestone.amount,
        "status": milestone.status,
        "client_id": milestone.client_id,
        "freelancer_id": milestone.freelancer_id,
    }
    payload.update(extra)
    return payload


class GigService:
    """Command handlers for gigs and their milestones."""

    def __init__(self, db: Session, bus, deadline: Optional[Deadline] = None):
        self.db = db
        self.bus = bus
        self.deadline = deadline or Deadline.none()

    # ------------------------------------------------------------------
    # Gig creation
    # ------------------------------------------------------------------

    def create_from_application(self, application: Application, assignment: Assignment) -> Gig:
        """Create the gig for an accepted application, inside the caller's transaction."""
        budget = assignment.agreed_budget
        if budget is None:
            budget = application.proposed_rate
        if budget is None:
            raise ValidationFailed({"budget": "The assignment has no budget and the application no proposed rate"})

        gig = Gig(
            assignment_id=assignment.id,
            application_id=application.id,
            client_id=assignment.employer_id,
            freelancer_id=application.freelancer_id,
            title=assignment.title,
            category=assignment.category,
            budget=to_money(budget),
            deadline=assignment.deadline,
            status=GigStatus.OPEN,
        )
        self.db.add(gig)
        self.db.flush()
        self._emit_created(gig)
        return gig

    def create_gig(self, principal: Principal, data: Union[GigCreate, dict]) -> Gig:
        """Open a gig directly with a chosen freelancer."""
        principal.require_role(UserType.EMPLOYER, UserType.ADMIN)
        data = validated(GigCreate, data)

        with transaction(self.db, self.bus, self.deadline):
            freelancer = self.db.get(Profile, data.freelancer_id)
            if freelancer is None or UserRole(freelancer.role) != UserRole.FREELANCER:
                raise ValidationFailed({"freelancer_id": "No freelancer with this id"})
            if data.assignment_id is not None:
                assignment = self.db.get(Assignment, data.assignment_id)
                if assignment is None:
                    raise NotFound("Assignment not found")
                principal.require_self_or_admin(assignment.employer_id)

            gig = Gig(
                assignment_id=data.assignment_id,
                client_id=principal.user_id,
                freelancer_id=freelancer.id,
                title=data.title,
                category=data.category,
                budget=to_money(data.budget),
                deadline=data.deadline,
                status=GigStatus.OPEN,
            )
            self.db.add(gig)
            self.db.flush()
            self._emit_created(gig)

        logger.info(f"Gig {gig.id} opened directly by {principal.user_id}")
        return gig

    def _emit_created(self, gig: Gig) -> None:
        self.bus.emit(self.db, DomainEvent(EventType.GIG_CREATED, "gig", gig.id, {
            "gig_id": gig.id,
            "client_id": gig.client_id,
            "freelancer_id": gig.freelancer_id,
            "budget": gig.budget,
            "application_id": gig.application_id,
        }))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, principal: Principal, gig_id: str) -> Gig:
        return Repository(self.db, Gig, principal).get(gig_id)

    def list_for_principal(
        self,
        principal: Principal,
        status: Optional[GigStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> List[Gig]:
        query = self.db.query(Gig).filter(
            or_(Gig.client_id == principal.user_id, Gig.freelancer_id == principal.user_id)
        )
        if status is not None:
            query = query.filter(Gig.status == GigStatus(status))
        offset, limit = page_window(page, limit)
        return query.order_by(desc(Gig.created_at), Gig.id).offset(offset).limit(limit).all()

    @staticmethod
    def progress(gig: Gig) -> int:
        """Weighted completion percentage of the gig."""
        return compute_progress(gig.milestones)

    def _lock_gig(self, gig_id: str) -> Gig:
        gig = self.db.query(Gig).filter(Gig.id == gig_id).with_for_update().first()
        if gig is None:
            raise NotFound("Gig not found")
        return gig

    # ------------------------------------------------------------------
    # Milestones
    # ------------------------------------------------------------------

    def define_milestones(
        self,
        principal: Principal,
        gig_id: str,
        drafts: Sequence[Union[MilestoneDraft, dict]],
    ) -> List[Milestone]:
        """
        Replace the gig's milestone plan.

        Only the client may do this, and only while the gig is still open.
        Ordinals follow list order.
        """
        drafts = [validated(MilestoneDraft, d) for d in drafts]

        with transaction(self.db, self.bus, self.deadline):
            Repository(self.db, Gig, principal).get(gig_id)
            gig = self._lock_gig(gig_id)
            if gig.client_id != principal.user_id:
                raise Unauthorized("Only the client can define milestones")
            if GigStatus(gig.status) != GigStatus.OPEN:
                raise IllegalTransition(
                    GigStatus(gig.status).value, None,
                    detail="Milestones can only be defined while the gig is open",
                )

            plan = validate_milestone_drafts(
                [MilestoneDraftData(d.title, d.amount, d.percentage, d.description, d.due_date, d.max_revisions)
                 for d in drafts],
                gig.budget,
            )

            linked = self.db.query(EscrowPayment).filter(
                EscrowPayment.gig_id == gig.id,
                EscrowPayment.milestone_id.isnot(None),
            ).all()
            if any(EscrowStatus(p.status) != EscrowStatus.DISCARDED for p in linked):
                raise IllegalTransition(
                    GigStatus(gig.status).value, None,
                    detail="Milestones cannot be replaced once one of them has been funded",
                )
            # Discarded checkouts keep their row but lose the milestone link
            for payment in linked:
                payment.milestone_id = None
            self.db.flush()

            for existing in list(gig.milestones):
                self.db.delete(existing)
            self.db.flush()
            self.db.expire(gig, ["milestones"])

            milestones = []
            for ordinal, draft in enumerate(plan):
                milestone = Milestone(
                    gig_id=gig.id,
                    client_id=gig.client_id,
                    freelancer_id=gig.freelancer_id,
                    ordinal=ordinal,
                    title=draft.title.strip(),
                    description=draft.description,
                    amount=to_money(draft.amount),
                    percentage=draft.percentage,
                    due_date=draft.due_date,
                    status=MilestoneStatus.PENDING,
                    revision_count=0,
                    max_revisions=(
                        draft.max_revisions if draft.max_revisions is not None
                        else app_config.MAX_MILESTONE_REVISIONS_DEFAULT
                    ),
                )
                self.db.add(milestone)
                milestones.append(milestone)
            self.db.flush()

        logger.info(f"Defined {len(milestones)} milestones for gig {gig.id}")
        return milestones

    def transition_milestone(
        self,
        principal: Principal,
        milestone_id: str,
        action: Union[MilestoneAction, str],
        expected_status: Optional[MilestoneStatus] = None,
        notes: Optional[str] = None,
    ) -> Milestone:
        """
        Apply one action of the milestone state machine.

        Repeating an action that already took effect returns the milestone
        unchanged and publishes nothing.
        """
        action = MilestoneAction(action)

        with transaction(self.db, self.bus, self.deadline):
            milestone = Repository(self.db, Milestone, principal).get(milestone_id)
            gig = self._lock_gig(milestone.gig_id)
            self.db.refresh(milestone)

            actor_id = gig.client_id if required_actor(action) == Actor.CLIENT else gig.freelancer_id
            if principal.user_id != actor_id:
                raise Unauthorized(f"Only the gig's {required_actor(action).value} can {action.value} this milestone")

            target = plan_transition(milestone.status, action, expected_status)
            if target is None:
                logger.info(f"Milestone {milestone.id} already {milestone.status}; {action.value} ignored")
                return milestone

            if GigStatus(gig.status) not in WORKABLE_GIG_STATUSES:
                raise IllegalTransition(
                    MilestoneStatus(milestone.status).value, target.value,
                    detail=f"The gig is {GigStatus(gig.status).value}",
                )

            now = utcnow()
            if action == MilestoneAction.START:
                check_start_order(milestone.ordinal, gig.milestones)
                milestone.started_at = now
                if GigStatus(gig.status) == GigStatus.OPEN:
                    gig.status = GigStatus.IN_PROGRESS
                    gig.started_at = gig.started_at or now
            elif action in (MilestoneAction.SUBMIT, MilestoneAction.RESUBMIT):
                milestone.submitted_at = now
                if notes is not None:
                    milestone.submission_notes = notes
            elif action == MilestoneAction.REQUEST_REVISION:
                milestone.revision_count, target = apply_revision_request(
                    milestone.revision_count, milestone.max_revisions
                )
                milestone.client_notes = notes
            elif action in (MilestoneAction.APPROVE, MilestoneAction.REJECT):
                if notes is not None:
                    milestone.client_notes = notes
                if action == MilestoneAction.APPROVE:
                    milestone.approved_at = now

            milestone.status = target
            self.db.flush()

            event_type = MILESTONE_EVENTS[action]
            if target == MilestoneStatus.REJECTED:
                event_type = EventType.MILESTONE_REJECTED
            self.bus.emit(self.db, DomainEvent(event_type, "milestone", milestone.id, milestone_payload(milestone)))

            if action == MilestoneAction.APPROVE:
                self._on_approved(gig, milestone)

        logger.info(f"Milestone {milestone.id}: {action.value} -> {MilestoneStatus(milestone.status).value}")
        return milestone

    def _on_approved(self, gig: Gig, milestone: Milestone) -> None:
        release_for_milestone(self.db, self.bus, milestone)
        self.db.expire(gig, ["milestones"])
        if all_approved(gig.milestones):
            self._complete(gig)

    def _complete(self, gig: Gig) -> Gig:
        gig.status = GigStatus.COMPLETED
        gig.completed_at = utcnow()
        self.db.flush()
        self.bus.emit(self.db, DomainEvent(EventType.GIG_COMPLETED, "gig", gig.id, {
            "gig_id": gig.id,
            "client_id": gig.client_id,
            "freelancer_id": gig.freelancer_id,
            "budget": gig.budget,
        }))
        logger.info(f"Gig {gig.id} completed")
        return gig

    def complete_gig(self, principal: Principal, gig_id: str) -> Gig:
        """Mark the gig completed once every milestone is approved."""
        with transaction(self.db, self.bus, self.deadline):
            Repository(self.db, Gig, principal).get(gig_id)
            gig = self._lock_gig(gig_id)
            principal.require_self_or_admin(gig.client_id)
            if GigStatus(gig.status) == GigStatus.COMPLETED:
                return gig
            if not all_approved(gig.milestones):
                raise IllegalTransition(
                    GigStatus(gig.status).value, GigStatus.COMPLETED.value,
                    detail="Every milestone must be approved before the gig can be completed",
                )
            self._complete(gig)
        return gig
