# Application Service for TrustWork
# Submission, review and withdrawal of freelancer applications

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from sqlalchemy import desc
from sqlalchemy.orm import Session

from auth.principal import Principal
from auth.roles import UserType
from config import app_config
from core.deadline import Deadline
from core.errors import Conflict, IllegalTransition, NotFound, Unauthorized, ValidationFailed
from core.events import DomainEvent, EventType
from database.models import (
    ACTIVE_APPLICATION_STATUSES, Application, ApplicationStatus, Assignment, AssignmentStatus, Gig,
    Profile, utcnow,
)
from schemas.base import validated
from schemas.marketplace import ApplicationCreate, ApplicationStatusUpdate
from services.gig_service import GigService
from services.persistence import Repository, page_window, transaction

logger = logging.getLogger(__name__)

FILLED_MESSAGE = "Position has been filled"

TERMINAL_STATUSES = frozenset({
    ApplicationStatus.ACCEPTED,
    ApplicationStatus.REJECTED,
    ApplicationStatus.WITHDRAWN,
})

# Employer decisions allowed from each status; withdrawal is the freelancer's own action
EMPLOYER_TRANSITIONS = {
    ApplicationStatus.PENDING: {ApplicationStatus.SHORTLISTED, ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED},
    ApplicationStatus.REVIEWING: {ApplicationStatus.SHORTLISTED, ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED},
    ApplicationStatus.SHORTLISTED: {ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED},
}


@dataclass
class ApplicationWithFreelancer:
    """Employer's projection: the application plus the applicant's profile."""
    application: Application
    freelancer: Profile


@dataclass
class ApplicationWithAssignment:
    """Freelancer's projection: the application plus the assignment applied to."""
    application: Application
    assignment: Assignment


def _event_payload(application: Application, assignment: Assignment, **extra) -> dict:
    payload = {
        "application_id": application.id,
        "assignment_id": assignment.id,
        "assignment_title": assignment.title,
        "freelancer_id": application.freelancer_id,
        "employer_id": application.employer_id,
    }
    payload.update(extra)
    return payload


class ApplicationService:
    """Command handlers for the application lifecycle."""

    def __init__(self, db: Session, bus, deadline: Optional[Deadline] = None):
        self.db = db
        self.bus = bus
        self.deadline = deadline or Deadline.none()

    def _lock_assignment(self, assignment_id: str) -> Assignment:
        assignment = self.db.query(Assignment).filter(
            Assignment.id == assignment_id
        ).with_for_update().populate_existing().first()
        if assignment is None:
            raise NotFound("Assignment not found")
        return assignment

    def submit(self, principal: Principal, data: Union[ApplicationCreate, dict]) -> Application:
        """Apply to an open assignment."""
        principal.require_role(UserType.FREELANCER)
        data = validated(ApplicationCreate, data)

        with transaction(self.db, self.bus, self.deadline):
            assignment = self._lock_assignment(data.assignment_id)
            if assignment.status != AssignmentStatus.OPEN:
                raise ValidationFailed({"assignment_id": "This assignment is not accepting applications"})

            active = self.db.query(Application).filter(
                Application.assignment_id == assignment.id,
                Application.freelancer_id == principal.user_id,
                Application.status.in_(ACTIVE_APPLICATION_STATUSES),
            ).count()
            if active >= app_config.APPLICATION_ACTIVE_LIMIT:
                raise Conflict("You already have an active application for this assignment")

            application = Repository(self.db, Application, principal).insert(
                assignment_id=assignment.id,
                freelancer_id=principal.user_id,
                employer_id=assignment.employer_id,
                cover_letter=data.cover_letter,
                proposed_rate=data.proposed_rate,
                proposed_timeline=data.proposed_timeline,
                availability_start=data.availability_start,
                portfolio_links=list(data.portfolio_links),
                status=ApplicationStatus.PENDING,
            )

            freelancer = self.db.get(Profile, principal.user_id)
            self.bus.emit(self.db, DomainEvent(
                EventType.APPLICATION_SUBMITTED, "application", application.id,
                _event_payload(application, assignment, freelancer_name=freelancer.display_name if freelancer else None),
            ))

        logger.info(f"Application {application.id} submitted for assignment {assignment.id}")
        return application

    def get(self, principal: Principal, application_id: str) -> Application:
        return Repository(self.db, Application, principal).get(application_id)

    def list_for_employer(
        self,
        principal: Principal,
        assignment_id: str,
        status: Optional[ApplicationStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> List[ApplicationWithFreelancer]:
        """Applications to one of the employer's assignments, with applicant summaries."""
        assignment = self.db.get(Assignment, assignment_id)
        if assignment is None:
            raise NotFound("Assignment not found")
        principal.require_self_or_admin(assignment.employer_id)

        query = self.db.query(Application, Profile).join(
            Profile, Profile.id == Application.freelancer_id
        ).filter(Application.assignment_id == assignment_id)
        if status is not None:
            query = query.filter(Application.status == ApplicationStatus(status))

        offset, limit = page_window(page, limit)
        rows = query.order_by(desc(Application.created_at), Application.id).offset(offset).limit(limit).all()
        return [ApplicationWithFreelancer(application=a, freelancer=p) for a, p in rows]

    def list_for_freelancer(
        self,
        principal: Principal,
        freelancer_id: Optional[str] = None,
        status: Optional[ApplicationStatus] = None,
        page: int = 1,
        limit: int = 20,
    ) -> List[ApplicationWithAssignment]:
        """A freelancer's own applications, with assignment summaries."""
        freelancer_id = freelancer_id or principal.user_id
        principal.require_self_or_admin(freelancer_id)

        query = self.db.query(Application, Assignment).join(
            Assignment, Assignment.id == Application.assignment_id
        ).filter(Application.freelancer_id == freelancer_id)
        if status is not None:
            query = query.filter(Application.status == ApplicationStatus(status))

        offset, limit = page_window(page, limit)
        rows = query.order_by(desc(Application.created_at), Application.id).offset(offset).limit(limit).all()
        return [ApplicationWithAssignment(application=a, assignment=s) for a, s in rows]

    def update_status(
        self,
        principal: Principal,
        application_id: str,
        data: Union[ApplicationStatusUpdate, dict],
    ) -> Tuple[Application, Optional[Gig]]:
        """
        Employer decision on an application.

        Accepting fills the assignment, rejects every other open application
        for it and creates the gig, all in one transaction.

        Returns:
            (application, gig) where gig is set only on acceptance
        """
        data = validated(ApplicationStatusUpdate, data)
        target = ApplicationStatus(data.status.value)
        gig = None

        with transaction(self.db, self.bus, self.deadline):
            application = Repository(self.db, Application, principal).get(application_id)
            if application.employer_id != principal.user_id:
                raise Unauthorized("Only the employer who posted the assignment can review this application")

            assignment = self._lock_assignment(application.assignment_id)
            self.db.refresh(application)

            if data.expected_version is not None and application.version != data.expected_version:
                raise Conflict("The application was changed by someone else; reload and retry")

            current = ApplicationStatus(application.status)
            if (target == ApplicationStatus.ACCEPTED and current != ApplicationStatus.ACCEPTED
                    and assignment.status != AssignmentStatus.OPEN):
                # Lost the race: another acceptance filled the assignment first
                raise Conflict("This assignment is no longer open; another application was accepted first")
            if target not in EMPLOYER_TRANSITIONS.get(current, set()):
                raise IllegalTransition(current.value, target.value)

            now = utcnow()
            application.status = target
            application.reviewed_at = now
            application.reviewed_by = principal.user_id
            if data.employer_message is not None:
                application.employer_message = data.employer_message
            if target == ApplicationStatus.REJECTED:
                application.rejection_reason = data.rejection_reason

            if target == ApplicationStatus.ACCEPTED:
                gig = self._accept_cascade(principal, application, assignment, now)
            elif target == ApplicationStatus.REJECTED:
                self.bus.emit(self.db, DomainEvent(
                    EventType.APPLICATION_REJECTED, "application", application.id,
                    _event_payload(application, assignment, employer_message=application.employer_message),
                ))
            else:
                self.bus.emit(self.db, DomainEvent(
                    EventType.APPLICATION_SHORTLISTED, "application", application.id,
                    _event_payload(application, assignment),
                ))
            self.db.flush()

        logger.info(f"Application {application.id} moved to {target.value}")
        return application, gig

    def _accept_cascade(self, principal: Principal, application: Application, assignment: Assignment, now) -> Gig:
        siblings = self.db.query(Application).filter(
            Application.assignment_id == assignment.id,
            Application.id != application.id,
            Application.status.notin_(TERMINAL_STATUSES),
        ).all()
        for sibling in siblings:
            sibling.status = ApplicationStatus.REJECTED
            sibling.employer_message = FILLED_MESSAGE
            sibling.reviewed_at = now
            sibling.reviewed_by = principal.user_id

        assignment.status = AssignmentStatus.FILLED
        self.db.flush()

        gig = GigService(self.db, self.bus, self.deadline).create_from_application(application, assignment)

        self.bus.emit(self.db, DomainEvent(
            EventType.APPLICATION_ACCEPTED, "application", application.id,
            _event_payload(application, assignment, gig_id=gig.id),
        ))
        for sibling in siblings:
            self.bus.emit(self.db, DomainEvent(
                EventType.APPLICATION_REJECTED, "application", sibling.id,
                _event_payload(sibling, assignment, employer_message=FILLED_MESSAGE),
            ))
        logger.info(f"Assignment {assignment.id} filled; {len(siblings)} other applications rejected")
        return gig

    def withdraw(self, principal: Principal, application_id: str, reason: Optional[str] = None) -> Application:
        """Freelancer withdraws their own non-terminal application."""
        with transaction(self.db, self.bus, self.deadline):
            application = Repository(self.db, Application, principal).get(application_id)
            if application.freelancer_id != principal.user_id:
                raise Unauthorized("Only the applicant can withdraw this application")

            assignment = self._lock_assignment(application.assignment_id)
            self.db.refresh(application)

            current = ApplicationStatus(application.status)
            if current in TERMINAL_STATUSES:
                raise IllegalTransition(current.value, ApplicationStatus.WITHDRAWN.value)

            application.status = ApplicationStatus.WITHDRAWN
            application.withdrawal_reason = reason
            self.db.flush()

            self.bus.emit(self.db, DomainEvent(
                EventType.APPLICATION_WITHDRAWN, "application", application.id,
                _event_payload(application, assignment, reason=reason),
            ))

        logger.info(f"Application {application.id} withdrawn")
        return application
