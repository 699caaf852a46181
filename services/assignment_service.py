# Assignment Service for TrustWork
# Employers post assignments; open ones are visible to everyone

import logging
from typing import List, Optional, Union

from sqlalchemy import desc
from sqlalchemy.orm import Session

from auth.principal import Principal
from auth.roles import Permission
from core.deadline import Deadline
from core.errors import IllegalTransition, Unauthorized
from database.models import Assignment, AssignmentStatus, BudgetType
from schemas.base import validated
from schemas.marketplace import AssignmentCreate
from services.persistence import Repository, page_window, transaction

logger = logging.getLogger(__name__)


class AssignmentService:

    def __init__(self, db: Session, deadline: Optional[Deadline] = None):
        self.db = db
        self.deadline = deadline or Deadline.none()

    def create(self, principal: Principal, data: Union[AssignmentCreate, dict]) -> Assignment:
        principal.require_permission(Permission.POST_ASSIGNMENTS)
        data = validated(AssignmentCreate, data)

        with transaction(self.db, None, self.deadline):
            assignment = Repository(self.db, Assignment, principal).insert(
                employer_id=principal.user_id,
                title=data.title,
                description=data.description,
                category=data.category,
                budget_min=data.budget_min,
                budget_max=data.budget_max,
                budget_type=BudgetType(data.budget_type),
                required_skills=list(data.required_skills),
                location=data.location,
                remote_allowed=data.remote_allowed,
                job_type=data.job_type,
                experience_level=data.experience_level,
                urgent=data.urgent,
                deadline=data.deadline,
                status=AssignmentStatus.OPEN if data.publish else AssignmentStatus.DRAFT,
            )

        logger.info(f"Assignment {assignment.id} created ({assignment.status.value})")
        return assignment

    def get(self, principal: Principal, assignment_id: str) -> Assignment:
        return Repository(self.db, Assignment, principal).get(assignment_id)

    def list_open(self, page: int = 1, limit: int = 20, category: Optional[str] = None) -> List[Assignment]:
        """Public listing, newest first."""
        query = self.db.query(Assignment).filter(Assignment.status == AssignmentStatus.OPEN)
        if category:
            query = query.filter(Assignment.category == category)
        offset, limit = page_window(page, limit)
        return query.order_by(desc(Assignment.created_at), Assignment.id).offset(offset).limit(limit).all()

    def list_mine(self, principal: Principal) -> List[Assignment]:
        return self.db.query(Assignment).filter(
            Assignment.employer_id == principal.user_id
        ).order_by(desc(Assignment.created_at)).all()

    def _move(self, principal: Principal, assignment_id: str, source: AssignmentStatus,
              target: AssignmentStatus) -> Assignment:
        with transaction(self.db, None, self.deadline):
            assignment = Repository(self.db, Assignment, principal).get(assignment_id, for_update=True)
            if assignment.employer_id != principal.user_id:
                raise Unauthorized("Only the employer who posted this assignment can change it")
            current = AssignmentStatus(assignment.status)
            if current == target:
                return assignment
            if current != source:
                raise IllegalTransition(current.value, target.value)
            assignment.status = target
            self.db.flush()
        return assignment

    def publish(self, principal: Principal, assignment_id: str) -> Assignment:
        return self._move(principal, assignment_id, AssignmentStatus.DRAFT, AssignmentStatus.OPEN)

    def close(self, principal: Principal, assignment_id: str) -> Assignment:
        return self._move(principal, assignment_id, AssignmentStatus.OPEN, AssignmentStatus.CLOSED)
