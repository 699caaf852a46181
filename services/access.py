# Row-access predicates for TrustWork
# One predicate per table, usable both as a SQL clause (queries) and as a
# Python check (realtime filtering, writes on rows already loaded).

from typing import Any, Optional, Sequence, Tuple

from sqlalchemy import false, or_, true

from auth.principal import Principal
from database.models import (
    Application, Assignment, AssignmentStatus, AuditLog, BankAccount, Dispute,
    EscrowPayment, Gig, Milestone, Notification, OutboxEvent, Profile,
)


def _value(row: Any, column: str) -> Any:
    if isinstance(row, dict):
        return row.get(column)
    return getattr(row, column, None)


class RowAccess:
    """
    Who may read a row of one table.

    Args:
        model: Mapped class
        party_columns: Columns holding the ids of principals that own or take part in the row
        public: Optional (column, value) pair marking rows visible to every principal
        authenticated_read: Every authenticated principal may read every row
    """

    def __init__(
        self,
        model,
        party_columns: Sequence[str] = (),
        public: Optional[Tuple[str, Any]] = None,
        authenticated_read: bool = False,
    ):
        self.model = model
        self.party_columns = tuple(party_columns)
        self.public = public
        self.authenticated_read = authenticated_read

    @property
    def table(self) -> str:
        return self.model.__tablename__

    def clause(self, principal: Principal):
        if principal.is_admin or self.authenticated_read:
            return true()
        conditions = [getattr(self.model, c) == principal.user_id for c in self.party_columns]
        if self.public is not None:
            column, value = self.public
            conditions.append(getattr(self.model, column) == value)
        if not conditions:
            return false()
        return or_(*conditions)

    def allows(self, principal: Principal, row: Any) -> bool:
        if row is None:
            return False
        if principal.is_admin or self.authenticated_read:
            return True
        if any(_value(row, c) == principal.user_id for c in self.party_columns):
            return True
        if self.public is not None:
            column, value = self.public
            return _value(row, column) == value
        return False

    def is_party(self, principal: Principal, row: Any) -> bool:
        """Participation only, ignoring public visibility."""
        return any(_value(row, c) == principal.user_id for c in self.party_columns)


ROW_ACCESS = {
    access.model: access
    for access in (
        RowAccess(Profile, authenticated_read=True),
        RowAccess(BankAccount, ("owner_id",)),
        RowAccess(Assignment, ("employer_id",), public=("status", AssignmentStatus.OPEN)),
        RowAccess(Application, ("freelancer_id", "employer_id")),
        RowAccess(Gig, ("client_id", "freelancer_id")),
        RowAccess(Milestone, ("client_id", "freelancer_id")),
        RowAccess(EscrowPayment, ("payer_id", "recipient_id")),
        RowAccess(Dispute, ("initiated_by", "respondent_id")),
        RowAccess(Notification, ("user_id",)),
        RowAccess(OutboxEvent),
        RowAccess(AuditLog),
    )
}

ROW_ACCESS_BY_TABLE = {access.table: access for access in ROW_ACCESS.values()}


def access_for(model_or_table) -> RowAccess:
    if isinstance(model_or_table, str):
        return ROW_ACCESS_BY_TABLE[model_or_table]
    return ROW_ACCESS[model_or_table]
