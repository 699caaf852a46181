# Persistence gateway for TrustWork
# Typed CRUD filtered by row access, plus the transaction boundary every
# command handler runs inside.

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar

from sqlalchemy import asc, desc
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from auth.principal import Principal
from core.deadline import Deadline
from core.errors import Conflict, NotFound, Unauthorized, ValidationFailed
from services.access import access_for

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

MAX_PAGE_SIZE = 100

_LOCK_MARKERS = ("could not obtain lock", "database is locked", "deadlock detected", "lock timeout")


def page_window(page: int, limit: int) -> Tuple[int, int]:
    """Offset and page size for 1-based paging, capped at MAX_PAGE_SIZE."""
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    return (max(page, 1) - 1) * limit, limit


@contextmanager
def transaction(db: Session, bus=None, deadline: Optional[Deadline] = None):
    """
    Run a unit of work and commit it.

    Outbox rows written through ``bus.emit`` commit together with the change
    and are dispatched once the commit succeeds. Any failure, including an
    expired deadline, rolls back both.

    Usage:
        with transaction(db, bus, deadline):
            ...
    """
    deadline = deadline or Deadline.none()
    try:
        deadline.check("transaction")
        yield db
        deadline.check("commit")
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.info(f"Optimistic version clash: {e}")
        raise Conflict("The record was changed by someone else; reload and retry")
    except IntegrityError as e:
        db.rollback()
        logger.info(f"Integrity error: {e.orig}")
        raise Conflict("The change conflicts with an existing record")
    except OperationalError as e:
        db.rollback()
        if any(marker in str(e.orig).lower() for marker in _LOCK_MARKERS):
            raise Conflict("The record is locked by another operation; retry")
        raise
    except Exception:
        db.rollback()
        raise

    if bus is not None:
        bus.dispatch_pending()


class Repository(Generic[ModelT]):
    """Typed access to one table, scoped to what the principal may see."""

    def __init__(self, db: Session, model: Type[ModelT], principal: Optional[Principal] = None):
        self.db = db
        self.model = model
        self.principal = principal
        self.access = access_for(model)

    def query(self):
        q = self.db.query(self.model)
        if self.principal is not None:
            q = q.filter(self.access.clause(self.principal))
        return q

    def _filtered(self, filters: Optional[Dict[str, Any]]):
        q = self.query()
        for key, value in (filters or {}).items():
            if value is None:
                continue
            column = getattr(self.model, key, None)
            if column is None:
                raise ValidationFailed({key: "Unknown filter"})
            if isinstance(value, (list, tuple, set, frozenset)):
                q = q.filter(column.in_(list(value)))
            else:
                q = q.filter(column == value)
        return q

    def get(self, id: Any, for_update: bool = False) -> ModelT:
        """Fetch one row; rows the principal may not see are reported as missing."""
        q = self.query().filter(self.model.id == id)
        if for_update:
            q = q.with_for_update()
        row = q.first()
        if row is None:
            raise NotFound(f"{self.model.__name__} not found")
        return row

    def find(self, id: Any) -> Optional[ModelT]:
        return self.query().filter(self.model.id == id).first()

    def list(
        self,
        filters: Optional[Dict[str, Any]] = None,
        page: int = 1,
        limit: int = 20,
        sort: str = "created_at",
        descending: bool = True,
    ) -> List[ModelT]:
        column = getattr(self.model, sort, None)
        if column is None:
            raise ValidationFailed({"sort": f"Cannot sort by {sort}"})
        offset, limit = page_window(page, limit)
        order = desc(column) if descending else asc(column)
        return self._filtered(filters).order_by(order, self.model.id).offset(offset).limit(limit).all()

    def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        return self._filtered(filters).count()

    def insert(self, **values) -> ModelT:
        row = self.model(**values)
        if self.principal is not None and not self.access.allows(self.principal, row):
            raise Unauthorized(f"Cannot create this {self.model.__name__}")
        self.db.add(row)
        self.db.flush()
        return row

    def update(self, row: ModelT, expected_version: Optional[int] = None, **values) -> ModelT:
        """Apply changes to a loaded row, checking the caller's version first."""
        if expected_version is not None and row.version != expected_version:
            raise Conflict(
                f"{self.model.__name__} is at version {row.version}, expected {expected_version}"
            )
        for key, value in values.items():
            setattr(row, key, value)
        self.db.flush()
        return row

    def delete(self, row: ModelT) -> None:
        self.db.delete(row)
        self.db.flush()
