# Principal resolution for TrustWork
# Maps an authenticated user id to {user_id, role, verified}

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from auth.roles import UserType, Permission, has_permission
from core.errors import Unauthenticated, Unauthorized
from database.models import Profile


@dataclass(frozen=True)
class Principal:
    """The authenticated actor performing an operation."""
    user_id: str
    role: UserType
    verified: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == UserType.ADMIN

    def require_role(self, *roles: UserType) -> "Principal":
        if self.role not in roles:
            allowed = ", ".join(r.value for r in roles)
            raise Unauthorized(f"This operation requires role: {allowed}")
        return self

    def require_permission(self, permission: Permission) -> "Principal":
        if not has_permission(self.role, permission):
            raise Unauthorized("You don't have permission to perform this action")
        return self

    def require_self_or_admin(self, owner_id: Optional[str]) -> "Principal":
        if not self.is_admin and owner_id != self.user_id:
            raise Unauthorized("Only the owner can perform this action")
        return self


def resolve_principal(db: Session, user_id: Optional[str]) -> Principal:
    """Build a Principal from the profile row.

    Role is read from the profile on every call so that role changes take
    effect on the next privileged write, whatever the token says.
    """
    if not user_id:
        raise Unauthenticated("No active session")

    profile = db.get(Profile, user_id)
    if profile is None:
        raise Unauthenticated("User not found")

    role = UserType(getattr(profile.role, "value", profile.role))
    return Principal(user_id=profile.id, role=role, verified=bool(profile.verified))
