# Auth module for TrustWork
# Provides principal resolution and role-based access control

from auth.roles import (
    UserType,
    Permission,
    ROLE_PERMISSIONS,
    get_permissions_for_role,
    has_permission,
    has_any_permission,
)

from auth.principal import Principal, resolve_principal

from auth.decorators import (
    require_permission,
)

__all__ = [
    # Roles
    "UserType",
    "Permission",
    "ROLE_PERMISSIONS",
    "get_permissions_for_role",
    "has_permission",
    "has_any_permission",

    # Principal
    "Principal",
    "resolve_principal",

    # Dependencies
    "require_permission",
]
