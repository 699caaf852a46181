# Authorization Dependencies for TrustWork
# These provide easy-to-use access control for API endpoints

from fastapi import Depends

from auth.roles import Permission, has_any_permission
from auth.dependencies import get_current_principal
from auth.principal import Principal
from core.errors import Unauthorized


def require_permission(*permissions: Permission):
    """
    Dependency that requires the principal to have one of the given permissions.

    Usage:
        @router.post("/escrow/checkout")
        async def checkout(
            principal: Principal = Depends(require_permission(Permission.FUND_ESCROW))
        ):
            ...

        @router.post("/disputes/admin/{dispute_id}/resolve")
        async def resolve(
            principal: Principal = Depends(require_permission(Permission.RESOLVE_DISPUTES))
        ):
            ...
    """
    async def dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not has_any_permission(principal.role, list(permissions)):
            raise Unauthorized("You don't have permission to perform this action")

        return principal

    return dependency
