# Role-Based Access Control for TrustWork
# This module defines user roles and permissions for the marketplace

from enum import Enum
from typing import List, Set


class UserType(str, Enum):
    """User types in the marketplace."""
    FREELANCER = "freelancer"
    EMPLOYER = "employer"
    ADMIN = "admin"


class Permission(str, Enum):
    """Fine-grained permissions for the platform."""

    # Employer permissions
    POST_ASSIGNMENTS = "post_assignments"
    REVIEW_APPLICATIONS = "review_applications"
    DEFINE_MILESTONES = "define_milestones"
    REVIEW_MILESTONES = "review_milestones"
    FUND_ESCROW = "fund_escrow"
    RELEASE_ESCROW = "release_escrow"

    # Freelancer permissions
    SUBMIT_APPLICATIONS = "submit_applications"
    WORK_MILESTONES = "work_milestones"
    MANAGE_BANK_ACCOUNT = "manage_bank_account"

    # Common permissions
    VIEW_NOTIFICATIONS = "view_notifications"
    VIEW_OWN_PAYMENTS = "view_own_payments"
    RAISE_DISPUTES = "raise_disputes"

    # Admin permissions
    RESOLVE_DISPUTES = "resolve_disputes"
    VERIFY_BANK_ACCOUNTS = "verify_bank_accounts"
    MANAGE_PAYOUTS = "manage_payouts"


# Role to permissions mapping
ROLE_PERMISSIONS: dict[UserType, Set[Permission]] = {
    UserType.EMPLOYER: {
        Permission.POST_ASSIGNMENTS,
        Permission.REVIEW_APPLICATIONS,
        Permission.DEFINE_MILESTONES,
        Permission.REVIEW_MILESTONES,
        Permission.FUND_ESCROW,
        Permission.RELEASE_ESCROW,
        # Common
        Permission.VIEW_NOTIFICATIONS,
        Permission.VIEW_OWN_PAYMENTS,
        Permission.RAISE_DISPUTES,
    },

    UserType.FREELANCER: {
        Permission.SUBMIT_APPLICATIONS,
        Permission.WORK_MILESTONES,
        Permission.MANAGE_BANK_ACCOUNT,
        # Common
        Permission.VIEW_NOTIFICATIONS,
        Permission.VIEW_OWN_PAYMENTS,
        Permission.RAISE_DISPUTES,
    },

    UserType.ADMIN: {
        # Admin has ALL permissions
        *Permission.__members__.values()
    },
}


def get_permissions_for_role(user_type: UserType) -> Set[Permission]:
    """Get all permissions for a given user type."""
    return ROLE_PERMISSIONS.get(user_type, set())


def has_permission(user_type: UserType, permission: Permission) -> bool:
    """Check if a user type has a specific permission."""
    return permission in get_permissions_for_role(user_type)


def has_any_permission(user_type: UserType, permissions: List[Permission]) -> bool:
    """Check if a user type has any of the given permissions."""
    user_permissions = get_permissions_for_role(user_type)
    return any(p in user_permissions for p in permissions)
