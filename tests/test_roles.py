"""Role to permission table."""
import pytest

from auth.roles import Permission, UserType, has_any_permission, has_permission

ADMIN_ONLY = [Permission.RESOLVE_DISPUTES, Permission.VERIFY_BANK_ACCOUNTS, Permission.MANAGE_PAYOUTS]


@pytest.mark.parametrize("permission", ADMIN_ONLY)
def test_admin_only_permissions(permission):
    assert has_permission(UserType.ADMIN, permission)
    assert not has_permission(UserType.EMPLOYER, permission)
    assert not has_permission(UserType.FREELANCER, permission)


@pytest.mark.parametrize("role", list(UserType))
def test_every_role_can_act_on_milestones(role):
    assert has_any_permission(role, [Permission.WORK_MILESTONES, Permission.REVIEW_MILESTONES])


def test_milestone_work_and_review_are_split():
    assert has_permission(UserType.FREELANCER, Permission.WORK_MILESTONES)
    assert not has_permission(UserType.FREELANCER, Permission.REVIEW_MILESTONES)
    assert has_permission(UserType.EMPLOYER, Permission.REVIEW_MILESTONES)
    assert not has_permission(UserType.EMPLOYER, Permission.WORK_MILESTONES)
