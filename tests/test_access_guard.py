"""Unit tests for the access guard.

Each step of the decision is exercised in isolation and in its fixed order.
"""

import uuid

import pytest

from fleethub.services.access_guard import (
    ALLOW,
    AccessTarget,
    Allow,
    Deny,
    DenyReason,
    Operation,
    Principal,
    authorize,
)
from fleethub.services.permissions import Role, default_permissions

COMPANY = uuid.uuid4()
OTHER_COMPANY = uuid.uuid4()
BRANCH_A = uuid.uuid4()
BRANCH_B = uuid.uuid4()


def principal(role: Role, branches=(BRANCH_A,), vehicle_types=(), company=COMPANY, overrides=None, pid=None) -> Principal:
    return Principal(
        id=pid or uuid.uuid4(),
        role=role,
        company_id=None if role == Role.system_operator else company,
        branch_ids=frozenset(branches),
        vehicle_type_access=frozenset(vehicle_types),
        permissions=default_permissions(role).with_overrides(overrides),
    )


def wo_target(company=COMPANY, branch=BRANCH_A, vehicle_type="Car") -> AccessTarget:
    return AccessTarget(company_id=company, branch_id=branch, vehicle_type=vehicle_type)


class TestDecisionValues:
    def test_allow_is_truthy_deny_is_falsy(self):
        assert bool(ALLOW) is True
        assert bool(Deny(DenyReason.cross_tenant)) is False

    def test_operations_are_distinct(self):
        """Every operation keeps its own identity."""
        assert len({op.value for op in Operation}) == len(list(Operation))
        assert Operation.transition_status is not Operation.update_work_order


class TestPermissionStep:
    def test_viewer_cannot_update(self):
        decision = authorize(principal(Role.viewer), Operation.update_work_order, wo_target())
        assert decision == Deny(DenyReason.insufficient_permission)

    def test_permission_checked_before_tenant(self):
        """Insufficient permission wins even across tenants."""
        decision = authorize(principal(Role.viewer), Operation.delete_work_order, wo_target(company=OTHER_COMPANY))
        assert decision.reason == DenyReason.insufficient_permission

    def test_override_opens_operation(self):
        p = principal(Role.mechanic, overrides={"maintenance": {"delete": True}})
        assert isinstance(authorize(p, Operation.delete_work_order, wo_target()), Allow)


class TestTenantStep:
    def test_cross_tenant_denied(self):
        decision = authorize(principal(Role.company_administrator), Operation.read_work_order, wo_target(company=OTHER_COMPANY))
        assert decision == Deny(DenyReason.cross_tenant)

    def test_missing_company_denied(self):
        decision = authorize(principal(Role.company_administrator), Operation.read_work_order, wo_target(company=None))
        assert decision == Deny(DenyReason.cross_tenant)

    def test_system_operator_crosses_tenants(self):
        decision = authorize(principal(Role.system_operator, branches=()), Operation.delete_work_order, wo_target(company=OTHER_COMPANY))
        assert decision is ALLOW


class TestBranchStep:
    def test_branch_manager_other_branch_denied(self):
        decision = authorize(principal(Role.branch_manager), Operation.update_work_order, wo_target(branch=BRANCH_B))
        assert decision == Deny(DenyReason.branch_scope)

    def test_branch_manager_own_branch_allowed(self):
        assert authorize(principal(Role.branch_manager), Operation.update_work_order, wo_target()) is ALLOW

    @pytest.mark.parametrize("role", [Role.branch_manager, Role.mechanic, Role.viewer])
    def test_target_without_branch_denied(self, role):
        decision = authorize(principal(role), Operation.read_work_order, wo_target(branch=None))
        assert decision == Deny(DenyReason.branch_scope)

    def test_user_without_branch_out_of_manager_reach(self):
        target = AccessTarget(company_id=COMPANY, subject_user_id=uuid.uuid4())
        assert authorize(principal(Role.branch_manager), Operation.update_user, target) == Deny(DenyReason.branch_scope)
        assert authorize(principal(Role.company_administrator), Operation.update_user, target) is ALLOW

    def test_principal_without_branches_denied(self):
        p = principal(Role.mechanic, branches=())
        assert authorize(p, Operation.read_work_order, wo_target()) == Deny(DenyReason.branch_scope)

    def test_company_admin_sees_every_branch(self):
        p = principal(Role.company_administrator, branches=())
        assert authorize(p, Operation.update_work_order, wo_target(branch=BRANCH_B)) is ALLOW

    @pytest.mark.parametrize("role", [Role.branch_manager, Role.mechanic, Role.viewer])
    def test_branch_scope_for_all_scoped_roles(self, role):
        decision = authorize(principal(role), Operation.read_work_order, wo_target(branch=BRANCH_B))
        assert decision == Deny(DenyReason.branch_scope)


class TestVehicleTypeStep:
    def test_car_mechanic_denied_on_truck(self):
        p = principal(Role.mechanic, vehicle_types=["Car"])
        decision = authorize(p, Operation.create_work_order, wo_target(vehicle_type="Truck"))
        assert decision == Deny(DenyReason.vehicle_type_scope)

    def test_car_mechanic_allowed_on_car(self):
        p = principal(Role.mechanic, vehicle_types=["Car"])
        assert authorize(p, Operation.create_work_order, wo_target(vehicle_type="Car")) is ALLOW

    def test_empty_list_is_unrestricted(self):
        p = principal(Role.mechanic, vehicle_types=())
        assert authorize(p, Operation.complete_service, wo_target(vehicle_type="Tractor")) is ALLOW

    def test_branch_checked_before_vehicle_type(self):
        p = principal(Role.mechanic, vehicle_types=["Car"])
        decision = authorize(p, Operation.read_work_order, wo_target(branch=BRANCH_B, vehicle_type="Truck"))
        assert decision.reason == DenyReason.branch_scope

    def test_not_applied_to_user_operations(self):
        p = principal(Role.branch_manager, vehicle_types=["Car"])
        target = AccessTarget(company_id=COMPANY, branch_id=BRANCH_A, subject_user_id=uuid.uuid4())
        assert authorize(p, Operation.read_user, target) is ALLOW


class TestSelfModificationStep:
    @pytest.mark.parametrize("operation", [Operation.change_user_role, Operation.deactivate_user, Operation.delete_user])
    def test_self_guarded_operations(self, operation):
        pid = uuid.uuid4()
        p = principal(Role.company_administrator, pid=pid)
        decision = authorize(p, operation, AccessTarget(company_id=COMPANY, subject_user_id=pid))
        assert decision == Deny(DenyReason.self_modification)

    def test_self_read_and_update_allowed(self):
        pid = uuid.uuid4()
        p = principal(Role.company_administrator, pid=pid)
        target = AccessTarget(company_id=COMPANY, subject_user_id=pid)
        assert authorize(p, Operation.read_user, target) is ALLOW
        assert authorize(p, Operation.update_user, target) is ALLOW

    def test_system_operator_still_guarded(self):
        pid = uuid.uuid4()
        p = principal(Role.system_operator, branches=(), pid=pid)
        decision = authorize(p, Operation.delete_user, AccessTarget(company_id=None, subject_user_id=pid))
        assert decision == Deny(DenyReason.self_modification)

    def test_other_user_allowed(self):
        p = principal(Role.company_administrator)
        target = AccessTarget(company_id=COMPANY, subject_user_id=uuid.uuid4())
        assert authorize(p, Operation.deactivate_user, target) is ALLOW
