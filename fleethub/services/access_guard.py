"""
Access guard for every work-order and user-management operation.

The guard is stateless: each call looks only at the principal, the operation
and the target it is handed, so it can be used from concurrent requests.
"""
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Optional, Union

import structlog

from .permissions import (
    Action,
    PermissionSet,
    Resource,
    Role,
    can_perform,
    default_permissions,
    parse_role,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    id: uuid.UUID
    role: Role
    company_id: Optional[uuid.UUID] = None
    branch_ids: FrozenSet[uuid.UUID] = frozenset()
    vehicle_type_access: FrozenSet[str] = frozenset()
    permissions: PermissionSet = field(default_factory=PermissionSet)

    @property
    def is_system_operator(self) -> bool:
        return self.role == Role.system_operator


def principal_from_user(user) -> Principal:
    """Build the immutable acting principal from a persisted user row."""
    role = parse_role(user.role) or Role.viewer
    return Principal(
        id=user.id,
        role=role,
        company_id=user.company_id,
        branch_ids=frozenset(b.id for b in (user.branches or [])),
        vehicle_type_access=frozenset(user.vehicle_type_access or []),
        permissions=default_permissions(role).with_overrides(user.permissions_override),
    )


class Operation(Enum):
    """
    Externally visible operations and the capability each one needs.
    Value: (key, resource, action, vehicle_bearing, self_guarded)
    """
    create_work_order = ("create_work_order", Resource.maintenance, Action.create, True, False)
    read_work_order = ("read_work_order", Resource.maintenance, Action.read, True, False)
    update_work_order = ("update_work_order", Resource.maintenance, Action.update, True, False)
    transition_status = ("transition_status", Resource.maintenance, Action.update, True, False)
    add_time_entry = ("add_time_entry", Resource.maintenance, Action.update, True, False)
    complete_service = ("complete_service", Resource.maintenance, Action.update, True, False)
    install_part = ("install_part", Resource.maintenance, Action.update, True, False)
    request_approval = ("request_approval", Resource.maintenance, Action.update, True, False)
    resolve_approval = ("resolve_approval", Resource.maintenance, Action.update, True, False)
    delete_work_order = ("delete_work_order", Resource.maintenance, Action.delete, True, False)
    read_user = ("read_user", Resource.users, Action.read, False, False)
    update_user = ("update_user", Resource.users, Action.update, False, False)
    change_user_role = ("change_user_role", Resource.users, Action.update, False, True)
    deactivate_user = ("deactivate_user", Resource.users, Action.update, False, True)
    delete_user = ("delete_user", Resource.users, Action.delete, False, True)

    @property
    def resource(self) -> Resource:
        return self.value[1]

    @property
    def action(self) -> Action:
        return self.value[2]

    @property
    def vehicle_bearing(self) -> bool:
        return self.value[3]

    @property
    def self_guarded(self) -> bool:
        return self.value[4]


@dataclass(frozen=True)
class AccessTarget:
    """Ownership facts of the entity an operation acts on."""
    company_id: Optional[uuid.UUID]
    branch_id: Optional[uuid.UUID] = None
    vehicle_type: Optional[str] = None
    subject_user_id: Optional[uuid.UUID] = None


class DenyReason(str, Enum):
    insufficient_permission = "insufficient-permission"
    cross_tenant = "cross-tenant"
    branch_scope = "branch-scope"
    vehicle_type_scope = "vehicle-type-scope"
    self_modification = "self-modification"


@dataclass(frozen=True)
class Allow:
    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Deny:
    reason: DenyReason

    def __bool__(self) -> bool:
        return False


ALLOW = Allow()

Decision = Union[Allow, Deny]

# Roles that see every branch of their company
_COMPANY_WIDE_ROLES = (Role.system_operator, Role.company_administrator)


def authorize(principal: Principal, operation: Operation, target: AccessTarget) -> Decision:
    decision = _evaluate(principal, operation, target)
    if isinstance(decision, Deny):
        logger.info(
            "access_denied",
            principal_id=str(principal.id),
            role=principal.role.value,
            operation=operation.name,
            reason=decision.reason.value,
        )
    return decision


def _evaluate(principal: Principal, operation: Operation, target: AccessTarget) -> Decision:
    if not can_perform(principal, operation.resource, operation.action):
        return Deny(DenyReason.insufficient_permission)

    if not principal.is_system_operator:
        if target.company_id is None or target.company_id != principal.company_id:
            return Deny(DenyReason.cross_tenant)

    # A target without a branch is outside every branch scope
    if principal.role not in _COMPANY_WIDE_ROLES and target.branch_id not in principal.branch_ids:
        return Deny(DenyReason.branch_scope)

    if operation.vehicle_bearing and not principal.is_system_operator and principal.vehicle_type_access:
        if target.vehicle_type not in principal.vehicle_type_access:
            return Deny(DenyReason.vehicle_type_scope)

    if operation.self_guarded and target.subject_user_id == principal.id:
        return Deny(DenyReason.self_modification)

    return ALLOW
