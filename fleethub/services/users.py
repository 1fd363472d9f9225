"""
User management operations that share the work-order access guard.

A principal never changes their own role, deactivates or deletes themselves,
and hands out only the roles below their own.
"""
import uuid
from dataclasses import dataclass
from typing import List, Optional, Union

import structlog

from ..errors import PersistenceFailure, Rejected, denied, invalid, not_found
from ..models.models import User
from ..schemas.users import UserUpdate
from .access_guard import AccessTarget, Deny, Operation, Principal, authorize
from .audit import compute_diff, record_audit
from .permissions import Role, assignable_roles, default_permissions, parse_role, role_rank
from .store import EntityStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class UserRemoved:
    user_id: uuid.UUID
    hard_deleted: bool


UserResult = Union[User, Rejected]


def effective_permissions(user: User) -> dict:
    role = parse_role(user.role) or Role.viewer
    return default_permissions(role).with_overrides(user.permissions_override).as_dict()


def _target_for(principal: Principal, user: User) -> AccessTarget:
    # Branch-scoped principals reach a user through any branch they share
    branch_ids = sorted((b.id for b in user.branches), key=str)
    shared = [b for b in branch_ids if b in principal.branch_ids]
    branch_id = shared[0] if shared else (branch_ids[0] if branch_ids else None)
    return AccessTarget(company_id=user.company_id, branch_id=branch_id, subject_user_id=user.id)


def _guard(principal: Principal, operation: Operation, target: AccessTarget) -> Optional[Rejected]:
    decision = authorize(principal, operation, target)
    if isinstance(decision, Deny):
        return denied(decision.reason.value, operation=operation.name)
    return None


def _outranks(principal: Principal, user: User) -> bool:
    """Whether ``principal`` sits above the subject's current role."""
    if principal.is_system_operator:
        return True
    role = parse_role(user.role)
    if role is None:
        return True
    if user.id == principal.id:
        return True
    return role_rank(role) > role_rank(principal.role)


def _snapshot(user: User) -> dict:
    return {
        "role": user.role,
        "branch_ids": sorted(str(b.id) for b in user.branches),
        "vehicle_type_access": sorted(user.vehicle_type_access or []),
        "permissions_override": user.permissions_override,
        "is_active": bool(user.is_active),
        "first_name": user.first_name,
        "last_name": user.last_name,
    }


def _load(store: EntityStore, user_id) -> UserResult:
    user = store.load_user(user_id)
    if user is None:
        return not_found("user", user_id)
    return user


def get_user(store: EntityStore, principal: Principal, user_id) -> UserResult:
    user = _load(store, user_id)
    if isinstance(user, Rejected):
        return user
    rejection = _guard(principal, Operation.read_user, _target_for(principal, user))
    if rejection is not None:
        return rejection
    return user


def _operations_for(user: User, patch: UserUpdate, provided: dict) -> List[Operation]:
    ops = [Operation.update_user]
    if "role" in provided and patch.role is not None and patch.role.value != user.role:
        ops.append(Operation.change_user_role)
    if "is_active" in provided and patch.is_active is False and user.is_active:
        ops.append(Operation.deactivate_user)
    return ops


def update_user(store: EntityStore, principal: Principal, user_id, patch: UserUpdate) -> UserResult:
    user = _load(store, user_id)
    if isinstance(user, Rejected):
        return user
    provided = patch.model_dump(exclude_unset=True)
    target = _target_for(principal, user)

    for operation in _operations_for(user, patch, provided):
        rejection = _guard(principal, operation, target)
        if rejection is not None:
            return rejection
    if not _outranks(principal, user):
        return denied("role-ceiling", operation=Operation.update_user.name)

    if Operation.change_user_role in _operations_for(user, patch, provided):
        if patch.role not in assignable_roles(principal.role):
            return denied("role-not-assignable", role=patch.role.value)
    if "permissions_override" in provided and principal.role not in (Role.system_operator, Role.company_administrator):
        return denied("insufficient-permission", operation="override_permissions")

    branches = None
    if patch.branch_ids is not None:
        branches = []
        for branch_id in patch.branch_ids:
            branch = store.load_branch(branch_id)
            if branch is None:
                return not_found("branch", branch_id)
            if branch.company_id != user.company_id:
                return invalid("branch_ids", "branch-outside-tenant", branch_id=str(branch_id))
            if principal.role not in (Role.system_operator, Role.company_administrator) and branch.id not in principal.branch_ids:
                return denied("branch-scope", branch_id=str(branch_id))
            branches.append(branch)

    before = _snapshot(user)
    if patch.first_name is not None:
        user.first_name = patch.first_name
    if patch.last_name is not None:
        user.last_name = patch.last_name
    if "role" in provided and patch.role is not None:
        user.role = patch.role.value
    if branches is not None:
        user.branches = branches
    if "vehicle_type_access" in provided:
        user.vehicle_type_access = patch.vehicle_type_access or []
    if "permissions_override" in provided:
        user.permissions_override = patch.permissions_override
    if "is_active" in provided and patch.is_active is not None:
        user.is_active = patch.is_active

    record_audit(
        store.db,
        entity_type="user",
        entity_id=user.id,
        action="UPDATE",
        actor_id=principal.id,
        actor_role=principal.role.value,
        company_id=user.company_id,
        source="api",
        changes_json=compute_diff(before, _snapshot(user)),
    )
    try:
        store.save(user, "user")
    except PersistenceFailure as e:
        return e.as_rejection()
    logger.info("user_updated", user_id=str(user.id), actor_id=str(principal.id), fields=sorted(provided))
    return user


def delete_user(store: EntityStore, principal: Principal, user_id) -> Union[UserRemoved, Rejected]:
    """Hard delete a user nothing refers to; otherwise deactivate."""
    user = _load(store, user_id)
    if isinstance(user, Rejected):
        return user
    rejection = _guard(principal, Operation.delete_user, _target_for(principal, user))
    if rejection is not None:
        return rejection
    if not _outranks(principal, user):
        return denied("role-ceiling", operation=Operation.delete_user.name)

    uid = user.id
    hard = not store.user_has_activity(uid)
    record_audit(
        store.db,
        entity_type="user",
        entity_id=uid,
        action="DELETE" if hard else "DEACTIVATE",
        actor_id=principal.id,
        actor_role=principal.role.value,
        company_id=user.company_id,
        source="api",
        changes_json=_snapshot(user),
    )
    try:
        if hard:
            store.delete(user, "user")
        else:
            user.is_active = False
            store.save(user, "user")
    except PersistenceFailure as e:
        return e.as_rejection()
    logger.info("user_removed", user_id=str(uid), hard_deleted=hard, actor_id=str(principal.id))
    return UserRemoved(user_id=uid, hard_deleted=hard)
