"""
Permission model: closed role/resource/action vocabularies and the static
capability table each role starts from.
"""
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class Role(str, Enum):
    system_operator = "system_operator"
    company_administrator = "company_administrator"
    branch_manager = "branch_manager"
    mechanic = "mechanic"
    operator = "operator"
    viewer = "viewer"


# Most privileged first
ROLE_ORDER = (
    Role.system_operator,
    Role.company_administrator,
    Role.branch_manager,
    Role.mechanic,
    Role.operator,
    Role.viewer,
)


class Resource(str, Enum):
    companies = "companies"
    branches = "branches"
    vehicles = "vehicles"
    maintenance = "maintenance"
    users = "users"
    reports = "reports"


class Action(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"
    export = "export"


@dataclass(frozen=True)
class ResourcePermissions:
    create: bool = False
    read: bool = False
    update: bool = False
    delete: bool = False
    export: bool = False

    def allows(self, action: Action) -> bool:
        return bool(getattr(self, action.value))

    def merged(self, overrides: Mapping[str, Any]) -> "ResourcePermissions":
        known = {f.name for f in fields(self)}
        changes = {k: bool(v) for k, v in overrides.items() if k in known}
        return replace(self, **changes)

    def as_dict(self) -> Dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _grant(*actions: str) -> ResourcePermissions:
    return ResourcePermissions(**{a: True for a in actions})


CRUD = ("create", "read", "update", "delete")


@dataclass(frozen=True)
class PermissionSet:
    companies: ResourcePermissions = ResourcePermissions()
    branches: ResourcePermissions = ResourcePermissions()
    vehicles: ResourcePermissions = ResourcePermissions()
    maintenance: ResourcePermissions = ResourcePermissions()
    users: ResourcePermissions = ResourcePermissions()
    reports: ResourcePermissions = ResourcePermissions()

    def for_resource(self, resource: Resource) -> ResourcePermissions:
        return getattr(self, resource.value)

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "PermissionSet":
        """
        Overlay stored user overrides.
        Accepts nested {"maintenance": {"delete": true}} and flat
        {"maintenance:delete": true} keys; unknown names are ignored.
        """
        if not overrides:
            return self
        nested: Dict[str, Dict[str, Any]] = {}
        for key, value in overrides.items():
            if isinstance(value, Mapping):
                nested.setdefault(key, {}).update(value)
            elif isinstance(key, str) and ":" in key:
                resource, _, action = key.partition(":")
                nested.setdefault(resource, {})[action] = value
        changes = {}
        for resource in Resource:
            if resource.value in nested:
                changes[resource.value] = self.for_resource(resource).merged(nested[resource.value])
        return replace(self, **changes)

    def as_dict(self) -> Dict[str, Dict[str, bool]]:
        return {r.value: self.for_resource(r).as_dict() for r in Resource}


ROLE_DEFAULTS: Dict[Role, PermissionSet] = {
    Role.system_operator: PermissionSet(
        companies=_grant(*CRUD),
        branches=_grant(*CRUD),
        vehicles=_grant(*CRUD),
        maintenance=_grant(*CRUD),
        users=_grant(*CRUD),
        reports=_grant("read", "export"),
    ),
    Role.company_administrator: PermissionSet(
        companies=_grant("read", "update"),
        branches=_grant(*CRUD),
        vehicles=_grant(*CRUD),
        maintenance=_grant(*CRUD),
        users=_grant(*CRUD),
        reports=_grant("read", "export"),
    ),
    Role.branch_manager: PermissionSet(
        companies=_grant("read"),
        branches=_grant("read", "update"),
        vehicles=_grant("create", "read", "update"),
        maintenance=_grant("create", "read", "update"),
        users=_grant("create", "read", "update"),
        reports=_grant("read", "export"),
    ),
    Role.mechanic: PermissionSet(
        companies=_grant("read"),
        branches=_grant("read"),
        vehicles=_grant("read", "update"),
        maintenance=_grant("create", "read", "update"),
        reports=_grant("read"),
    ),
    Role.operator: PermissionSet(
        companies=_grant("read"),
        branches=_grant("read"),
        vehicles=_grant("read"),
        maintenance=_grant("read"),
        reports=_grant("read"),
    ),
}
ROLE_DEFAULTS[Role.viewer] = ROLE_DEFAULTS[Role.operator]


def parse_role(value: Any) -> Optional[Role]:
    try:
        return Role(value)
    except (ValueError, TypeError):
        return None


def default_permissions(role: Role) -> PermissionSet:
    return ROLE_DEFAULTS.get(role, PermissionSet())


def role_rank(role: Role) -> int:
    return ROLE_ORDER.index(role)


def assignable_roles(role: Role) -> List[Role]:
    """Roles a principal of ``role`` may hand out to other users."""
    if role == Role.system_operator:
        return list(ROLE_ORDER[1:])
    if role == Role.company_administrator:
        return list(ROLE_ORDER[2:])
    if role == Role.branch_manager:
        return [Role.mechanic, Role.operator, Role.viewer]
    return []


def can_perform(principal, resource: Any, action: Any) -> bool:
    """Pure capability check. Never raises; unknown names are denied."""
    if getattr(principal, "role", None) == Role.system_operator:
        return True
    try:
        res = Resource(resource)
        act = Action(action)
    except (ValueError, TypeError):
        return False
    perms = getattr(principal, "permissions", None)
    if not isinstance(perms, PermissionSet):
        return False
    return perms.for_resource(res).allows(act)
