import uuid
from datetime import datetime
from typing import Optional, List, Dict

from pydantic import BaseModel, field_validator

from ..services.permissions import Role


class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Optional[Role] = None
    branch_ids: Optional[List[uuid.UUID]] = None
    vehicle_type_access: Optional[List[str]] = None
    permissions_override: Optional[Dict[str, Dict[str, bool]]] = None
    is_active: Optional[bool] = None

    @field_validator("vehicle_type_access")
    @classmethod
    def _strip_types(cls, v):
        if v is None:
            return v
        return sorted({t.strip() for t in v if t and t.strip()})


class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str
    company_id: Optional[uuid.UUID] = None
    branch_ids: List[uuid.UUID] = []
    vehicle_type_access: List[str] = []
    permissions: Dict[str, Dict[str, bool]] = {}
    is_active: bool
    created_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user, permissions: Dict[str, Dict[str, bool]]) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            company_id=user.company_id,
            branch_ids=[b.id for b in user.branches],
            vehicle_type_access=list(user.vehicle_type_access or []),
            permissions=permissions,
            is_active=bool(user.is_active),
            created_at=user.created_at,
        )


class UserDeleteResult(BaseModel):
    id: uuid.UUID
    outcome: str  # deleted|deactivated
