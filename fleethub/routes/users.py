import uuid

from fastapi import APIRouter, Depends

from ..auth.security import get_current_principal
from ..errors import Rejected
from ..services import users as service
from ..services.access_guard import Principal
from ..services.store import EntityStore, get_store
from ..schemas.users import UserDeleteResult, UserResponse, UserUpdate

router = APIRouter(prefix="/users", tags=["users"])


def _respond(result) -> UserResponse:
    if isinstance(result, Rejected):
        raise result.to_http()
    return UserResponse.from_user(result, service.effective_permissions(result))


@router.get("/{user_id}", response_model=UserResponse)
def get_user(
    user_id: uuid.UUID,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    return _respond(service.get_user(store, principal, user_id))


@router.patch("/{user_id}", response_model=UserResponse)
def update_user(
    user_id: uuid.UUID,
    patch: UserUpdate,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    """Change role, branches, vehicle types, permission overrides or active flag"""
    return _respond(service.update_user(store, principal, user_id, patch))


@router.delete("/{user_id}", response_model=UserDeleteResult)
def delete_user(
    user_id: uuid.UUID,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    result = service.delete_user(store, principal, user_id)
    if isinstance(result, Rejected):
        raise result.to_http()
    return UserDeleteResult(id=result.user_id, outcome="deleted" if result.hard_deleted else "deactivated")
