import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..config import settings
from ..auth.security import get_current_principal, require_permissions
from ..errors import Rejected
from ..services import work_orders as service
from ..services.access_guard import Principal
from ..services.store import EntityStore, get_store
from ..schemas.work_orders import (
    ApprovalCreate,
    ApprovalDecision,
    ApprovalRejection,
    DeleteResult,
    PartInstallation,
    ServiceCompletion,
    TimeEntryCreate,
    WorkOrderCreate,
    WorkOrderListResponse,
    WorkOrderPriority,
    WorkOrderResponse,
    WorkOrderStatus,
    WorkOrderStatusUpdate,
    WorkOrderType,
    WorkOrderUpdate,
)

router = APIRouter(prefix="/work-orders", tags=["work-orders"])


def _respond(result) -> WorkOrderResponse:
    if isinstance(result, Rejected):
        raise result.to_http()
    return WorkOrderResponse.from_entity(result)


@router.get("", response_model=WorkOrderListResponse)
def list_work_orders(
    status: Optional[WorkOrderStatus] = Query(None),
    priority: Optional[WorkOrderPriority] = Query(None),
    type: Optional[WorkOrderType] = Query(None),
    company_id: Optional[uuid.UUID] = Query(None),
    branch_id: Optional[uuid.UUID] = Query(None),
    vehicle_id: Optional[uuid.UUID] = Query(None),
    assigned_to: Optional[uuid.UUID] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(require_permissions("maintenance:read")),
):
    """List work orders visible to the caller"""
    limit = min(limit, settings.work_order_page_limit)
    result = service.list_work_orders(
        store,
        principal,
        status=status.value if status else None,
        priority=priority.value if priority else None,
        type=type.value if type else None,
        company_id=company_id,
        branch_id=branch_id,
        vehicle_id=vehicle_id,
        assigned_to_id=assigned_to,
        date_from=date_from,
        date_to=date_to,
        search=search,
        page=page,
        limit=limit,
    )
    if isinstance(result, Rejected):
        raise result.to_http()
    items, total = result
    return WorkOrderListResponse(
        items=[WorkOrderResponse.from_entity(wo) for wo in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/{work_order_id}", response_model=WorkOrderResponse)
def get_work_order(
    work_order_id: uuid.UUID,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    """Get work order detail"""
    return _respond(service.get_work_order(store, principal, work_order_id))


@router.post("", response_model=WorkOrderResponse, status_code=201)
def create_work_order(
    payload: WorkOrderCreate,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    """Create a new work order"""
    return _respond(service.create_work_order(store, principal, payload))


@router.put("/{work_order_id}", response_model=WorkOrderResponse)
def update_work_order(
    work_order_id: uuid.UUID,
    patch: WorkOrderUpdate,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    """Update a work order; status changes go through /status"""
    return _respond(service.update_work_order(store, principal, work_order_id, patch))


@router.put("/{work_order_id}/status", response_model=WorkOrderResponse)
def update_status(
    work_order_id: uuid.UUID,
    body: WorkOrderStatusUpdate,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    return _respond(service.transition_status(store, principal, work_order_id, body.status, body.notes))


@router.post("/{work_order_id}/time-entries", response_model=WorkOrderResponse)
def add_time_entry(
    work_order_id: uuid.UUID,
    body: TimeEntryCreate,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    return _respond(service.add_time_entry(store, principal, work_order_id, body))


@router.post("/{work_order_id}/services/{service_id}/complete", response_model=WorkOrderResponse)
def complete_service(
    work_order_id: uuid.UUID,
    service_id: uuid.UUID,
    body: ServiceCompletion = ServiceCompletion(),
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    return _respond(service.complete_service(store, principal, work_order_id, service_id, body.notes))


@router.post("/{work_order_id}/parts/{part_id}/install", response_model=WorkOrderResponse)
def install_part(
    work_order_id: uuid.UUID,
    part_id: uuid.UUID,
    body: PartInstallation = PartInstallation(),
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    return _respond(service.install_part(store, principal, work_order_id, part_id, body.notes))


@router.post("/{work_order_id}/approvals", response_model=WorkOrderResponse)
def request_approval(
    work_order_id: uuid.UUID,
    body: ApprovalCreate,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    return _respond(service.request_approval(store, principal, work_order_id, body))


@router.post("/{work_order_id}/approvals/{approval_id}/approve", response_model=WorkOrderResponse)
def approve_request(
    work_order_id: uuid.UUID,
    approval_id: uuid.UUID,
    body: ApprovalDecision = ApprovalDecision(),
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    return _respond(service.approve_request(store, principal, work_order_id, approval_id, body.notes))


@router.post("/{work_order_id}/approvals/{approval_id}/reject", response_model=WorkOrderResponse)
def reject_request(
    work_order_id: uuid.UUID,
    approval_id: uuid.UUID,
    body: ApprovalRejection,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    return _respond(service.reject_request(store, principal, work_order_id, approval_id, body.reason))


@router.delete("/{work_order_id}", response_model=DeleteResult)
def delete_work_order(
    work_order_id: uuid.UUID,
    store: EntityStore = Depends(get_store),
    principal: Principal = Depends(get_current_principal),
):
    """Delete an untouched scheduled work order, otherwise deactivate it"""
    result = service.delete_work_order(store, principal, work_order_id)
    if isinstance(result, Rejected):
        raise result.to_http()
    outcome = "deleted" if isinstance(result, service.Deleted) else "deactivated"
    return DeleteResult(id=result.work_order_id, outcome=outcome)
