"""
Work-order operations as seen from the outside.

Every operation loads the order and its owning vehicle, asks the access guard,
hands the order to the lifecycle engine, and persists with one commit. A
``Rejected`` value is returned for expected failures and nothing is written.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

import structlog
from sqlalchemy import or_

from ..errors import PersistenceFailure, Rejected, denied, invalid, invalid_transition, not_found
from ..models.models import Vehicle, WorkOrder, utcnow
from ..schemas.work_orders import (
    ApprovalCreate,
    CostAdjustments,
    PartLineCreate,
    ServiceLineCreate,
    TimeEntryCreate,
    WorkOrderCreate,
    WorkOrderStatus,
    WorkOrderUpdate,
)
from . import lifecycle
from .access_guard import AccessTarget, Deny, Operation, Principal, authorize
from .audit import compute_diff, record_audit
from .permissions import Action, Resource, Role, can_perform
from .store import EntityStore

logger = structlog.get_logger(__name__)

_NUMBER_ATTEMPTS = 5

# Patch fields that cannot be cleared
_REQUIRED_FIELDS = {"type", "priority", "scheduled_date", "odometer_reading", "description", "estimated_duration"}
_SCALAR_FIELDS = (
    "type", "priority", "scheduled_date", "estimated_duration", "odometer_reading", "assigned_to_id",
    "title", "description", "symptoms", "diagnosis", "work_performed", "recommendations", "notes",
)


@dataclass(frozen=True)
class Deleted:
    work_order_id: uuid.UUID


@dataclass(frozen=True)
class Deactivated:
    work_order_id: uuid.UUID


WorkOrderResult = Union[WorkOrder, Rejected]


# =====================
# Helpers
# =====================

def _guard(principal: Principal, operation: Operation, target: AccessTarget) -> Optional[Rejected]:
    decision = authorize(principal, operation, target)
    if isinstance(decision, Deny):
        return denied(decision.reason.value, operation=operation.name)
    return None


def _target_for(store: EntityStore, wo: WorkOrder) -> AccessTarget:
    vehicle = store.load_vehicle(wo.vehicle_id)
    return AccessTarget(
        company_id=wo.company_id,
        branch_id=wo.branch_id,
        vehicle_type=vehicle.vehicle_type if vehicle else None,
    )


def _load_active(store: EntityStore, work_order_id) -> WorkOrderResult:
    wo = store.load_work_order(work_order_id)
    if wo is None or not wo.is_active:
        return not_found("work_order", work_order_id)
    return wo


def _snapshot(wo: WorkOrder) -> dict:
    return {
        "status": wo.status,
        "priority": wo.priority,
        "assigned_to_id": str(wo.assigned_to_id) if wo.assigned_to_id else None,
        "costs": dict(wo.costs or {}),
        "services": len(wo.services),
        "services_completed": sum(1 for s in wo.services if s.is_completed),
        "parts": len(wo.parts),
        "parts_installed": sum(1 for p in wo.parts if p.is_installed),
        "approvals_pending": sum(1 for a in wo.approvals if a.status == "pending"),
        "time_entries": len(wo.time_entries),
    }


def _audit(store: EntityStore, principal: Principal, wo: WorkOrder, action: str, before: Optional[dict] = None, context: Optional[dict] = None):
    after = _snapshot(wo)
    record_audit(
        store.db,
        entity_type="work_order",
        entity_id=wo.id,
        action=action,
        actor_id=principal.id,
        actor_role=principal.role.value,
        company_id=wo.company_id,
        source="api",
        changes_json=compute_diff(before, after) if before is not None else after,
        context={"work_order_number": wo.work_order_number, **(context or {})},
    )


def _persist(store: EntityStore, wo: WorkOrder) -> WorkOrderResult:
    try:
        return store.save_work_order(wo)
    except PersistenceFailure as e:
        return e.as_rejection()


def _mutate(
    store: EntityStore,
    principal: Principal,
    work_order_id,
    operation: Operation,
    step: Callable[[WorkOrder], WorkOrderResult],
    audit_action: str,
    context: Optional[dict] = None,
) -> WorkOrderResult:
    wo = _load_active(store, work_order_id)
    if isinstance(wo, Rejected):
        return wo
    rejection = _guard(principal, operation, _target_for(store, wo))
    if rejection is not None:
        return rejection

    before = _snapshot(wo)
    result = step(wo)
    if isinstance(result, Rejected):
        # Discard anything the step touched before refusing
        store.rollback()
        return result

    _audit(store, principal, wo, audit_action, before=before, context=context)
    saved = _persist(store, wo)
    if not isinstance(saved, Rejected):
        logger.info(
            "work_order_updated",
            action=audit_action,
            work_order_id=str(wo.id),
            status=saved.status,
            actor_id=str(principal.id),
        )
    return saved


def _check_assignee(store: EntityStore, company_id, user_id, field_name: str) -> Optional[Rejected]:
    if user_id is None:
        return None
    user = store.load_user(user_id)
    if user is None or not user.is_active:
        return not_found("user", user_id)
    if user.company_id != company_id:
        return invalid(field_name, "user-outside-tenant")
    return None


def _service_fields(line: ServiceLineCreate) -> dict:
    labor_cost = line.labor_cost
    if labor_cost is None:
        labor_cost = round(line.labor_hours * line.labor_rate, 2)
    return {
        "category": line.category.value,
        "subcategory": line.subcategory,
        "description": line.description,
        "labor_hours": line.labor_hours,
        "labor_rate": line.labor_rate,
        "labor_cost": labor_cost,
        "notes": line.notes,
    }


def _part_fields(line: PartLineCreate) -> dict:
    return {
        "part_number": line.part_number,
        "name": line.name,
        "brand": line.brand,
        "quantity": line.quantity,
        "unit_price": line.unit_price,
        "supplier": line.supplier,
        "notes": line.notes,
    }


def _apply_cost_adjustments(wo: WorkOrder, adjustments: Optional[CostAdjustments]) -> None:
    costs = dict(wo.costs or {})
    if adjustments is not None:
        for key, value in adjustments.model_dump(exclude_none=True).items():
            costs[key] = float(value)
    wo.costs = costs
    wo.recompute_costs()


def _propose_number(store: EntityStore, now: datetime) -> str:
    number = lifecycle.generate_work_order_number(now)
    for _ in range(_NUMBER_ATTEMPTS - 1):
        if not store.work_order_number_taken(number):
            break
        number = lifecycle.generate_work_order_number(now)
    return number


# =====================
# Operations
# =====================

def create_work_order(store: EntityStore, principal: Principal, payload: WorkOrderCreate, now: Optional[datetime] = None) -> WorkOrderResult:
    vehicle = store.load_vehicle(payload.vehicle_id)
    if vehicle is None or not vehicle.is_active:
        return not_found("vehicle", payload.vehicle_id)
    branch_id = payload.branch_id or vehicle.branch_id
    branch = store.load_branch(branch_id)
    if branch is None or not branch.is_active:
        return not_found("branch", branch_id)

    target = AccessTarget(company_id=vehicle.company_id, branch_id=branch.id, vehicle_type=vehicle.vehicle_type)
    rejection = _guard(principal, Operation.create_work_order, target)
    if rejection is not None:
        return rejection

    if branch.company_id != vehicle.company_id:
        return invalid("branch_id", "branch-company-mismatch")
    rejection = _check_assignee(store, vehicle.company_id, payload.assigned_to_id, "assigned_to_id")
    if rejection is not None:
        return rejection

    now = now or utcnow()
    odometer = payload.odometer_reading if payload.odometer_reading is not None else (vehicle.odometer or 0)
    wo = WorkOrder(
        work_order_number=_propose_number(store, now),
        company_id=vehicle.company_id,
        branch_id=branch.id,
        vehicle_id=vehicle.id,
        assigned_to_id=payload.assigned_to_id,
        type=payload.type.value,
        priority=payload.priority.value,
        status=WorkOrderStatus.scheduled.value,
        scheduled_date=payload.scheduled_date,
        estimated_duration=payload.estimated_duration,
        odometer_reading=odometer,
        title=payload.title,
        description=payload.description,
        symptoms=payload.symptoms,
        notes=payload.notes,
        created_by=principal.id,
        last_modified_by=principal.id,
        created_at=now,
    )
    for line in payload.services:
        wo.add_service(**_service_fields(line))
    for line in payload.parts:
        wo.add_part(**_part_fields(line))
    _apply_cost_adjustments(wo, payload.costs)

    store.add(wo)
    _audit(store, principal, wo, "CREATE")
    saved = _persist(store, wo)
    if not isinstance(saved, Rejected):
        logger.info(
            "work_order_created",
            work_order_id=str(saved.id),
            work_order_number=saved.work_order_number,
            vehicle_id=str(vehicle.id),
            actor_id=str(principal.id),
        )
    return saved


def get_work_order(store: EntityStore, principal: Principal, work_order_id) -> WorkOrderResult:
    wo = _load_active(store, work_order_id)
    if isinstance(wo, Rejected):
        return wo
    rejection = _guard(principal, Operation.read_work_order, _target_for(store, wo))
    if rejection is not None:
        return rejection
    return wo


def list_work_orders(
    store: EntityStore,
    principal: Principal,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    type: Optional[str] = None,
    company_id: Optional[uuid.UUID] = None,
    branch_id: Optional[uuid.UUID] = None,
    vehicle_id: Optional[uuid.UUID] = None,
    assigned_to_id: Optional[uuid.UUID] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    limit: int = 50,
) -> Union[Tuple[List[WorkOrder], int], Rejected]:
    """Active work orders visible to ``principal``, newest scheduled first."""
    if not can_perform(principal, Resource.maintenance, Action.read):
        return denied("insufficient-permission", operation=Operation.read_work_order.name)

    query = store.db.query(WorkOrder).filter(WorkOrder.is_active == True)  # noqa: E712

    if principal.is_system_operator:
        if company_id:
            query = query.filter(WorkOrder.company_id == company_id)
    else:
        query = query.filter(WorkOrder.company_id == principal.company_id)
        if principal.role != Role.company_administrator:
            if not principal.branch_ids:
                return [], 0
            query = query.filter(WorkOrder.branch_id.in_(list(principal.branch_ids)))
        if principal.vehicle_type_access:
            query = query.join(Vehicle, Vehicle.id == WorkOrder.vehicle_id).filter(
                Vehicle.vehicle_type.in_(list(principal.vehicle_type_access))
            )

    if status:
        query = query.filter(WorkOrder.status == status)
    if priority:
        query = query.filter(WorkOrder.priority == priority)
    if type:
        query = query.filter(WorkOrder.type == type)
    if branch_id:
        query = query.filter(WorkOrder.branch_id == branch_id)
    if vehicle_id:
        query = query.filter(WorkOrder.vehicle_id == vehicle_id)
    if assigned_to_id:
        query = query.filter(WorkOrder.assigned_to_id == assigned_to_id)
    if date_from:
        query = query.filter(WorkOrder.scheduled_date >= date_from)
    if date_to:
        query = query.filter(WorkOrder.scheduled_date <= date_to)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            WorkOrder.work_order_number.ilike(pattern),
            WorkOrder.title.ilike(pattern),
            WorkOrder.description.ilike(pattern),
        ))

    total = query.count()
    page = max(page, 1)
    items = (
        query.order_by(WorkOrder.scheduled_date.desc(), WorkOrder.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return items, total


def update_work_order(store: EntityStore, principal: Principal, work_order_id, patch: WorkOrderUpdate) -> WorkOrderResult:
    def step(wo: WorkOrder) -> WorkOrderResult:
        provided = patch.model_dump(exclude_unset=True)
        status = lifecycle.parse_status(wo.status)
        if status in lifecycle.TERMINAL_STATES and (patch.is_structural() or patch.costs is not None):
            return invalid_transition(wo.status, wo.status, "work-order-closed")
        for name in _REQUIRED_FIELDS:
            if name in provided and provided[name] is None:
                return invalid(name, "required")
        if "assigned_to_id" in provided:
            rejection = _check_assignee(store, wo.company_id, patch.assigned_to_id, "assigned_to_id")
            if rejection is not None:
                return rejection

        # Validate removals before touching anything
        services_to_remove = []
        for sid in patch.remove_service_ids:
            service = wo.find_service(sid)
            if service is None:
                return not_found("service", sid)
            if service.is_completed:
                return invalid("remove_service_ids", "service-completed", service_id=str(sid))
            services_to_remove.append(service)
        parts_to_remove = []
        for pid in patch.remove_part_ids:
            part = wo.find_part(pid)
            if part is None:
                return not_found("part", pid)
            if part.is_installed:
                return invalid("remove_part_ids", "part-installed", part_id=str(pid))
            parts_to_remove.append(part)

        for name in _SCALAR_FIELDS:
            if name in provided:
                value = getattr(patch, name)
                setattr(wo, name, getattr(value, "value", value))
        for service in services_to_remove:
            wo.services.remove(service)
        for part in parts_to_remove:
            wo.parts.remove(part)
        for line in patch.add_services:
            wo.add_service(**_service_fields(line))
        for line in patch.add_parts:
            wo.add_part(**_part_fields(line))
        _apply_cost_adjustments(wo, patch.costs)

        wo.last_modified_by = principal.id
        wo.updated_at = utcnow()
        return wo

    return _mutate(store, principal, work_order_id, Operation.update_work_order, step, "UPDATE")


def transition_status(store: EntityStore, principal: Principal, work_order_id, target, notes: Optional[str] = None) -> WorkOrderResult:
    return _mutate(
        store, principal, work_order_id, Operation.transition_status,
        lambda wo: lifecycle.transition(wo, target, principal.id, notes),
        "TRANSITION",
        context={"requested_status": getattr(target, "value", target)},
    )


def add_time_entry(store: EntityStore, principal: Principal, work_order_id, payload: TimeEntryCreate) -> WorkOrderResult:
    def step(wo: WorkOrder) -> WorkOrderResult:
        user_id = payload.user_id or principal.id
        if user_id != principal.id:
            rejection = _check_assignee(store, wo.company_id, user_id, "user_id")
            if rejection is not None:
                return rejection
        return lifecycle.add_time_entry(
            wo, user_id, payload.start_time, payload.end_time, payload.activity, payload.notes,
            actor_id=principal.id,
        )

    return _mutate(store, principal, work_order_id, Operation.add_time_entry, step, "TIME_ENTRY")


def complete_service(store: EntityStore, principal: Principal, work_order_id, service_id, notes: Optional[str] = None) -> WorkOrderResult:
    return _mutate(
        store, principal, work_order_id, Operation.complete_service,
        lambda wo: lifecycle.complete_service(wo, service_id, principal.id, notes),
        "COMPLETE_SERVICE",
        context={"service_id": str(service_id)},
    )


def install_part(store: EntityStore, principal: Principal, work_order_id, part_id, notes: Optional[str] = None) -> WorkOrderResult:
    return _mutate(
        store, principal, work_order_id, Operation.install_part,
        lambda wo: lifecycle.install_part(wo, part_id, principal.id, notes),
        "INSTALL_PART",
        context={"part_id": str(part_id)},
    )


def request_approval(store: EntityStore, principal: Principal, work_order_id, payload: ApprovalCreate) -> WorkOrderResult:
    return _mutate(
        store, principal, work_order_id, Operation.request_approval,
        lambda wo: lifecycle.request_approval(wo, payload.type, payload.amount, payload.notes, principal.id),
        "REQUEST_APPROVAL",
        context={"approval_type": payload.type.value},
    )


def approve_request(store: EntityStore, principal: Principal, work_order_id, approval_id, notes: Optional[str] = None) -> WorkOrderResult:
    return _mutate(
        store, principal, work_order_id, Operation.resolve_approval,
        lambda wo: lifecycle.approve_request(wo, approval_id, principal.id, notes),
        "APPROVE",
        context={"approval_id": str(approval_id)},
    )


def reject_request(store: EntityStore, principal: Principal, work_order_id, approval_id, reason: str) -> WorkOrderResult:
    return _mutate(
        store, principal, work_order_id, Operation.resolve_approval,
        lambda wo: lifecycle.reject_request(wo, approval_id, principal.id, reason),
        "REJECT",
        context={"approval_id": str(approval_id)},
    )


def delete_work_order(store: EntityStore, principal: Principal, work_order_id) -> Union[Deleted, Deactivated, Rejected]:
    """Hard delete an untouched scheduled order; deactivate anything with history."""
    wo = _load_active(store, work_order_id)
    if isinstance(wo, Rejected):
        return wo
    rejection = _guard(principal, Operation.delete_work_order, _target_for(store, wo))
    if rejection is not None:
        return rejection

    wo_id = wo.id
    try:
        if wo.status == WorkOrderStatus.scheduled.value and wo.is_untouched():
            _audit(store, principal, wo, "DELETE")
            store.delete_work_order(wo)
            outcome = Deleted(wo_id)
        else:
            before = {"is_active": True}
            wo.is_active = False
            wo.last_modified_by = principal.id
            wo.updated_at = utcnow()
            record_audit(
                store.db,
                entity_type="work_order",
                entity_id=wo_id,
                action="DEACTIVATE",
                actor_id=principal.id,
                actor_role=principal.role.value,
                company_id=wo.company_id,
                source="api",
                changes_json=compute_diff(before, {"is_active": False}),
                context={"work_order_number": wo.work_order_number, "status": wo.status},
            )
            store.save_work_order(wo)
            outcome = Deactivated(wo_id)
    except PersistenceFailure as e:
        return e.as_rejection()

    logger.info(
        "work_order_deleted",
        work_order_id=str(wo_id),
        outcome=type(outcome).__name__.lower(),
        actor_id=str(principal.id),
    )
    return outcome
