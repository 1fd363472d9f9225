"""
Work-order lifecycle engine.

Owns the transition table and every status-changing sub-flow. Functions take
a loaded WorkOrder, mutate it in memory and return it, or return a
``Rejected`` value and leave it untouched. Nothing here touches the session.
"""
import random
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Union

import structlog

from ..config import settings
from ..errors import Rejected, invalid, invalid_transition, not_found
from ..models.models import WorkOrder, WorkOrderApproval, WorkOrderTimeEntry, as_utc, utcnow
from ..schemas.work_orders import ApprovalStatus, ApprovalType, WorkOrderStatus

logger = structlog.get_logger(__name__)

S = WorkOrderStatus

TRANSITIONS: Dict[WorkOrderStatus, FrozenSet[WorkOrderStatus]] = {
    S.scheduled: frozenset({S.in_progress, S.completed, S.canceled, S.pending_parts}),
    S.in_progress: frozenset({S.paused, S.completed, S.canceled, S.pending_parts}),
    S.paused: frozenset({S.in_progress, S.completed, S.canceled}),
    # Plus the status remembered when the hold began
    S.pending_parts: frozenset({S.canceled}),
    # Left otherwise only by approving the outstanding request
    S.pending_approval: frozenset({S.canceled}),
    S.completed: frozenset(),
    S.canceled: frozenset(),
}

HOLD_STATES = frozenset({S.pending_approval, S.pending_parts})
TERMINAL_STATES = frozenset({S.completed, S.canceled})

# Approval types that put a scheduled or running order on hold
BLOCKING_APPROVAL_TYPES = frozenset({ApprovalType.budget.value, ApprovalType.extra_work.value})

Result = Union[WorkOrder, Rejected]


def parse_status(value) -> Optional[WorkOrderStatus]:
    try:
        return WorkOrderStatus(value)
    except (ValueError, TypeError):
        return None


def remembered_status(wo: WorkOrder) -> WorkOrderStatus:
    return parse_status(wo.status_before_hold) or S.scheduled


def allowed_targets(wo: WorkOrder) -> FrozenSet[WorkOrderStatus]:
    current = parse_status(wo.status)
    if current is None:
        return frozenset()
    targets = TRANSITIONS[current]
    if current == S.pending_parts:
        targets = targets | {remembered_status(wo)}
    return targets


def check_transition(wo: WorkOrder, target) -> Optional[Rejected]:
    """Return the rejection a move to ``target`` would produce, or None."""
    requested = parse_status(target)
    if requested is None:
        return invalid("status", "unknown-status", value=str(target))
    current = parse_status(wo.status)
    if requested == S.in_progress and current == S.in_progress:
        return None
    if requested == S.completed and wo.has_pending_approvals():
        return invalid_transition(wo.status, requested, "pending-approvals-outstanding")
    if requested not in allowed_targets(wo):
        return invalid_transition(wo.status, requested)
    return None


def transition(wo: WorkOrder, target, actor_id, notes: Optional[str] = None, now: Optional[datetime] = None) -> Result:
    rejection = check_transition(wo, target)
    if rejection is not None:
        return rejection

    requested = parse_status(target)
    current = parse_status(wo.status)
    if requested == current == S.in_progress:
        return wo

    now = now or utcnow()
    if current in HOLD_STATES:
        wo.status_before_hold = None
    if requested in HOLD_STATES:
        wo.status_before_hold = current.value
    wo.status = requested.value

    if requested == S.in_progress:
        if wo.start_date is None:
            wo.start_date = now
    elif requested == S.completed:
        if wo.completed_date is None:
            wo.completed_date = now
        started = as_utc(wo.start_date) or as_utc(wo.scheduled_date)
        if started is not None:
            hours = (as_utc(wo.completed_date) - started).total_seconds() / 3600
            wo.actual_duration = round(max(hours, 0.0), 2)
        wo.recompute_costs()
    elif requested == S.canceled:
        wo.canceled_date = now

    if notes:
        append_note(wo, notes)
    _touch(wo, actor_id, now)
    logger.info(
        "work_order_transition",
        work_order_id=str(wo.id),
        from_status=current.value,
        to_status=requested.value,
        actor_id=str(actor_id),
    )
    return wo


def add_time_entry(
    wo: WorkOrder,
    user_id,
    start_time: datetime,
    end_time: datetime,
    activity: str,
    notes: Optional[str] = None,
    actor_id=None,
    now: Optional[datetime] = None,
) -> Result:
    start, end = as_utc(start_time), as_utc(end_time)
    if start is None or end is None:
        return invalid("start_time" if start is None else "end_time", "missing-time")
    if end <= start:
        return invalid("end_time", "end-not-after-start")
    if not activity or not activity.strip():
        return invalid("activity", "activity-required")

    wo.time_entries.append(WorkOrderTimeEntry(
        user_id=user_id,
        start_time=start,
        end_time=end,
        duration_minutes=round((end - start).total_seconds() / 60),
        activity=activity.strip(),
        notes=notes,
    ))
    _touch(wo, actor_id or user_id, now or utcnow())
    return wo


def complete_service(wo: WorkOrder, service_id, user_id, notes: Optional[str] = None, now: Optional[datetime] = None) -> Result:
    """
    Mark one service done. Completing the last open service of a running order
    completes the order; when that would be refused nothing is changed.
    """
    if parse_status(wo.status) in TERMINAL_STATES:
        return invalid_transition(wo.status, wo.status, "work-order-closed")
    service = wo.find_service(service_id)
    if service is None:
        return not_found("service", service_id)
    if service.is_completed:
        return invalid("service_id", "service-already-completed", service_id=str(service.id))

    finishes_order = parse_status(wo.status) == S.in_progress and all(
        s.is_completed for s in wo.services if s is not service
    )
    if finishes_order:
        rejection = check_transition(wo, S.completed)
        if rejection is not None:
            return rejection

    now = now or utcnow()
    service.is_completed = True
    service.completed_by = user_id
    service.completed_at = now
    if notes:
        service.notes = notes
    wo.recompute_costs()
    _touch(wo, user_id, now)

    if finishes_order:
        return transition(wo, S.completed, user_id, now=now)
    return wo


def install_part(wo: WorkOrder, part_id, user_id, notes: Optional[str] = None, now: Optional[datetime] = None) -> Result:
    if parse_status(wo.status) in TERMINAL_STATES:
        return invalid_transition(wo.status, wo.status, "work-order-closed")
    part = wo.find_part(part_id)
    if part is None:
        return not_found("part", part_id)
    if part.is_installed:
        return invalid("part_id", "part-already-installed", part_id=str(part.id))

    now = now or utcnow()
    part.is_installed = True
    part.installed_by = user_id
    part.installed_at = now
    if notes:
        part.notes = notes
    wo.recompute_costs()
    _touch(wo, user_id, now)
    return wo


def request_approval(
    wo: WorkOrder,
    approval_type,
    amount: Optional[float],
    notes: Optional[str],
    requester_id,
    now: Optional[datetime] = None,
) -> Result:
    try:
        kind = ApprovalType(approval_type)
    except (ValueError, TypeError):
        return invalid("type", "unknown-approval-type", value=str(approval_type))
    if amount is not None and amount < 0:
        return invalid("amount", "negative-amount")
    current = parse_status(wo.status)
    if current in TERMINAL_STATES:
        return invalid_transition(wo.status, S.pending_approval, "work-order-closed")

    now = now or utcnow()
    wo.approvals.append(WorkOrderApproval(
        type=kind.value,
        amount=amount,
        notes=notes,
        requested_by=requester_id,
        requested_at=now,
        status=ApprovalStatus.pending.value,
    ))
    if kind.value in BLOCKING_APPROVAL_TYPES and current in (S.scheduled, S.in_progress):
        wo.status_before_hold = current.value
        wo.status = S.pending_approval.value
        logger.info(
            "work_order_transition",
            work_order_id=str(wo.id),
            from_status=current.value,
            to_status=S.pending_approval.value,
            actor_id=str(requester_id),
        )
    _touch(wo, requester_id, now)
    return wo


def approve_request(wo: WorkOrder, approval_id, approver_id, notes: Optional[str] = None, now: Optional[datetime] = None) -> Result:
    approval = wo.find_approval(approval_id)
    if approval is None:
        return not_found("approval", approval_id)
    if approval.status != ApprovalStatus.pending.value:
        return invalid("approval_id", "approval-already-resolved", approval_status=approval.status)

    now = now or utcnow()
    approval.status = ApprovalStatus.approved.value
    approval.resolved_by = approver_id
    approval.resolved_at = now
    if notes:
        approval.notes = notes

    if (
        approval.type in BLOCKING_APPROVAL_TYPES
        and parse_status(wo.status) == S.pending_approval
        and not wo.has_pending_approvals(BLOCKING_APPROVAL_TYPES)
    ):
        restored = remembered_status(wo)
        wo.status = restored.value
        wo.status_before_hold = None
        logger.info(
            "work_order_transition",
            work_order_id=str(wo.id),
            from_status=S.pending_approval.value,
            to_status=restored.value,
            actor_id=str(approver_id),
        )
    _touch(wo, approver_id, now)
    return wo


def reject_request(wo: WorkOrder, approval_id, approver_id, reason: str, now: Optional[datetime] = None) -> Result:
    approval = wo.find_approval(approval_id)
    if approval is None:
        return not_found("approval", approval_id)
    if approval.status != ApprovalStatus.pending.value:
        return invalid("approval_id", "approval-already-resolved", approval_status=approval.status)
    if not reason or not reason.strip():
        return invalid("reason", "rejection-reason-required")

    now = now or utcnow()
    approval.status = ApprovalStatus.rejected.value
    approval.resolved_by = approver_id
    approval.resolved_at = now
    approval.rejection_reason = reason.strip()
    _touch(wo, approver_id, now)
    return wo


def generate_work_order_number(now: Optional[datetime] = None, prefix: Optional[str] = None) -> str:
    """Propose a number like ``{prefix}YYMMDDnnn``; the store's unique constraint decides."""
    now = now or utcnow()
    if prefix is None:
        prefix = settings.work_order_prefix
    return f"{prefix}{now:%y%m%d}{random.randint(0, 999):03d}"


def append_note(wo: WorkOrder, text: str) -> None:
    text = text.strip()
    if not text:
        return
    wo.notes = f"{wo.notes}\n{text}" if wo.notes else text


def _touch(wo: WorkOrder, actor_id, now: datetime) -> None:
    if actor_id is not None:
        wo.last_modified_by = actor_id
    wo.updated_at = now
