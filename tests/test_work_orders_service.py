"""Integration tests for the work-order operations against SQLite.

Covers the load -> authorize -> engine -> persist ordering, tenant scoping,
audit rows and optimistic concurrency.
"""

import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from fleethub.errors import ErrorKind, Rejected
from fleethub.models.models import AuditLog, WorkOrder
from fleethub.schemas.work_orders import (
    ApprovalCreate,
    CostAdjustments,
    PartLineCreate,
    ServiceLineCreate,
    TimeEntryCreate,
    WorkOrderCreate,
    WorkOrderStatus,
    WorkOrderUpdate,
)
from fleethub.services import work_orders as svc
from fleethub.services.access_guard import principal_from_user
from fleethub.services.store import EntityStore

SERVICES = [
    {"category": "engine", "description": "Replace oil", "labor_hours": 1.0, "labor_cost": 50.0},
    {"category": "brakes", "description": "Replace pads", "labor_hours": 0.5, "labor_cost": 30.0},
]
PARTS = [{"name": "Oil filter", "quantity": 2, "unit_price": 15.0}]


def reload(session_factory, wo_id) -> WorkOrder:
    """Read the committed row through a fresh session."""
    with session_factory() as session:
        return EntityStore(session).load_work_order(wo_id)


class TestCreate:
    def test_scenario_costs(self, create_order):
        wo = create_order(services=SERVICES, parts=PARTS)
        assert wo.status == "scheduled"
        assert wo.costs["labor"] == 80.0
        assert wo.costs["parts"] == 30.0
        assert wo.costs["total"] == 110.0
        assert wo.version == 1

    def test_takes_scope_from_vehicle(self, create_order, tenant):
        wo = create_order(vehicle=tenant.car_south)
        assert wo.company_id == tenant.acme.id
        assert wo.branch_id == tenant.south.id
        assert wo.odometer_reading == 1200

    def test_labor_cost_defaults_to_hours_times_rate(self, create_order):
        wo = create_order(services=[{"category": "tires", "description": "Rotate", "labor_hours": 2, "labor_rate": 45}])
        assert wo.services[0].labor_cost == 90.0
        assert wo.costs["total"] == 90.0

    def test_car_mechanic_cannot_create_for_truck(self, store, principals, tenant, tomorrow, db):
        """Vehicle-type scope denies a Car-only mechanic on a Truck."""
        payload = WorkOrderCreate(vehicle_id=tenant.truck_north.id, type="corrective", scheduled_date=tomorrow, description="Air brake leak")
        result = svc.create_work_order(store, principals.car_mechanic, payload)
        assert isinstance(result, Rejected)
        assert result.kind == ErrorKind.authorization_denied
        assert result.reason == "vehicle-type-scope"
        assert db.query(WorkOrder).count() == 0

    def test_branch_manager_cannot_create_in_other_branch(self, store, principals, tenant, tomorrow):
        payload = WorkOrderCreate(vehicle_id=tenant.car_south.id, type="preventive", scheduled_date=tomorrow, description="Service")
        result = svc.create_work_order(store, principals.manager_north, payload)
        assert result.reason == "branch-scope"

    def test_cross_tenant_create_denied(self, store, principals, tenant, tomorrow):
        payload = WorkOrderCreate(vehicle_id=tenant.globex_car.id, type="preventive", scheduled_date=tomorrow, description="Service")
        result = svc.create_work_order(store, principals.admin, payload)
        assert result.reason == "cross-tenant"

    def test_unknown_vehicle(self, store, principals, tomorrow):
        payload = WorkOrderCreate(vehicle_id=uuid.uuid4(), type="preventive", scheduled_date=tomorrow, description="Service")
        result = svc.create_work_order(store, principals.admin, payload)
        assert result.kind == ErrorKind.not_found

    def test_branch_must_match_vehicle_company(self, store, principals, tenant, tomorrow):
        payload = WorkOrderCreate(
            vehicle_id=tenant.car_north.id, branch_id=tenant.west.id,
            type="preventive", scheduled_date=tomorrow, description="Service",
        )
        result = svc.create_work_order(store, principals.sysop, payload)
        assert result.kind == ErrorKind.validation_failure
        assert result.reason == "branch-company-mismatch"

    def test_assignee_from_other_tenant_rejected(self, store, principals, tenant, tomorrow):
        payload = WorkOrderCreate(
            vehicle_id=tenant.car_north.id, type="preventive", scheduled_date=tomorrow,
            description="Service", assigned_to_id=tenant.users.globex_admin.id,
        )
        result = svc.create_work_order(store, principals.admin, payload)
        assert result.kind == ErrorKind.validation_failure

    def test_writes_audit_row(self, create_order, db):
        wo = create_order()
        row = db.query(AuditLog).filter(AuditLog.entity_id == wo.id).one()
        assert row.action == "CREATE"
        assert row.entity_type == "work_order"
        assert len(row.integrity_hash) == 64


class TestReadAndList:
    def test_get_scoped(self, create_order, store, principals):
        wo = create_order()
        assert svc.get_work_order(store, principals.viewer, wo.id) is wo
        assert svc.get_work_order(store, principals.manager_south, wo.id).reason == "branch-scope"
        assert svc.get_work_order(store, principals.globex_admin, wo.id).reason == "cross-tenant"

    def test_get_unknown(self, store, principals):
        assert svc.get_work_order(store, principals.admin, uuid.uuid4()).kind == ErrorKind.not_found

    def test_list_scoped_to_branch_and_vehicle_type(self, create_order, store, principals, tenant):
        car = create_order(vehicle=tenant.car_north)
        truck = create_order(vehicle=tenant.truck_north)
        south = create_order(vehicle=tenant.car_south)

        items, total = svc.list_work_orders(store, principals.admin)
        assert total == 3

        items, total = svc.list_work_orders(store, principals.manager_north)
        assert {w.id for w in items} == {car.id, truck.id}

        items, total = svc.list_work_orders(store, principals.car_mechanic)
        assert [w.id for w in items] == [car.id]

        items, total = svc.list_work_orders(store, principals.globex_admin)
        assert total == 0
        assert south.id not in {w.id for w in items}

    def test_list_filters_and_paging(self, create_order, store, principals, tenant, tomorrow):
        create_order(priority="high", description="Gearbox whine")
        create_order(priority="low", scheduled_date=tomorrow + timedelta(days=5))
        create_order(priority="low", scheduled_date=tomorrow + timedelta(days=9))

        items, total = svc.list_work_orders(store, principals.admin, priority="low")
        assert total == 2
        items, total = svc.list_work_orders(store, principals.admin, search="gearbox")
        assert total == 1
        items, total = svc.list_work_orders(store, principals.admin, page=2, limit=2)
        assert total == 3 and len(items) == 1

    def test_list_requires_read(self, store, tenant):
        tenant.users.viewer.permissions_override = {"maintenance": {"read": False}}
        result = svc.list_work_orders(store, principal_from_user(tenant.users.viewer))
        assert isinstance(result, Rejected)


class TestUpdate:
    def test_patch_fields_and_lines(self, create_order, store, principals):
        wo = create_order(services=SERVICES, parts=PARTS)
        patch = WorkOrderUpdate(
            priority="critical",
            diagnosis="Worn pads",
            add_parts=[PartLineCreate(name="Pad set", quantity=1, unit_price=70.0)],
            remove_service_ids=[wo.services[1].id],
            costs=CostAdjustments(tax=10.0, discount=5.0),
        )
        result = svc.update_work_order(store, principals.manager_north, wo.id, patch)
        assert result.priority == "critical"
        assert result.diagnosis == "Worn pads"
        assert len(result.services) == 1
        assert result.costs["labor"] == 50.0
        assert result.costs["parts"] == 100.0
        assert result.costs["total"] == 155.0
        assert result.version == 2

    def test_completed_service_cannot_be_removed(self, create_order, store, principals, session_factory):
        wo = create_order(services=SERVICES)
        svc.complete_service(store, principals.mechanic, wo.id, wo.services[0].id)
        patch = WorkOrderUpdate(priority="high", remove_service_ids=[wo.services[0].id])
        result = svc.update_work_order(store, principals.admin, wo.id, patch)
        assert result.kind == ErrorKind.validation_failure
        fresh = reload(session_factory, wo.id)
        assert fresh.priority == "medium"
        assert len(fresh.services) == 2

    def test_closed_order_rejects_structural_patch(self, create_order, store, principals):
        wo = create_order()
        svc.transition_status(store, principals.admin, wo.id, WorkOrderStatus.canceled)
        patch = WorkOrderUpdate(add_services=[ServiceLineCreate(category="other", description="Late add")])
        result = svc.update_work_order(store, principals.admin, wo.id, patch)
        assert result.kind == ErrorKind.invalid_transition

    def test_viewer_denied_without_mutation(self, create_order, store, principals, session_factory):
        """Nothing is written when authorization fails."""
        wo = create_order()
        result = svc.update_work_order(store, principals.viewer, wo.id, WorkOrderUpdate(priority="critical"))
        assert result.reason == "insufficient-permission"
        assert reload(session_factory, wo.id).priority == "medium"

    def test_required_field_cannot_be_cleared(self, create_order, store, principals):
        wo = create_order()
        result = svc.update_work_order(store, principals.admin, wo.id, WorkOrderUpdate(description=None))
        assert result.kind == ErrorKind.validation_failure


class TestLifecycleOperations:
    def test_transition_persists_and_audits(self, create_order, store, principals, session_factory, db):
        wo = create_order()
        result = svc.transition_status(store, principals.mechanic, wo.id, WorkOrderStatus.in_progress, "Bay 3")
        assert result.status == "in_progress"
        fresh = reload(session_factory, wo.id)
        assert fresh.status == "in_progress"
        assert fresh.start_date is not None
        assert fresh.last_modified_by == principals.mechanic.id
        actions = [r.action for r in db.query(AuditLog).filter(AuditLog.entity_id == wo.id)]
        assert sorted(actions) == ["CREATE", "TRANSITION"]

    def test_invalid_transition_returns_rejection(self, create_order, store, principals, session_factory):
        wo = create_order()
        svc.transition_status(store, principals.admin, wo.id, WorkOrderStatus.canceled)
        result = svc.transition_status(store, principals.admin, wo.id, WorkOrderStatus.in_progress)
        assert result.kind == ErrorKind.invalid_transition
        assert result.status_code == 409
        assert reload(session_factory, wo.id).status == "canceled"

    def test_branch_manager_other_branch_never_succeeds(self, create_order, store, principals, tenant):
        wo = create_order(vehicle=tenant.car_south, services=SERVICES, parts=PARTS)
        results = [
            svc.transition_status(store, principals.manager_north, wo.id, WorkOrderStatus.in_progress),
            svc.complete_service(store, principals.manager_north, wo.id, wo.services[0].id),
            svc.install_part(store, principals.manager_north, wo.id, wo.parts[0].id),
            svc.request_approval(store, principals.manager_north, wo.id, ApprovalCreate(type="budget", amount=10)),
            svc.update_work_order(store, principals.manager_north, wo.id, WorkOrderUpdate(priority="low")),
        ]
        assert all(isinstance(r, Rejected) and r.reason == "branch-scope" for r in results)

    def test_budget_approval_round_trip(self, create_order, store, principals, session_factory):
        """Budget approval holds a scheduled order; approval restores it."""
        wo = create_order()
        held = svc.request_approval(store, principals.mechanic, wo.id, ApprovalCreate(type="budget", amount=450.0))
        assert held.status == "pending_approval"
        approval_id = held.approvals[0].id
        restored = svc.approve_request(store, principals.manager_north, wo.id, approval_id, "Go ahead")
        assert restored.status == "scheduled"
        fresh = reload(session_factory, wo.id)
        assert fresh.approvals[0].status == "approved"
        assert fresh.approvals[0].resolved_by == principals.manager_north.id

    def test_complete_blocked_by_pending_extra_work(self, create_order, store, principals, session_factory):
        wo = create_order()
        svc.transition_status(store, principals.mechanic, wo.id, WorkOrderStatus.in_progress)
        svc.transition_status(store, principals.mechanic, wo.id, WorkOrderStatus.paused)
        svc.request_approval(store, principals.mechanic, wo.id, ApprovalCreate(type="extra_work", amount=80))
        result = svc.transition_status(store, principals.mechanic, wo.id, WorkOrderStatus.completed)
        assert result.reason == "pending-approvals-outstanding"
        assert reload(session_factory, wo.id).status == "paused"

    def test_completing_last_service_completes_order(self, create_order, store, principals, session_factory):
        three = SERVICES + [{"category": "electrical", "description": "Check lights", "labor_cost": 10.0}]
        wo = create_order(services=three)
        svc.transition_status(store, principals.mechanic, wo.id, WorkOrderStatus.in_progress)
        for service_id in [s.id for s in wo.services]:
            result = svc.complete_service(store, principals.mechanic, wo.id, service_id)
        assert result.status == "completed"
        fresh = reload(session_factory, wo.id)
        assert fresh.completed_date is not None
        assert fresh.actual_duration is not None
        assert all(s.completed_by == principals.mechanic.id for s in fresh.services)

    def test_time_entry(self, create_order, store, principals):
        wo = create_order()
        start = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        entry = TimeEntryCreate(start_time=start, end_time=start + timedelta(minutes=50), activity="Diagnosis")
        result = svc.add_time_entry(store, principals.mechanic, wo.id, entry)
        assert result.time_entries[0].duration_minutes == 50
        assert result.time_entries[0].user_id == principals.mechanic.id

    def test_time_entry_for_foreign_user_rejected(self, create_order, store, principals, tenant):
        wo = create_order()
        start = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        entry = TimeEntryCreate(
            start_time=start, end_time=start + timedelta(minutes=5),
            activity="Diagnosis", user_id=tenant.users.globex_admin.id,
        )
        result = svc.add_time_entry(store, principals.admin, wo.id, entry)
        assert result.kind == ErrorKind.validation_failure

    def test_reject_request(self, create_order, store, principals):
        wo = create_order()
        held = svc.request_approval(store, principals.mechanic, wo.id, ApprovalCreate(type="warranty"))
        result = svc.reject_request(store, principals.admin, wo.id, held.approvals[0].id, "Out of warranty")
        assert result.approvals[0].status == "rejected"
        assert result.status == "scheduled"


class TestDelete:
    def test_untouched_scheduled_order_is_deleted(self, create_order, store, principals, session_factory, db):
        wo = create_order(services=SERVICES)
        result = svc.delete_work_order(store, principals.admin, wo.id)
        assert isinstance(result, svc.Deleted)
        assert reload(session_factory, result.work_order_id) is None
        assert db.query(AuditLog).filter(AuditLog.action == "DELETE").count() == 1

    def test_order_with_history_is_deactivated(self, create_order, store, principals, session_factory):
        wo = create_order()
        svc.request_approval(store, principals.mechanic, wo.id, ApprovalCreate(type="warranty"))
        result = svc.delete_work_order(store, principals.admin, wo.id)
        assert isinstance(result, svc.Deactivated)
        fresh = reload(session_factory, wo.id)
        assert fresh is not None and fresh.is_active is False
        assert svc.get_work_order(store, principals.admin, wo.id).kind == ErrorKind.not_found

    def test_started_order_is_deactivated(self, create_order, store, principals):
        wo = create_order()
        svc.transition_status(store, principals.admin, wo.id, WorkOrderStatus.in_progress)
        assert isinstance(svc.delete_work_order(store, principals.admin, wo.id), svc.Deactivated)

    def test_branch_manager_cannot_delete(self, create_order, store, principals):
        wo = create_order()
        result = svc.delete_work_order(store, principals.manager_north, wo.id)
        assert result.reason == "insufficient-permission"


class TestConcurrency:
    def test_stale_write_is_persistence_failure(self, create_order, store, principals, db, session_factory):
        """A write against an outdated version is refused and rolled back."""
        wo = create_order()
        store.load_work_order(wo.id)
        # Another writer bumps the version behind this session's back
        db.execute(update(WorkOrder.__table__).where(WorkOrder.__table__.c.id == wo.id).values(version=5))
        result = svc.transition_status(store, principals.admin, wo.id, WorkOrderStatus.in_progress)
        assert isinstance(result, Rejected)
        assert result.kind == ErrorKind.persistence_failure
        assert result.reason == "concurrent-modification"
        assert result.status_code == 503

    def test_versions_increase(self, create_order, store, principals):
        wo = create_order()
        svc.transition_status(store, principals.admin, wo.id, WorkOrderStatus.in_progress)
        result = svc.transition_status(store, principals.admin, wo.id, WorkOrderStatus.paused)
        assert result.version == 3
