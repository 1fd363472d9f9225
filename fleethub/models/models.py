import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Table,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column, validates

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Defaults:
    """Apply Python-side defaults at construction so transient rows are usable before flush."""
    _init_defaults = {}

    def __init__(self, **kwargs):
        for key, value in self._init_defaults.items():
            if key not in kwargs:
                kwargs[key] = value() if callable(value) else value
        super().__init__(**kwargs)


# Association table for many-to-many User<->Branch
user_branches = Table(
    "user_branches",
    Base.metadata,
    Column("user_id", UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    Column("branch_id", UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True),
    UniqueConstraint("user_id", "branch_id", name="uq_user_branch"),
)


# =====================
# Tenant records
# =====================

class Company(_Defaults, Base):
    __tablename__ = "companies"
    _init_defaults = {"id": uuid.uuid4, "is_active": True}

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    branches = relationship("Branch", back_populates="company", cascade="all, delete-orphan")


class Branch(_Defaults, Base):
    """Branch / site / workshop owned by a company"""
    __tablename__ = "branches"
    _init_defaults = {"id": uuid.uuid4, "is_active": True}

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    code: Mapped[str] = mapped_column(String(10), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    company = relationship("Company", back_populates="branches")

    __table_args__ = (
        UniqueConstraint("company_id", "code", name="uq_branch_company_code"),
    )


class Vehicle(_Defaults, Base):
    __tablename__ = "vehicles"
    _init_defaults = {"id": uuid.uuid4, "is_active": True}

    id: Mapped[uuid.UUID] = uuid_pk()
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    branch_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    plate_number: Mapped[str] = mapped_column(String(15), nullable=False, index=True)
    vin: Mapped[Optional[str]] = mapped_column(String(17))
    make: Mapped[Optional[str]] = mapped_column(String(50))
    model: Mapped[Optional[str]] = mapped_column(String(50))
    year: Mapped[Optional[int]] = mapped_column(Integer)
    vehicle_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # Car|Truck|Van|Tractor|...
    odometer: Mapped[Optional[int]] = mapped_column(Integer)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class User(_Defaults, Base):
    __tablename__ = "users"
    _init_defaults = {"id": uuid.uuid4, "is_active": True}

    id: Mapped[uuid.UUID] = uuid_pk()
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(50))
    last_name: Mapped[Optional[str]] = mapped_column(String(50))
    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # system_operator|company_administrator|branch_manager|mechanic|operator|viewer
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), index=True)  # None only for system_operator
    vehicle_type_access: Mapped[Optional[list]] = mapped_column(JSON)  # Empty/None means every vehicle type
    permissions_override: Mapped[Optional[dict]] = mapped_column(JSON)  # {resource: {action: bool}}
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    company = relationship("Company")
    branches = relationship("Branch", secondary=user_branches)

    @property
    def full_name(self) -> str:
        return " ".join(x for x in [self.first_name, self.last_name] if x)


# =====================
# Maintenance work orders
# =====================

class WorkOrderService(_Defaults, Base):
    """One labor line of a work order"""
    __tablename__ = "work_order_services"
    _init_defaults = {"id": uuid.uuid4, "labor_hours": 0.0, "labor_rate": 0.0, "labor_cost": 0.0, "is_completed": False}

    id: Mapped[uuid.UUID] = uuid_pk()
    work_order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # engine|transmission|brakes|...|other
    subcategory: Mapped[Optional[str]] = mapped_column(String(100))
    description: Mapped[str] = mapped_column(Text, nullable=False)
    labor_hours: Mapped[float] = mapped_column(Float, default=0.0)
    labor_rate: Mapped[float] = mapped_column(Float, default=0.0)
    labor_cost: Mapped[float] = mapped_column(Float, default=0.0)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    work_order = relationship("WorkOrder", back_populates="services")

    @validates("is_completed", "completed_by", "completed_at")
    def _write_once(self, key, value):
        return _guard_write_once(self, key, value)


class WorkOrderPart(_Defaults, Base):
    __tablename__ = "work_order_parts"
    _init_defaults = {"id": uuid.uuid4, "quantity": 1, "unit_price": 0.0, "total_price": 0.0, "is_installed": False}

    id: Mapped[uuid.UUID] = uuid_pk()
    work_order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    part_number: Mapped[Optional[str]] = mapped_column(String(100))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(100))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    unit_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    supplier: Mapped[Optional[str]] = mapped_column(String(255))
    is_installed: Mapped[bool] = mapped_column(Boolean, default=False)
    installed_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    installed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    work_order = relationship("WorkOrder", back_populates="parts")

    @validates("is_installed", "installed_by", "installed_at")
    def _write_once(self, key, value):
        return _guard_write_once(self, key, value)


class WorkOrderApproval(_Defaults, Base):
    __tablename__ = "work_order_approvals"
    _init_defaults = {"id": uuid.uuid4, "status": "pending", "requested_at": utcnow}

    id: Mapped[uuid.UUID] = uuid_pk()
    work_order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # budget|extra_work|special_parts|warranty
    amount: Mapped[Optional[float]] = mapped_column(Float)
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)  # pending|approved|rejected
    requested_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    resolved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)

    work_order = relationship("WorkOrder", back_populates="approvals")

    @validates("resolved_by", "resolved_at")
    def _write_once(self, key, value):
        return _guard_write_once(self, key, value)


class WorkOrderTimeEntry(_Defaults, Base):
    __tablename__ = "work_order_time_entries"
    _init_defaults = {"id": uuid.uuid4}

    id: Mapped[uuid.UUID] = uuid_pk()
    work_order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    activity: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    work_order = relationship("WorkOrder", back_populates="time_entries")


COST_FIELDS = ("labor", "parts", "materials", "external", "tax", "discount", "total")


def empty_costs() -> dict:
    return {k: 0.0 for k in COST_FIELDS}


class WorkOrder(_Defaults, Base):
    """Maintenance work order against one vehicle"""
    __tablename__ = "work_orders"
    _init_defaults = {
        "id": uuid.uuid4,
        "status": "scheduled",
        "priority": "medium",
        "estimated_duration": 1.0,
        "costs": empty_costs,
        "is_active": True,
    }

    id: Mapped[uuid.UUID] = uuid_pk()
    work_order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    branch_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False, index=True)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False, index=True)  # preventive|corrective|predictive|emergency|inspection|warranty
    priority: Mapped[str] = mapped_column(String(20), default="medium", index=True)  # low|medium|high|critical
    status: Mapped[str] = mapped_column(String(30), default="scheduled", index=True)
    status_before_hold: Mapped[Optional[str]] = mapped_column(String(30))  # Status to restore when a hold ends
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    canceled_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    estimated_duration: Mapped[Optional[float]] = mapped_column(Float, default=1.0)  # Hours
    actual_duration: Mapped[Optional[float]] = mapped_column(Float)  # Hours
    odometer_reading: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, nullable=False)
    symptoms: Mapped[Optional[str]] = mapped_column(Text)
    diagnosis: Mapped[Optional[str]] = mapped_column(Text)
    work_performed: Mapped[Optional[str]] = mapped_column(Text)
    recommendations: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    costs: Mapped[dict] = mapped_column(JSON, default=empty_costs)  # {labor, parts, materials, external, tax, discount, total}
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    last_modified_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    services = relationship("WorkOrderService", back_populates="work_order", cascade="all, delete-orphan", order_by="WorkOrderService.position")
    parts = relationship("WorkOrderPart", back_populates="work_order", cascade="all, delete-orphan", order_by="WorkOrderPart.position")
    approvals = relationship("WorkOrderApproval", back_populates="work_order", cascade="all, delete-orphan", order_by="WorkOrderApproval.requested_at")
    time_entries = relationship("WorkOrderTimeEntry", back_populates="work_order", cascade="all, delete-orphan", order_by="WorkOrderTimeEntry.start_time")
    vehicle = relationship("Vehicle")
    branch = relationship("Branch")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('idx_work_order_company_status', 'company_id', 'status'),
        Index('idx_work_order_branch_status', 'branch_id', 'status'),
        Index('idx_work_order_vehicle_scheduled', 'vehicle_id', 'scheduled_date'),
        Index('idx_work_order_assigned_status', 'assigned_to_id', 'status'),
    )

    # ---------- collections ----------
    def find_service(self, service_id) -> Optional[WorkOrderService]:
        return _by_id(self.services, service_id)

    def find_part(self, part_id) -> Optional[WorkOrderPart]:
        return _by_id(self.parts, part_id)

    def find_approval(self, approval_id) -> Optional[WorkOrderApproval]:
        return _by_id(self.approvals, approval_id)

    def add_service(self, **fields) -> WorkOrderService:
        fields.setdefault("position", _next_position(self.services))
        service = WorkOrderService(**fields)
        self.services.append(service)
        return service

    def add_part(self, **fields) -> WorkOrderPart:
        fields.setdefault("position", _next_position(self.parts))
        part = WorkOrderPart(**fields)
        self.parts.append(part)
        return part

    # ---------- derived values ----------
    def recompute_costs(self) -> dict:
        """Fold services and parts into costs. Idempotent; total is never hand-set."""
        current = self.costs or {}
        for part in self.parts:
            part.total_price = round((part.quantity or 0) * (part.unit_price or 0.0), 2)
        costs = {
            "labor": round(sum(s.labor_cost or 0.0 for s in self.services), 2),
            "parts": round(sum(p.total_price for p in self.parts), 2),
            "materials": float(current.get("materials") or 0.0),
            "external": float(current.get("external") or 0.0),
            "tax": float(current.get("tax") or 0.0),
            "discount": float(current.get("discount") or 0.0),
        }
        costs["total"] = round(
            costs["labor"] + costs["parts"] + costs["materials"] + costs["external"] + costs["tax"] - costs["discount"],
            2,
        )
        # Reassign so the JSON column is flagged dirty
        self.costs = costs
        return costs

    def total_parts_quantity(self) -> int:
        return sum(p.quantity or 0 for p in self.parts)

    def total_labor_hours(self) -> float:
        return sum(s.labor_hours or 0.0 for s in self.services)

    def logged_minutes(self) -> int:
        return sum(t.duration_minutes or 0 for t in self.time_entries)

    def completion_percentage(self) -> int:
        if not self.services:
            return 0
        done = sum(1 for s in self.services if s.is_completed)
        # Halves round up
        return int(done * 100 / len(self.services) + 0.5)

    def has_pending_approvals(self, types=None) -> bool:
        return any(
            a.status == "pending" and (types is None or a.type in types)
            for a in self.approvals
        )

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        now = as_utc(now) or utcnow()
        return self.status == "scheduled" and as_utc(self.scheduled_date) < now

    def days_until_due(self, now: Optional[datetime] = None) -> int:
        now = as_utc(now) or utcnow()
        delta = as_utc(self.scheduled_date) - now
        days, remainder = divmod(delta.total_seconds(), 86400)
        return int(days) + (1 if remainder else 0)

    def estimated_completion(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if self.status == "completed":
            return as_utc(self.completed_date)
        if self.status != "in_progress":
            return as_utc(self.scheduled_date)
        now = as_utc(now) or utcnow()
        remaining = sum(s.labor_hours or 0.0 for s in self.services if not s.is_completed)
        if remaining <= 0:
            return now
        return now + timedelta(hours=remaining)

    def is_untouched(self) -> bool:
        return (
            self.start_date is None
            and not self.time_entries
            and not self.approvals
            and not any(s.is_completed for s in self.services)
            and not any(p.is_installed for p in self.parts)
        )


class AuditLog(Base):
    """Append-only audit log for work-order and user-management actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # work_order|user
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CREATE|UPDATE|TRANSITION|TIME_ENTRY|COMPLETE_SERVICE|INSTALL_PART|REQUEST_APPROVAL|APPROVE|REJECT|DELETE|DEACTIVATE
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))
    company_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system|script
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )


def _by_id(rows, row_id):
    try:
        wanted = row_id if isinstance(row_id, uuid.UUID) else uuid.UUID(str(row_id))
    except (ValueError, TypeError):
        return None
    for row in rows:
        if row.id == wanted:
            return row
    return None


def _next_position(rows) -> int:
    return max((r.position or 0 for r in rows), default=-1) + 1


def _guard_write_once(row, key, value):
    current = getattr(row, key, None)
    if current not in (None, False) and current != value:
        raise ValueError(f"{type(row).__name__}.{key} is write-once")
    return value
