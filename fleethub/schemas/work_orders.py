import uuid
from datetime import datetime
from typing import List, Optional
from enum import Enum

from pydantic import BaseModel, Field, field_validator


# Enums
class WorkOrderType(str, Enum):
    preventive = "preventive"
    corrective = "corrective"
    predictive = "predictive"
    emergency = "emergency"
    inspection = "inspection"
    warranty = "warranty"


class WorkOrderPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class WorkOrderStatus(str, Enum):
    scheduled = "scheduled"
    in_progress = "in_progress"
    paused = "paused"
    completed = "completed"
    canceled = "canceled"
    pending_approval = "pending_approval"
    pending_parts = "pending_parts"


class ServiceCategory(str, Enum):
    engine = "engine"
    transmission = "transmission"
    brakes = "brakes"
    suspension = "suspension"
    steering = "steering"
    electrical = "electrical"
    air_conditioning = "air_conditioning"
    fuel_system = "fuel_system"
    exhaust = "exhaust"
    tires = "tires"
    bodywork = "bodywork"
    interior = "interior"
    diagnostics = "diagnostics"
    other = "other"


class ApprovalType(str, Enum):
    budget = "budget"
    extra_work = "extra_work"
    special_parts = "special_parts"
    warranty = "warranty"


class ApprovalStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


# Line items
class ServiceLineCreate(BaseModel):
    category: ServiceCategory
    subcategory: Optional[str] = None
    description: str = Field(min_length=1)
    labor_hours: float = Field(default=0.0, ge=0)
    labor_rate: float = Field(default=0.0, ge=0)
    labor_cost: Optional[float] = Field(default=None, ge=0)  # Defaults to hours x rate
    notes: Optional[str] = None


class PartLineCreate(BaseModel):
    part_number: Optional[str] = None
    name: str = Field(min_length=1)
    brand: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    unit_price: float = Field(default=0.0, ge=0)
    supplier: Optional[str] = None
    notes: Optional[str] = None


class ServiceLineResponse(BaseModel):
    id: uuid.UUID
    category: str
    subcategory: Optional[str] = None
    description: str
    labor_hours: float
    labor_rate: float
    labor_cost: float
    is_completed: bool
    completed_by: Optional[uuid.UUID] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class PartLineResponse(BaseModel):
    id: uuid.UUID
    part_number: Optional[str] = None
    name: str
    brand: Optional[str] = None
    quantity: int
    unit_price: float
    total_price: float
    supplier: Optional[str] = None
    is_installed: bool
    installed_by: Optional[uuid.UUID] = None
    installed_at: Optional[datetime] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class ApprovalResponse(BaseModel):
    id: uuid.UUID
    type: str
    amount: Optional[float] = None
    status: str
    requested_by: Optional[uuid.UUID] = None
    requested_at: datetime
    resolved_by: Optional[uuid.UUID] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None
    rejection_reason: Optional[str] = None

    class Config:
        from_attributes = True


class TimeEntryResponse(BaseModel):
    id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    activity: str
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class CostsSchema(BaseModel):
    labor: float = 0.0
    parts: float = 0.0
    materials: float = 0.0
    external: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    total: float = 0.0


class CostAdjustments(BaseModel):
    """Hand-entered cost components; labor, parts and total are always derived."""
    materials: Optional[float] = Field(default=None, ge=0)
    external: Optional[float] = Field(default=None, ge=0)
    tax: Optional[float] = Field(default=None, ge=0)
    discount: Optional[float] = Field(default=None, ge=0)


# Work order
class WorkOrderBase(BaseModel):
    vehicle_id: uuid.UUID
    branch_id: Optional[uuid.UUID] = None  # Defaults to the vehicle's branch
    type: WorkOrderType
    priority: WorkOrderPriority = WorkOrderPriority.medium
    scheduled_date: datetime
    estimated_duration: float = Field(default=1.0, gt=0)  # Hours
    odometer_reading: Optional[int] = Field(default=None, ge=0)  # Defaults to the vehicle's odometer
    assigned_to_id: Optional[uuid.UUID] = None
    title: Optional[str] = Field(default=None, max_length=200)
    description: str = Field(min_length=1)
    symptoms: Optional[str] = None
    notes: Optional[str] = None


class WorkOrderCreate(WorkOrderBase):
    services: List[ServiceLineCreate] = []
    parts: List[PartLineCreate] = []
    costs: Optional[CostAdjustments] = None


class WorkOrderUpdate(BaseModel):
    type: Optional[WorkOrderType] = None
    priority: Optional[WorkOrderPriority] = None
    scheduled_date: Optional[datetime] = None
    estimated_duration: Optional[float] = Field(default=None, gt=0)
    odometer_reading: Optional[int] = Field(default=None, ge=0)
    assigned_to_id: Optional[uuid.UUID] = None
    title: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = None
    symptoms: Optional[str] = None
    diagnosis: Optional[str] = None
    work_performed: Optional[str] = None
    recommendations: Optional[str] = None
    notes: Optional[str] = None
    costs: Optional[CostAdjustments] = None
    add_services: List[ServiceLineCreate] = []
    add_parts: List[PartLineCreate] = []
    remove_service_ids: List[uuid.UUID] = []
    remove_part_ids: List[uuid.UUID] = []

    @field_validator("description")
    @classmethod
    def _description_not_blank(cls, v):
        if v is not None and not v.strip():
            raise ValueError("description cannot be blank")
        return v

    def is_structural(self) -> bool:
        return bool(self.add_services or self.add_parts or self.remove_service_ids or self.remove_part_ids)


class WorkOrderStatusUpdate(BaseModel):
    status: WorkOrderStatus
    notes: Optional[str] = None


class TimeEntryCreate(BaseModel):
    start_time: datetime
    end_time: datetime
    activity: str = Field(min_length=1, max_length=255)
    notes: Optional[str] = None
    user_id: Optional[uuid.UUID] = None  # Defaults to the acting user


class ServiceCompletion(BaseModel):
    notes: Optional[str] = None


class PartInstallation(BaseModel):
    notes: Optional[str] = None


class ApprovalCreate(BaseModel):
    type: ApprovalType
    amount: Optional[float] = Field(default=None, ge=0)
    notes: Optional[str] = None


class ApprovalDecision(BaseModel):
    notes: Optional[str] = None


class ApprovalRejection(BaseModel):
    reason: str = Field(min_length=1)


class WorkOrderResponse(BaseModel):
    id: uuid.UUID
    work_order_number: str
    company_id: uuid.UUID
    branch_id: uuid.UUID
    vehicle_id: uuid.UUID
    assigned_to_id: Optional[uuid.UUID] = None
    type: str
    priority: str
    status: str
    scheduled_date: datetime
    start_date: Optional[datetime] = None
    completed_date: Optional[datetime] = None
    canceled_date: Optional[datetime] = None
    estimated_duration: Optional[float] = None
    actual_duration: Optional[float] = None
    odometer_reading: int
    title: Optional[str] = None
    description: str
    symptoms: Optional[str] = None
    diagnosis: Optional[str] = None
    work_performed: Optional[str] = None
    recommendations: Optional[str] = None
    notes: Optional[str] = None
    costs: CostsSchema
    services: List[ServiceLineResponse] = []
    parts: List[PartLineResponse] = []
    approvals: List[ApprovalResponse] = []
    time_entries: List[TimeEntryResponse] = []
    is_active: bool
    created_by: Optional[uuid.UUID] = None
    last_modified_by: Optional[uuid.UUID] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    version: int
    # Derived
    completion_percentage: int = 0
    total_parts_quantity: int = 0
    is_overdue: bool = False
    estimated_completion: Optional[datetime] = None

    class Config:
        from_attributes = True

    @classmethod
    def from_entity(cls, wo, now: Optional[datetime] = None) -> "WorkOrderResponse":
        # The derived names are methods on the entity
        data = {name: getattr(wo, name) for name in cls.model_fields if name not in _DERIVED_FIELDS}
        data.update(
            completion_percentage=wo.completion_percentage(),
            total_parts_quantity=wo.total_parts_quantity(),
            is_overdue=wo.is_overdue(now),
            estimated_completion=wo.estimated_completion(now),
        )
        return cls.model_validate(data, from_attributes=True)


_DERIVED_FIELDS = {"completion_percentage", "total_parts_quantity", "is_overdue", "estimated_completion"}


class WorkOrderListResponse(BaseModel):
    items: List[WorkOrderResponse]
    total: int
    page: int
    limit: int


class DeleteResult(BaseModel):
    id: uuid.UUID
    outcome: str  # deleted|deactivated
