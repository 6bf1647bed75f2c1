from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date
import enum

from orca.api.v1.common import ORMModel
from orca.domain.lab.models import (
    LabVendorStatus, LabProductCategory, LabOrderStatus, OrderPriority, StatusChangeSource, Arch,
)

MAX_BATCH_ORDERS = 50


# Vendors

class VendorCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    code: str = Field(..., min_length=1, max_length=20, pattern=r"^[A-Z0-9_-]+$")
    legal_name: Optional[str] = Field(None, max_length=200)
    status: LabVendorStatus = LabVendorStatus.ACTIVE
    contact_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=255)
    website: Optional[str] = Field(None, max_length=255)
    address: Optional[Dict[str, Any]] = None
    default_turnaround_days: int = Field(7, ge=1, le=90)
    capabilities: List[LabProductCategory] = []
    payment_terms_days: int = Field(30, ge=0, le=365)
    notes: Optional[str] = Field(None, max_length=2000)


class VendorUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    legal_name: Optional[str] = Field(None, max_length=200)
    status: Optional[LabVendorStatus] = None
    contact_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=255)
    website: Optional[str] = Field(None, max_length=255)
    address: Optional[Dict[str, Any]] = None
    default_turnaround_days: Optional[int] = Field(None, ge=1, le=90)
    capabilities: Optional[List[LabProductCategory]] = None
    payment_terms_days: Optional[int] = Field(None, ge=0, le=365)
    notes: Optional[str] = Field(None, max_length=2000)


class VendorResponse(ORMModel):
    id: str
    name: str
    code: str
    legal_name: Optional[str] = None
    status: LabVendorStatus
    contact_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    default_turnaround_days: int
    capabilities: List[LabProductCategory] = []
    payment_terms_days: int
    notes: Optional[str] = None
    created_at: datetime


# Products

class ProductCreate(BaseModel):
    vendor_id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    sku: Optional[str] = Field(None, max_length=50)
    category: LabProductCategory
    base_price: float = Field(0.0, ge=0)
    turnaround_days: int = Field(7, ge=1, le=90)
    rush_turnaround_days: Optional[int] = Field(None, ge=1, le=90)
    is_active: bool = True


class ProductUpdate(BaseModel):
    vendor_id: Optional[str] = None
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    sku: Optional[str] = Field(None, max_length=50)
    category: Optional[LabProductCategory] = None
    base_price: Optional[float] = Field(None, ge=0)
    turnaround_days: Optional[int] = Field(None, ge=1, le=90)
    rush_turnaround_days: Optional[int] = Field(None, ge=1, le=90)
    is_active: Optional[bool] = None


class ProductResponse(ORMModel):
    id: str
    vendor_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    sku: Optional[str] = None
    category: LabProductCategory
    base_price: float
    turnaround_days: int
    rush_turnaround_days: Optional[int] = None
    is_active: bool
    created_at: datetime


# Orders

class OrderItemCreate(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1, le=100)
    unit_price: Optional[float] = Field(None, ge=0)
    arch: Optional[Arch] = None
    tooth_numbers: Optional[List[int]] = None
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("tooth_numbers")
    @classmethod
    def valid_teeth(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value and any(tooth < 1 or tooth > 32 for tooth in value):
            raise ValueError("Tooth numbers must be between 1 and 32")
        return value


class OrderCreate(BaseModel):
    patient_id: str
    vendor_id: Optional[str] = None
    priority: OrderPriority = OrderPriority.STANDARD
    is_rush: bool = False
    rush_reason: Optional[str] = Field(None, max_length=500)
    needed_by_date: Optional[date] = None
    clinic_notes: Optional[str] = Field(None, max_length=2000)
    items: List[OrderItemCreate] = []


class OrderUpdate(BaseModel):
    vendor_id: Optional[str] = None
    priority: Optional[OrderPriority] = None
    is_rush: Optional[bool] = None
    rush_reason: Optional[str] = Field(None, max_length=500)
    needed_by_date: Optional[date] = None
    clinic_notes: Optional[str] = Field(None, max_length=2000)
    items: Optional[List[OrderItemCreate]] = None


class OrderStatusUpdate(BaseModel):
    status: LabOrderStatus
    notes: Optional[str] = Field(None, max_length=500)
    source: StatusChangeSource = StatusChangeSource.USER


class OrderItemResponse(ORMModel):
    id: str
    line_number: int
    product_id: str
    product_name: Optional[str] = None
    quantity: int
    unit_price: float
    total: float
    arch: Optional[Arch] = None
    tooth_numbers: Optional[List[int]] = None
    notes: Optional[str] = None


class OrderResponse(ORMModel):
    id: str
    order_number: str
    patient_id: str
    vendor_id: Optional[str] = None
    status: LabOrderStatus
    priority: OrderPriority
    is_rush: bool
    rush_reason: Optional[str] = None
    order_date: date
    needed_by_date: Optional[date] = None
    total_cost: float
    clinic_notes: Optional[str] = None
    submitted_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    received_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    items: List[OrderItemResponse] = []
    created_at: datetime


class StatusLogResponse(ORMModel):
    id: str
    order_id: str
    from_status: Optional[LabOrderStatus] = None
    to_status: LabOrderStatus
    source: StatusChangeSource
    notes: Optional[str] = None
    changed_by: Optional[str] = None
    changed_at: datetime


# Batch operations

class BatchOperation(str, enum.Enum):
    UPDATE_STATUS = "UPDATE_STATUS"
    UPDATE_PRIORITY = "UPDATE_PRIORITY"
    ASSIGN_VENDOR = "ASSIGN_VENDOR"
    SUBMIT = "SUBMIT"
    CANCEL = "CANCEL"
    PRINT = "PRINT"
    EXPORT = "EXPORT"


class PrintFormat(str, enum.Enum):
    PRESCRIPTION = "PRESCRIPTION"
    LABEL = "LABEL"
    PACKING_SLIP = "PACKING_SLIP"


class ExportFilters(BaseModel):
    status: Optional[LabOrderStatus] = None
    vendor_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class BatchRequest(BaseModel):
    operation: BatchOperation
    order_ids: List[str] = Field(default_factory=list, max_length=MAX_BATCH_ORDERS)
    status: Optional[LabOrderStatus] = None
    notes: Optional[str] = Field(None, max_length=500)
    priority: Optional[OrderPriority] = None
    vendor_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=500)
    format: PrintFormat = PrintFormat.PRESCRIPTION
    filters: Optional[ExportFilters] = None

    @model_validator(mode="after")
    def check_operation_fields(self):
        if self.operation != BatchOperation.EXPORT and not self.order_ids:
            raise ValueError("At least one order id is required")
        if self.operation == BatchOperation.UPDATE_STATUS and not self.status:
            raise ValueError("status is required for UPDATE_STATUS")
        if self.operation == BatchOperation.UPDATE_PRIORITY and not self.priority:
            raise ValueError("priority is required for UPDATE_PRIORITY")
        if self.operation == BatchOperation.ASSIGN_VENDOR and not self.vendor_id:
            raise ValueError("vendor_id is required for ASSIGN_VENDOR")
        return self


class BatchItemResult(BaseModel):
    order_id: str
    order_number: Optional[str] = None
    success: bool
    error: Optional[str] = None


class BatchResult(BaseModel):
    operation: BatchOperation
    processed: int
    successful: int
    failed: int
    results: List[BatchItemResult] = []
    documents: Optional[List[Dict[str, Any]]] = None
    rows: Optional[List[Dict[str, Any]]] = None
