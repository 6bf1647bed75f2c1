"""Dental lab vendors, their product catalogue and the orders sent to them."""
from sqlalchemy import (
    Column, String, Text, Date, DateTime, Integer, Float, Boolean, JSON, Enum, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
import enum

from orca.infrastructure.database import Base
from orca.models.mixins import ClinicScopedMixin, gen_uuid, utcnow


class LabVendorStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"
    PENDING = "PENDING"


class LabProductCategory(str, enum.Enum):
    RETAINER = "RETAINER"
    APPLIANCE = "APPLIANCE"
    ALIGNER = "ALIGNER"
    INDIRECT_BONDING = "INDIRECT_BONDING"
    MODEL = "MODEL"
    SURGICAL_GUIDE = "SURGICAL_GUIDE"
    OTHER = "OTHER"


class LabOrderStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    RECEIVED = "RECEIVED"
    PATIENT_PICKUP = "PATIENT_PICKUP"
    PICKED_UP = "PICKED_UP"
    CANCELLED = "CANCELLED"
    REMAKE_REQUESTED = "REMAKE_REQUESTED"
    ON_HOLD = "ON_HOLD"


class OrderPriority(str, enum.Enum):
    LOW = "LOW"
    STANDARD = "STANDARD"
    HIGH = "HIGH"
    URGENT = "URGENT"


class StatusChangeSource(str, enum.Enum):
    USER = "USER"
    LAB = "LAB"
    SYSTEM = "SYSTEM"
    SHIPPING = "SHIPPING"


class Arch(str, enum.Enum):
    UPPER = "UPPER"
    LOWER = "LOWER"
    BOTH = "BOTH"


CANCELLABLE_ORDER_STATUSES = (
    LabOrderStatus.DRAFT,
    LabOrderStatus.SUBMITTED,
    LabOrderStatus.ACKNOWLEDGED,
    LabOrderStatus.IN_PROGRESS,
    LabOrderStatus.ON_HOLD,
)

# Timestamp column stamped when an order enters the status
STATUS_TIMESTAMPS = {
    LabOrderStatus.SUBMITTED: "submitted_at",
    LabOrderStatus.SHIPPED: "shipped_at",
    LabOrderStatus.RECEIVED: "received_at",
    LabOrderStatus.PICKED_UP: "picked_up_at",
    LabOrderStatus.CANCELLED: "cancelled_at",
}


class LabVendor(ClinicScopedMixin, Base):
    __tablename__ = "lab_vendors"

    name = Column(String(200), nullable=False)
    code = Column(String(20), nullable=False)
    legal_name = Column(String(200), nullable=True)
    status = Column(Enum(LabVendorStatus), nullable=False, default=LabVendorStatus.ACTIVE, index=True)

    contact_name = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    website = Column(String(255), nullable=True)
    address = Column(JSON, nullable=True)

    default_turnaround_days = Column(Integer, nullable=False, default=7)
    capabilities = Column(JSON, nullable=False, default=list)
    payment_terms_days = Column(Integer, nullable=False, default=30)
    notes = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("clinic_id", "code", name="uq_lab_vendors_code"),
    )


class LabProduct(ClinicScopedMixin, Base):
    __tablename__ = "lab_products"

    vendor_id = Column(String(36), ForeignKey("lab_vendors.id"), nullable=True, index=True)
    name = Column(String(200), nullable=False)
    description = Column(String(1000), nullable=True)
    sku = Column(String(50), nullable=True)
    category = Column(Enum(LabProductCategory), nullable=False, index=True)
    base_price = Column(Float, nullable=False, default=0.0)
    turnaround_days = Column(Integer, nullable=False, default=7)
    rush_turnaround_days = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class LabOrder(ClinicScopedMixin, Base):
    __tablename__ = "lab_orders"

    order_number = Column(String(20), nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    vendor_id = Column(String(36), ForeignKey("lab_vendors.id"), nullable=True, index=True)

    status = Column(Enum(LabOrderStatus), nullable=False, default=LabOrderStatus.DRAFT, index=True)
    priority = Column(Enum(OrderPriority), nullable=False, default=OrderPriority.STANDARD)
    is_rush = Column(Boolean, nullable=False, default=False)
    rush_reason = Column(String(500), nullable=True)

    order_date = Column(Date, nullable=False)
    needed_by_date = Column(Date, nullable=True, index=True)
    total_cost = Column(Float, nullable=False, default=0.0)
    clinic_notes = Column(Text, nullable=True)

    submitted_at = Column(DateTime, nullable=True)
    shipped_at = Column(DateTime, nullable=True)
    received_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    items = relationship(
        "LabOrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="LabOrderItem.line_number",
    )

    __table_args__ = (
        UniqueConstraint("clinic_id", "order_number", name="uq_lab_orders_number"),
    )


class LabOrderItem(Base):
    __tablename__ = "lab_order_items"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    order_id = Column(String(36), ForeignKey("lab_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False, default=1)
    product_id = Column(String(36), ForeignKey("lab_products.id"), nullable=False)
    product_name = Column(String(200), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)
    arch = Column(Enum(Arch), nullable=True)
    tooth_numbers = Column(JSON, nullable=True)
    notes = Column(String(1000), nullable=True)

    order = relationship("LabOrder", back_populates="items")


class LabOrderStatusLog(Base):
    __tablename__ = "lab_order_status_logs"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    order_id = Column(String(36), ForeignKey("lab_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(Enum(LabOrderStatus), nullable=True)
    to_status = Column(Enum(LabOrderStatus), nullable=False)
    source = Column(Enum(StatusChangeSource), nullable=False, default=StatusChangeSource.USER)
    notes = Column(String(500), nullable=True)
    changed_by = Column(String(36), nullable=True)
    changed_at = Column(DateTime, default=utcnow, nullable=False)
