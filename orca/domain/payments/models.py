from sqlalchemy import (
    Column, String, Text, DateTime, Integer, Float, Boolean, JSON, Enum, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
import enum

from orca.infrastructure.database import Base
from orca.infrastructure.encryption import EncryptedString
from orca.models.mixins import ClinicScopedMixin, gen_uuid, utcnow


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


class PaymentType(str, enum.Enum):
    PATIENT = "PATIENT"
    INSURANCE = "INSURANCE"
    OTHER = "OTHER"


class PaymentMethodType(str, enum.Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DEBIT_CARD = "DEBIT_CARD"
    ACH = "ACH"
    CASH = "CASH"
    CHECK = "CHECK"
    E_TRANSFER = "E_TRANSFER"
    WIRE = "WIRE"
    OTHER = "OTHER"


class PaymentSource(str, enum.Enum):
    FRONT_DESK = "FRONT_DESK"
    PORTAL = "PORTAL"
    PAYMENT_LINK = "PAYMENT_LINK"
    PAYMENT_PLAN = "PAYMENT_PLAN"
    INSURANCE = "INSURANCE"
    MAIL = "MAIL"


class PaymentGatewayName(str, enum.Enum):
    STRIPE = "STRIPE"
    MANUAL = "MANUAL"


class RefundStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RefundReason(str, enum.Enum):
    OVERPAYMENT = "OVERPAYMENT"
    DUPLICATE_PAYMENT = "DUPLICATE_PAYMENT"
    TREATMENT_CANCELLED = "TREATMENT_CANCELLED"
    INSURANCE_ADJUSTMENT = "INSURANCE_ADJUSTMENT"
    PATIENT_REQUEST = "PATIENT_REQUEST"
    OTHER = "OTHER"


class StoredMethodType(str, enum.Enum):
    CARD = "CARD"
    BANK_ACCOUNT = "BANK_ACCOUNT"


class StoredMethodStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    REMOVED = "REMOVED"


class PaymentLinkStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAID = "PAID"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


CARD_METHODS = (PaymentMethodType.CREDIT_CARD, PaymentMethodType.DEBIT_CARD)
IMMEDIATE_METHODS = (PaymentMethodType.CASH, PaymentMethodType.CHECK)
REFUNDABLE_PAYMENT_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)


class PaymentMethod(ClinicScopedMixin, Base):
    """Card or bank reference kept with the gateway, never the raw number"""
    __tablename__ = "payment_methods"

    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    method_type = Column(Enum(StoredMethodType), nullable=False, default=StoredMethodType.CARD)
    card_brand = Column(String(30), nullable=True)
    last_four = Column(String(4), nullable=True)
    expiry_month = Column(Integer, nullable=True)
    expiry_year = Column(Integer, nullable=True)
    bank_name = Column(String(100), nullable=True)
    nickname = Column(String(100), nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    status = Column(Enum(StoredMethodStatus), nullable=False, default=StoredMethodStatus.ACTIVE)

    gateway = Column(Enum(PaymentGatewayName), nullable=False, default=PaymentGatewayName.STRIPE)
    gateway_customer_id = Column(EncryptedString, nullable=True)
    gateway_method_id = Column(EncryptedString, nullable=True)
    removed_at = Column(DateTime, nullable=True)


class Payment(ClinicScopedMixin, Base):
    __tablename__ = "payments"

    payment_number = Column(String(20), nullable=False)
    receipt_number = Column(String(20), nullable=True)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True)
    payment_plan_id = Column(String(36), ForeignKey("payment_plans.id"), nullable=True)
    payment_method_id = Column(String(36), ForeignKey("payment_methods.id"), nullable=True)

    amount = Column(Float, nullable=False)
    refunded_amount = Column(Float, nullable=False, default=0.0)
    payment_date = Column(DateTime, nullable=False, default=utcnow, index=True)
    payment_type = Column(Enum(PaymentType), nullable=False, default=PaymentType.PATIENT)
    method = Column(Enum(PaymentMethodType), nullable=False)
    source = Column(Enum(PaymentSource), nullable=False, default=PaymentSource.FRONT_DESK)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)

    gateway = Column(Enum(PaymentGatewayName), nullable=True)
    gateway_transaction_id = Column(String(100), nullable=True)
    gateway_status = Column(String(50), nullable=True)
    failure_reason = Column(String(500), nullable=True)

    check_number = Column(String(50), nullable=True)
    reference_number = Column(String(100), nullable=True)
    payment_link_code = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    allocations = relationship(
        "PaymentAllocation",
        back_populates="payment",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("clinic_id", "payment_number", name="uq_payments_number"),
    )


class PaymentAllocation(Base):
    __tablename__ = "payment_allocations"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    payment_id = Column(String(36), ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    payment = relationship("Payment", back_populates="allocations")


class Refund(ClinicScopedMixin, Base):
    __tablename__ = "refunds"

    refund_number = Column(String(20), nullable=False)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False)
    amount = Column(Float, nullable=False)
    reason = Column(Enum(RefundReason), nullable=False)
    reason_details = Column(Text, nullable=True)
    status = Column(Enum(RefundStatus), nullable=False, default=RefundStatus.PENDING, index=True)

    gateway_refund_id = Column(String(100), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    requested_by = Column(String(36), nullable=True)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(36), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String(500), nullable=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("clinic_id", "refund_number", name="uq_refunds_number"),
    )


class PaymentLink(ClinicScopedMixin, Base):
    __tablename__ = "payment_links"

    code = Column(String(20), nullable=False, unique=True, index=True)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    invoice_id = Column(String(36), ForeignKey("invoices.id"), nullable=True)
    amount = Column(Float, nullable=False)
    description = Column(String(500), nullable=True)
    status = Column(Enum(PaymentLinkStatus), nullable=False, default=PaymentLinkStatus.ACTIVE, index=True)
    expires_at = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    payment_id = Column(String(36), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
