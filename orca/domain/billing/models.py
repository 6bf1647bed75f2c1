"""Patient billing records.

Accounts roll up the balances of their invoices; payment plans own their
schedule of installments; credits and estimates hang off an account.
"""
from sqlalchemy import (
    Column, String, Text, Date, DateTime, Integer, Float, Boolean, JSON, Enum, ForeignKey, UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.orm import relationship
import enum

from orca.infrastructure.database import Base
from orca.infrastructure.encryption import EncryptedString
from orca.models.mixins import ClinicScopedMixin, gen_uuid, utcnow


class AccountStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    COLLECTIONS = "COLLECTIONS"
    CLOSED = "CLOSED"
    SETTLED = "SETTLED"


class AccountType(str, enum.Enum):
    INDIVIDUAL = "INDIVIDUAL"
    FAMILY = "FAMILY"
    GUARANTOR = "GUARANTOR"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    SENT = "SENT"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"
    VOID = "VOID"


class PaymentPlanStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    DEFAULTED = "DEFAULTED"
    CANCELLED = "CANCELLED"


class PaymentFrequency(str, enum.Enum):
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


class ScheduledPaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


class CreditSource(str, enum.Enum):
    OVERPAYMENT = "OVERPAYMENT"
    INSURANCE_REFUND = "INSURANCE_REFUND"
    ADJUSTMENT = "ADJUSTMENT"
    PROMOTIONAL = "PROMOTIONAL"
    TRANSFER = "TRANSFER"


class CreditStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    APPLIED = "APPLIED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


class EstimateStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PRESENTED = "PRESENTED"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class StatementDeliveryMethod(str, enum.Enum):
    EMAIL = "EMAIL"
    MAIL = "MAIL"
    PORTAL = "PORTAL"


# Invoices in these states never count toward a balance
EXCLUDED_BALANCE_STATUSES = (InvoiceStatus.DRAFT, InvoiceStatus.VOID, InvoiceStatus.CANCELLED)

# Invoices that can still receive money
PAYABLE_INVOICE_STATUSES = (
    InvoiceStatus.PENDING, InvoiceStatus.SENT, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE,
)


class FamilyGroup(ClinicScopedMixin, Base):
    __tablename__ = "family_groups"

    group_name = Column(String(200), nullable=False)
    primary_guarantor_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    consolidate_statements = Column(Boolean, default=True)


class PatientAccount(ClinicScopedMixin, Base):
    __tablename__ = "patient_accounts"

    account_number = Column(String(20), nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    guarantor_id = Column(String(36), ForeignKey("patients.id"), nullable=True)
    family_group_id = Column(String(36), ForeignKey("family_groups.id"), nullable=True, index=True)

    account_type = Column(Enum(AccountType), nullable=False, default=AccountType.INDIVIDUAL)
    status = Column(Enum(AccountStatus), nullable=False, default=AccountStatus.ACTIVE, index=True)

    # Rolled up from invoices and credits
    current_balance = Column(Float, nullable=False, default=0.0)
    insurance_balance = Column(Float, nullable=False, default=0.0)
    patient_balance = Column(Float, nullable=False, default=0.0)
    credit_balance = Column(Float, nullable=False, default=0.0)
    aging_30 = Column(Float, nullable=False, default=0.0)
    aging_60 = Column(Float, nullable=False, default=0.0)
    aging_90 = Column(Float, nullable=False, default=0.0)
    aging_120_plus = Column(Float, nullable=False, default=0.0)

    last_payment_date = Column(DateTime, nullable=True)
    last_payment_amount = Column(Float, nullable=True)
    last_statement_date = Column(Date, nullable=True)
    billing_notes = Column(Text, nullable=True)
    gateway_customer_id = Column(EncryptedString, nullable=True)

    __table_args__ = (
        UniqueConstraint("clinic_id", "account_number", name="uq_patient_accounts_number"),
    )


class Invoice(ClinicScopedMixin, Base):
    __tablename__ = "invoices"

    invoice_number = Column(String(20), nullable=False)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    treatment_plan_id = Column(String(36), nullable=True)
    appointment_id = Column(String(36), nullable=True)

    invoice_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT, index=True)

    subtotal = Column(Float, nullable=False, default=0.0)
    adjustments = Column(Float, nullable=False, default=0.0)
    insurance_amount = Column(Float, nullable=False, default=0.0)
    patient_amount = Column(Float, nullable=False, default=0.0)
    paid_amount = Column(Float, nullable=False, default=0.0)
    balance = Column(Float, nullable=False, default=0.0)

    notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    void_reason = Column(String(500), nullable=True)

    items = relationship(
        "InvoiceItem",
        back_populates="invoice",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="InvoiceItem.line_number",
    )

    __table_args__ = (
        UniqueConstraint("clinic_id", "invoice_number", name="uq_invoices_number"),
        CheckConstraint("balance >= 0", name="ck_invoices_balance_non_negative"),
    )


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    invoice_id = Column(String(36), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False, default=1)
    procedure_code = Column(String(20), nullable=False)
    procedure_id = Column(String(36), nullable=True)
    description = Column(String(500), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    insurance_amount = Column(Float, nullable=False, default=0.0)
    patient_amount = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)
    tooth_numbers = Column(JSON, nullable=True)

    invoice = relationship("Invoice", back_populates="items")


class PaymentPlan(ClinicScopedMixin, Base):
    __tablename__ = "payment_plans"

    plan_number = Column(String(20), nullable=False)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    payment_method_id = Column(String(36), ForeignKey("payment_methods.id"), nullable=True)

    total_amount = Column(Float, nullable=False)
    down_payment = Column(Float, nullable=False, default=0.0)
    financed_amount = Column(Float, nullable=False)
    number_of_payments = Column(Integer, nullable=False)
    monthly_payment = Column(Float, nullable=False)
    frequency = Column(Enum(PaymentFrequency), nullable=False, default=PaymentFrequency.MONTHLY)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=True)
    next_payment_date = Column(Date, nullable=True)
    completed_payments = Column(Integer, nullable=False, default=0)
    remaining_balance = Column(Float, nullable=False, default=0.0)

    status = Column(Enum(PaymentPlanStatus), nullable=False, default=PaymentPlanStatus.PENDING, index=True)
    auto_pay_enabled = Column(Boolean, nullable=False, default=False)

    notes = Column(Text, nullable=True)
    activated_at = Column(DateTime, nullable=True)
    paused_at = Column(DateTime, nullable=True)
    pause_reason = Column(String(500), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancel_reason = Column(String(500), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("clinic_id", "plan_number", name="uq_payment_plans_number"),
        CheckConstraint("number_of_payments >= 1", name="ck_payment_plans_installments"),
    )


class ScheduledPayment(Base):
    __tablename__ = "scheduled_payments"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    clinic_id = Column(String(36), nullable=False, index=True)
    payment_plan_id = Column(String(36), ForeignKey("payment_plans.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False)

    installment_number = Column(Integer, nullable=False)
    amount = Column(Float, nullable=False)
    scheduled_date = Column(DateTime, nullable=False, index=True)
    status = Column(Enum(ScheduledPaymentStatus), nullable=False, default=ScheduledPaymentStatus.PENDING, index=True)

    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    skip_reason = Column(String(500), nullable=True)
    result_payment_id = Column(String(36), nullable=True)
    processed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CreditBalance(ClinicScopedMixin, Base):
    __tablename__ = "credit_balances"

    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    remaining_amount = Column(Float, nullable=False)
    source = Column(Enum(CreditSource), nullable=False)
    status = Column(Enum(CreditStatus), nullable=False, default=CreditStatus.AVAILABLE, index=True)
    description = Column(String(500), nullable=True)
    expires_at = Column(DateTime, nullable=True)

    source_payment_id = Column(String(36), nullable=True)
    applied_to_invoice_id = Column(String(36), nullable=True)
    applied_at = Column(DateTime, nullable=True)


class TreatmentEstimate(ClinicScopedMixin, Base):
    __tablename__ = "treatment_estimates"

    estimate_number = Column(String(20), nullable=False)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False)
    treatment_plan_id = Column(String(36), nullable=True)

    status = Column(Enum(EstimateStatus), nullable=False, default=EstimateStatus.DRAFT)
    valid_until = Column(Date, nullable=False)
    total_cost = Column(Float, nullable=False, default=0.0)
    insurance_estimate = Column(Float, nullable=False, default=0.0)
    patient_estimate = Column(Float, nullable=False, default=0.0)
    down_payment = Column(Float, nullable=False, default=0.0)
    document_url = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    presented_at = Column(DateTime, nullable=True)
    presented_by = Column(String(36), nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    declined_at = Column(DateTime, nullable=True)
    decline_reason = Column(String(500), nullable=True)
    expired_at = Column(DateTime, nullable=True)

    scenarios = relationship(
        "EstimateScenario",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        UniqueConstraint("clinic_id", "estimate_number", name="uq_treatment_estimates_number"),
    )


class EstimateScenario(Base):
    __tablename__ = "estimate_scenarios"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    estimate_id = Column(String(36), ForeignKey("treatment_estimates.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    total_cost = Column(Float, nullable=False, default=0.0)
    insurance_estimate = Column(Float, nullable=False, default=0.0)
    patient_estimate = Column(Float, nullable=False, default=0.0)
    procedures = Column(JSON, default=list)
    is_recommended = Column(Boolean, default=False)
    is_selected = Column(Boolean, default=False)


class Statement(ClinicScopedMixin, Base):
    __tablename__ = "statements"

    statement_number = Column(String(20), nullable=False)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    statement_date = Column(Date, nullable=False)
    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)

    previous_balance = Column(Float, nullable=False, default=0.0)
    new_charges = Column(Float, nullable=False, default=0.0)
    payments_received = Column(Float, nullable=False, default=0.0)
    adjustments = Column(Float, nullable=False, default=0.0)
    amount_due = Column(Float, nullable=False, default=0.0)

    delivery_method = Column(Enum(StatementDeliveryMethod), nullable=True)
    sent_at = Column(DateTime, nullable=True)
    viewed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("clinic_id", "statement_number", name="uq_statements_number"),
    )
