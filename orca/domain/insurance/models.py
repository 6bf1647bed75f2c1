"""Insurance carriers, patient policies, claims and payer remittances."""
from sqlalchemy import (
    Column, String, Text, Date, DateTime, Integer, Float, Boolean, JSON, Enum, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
import enum

from orca.infrastructure.database import Base
from orca.infrastructure.encryption import EncryptedString
from orca.models.mixins import ClinicScopedMixin, gen_uuid, utcnow


class InsuranceType(str, enum.Enum):
    DENTAL = "DENTAL"
    MEDICAL = "MEDICAL"
    DISCOUNT_PLAN = "DISCOUNT_PLAN"


class InsurancePriority(str, enum.Enum):
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    TERTIARY = "TERTIARY"


class RelationToSubscriber(str, enum.Enum):
    SELF = "SELF"
    SPOUSE = "SPOUSE"
    CHILD = "CHILD"
    OTHER = "OTHER"


class ClaimType(str, enum.Enum):
    ORIGINAL = "ORIGINAL"
    CORRECTED = "CORRECTED"
    REPLACEMENT = "REPLACEMENT"
    VOID = "VOID"


class ClaimStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    READY = "READY"
    SUBMITTED = "SUBMITTED"
    ACCEPTED = "ACCEPTED"
    IN_PROCESS = "IN_PROCESS"
    PAID = "PAID"
    PARTIAL = "PARTIAL"
    DENIED = "DENIED"
    APPEALED = "APPEALED"
    VOID = "VOID"
    CLOSED = "CLOSED"


class SubmissionMethod(str, enum.Enum):
    ELECTRONIC = "ELECTRONIC"
    PAPER = "PAPER"
    PORTAL = "PORTAL"


class ClaimItemStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    DENIED = "DENIED"
    ADJUSTED = "ADJUSTED"


class EOBReceiptMethod(str, enum.Enum):
    ELECTRONIC = "ELECTRONIC"
    SCANNED = "SCANNED"
    MANUAL = "MANUAL"
    PORTAL = "PORTAL"


class EOBStatus(str, enum.Enum):
    PENDING = "PENDING"
    REVIEWING = "REVIEWING"
    PROCESSED = "PROCESSED"
    DISCREPANCY = "DISCREPANCY"
    VOID = "VOID"


LOCKED_CLAIM_STATUSES = (ClaimStatus.PAID, ClaimStatus.CLOSED, ClaimStatus.VOID)
OUTSTANDING_CLAIM_STATUSES = (
    ClaimStatus.SUBMITTED, ClaimStatus.ACCEPTED, ClaimStatus.IN_PROCESS, ClaimStatus.APPEALED,
)
# Transitions a payer response may drive; the rest go through submit, void, appeal and EOB posting
PAYER_RESPONSE_STATUSES = (ClaimStatus.ACCEPTED, ClaimStatus.IN_PROCESS, ClaimStatus.DENIED)
AWAITING_RESPONSE_STATUSES = (ClaimStatus.SUBMITTED, ClaimStatus.ACCEPTED, ClaimStatus.IN_PROCESS)


class InsuranceCompany(ClinicScopedMixin, Base):
    __tablename__ = "insurance_companies"

    name = Column(String(200), nullable=False)
    payer_id = Column(String(50), nullable=False, index=True)
    insurance_type = Column(Enum(InsuranceType), nullable=False, default=InsuranceType.DENTAL)
    phone = Column(String(20), nullable=True)
    fax = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    website = Column(String(255), nullable=True)
    claims_address = Column(Text, nullable=True)
    edi_enabled = Column(Boolean, nullable=False, default=True)
    claim_filing_limit_days = Column(Integer, nullable=True)
    requires_preauth = Column(Boolean, nullable=False, default=False)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("clinic_id", "payer_id", name="uq_insurance_companies_payer"),
    )


class PatientInsurance(ClinicScopedMixin, Base):
    """A patient's coverage under one carrier, with the ortho benefit ledger"""
    __tablename__ = "patient_insurances"

    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    insurance_company_id = Column(String(36), ForeignKey("insurance_companies.id"), nullable=False, index=True)
    priority = Column(Enum(InsurancePriority), nullable=False, default=InsurancePriority.PRIMARY)

    subscriber_id = Column(EncryptedString, nullable=False)
    subscriber_name = Column(String(200), nullable=False)
    subscriber_dob = Column(Date, nullable=True)
    relation_to_subscriber = Column(Enum(RelationToSubscriber), nullable=False, default=RelationToSubscriber.SELF)
    group_number = Column(String(50), nullable=True)
    policy_number = Column(String(50), nullable=True)

    effective_date = Column(Date, nullable=False)
    termination_date = Column(Date, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    has_ortho_benefit = Column(Boolean, nullable=False, default=False)
    ortho_lifetime_max = Column(Float, nullable=True)
    ortho_used_amount = Column(Float, nullable=False, default=0.0)
    ortho_coverage_percent = Column(Float, nullable=True)
    ortho_deductible = Column(Float, nullable=True)
    ortho_deductible_met = Column(Float, nullable=False, default=0.0)
    ortho_waiting_period_months = Column(Integer, nullable=True)

    company = relationship("InsuranceCompany", lazy="selectin")


class InsuranceClaim(ClinicScopedMixin, Base):
    __tablename__ = "insurance_claims"

    claim_number = Column(String(20), nullable=False)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    patient_insurance_id = Column(String(36), ForeignKey("patient_insurances.id"), nullable=False, index=True)
    insurance_company_id = Column(String(36), ForeignKey("insurance_companies.id"), nullable=False, index=True)
    original_claim_id = Column(String(36), ForeignKey("insurance_claims.id"), nullable=True)

    claim_type = Column(Enum(ClaimType), nullable=False, default=ClaimType.ORIGINAL)
    status = Column(Enum(ClaimStatus), nullable=False, default=ClaimStatus.DRAFT, index=True)
    service_date = Column(Date, nullable=False)
    filing_date = Column(Date, nullable=True)

    billed_amount = Column(Float, nullable=False, default=0.0)
    allowed_amount = Column(Float, nullable=True)
    paid_amount = Column(Float, nullable=False, default=0.0)
    adjustment_amount = Column(Float, nullable=False, default=0.0)
    patient_responsibility = Column(Float, nullable=True)

    preauth_number = Column(String(50), nullable=True)
    rendering_provider_id = Column(String(36), nullable=True)
    npi = Column(String(20), nullable=True)
    payer_claim_id = Column(String(100), nullable=True)

    submission_method = Column(Enum(SubmissionMethod), nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    response_at = Column(DateTime, nullable=True)
    denial_reason = Column(Text, nullable=True)
    denial_date = Column(Date, nullable=True)
    appeal_notes = Column(Text, nullable=True)
    appeal_date = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    items = relationship(
        "ClaimItem",
        back_populates="claim",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ClaimItem.line_number",
    )

    __table_args__ = (
        UniqueConstraint("clinic_id", "claim_number", name="uq_insurance_claims_number"),
    )


class ClaimItem(Base):
    __tablename__ = "claim_items"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    claim_id = Column(String(36), ForeignKey("insurance_claims.id", ondelete="CASCADE"), nullable=False, index=True)
    line_number = Column(Integer, nullable=False, default=1)
    procedure_code = Column(String(20), nullable=False)
    description = Column(String(500), nullable=False)
    service_date = Column(Date, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    tooth_numbers = Column(JSON, nullable=True)
    billed_amount = Column(Float, nullable=False, default=0.0)
    allowed_amount = Column(Float, nullable=True)
    paid_amount = Column(Float, nullable=False, default=0.0)
    adjustment_amount = Column(Float, nullable=False, default=0.0)
    status = Column(Enum(ClaimItemStatus), nullable=False, default=ClaimItemStatus.PENDING)
    denial_code = Column(String(20), nullable=True)
    denial_reason = Column(String(500), nullable=True)

    claim = relationship("InsuranceClaim", back_populates="items")


class ClaimStatusHistory(Base):
    __tablename__ = "claim_status_history"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    claim_id = Column(String(36), ForeignKey("insurance_claims.id", ondelete="CASCADE"), nullable=False, index=True)
    from_status = Column(Enum(ClaimStatus), nullable=True)
    to_status = Column(Enum(ClaimStatus), nullable=False)
    reason = Column(Text, nullable=True)
    changed_by = Column(String(36), nullable=True)
    changed_at = Column(DateTime, default=utcnow, nullable=False)


class EOB(ClinicScopedMixin, Base):
    """Explanation of benefits received from a payer"""
    __tablename__ = "eobs"

    claim_id = Column(String(36), ForeignKey("insurance_claims.id"), nullable=True, index=True)
    insurance_company_id = Column(String(36), ForeignKey("insurance_companies.id"), nullable=True)
    eob_number = Column(String(100), nullable=True)
    check_number = Column(String(50), nullable=True)
    eft_number = Column(String(50), nullable=True)
    received_date = Column(Date, nullable=False)
    receipt_method = Column(Enum(EOBReceiptMethod), nullable=False, default=EOBReceiptMethod.MANUAL)
    status = Column(Enum(EOBStatus), nullable=False, default=EOBStatus.PENDING, index=True)

    total_billed = Column(Float, nullable=False, default=0.0)
    total_allowed = Column(Float, nullable=False, default=0.0)
    total_paid = Column(Float, nullable=False, default=0.0)
    total_adjusted = Column(Float, nullable=False, default=0.0)
    patient_responsibility = Column(Float, nullable=False, default=0.0)
    notes = Column(Text, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    processed_by = Column(String(36), nullable=True)
    voided_at = Column(DateTime, nullable=True)

    lines = relationship(
        "EOBLine",
        back_populates="eob",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class EOBLine(Base):
    __tablename__ = "eob_lines"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    eob_id = Column(String(36), ForeignKey("eobs.id", ondelete="CASCADE"), nullable=False, index=True)
    claim_item_id = Column(String(36), ForeignKey("claim_items.id"), nullable=True)
    procedure_code = Column(String(20), nullable=True)
    billed_amount = Column(Float, nullable=False, default=0.0)
    allowed_amount = Column(Float, nullable=False, default=0.0)
    paid_amount = Column(Float, nullable=False, default=0.0)
    adjustment_amount = Column(Float, nullable=False, default=0.0)
    patient_responsibility = Column(Float, nullable=False, default=0.0)
    denial_code = Column(String(20), nullable=True)
    denial_reason = Column(String(500), nullable=True)

    eob = relationship("EOB", back_populates="lines")


class InsurancePayment(ClinicScopedMixin, Base):
    """Remittance posted to a patient account from a processed EOB"""
    __tablename__ = "insurance_payments"

    eob_id = Column(String(36), ForeignKey("eobs.id"), nullable=False, index=True)
    claim_id = Column(String(36), ForeignKey("insurance_claims.id"), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    payment_id = Column(String(36), ForeignKey("payments.id"), nullable=True)
    payment_date = Column(DateTime, nullable=False, default=utcnow)
    amount = Column(Float, nullable=False)
    adjustment_amount = Column(Float, nullable=False, default=0.0)
    adjustment_reason = Column(String(500), nullable=True)
    posted_at = Column(DateTime, nullable=True)
    posted_by = Column(String(36), nullable=True)
