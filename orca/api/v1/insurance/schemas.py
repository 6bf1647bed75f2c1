from pydantic import BaseModel, EmailStr, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date

from orca.api.v1.common import ORMModel
from orca.domain.insurance.models import (
    InsuranceType, InsurancePriority, RelationToSubscriber, ClaimType, ClaimStatus, SubmissionMethod,
    ClaimItemStatus, EOBReceiptMethod, EOBStatus,
)


# Companies

class InsuranceCompanyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    payer_id: str = Field(..., min_length=1, max_length=50)
    insurance_type: InsuranceType = InsuranceType.DENTAL
    phone: Optional[str] = Field(None, max_length=20)
    fax: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None
    website: Optional[str] = Field(None, max_length=255)
    claims_address: Optional[str] = None
    edi_enabled: bool = True
    claim_filing_limit_days: Optional[int] = Field(None, ge=1)
    requires_preauth: bool = False
    notes: Optional[str] = Field(None, max_length=2000)


class InsuranceCompanyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    payer_id: Optional[str] = Field(None, min_length=1, max_length=50)
    insurance_type: Optional[InsuranceType] = None
    phone: Optional[str] = Field(None, max_length=20)
    fax: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None
    website: Optional[str] = Field(None, max_length=255)
    claims_address: Optional[str] = None
    edi_enabled: Optional[bool] = None
    claim_filing_limit_days: Optional[int] = Field(None, ge=1)
    requires_preauth: Optional[bool] = None
    notes: Optional[str] = Field(None, max_length=2000)
    is_active: Optional[bool] = None


class InsuranceCompanyResponse(ORMModel):
    id: str
    name: str
    payer_id: str
    insurance_type: InsuranceType
    phone: Optional[str] = None
    fax: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    claims_address: Optional[str] = None
    edi_enabled: bool
    claim_filing_limit_days: Optional[int] = None
    requires_preauth: bool
    notes: Optional[str] = None
    is_active: bool
    created_at: datetime


# Patient insurance

class PatientInsuranceCreate(BaseModel):
    patient_id: str
    insurance_company_id: str
    priority: InsurancePriority = InsurancePriority.PRIMARY
    subscriber_id: str = Field(..., min_length=1, max_length=50)
    subscriber_name: str = Field(..., min_length=1, max_length=200)
    subscriber_dob: Optional[date] = None
    relation_to_subscriber: RelationToSubscriber = RelationToSubscriber.SELF
    group_number: Optional[str] = Field(None, max_length=50)
    policy_number: Optional[str] = Field(None, max_length=50)
    effective_date: date
    termination_date: Optional[date] = None
    has_ortho_benefit: bool = False
    ortho_lifetime_max: Optional[float] = Field(None, ge=0)
    ortho_used_amount: float = Field(0, ge=0)
    ortho_coverage_percent: Optional[float] = Field(None, ge=0, le=100)
    ortho_deductible: Optional[float] = Field(None, ge=0)
    ortho_deductible_met: float = Field(0, ge=0)
    ortho_waiting_period_months: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def check_dates(self):
        if self.termination_date and self.termination_date < self.effective_date:
            raise ValueError("termination_date must not precede effective_date")
        return self


class PatientInsuranceUpdate(BaseModel):
    insurance_company_id: Optional[str] = None
    priority: Optional[InsurancePriority] = None
    subscriber_id: Optional[str] = Field(None, min_length=1, max_length=50)
    subscriber_name: Optional[str] = Field(None, min_length=1, max_length=200)
    subscriber_dob: Optional[date] = None
    relation_to_subscriber: Optional[RelationToSubscriber] = None
    group_number: Optional[str] = Field(None, max_length=50)
    policy_number: Optional[str] = Field(None, max_length=50)
    effective_date: Optional[date] = None
    termination_date: Optional[date] = None
    is_active: Optional[bool] = None
    has_ortho_benefit: Optional[bool] = None
    ortho_lifetime_max: Optional[float] = Field(None, ge=0)
    ortho_used_amount: Optional[float] = Field(None, ge=0)
    ortho_coverage_percent: Optional[float] = Field(None, ge=0, le=100)
    ortho_deductible: Optional[float] = Field(None, ge=0)
    ortho_deductible_met: Optional[float] = Field(None, ge=0)
    ortho_waiting_period_months: Optional[int] = Field(None, ge=0)


class PatientInsuranceResponse(ORMModel):
    id: str
    patient_id: str
    insurance_company_id: str
    priority: InsurancePriority
    subscriber_id: str
    subscriber_name: str
    subscriber_dob: Optional[date] = None
    relation_to_subscriber: RelationToSubscriber
    group_number: Optional[str] = None
    policy_number: Optional[str] = None
    effective_date: date
    termination_date: Optional[date] = None
    is_active: bool
    has_ortho_benefit: bool
    ortho_lifetime_max: Optional[float] = None
    ortho_used_amount: float
    ortho_coverage_percent: Optional[float] = None
    ortho_deductible: Optional[float] = None
    ortho_deductible_met: float
    ortho_waiting_period_months: Optional[int] = None
    created_at: datetime


class BenefitAvailability(BaseModel):
    available: bool
    reason: Optional[str] = None
    remaining: float
    estimated_payment: Optional[float] = None


# Claims

class ClaimItemCreate(BaseModel):
    procedure_code: str = Field(..., min_length=1, max_length=20)
    description: str = Field(..., min_length=1, max_length=500)
    service_date: date
    quantity: int = Field(1, ge=1)
    tooth_numbers: Optional[List[str]] = None
    billed_amount: float = Field(..., ge=0)


class ClaimCreate(BaseModel):
    patient_id: str
    patient_insurance_id: str
    service_date: date
    filing_date: Optional[date] = None
    preauth_number: Optional[str] = Field(None, max_length=50)
    rendering_provider_id: Optional[str] = None
    npi: Optional[str] = Field(None, max_length=20)
    notes: Optional[str] = None
    items: List[ClaimItemCreate] = Field(..., min_length=1)


class ClaimUpdate(BaseModel):
    service_date: Optional[date] = None
    filing_date: Optional[date] = None
    preauth_number: Optional[str] = Field(None, max_length=50)
    rendering_provider_id: Optional[str] = None
    npi: Optional[str] = Field(None, max_length=20)
    payer_claim_id: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = None
    items: Optional[List[ClaimItemCreate]] = Field(None, min_length=1)


class ClaimSubmit(BaseModel):
    submission_method: SubmissionMethod = SubmissionMethod.ELECTRONIC


class ClaimVoid(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ClaimAppeal(BaseModel):
    appeal_notes: str = Field(..., min_length=1, max_length=2000)


class ClaimResubmit(BaseModel):
    correction_notes: Optional[str] = Field(None, max_length=2000)
    items: Optional[List[ClaimItemCreate]] = Field(None, min_length=1)


class ClaimStatusUpdate(BaseModel):
    status: ClaimStatus
    reason: Optional[str] = Field(None, max_length=1000)
    payer_claim_id: Optional[str] = Field(None, max_length=100)
    denial_reason: Optional[str] = None
    denial_date: Optional[date] = None

    @model_validator(mode="after")
    def check_denial(self):
        if self.status == ClaimStatus.DENIED and not self.denial_reason:
            raise ValueError("denial_reason is required when denying a claim")
        return self


class ClaimItemResponse(ORMModel):
    id: str
    line_number: int
    procedure_code: str
    description: str
    service_date: date
    quantity: int
    tooth_numbers: Optional[List[str]] = None
    billed_amount: float
    allowed_amount: Optional[float] = None
    paid_amount: float
    adjustment_amount: float
    status: ClaimItemStatus
    denial_code: Optional[str] = None
    denial_reason: Optional[str] = None


class ClaimResponse(ORMModel):
    id: str
    clinic_id: str
    claim_number: str
    patient_id: str
    patient_insurance_id: str
    insurance_company_id: str
    original_claim_id: Optional[str] = None
    claim_type: ClaimType
    status: ClaimStatus
    service_date: date
    filing_date: Optional[date] = None
    billed_amount: float
    allowed_amount: Optional[float] = None
    paid_amount: float
    adjustment_amount: float
    patient_responsibility: Optional[float] = None
    preauth_number: Optional[str] = None
    payer_claim_id: Optional[str] = None
    submission_method: Optional[SubmissionMethod] = None
    submitted_at: Optional[datetime] = None
    response_at: Optional[datetime] = None
    denial_reason: Optional[str] = None
    denial_date: Optional[date] = None
    appeal_notes: Optional[str] = None
    appeal_date: Optional[date] = None
    notes: Optional[str] = None
    items: List[ClaimItemResponse] = []
    created_at: datetime
    updated_at: datetime


class ClaimStatusHistoryResponse(ORMModel):
    id: str
    from_status: Optional[ClaimStatus] = None
    to_status: ClaimStatus
    reason: Optional[str] = None
    changed_by: Optional[str] = None
    changed_at: datetime


class ClaimsSummaryResponse(BaseModel):
    total_claims: int
    by_status: Dict[str, int]
    total_billed: float
    total_paid: float
    average_processing_days: int
    denial_rate: float
    aging: Dict[str, Dict[str, Any]]
    appeals_due: List[Dict[str, Any]] = []


# EOBs

class EOBLineCreate(BaseModel):
    claim_item_id: Optional[str] = None
    procedure_code: Optional[str] = Field(None, max_length=20)
    billed_amount: float = Field(0, ge=0)
    allowed_amount: float = Field(0, ge=0)
    paid_amount: float = Field(0, ge=0)
    adjustment_amount: float = 0
    patient_responsibility: float = Field(0, ge=0)
    denial_code: Optional[str] = Field(None, max_length=20)
    denial_reason: Optional[str] = Field(None, max_length=500)


class EOBCreate(BaseModel):
    claim_id: Optional[str] = None
    insurance_company_id: Optional[str] = None
    eob_number: Optional[str] = Field(None, max_length=100)
    check_number: Optional[str] = Field(None, max_length=50)
    eft_number: Optional[str] = Field(None, max_length=50)
    received_date: date
    receipt_method: EOBReceiptMethod = EOBReceiptMethod.MANUAL
    total_billed: float = Field(0, ge=0)
    total_allowed: float = Field(0, ge=0)
    total_paid: float = Field(..., ge=0)
    total_adjusted: float = Field(0, ge=0)
    patient_responsibility: float = Field(0, ge=0)
    notes: Optional[str] = None
    lines: List[EOBLineCreate] = []


class EOBUpdate(BaseModel):
    claim_id: Optional[str] = None
    eob_number: Optional[str] = Field(None, max_length=100)
    check_number: Optional[str] = Field(None, max_length=50)
    eft_number: Optional[str] = Field(None, max_length=50)
    received_date: Optional[date] = None
    total_billed: Optional[float] = Field(None, ge=0)
    total_allowed: Optional[float] = Field(None, ge=0)
    total_paid: Optional[float] = Field(None, ge=0)
    total_adjusted: Optional[float] = Field(None, ge=0)
    patient_responsibility: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None
    lines: Optional[List[EOBLineCreate]] = None


class EOBPost(BaseModel):
    account_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    adjustment_reason: Optional[str] = Field(None, max_length=500)


class EOBLineResponse(ORMModel):
    id: str
    claim_item_id: Optional[str] = None
    procedure_code: Optional[str] = None
    billed_amount: float
    allowed_amount: float
    paid_amount: float
    adjustment_amount: float
    patient_responsibility: float
    denial_code: Optional[str] = None
    denial_reason: Optional[str] = None


class EOBResponse(ORMModel):
    id: str
    claim_id: Optional[str] = None
    insurance_company_id: Optional[str] = None
    eob_number: Optional[str] = None
    check_number: Optional[str] = None
    eft_number: Optional[str] = None
    received_date: date
    receipt_method: EOBReceiptMethod
    status: EOBStatus
    total_billed: float
    total_allowed: float
    total_paid: float
    total_adjusted: float
    patient_responsibility: float
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    lines: List[EOBLineResponse] = []
    created_at: datetime


class InsurancePaymentResponse(ORMModel):
    id: str
    eob_id: str
    claim_id: str
    account_id: str
    payment_id: Optional[str] = None
    payment_date: datetime
    amount: float
    adjustment_amount: float
    adjustment_reason: Optional[str] = None
    posted_at: Optional[datetime] = None


class EOBPostResponse(BaseModel):
    insurance_payment: InsurancePaymentResponse
    claim_status: ClaimStatus
    payment_id: str
