from pydantic import BaseModel, Field, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date

from orca.api.v1.common import ORMModel
from orca.domain.billing.models import (
    AccountStatus, AccountType, InvoiceStatus, PaymentPlanStatus, PaymentFrequency, ScheduledPaymentStatus,
    CreditSource, CreditStatus, EstimateStatus, StatementDeliveryMethod,
)


# Accounts

class AccountCreate(BaseModel):
    patient_id: str
    guarantor_id: Optional[str] = None
    family_group_id: Optional[str] = None
    account_type: AccountType = AccountType.INDIVIDUAL
    billing_notes: Optional[str] = None


class AccountUpdate(BaseModel):
    account_type: Optional[AccountType] = None
    guarantor_id: Optional[str] = None
    family_group_id: Optional[str] = None
    status: Optional[AccountStatus] = None
    billing_notes: Optional[str] = None


class AccountResponse(ORMModel):
    id: str
    clinic_id: str
    account_number: str
    patient_id: str
    guarantor_id: Optional[str] = None
    family_group_id: Optional[str] = None
    account_type: AccountType
    status: AccountStatus
    current_balance: float
    insurance_balance: float
    patient_balance: float
    credit_balance: float
    aging_30: float
    aging_60: float
    aging_90: float
    aging_120_plus: float
    last_payment_date: Optional[datetime] = None
    last_payment_amount: Optional[float] = None
    last_statement_date: Optional[date] = None
    billing_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# Family groups

class FamilyGroupCreate(BaseModel):
    group_name: str = Field(..., min_length=1, max_length=200)
    primary_guarantor_id: str
    consolidate_statements: bool = True


class FamilyGroupUpdate(BaseModel):
    group_name: Optional[str] = Field(None, min_length=1, max_length=200)
    primary_guarantor_id: Optional[str] = None
    consolidate_statements: Optional[bool] = None


class FamilyGroupMember(BaseModel):
    account_id: str


class FamilyGroupResponse(ORMModel):
    id: str
    group_name: str
    primary_guarantor_id: str
    consolidate_statements: bool
    created_at: datetime


# Invoices

class InvoiceItemCreate(BaseModel):
    procedure_code: str = Field(..., min_length=1, max_length=20)
    procedure_id: Optional[str] = None
    description: str = Field(..., min_length=1, max_length=500)
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    insurance_amount: float = Field(0, ge=0)
    patient_amount: Optional[float] = Field(None, ge=0)
    tooth_numbers: Optional[List[str]] = None


class InvoiceCreate(BaseModel):
    account_id: str
    patient_id: str
    treatment_plan_id: Optional[str] = None
    appointment_id: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None
    items: List[InvoiceItemCreate] = Field(..., min_length=1)


class InvoiceUpdate(BaseModel):
    due_date: Optional[date] = None
    notes: Optional[str] = None
    internal_notes: Optional[str] = None


class InvoiceVoid(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class InvoiceItemResponse(ORMModel):
    id: str
    line_number: int
    procedure_code: str
    description: str
    quantity: int
    unit_price: float
    discount: float
    insurance_amount: float
    patient_amount: float
    total: float
    tooth_numbers: Optional[List[str]] = None


class InvoiceResponse(ORMModel):
    id: str
    clinic_id: str
    invoice_number: str
    account_id: str
    patient_id: str
    invoice_date: date
    due_date: date
    status: InvoiceStatus
    subtotal: float
    adjustments: float
    insurance_amount: float
    patient_amount: float
    paid_amount: float
    balance: float
    notes: Optional[str] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    void_reason: Optional[str] = None
    items: List[InvoiceItemResponse] = []
    created_at: datetime
    updated_at: datetime


# Payment plans

class PaymentPlanCreate(BaseModel):
    account_id: str
    total_amount: float = Field(..., gt=0)
    down_payment: float = Field(0, ge=0)
    number_of_payments: int = Field(..., ge=1, le=120)
    monthly_payment: Optional[float] = Field(None, gt=0)
    frequency: PaymentFrequency = PaymentFrequency.MONTHLY
    start_date: date
    payment_method_id: Optional[str] = None
    auto_pay_enabled: bool = False
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_down_payment(self):
        if self.down_payment >= self.total_amount:
            raise ValueError("down_payment must be less than total_amount")
        return self


class PaymentPlanUpdate(BaseModel):
    monthly_payment: Optional[float] = Field(None, gt=0)
    auto_pay_enabled: Optional[bool] = None
    payment_method_id: Optional[str] = None
    notes: Optional[str] = None


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class PaymentPlanResponse(ORMModel):
    id: str
    clinic_id: str
    plan_number: str
    account_id: str
    payment_method_id: Optional[str] = None
    total_amount: float
    down_payment: float
    financed_amount: float
    number_of_payments: int
    monthly_payment: float
    frequency: PaymentFrequency
    start_date: date
    end_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    completed_payments: int
    remaining_balance: float
    status: PaymentPlanStatus
    auto_pay_enabled: bool
    notes: Optional[str] = None
    activated_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: datetime


class ScheduledPaymentResponse(ORMModel):
    id: str
    payment_plan_id: str
    account_id: str
    installment_number: int
    amount: float
    scheduled_date: datetime
    status: ScheduledPaymentStatus
    attempt_count: int
    last_attempt_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    skip_reason: Optional[str] = None
    result_payment_id: Optional[str] = None
    processed_at: Optional[datetime] = None


# Credits

class CreditCreate(BaseModel):
    account_id: str
    amount: float = Field(..., gt=0)
    source: CreditSource
    description: Optional[str] = Field(None, max_length=500)
    expires_at: Optional[datetime] = None
    source_payment_id: Optional[str] = None


class CreditApply(BaseModel):
    invoice_id: str
    amount: float = Field(..., gt=0)


class CreditTransfer(BaseModel):
    to_account_id: str
    amount: float = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=500)


class CreditResponse(ORMModel):
    id: str
    account_id: str
    amount: float
    remaining_amount: float
    source: CreditSource
    status: CreditStatus
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    applied_to_invoice_id: Optional[str] = None
    applied_at: Optional[datetime] = None
    created_at: datetime


# Treatment estimates

class EstimateScenarioCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    total_cost: float = Field(0, ge=0)
    insurance_estimate: float = Field(0, ge=0)
    patient_estimate: float = Field(0, ge=0)
    procedures: List[Dict[str, Any]] = []
    is_recommended: bool = False
    is_selected: bool = False


class EstimateCreate(BaseModel):
    account_id: str
    patient_id: str
    treatment_plan_id: Optional[str] = None
    valid_until: date
    total_cost: float = Field(0, ge=0)
    insurance_estimate: float = Field(0, ge=0)
    patient_estimate: float = Field(0, ge=0)
    down_payment: float = Field(0, ge=0)
    notes: Optional[str] = None
    scenarios: List[EstimateScenarioCreate] = []


class EstimateUpdate(BaseModel):
    valid_until: Optional[date] = None
    total_cost: Optional[float] = Field(None, ge=0)
    insurance_estimate: Optional[float] = Field(None, ge=0)
    patient_estimate: Optional[float] = Field(None, ge=0)
    down_payment: Optional[float] = Field(None, ge=0)
    notes: Optional[str] = None
    scenarios: Optional[List[EstimateScenarioCreate]] = None


class EstimateAccept(BaseModel):
    scenario_id: Optional[str] = None


class EstimateScenarioResponse(ORMModel):
    id: str
    name: str
    description: Optional[str] = None
    total_cost: float
    insurance_estimate: float
    patient_estimate: float
    procedures: Optional[List[Dict[str, Any]]] = None
    is_recommended: bool
    is_selected: bool


class EstimateResponse(ORMModel):
    id: str
    clinic_id: str
    estimate_number: str
    account_id: str
    patient_id: str
    status: EstimateStatus
    valid_until: date
    total_cost: float
    insurance_estimate: float
    patient_estimate: float
    down_payment: float
    notes: Optional[str] = None
    presented_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    declined_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    scenarios: List[EstimateScenarioResponse] = []
    created_at: datetime


# Statements

class StatementGenerate(BaseModel):
    account_id: str
    period_start: date
    period_end: date
    due_date: date

    @model_validator(mode="after")
    def check_period(self):
        if self.period_end < self.period_start:
            raise ValueError("period_end must not be before period_start")
        return self


class StatementSend(BaseModel):
    delivery_method: StatementDeliveryMethod = StatementDeliveryMethod.EMAIL


class StatementResponse(ORMModel):
    id: str
    statement_number: str
    account_id: str
    statement_date: date
    period_start: date
    period_end: date
    due_date: date
    previous_balance: float
    new_charges: float
    payments_received: float
    adjustments: float
    amount_due: float
    delivery_method: Optional[StatementDeliveryMethod] = None
    sent_at: Optional[datetime] = None
    created_at: datetime
