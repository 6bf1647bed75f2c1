from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date

from orca.api.v1.common import ORMModel
from orca.domain.collections.models import (
    CollectionPatientType, CollectionStatus, CollectionActionType, CollectionActivityType, CommunicationChannel,
    PromiseStatus, AgencyReferralStatus, WriteOffReason, WriteOffStatus, ReminderType, ReminderStatus,
)


# Workflows

class StageAction(BaseModel):
    type: CollectionActionType
    template_id: Optional[str] = None
    subject: Optional[str] = Field(None, max_length=200)
    message: Optional[str] = Field(None, max_length=2000)
    amount: Optional[float] = Field(None, gt=0)
    assign_to: Optional[str] = None

    @model_validator(mode="after")
    def late_fee_needs_amount(self):
        if self.type == CollectionActionType.APPLY_LATE_FEE and not self.amount:
            raise ValueError("APPLY_LATE_FEE actions require an amount")
        return self


class StageCreate(BaseModel):
    stage_number: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    days_from_previous: int = Field(0, ge=0, le=365)
    days_overdue: int = Field(0, ge=0)
    escalate_after_days: Optional[int] = Field(None, ge=1)
    actions: List[StageAction] = []


class WorkflowCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    trigger_days_overdue: int = Field(..., ge=1, le=365)
    min_balance: float = Field(0.0, ge=0)
    patient_type: CollectionPatientType = CollectionPatientType.PATIENT
    is_default: bool = False
    is_active: bool = True
    stages: List[StageCreate] = Field(..., min_length=1)

    @field_validator("stages")
    @classmethod
    def unique_stage_numbers(cls, stages: List[StageCreate]) -> List[StageCreate]:
        numbers = [stage.stage_number for stage in stages]
        if len(numbers) != len(set(numbers)):
            raise ValueError("Stage numbers must be unique")
        return sorted(stages, key=lambda stage: stage.stage_number)


class WorkflowUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    trigger_days_overdue: Optional[int] = Field(None, ge=1, le=365)
    min_balance: Optional[float] = Field(None, ge=0)
    patient_type: Optional[CollectionPatientType] = None
    is_default: Optional[bool] = None
    is_active: Optional[bool] = None
    stages: Optional[List[StageCreate]] = None


class StageResponse(ORMModel):
    id: str
    stage_number: int
    name: str
    description: Optional[str] = None
    days_from_previous: int
    days_overdue: int
    escalate_after_days: Optional[int] = None
    actions: List[Dict[str, Any]] = []


class WorkflowResponse(ORMModel):
    id: str
    name: str
    description: Optional[str] = None
    trigger_days_overdue: int
    min_balance: float
    patient_type: CollectionPatientType
    is_default: bool
    is_active: bool
    stages: List[StageResponse] = []
    created_at: datetime


class WorkflowEffectiveness(BaseModel):
    workflow_id: str
    total_collections: int
    completed_collections: int
    completion_rate: float
    collection_rate: float
    average_days_to_complete: Optional[float] = None


# Account collections

class CollectionStart(BaseModel):
    account_id: str
    workflow_id: Optional[str] = None


class CollectionPause(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class CollectionClose(BaseModel):
    notes: Optional[str] = Field(None, max_length=1000)


class CollectionPaymentRecord(BaseModel):
    amount: float = Field(..., gt=0)
    notes: Optional[str] = Field(None, max_length=500)


class CollectionNote(BaseModel):
    note: str = Field(..., min_length=1, max_length=2000)


class CollectionResponse(ORMModel):
    id: str
    account_id: str
    workflow_id: str
    current_stage: int
    status: CollectionStatus
    starting_balance: float
    current_balance: float
    paid_amount: float = 0.0
    started_at: datetime
    last_action_at: Optional[datetime] = None
    next_action_date: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    completed_at: Optional[datetime] = None


class ActivityResponse(ORMModel):
    id: str
    collection_id: Optional[str] = None
    account_id: str
    activity_type: CollectionActivityType
    description: str
    stage_number: Optional[int] = None
    channel: Optional[CommunicationChannel] = None
    amount: Optional[float] = None
    details: Optional[Dict[str, Any]] = None
    performed_by: Optional[str] = None
    created_at: datetime


class StageAdvanceProcessResult(BaseModel):
    processed: int
    advanced: int
    errors: List[Dict[str, Any]] = []


# Promises

class PromiseCreate(BaseModel):
    account_id: str
    collection_id: Optional[str] = None
    promised_amount: float = Field(..., gt=0)
    promise_date: date
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("promise_date")
    @classmethod
    def not_in_past(cls, value: date) -> date:
        if value < date.today():
            raise ValueError("Promise date cannot be in the past")
        return value


class PromisePayment(BaseModel):
    amount: float = Field(..., gt=0)
    paid_date: Optional[date] = None


class PromiseResponse(ORMModel):
    id: str
    account_id: str
    collection_id: Optional[str] = None
    promised_amount: float
    promise_date: date
    paid_amount: float
    paid_date: Optional[date] = None
    status: PromiseStatus
    notes: Optional[str] = None
    broken_at: Optional[datetime] = None
    created_at: datetime


class BrokenPromiseResult(BaseModel):
    checked: int
    broken: int
    promise_ids: List[str] = []


# Agencies

class AgencyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    contact_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    fee_percentage: Optional[float] = Field(None, ge=0, le=100)
    is_default: bool = False
    is_active: bool = True
    notes: Optional[str] = Field(None, max_length=2000)


class AgencyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    contact_name: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[str] = Field(None, max_length=255)
    address: Optional[str] = None
    fee_percentage: Optional[float] = Field(None, ge=0, le=100)
    is_default: Optional[bool] = None
    is_active: Optional[bool] = None
    notes: Optional[str] = Field(None, max_length=2000)


class AgencyResponse(ORMModel):
    id: str
    name: str
    contact_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    fee_percentage: Optional[float] = None
    is_default: bool
    is_active: bool
    notes: Optional[str] = None
    created_at: datetime


class AgencyEligibility(BaseModel):
    account_id: str
    eligible: bool
    reasons: List[str] = []
    balance: float
    days_overdue: int


class ReferralCreate(BaseModel):
    account_id: str
    agency_id: str


class ReferralRecall(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class AgencyCollectionRecord(BaseModel):
    amount: float = Field(..., gt=0)


class ReferralResponse(ORMModel):
    id: str
    account_id: str
    agency_id: str
    collection_id: Optional[str] = None
    status: AgencyReferralStatus
    referred_balance: float
    collected_amount: float
    days_overdue: int
    referred_at: datetime
    recalled_at: Optional[datetime] = None
    recall_reason: Optional[str] = None
    last_collection_at: Optional[datetime] = None


# Write-offs

class WriteOffCreate(BaseModel):
    account_id: str
    collection_id: Optional[str] = None
    amount: float = Field(..., gt=0)
    reason: WriteOffReason
    reason_details: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def other_needs_details(self):
        if self.reason == WriteOffReason.OTHER and not self.reason_details:
            raise ValueError("reason_details is required when reason is OTHER")
        return self


class WriteOffReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class WriteOffRecovery(BaseModel):
    amount: float = Field(..., gt=0)


class WriteOffResponse(ORMModel):
    id: str
    write_off_number: str
    account_id: str
    collection_id: Optional[str] = None
    amount: float
    reason: WriteOffReason
    reason_details: Optional[str] = None
    status: WriteOffStatus
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    recovered_amount: float
    last_recovery_at: Optional[datetime] = None
    created_at: datetime


# Reminders

class ReminderSend(BaseModel):
    account_id: str
    reminder_type: ReminderType
    channel: CommunicationChannel = CommunicationChannel.EMAIL
    custom_message: Optional[str] = Field(None, max_length=2000)


class ReminderBatchSend(BaseModel):
    reminder_type: ReminderType
    channel: CommunicationChannel = CommunicationChannel.EMAIL
    min_days_overdue: Optional[int] = Field(None, ge=0)
    max_days_overdue: Optional[int] = Field(None, ge=0)
    min_balance: Optional[float] = Field(None, ge=0)
    max_accounts: Optional[int] = Field(None, ge=1)

    @model_validator(mode="after")
    def check_window(self):
        if (
            self.min_days_overdue is not None
            and self.max_days_overdue is not None
            and self.max_days_overdue < self.min_days_overdue
        ):
            raise ValueError("max_days_overdue must not be less than min_days_overdue")
        return self


class ReminderResponse(ORMModel):
    id: str
    account_id: str
    reminder_type: ReminderType
    channel: CommunicationChannel
    status: ReminderStatus
    recipient: Optional[str] = None
    subject: Optional[str] = None
    message: Optional[str] = None
    message_id: Optional[str] = None
    failure_reason: Optional[str] = None
    days_overdue: Optional[int] = None
    balance: Optional[float] = None
    payment_received: bool = False
    sent_by: Optional[str] = None
    sent_at: datetime


class ReminderBatchResult(BaseModel):
    sent: int
    skipped: int
    failed: int
    results: List[Dict[str, Any]] = []


# Analytics

class AgingSummary(BaseModel):
    account_count: int
    total_ar: float
    current: float
    aging_30: float
    aging_60: float
    aging_90: float
    aging_120_plus: float


class DSOResponse(BaseModel):
    dso: float
    total_ar: float
    total_sales: float
    period_days: int


class CollectionSummary(BaseModel):
    by_status: Dict[str, int]
    active_collections: int
    total_in_collections: float
    promises_pending: int
    promises_broken: int
    write_offs_pending: int
    write_offs_pending_amount: float
    write_offs_approved: int
    write_offs_approved_amount: float
