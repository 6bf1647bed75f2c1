from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from orca.api.v1.common import ORMModel
from orca.domain.payments.models import (
    PaymentStatus, PaymentType, PaymentMethodType, PaymentSource, PaymentGatewayName, RefundStatus,
    RefundReason, StoredMethodType, StoredMethodStatus, PaymentLinkStatus,
)


class AllocationCreate(BaseModel):
    invoice_id: str
    amount: float = Field(..., gt=0)


class PaymentCreate(BaseModel):
    account_id: str
    patient_id: str
    amount: float = Field(..., gt=0)
    method: PaymentMethodType
    payment_type: PaymentType = PaymentType.PATIENT
    source: PaymentSource = PaymentSource.FRONT_DESK
    invoice_id: Optional[str] = None
    payment_plan_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    gateway_payment_method_id: Optional[str] = Field(
        None, description="One-off gateway payment method token when no stored method is used"
    )
    allocations: List[AllocationCreate] = []
    check_number: Optional[str] = Field(None, max_length=50)
    reference_number: Optional[str] = Field(None, max_length=100)
    payment_link_code: Optional[str] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class AllocationResponse(ORMModel):
    id: str
    invoice_id: str
    amount: float


class PaymentResponse(ORMModel):
    id: str
    clinic_id: str
    payment_number: str
    receipt_number: Optional[str] = None
    account_id: str
    patient_id: str
    invoice_id: Optional[str] = None
    payment_plan_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    amount: float
    refunded_amount: float
    payment_date: datetime
    payment_type: PaymentType
    method: PaymentMethodType
    source: PaymentSource
    status: PaymentStatus
    gateway: Optional[PaymentGatewayName] = None
    gateway_transaction_id: Optional[str] = None
    gateway_status: Optional[str] = None
    failure_reason: Optional[str] = None
    check_number: Optional[str] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    allocations: List[AllocationResponse] = []
    created_at: datetime


class RefundCreate(BaseModel):
    payment_id: str
    amount: float = Field(..., gt=0)
    reason: RefundReason
    reason_details: Optional[str] = None


class RefundReject(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class RefundResponse(ORMModel):
    id: str
    refund_number: str
    payment_id: str
    account_id: str
    amount: float
    reason: RefundReason
    reason_details: Optional[str] = None
    status: RefundStatus
    gateway_refund_id: Optional[str] = None
    failure_reason: Optional[str] = None
    requested_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


class PaymentMethodCreate(BaseModel):
    account_id: str
    method_type: StoredMethodType = StoredMethodType.CARD
    card_brand: Optional[str] = Field(None, max_length=30)
    last_four: Optional[str] = Field(None, min_length=4, max_length=4)
    expiry_month: Optional[int] = Field(None, ge=1, le=12)
    expiry_year: Optional[int] = Field(None, ge=2000, le=2100)
    bank_name: Optional[str] = Field(None, max_length=100)
    nickname: Optional[str] = Field(None, max_length=100)
    is_default: bool = False
    gateway_customer_id: Optional[str] = None
    gateway_method_id: Optional[str] = None

    @field_validator("last_four")
    @classmethod
    def validate_last_four(cls, v):
        if v is not None and not v.isdigit():
            raise ValueError("last_four must be 4 digits")
        return v


class PaymentMethodUpdate(BaseModel):
    nickname: Optional[str] = Field(None, max_length=100)
    expiry_month: Optional[int] = Field(None, ge=1, le=12)
    expiry_year: Optional[int] = Field(None, ge=2000, le=2100)
    is_default: Optional[bool] = None


class PaymentMethodResponse(ORMModel):
    id: str
    account_id: str
    method_type: StoredMethodType
    card_brand: Optional[str] = None
    last_four: Optional[str] = None
    expiry_month: Optional[int] = None
    expiry_year: Optional[int] = None
    bank_name: Optional[str] = None
    nickname: Optional[str] = None
    is_default: bool
    status: StoredMethodStatus
    gateway: PaymentGatewayName
    created_at: datetime


class PaymentLinkCreate(BaseModel):
    account_id: str
    amount: float = Field(..., gt=0)
    invoice_id: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    expires_in_days: Optional[int] = Field(None, ge=1, le=90)


class PaymentLinkResponse(ORMModel):
    id: str
    code: str
    account_id: str
    invoice_id: Optional[str] = None
    amount: float
    description: Optional[str] = None
    status: PaymentLinkStatus
    expires_at: datetime
    paid_at: Optional[datetime] = None
    payment_id: Optional[str] = None
    created_at: datetime


class PaymentLinkPublic(ORMModel):
    """What an unauthenticated payer sees for a link"""
    code: str
    amount: float
    description: Optional[str] = None
    status: PaymentLinkStatus
    expires_at: datetime


class ScheduledPaymentAction(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
