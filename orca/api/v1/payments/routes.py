from fastapi import APIRouter, Depends, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List, Dict, Any
from datetime import datetime

from orca.core.permissions import require_permissions, Permissions
from orca.core.events import AuditLogger
from orca.domain.audit.models import AuditAction
from orca.domain.payments.models import (
    PaymentStatus, PaymentType, PaymentMethodType, PaymentSource, PaymentGatewayName, RefundStatus,
    PaymentLinkStatus,
)
from orca.domain.payments.recurring import RecurringBillingService
from orca.domain.payments.service import PaymentService, PaymentMethodService, PaymentLinkService
from orca.api.v1.common import Page, SuccessResponse
from orca.api.v1.billing.schemas import ScheduledPaymentResponse
from orca.api.v1.payments.schemas import (
    PaymentCreate, PaymentResponse, RefundCreate, RefundReject, RefundResponse,
    PaymentMethodCreate, PaymentMethodUpdate, PaymentMethodResponse,
    PaymentLinkCreate, PaymentLinkResponse, PaymentLinkPublic, ScheduledPaymentAction,
)
from orca.infrastructure.database import get_db
from orca.infrastructure.payment_gateway import StripeGateway, get_payment_gateway

router = APIRouter(prefix="/payments", tags=["Payments"])


# Refunds

@router.post("/refunds", response_model=RefundResponse, status_code=status.HTTP_201_CREATED)
async def request_refund(
    data: RefundCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_REFUND]))
):
    refund = await PaymentService(db, gateway).request_refund(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.REFUND, "Refund", refund.id,
        {"payment_id": data.payment_id, "amount": refund.amount, "status": "PENDING"}, request
    )
    return refund


@router.get("/refunds", response_model=Page[RefundResponse])
async def list_refunds(
    payment_id: Optional[str] = None,
    account_id: Optional[str] = None,
    refund_status: Optional[RefundStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_READ]))
):
    return await PaymentService(db, gateway).get_refunds(
        current_user["clinic_id"], payment_id=payment_id, account_id=account_id, status=refund_status,
        page=page, page_size=page_size,
    )


@router.get("/refunds/{refund_id}", response_model=RefundResponse)
async def get_refund(
    refund_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_READ]))
):
    return await PaymentService(db, gateway).get_refund(current_user["clinic_id"], refund_id)


@router.post("/refunds/{refund_id}/approve", response_model=RefundResponse)
async def approve_refund(
    refund_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_REFUND]))
):
    refund = await PaymentService(db, gateway).approve_refund(current_user["clinic_id"], refund_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "Refund", refund.id, {"status": "APPROVED"}, request
    )
    return refund


@router.post("/refunds/{refund_id}/reject", response_model=RefundResponse)
async def reject_refund(
    refund_id: str,
    data: RefundReject,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_REFUND]))
):
    refund = await PaymentService(db, gateway).reject_refund(
        current_user["clinic_id"], refund_id, data.reason, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "Refund", refund.id,
        {"status": "REJECTED", "reason": data.reason}, request
    )
    return refund


@router.post("/refunds/{refund_id}/process", response_model=RefundResponse)
async def process_refund(
    refund_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_REFUND]))
):
    refund = await PaymentService(db, gateway).process_refund(current_user["clinic_id"], refund_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.REFUND, "Refund", refund.id,
        {"status": refund.status.value, "amount": refund.amount}, request
    )
    return refund


@router.post("/refunds/{refund_id}/cancel", response_model=RefundResponse)
async def cancel_refund(
    refund_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_REFUND]))
):
    refund = await PaymentService(db, gateway).cancel_refund(current_user["clinic_id"], refund_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "Refund", refund.id, {"status": "CANCELLED"}, request
    )
    return refund


# Stored payment methods

@router.post("/methods", response_model=PaymentMethodResponse, status_code=status.HTTP_201_CREATED)
async def add_payment_method(
    data: PaymentMethodCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
):
    method = await PaymentMethodService(db, gateway).add_method(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "PaymentMethod", method.id,
        {"account_id": method.account_id, "last_four": method.last_four}, request
    )
    return method


@router.get("/accounts/{account_id}/methods", response_model=List[PaymentMethodResponse])
async def list_payment_methods(
    account_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_READ]))
):
    return await PaymentMethodService(db, gateway).get_account_methods(current_user["clinic_id"], account_id)


@router.patch("/methods/{method_id}", response_model=PaymentMethodResponse)
async def update_payment_method(
    method_id: str,
    data: PaymentMethodUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
):
    method = await PaymentMethodService(db, gateway).update_method(
        current_user["clinic_id"], method_id, data, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "PaymentMethod", method.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return method


@router.delete("/methods/{method_id}", response_model=PaymentMethodResponse)
async def remove_payment_method(
    method_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
):
    method = await PaymentMethodService(db, gateway).remove_method(current_user["clinic_id"], method_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "PaymentMethod", method.id, request=request)
    return method


# Payment links

@router.get("/links/public/{code}", response_model=PaymentLinkPublic)
async def get_public_payment_link(code: str, db: AsyncSession = Depends(get_db)):
    """Unauthenticated lookup used by the hosted payment page"""
    return await PaymentLinkService(db).get_by_code(code)


@router.post("/links", response_model=PaymentLinkResponse, status_code=status.HTTP_201_CREATED)
async def create_payment_link(
    data: PaymentLinkCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
):
    link = await PaymentLinkService(db).create_link(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "PaymentLink", link.id, {"amount": link.amount}, request
    )
    return link


@router.get("/links", response_model=Page[PaymentLinkResponse])
async def list_payment_links(
    account_id: Optional[str] = None,
    link_status: Optional[PaymentLinkStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_READ]))
):
    return await PaymentLinkService(db).get_links(
        current_user["clinic_id"], account_id=account_id, status=link_status, page=page, page_size=page_size
    )


@router.get("/links/{link_id}", response_model=PaymentLinkResponse)
async def get_payment_link(
    link_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_READ]))
):
    return await PaymentLinkService(db).get_link(current_user["clinic_id"], link_id)


@router.post("/links/{link_id}/cancel", response_model=PaymentLinkResponse)
async def cancel_payment_link(
    link_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
):
    link = await PaymentLinkService(db).cancel_link(current_user["clinic_id"], link_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "PaymentLink", link.id, {"status": "CANCELLED"}, request
    )
    return link


# Recurring billing

@router.post("/recurring/process")
async def process_recurring_payments(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
) -> Dict[str, Any]:
    """Run the recurring charge loop for the caller's clinic now"""
    summary = await RecurringBillingService(db, gateway).process_due_payments(current_user["clinic_id"])
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "RecurringBilling", None,
        {key: summary[key] for key in ("processed", "successful", "failed")}, request
    )
    return summary


@router.get("/recurring/attention")
async def get_payments_needing_attention(
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_READ]))
) -> Dict[str, Any]:
    result = await RecurringBillingService(db, gateway).get_payments_needing_attention(current_user["clinic_id"])
    for key in ("failed", "overdue", "due_today", "upcoming"):
        result[key] = [ScheduledPaymentResponse.model_validate(item) for item in result[key]]
    return result


@router.post("/recurring/scheduled/{scheduled_id}/retry")
async def retry_scheduled_payment(
    scheduled_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
) -> Dict[str, Any]:
    outcome = await RecurringBillingService(db, gateway).retry_scheduled_payment(current_user["clinic_id"], scheduled_id)
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "ScheduledPayment", scheduled_id,
        {"success": outcome["success"]}, request
    )
    return outcome


@router.post("/recurring/scheduled/{scheduled_id}/skip", response_model=ScheduledPaymentResponse)
async def skip_scheduled_payment(
    scheduled_id: str,
    data: ScheduledPaymentAction,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
):
    scheduled = await RecurringBillingService(db, gateway).skip_scheduled_payment(
        current_user["clinic_id"], scheduled_id, data.reason
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "ScheduledPayment", scheduled.id,
        {"status": "SKIPPED", "reason": data.reason}, request
    )
    return scheduled


# Payments

@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    data: PaymentCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
):
    payment = await PaymentService(db, gateway).create_payment(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "Payment", payment.id,
        {"payment_number": payment.payment_number, "amount": payment.amount, "status": payment.status.value}, request
    )
    return payment


@router.get("", response_model=Page[PaymentResponse])
async def list_payments(
    account_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    payment_status: Optional[PaymentStatus] = Query(None, alias="status"),
    payment_type: Optional[PaymentType] = None,
    method: Optional[PaymentMethodType] = None,
    source: Optional[PaymentSource] = None,
    gateway_name: Optional[PaymentGatewayName] = Query(None, alias="gateway"),
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    min_amount: Optional[float] = None,
    max_amount: Optional[float] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = Query("payment_date", pattern="^(payment_date|amount|created_at|payment_number)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_READ]))
):
    """List payments; ``stats`` carries the count and total of completed ones"""
    return await PaymentService(db, gateway).get_payments(
        current_user["clinic_id"],
        account_id=account_id,
        patient_id=patient_id,
        invoice_id=invoice_id,
        status=payment_status,
        payment_type=payment_type,
        method=method,
        source=source,
        gateway=gateway_name,
        date_from=date_from,
        date_to=date_to,
        min_amount=min_amount,
        max_amount=max_amount,
        search=search,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_READ]))
):
    return await PaymentService(db, gateway).get_payment(current_user["clinic_id"], payment_id)


@router.post("/{payment_id}/complete", response_model=PaymentResponse)
async def complete_pending_payment(
    payment_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: StripeGateway = Depends(get_payment_gateway),
    current_user: dict = Depends(require_permissions([Permissions.PAYMENT_PROCESS]))
):
    """Mark a cleared bank transfer or wire as received"""
    payment = await PaymentService(db, gateway).complete_pending(current_user["clinic_id"], payment_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "Payment", payment.id, {"status": "COMPLETED"}, request
    )
    return payment
