from fastapi import APIRouter, Depends, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List
from datetime import date

from orca.core.permissions import require_permissions, Permissions
from orca.core.events import AuditLogger
from orca.domain.audit.models import AuditAction
from orca.domain.billing.models import (
    AccountStatus, AccountType, InvoiceStatus, PaymentPlanStatus, CreditStatus, EstimateStatus,
)
from orca.domain.billing.service import (
    AccountService, FamilyGroupService, InvoiceService, PaymentPlanService, CreditService, EstimateService,
    StatementService,
)
from orca.api.v1.common import Page, SuccessResponse
from orca.api.v1.billing.schemas import (
    AccountCreate, AccountUpdate, AccountResponse,
    FamilyGroupCreate, FamilyGroupUpdate, FamilyGroupMember, FamilyGroupResponse,
    InvoiceCreate, InvoiceUpdate, InvoiceVoid, InvoiceResponse,
    PaymentPlanCreate, PaymentPlanUpdate, PaymentPlanResponse, ScheduledPaymentResponse, ReasonRequest,
    CreditCreate, CreditApply, CreditTransfer, CreditResponse,
    EstimateCreate, EstimateUpdate, EstimateAccept, EstimateResponse,
    StatementGenerate, StatementSend, StatementResponse,
)
from orca.infrastructure.database import get_db

router = APIRouter(prefix="/billing", tags=["Billing"])

READ = Depends(require_permissions([Permissions.BILLING_READ]))
CREATE = Depends(require_permissions([Permissions.BILLING_CREATE]))
UPDATE = Depends(require_permissions([Permissions.BILLING_UPDATE]))
DELETE = Depends(require_permissions([Permissions.BILLING_DELETE]))


# Patient accounts

@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def create_account(
    data: AccountCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = CREATE
):
    account = await AccountService(db).create_account(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "PatientAccount", account.id,
        {"account_number": account.account_number}, request
    )
    return account


@router.get("/accounts", response_model=Page[AccountResponse])
async def list_accounts(
    search: Optional[str] = None,
    patient_id: Optional[str] = None,
    guarantor_id: Optional[str] = None,
    family_group_id: Optional[str] = None,
    account_status: Optional[AccountStatus] = Query(None, alias="status"),
    account_type: Optional[AccountType] = None,
    has_outstanding_balance: Optional[bool] = None,
    min_balance: Optional[float] = None,
    max_balance: Optional[float] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at", pattern="^(created_at|updated_at|current_balance|account_number)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ
):
    """List accounts with clinic-wide balance stats"""
    return await AccountService(db).get_accounts(
        current_user["clinic_id"],
        search=search,
        patient_id=patient_id,
        guarantor_id=guarantor_id,
        family_group_id=family_group_id,
        status=account_status,
        account_type=account_type,
        has_outstanding_balance=has_outstanding_balance,
        min_balance=min_balance,
        max_balance=max_balance,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/accounts/{account_id}", response_model=AccountResponse)
async def get_account(account_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await AccountService(db).get_account(current_user["clinic_id"], account_id)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
async def update_account(
    account_id: str,
    data: AccountUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    account = await AccountService(db).update_account(current_user["clinic_id"], account_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "PatientAccount", account.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return account


@router.delete("/accounts/{account_id}", response_model=SuccessResponse)
async def delete_account(
    account_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = DELETE
):
    await AccountService(db).delete_account(current_user["clinic_id"], account_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "PatientAccount", account_id, request=request)
    return SuccessResponse(message="Account deleted")


@router.post("/accounts/{account_id}/refresh-balance", response_model=AccountResponse)
async def refresh_account_balance(account_id: str, db: AsyncSession = Depends(get_db), current_user: dict = UPDATE):
    return await AccountService(db).refresh_balance(current_user["clinic_id"], account_id)


@router.get("/accounts/{account_id}/credits", response_model=List[CreditResponse])
async def list_account_credits(
    account_id: str,
    credit_status: Optional[CreditStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ
):
    return await CreditService(db).get_account_credits(current_user["clinic_id"], account_id, credit_status)


@router.get("/accounts/{account_id}/statements", response_model=Page[StatementResponse])
async def list_account_statements(
    account_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ
):
    return await StatementService(db).get_statements(current_user["clinic_id"], account_id, page, page_size)


# Family groups

@router.post("/family-groups", response_model=FamilyGroupResponse, status_code=status.HTTP_201_CREATED)
async def create_family_group(
    data: FamilyGroupCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = CREATE
):
    group = await FamilyGroupService(db).create_group(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.CREATE, "FamilyGroup", group.id, request=request)
    return group


@router.get("/family-groups", response_model=Page[FamilyGroupResponse])
async def list_family_groups(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ
):
    return await FamilyGroupService(db).get_groups(current_user["clinic_id"], page, page_size)


@router.get("/family-groups/{group_id}", response_model=FamilyGroupResponse)
async def get_family_group(group_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await FamilyGroupService(db).get_group(current_user["clinic_id"], group_id)


@router.patch("/family-groups/{group_id}", response_model=FamilyGroupResponse)
async def update_family_group(
    group_id: str,
    data: FamilyGroupUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    group = await FamilyGroupService(db).update_group(current_user["clinic_id"], group_id, data, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.UPDATE, "FamilyGroup", group.id, request=request)
    return group


@router.delete("/family-groups/{group_id}", response_model=SuccessResponse)
async def delete_family_group(
    group_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = DELETE
):
    await FamilyGroupService(db).delete_group(current_user["clinic_id"], group_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "FamilyGroup", group_id, request=request)
    return SuccessResponse(message="Family group deleted")


@router.get("/family-groups/{group_id}/members", response_model=List[AccountResponse])
async def list_family_group_members(group_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await FamilyGroupService(db).get_members(current_user["clinic_id"], group_id)


@router.post("/family-groups/{group_id}/members", response_model=AccountResponse)
async def add_family_group_member(
    group_id: str,
    data: FamilyGroupMember,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    account = await FamilyGroupService(db).add_member(current_user["clinic_id"], group_id, data.account_id)
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "FamilyGroup", group_id, {"added_account": account.id}, request
    )
    return account


@router.delete("/family-groups/{group_id}/members/{account_id}", response_model=AccountResponse)
async def remove_family_group_member(
    group_id: str,
    account_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    account = await FamilyGroupService(db).remove_member(current_user["clinic_id"], group_id, account_id)
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "FamilyGroup", group_id, {"removed_account": account.id}, request
    )
    return account


# Invoices

@router.post("/invoices", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def create_invoice(
    data: InvoiceCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = CREATE
):
    invoice = await InvoiceService(db).create_invoice(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "Invoice", invoice.id,
        {"invoice_number": invoice.invoice_number, "subtotal": invoice.subtotal}, request
    )
    return invoice


@router.get("/invoices", response_model=Page[InvoiceResponse])
async def list_invoices(
    account_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    invoice_status: Optional[InvoiceStatus] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    due_from: Optional[date] = None,
    due_to: Optional[date] = None,
    min_amount: Optional[float] = None,
    max_amount: Optional[float] = None,
    is_overdue: Optional[bool] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = Query("invoice_date", pattern="^(invoice_date|due_date|subtotal|balance|invoice_number|created_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ
):
    return await InvoiceService(db).get_invoices(
        current_user["clinic_id"],
        account_id=account_id,
        patient_id=patient_id,
        status=invoice_status,
        date_from=date_from,
        date_to=date_to,
        due_from=due_from,
        due_to=due_to,
        min_amount=min_amount,
        max_amount=max_amount,
        is_overdue=is_overdue,
        search=search,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await InvoiceService(db).get_invoice(current_user["clinic_id"], invoice_id)


@router.patch("/invoices/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: str,
    data: InvoiceUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    invoice = await InvoiceService(db).update_invoice(current_user["clinic_id"], invoice_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "Invoice", invoice.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return invoice


@router.post("/invoices/{invoice_id}/send", response_model=InvoiceResponse)
async def send_invoice(
    invoice_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    invoice = await InvoiceService(db).send_invoice(current_user["clinic_id"], invoice_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "Invoice", invoice.id, {"status": "SENT"}, request
    )
    return invoice


@router.post("/invoices/{invoice_id}/void", response_model=InvoiceResponse)
async def void_invoice(
    invoice_id: str,
    data: InvoiceVoid,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    invoice = await InvoiceService(db).void_invoice(current_user["clinic_id"], invoice_id, data.reason, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "Invoice", invoice.id,
        {"status": "VOID", "reason": data.reason}, request
    )
    return invoice


# Payment plans

@router.post("/payment-plans", response_model=PaymentPlanResponse, status_code=status.HTTP_201_CREATED)
async def create_payment_plan(
    data: PaymentPlanCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = CREATE
):
    plan = await PaymentPlanService(db).create_plan(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "PaymentPlan", plan.id, {"plan_number": plan.plan_number}, request
    )
    return plan


@router.get("/payment-plans", response_model=Page[PaymentPlanResponse])
async def list_payment_plans(
    account_id: Optional[str] = None,
    plan_status: Optional[PaymentPlanStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at", pattern="^(created_at|start_date|next_payment_date|remaining_balance)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ
):
    return await PaymentPlanService(db).get_plans(
        current_user["clinic_id"],
        account_id=account_id,
        status=plan_status,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/payment-plans/{plan_id}", response_model=PaymentPlanResponse)
async def get_payment_plan(plan_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await PaymentPlanService(db).get_plan(current_user["clinic_id"], plan_id)


@router.get("/payment-plans/{plan_id}/schedule", response_model=List[ScheduledPaymentResponse])
async def get_payment_plan_schedule(plan_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await PaymentPlanService(db).get_schedule(current_user["clinic_id"], plan_id)


@router.patch("/payment-plans/{plan_id}", response_model=PaymentPlanResponse)
async def update_payment_plan(
    plan_id: str,
    data: PaymentPlanUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    plan = await PaymentPlanService(db).update_plan(current_user["clinic_id"], plan_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "PaymentPlan", plan.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return plan


@router.post("/payment-plans/{plan_id}/activate", response_model=PaymentPlanResponse)
async def activate_payment_plan(
    plan_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    plan = await PaymentPlanService(db).activate_plan(current_user["clinic_id"], plan_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "PaymentPlan", plan.id, {"status": "ACTIVE"}, request
    )
    return plan


@router.post("/payment-plans/{plan_id}/pause", response_model=PaymentPlanResponse)
async def pause_payment_plan(
    plan_id: str,
    data: ReasonRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    plan = await PaymentPlanService(db).pause_plan(current_user["clinic_id"], plan_id, data.reason, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "PaymentPlan", plan.id,
        {"status": "PAUSED", "reason": data.reason}, request
    )
    return plan


@router.post("/payment-plans/{plan_id}/resume", response_model=PaymentPlanResponse)
async def resume_payment_plan(
    plan_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    plan = await PaymentPlanService(db).resume_plan(current_user["clinic_id"], plan_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "PaymentPlan", plan.id, {"status": "ACTIVE"}, request
    )
    return plan


@router.post("/payment-plans/{plan_id}/cancel", response_model=PaymentPlanResponse)
async def cancel_payment_plan(
    plan_id: str,
    data: ReasonRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    plan = await PaymentPlanService(db).cancel_plan(current_user["clinic_id"], plan_id, data.reason, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "PaymentPlan", plan.id,
        {"status": "CANCELLED", "reason": data.reason}, request
    )
    return plan


@router.delete("/payment-plans/{plan_id}", response_model=SuccessResponse)
async def delete_payment_plan(
    plan_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = DELETE
):
    plan = await PaymentPlanService(db).delete_plan(current_user["clinic_id"], plan_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "PaymentPlan", plan_id, request=request)
    if plan.is_deleted:
        return SuccessResponse(message="Payment plan deleted")
    return SuccessResponse(message="Payment plan has completed installments and was cancelled instead")


# Credits

@router.post("/credits", response_model=CreditResponse, status_code=status.HTTP_201_CREATED)
async def create_credit(
    data: CreditCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = CREATE
):
    credit = await CreditService(db).create_credit(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "CreditBalance", credit.id,
        {"amount": credit.amount, "source": credit.source.value}, request
    )
    return credit


@router.get("/credits/{credit_id}", response_model=CreditResponse)
async def get_credit(credit_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await CreditService(db).get_credit(current_user["clinic_id"], credit_id)


@router.post("/credits/{credit_id}/apply", response_model=CreditResponse)
async def apply_credit(
    credit_id: str,
    data: CreditApply,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    credit = await CreditService(db).apply_credit(
        current_user["clinic_id"], credit_id, data.invoice_id, data.amount, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "CreditBalance", credit.id,
        {"invoice_id": data.invoice_id, "amount": data.amount}, request
    )
    return credit


@router.post("/credits/{credit_id}/transfer", response_model=CreditResponse)
async def transfer_credit(
    credit_id: str,
    data: CreditTransfer,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    """Move part of a credit to another account; returns the new credit"""
    credit = await CreditService(db).transfer_credit(
        current_user["clinic_id"], credit_id, data.to_account_id, data.amount, current_user["sub"], data.description
    )
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "CreditBalance", credit_id,
        {"to_account_id": data.to_account_id, "amount": data.amount, "new_credit_id": credit.id}, request
    )
    return credit


# Treatment estimates

@router.post("/estimates", response_model=EstimateResponse, status_code=status.HTTP_201_CREATED)
async def create_estimate(
    data: EstimateCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = CREATE
):
    estimate = await EstimateService(db).create_estimate(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "TreatmentEstimate", estimate.id,
        {"estimate_number": estimate.estimate_number}, request
    )
    return estimate


@router.get("/estimates", response_model=Page[EstimateResponse])
async def list_estimates(
    account_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    estimate_status: Optional[EstimateStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ
):
    return await EstimateService(db).get_estimates(
        current_user["clinic_id"],
        account_id=account_id,
        patient_id=patient_id,
        status=estimate_status,
        page=page,
        page_size=page_size,
    )


@router.get("/estimates/{estimate_id}", response_model=EstimateResponse)
async def get_estimate(estimate_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await EstimateService(db).get_estimate(current_user["clinic_id"], estimate_id)


@router.patch("/estimates/{estimate_id}", response_model=EstimateResponse)
async def update_estimate(
    estimate_id: str,
    data: EstimateUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    estimate = await EstimateService(db).update_estimate(current_user["clinic_id"], estimate_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "TreatmentEstimate", estimate.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return estimate


@router.post("/estimates/{estimate_id}/present", response_model=EstimateResponse)
async def present_estimate(
    estimate_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    estimate = await EstimateService(db).present_estimate(current_user["clinic_id"], estimate_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "TreatmentEstimate", estimate.id, {"status": "PRESENTED"}, request
    )
    return estimate


@router.post("/estimates/{estimate_id}/accept", response_model=EstimateResponse)
async def accept_estimate(
    estimate_id: str,
    data: EstimateAccept,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    estimate = await EstimateService(db).accept_estimate(
        current_user["clinic_id"], estimate_id, data.scenario_id, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "TreatmentEstimate", estimate.id,
        {"status": "ACCEPTED", "scenario_id": data.scenario_id}, request
    )
    return estimate


@router.post("/estimates/{estimate_id}/decline", response_model=EstimateResponse)
async def decline_estimate(
    estimate_id: str,
    data: ReasonRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    estimate = await EstimateService(db).decline_estimate(
        current_user["clinic_id"], estimate_id, data.reason, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "TreatmentEstimate", estimate.id,
        {"status": "DECLINED", "reason": data.reason}, request
    )
    return estimate


@router.post("/estimates/{estimate_id}/expire", response_model=EstimateResponse)
async def expire_estimate(
    estimate_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    estimate = await EstimateService(db).expire_estimate(current_user["clinic_id"], estimate_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "TreatmentEstimate", estimate.id, {"status": "EXPIRED"}, request
    )
    return estimate


@router.delete("/estimates/{estimate_id}", response_model=SuccessResponse)
async def delete_estimate(
    estimate_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = DELETE
):
    await EstimateService(db).delete_estimate(current_user["clinic_id"], estimate_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "TreatmentEstimate", estimate_id, request=request)
    return SuccessResponse(message="Estimate deleted")


# Statements

@router.post("/statements", response_model=StatementResponse, status_code=status.HTTP_201_CREATED)
async def generate_statement(
    data: StatementGenerate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = CREATE
):
    statement = await StatementService(db).generate_statement(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "Statement", statement.id,
        {"statement_number": statement.statement_number, "amount_due": statement.amount_due}, request
    )
    return statement


@router.get("/statements/{statement_id}", response_model=StatementResponse)
async def get_statement(statement_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await StatementService(db).get_statement(current_user["clinic_id"], statement_id)


@router.post("/statements/{statement_id}/send", response_model=StatementResponse)
async def send_statement(
    statement_id: str,
    data: StatementSend,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE
):
    statement = await StatementService(db).send_statement(
        current_user["clinic_id"], statement_id, data.delivery_method, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "Statement", statement.id,
        {"delivery_method": data.delivery_method.value}, request
    )
    return statement
