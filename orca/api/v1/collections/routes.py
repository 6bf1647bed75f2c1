from fastapi import APIRouter, Depends, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List

from orca.core.permissions import require_permissions, Permissions
from orca.core.events import AuditLogger
from orca.domain.audit.models import AuditAction
from orca.domain.collections.models import (
    CollectionPatientType, CollectionStatus, PromiseStatus, AgencyReferralStatus, WriteOffStatus, WriteOffReason,
    ReminderType, ReminderStatus, CommunicationChannel,
)
from orca.domain.collections.service import (
    WorkflowService, CollectionService, PromiseService, AgencyService, WriteOffService, ReminderService,
    CollectionAnalyticsService,
)
from orca.api.v1.common import Page, SuccessResponse
from orca.api.v1.collections.schemas import (
    WorkflowCreate, WorkflowUpdate, WorkflowResponse, WorkflowEffectiveness,
    CollectionStart, CollectionPause, CollectionClose, CollectionPaymentRecord, CollectionNote,
    CollectionResponse, ActivityResponse, StageAdvanceProcessResult,
    PromiseCreate, PromisePayment, PromiseResponse, BrokenPromiseResult,
    AgencyCreate, AgencyUpdate, AgencyResponse, AgencyEligibility, ReferralCreate, ReferralRecall,
    AgencyCollectionRecord, ReferralResponse,
    WriteOffCreate, WriteOffReject, WriteOffRecovery, WriteOffResponse,
    ReminderSend, ReminderBatchSend, ReminderResponse, ReminderBatchResult,
    AgingSummary, DSOResponse, CollectionSummary,
)
from orca.infrastructure.database import get_db

router = APIRouter(prefix="/collections", tags=["Collections"])

READ = Depends(require_permissions([Permissions.COLLECTIONS_READ]))
MANAGE = Depends(require_permissions([Permissions.COLLECTIONS_MANAGE]))
WRITE_OFF = Depends(require_permissions([Permissions.COLLECTIONS_WRITE_OFF]))


# Analytics

@router.get("/analytics/aging", response_model=AgingSummary)
async def aging_summary(db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await CollectionAnalyticsService(db).get_aging_summary(current_user["clinic_id"])


@router.get("/analytics/dso", response_model=DSOResponse)
async def days_sales_outstanding(
    period_days: int = Query(90, ge=1, le=365), db: AsyncSession = Depends(get_db), current_user: dict = READ
):
    return await CollectionAnalyticsService(db).calculate_dso(current_user["clinic_id"], period_days)


@router.get("/analytics/summary", response_model=CollectionSummary)
async def collection_summary(db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await CollectionAnalyticsService(db).get_collection_summary(current_user["clinic_id"])


# Workflows

@router.post("/workflows", response_model=WorkflowResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    data: WorkflowCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    workflow = await WorkflowService(db).create_workflow(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "CollectionWorkflow", workflow.id,
        {"name": workflow.name, "stages": len(workflow.stages)}, request
    )
    return workflow


@router.get("/workflows", response_model=Page[WorkflowResponse])
async def list_workflows(
    is_active: Optional[bool] = None,
    patient_type: Optional[CollectionPatientType] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await WorkflowService(db).get_workflows(
        current_user["clinic_id"], is_active=is_active, patient_type=patient_type, page=page, page_size=page_size
    )


@router.get("/workflows/{workflow_id}", response_model=WorkflowResponse)
async def get_workflow(workflow_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await WorkflowService(db).get_workflow(current_user["clinic_id"], workflow_id)


@router.get("/workflows/{workflow_id}/effectiveness", response_model=WorkflowEffectiveness)
async def workflow_effectiveness(workflow_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await CollectionAnalyticsService(db).get_workflow_effectiveness(current_user["clinic_id"], workflow_id)


@router.patch("/workflows/{workflow_id}", response_model=WorkflowResponse)
async def update_workflow(
    workflow_id: str,
    data: WorkflowUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    workflow = await WorkflowService(db).update_workflow(
        current_user["clinic_id"], workflow_id, data, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "CollectionWorkflow", workflow.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return workflow


@router.delete("/workflows/{workflow_id}", response_model=SuccessResponse)
async def delete_workflow(
    workflow_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    await WorkflowService(db).delete_workflow(current_user["clinic_id"], workflow_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "CollectionWorkflow", workflow_id, request=request)
    return SuccessResponse(message="Workflow deleted")


# Account collections

@router.post("/accounts", response_model=CollectionResponse, status_code=status.HTTP_201_CREATED)
async def start_collection(
    data: CollectionStart, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    collection = await CollectionService(db).start_collection_workflow(
        current_user["clinic_id"], data, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "AccountCollection", collection.id,
        {"account_id": collection.account_id, "workflow_id": collection.workflow_id}, request
    )
    return collection


@router.get("/accounts", response_model=Page[CollectionResponse])
async def list_collections(
    collection_status: Optional[CollectionStatus] = Query(None, alias="status"),
    workflow_id: Optional[str] = None,
    account_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = Query("started_at", pattern="^(started_at|current_balance|current_stage|next_action_date)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await CollectionService(db).get_collections(
        current_user["clinic_id"], status=collection_status, workflow_id=workflow_id, account_id=account_id,
        page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order,
    )


@router.post("/accounts/process-due", response_model=StageAdvanceProcessResult)
async def process_due_advances(request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE):
    summary = await CollectionService(db).process_due_stage_advances(current_user["clinic_id"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "AccountCollection", None,
        {"processed": summary["processed"], "advanced": summary["advanced"]}, request
    )
    return summary


@router.get("/accounts/{collection_id}", response_model=CollectionResponse)
async def get_collection(collection_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await CollectionService(db).get_collection(current_user["clinic_id"], collection_id)


@router.get("/accounts/{collection_id}/activities", response_model=List[ActivityResponse])
async def get_collection_activities(collection_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await CollectionService(db).get_activities(current_user["clinic_id"], collection_id)


@router.post("/accounts/{collection_id}/advance", response_model=CollectionResponse)
async def advance_collection(
    collection_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    collection = await CollectionService(db).advance_to_next_stage(
        current_user["clinic_id"], collection_id, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "AccountCollection", collection.id,
        {"stage": collection.current_stage}, request
    )
    return collection


@router.post("/accounts/{collection_id}/pause", response_model=CollectionResponse)
async def pause_collection(
    collection_id: str,
    data: CollectionPause,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    collection = await CollectionService(db).pause_collection(
        current_user["clinic_id"], collection_id, data.reason, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "AccountCollection", collection.id,
        {"status": "PAUSED", "reason": data.reason}, request
    )
    return collection


@router.post("/accounts/{collection_id}/resume", response_model=CollectionResponse)
async def resume_collection(
    collection_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    collection = await CollectionService(db).resume_collection(
        current_user["clinic_id"], collection_id, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "AccountCollection", collection.id, {"status": "ACTIVE"}, request
    )
    return collection


@router.post("/accounts/{collection_id}/complete", response_model=CollectionResponse)
async def complete_collection(
    collection_id: str,
    data: CollectionClose,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    collection = await CollectionService(db).complete_collection(
        current_user["clinic_id"], collection_id, current_user["sub"], data.notes
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "AccountCollection", collection.id,
        {"status": collection.status.value}, request
    )
    return collection


@router.post("/accounts/{collection_id}/settle", response_model=CollectionResponse)
async def settle_collection(
    collection_id: str,
    data: CollectionClose,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    collection = await CollectionService(db).settle_collection(
        current_user["clinic_id"], collection_id, current_user["sub"], data.notes
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "AccountCollection", collection.id,
        {"status": collection.status.value}, request
    )
    return collection


@router.post("/accounts/{collection_id}/write-off", response_model=CollectionResponse)
async def write_off_collection(
    collection_id: str,
    data: CollectionClose,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = WRITE_OFF,
):
    collection = await CollectionService(db).write_off_collection(
        current_user["clinic_id"], collection_id, current_user["sub"], data.notes
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "AccountCollection", collection.id,
        {"status": collection.status.value}, request
    )
    return collection


@router.post("/accounts/{collection_id}/payments", response_model=CollectionResponse)
async def record_collection_payment(
    collection_id: str,
    data: CollectionPaymentRecord,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    collection = await CollectionService(db).record_payment(
        current_user["clinic_id"], collection_id, data.amount, current_user["sub"], data.notes
    )
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "AccountCollection", collection.id,
        {"amount": data.amount, "remaining": collection.current_balance}, request
    )
    return collection


@router.post("/accounts/{collection_id}/notes", response_model=ActivityResponse, status_code=status.HTTP_201_CREATED)
async def add_collection_note(
    collection_id: str,
    data: CollectionNote,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    activity = await CollectionService(db).add_note(
        current_user["clinic_id"], collection_id, data.note, current_user["sub"]
    )
    await AuditLogger.log(db, current_user, AuditAction.UPDATE, "AccountCollection", collection_id, {"note": True}, request)
    return activity


@router.get("/account-activities/{account_id}", response_model=Page[ActivityResponse])
async def get_account_activities(
    account_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await CollectionService(db).get_account_activities(current_user["clinic_id"], account_id, page, page_size)


# Promises

@router.post("/promises", response_model=PromiseResponse, status_code=status.HTTP_201_CREATED)
async def create_promise(
    data: PromiseCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    promise = await PromiseService(db).create_promise(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "PaymentPromise", promise.id,
        {"amount": promise.promised_amount, "promise_date": promise.promise_date.isoformat()}, request
    )
    return promise


@router.get("/promises", response_model=Page[PromiseResponse])
async def list_promises(
    account_id: Optional[str] = None,
    collection_id: Optional[str] = None,
    promise_status: Optional[PromiseStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await PromiseService(db).get_promises(
        current_user["clinic_id"], account_id=account_id, collection_id=collection_id, status=promise_status,
        page=page, page_size=page_size,
    )


@router.get("/promises/due-today", response_model=List[PromiseResponse])
async def promises_due_today(db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await PromiseService(db).get_due_today(current_user["clinic_id"])


@router.get("/promises/overdue", response_model=List[PromiseResponse])
async def overdue_promises(db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await PromiseService(db).get_overdue(current_user["clinic_id"])


@router.post("/promises/check-broken", response_model=BrokenPromiseResult)
async def check_broken_promises(request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE):
    result = await PromiseService(db).check_broken_promises(current_user["clinic_id"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "PaymentPromise", None, {"broken": result["broken"]}, request
    )
    return result


@router.get("/promises/{promise_id}", response_model=PromiseResponse)
async def get_promise(promise_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await PromiseService(db).get_promise(current_user["clinic_id"], promise_id)


@router.post("/promises/{promise_id}/payments", response_model=PromiseResponse)
async def record_promise_payment(
    promise_id: str,
    data: PromisePayment,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    promise = await PromiseService(db).record_promise_payment(
        current_user["clinic_id"], promise_id, data.amount, current_user["sub"], data.paid_date
    )
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "PaymentPromise", promise.id,
        {"amount": data.amount, "status": promise.status.value}, request
    )
    return promise


@router.post("/promises/{promise_id}/cancel", response_model=PromiseResponse)
async def cancel_promise(promise_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE):
    promise = await PromiseService(db).cancel_promise(current_user["clinic_id"], promise_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "PaymentPromise", promise.id, {"status": "CANCELLED"}, request
    )
    return promise


# Agencies and referrals

@router.post("/agencies", response_model=AgencyResponse, status_code=status.HTTP_201_CREATED)
async def create_agency(data: AgencyCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE):
    agency = await AgencyService(db).create_agency(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.CREATE, "CollectionAgency", agency.id, {"name": agency.name}, request)
    return agency


@router.get("/agencies", response_model=Page[AgencyResponse])
async def list_agencies(
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await AgencyService(db).get_agencies(
        current_user["clinic_id"], is_active=is_active, page=page, page_size=page_size
    )


@router.get("/agencies/eligibility/{account_id}", response_model=AgencyEligibility)
async def check_agency_eligibility(account_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await AgencyService(db).check_agency_eligibility(current_user["clinic_id"], account_id)


@router.get("/agencies/{agency_id}", response_model=AgencyResponse)
async def get_agency(agency_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await AgencyService(db).get_agency(current_user["clinic_id"], agency_id)


@router.patch("/agencies/{agency_id}", response_model=AgencyResponse)
async def update_agency(
    agency_id: str, data: AgencyUpdate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    agency = await AgencyService(db).update_agency(current_user["clinic_id"], agency_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "CollectionAgency", agency.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return agency


@router.delete("/agencies/{agency_id}", response_model=SuccessResponse)
async def delete_agency(agency_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE):
    await AgencyService(db).delete_agency(current_user["clinic_id"], agency_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "CollectionAgency", agency_id, request=request)
    return SuccessResponse(message="Agency deleted")


@router.post("/referrals", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED)
async def refer_to_agency(
    data: ReferralCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    referral = await AgencyService(db).refer_to_agency(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "AgencyReferral", referral.id,
        {"account_id": referral.account_id, "agency_id": referral.agency_id, "balance": referral.referred_balance},
        request,
    )
    return referral


@router.get("/referrals", response_model=Page[ReferralResponse])
async def list_referrals(
    agency_id: Optional[str] = None,
    account_id: Optional[str] = None,
    referral_status: Optional[AgencyReferralStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await AgencyService(db).get_referrals(
        current_user["clinic_id"], agency_id=agency_id, account_id=account_id, status=referral_status,
        page=page, page_size=page_size,
    )


@router.get("/referrals/{referral_id}", response_model=ReferralResponse)
async def get_referral(referral_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await AgencyService(db).get_referral(current_user["clinic_id"], referral_id)


@router.post("/referrals/{referral_id}/recall", response_model=ReferralResponse)
async def recall_referral(
    referral_id: str,
    data: ReferralRecall,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    referral = await AgencyService(db).recall_referral(
        current_user["clinic_id"], referral_id, data.reason, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "AgencyReferral", referral.id,
        {"status": "RECALLED", "reason": data.reason}, request
    )
    return referral


@router.post("/referrals/{referral_id}/collections", response_model=ReferralResponse)
async def record_agency_collection(
    referral_id: str,
    data: AgencyCollectionRecord,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = MANAGE,
):
    referral = await AgencyService(db).record_agency_collection(
        current_user["clinic_id"], referral_id, data.amount, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "AgencyReferral", referral.id,
        {"amount": data.amount, "status": referral.status.value}, request
    )
    return referral


# Write-offs

@router.post("/write-offs", response_model=WriteOffResponse, status_code=status.HTTP_201_CREATED)
async def request_write_off(
    data: WriteOffCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    write_off = await WriteOffService(db).request_write_off(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "WriteOff", write_off.id,
        {"amount": write_off.amount, "reason": write_off.reason.value}, request
    )
    return write_off


@router.get("/write-offs", response_model=Page[WriteOffResponse])
async def list_write_offs(
    account_id: Optional[str] = None,
    write_off_status: Optional[WriteOffStatus] = Query(None, alias="status"),
    reason: Optional[WriteOffReason] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await WriteOffService(db).get_write_offs(
        current_user["clinic_id"], account_id=account_id, status=write_off_status, reason=reason,
        page=page, page_size=page_size,
    )


@router.get("/write-offs/{write_off_id}", response_model=WriteOffResponse)
async def get_write_off(write_off_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await WriteOffService(db).get_write_off(current_user["clinic_id"], write_off_id)


@router.post("/write-offs/{write_off_id}/approve", response_model=WriteOffResponse)
async def approve_write_off(
    write_off_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = WRITE_OFF
):
    write_off = await WriteOffService(db).approve_write_off(current_user["clinic_id"], write_off_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "WriteOff", write_off.id,
        {"status": "APPROVED", "amount": write_off.amount}, request
    )
    return write_off


@router.post("/write-offs/{write_off_id}/reject", response_model=WriteOffResponse)
async def reject_write_off(
    write_off_id: str,
    data: WriteOffReject,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = WRITE_OFF,
):
    write_off = await WriteOffService(db).reject_write_off(
        current_user["clinic_id"], write_off_id, data.reason, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "WriteOff", write_off.id,
        {"status": "REJECTED", "reason": data.reason}, request
    )
    return write_off


@router.post("/write-offs/{write_off_id}/recoveries", response_model=WriteOffResponse)
async def record_write_off_recovery(
    write_off_id: str,
    data: WriteOffRecovery,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = WRITE_OFF,
):
    write_off = await WriteOffService(db).record_recovery(
        current_user["clinic_id"], write_off_id, data.amount, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "WriteOff", write_off.id,
        {"recovered": data.amount, "status": write_off.status.value}, request
    )
    return write_off


# Reminders

@router.post("/reminders", response_model=ReminderResponse, status_code=status.HTTP_201_CREATED)
async def send_reminder(
    data: ReminderSend, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    reminder = await ReminderService(db).send_reminder(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "PaymentReminder", reminder.id,
        {"type": reminder.reminder_type.value, "channel": reminder.channel.value, "status": reminder.status.value},
        request,
    )
    return reminder


@router.post("/reminders/batch", response_model=ReminderBatchResult)
async def send_batch_reminders(
    data: ReminderBatchSend, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = MANAGE
):
    result = await ReminderService(db).send_batch_reminders(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "PaymentReminder", None,
        {
            "batch": True, "type": data.reminder_type.value, "channel": data.channel.value,
            "sent": result["sent"], "skipped": result["skipped"], "failed": result["failed"],
        },
        request,
    )
    return result


@router.get("/reminders", response_model=Page[ReminderResponse])
async def list_reminders(
    account_id: Optional[str] = None,
    reminder_type: Optional[ReminderType] = Query(None, alias="type"),
    channel: Optional[CommunicationChannel] = None,
    reminder_status: Optional[ReminderStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await ReminderService(db).get_reminders(
        current_user["clinic_id"], account_id=account_id, reminder_type=reminder_type, channel=channel,
        status=reminder_status, page=page, page_size=page_size,
    )
