from datetime import date, datetime, timedelta
from typing import Optional, Dict, Any, List, Tuple
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from orca.api.v1.collections.schemas import (
    WorkflowCreate, WorkflowUpdate, StageCreate, CollectionStart, PromiseCreate, AgencyCreate, AgencyUpdate,
    ReferralCreate, WriteOffCreate, ReminderSend, ReminderBatchSend,
)
from orca.core.config import settings
from orca.core.exceptions import NotFoundError, ConflictError, BusinessLogicError, BaseCustomException
from orca.domain.billing.models import PatientAccount, AccountStatus, InvoiceStatus
from orca.domain.billing.repository import AccountRepository, InvoiceRepository, PaymentPlanRepository
from orca.domain.billing.service import InvoiceService, update_account_balance
from orca.domain.billing.utils import round_currency, format_currency
from orca.domain.collections.models import (
    CollectionWorkflow, CollectionStage, AccountCollection, CollectionActivity, CollectionStatus,
    CollectionActionType, CollectionActivityType, CommunicationChannel, PaymentPromise, PromiseStatus,
    CollectionAgency, AgencyReferral, AgencyReferralStatus, WriteOff, WriteOffStatus, PaymentReminder,
    ReminderType, ReminderStatus, OPEN_COLLECTION_STATUSES, OPEN_REFERRAL_STATUSES,
)
from orca.domain.collections.repository import (
    WorkflowRepository, CollectionRepository, PromiseRepository, AgencyRepository, WriteOffRepository,
    ReminderRepository, AnalyticsRepository,
)
from orca.domain.collections.utils import days_overdue_from_account, calculate_dso
from orca.domain.patients.models import Patient
from orca.domain.patients.service import PatientService
from orca.infrastructure.notifications import NotificationDispatcher, get_notification_dispatcher
from orca.models.mixins import utcnow
from orca.models.numbering import generate_number

logger = logging.getLogger(__name__)

# Collections still carrying a balance the clinic is chasing
CHASEABLE_STATUSES = OPEN_COLLECTION_STATUSES + (CollectionStatus.AGENCY,)
CLOSED_SUCCESS_STATUSES = (CollectionStatus.COMPLETED, CollectionStatus.SETTLED)

MESSAGE_ACTIVITY = {
    CollectionActionType.EMAIL: (CollectionActivityType.EMAIL_SENT, CommunicationChannel.EMAIL),
    CollectionActionType.SMS: (CollectionActivityType.SMS_SENT, CommunicationChannel.SMS),
    CollectionActionType.LETTER: (CollectionActivityType.LETTER_SENT, CommunicationChannel.LETTER),
}

REMINDER_SUBJECTS = {
    ReminderType.UPCOMING_DUE: "Upcoming payment due",
    ReminderType.PAST_DUE_GENTLE: "Friendly reminder: payment past due",
    ReminderType.PAST_DUE_FIRM: "Your account is past due",
    ReminderType.PAST_DUE_URGENT: "Urgent: account seriously past due",
    ReminderType.FINAL_NOTICE: "Final notice before collections",
    ReminderType.PAYMENT_PLAN_DUE: "Payment plan installment due",
    ReminderType.PAYMENT_PLAN_LATE: "Payment plan installment missed",
}


def reminder_message(reminder_type: ReminderType, patient: Patient, account: PatientAccount, days_overdue: int) -> Tuple[str, str]:
    balance = format_currency(account.current_balance)
    if reminder_type == ReminderType.UPCOMING_DUE:
        body = f"a payment of {balance} on account {account.account_number} is coming due."
    elif reminder_type in (ReminderType.PAYMENT_PLAN_DUE, ReminderType.PAYMENT_PLAN_LATE):
        body = f"your payment plan on account {account.account_number} needs attention. Balance: {balance}."
    elif reminder_type == ReminderType.FINAL_NOTICE:
        body = (
            f"account {account.account_number} is {days_overdue} days past due with {balance} owing. "
            "Please pay now to avoid referral to a collection agency."
        )
    else:
        body = f"account {account.account_number} has {balance} that is {days_overdue} days past due."
    return REMINDER_SUBJECTS[reminder_type], f"Hello {patient.first_name}, {body}"


def contact_for(patient: Patient, channel: CommunicationChannel) -> Optional[str]:
    """Where a message on ``channel`` goes, or None when the patient has no such contact"""
    if channel == CommunicationChannel.EMAIL:
        return patient.email
    if channel in (CommunicationChannel.SMS, CommunicationChannel.PHONE):
        return patient.phone
    if channel == CommunicationChannel.LETTER:
        return patient.address
    return patient.id


def log_collection_activity(
    db: AsyncSession,
    clinic_id: str,
    account_id: str,
    activity_type: CollectionActivityType,
    description: str,
    collection: Optional[AccountCollection] = None,
    performed_by: Optional[str] = None,
    **fields,
) -> CollectionActivity:
    activity = CollectionActivity(
        clinic_id=clinic_id,
        account_id=account_id,
        collection_id=collection.id if collection else fields.pop("collection_id", None),
        activity_type=activity_type,
        description=description,
        performed_by=performed_by,
        **fields,
    )
    db.add(activity)
    return activity


async def get_account_or_404(db: AsyncSession, clinic_id: str, account_id: str) -> PatientAccount:
    account = await AccountRepository(db).get_by_id(clinic_id, account_id)
    if not account:
        raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
    return account


class WorkflowService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = WorkflowRepository(db)

    @staticmethod
    def _build_stages(stages: List[StageCreate]) -> List[CollectionStage]:
        return [
            CollectionStage(
                stage_number=stage.stage_number,
                name=stage.name,
                description=stage.description,
                days_from_previous=stage.days_from_previous,
                days_overdue=stage.days_overdue,
                escalate_after_days=stage.escalate_after_days,
                actions=[action.model_dump(mode="json", exclude_none=True) for action in stage.actions],
            )
            for stage in sorted(stages, key=lambda s: s.stage_number)
        ]

    async def _clear_default(self, clinic_id: str, keep_id: Optional[str] = None) -> None:
        for workflow in await self.repo.get_defaults(clinic_id):
            if workflow.id != keep_id:
                workflow.is_default = False

    async def create_workflow(self, clinic_id: str, data: WorkflowCreate, created_by: str) -> CollectionWorkflow:
        if data.is_default:
            await self._clear_default(clinic_id)
        workflow = CollectionWorkflow(
            clinic_id=clinic_id,
            created_by=created_by,
            **data.model_dump(exclude={"stages"}),
        )
        workflow.stages = self._build_stages(data.stages)
        self.db.add(workflow)
        await self.db.commit()
        logger.info(f"Created collection workflow {workflow.name} with {len(workflow.stages)} stages")
        return workflow

    async def get_workflow(self, clinic_id: str, workflow_id: str) -> CollectionWorkflow:
        workflow = await self.repo.get_by_id(clinic_id, workflow_id)
        if not workflow:
            raise NotFoundError("Collection workflow not found", error_code="WORKFLOW_NOT_FOUND")
        return workflow

    async def get_workflows(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def update_workflow(
        self, clinic_id: str, workflow_id: str, data: WorkflowUpdate, updated_by: str
    ) -> CollectionWorkflow:
        workflow = await self.get_workflow(clinic_id, workflow_id)
        changes = data.model_dump(exclude_unset=True, exclude={"stages"})
        if changes.get("is_default"):
            await self._clear_default(clinic_id, keep_id=workflow.id)
        for field, value in changes.items():
            setattr(workflow, field, value)
        if data.stages is not None:
            numbers = [stage.stage_number for stage in data.stages]
            if not numbers or len(numbers) != len(set(numbers)):
                raise BusinessLogicError("Stages must be non-empty with unique numbers", error_code="INVALID_STAGES")
            workflow.stages = self._build_stages(data.stages)
        workflow.updated_by = updated_by
        await self.db.commit()
        return workflow

    async def delete_workflow(self, clinic_id: str, workflow_id: str, deleted_by: str) -> None:
        workflow = await self.get_workflow(clinic_id, workflow_id)
        in_use = await self.repo.count_active_collections(workflow.id)
        if in_use:
            raise BusinessLogicError(
                "Workflow has active collections",
                details={"active_collections": in_use},
                error_code="WORKFLOW_IN_USE",
            )
        workflow.soft_delete(deleted_by)
        await self.db.commit()


class CollectionService:
    """Moves accounts through workflow stages and records every touch as an activity"""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.repo = CollectionRepository(db)
        self.workflows = WorkflowRepository(db)
        self.agencies = AgencyRepository(db)
        self.patients = PatientService(db)
        self.notifier = notifier or get_notification_dispatcher()

    async def start_collection_workflow(self, clinic_id: str, data: CollectionStart, user_id: str) -> AccountCollection:
        account = await get_account_or_404(self.db, clinic_id, data.account_id)
        if await self.repo.get_open_for_account(account.id):
            raise ConflictError("Account is already in a collection workflow", error_code="COLLECTION_EXISTS")

        if data.workflow_id:
            workflow = await self.workflows.get_by_id(clinic_id, data.workflow_id)
        else:
            workflow = await self.workflows.get_default(clinic_id)
        if not workflow or not workflow.stages:
            raise NotFoundError("Collection workflow not found", error_code="WORKFLOW_NOT_FOUND")

        now = utcnow()
        first_stage = workflow.stages[0]
        collection = AccountCollection(
            clinic_id=clinic_id,
            account_id=account.id,
            workflow_id=workflow.id,
            current_stage=first_stage.stage_number,
            status=CollectionStatus.ACTIVE,
            starting_balance=round_currency(account.current_balance),
            current_balance=round_currency(account.current_balance),
            started_at=now,
            last_action_at=now,
            next_action_date=now + timedelta(days=first_stage.days_from_previous or 0),
            created_by=user_id,
        )
        self.db.add(collection)
        await self.db.flush()
        log_collection_activity(
            self.db, clinic_id, account.id, CollectionActivityType.WORKFLOW_STARTED,
            f"Collection workflow started: {workflow.name}", collection, user_id,
            stage_number=first_stage.stage_number,
        )
        account.status = AccountStatus.COLLECTIONS
        await self.db.commit()
        logger.info(f"Account {account.account_number} entered collections workflow {workflow.name}")
        return collection

    async def get_collection(self, clinic_id: str, collection_id: str) -> AccountCollection:
        collection = await self.repo.get_by_id(clinic_id, collection_id)
        if not collection:
            raise NotFoundError("Account collection not found", error_code="COLLECTION_NOT_FOUND")
        return collection

    async def get_collections(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def get_activities(self, clinic_id: str, collection_id: str) -> List[CollectionActivity]:
        collection = await self.get_collection(clinic_id, collection_id)
        return await self.repo.get_activities(clinic_id, collection.id)

    async def get_account_activities(self, clinic_id: str, account_id: str, page: int = 1, page_size: int = 50):
        return await self.repo.get_account_activities(clinic_id, account_id, page, page_size)

    @staticmethod
    def _require_status(collection: AccountCollection, *allowed: CollectionStatus) -> None:
        if collection.status not in allowed:
            raise BusinessLogicError(
                f"Collection is {collection.status.value}", error_code="INVALID_STATUS"
            )

    async def _next_stage(self, collection: AccountCollection) -> Tuple[CollectionWorkflow, Optional[CollectionStage]]:
        workflow = await self.db.get(CollectionWorkflow, collection.workflow_id)
        stages = workflow.stages
        numbers = [stage.stage_number for stage in stages]
        if collection.current_stage not in numbers:
            return workflow, None
        index = numbers.index(collection.current_stage)
        return workflow, stages[index + 1] if index + 1 < len(stages) else None

    async def _advance(self, collection: AccountCollection, user_id: Optional[str]) -> AccountCollection:
        self._require_status(collection, CollectionStatus.ACTIVE)
        workflow, stage = await self._next_stage(collection)
        if stage is None:
            raise BusinessLogicError("Collection is already at the final stage", error_code="FINAL_STAGE")

        now = utcnow()
        collection.current_stage = stage.stage_number
        collection.last_action_at = now
        following = workflow.stages[workflow.stages.index(stage) + 1:] if stage in workflow.stages else []
        collection.next_action_date = now + timedelta(days=following[0].days_from_previous) if following else None
        collection.updated_by = user_id
        log_collection_activity(
            self.db, collection.clinic_id, collection.account_id, CollectionActivityType.STAGE_ADVANCED,
            f"Advanced to stage {stage.stage_number}: {stage.name}", collection, user_id,
            stage_number=stage.stage_number,
        )
        await self._execute_stage_actions(collection, stage, user_id)
        return collection

    async def advance_to_next_stage(self, clinic_id: str, collection_id: str, user_id: str) -> AccountCollection:
        collection = await self.get_collection(clinic_id, collection_id)
        await self._advance(collection, user_id)
        await self.db.commit()
        return collection

    async def _execute_stage_actions(
        self, collection: AccountCollection, stage: CollectionStage, user_id: Optional[str]
    ) -> None:
        clinic_id = collection.clinic_id
        account = await self.db.get(PatientAccount, collection.account_id)
        patient = await self.db.get(Patient, account.patient_id)

        def log(activity_type, description, **fields):
            log_collection_activity(
                self.db, clinic_id, account.id, activity_type, description, collection, user_id,
                stage_number=stage.stage_number, **fields,
            )

        for action in stage.actions or []:
            action_type = CollectionActionType(action["type"])

            if action_type in MESSAGE_ACTIVITY:
                activity_type, channel = MESSAGE_ACTIVITY[action_type]
                recipient = contact_for(patient, channel) if patient else None
                if not recipient:
                    log(CollectionActivityType.MANUAL_NOTE, f"{channel.value} skipped: patient has no contact on file")
                    continue
                subject = action.get("subject") or f"Account {account.account_number} past due"
                body = action.get("message") or (
                    f"Hello {patient.first_name}, your account has an outstanding balance of "
                    f"{format_currency(collection.current_balance)}."
                )
                try:
                    result = await self.notifier.send(recipient, subject, body, channel=channel.value)
                except BaseCustomException as exc:
                    log(CollectionActivityType.MANUAL_NOTE, f"{channel.value} failed: {exc.message}")
                    continue
                log(activity_type, subject, channel=channel, details={"message_id": result["message_id"]})

            elif action_type in (CollectionActionType.PHONE_CALL, CollectionActionType.CREATE_TASK):
                label = "Phone call" if action_type == CollectionActionType.PHONE_CALL else "Follow-up"
                log(
                    CollectionActivityType.TASK_CREATED,
                    action.get("message") or f"{label} task for stage {stage.stage_number}",
                    channel=CommunicationChannel.PHONE if action_type == CollectionActionType.PHONE_CALL else None,
                    details={"assign_to": action.get("assign_to")},
                )

            elif action_type == CollectionActionType.FLAG_ACCOUNT:
                account.status = AccountStatus.COLLECTIONS
                log(CollectionActivityType.MANUAL_NOTE, "Account flagged for collections")

            elif action_type == CollectionActionType.APPLY_LATE_FEE:
                amount = round_currency(action.get("amount"))
                if amount <= 0:
                    continue
                invoice = await InvoiceService(self.db, self.notifier).create_late_fee_invoice(
                    clinic_id, account, amount, f"Late fee: {stage.name}", user_id
                )
                log(
                    CollectionActivityType.MANUAL_NOTE, f"Late fee of {format_currency(amount)} applied",
                    amount=amount, details={"invoice_id": invoice.id},
                )

            elif action_type == CollectionActionType.SEND_TO_AGENCY:
                agency = await self.agencies.get_default(clinic_id)
                if not agency:
                    log(CollectionActivityType.MANUAL_NOTE, "Agency referral skipped: no active agency")
                    continue
                if await self.agencies.get_open_referral(account.id):
                    continue
                referral = create_referral(self.db, account, agency, collection, user_id)
                await self.db.flush()
                log(
                    CollectionActivityType.SENT_TO_AGENCY, f"Referred to {agency.name}",
                    amount=referral.referred_balance, details={"referral_id": referral.id},
                )

            elif action_type == CollectionActionType.SUSPEND_TREATMENT:
                log(CollectionActivityType.MANUAL_NOTE, "Treatment suspended pending payment")

    async def pause_collection(self, clinic_id: str, collection_id: str, reason: str, user_id: str) -> AccountCollection:
        collection = await self.get_collection(clinic_id, collection_id)
        self._require_status(collection, CollectionStatus.ACTIVE)
        collection.status = CollectionStatus.PAUSED
        collection.paused_at = utcnow()
        collection.pause_reason = reason
        collection.updated_by = user_id
        log_collection_activity(
            self.db, clinic_id, collection.account_id, CollectionActivityType.PAUSED,
            f"Collection paused: {reason}", collection, user_id, stage_number=collection.current_stage,
        )
        await self.db.commit()
        return collection

    async def resume_collection(self, clinic_id: str, collection_id: str, user_id: str) -> AccountCollection:
        collection = await self.get_collection(clinic_id, collection_id)
        self._require_status(collection, CollectionStatus.PAUSED)
        now = utcnow()
        # The pause does not eat into the stage's waiting time
        if collection.next_action_date and collection.paused_at:
            collection.next_action_date += now - collection.paused_at
        collection.status = CollectionStatus.ACTIVE
        collection.paused_at = None
        collection.pause_reason = None
        collection.updated_by = user_id
        log_collection_activity(
            self.db, clinic_id, collection.account_id, CollectionActivityType.RESUMED,
            "Collection resumed", collection, user_id, stage_number=collection.current_stage,
        )
        await self.db.commit()
        return collection

    async def _close(
        self,
        collection: AccountCollection,
        status: CollectionStatus,
        activity_type: CollectionActivityType,
        description: str,
        user_id: Optional[str],
    ) -> AccountCollection:
        self._require_status(collection, *CHASEABLE_STATUSES)
        collection.status = status
        collection.completed_at = utcnow()
        collection.next_action_date = None
        collection.updated_by = user_id
        log_collection_activity(
            self.db, collection.clinic_id, collection.account_id, activity_type, description, collection, user_id,
            stage_number=collection.current_stage,
        )
        if status in CLOSED_SUCCESS_STATUSES:
            account = await self.db.get(PatientAccount, collection.account_id)
            if account and account.status == AccountStatus.COLLECTIONS:
                account.status = AccountStatus.ACTIVE
        return collection

    async def complete_collection(
        self, clinic_id: str, collection_id: str, user_id: str, notes: Optional[str] = None
    ) -> AccountCollection:
        collection = await self.get_collection(clinic_id, collection_id)
        await self._close(
            collection, CollectionStatus.COMPLETED, CollectionActivityType.COMPLETED,
            notes or "Collection completed", user_id,
        )
        await self.db.commit()
        return collection

    async def settle_collection(
        self, clinic_id: str, collection_id: str, user_id: str, notes: Optional[str] = None
    ) -> AccountCollection:
        collection = await self.get_collection(clinic_id, collection_id)
        await self._close(
            collection, CollectionStatus.SETTLED, CollectionActivityType.COMPLETED,
            notes or "Collection settled", user_id,
        )
        await self.db.commit()
        return collection

    async def write_off_collection(
        self, clinic_id: str, collection_id: str, user_id: str, notes: Optional[str] = None
    ) -> AccountCollection:
        collection = await self.get_collection(clinic_id, collection_id)
        await self._close(
            collection, CollectionStatus.WRITTEN_OFF, CollectionActivityType.WRITTEN_OFF,
            notes or "Collection written off", user_id,
        )
        await self.db.commit()
        return collection

    async def record_payment(
        self, clinic_id: str, collection_id: str, amount: float, user_id: str, notes: Optional[str] = None
    ) -> AccountCollection:
        collection = await self.get_collection(clinic_id, collection_id)
        self._require_status(collection, *CHASEABLE_STATUSES)
        amount = round_currency(amount)
        collection.current_balance = round_currency(collection.current_balance - amount)
        collection.paid_amount = round_currency((collection.paid_amount or 0) + amount)
        collection.last_action_at = utcnow()
        collection.updated_by = user_id
        log_collection_activity(
            self.db, clinic_id, collection.account_id, CollectionActivityType.PAYMENT_RECEIVED,
            notes or f"Payment of {format_currency(amount)} received", collection, user_id,
            stage_number=collection.current_stage, amount=amount,
        )
        if collection.current_balance <= 0:
            await self._close(
                collection, CollectionStatus.COMPLETED, CollectionActivityType.COMPLETED,
                "Balance paid in full", user_id,
            )
        await self.db.commit()
        return collection

    async def add_note(self, clinic_id: str, collection_id: str, note: str, user_id: str) -> CollectionActivity:
        collection = await self.get_collection(clinic_id, collection_id)
        activity = log_collection_activity(
            self.db, clinic_id, collection.account_id, CollectionActivityType.MANUAL_NOTE, note, collection, user_id,
            stage_number=collection.current_stage,
        )
        await self.db.commit()
        return activity

    async def process_due_stage_advances(
        self, clinic_id: Optional[str] = None, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Advance every ACTIVE collection whose next action is due; final-stage ones stop being scheduled"""
        now = now or utcnow()
        due = await self.repo.get_due_for_advance(clinic_id, now)
        summary = {"processed": len(due), "advanced": 0, "errors": []}
        for collection in due:
            _, stage = await self._next_stage(collection)
            if stage is None:
                collection.next_action_date = None
                continue
            try:
                await self._advance(collection, None)
                summary["advanced"] += 1
            except BaseCustomException as exc:
                logger.warning(f"Stage advance failed for collection {collection.id}: {exc.message}")
                summary["errors"].append({"collection_id": collection.id, "error": exc.message})
        await self.db.commit()
        logger.info(f"Stage advances: {summary['advanced']} of {summary['processed']} due collections advanced")
        return summary


class PromiseService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = PromiseRepository(db)
        self.collections = CollectionRepository(db)

    async def create_promise(self, clinic_id: str, data: PromiseCreate, user_id: str) -> PaymentPromise:
        account = await get_account_or_404(self.db, clinic_id, data.account_id)
        collection = None
        if data.collection_id:
            collection = await self.collections.get_by_id(clinic_id, data.collection_id)
            if not collection or collection.account_id != account.id:
                raise NotFoundError("Account collection not found", error_code="COLLECTION_NOT_FOUND")

        promise = PaymentPromise(
            clinic_id=clinic_id,
            account_id=account.id,
            collection_id=collection.id if collection else None,
            promised_amount=round_currency(data.promised_amount),
            promise_date=data.promise_date,
            notes=data.notes,
            status=PromiseStatus.PENDING,
            created_by=user_id,
        )
        self.db.add(promise)
        log_collection_activity(
            self.db, clinic_id, account.id, CollectionActivityType.PROMISE_MADE,
            f"Promise to pay {format_currency(promise.promised_amount)} by {data.promise_date.isoformat()}",
            collection, user_id, amount=promise.promised_amount,
        )
        await self.db.commit()
        return promise

    async def get_promise(self, clinic_id: str, promise_id: str) -> PaymentPromise:
        promise = await self.repo.get_by_id(clinic_id, promise_id)
        if not promise:
            raise NotFoundError("Payment promise not found", error_code="PROMISE_NOT_FOUND")
        return promise

    async def get_promises(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def record_promise_payment(
        self, clinic_id: str, promise_id: str, amount: float, user_id: str, paid_date: Optional[date] = None
    ) -> PaymentPromise:
        promise = await self.get_promise(clinic_id, promise_id)
        if promise.status not in (PromiseStatus.PENDING, PromiseStatus.PARTIAL):
            raise BusinessLogicError(f"Promise is {promise.status.value}", error_code="INVALID_STATUS")
        amount = round_currency(amount)
        promise.paid_amount = round_currency((promise.paid_amount or 0) + amount)
        promise.paid_date = paid_date or date.today()
        promise.status = (
            PromiseStatus.FULFILLED if promise.paid_amount >= promise.promised_amount else PromiseStatus.PARTIAL
        )
        promise.updated_by = user_id
        log_collection_activity(
            self.db, clinic_id, promise.account_id, CollectionActivityType.PAYMENT_RECEIVED,
            f"Promise payment of {format_currency(amount)} received", None, user_id,
            collection_id=promise.collection_id, amount=amount,
        )
        await self.db.commit()
        return promise

    async def cancel_promise(self, clinic_id: str, promise_id: str, user_id: str) -> PaymentPromise:
        promise = await self.get_promise(clinic_id, promise_id)
        if promise.status not in (PromiseStatus.PENDING, PromiseStatus.PARTIAL):
            raise BusinessLogicError(f"Promise is {promise.status.value}", error_code="INVALID_STATUS")
        promise.status = PromiseStatus.CANCELLED
        promise.updated_by = user_id
        await self.db.commit()
        return promise

    async def check_broken_promises(self, clinic_id: Optional[str] = None, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or date.today()
        overdue = await self.repo.get_open(clinic_id, before=today)
        now = utcnow()
        for promise in overdue:
            promise.status = PromiseStatus.BROKEN
            promise.broken_at = now
            log_collection_activity(
                self.db, promise.clinic_id, promise.account_id, CollectionActivityType.PROMISE_BROKEN,
                f"Promise of {format_currency(promise.promised_amount)} due "
                f"{promise.promise_date.isoformat()} was not kept",
                collection_id=promise.collection_id, amount=promise.promised_amount,
            )
        await self.db.commit()
        logger.info(f"Marked {len(overdue)} payment promises broken")
        return {"checked": len(overdue), "broken": len(overdue), "promise_ids": [p.id for p in overdue]}

    async def get_due_today(self, clinic_id: str, today: Optional[date] = None) -> List[PaymentPromise]:
        return await self.repo.get_open(clinic_id, on=today or date.today())

    async def get_overdue(self, clinic_id: str, today: Optional[date] = None) -> List[PaymentPromise]:
        return await self.repo.get_open(clinic_id, before=today or date.today())


def create_referral(
    db: AsyncSession,
    account: PatientAccount,
    agency: CollectionAgency,
    collection: Optional[AccountCollection],
    user_id: Optional[str],
) -> AgencyReferral:
    referral = AgencyReferral(
        clinic_id=account.clinic_id,
        account_id=account.id,
        agency_id=agency.id,
        collection_id=collection.id if collection else None,
        status=AgencyReferralStatus.ACTIVE,
        referred_balance=round_currency(account.current_balance),
        days_overdue=days_overdue_from_account(account),
        referred_at=utcnow(),
        created_by=user_id,
    )
    db.add(referral)
    account.status = AccountStatus.COLLECTIONS
    if collection is not None and collection.status in OPEN_COLLECTION_STATUSES:
        collection.status = CollectionStatus.AGENCY
        collection.next_action_date = None
    return referral


class AgencyService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = AgencyRepository(db)
        self.collections = CollectionRepository(db)
        self.plans = PaymentPlanRepository(db)

    async def _clear_default(self, clinic_id: str, keep_id: Optional[str] = None) -> None:
        for agency in await self.repo.get_defaults(clinic_id):
            if agency.id != keep_id:
                agency.is_default = False

    async def create_agency(self, clinic_id: str, data: AgencyCreate, created_by: str) -> CollectionAgency:
        if data.is_default:
            await self._clear_default(clinic_id)
        agency = CollectionAgency(clinic_id=clinic_id, created_by=created_by, **data.model_dump())
        self.db.add(agency)
        await self.db.commit()
        return agency

    async def get_agency(self, clinic_id: str, agency_id: str) -> CollectionAgency:
        agency = await self.repo.get_by_id(clinic_id, agency_id)
        if not agency:
            raise NotFoundError("Collection agency not found", error_code="AGENCY_NOT_FOUND")
        return agency

    async def get_agencies(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def update_agency(self, clinic_id: str, agency_id: str, data: AgencyUpdate, updated_by: str) -> CollectionAgency:
        agency = await self.get_agency(clinic_id, agency_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("is_default"):
            await self._clear_default(clinic_id, keep_id=agency.id)
        for field, value in changes.items():
            setattr(agency, field, value)
        agency.updated_by = updated_by
        await self.db.commit()
        return agency

    async def delete_agency(self, clinic_id: str, agency_id: str, deleted_by: str) -> None:
        agency = await self.get_agency(clinic_id, agency_id)
        agency.soft_delete(deleted_by)
        await self.db.commit()

    async def check_agency_eligibility(self, clinic_id: str, account_id: str) -> Dict[str, Any]:
        account = await get_account_or_404(self.db, clinic_id, account_id)
        reasons = []
        open_referral = await self.repo.get_open_referral(account.id)
        if open_referral and account.status == AccountStatus.COLLECTIONS:
            reasons.append("Already in collections with an agency")
        elif open_referral:
            reasons.append("Already referred to agency")
        if await self.plans.get_active_for_account(account.id):
            reasons.append("Active payment plan exists")
        if (account.current_balance or 0) <= 0:
            reasons.append("Account has no balance")
        return {
            "account_id": account.id,
            "eligible": not reasons,
            "reasons": reasons,
            "balance": round_currency(account.current_balance),
            "days_overdue": days_overdue_from_account(account),
        }

    async def refer_to_agency(self, clinic_id: str, data: ReferralCreate, user_id: str) -> AgencyReferral:
        agency = await self.get_agency(clinic_id, data.agency_id)
        if not agency.is_active:
            raise BusinessLogicError("Collection agency is inactive", error_code="AGENCY_INACTIVE")
        eligibility = await self.check_agency_eligibility(clinic_id, data.account_id)
        if not eligibility["eligible"]:
            raise BusinessLogicError(
                "Account is not eligible for agency referral",
                details={"reasons": eligibility["reasons"]},
                error_code="NOT_ELIGIBLE",
            )
        account = await get_account_or_404(self.db, clinic_id, data.account_id)
        collection = await self.collections.get_open_for_account(account.id)
        referral = create_referral(self.db, account, agency, collection, user_id)
        await self.db.flush()
        log_collection_activity(
            self.db, clinic_id, account.id, CollectionActivityType.SENT_TO_AGENCY, f"Referred to {agency.name}",
            collection, user_id, amount=referral.referred_balance, details={"referral_id": referral.id},
        )
        await self.db.commit()
        logger.info(f"Account {account.account_number} referred to agency {agency.name}")
        return referral

    async def get_referral(self, clinic_id: str, referral_id: str) -> AgencyReferral:
        referral = await self.repo.get_referral(clinic_id, referral_id)
        if not referral:
            raise NotFoundError("Agency referral not found", error_code="REFERRAL_NOT_FOUND")
        return referral

    async def get_referrals(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_referrals(clinic_id, **filters)

    def _require_open(self, referral: AgencyReferral) -> None:
        if referral.status not in OPEN_REFERRAL_STATUSES:
            raise BusinessLogicError(f"Referral is {referral.status.value}", error_code="INVALID_STATUS")

    async def recall_referral(self, clinic_id: str, referral_id: str, reason: str, user_id: str) -> AgencyReferral:
        referral = await self.get_referral(clinic_id, referral_id)
        self._require_open(referral)
        referral.status = AgencyReferralStatus.RECALLED
        referral.recalled_at = utcnow()
        referral.recall_reason = reason
        referral.updated_by = user_id
        log_collection_activity(
            self.db, clinic_id, referral.account_id, CollectionActivityType.RECALLED_FROM_AGENCY,
            f"Recalled from agency: {reason}", None, user_id, collection_id=referral.collection_id,
        )
        await self.db.commit()
        return referral

    async def record_agency_collection(
        self, clinic_id: str, referral_id: str, amount: float, user_id: str
    ) -> AgencyReferral:
        referral = await self.get_referral(clinic_id, referral_id)
        self._require_open(referral)
        amount = round_currency(amount)
        referral.collected_amount = round_currency((referral.collected_amount or 0) + amount)
        referral.last_collection_at = utcnow()
        referral.status = (
            AgencyReferralStatus.COLLECTED
            if referral.collected_amount >= referral.referred_balance
            else AgencyReferralStatus.PARTIAL
        )
        referral.updated_by = user_id
        log_collection_activity(
            self.db, clinic_id, referral.account_id, CollectionActivityType.PAYMENT_RECEIVED,
            f"Agency collected {format_currency(amount)}", None, user_id,
            collection_id=referral.collection_id, amount=amount,
        )
        await self.db.commit()
        return referral


class WriteOffService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = WriteOffRepository(db)
        self.invoices = InvoiceRepository(db)
        self.collections = CollectionRepository(db)

    async def request_write_off(self, clinic_id: str, data: WriteOffCreate, user_id: str) -> WriteOff:
        account = await get_account_or_404(self.db, clinic_id, data.account_id)
        amount = round_currency(data.amount)
        if amount > round_currency(account.current_balance):
            raise BusinessLogicError(
                "Write-off amount exceeds account balance",
                details={"balance": round_currency(account.current_balance), "amount": amount},
                error_code="AMOUNT_EXCEEDS_BALANCE",
            )
        write_off = WriteOff(
            clinic_id=clinic_id,
            write_off_number=await generate_number(self.db, WriteOff.write_off_number, clinic_id, "WO"),
            account_id=account.id,
            collection_id=data.collection_id,
            amount=amount,
            reason=data.reason,
            reason_details=data.reason_details,
            status=WriteOffStatus.PENDING,
            requested_by=user_id,
            created_by=user_id,
        )
        self.db.add(write_off)
        await self.db.commit()
        logger.info(f"Write-off {write_off.write_off_number} requested for {format_currency(amount)}")
        return write_off

    async def get_write_off(self, clinic_id: str, write_off_id: str) -> WriteOff:
        write_off = await self.repo.get_by_id(clinic_id, write_off_id)
        if not write_off:
            raise NotFoundError("Write-off not found", error_code="WRITE_OFF_NOT_FOUND")
        return write_off

    async def get_write_offs(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    def _require_status(self, write_off: WriteOff, *allowed: WriteOffStatus) -> None:
        if write_off.status not in allowed:
            raise BusinessLogicError(f"Write-off is {write_off.status.value}", error_code="INVALID_STATUS")

    async def approve_write_off(self, clinic_id: str, write_off_id: str, user_id: str) -> WriteOff:
        write_off = await self.get_write_off(clinic_id, write_off_id)
        self._require_status(write_off, WriteOffStatus.PENDING)

        remaining = write_off.amount
        for invoice in await self.invoices.get_open_for_account(write_off.account_id):
            if remaining <= 0:
                break
            applied = min(remaining, invoice.balance)
            invoice.balance = round_currency(invoice.balance - applied)
            invoice.adjustments = round_currency((invoice.adjustments or 0) + applied)
            if invoice.balance <= 0:
                invoice.status = InvoiceStatus.PAID
                invoice.paid_at = utcnow()
            remaining = round_currency(remaining - applied)

        write_off.status = WriteOffStatus.APPROVED
        write_off.approved_by = user_id
        write_off.approved_at = utcnow()
        write_off.updated_by = user_id
        await update_account_balance(self.db, write_off.account_id)

        collection = await self.collections.get_open_for_account(write_off.account_id)
        if collection is not None:
            collection.status = CollectionStatus.WRITTEN_OFF
            collection.completed_at = utcnow()
            collection.next_action_date = None
            log_collection_activity(
                self.db, clinic_id, write_off.account_id, CollectionActivityType.WRITTEN_OFF,
                f"Written off {format_currency(write_off.amount)} ({write_off.reason.value})", collection, user_id,
                amount=write_off.amount, details={"write_off_id": write_off.id},
            )
        await self.db.commit()
        logger.info(f"Write-off {write_off.write_off_number} approved")
        return write_off

    async def reject_write_off(self, clinic_id: str, write_off_id: str, reason: str, user_id: str) -> WriteOff:
        write_off = await self.get_write_off(clinic_id, write_off_id)
        self._require_status(write_off, WriteOffStatus.PENDING)
        if not reason:
            raise BusinessLogicError("A rejection reason is required", error_code="REASON_REQUIRED")
        write_off.status = WriteOffStatus.REJECTED
        write_off.rejected_by = user_id
        write_off.rejected_at = utcnow()
        write_off.rejection_reason = reason
        write_off.updated_by = user_id
        await self.db.commit()
        return write_off

    async def record_recovery(self, clinic_id: str, write_off_id: str, amount: float, user_id: str) -> WriteOff:
        write_off = await self.get_write_off(clinic_id, write_off_id)
        self._require_status(write_off, WriteOffStatus.APPROVED, WriteOffStatus.PARTIALLY_RECOVERED)
        write_off.recovered_amount = round_currency((write_off.recovered_amount or 0) + amount)
        write_off.last_recovery_at = utcnow()
        write_off.status = (
            WriteOffStatus.FULLY_RECOVERED
            if write_off.recovered_amount >= write_off.amount
            else WriteOffStatus.PARTIALLY_RECOVERED
        )
        write_off.updated_by = user_id
        await self.db.commit()
        return write_off


class ReminderService:
    def __init__(self, db: AsyncSession, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.repo = ReminderRepository(db)
        self.patients = PatientService(db)
        self.notifier = notifier or get_notification_dispatcher()

    async def _dispatch(
        self,
        account: PatientAccount,
        patient: Patient,
        recipient: str,
        reminder_type: ReminderType,
        channel: CommunicationChannel,
        days_overdue: int,
        custom_message: Optional[str],
        user_id: Optional[str],
    ) -> PaymentReminder:
        subject, body = reminder_message(reminder_type, patient, account, days_overdue)
        body = custom_message or body
        reminder = PaymentReminder(
            clinic_id=account.clinic_id,
            account_id=account.id,
            reminder_type=reminder_type,
            channel=channel,
            recipient=recipient,
            subject=subject,
            message=body,
            days_overdue=days_overdue,
            balance=round_currency(account.current_balance),
            sent_by=user_id,
            sent_at=utcnow(),
        )
        try:
            result = await self.notifier.send(recipient, subject, body, channel=channel.value)
            reminder.status = ReminderStatus.SENT
            reminder.message_id = result["message_id"]
        except BaseCustomException as exc:
            logger.warning(f"Reminder to account {account.account_number} failed: {exc.message}")
            reminder.status = ReminderStatus.FAILED
            reminder.failure_reason = exc.message
        self.db.add(reminder)
        return reminder

    async def send_reminder(self, clinic_id: str, data: ReminderSend, user_id: str) -> PaymentReminder:
        account = await get_account_or_404(self.db, clinic_id, data.account_id)
        patient = await self.patients.get_patient(clinic_id, account.patient_id)
        recipient = contact_for(patient, data.channel)
        if not recipient:
            if data.channel == CommunicationChannel.EMAIL:
                raise BusinessLogicError("Patient has no email address", error_code="NO_EMAIL")
            if data.channel in (CommunicationChannel.SMS, CommunicationChannel.PHONE):
                raise BusinessLogicError("Patient has no phone number", error_code="NO_PHONE")
            raise BusinessLogicError("Patient has no mailing address", error_code="NO_ADDRESS")

        reminder = await self._dispatch(
            account, patient, recipient, data.reminder_type, data.channel,
            days_overdue_from_account(account), data.custom_message, user_id,
        )
        await self.db.commit()
        return reminder

    async def send_batch_reminders(
        self, clinic_id: str, data: ReminderBatchSend, user_id: Optional[str]
    ) -> Dict[str, Any]:
        limit = min(data.max_accounts or settings.REMINDER_BATCH_DEFAULT_LIMIT, settings.REMINDER_BATCH_MAX_LIMIT)
        accounts = await self.repo.get_batch_candidates(clinic_id, data.min_balance, limit)

        summary = {"sent": 0, "skipped": 0, "failed": 0, "results": []}
        for account in accounts:
            days_overdue = days_overdue_from_account(account)
            if data.min_days_overdue is not None and days_overdue < data.min_days_overdue:
                skip = "Outside days-overdue window"
            elif data.max_days_overdue is not None and days_overdue > data.max_days_overdue:
                skip = "Outside days-overdue window"
            else:
                skip = None
            patient = None if skip else await self.db.get(Patient, account.patient_id)
            recipient = contact_for(patient, data.channel) if patient else None
            if not skip and not recipient:
                skip = f"No {data.channel.value.lower()} contact"
            if skip:
                summary["skipped"] += 1
                summary["results"].append({"account_id": account.id, "status": "SKIPPED", "reason": skip})
                continue

            reminder = await self._dispatch(
                account, patient, recipient, data.reminder_type, data.channel, days_overdue, None, user_id
            )
            if reminder.status == ReminderStatus.SENT:
                summary["sent"] += 1
            else:
                summary["failed"] += 1
            summary["results"].append({
                "account_id": account.id,
                "status": reminder.status.value,
                "reason": reminder.failure_reason,
            })
        await self.db.commit()
        logger.info(
            f"Batch {data.reminder_type.value} reminders: {summary['sent']} sent, "
            f"{summary['skipped']} skipped, {summary['failed']} failed"
        )
        return summary

    async def get_reminders(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)


class CollectionAnalyticsService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = AnalyticsRepository(db)
        self.collections = CollectionRepository(db)
        self.promises = PromiseRepository(db)
        self.write_offs = WriteOffRepository(db)
        self.workflows = WorkflowRepository(db)

    async def get_aging_summary(self, clinic_id: str) -> Dict[str, Any]:
        totals = await self.repo.aging_totals(clinic_id)
        aged = totals["aging_30"] + totals["aging_60"] + totals["aging_90"] + totals["aging_120_plus"]
        return {
            "account_count": totals["account_count"],
            "total_ar": round_currency(totals["current_balance"]),
            "current": round_currency(max(0.0, totals["current_balance"] - aged)),
            "aging_30": round_currency(totals["aging_30"]),
            "aging_60": round_currency(totals["aging_60"]),
            "aging_90": round_currency(totals["aging_90"]),
            "aging_120_plus": round_currency(totals["aging_120_plus"]),
        }

    async def calculate_dso(self, clinic_id: str, period_days: int = 90, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or date.today()
        total_ar = (await self.get_aging_summary(clinic_id))["total_ar"]
        total_sales = round_currency(
            await InvoiceRepository(self.db).sum_subtotal_since(clinic_id, today - timedelta(days=period_days))
        )
        return {
            "dso": calculate_dso(total_ar, total_sales, period_days),
            "total_ar": total_ar,
            "total_sales": total_sales,
            "period_days": period_days,
        }

    async def get_collection_summary(self, clinic_id: str) -> Dict[str, Any]:
        by_status = await self.collections.count_by_status(clinic_id)
        promises = await self.promises.count_by_status(clinic_id)
        write_offs = await self.write_offs.totals_by_status(clinic_id)
        pending = write_offs.get(WriteOffStatus.PENDING.value, {"count": 0, "amount": 0.0})
        approved = write_offs.get(WriteOffStatus.APPROVED.value, {"count": 0, "amount": 0.0})
        return {
            "by_status": by_status,
            "active_collections": by_status.get(CollectionStatus.ACTIVE.value, 0),
            "total_in_collections": round_currency(await self.collections.sum_open_balance(clinic_id)),
            "promises_pending": promises.get(PromiseStatus.PENDING.value, 0),
            "promises_broken": promises.get(PromiseStatus.BROKEN.value, 0),
            "write_offs_pending": pending["count"],
            "write_offs_pending_amount": round_currency(pending["amount"]),
            "write_offs_approved": approved["count"],
            "write_offs_approved_amount": round_currency(approved["amount"]),
        }

    async def get_workflow_effectiveness(self, clinic_id: str, workflow_id: str) -> Dict[str, Any]:
        workflow = await self.workflows.get_by_id(clinic_id, workflow_id)
        if not workflow:
            raise NotFoundError("Collection workflow not found", error_code="WORKFLOW_NOT_FOUND")
        collections = await self.workflows.get_collections(workflow.id)

        completed = [c for c in collections if c.status in CLOSED_SUCCESS_STATUSES]
        starting = sum(c.starting_balance or 0 for c in collections)
        recovered = sum((c.starting_balance or 0) - (c.current_balance or 0) for c in collections)
        durations = [(c.completed_at - c.started_at).days for c in completed if c.completed_at and c.started_at]
        return {
            "workflow_id": workflow.id,
            "total_collections": len(collections),
            "completed_collections": len(completed),
            "completion_rate": round(len(completed) / len(collections) * 100, 1) if collections else 0.0,
            "collection_rate": round(recovered / starting * 100, 1) if starting else 0.0,
            "average_days_to_complete": round(sum(durations) / len(durations), 1) if durations else None,
        }
