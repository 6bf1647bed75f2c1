from datetime import date, datetime, time, timedelta
from typing import Optional, Dict, Any, List
import logging

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from orca.api.v1.billing.schemas import (
    AccountCreate, AccountUpdate, FamilyGroupCreate, FamilyGroupUpdate, InvoiceCreate, InvoiceUpdate,
    PaymentPlanCreate, PaymentPlanUpdate, CreditCreate, EstimateCreate, EstimateUpdate, StatementGenerate,
)
from orca.core.exceptions import NotFoundError, ConflictError, BusinessLogicError, ValidationError
from orca.domain.billing.models import (
    PatientAccount, AccountStatus, FamilyGroup, Invoice, InvoiceItem, InvoiceStatus, PaymentPlan,
    PaymentPlanStatus, ScheduledPayment, ScheduledPaymentStatus, CreditBalance, CreditSource, CreditStatus,
    TreatmentEstimate, EstimateScenario, EstimateStatus, Statement,
)
from orca.domain.billing.repository import (
    AccountRepository, InvoiceRepository, PaymentPlanRepository, CreditRepository, EstimateRepository,
    StatementRepository,
)
from orca.domain.billing.utils import (
    round_currency, calculate_invoice_totals, calculate_line_total, calculate_payment_plan_amounts,
    calculate_aging_bucket_for_account, days_past_due, build_installment_schedule, format_currency,
)
from orca.domain.patients.service import PatientService
from orca.domain.payments.models import Payment, PaymentStatus, PaymentMethod, StoredMethodStatus
from orca.infrastructure.notifications import NotificationDispatcher, get_notification_dispatcher
from orca.models.mixins import utcnow
from orca.models.numbering import generate_number

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_TERMS_DAYS = 30
AGING_FIELDS = ("aging_30", "aging_60", "aging_90", "aging_120_plus")


async def update_account_balance(db: AsyncSession, account_id: str, today: Optional[date] = None) -> Optional[PatientAccount]:
    """Recompute balances and aging buckets for an account from its invoices and credits"""
    await db.flush()
    account = await db.get(PatientAccount, account_id)
    if account is None:
        return None

    repo = AccountRepository(db)
    invoices = await repo.get_balance_invoices(account_id)
    today = today or date.today()

    totals = {"current_balance": 0.0, "insurance_balance": 0.0, "patient_balance": 0.0}
    aging = dict.fromkeys(AGING_FIELDS, 0.0)
    for invoice in invoices:
        totals["current_balance"] += invoice.balance or 0
        totals["insurance_balance"] += invoice.insurance_amount or 0
        totals["patient_balance"] += invoice.patient_amount or 0
        if (invoice.balance or 0) > 0:
            bucket = calculate_aging_bucket_for_account(days_past_due(invoice.due_date, today))
            if bucket in aging:
                aging[bucket] += invoice.balance

    for field, value in {**totals, **aging}.items():
        setattr(account, field, round_currency(value))
    account.credit_balance = round_currency(await repo.get_available_credit_total(account_id))
    await db.flush()
    return account


def apply_amount_to_invoice(invoice: Invoice, amount: float) -> Invoice:
    """Record money against an invoice and move it to PARTIAL or PAID"""
    invoice.paid_amount = round_currency((invoice.paid_amount or 0) + amount)
    invoice.balance = round_currency(max(0.0, (invoice.balance or 0) - amount))
    if invoice.balance <= 0:
        invoice.status = InvoiceStatus.PAID
        invoice.paid_at = utcnow()
    else:
        invoice.status = InvoiceStatus.PARTIAL
    return invoice


async def create_plan_schedule(db: AsyncSession, plan: PaymentPlan) -> List[ScheduledPayment]:
    """One PENDING installment per payment, starting a period later when a down payment was taken"""
    schedule = build_installment_schedule(
        plan.start_date,
        plan.financed_amount,
        plan.number_of_payments,
        plan.frequency,
        installment_amount=plan.monthly_payment,
        skip_first_period=(plan.down_payment or 0) > 0,
    )
    payments = []
    for number, due, amount in schedule:
        scheduled = ScheduledPayment(
            clinic_id=plan.clinic_id,
            payment_plan_id=plan.id,
            account_id=plan.account_id,
            installment_number=number,
            amount=amount,
            scheduled_date=datetime.combine(due, time.min),
            status=ScheduledPaymentStatus.PENDING,
        )
        db.add(scheduled)
        payments.append(scheduled)

    if schedule:
        plan.next_payment_date = schedule[0][1]
        plan.end_date = schedule[-1][1]
    await db.flush()
    return payments


class AccountService:
    """Patient accounts: the ledger every invoice, payment and credit rolls up to"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = AccountRepository(db)
        self.patients = PatientService(db)

    async def create_account(self, clinic_id: str, data: AccountCreate, created_by: str) -> PatientAccount:
        await self.patients.get_patient(clinic_id, data.patient_id)
        if await self.repo.get_for_patient(clinic_id, data.patient_id):
            raise ConflictError("Patient already has an account", error_code="ACCOUNT_EXISTS")
        if data.guarantor_id:
            await self.patients.get_patient(clinic_id, data.guarantor_id, error_code="GUARANTOR_NOT_FOUND")
        if data.family_group_id and not await self.repo.get_family_group(clinic_id, data.family_group_id):
            raise NotFoundError("Family group not found", error_code="FAMILY_GROUP_NOT_FOUND")

        account = PatientAccount(
            clinic_id=clinic_id,
            account_number=await generate_number(self.db, PatientAccount.account_number, clinic_id, "ACC"),
            status=AccountStatus.ACTIVE,
            created_by=created_by,
            **data.model_dump(),
        )
        await self.repo.add(account)
        await self.db.commit()
        logger.info(f"Created account {account.account_number} for patient {data.patient_id}")
        return account

    async def get_account(self, clinic_id: str, account_id: str) -> PatientAccount:
        account = await self.repo.get_by_id(clinic_id, account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
        return account

    async def get_accounts(self, clinic_id: str, **filters) -> Dict[str, Any]:
        result = await self.repo.get_all(clinic_id, **filters)
        result["stats"] = await self.repo.get_stats(clinic_id)
        return result

    async def update_account(self, clinic_id: str, account_id: str, data: AccountUpdate, updated_by: str) -> PatientAccount:
        account = await self.get_account(clinic_id, account_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("guarantor_id"):
            await self.patients.get_patient(clinic_id, changes["guarantor_id"], error_code="GUARANTOR_NOT_FOUND")
        if changes.get("family_group_id") and not await self.repo.get_family_group(clinic_id, changes["family_group_id"]):
            raise NotFoundError("Family group not found", error_code="FAMILY_GROUP_NOT_FOUND")

        for field, value in changes.items():
            setattr(account, field, value)
        account.updated_by = updated_by
        await self.db.commit()
        return account

    async def delete_account(self, clinic_id: str, account_id: str, deleted_by: str) -> None:
        account = await self.get_account(clinic_id, account_id)
        if round_currency(account.current_balance) != 0:
            raise BusinessLogicError(
                "Cannot delete an account with an outstanding balance",
                details={"current_balance": account.current_balance},
                error_code="HAS_BALANCE",
            )
        account.soft_delete(deleted_by)
        await self.db.commit()

    async def refresh_balance(self, clinic_id: str, account_id: str) -> PatientAccount:
        await self.get_account(clinic_id, account_id)
        account = await update_account_balance(self.db, account_id)
        await self.db.commit()
        return account


class FamilyGroupService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = AccountRepository(db)
        self.patients = PatientService(db)

    async def create_group(self, clinic_id: str, data: FamilyGroupCreate, created_by: str) -> FamilyGroup:
        await self.patients.get_patient(clinic_id, data.primary_guarantor_id, error_code="GUARANTOR_NOT_FOUND")
        group = FamilyGroup(clinic_id=clinic_id, created_by=created_by, **data.model_dump())
        await self.repo.add(group)
        await self.db.commit()
        return group

    async def get_group(self, clinic_id: str, group_id: str) -> FamilyGroup:
        group = await self.repo.get_family_group(clinic_id, group_id)
        if not group:
            raise NotFoundError("Family group not found", error_code="FAMILY_GROUP_NOT_FOUND")
        return group

    async def get_groups(self, clinic_id: str, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        return await self.repo.get_family_groups(clinic_id, page, page_size)

    async def get_members(self, clinic_id: str, group_id: str) -> List[PatientAccount]:
        await self.get_group(clinic_id, group_id)
        return await self.repo.get_group_members(clinic_id, group_id)

    async def update_group(self, clinic_id: str, group_id: str, data: FamilyGroupUpdate, updated_by: str) -> FamilyGroup:
        group = await self.get_group(clinic_id, group_id)
        changes = data.model_dump(exclude_unset=True)
        if changes.get("primary_guarantor_id"):
            await self.patients.get_patient(clinic_id, changes["primary_guarantor_id"], error_code="GUARANTOR_NOT_FOUND")
        for field, value in changes.items():
            setattr(group, field, value)
        group.updated_by = updated_by
        await self.db.commit()
        return group

    async def delete_group(self, clinic_id: str, group_id: str, deleted_by: str) -> None:
        group = await self.get_group(clinic_id, group_id)
        for account in await self.repo.get_group_members(clinic_id, group_id):
            account.family_group_id = None
        group.soft_delete(deleted_by)
        await self.db.commit()

    async def add_member(self, clinic_id: str, group_id: str, account_id: str) -> PatientAccount:
        await self.get_group(clinic_id, group_id)
        account = await self.repo.get_by_id(clinic_id, account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
        if account.family_group_id == group_id:
            raise BusinessLogicError("Account is already in this family group", error_code="ALREADY_IN_GROUP")
        account.family_group_id = group_id
        await self.db.commit()
        return account

    async def remove_member(self, clinic_id: str, group_id: str, account_id: str) -> PatientAccount:
        await self.get_group(clinic_id, group_id)
        account = await self.repo.get_by_id(clinic_id, account_id)
        if not account or account.family_group_id != group_id:
            raise BusinessLogicError("Account is not in this family group", error_code="ACCOUNT_NOT_IN_GROUP")
        account.family_group_id = None
        await self.db.commit()
        return account


class InvoiceService:
    """Invoice lifecycle: DRAFT through SENT, PARTIAL, PAID, OVERDUE or VOID"""

    def __init__(self, db: AsyncSession, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.repo = InvoiceRepository(db)
        self.accounts = AccountRepository(db)
        self.patients = PatientService(db)
        self.notifier = notifier or get_notification_dispatcher()

    async def _get_account(self, clinic_id: str, account_id: str) -> PatientAccount:
        account = await self.accounts.get_by_id(clinic_id, account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
        return account

    async def create_invoice(self, clinic_id: str, data: InvoiceCreate, created_by: str) -> Invoice:
        account = await self._get_account(clinic_id, data.account_id)
        await self.patients.get_patient(clinic_id, data.patient_id)
        if not data.items:
            raise BusinessLogicError("Invoice requires at least one item", error_code="NO_ITEMS")

        item_data = [item.model_dump() for item in data.items]
        totals = calculate_invoice_totals(item_data)
        invoice_date = data.invoice_date or date.today()

        invoice = Invoice(
            clinic_id=clinic_id,
            invoice_number=await generate_number(self.db, Invoice.invoice_number, clinic_id, "INV"),
            account_id=account.id,
            patient_id=data.patient_id,
            treatment_plan_id=data.treatment_plan_id,
            appointment_id=data.appointment_id,
            invoice_date=invoice_date,
            due_date=data.due_date or invoice_date + timedelta(days=DEFAULT_PAYMENT_TERMS_DAYS),
            status=InvoiceStatus.DRAFT,
            notes=data.notes,
            internal_notes=data.internal_notes,
            created_by=created_by,
            **totals,
        )
        invoice.items = [self._build_item(number, item) for number, item in enumerate(item_data, start=1)]
        self.db.add(invoice)
        await update_account_balance(self.db, account.id)
        await self.db.commit()
        logger.info(f"Created invoice {invoice.invoice_number} for account {account.account_number}")
        return invoice

    @staticmethod
    def _build_item(line_number: int, item: Dict[str, Any]) -> InvoiceItem:
        line = calculate_line_total(item)
        patient_amount = item.get("patient_amount")
        if patient_amount is None:
            patient_amount = line - (item.get("discount") or 0) - (item.get("insurance_amount") or 0)
        return InvoiceItem(
            line_number=line_number,
            procedure_code=item["procedure_code"],
            procedure_id=item.get("procedure_id"),
            description=item["description"],
            quantity=item.get("quantity") or 1,
            unit_price=round_currency(item.get("unit_price")),
            discount=round_currency(item.get("discount")),
            insurance_amount=round_currency(item.get("insurance_amount")),
            patient_amount=round_currency(patient_amount),
            total=line,
            tooth_numbers=item.get("tooth_numbers"),
        )

    async def create_late_fee_invoice(
        self, clinic_id: str, account: PatientAccount, amount: float, description: str = "Late fee",
        created_by: Optional[str] = None,
    ) -> Invoice:
        """Issue a single-line PENDING invoice; the caller commits"""
        amount = round_currency(amount)
        today = date.today()
        invoice = Invoice(
            clinic_id=clinic_id,
            invoice_number=await generate_number(self.db, Invoice.invoice_number, clinic_id, "INV"),
            account_id=account.id,
            patient_id=account.patient_id,
            invoice_date=today,
            due_date=today + timedelta(days=DEFAULT_PAYMENT_TERMS_DAYS),
            status=InvoiceStatus.PENDING,
            subtotal=amount,
            patient_amount=amount,
            balance=amount,
            created_by=created_by,
        )
        invoice.items = [self._build_item(1, {
            "procedure_code": "LATE_FEE", "description": description, "quantity": 1, "unit_price": amount,
        })]
        self.db.add(invoice)
        await update_account_balance(self.db, account.id)
        return invoice

    async def get_invoice(self, clinic_id: str, invoice_id: str) -> Invoice:
        invoice = await self.repo.get_by_id(clinic_id, invoice_id)
        if not invoice:
            raise NotFoundError("Invoice not found", error_code="INVOICE_NOT_FOUND")
        return invoice

    async def get_invoices(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def update_invoice(self, clinic_id: str, invoice_id: str, data: InvoiceUpdate, updated_by: str) -> Invoice:
        invoice = await self.get_invoice(clinic_id, invoice_id)
        if invoice.status not in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING):
            raise BusinessLogicError(
                f"Invoice cannot be edited in {invoice.status.value} status", error_code="INVOICE_LOCKED"
            )
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(invoice, field, value)
        invoice.updated_by = updated_by
        await update_account_balance(self.db, invoice.account_id)
        await self.db.commit()
        return invoice

    async def send_invoice(self, clinic_id: str, invoice_id: str, sent_by: str) -> Invoice:
        invoice = await self.get_invoice(clinic_id, invoice_id)
        if invoice.status not in (InvoiceStatus.DRAFT, InvoiceStatus.PENDING):
            raise BusinessLogicError(
                f"Cannot send invoice in {invoice.status.value} status", error_code="INVALID_STATUS"
            )
        invoice.status = InvoiceStatus.SENT
        invoice.sent_at = utcnow()
        invoice.updated_by = sent_by
        await update_account_balance(self.db, invoice.account_id)
        await self.db.commit()

        patient = await self.patients.get_patient(clinic_id, invoice.patient_id)
        if patient.email:
            await self.notifier.send(
                patient.email,
                f"Invoice {invoice.invoice_number}",
                f"Hello {patient.first_name}, your invoice {invoice.invoice_number} for "
                f"{format_currency(invoice.balance)} is due on {invoice.due_date.isoformat()}.",
                channel="EMAIL",
            )
        else:
            logger.warning(f"Invoice {invoice.invoice_number} sent without email: patient has no address")
        return invoice

    async def void_invoice(self, clinic_id: str, invoice_id: str, reason: str, voided_by: str) -> Invoice:
        invoice = await self.get_invoice(clinic_id, invoice_id)
        if (invoice.paid_amount or 0) > 0 or invoice.status in (InvoiceStatus.PAID, InvoiceStatus.VOID):
            raise BusinessLogicError(
                "Invoice with payments or in a final state cannot be voided", error_code="INVALID_STATUS"
            )
        invoice.status = InvoiceStatus.VOID
        invoice.balance = 0.0
        invoice.voided_at = utcnow()
        invoice.void_reason = reason
        invoice.updated_by = voided_by
        await update_account_balance(self.db, invoice.account_id)
        await self.db.commit()
        return invoice

    async def mark_overdue_invoices(self, clinic_id: Optional[str] = None, today: Optional[date] = None) -> Dict[str, Any]:
        today = today or date.today()
        invoices = await self.repo.get_overdue_candidates(clinic_id, today)
        for invoice in invoices:
            invoice.status = InvoiceStatus.OVERDUE
        await self.db.flush()

        # Aging shifts daily; re-bucket every account with an open balance
        account_ids = await AccountRepository(self.db).get_ids_with_open_balance(clinic_id)
        for account_id in account_ids:
            await update_account_balance(self.db, account_id, today)
        await self.db.commit()
        logger.info(f"Marked {len(invoices)} invoices overdue, re-aged {len(account_ids)} accounts")
        return {
            "updated": len(invoices),
            "invoice_ids": [invoice.id for invoice in invoices],
            "accounts_aged": len(account_ids),
        }


class PaymentPlanService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = PaymentPlanRepository(db)
        self.accounts = AccountRepository(db)

    async def _check_payment_method(self, account_id: str, payment_method_id: str) -> PaymentMethod:
        result = await self.db.execute(
            select(PaymentMethod).where(
                PaymentMethod.id == payment_method_id,
                PaymentMethod.account_id == account_id,
                PaymentMethod.status == StoredMethodStatus.ACTIVE,
                PaymentMethod.deleted_at.is_(None),
            )
        )
        method = result.scalar_one_or_none()
        if not method:
            raise BusinessLogicError(
                "Payment method not found or inactive for this account", error_code="PAYMENT_METHOD_NOT_FOUND"
            )
        return method

    @staticmethod
    def _check_installment_override(monthly_payment: float, financed_amount: float, number_of_payments: int) -> None:
        """The final installment takes the remainder, so it has to stay positive"""
        if round_currency(monthly_payment * (number_of_payments - 1)) >= round_currency(financed_amount):
            raise ValidationError(
                "Installment amount leaves nothing for the final payment",
                details={
                    "monthly_payment": monthly_payment,
                    "financed_amount": financed_amount,
                    "number_of_payments": number_of_payments,
                },
            )

    async def create_plan(self, clinic_id: str, data: PaymentPlanCreate, created_by: str) -> PaymentPlan:
        account = await self.accounts.get_by_id(clinic_id, data.account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
        if data.payment_method_id:
            await self._check_payment_method(account.id, data.payment_method_id)

        amounts = calculate_payment_plan_amounts(data.total_amount, data.down_payment, data.number_of_payments)
        if data.monthly_payment:
            self._check_installment_override(data.monthly_payment, amounts["financed_amount"], data.number_of_payments)
        plan = PaymentPlan(
            clinic_id=clinic_id,
            plan_number=await generate_number(self.db, PaymentPlan.plan_number, clinic_id, "PLN"),
            account_id=account.id,
            payment_method_id=data.payment_method_id,
            total_amount=round_currency(data.total_amount),
            down_payment=round_currency(data.down_payment),
            financed_amount=amounts["financed_amount"],
            number_of_payments=data.number_of_payments,
            monthly_payment=round_currency(data.monthly_payment) if data.monthly_payment else amounts["monthly_payment"],
            frequency=data.frequency,
            start_date=data.start_date,
            remaining_balance=amounts["remaining_balance"],
            status=PaymentPlanStatus.PENDING,
            auto_pay_enabled=data.auto_pay_enabled,
            notes=data.notes,
            created_by=created_by,
        )
        self.db.add(plan)
        await self.db.commit()
        return plan

    async def get_plan(self, clinic_id: str, plan_id: str) -> PaymentPlan:
        plan = await self.repo.get_by_id(clinic_id, plan_id)
        if not plan:
            raise NotFoundError("Payment plan not found", error_code="PLAN_NOT_FOUND")
        return plan

    async def get_plans(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def get_schedule(self, clinic_id: str, plan_id: str) -> List[ScheduledPayment]:
        plan = await self.get_plan(clinic_id, plan_id)
        return await self.repo.get_schedule(plan.id)

    async def update_plan(self, clinic_id: str, plan_id: str, data: PaymentPlanUpdate, updated_by: str) -> PaymentPlan:
        plan = await self.get_plan(clinic_id, plan_id)
        if plan.status in (PaymentPlanStatus.COMPLETED, PaymentPlanStatus.CANCELLED):
            raise BusinessLogicError(
                f"Payment plan cannot be edited in {plan.status.value} status", error_code="PLAN_LOCKED"
            )
        changes = data.model_dump(exclude_unset=True)
        if changes.get("payment_method_id"):
            await self._check_payment_method(plan.account_id, changes["payment_method_id"])
        if changes.get("monthly_payment"):
            changes["monthly_payment"] = round_currency(changes["monthly_payment"])
            self._check_installment_override(changes["monthly_payment"], plan.financed_amount, plan.number_of_payments)
        for field, value in changes.items():
            setattr(plan, field, value)
        plan.updated_by = updated_by
        await self.db.commit()
        return plan

    def _require_status(self, plan: PaymentPlan, *allowed: PaymentPlanStatus) -> None:
        if plan.status not in allowed:
            raise BusinessLogicError(
                f"Payment plan is {plan.status.value}", details={"status": plan.status.value}, error_code="INVALID_STATUS"
            )

    async def activate_plan(self, clinic_id: str, plan_id: str, user_id: str) -> PaymentPlan:
        plan = await self.get_plan(clinic_id, plan_id)
        self._require_status(plan, PaymentPlanStatus.PENDING)
        plan.status = PaymentPlanStatus.ACTIVE
        plan.activated_at = utcnow()
        plan.remaining_balance = plan.financed_amount
        plan.updated_by = user_id
        await create_plan_schedule(self.db, plan)
        await self.db.commit()
        logger.info(f"Activated payment plan {plan.plan_number} with {plan.number_of_payments} installments")
        return plan

    async def pause_plan(self, clinic_id: str, plan_id: str, reason: str, user_id: str) -> PaymentPlan:
        plan = await self.get_plan(clinic_id, plan_id)
        self._require_status(plan, PaymentPlanStatus.ACTIVE)
        plan.status = PaymentPlanStatus.PAUSED
        plan.paused_at = utcnow()
        plan.pause_reason = reason
        plan.updated_by = user_id
        await self.db.commit()
        return plan

    async def resume_plan(self, clinic_id: str, plan_id: str, user_id: str) -> PaymentPlan:
        plan = await self.get_plan(clinic_id, plan_id)
        self._require_status(plan, PaymentPlanStatus.PAUSED)
        plan.status = PaymentPlanStatus.ACTIVE
        plan.paused_at = None
        plan.pause_reason = None
        plan.updated_by = user_id
        await self.db.commit()
        return plan

    async def _cancel_pending_installments(self, plan: PaymentPlan) -> int:
        pending = await self.repo.get_schedule(plan.id, [ScheduledPaymentStatus.PENDING])
        for scheduled in pending:
            scheduled.status = ScheduledPaymentStatus.CANCELLED
        return len(pending)

    async def cancel_plan(self, clinic_id: str, plan_id: str, reason: str, user_id: str) -> PaymentPlan:
        plan = await self.get_plan(clinic_id, plan_id)
        if plan.status in (PaymentPlanStatus.COMPLETED, PaymentPlanStatus.CANCELLED):
            raise BusinessLogicError(
                f"Payment plan is already {plan.status.value}", error_code="INVALID_STATUS"
            )
        plan.status = PaymentPlanStatus.CANCELLED
        plan.cancelled_at = utcnow()
        plan.cancel_reason = reason
        plan.next_payment_date = None
        plan.updated_by = user_id
        await self._cancel_pending_installments(plan)
        await self.db.commit()
        return plan

    async def delete_plan(self, clinic_id: str, plan_id: str, user_id: str) -> PaymentPlan:
        plan = await self.get_plan(clinic_id, plan_id)
        completed = await self.repo.get_schedule(plan.id, [ScheduledPaymentStatus.COMPLETED])
        if completed:
            plan.status = PaymentPlanStatus.CANCELLED
            plan.cancelled_at = utcnow()
            plan.cancel_reason = plan.cancel_reason or "Deleted with completed installments"
            await self._cancel_pending_installments(plan)
        else:
            await self.db.execute(delete(ScheduledPayment).where(ScheduledPayment.payment_plan_id == plan.id))
            plan.soft_delete(user_id)
        plan.updated_by = user_id
        await self.db.commit()
        return plan


class CreditService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = CreditRepository(db)
        self.accounts = AccountRepository(db)
        self.invoices = InvoiceRepository(db)

    async def create_credit(self, clinic_id: str, data: CreditCreate, created_by: Optional[str]) -> CreditBalance:
        account = await self.accounts.get_by_id(clinic_id, data.account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
        credit = await self.add_credit(
            clinic_id, account.id, data.amount, data.source, data.description, created_by,
            expires_at=data.expires_at, source_payment_id=data.source_payment_id,
        )
        await self.db.commit()
        return credit

    async def add_credit(
        self, clinic_id: str, account_id: str, amount: float, source: CreditSource,
        description: Optional[str] = None, created_by: Optional[str] = None, **extra,
    ) -> CreditBalance:
        """Create an AVAILABLE credit and refresh the account; the caller commits"""
        amount = round_currency(amount)
        credit = CreditBalance(
            clinic_id=clinic_id,
            account_id=account_id,
            amount=amount,
            remaining_amount=amount,
            source=source,
            status=CreditStatus.AVAILABLE,
            description=description,
            created_by=created_by,
            **extra,
        )
        self.db.add(credit)
        await update_account_balance(self.db, account_id)
        return credit

    async def get_credit(self, clinic_id: str, credit_id: str) -> CreditBalance:
        credit = await self.repo.get_by_id(clinic_id, credit_id)
        if not credit:
            raise NotFoundError("Credit not found", error_code="CREDIT_NOT_FOUND")
        return credit

    async def get_account_credits(self, clinic_id: str, account_id: str, status: Optional[CreditStatus] = None) -> List[CreditBalance]:
        return await self.repo.get_for_account(clinic_id, account_id, status)

    async def _available_credit(self, clinic_id: str, credit_id: str, amount: float) -> CreditBalance:
        credit = await self.repo.get_by_id(clinic_id, credit_id)
        if not credit or credit.status != CreditStatus.AVAILABLE:
            raise NotFoundError("Available credit not found", error_code="CREDIT_NOT_FOUND")
        if round_currency(credit.remaining_amount) < round_currency(amount):
            raise BusinessLogicError(
                "Credit balance is insufficient",
                details={"remaining_amount": credit.remaining_amount, "requested": amount},
                error_code="INSUFFICIENT_CREDIT",
            )
        return credit

    @staticmethod
    def _draw_down(credit: CreditBalance, amount: float) -> None:
        credit.remaining_amount = round_currency(credit.remaining_amount - amount)
        if credit.remaining_amount <= 0:
            credit.remaining_amount = 0.0
            credit.status = CreditStatus.APPLIED

    async def apply_credit(self, clinic_id: str, credit_id: str, invoice_id: str, amount: float, user_id: str) -> CreditBalance:
        credit = await self._available_credit(clinic_id, credit_id, amount)
        invoice = await self.invoices.get_by_id(clinic_id, invoice_id)
        if not invoice or invoice.account_id != credit.account_id:
            raise NotFoundError("Invoice not found on this account", error_code="INVOICE_NOT_FOUND")
        if round_currency(invoice.balance) < round_currency(amount):
            raise BusinessLogicError(
                "Amount exceeds invoice balance",
                details={"balance": invoice.balance, "requested": amount},
                error_code="AMOUNT_EXCEEDS_BALANCE",
            )

        self._draw_down(credit, amount)
        credit.applied_to_invoice_id = invoice.id
        credit.applied_at = utcnow()
        credit.updated_by = user_id
        apply_amount_to_invoice(invoice, amount)
        await update_account_balance(self.db, credit.account_id)
        await self.db.commit()
        return credit

    async def transfer_credit(
        self, clinic_id: str, credit_id: str, to_account_id: str, amount: float, user_id: str,
        description: Optional[str] = None,
    ) -> CreditBalance:
        credit = await self._available_credit(clinic_id, credit_id, amount)
        destination = await self.accounts.get_by_id(clinic_id, to_account_id)
        if not destination:
            raise NotFoundError("Destination account not found", error_code="DEST_ACCOUNT_NOT_FOUND")

        self._draw_down(credit, amount)
        credit.updated_by = user_id
        new_credit = await self.add_credit(
            clinic_id, destination.id, amount, CreditSource.TRANSFER,
            description or f"Transferred from account {credit.account_id}", user_id,
        )
        await update_account_balance(self.db, credit.account_id)
        await self.db.commit()
        return new_credit

    async def expire_credits(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        credits = await self.repo.get_expirable(now or utcnow())
        for credit in credits:
            credit.status = CreditStatus.EXPIRED
        for account_id in {credit.account_id for credit in credits}:
            await update_account_balance(self.db, account_id)
        await self.db.commit()
        return {"expired": len(credits)}


class EstimateService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = EstimateRepository(db)
        self.accounts = AccountRepository(db)
        self.patients = PatientService(db)

    async def create_estimate(self, clinic_id: str, data: EstimateCreate, created_by: str) -> TreatmentEstimate:
        if not await self.accounts.get_by_id(clinic_id, data.account_id):
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
        await self.patients.get_patient(clinic_id, data.patient_id)

        fields = data.model_dump(exclude={"scenarios"})
        estimate = TreatmentEstimate(
            clinic_id=clinic_id,
            estimate_number=await generate_number(self.db, TreatmentEstimate.estimate_number, clinic_id, "EST"),
            status=EstimateStatus.DRAFT,
            created_by=created_by,
            **fields,
        )
        estimate.scenarios = [EstimateScenario(**scenario.model_dump()) for scenario in data.scenarios]
        self.db.add(estimate)
        await self.db.commit()
        return estimate

    async def get_estimate(self, clinic_id: str, estimate_id: str) -> TreatmentEstimate:
        estimate = await self.repo.get_by_id(clinic_id, estimate_id)
        if not estimate:
            raise NotFoundError("Estimate not found", error_code="ESTIMATE_NOT_FOUND")
        return estimate

    async def get_estimates(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def update_estimate(self, clinic_id: str, estimate_id: str, data: EstimateUpdate, updated_by: str) -> TreatmentEstimate:
        estimate = await self.get_estimate(clinic_id, estimate_id)
        if estimate.status in (EstimateStatus.ACCEPTED, EstimateStatus.DECLINED, EstimateStatus.EXPIRED):
            raise BusinessLogicError(
                f"Estimate cannot be edited in {estimate.status.value} status", error_code="ESTIMATE_LOCKED"
            )
        changes = data.model_dump(exclude_unset=True, exclude={"scenarios"})
        for field, value in changes.items():
            setattr(estimate, field, value)
        if data.scenarios is not None:
            estimate.scenarios = [EstimateScenario(**scenario.model_dump()) for scenario in data.scenarios]
        estimate.updated_by = updated_by
        await self.db.commit()
        return estimate

    def _require_status(self, estimate: TreatmentEstimate, *allowed: EstimateStatus) -> None:
        if estimate.status not in allowed:
            raise BusinessLogicError(f"Estimate is {estimate.status.value}", error_code="INVALID_STATUS")

    async def present_estimate(self, clinic_id: str, estimate_id: str, user_id: str) -> TreatmentEstimate:
        estimate = await self.get_estimate(clinic_id, estimate_id)
        self._require_status(estimate, EstimateStatus.DRAFT)
        estimate.status = EstimateStatus.PRESENTED
        estimate.presented_at = utcnow()
        estimate.presented_by = user_id
        await self.db.commit()
        return estimate

    async def accept_estimate(self, clinic_id: str, estimate_id: str, scenario_id: Optional[str], user_id: str) -> TreatmentEstimate:
        estimate = await self.get_estimate(clinic_id, estimate_id)
        self._require_status(estimate, EstimateStatus.PRESENTED)
        if scenario_id:
            selected = next((s for s in estimate.scenarios if s.id == scenario_id), None)
            if selected is None:
                raise NotFoundError("Scenario not found on this estimate", error_code="SCENARIO_NOT_FOUND")
            for scenario in estimate.scenarios:
                scenario.is_selected = scenario.id == scenario_id
            estimate.total_cost = selected.total_cost
            estimate.insurance_estimate = selected.insurance_estimate
            estimate.patient_estimate = selected.patient_estimate
        estimate.status = EstimateStatus.ACCEPTED
        estimate.accepted_at = utcnow()
        estimate.updated_by = user_id
        await self.db.commit()
        return estimate

    async def decline_estimate(self, clinic_id: str, estimate_id: str, reason: Optional[str], user_id: str) -> TreatmentEstimate:
        estimate = await self.get_estimate(clinic_id, estimate_id)
        self._require_status(estimate, EstimateStatus.PRESENTED)
        estimate.status = EstimateStatus.DECLINED
        estimate.declined_at = utcnow()
        estimate.decline_reason = reason
        estimate.updated_by = user_id
        await self.db.commit()
        return estimate

    async def expire_estimate(self, clinic_id: str, estimate_id: str, user_id: str) -> TreatmentEstimate:
        estimate = await self.get_estimate(clinic_id, estimate_id)
        self._require_status(estimate, EstimateStatus.DRAFT, EstimateStatus.PRESENTED)
        estimate.status = EstimateStatus.EXPIRED
        estimate.expired_at = utcnow()
        estimate.updated_by = user_id
        await self.db.commit()
        return estimate

    async def delete_estimate(self, clinic_id: str, estimate_id: str, user_id: str) -> None:
        estimate = await self.get_estimate(clinic_id, estimate_id)
        estimate.soft_delete(user_id)
        await self.db.commit()


class StatementService:
    def __init__(self, db: AsyncSession, notifier: Optional[NotificationDispatcher] = None):
        self.db = db
        self.repo = StatementRepository(db)
        self.accounts = AccountRepository(db)
        self.invoices = InvoiceRepository(db)
        self.patients = PatientService(db)
        self.notifier = notifier or get_notification_dispatcher()

    async def _payments_received(self, account_id: str, start: date, end: date) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.account_id == account_id,
                Payment.status == PaymentStatus.COMPLETED,
                Payment.payment_date >= datetime.combine(start, time.min),
                Payment.payment_date <= datetime.combine(end, time.max),
                Payment.deleted_at.is_(None),
            )
        )
        return float(result.scalar_one())

    async def generate_statement(self, clinic_id: str, data: StatementGenerate, created_by: str) -> Statement:
        account = await self.accounts.get_by_id(clinic_id, data.account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")

        previous_balance = round_currency(await self.invoices.sum_balance_before(account.id, data.period_start))
        period_invoices = await self.invoices.get_for_period(account.id, data.period_start, data.period_end)
        new_charges = round_currency(sum(invoice.subtotal or 0 for invoice in period_invoices))
        adjustments = round_currency(sum(invoice.adjustments or 0 for invoice in period_invoices))
        payments_received = round_currency(await self._payments_received(account.id, data.period_start, data.period_end))

        statement = Statement(
            clinic_id=clinic_id,
            statement_number=await generate_number(self.db, Statement.statement_number, clinic_id, "STM"),
            account_id=account.id,
            statement_date=date.today(),
            period_start=data.period_start,
            period_end=data.period_end,
            due_date=data.due_date,
            previous_balance=previous_balance,
            new_charges=new_charges,
            payments_received=payments_received,
            adjustments=adjustments,
            amount_due=round_currency(max(0.0, previous_balance + new_charges - payments_received - adjustments)),
            created_by=created_by,
        )
        self.db.add(statement)
        account.last_statement_date = statement.statement_date
        await self.db.commit()
        return statement

    async def get_statement(self, clinic_id: str, statement_id: str) -> Statement:
        statement = await self.repo.get_by_id(clinic_id, statement_id)
        if not statement:
            raise NotFoundError("Statement not found", error_code="STATEMENT_NOT_FOUND")
        return statement

    async def get_statements(self, clinic_id: str, account_id: str, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        return await self.repo.get_for_account(clinic_id, account_id, page, page_size)

    async def send_statement(self, clinic_id: str, statement_id: str, delivery_method, user_id: str) -> Statement:
        statement = await self.get_statement(clinic_id, statement_id)
        account = await self.accounts.get_by_id(clinic_id, statement.account_id)
        patient = await self.patients.get_patient(clinic_id, account.patient_id)

        channel = {"EMAIL": "EMAIL", "MAIL": "LETTER", "PORTAL": "PORTAL"}[delivery_method.value]
        recipient = patient.email if channel == "EMAIL" else (patient.address if channel == "LETTER" else patient.id)
        if channel == "EMAIL" and not recipient:
            raise BusinessLogicError("Patient has no email address", error_code="NO_EMAIL")

        await self.notifier.send(
            recipient,
            f"Statement {statement.statement_number}",
            f"Amount due {format_currency(statement.amount_due)} by {statement.due_date.isoformat()}.",
            channel=channel,
        )
        statement.delivery_method = delivery_method
        statement.sent_at = utcnow()
        statement.updated_by = user_id
        await self.db.commit()
        return statement
