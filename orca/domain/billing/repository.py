from datetime import date, datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_

from orca.domain.billing.models import (
    PatientAccount, FamilyGroup, Invoice, PaymentPlan, ScheduledPayment, CreditBalance, CreditStatus,
    TreatmentEstimate, Statement, InvoiceStatus, PaymentPlanStatus, EXCLUDED_BALANCE_STATUSES,
)
from orca.domain.patients.models import Patient
from orca.models.pagination import paginate, sort_column_for


class AccountRepository:
    """Data access for patient accounts and family groups"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def add(self, instance):
        self.db.add(instance)
        await self.db.flush()
        return instance

    async def get_by_id(self, clinic_id: str, account_id: str) -> Optional[PatientAccount]:
        result = await self.db.execute(
            select(PatientAccount).where(
                PatientAccount.id == account_id,
                PatientAccount.clinic_id == clinic_id,
                PatientAccount.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_for_patient(self, clinic_id: str, patient_id: str) -> Optional[PatientAccount]:
        result = await self.db.execute(
            select(PatientAccount).where(
                PatientAccount.patient_id == patient_id,
                PatientAccount.clinic_id == clinic_id,
                PatientAccount.deleted_at.is_(None),
            )
        )
        return result.scalars().first()

    async def get_all(
        self,
        clinic_id: str,
        search: Optional[str] = None,
        patient_id: Optional[str] = None,
        guarantor_id: Optional[str] = None,
        family_group_id: Optional[str] = None,
        status=None,
        account_type=None,
        has_outstanding_balance: Optional[bool] = None,
        min_balance: Optional[float] = None,
        max_balance: Optional[float] = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        query = select(PatientAccount).where(
            PatientAccount.clinic_id == clinic_id, PatientAccount.deleted_at.is_(None)
        )
        if search:
            pattern = f"%{search}%"
            query = query.join(Patient, Patient.id == PatientAccount.patient_id).where(
                or_(
                    PatientAccount.account_number.ilike(pattern),
                    Patient.first_name.ilike(pattern),
                    Patient.last_name.ilike(pattern),
                )
            )
        if patient_id:
            query = query.where(PatientAccount.patient_id == patient_id)
        if guarantor_id:
            query = query.where(PatientAccount.guarantor_id == guarantor_id)
        if family_group_id:
            query = query.where(PatientAccount.family_group_id == family_group_id)
        if status:
            query = query.where(PatientAccount.status == status)
        if account_type:
            query = query.where(PatientAccount.account_type == account_type)
        if has_outstanding_balance is True:
            query = query.where(PatientAccount.current_balance > 0)
        elif has_outstanding_balance is False:
            query = query.where(PatientAccount.current_balance <= 0)
        if min_balance is not None:
            query = query.where(PatientAccount.current_balance >= min_balance)
        if max_balance is not None:
            query = query.where(PatientAccount.current_balance <= max_balance)

        return await paginate(
            self.db, query, page, page_size, sort_column_for(PatientAccount, sort_by, "created_at"), sort_order
        )

    async def get_stats(self, clinic_id: str) -> Dict[str, Any]:
        base = (PatientAccount.clinic_id == clinic_id, PatientAccount.deleted_at.is_(None))
        totals = (await self.db.execute(
            select(
                func.count(PatientAccount.id),
                func.coalesce(func.sum(PatientAccount.current_balance), 0),
                func.coalesce(func.sum(PatientAccount.patient_balance), 0),
                func.coalesce(func.sum(PatientAccount.insurance_balance), 0),
                func.coalesce(func.sum(PatientAccount.credit_balance), 0),
            ).where(*base)
        )).one()
        by_status = await self.db.execute(
            select(PatientAccount.status, func.count(PatientAccount.id)).where(*base).group_by(PatientAccount.status)
        )
        return {
            "total_accounts": totals[0],
            "total_balance": round(float(totals[1]), 2),
            "total_patient_balance": round(float(totals[2]), 2),
            "total_insurance_balance": round(float(totals[3]), 2),
            "total_credit_balance": round(float(totals[4]), 2),
            "by_status": {
                (status.value if hasattr(status, "value") else status): count for status, count in by_status.all()
            },
        }

    async def get_family_group(self, clinic_id: str, group_id: str) -> Optional[FamilyGroup]:
        result = await self.db.execute(
            select(FamilyGroup).where(
                FamilyGroup.id == group_id,
                FamilyGroup.clinic_id == clinic_id,
                FamilyGroup.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_family_groups(self, clinic_id: str, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        query = select(FamilyGroup).where(FamilyGroup.clinic_id == clinic_id, FamilyGroup.deleted_at.is_(None))
        return await paginate(self.db, query, page, page_size, FamilyGroup.group_name, "asc")

    async def get_group_members(self, clinic_id: str, group_id: str) -> List[PatientAccount]:
        result = await self.db.execute(
            select(PatientAccount).where(
                PatientAccount.clinic_id == clinic_id,
                PatientAccount.family_group_id == group_id,
                PatientAccount.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def get_ids_with_open_balance(self, clinic_id: Optional[str] = None) -> List[str]:
        query = select(Invoice.account_id).distinct().where(
            Invoice.balance > 0,
            Invoice.deleted_at.is_(None),
            Invoice.status.notin_(EXCLUDED_BALANCE_STATUSES),
        )
        if clinic_id:
            query = query.where(Invoice.clinic_id == clinic_id)
        result = await self.db.execute(query)
        return [row[0] for row in result.all()]

    async def get_balance_invoices(self, account_id: str) -> List[Invoice]:
        """Invoices that count toward an account's balance"""
        result = await self.db.execute(
            select(Invoice).where(
                Invoice.account_id == account_id,
                Invoice.deleted_at.is_(None),
                Invoice.status.notin_(EXCLUDED_BALANCE_STATUSES),
            )
        )
        return list(result.scalars().all())

    async def get_available_credit_total(self, account_id: str) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(CreditBalance.remaining_amount), 0)).where(
                CreditBalance.account_id == account_id,
                CreditBalance.status == CreditStatus.AVAILABLE,
                CreditBalance.deleted_at.is_(None),
            )
        )
        return float(result.scalar_one())


class InvoiceRepository:
    """Data access for invoices"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, invoice_id: str) -> Optional[Invoice]:
        result = await self.db.execute(
            select(Invoice).where(
                Invoice.id == invoice_id,
                Invoice.clinic_id == clinic_id,
                Invoice.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_many(self, clinic_id: str, invoice_ids: List[str]) -> List[Invoice]:
        if not invoice_ids:
            return []
        result = await self.db.execute(
            select(Invoice).where(
                Invoice.id.in_(invoice_ids),
                Invoice.clinic_id == clinic_id,
                Invoice.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def get_all(
        self,
        clinic_id: str,
        account_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status=None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        due_from: Optional[date] = None,
        due_to: Optional[date] = None,
        min_amount: Optional[float] = None,
        max_amount: Optional[float] = None,
        is_overdue: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "invoice_date",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        query = select(Invoice).where(Invoice.clinic_id == clinic_id, Invoice.deleted_at.is_(None))
        if account_id:
            query = query.where(Invoice.account_id == account_id)
        if patient_id:
            query = query.where(Invoice.patient_id == patient_id)
        if status:
            query = query.where(Invoice.status == status)
        if date_from:
            query = query.where(Invoice.invoice_date >= date_from)
        if date_to:
            query = query.where(Invoice.invoice_date <= date_to)
        if due_from:
            query = query.where(Invoice.due_date >= due_from)
        if due_to:
            query = query.where(Invoice.due_date <= due_to)
        if min_amount is not None:
            query = query.where(Invoice.subtotal >= min_amount)
        if max_amount is not None:
            query = query.where(Invoice.subtotal <= max_amount)
        if is_overdue:
            query = query.where(
                Invoice.due_date < date.today(),
                Invoice.balance > 0,
                Invoice.status.notin_(EXCLUDED_BALANCE_STATUSES + (InvoiceStatus.PAID,)),
            )
        if search:
            query = query.where(Invoice.invoice_number.ilike(f"%{search}%"))

        return await paginate(
            self.db, query, page, page_size, sort_column_for(Invoice, sort_by, "invoice_date"), sort_order
        )

    async def get_overdue_candidates(self, clinic_id: Optional[str], today: date) -> List[Invoice]:
        query = select(Invoice).where(
            Invoice.status.in_([InvoiceStatus.SENT, InvoiceStatus.PARTIAL]),
            Invoice.due_date < today,
            Invoice.balance > 0,
            Invoice.deleted_at.is_(None),
        )
        if clinic_id:
            query = query.where(Invoice.clinic_id == clinic_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_open_for_account(self, account_id: str) -> List[Invoice]:
        """Invoices with money owing, oldest due first"""
        result = await self.db.execute(
            select(Invoice).where(
                Invoice.account_id == account_id,
                Invoice.balance > 0,
                Invoice.deleted_at.is_(None),
                Invoice.status.notin_(EXCLUDED_BALANCE_STATUSES),
            ).order_by(Invoice.due_date.asc(), Invoice.invoice_date.asc())
        )
        return list(result.scalars().all())

    async def get_for_period(self, account_id: str, start: date, end: date) -> List[Invoice]:
        result = await self.db.execute(
            select(Invoice).where(
                Invoice.account_id == account_id,
                Invoice.invoice_date >= start,
                Invoice.invoice_date <= end,
                Invoice.deleted_at.is_(None),
                Invoice.status.notin_(EXCLUDED_BALANCE_STATUSES),
            )
        )
        return list(result.scalars().all())

    async def sum_balance_before(self, account_id: str, before: date) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Invoice.balance), 0)).where(
                Invoice.account_id == account_id,
                Invoice.invoice_date < before,
                Invoice.deleted_at.is_(None),
                Invoice.status.notin_(EXCLUDED_BALANCE_STATUSES),
            )
        )
        return float(result.scalar_one())

    async def sum_subtotal_since(self, clinic_id: str, since: date) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(Invoice.subtotal), 0)).where(
                Invoice.clinic_id == clinic_id,
                Invoice.invoice_date >= since,
                Invoice.deleted_at.is_(None),
                Invoice.status.notin_(EXCLUDED_BALANCE_STATUSES),
            )
        )
        return float(result.scalar_one())


class PaymentPlanRepository:
    """Data access for payment plans and their installment schedule"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, plan_id: str) -> Optional[PaymentPlan]:
        result = await self.db.execute(
            select(PaymentPlan).where(
                PaymentPlan.id == plan_id,
                PaymentPlan.clinic_id == clinic_id,
                PaymentPlan.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        account_id: Optional[str] = None,
        status=None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        query = select(PaymentPlan).where(PaymentPlan.clinic_id == clinic_id, PaymentPlan.deleted_at.is_(None))
        if account_id:
            query = query.where(PaymentPlan.account_id == account_id)
        if status:
            query = query.where(PaymentPlan.status == status)
        return await paginate(
            self.db, query, page, page_size, sort_column_for(PaymentPlan, sort_by, "created_at"), sort_order
        )

    async def get_active_for_account(self, account_id: str) -> List[PaymentPlan]:
        result = await self.db.execute(
            select(PaymentPlan).where(
                PaymentPlan.account_id == account_id,
                PaymentPlan.status == PaymentPlanStatus.ACTIVE,
                PaymentPlan.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def get_schedule(self, plan_id: str, statuses=None) -> List[ScheduledPayment]:
        query = select(ScheduledPayment).where(ScheduledPayment.payment_plan_id == plan_id)
        if statuses:
            query = query.where(ScheduledPayment.status.in_(statuses))
        result = await self.db.execute(query.order_by(ScheduledPayment.installment_number))
        return list(result.scalars().all())


class CreditRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, credit_id: str) -> Optional[CreditBalance]:
        result = await self.db.execute(
            select(CreditBalance).where(
                CreditBalance.id == credit_id,
                CreditBalance.clinic_id == clinic_id,
                CreditBalance.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_for_account(self, clinic_id: str, account_id: str, status=None) -> List[CreditBalance]:
        query = select(CreditBalance).where(
            CreditBalance.clinic_id == clinic_id,
            CreditBalance.account_id == account_id,
            CreditBalance.deleted_at.is_(None),
        )
        if status:
            query = query.where(CreditBalance.status == status)
        result = await self.db.execute(query.order_by(CreditBalance.created_at.desc()))
        return list(result.scalars().all())

    async def get_expirable(self, now: datetime) -> List[CreditBalance]:
        result = await self.db.execute(
            select(CreditBalance).where(
                CreditBalance.status == CreditStatus.AVAILABLE,
                CreditBalance.expires_at.isnot(None),
                CreditBalance.expires_at < now,
                CreditBalance.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())


class EstimateRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, estimate_id: str) -> Optional[TreatmentEstimate]:
        result = await self.db.execute(
            select(TreatmentEstimate).where(
                TreatmentEstimate.id == estimate_id,
                TreatmentEstimate.clinic_id == clinic_id,
                TreatmentEstimate.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        account_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status=None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(TreatmentEstimate).where(
            TreatmentEstimate.clinic_id == clinic_id, TreatmentEstimate.deleted_at.is_(None)
        )
        if account_id:
            query = query.where(TreatmentEstimate.account_id == account_id)
        if patient_id:
            query = query.where(TreatmentEstimate.patient_id == patient_id)
        if status:
            query = query.where(TreatmentEstimate.status == status)
        return await paginate(self.db, query, page, page_size, TreatmentEstimate.created_at, "desc")


class StatementRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, statement_id: str) -> Optional[Statement]:
        result = await self.db.execute(
            select(Statement).where(
                Statement.id == statement_id,
                Statement.clinic_id == clinic_id,
                Statement.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_for_account(self, clinic_id: str, account_id: str, page: int = 1, page_size: int = 20) -> Dict[str, Any]:
        query = select(Statement).where(
            Statement.clinic_id == clinic_id,
            Statement.account_id == account_id,
            Statement.deleted_at.is_(None),
        )
        return await paginate(self.db, query, page, page_size, Statement.statement_date, "desc")
