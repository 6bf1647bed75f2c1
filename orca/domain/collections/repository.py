from datetime import date, datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, distinct

from orca.domain.billing.models import PatientAccount, AccountStatus
from orca.domain.collections.models import (
    CollectionWorkflow, AccountCollection, CollectionActivity, PaymentPromise, CollectionAgency,
    AgencyReferral, WriteOff, PaymentReminder, CollectionStatus, PromiseStatus, OPEN_COLLECTION_STATUSES,
    OPEN_REFERRAL_STATUSES,
)
from orca.models.pagination import paginate, sort_column_for


class WorkflowRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, workflow_id: str) -> Optional[CollectionWorkflow]:
        result = await self.db.execute(
            select(CollectionWorkflow).where(
                CollectionWorkflow.id == workflow_id,
                CollectionWorkflow.clinic_id == clinic_id,
                CollectionWorkflow.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_default(self, clinic_id: str) -> Optional[CollectionWorkflow]:
        result = await self.db.execute(
            select(CollectionWorkflow).where(
                CollectionWorkflow.clinic_id == clinic_id,
                CollectionWorkflow.is_default.is_(True),
                CollectionWorkflow.is_active.is_(True),
                CollectionWorkflow.deleted_at.is_(None),
            )
        )
        return result.scalars().first()

    async def get_defaults(self, clinic_id: str) -> List[CollectionWorkflow]:
        result = await self.db.execute(
            select(CollectionWorkflow).where(
                CollectionWorkflow.clinic_id == clinic_id,
                CollectionWorkflow.is_default.is_(True),
                CollectionWorkflow.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def get_all(
        self,
        clinic_id: str,
        is_active: Optional[bool] = None,
        patient_type=None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(CollectionWorkflow).where(
            CollectionWorkflow.clinic_id == clinic_id, CollectionWorkflow.deleted_at.is_(None)
        )
        if is_active is not None:
            query = query.where(CollectionWorkflow.is_active.is_(is_active))
        if patient_type:
            query = query.where(CollectionWorkflow.patient_type == patient_type)
        return await paginate(self.db, query, page, page_size, CollectionWorkflow.trigger_days_overdue, "asc")

    async def count_active_collections(self, workflow_id: str) -> int:
        result = await self.db.execute(
            select(func.count(AccountCollection.id)).where(
                AccountCollection.workflow_id == workflow_id,
                AccountCollection.status == CollectionStatus.ACTIVE,
                AccountCollection.deleted_at.is_(None),
            )
        )
        return result.scalar() or 0

    async def get_collections(self, workflow_id: str) -> List[AccountCollection]:
        result = await self.db.execute(
            select(AccountCollection).where(
                AccountCollection.workflow_id == workflow_id, AccountCollection.deleted_at.is_(None)
            )
        )
        return list(result.scalars().all())


class CollectionRepository:
    """Account collections and their activity trail"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, collection_id: str) -> Optional[AccountCollection]:
        result = await self.db.execute(
            select(AccountCollection).where(
                AccountCollection.id == collection_id,
                AccountCollection.clinic_id == clinic_id,
                AccountCollection.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_open_for_account(self, account_id: str) -> Optional[AccountCollection]:
        result = await self.db.execute(
            select(AccountCollection).where(
                AccountCollection.account_id == account_id,
                AccountCollection.status.in_(OPEN_COLLECTION_STATUSES),
                AccountCollection.deleted_at.is_(None),
            ).order_by(AccountCollection.started_at.desc())
        )
        return result.scalars().first()

    async def get_all(
        self,
        clinic_id: str,
        status=None,
        workflow_id: Optional[str] = None,
        account_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "started_at",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        query = select(AccountCollection).where(
            AccountCollection.clinic_id == clinic_id, AccountCollection.deleted_at.is_(None)
        )
        if status:
            query = query.where(AccountCollection.status == status)
        if workflow_id:
            query = query.where(AccountCollection.workflow_id == workflow_id)
        if account_id:
            query = query.where(AccountCollection.account_id == account_id)
        return await paginate(
            self.db, query, page, page_size, sort_column_for(AccountCollection, sort_by, "started_at"), sort_order
        )

    async def get_due_for_advance(self, clinic_id: Optional[str], now: datetime) -> List[AccountCollection]:
        query = select(AccountCollection).where(
            AccountCollection.status == CollectionStatus.ACTIVE,
            AccountCollection.next_action_date.isnot(None),
            AccountCollection.next_action_date <= now,
            AccountCollection.deleted_at.is_(None),
        )
        if clinic_id:
            query = query.where(AccountCollection.clinic_id == clinic_id)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_activities(self, clinic_id: str, collection_id: str) -> List[CollectionActivity]:
        result = await self.db.execute(
            select(CollectionActivity).where(
                CollectionActivity.clinic_id == clinic_id,
                CollectionActivity.collection_id == collection_id,
            ).order_by(CollectionActivity.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_account_activities(
        self, clinic_id: str, account_id: str, page: int = 1, page_size: int = 50
    ) -> Dict[str, Any]:
        query = select(CollectionActivity).where(
            CollectionActivity.clinic_id == clinic_id, CollectionActivity.account_id == account_id
        )
        return await paginate(self.db, query, page, page_size, CollectionActivity.created_at, "desc")

    async def count_by_status(self, clinic_id: str) -> Dict[str, int]:
        result = await self.db.execute(
            select(AccountCollection.status, func.count(AccountCollection.id)).where(
                AccountCollection.clinic_id == clinic_id, AccountCollection.deleted_at.is_(None)
            ).group_by(AccountCollection.status)
        )
        return {
            (status.value if hasattr(status, "value") else status): count for status, count in result.all()
        }

    async def sum_open_balance(self, clinic_id: str) -> float:
        result = await self.db.execute(
            select(func.coalesce(func.sum(AccountCollection.current_balance), 0)).where(
                AccountCollection.clinic_id == clinic_id,
                AccountCollection.status.in_(OPEN_COLLECTION_STATUSES),
                AccountCollection.deleted_at.is_(None),
            )
        )
        return float(result.scalar() or 0)


class PromiseRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, promise_id: str) -> Optional[PaymentPromise]:
        result = await self.db.execute(
            select(PaymentPromise).where(
                PaymentPromise.id == promise_id,
                PaymentPromise.clinic_id == clinic_id,
                PaymentPromise.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        account_id: Optional[str] = None,
        collection_id: Optional[str] = None,
        status=None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(PaymentPromise).where(
            PaymentPromise.clinic_id == clinic_id, PaymentPromise.deleted_at.is_(None)
        )
        if account_id:
            query = query.where(PaymentPromise.account_id == account_id)
        if collection_id:
            query = query.where(PaymentPromise.collection_id == collection_id)
        if status:
            query = query.where(PaymentPromise.status == status)
        return await paginate(self.db, query, page, page_size, PaymentPromise.promise_date, "asc")

    async def get_open(
        self, clinic_id: Optional[str], on: Optional[date] = None, before: Optional[date] = None
    ) -> List[PaymentPromise]:
        """PENDING or PARTIAL promises due on a day, or due before it"""
        query = select(PaymentPromise).where(
            PaymentPromise.status.in_((PromiseStatus.PENDING, PromiseStatus.PARTIAL)),
            PaymentPromise.deleted_at.is_(None),
        )
        if clinic_id:
            query = query.where(PaymentPromise.clinic_id == clinic_id)
        if on is not None:
            query = query.where(PaymentPromise.promise_date == on)
        if before is not None:
            query = query.where(PaymentPromise.promise_date < before)
        result = await self.db.execute(query.order_by(PaymentPromise.promise_date.asc()))
        return list(result.scalars().all())

    async def count_by_status(self, clinic_id: str) -> Dict[str, int]:
        result = await self.db.execute(
            select(PaymentPromise.status, func.count(PaymentPromise.id)).where(
                PaymentPromise.clinic_id == clinic_id, PaymentPromise.deleted_at.is_(None)
            ).group_by(PaymentPromise.status)
        )
        return {
            (status.value if hasattr(status, "value") else status): count for status, count in result.all()
        }


class AgencyRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, agency_id: str) -> Optional[CollectionAgency]:
        result = await self.db.execute(
            select(CollectionAgency).where(
                CollectionAgency.id == agency_id,
                CollectionAgency.clinic_id == clinic_id,
                CollectionAgency.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_default(self, clinic_id: str) -> Optional[CollectionAgency]:
        """The default active agency, falling back to any active one"""
        result = await self.db.execute(
            select(CollectionAgency).where(
                CollectionAgency.clinic_id == clinic_id,
                CollectionAgency.is_active.is_(True),
                CollectionAgency.deleted_at.is_(None),
            ).order_by(CollectionAgency.is_default.desc(), CollectionAgency.created_at.asc())
        )
        return result.scalars().first()

    async def get_defaults(self, clinic_id: str) -> List[CollectionAgency]:
        result = await self.db.execute(
            select(CollectionAgency).where(
                CollectionAgency.clinic_id == clinic_id,
                CollectionAgency.is_default.is_(True),
                CollectionAgency.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def get_all(
        self, clinic_id: str, is_active: Optional[bool] = None, page: int = 1, page_size: int = 20
    ) -> Dict[str, Any]:
        query = select(CollectionAgency).where(
            CollectionAgency.clinic_id == clinic_id, CollectionAgency.deleted_at.is_(None)
        )
        if is_active is not None:
            query = query.where(CollectionAgency.is_active.is_(is_active))
        return await paginate(self.db, query, page, page_size, CollectionAgency.name, "asc")

    async def get_referral(self, clinic_id: str, referral_id: str) -> Optional[AgencyReferral]:
        result = await self.db.execute(
            select(AgencyReferral).where(
                AgencyReferral.id == referral_id,
                AgencyReferral.clinic_id == clinic_id,
                AgencyReferral.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_open_referral(self, account_id: str) -> Optional[AgencyReferral]:
        result = await self.db.execute(
            select(AgencyReferral).where(
                AgencyReferral.account_id == account_id,
                AgencyReferral.status.in_(OPEN_REFERRAL_STATUSES),
                AgencyReferral.deleted_at.is_(None),
            )
        )
        return result.scalars().first()

    async def get_referrals(
        self,
        clinic_id: str,
        agency_id: Optional[str] = None,
        account_id: Optional[str] = None,
        status=None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(AgencyReferral).where(
            AgencyReferral.clinic_id == clinic_id, AgencyReferral.deleted_at.is_(None)
        )
        if agency_id:
            query = query.where(AgencyReferral.agency_id == agency_id)
        if account_id:
            query = query.where(AgencyReferral.account_id == account_id)
        if status:
            query = query.where(AgencyReferral.status == status)
        return await paginate(self.db, query, page, page_size, AgencyReferral.referred_at, "desc")


class WriteOffRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, write_off_id: str) -> Optional[WriteOff]:
        result = await self.db.execute(
            select(WriteOff).where(
                WriteOff.id == write_off_id,
                WriteOff.clinic_id == clinic_id,
                WriteOff.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        account_id: Optional[str] = None,
        status=None,
        reason=None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(WriteOff).where(WriteOff.clinic_id == clinic_id, WriteOff.deleted_at.is_(None))
        if account_id:
            query = query.where(WriteOff.account_id == account_id)
        if status:
            query = query.where(WriteOff.status == status)
        if reason:
            query = query.where(WriteOff.reason == reason)
        return await paginate(self.db, query, page, page_size, WriteOff.created_at, "desc")

    async def totals_by_status(self, clinic_id: str) -> Dict[str, Dict[str, float]]:
        result = await self.db.execute(
            select(WriteOff.status, func.count(WriteOff.id), func.coalesce(func.sum(WriteOff.amount), 0)).where(
                WriteOff.clinic_id == clinic_id, WriteOff.deleted_at.is_(None)
            ).group_by(WriteOff.status)
        )
        return {
            (status.value if hasattr(status, "value") else status): {"count": count, "amount": float(amount)}
            for status, count, amount in result.all()
        }


class ReminderRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_all(
        self,
        clinic_id: str,
        account_id: Optional[str] = None,
        reminder_type=None,
        channel=None,
        status=None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(PaymentReminder).where(PaymentReminder.clinic_id == clinic_id)
        if account_id:
            query = query.where(PaymentReminder.account_id == account_id)
        if reminder_type:
            query = query.where(PaymentReminder.reminder_type == reminder_type)
        if channel:
            query = query.where(PaymentReminder.channel == channel)
        if status:
            query = query.where(PaymentReminder.status == status)
        return await paginate(self.db, query, page, page_size, PaymentReminder.sent_at, "desc")

    async def get_batch_candidates(
        self, clinic_id: str, min_balance: Optional[float], limit: int
    ) -> List[PatientAccount]:
        """Accounts owing money, oldest debt first"""
        query = select(PatientAccount).where(
            PatientAccount.clinic_id == clinic_id,
            PatientAccount.deleted_at.is_(None),
            PatientAccount.status != AccountStatus.CLOSED,
        )
        if min_balance is not None:
            query = query.where(PatientAccount.current_balance >= min_balance)
        else:
            query = query.where(PatientAccount.current_balance > 0)
        query = query.order_by(
            PatientAccount.aging_120_plus.desc(),
            PatientAccount.aging_90.desc(),
            PatientAccount.aging_60.desc(),
            PatientAccount.aging_30.desc(),
            PatientAccount.current_balance.desc(),
        ).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())


class AnalyticsRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def aging_totals(self, clinic_id: str) -> Dict[str, float]:
        row = (await self.db.execute(
            select(
                func.count(PatientAccount.id),
                func.coalesce(func.sum(PatientAccount.current_balance), 0),
                func.coalesce(func.sum(PatientAccount.aging_30), 0),
                func.coalesce(func.sum(PatientAccount.aging_60), 0),
                func.coalesce(func.sum(PatientAccount.aging_90), 0),
                func.coalesce(func.sum(PatientAccount.aging_120_plus), 0),
            ).where(
                PatientAccount.clinic_id == clinic_id,
                PatientAccount.deleted_at.is_(None),
                PatientAccount.status != AccountStatus.CLOSED,
            )
        )).one()
        return {
            "account_count": row[0],
            "current_balance": float(row[1]),
            "aging_30": float(row[2]),
            "aging_60": float(row[3]),
            "aging_90": float(row[4]),
            "aging_120_plus": float(row[5]),
        }



async def clinics_with_past_due_accounts(db: AsyncSession) -> List[str]:
    result = await db.execute(
        select(distinct(PatientAccount.clinic_id)).where(
            PatientAccount.deleted_at.is_(None),
            PatientAccount.current_balance > 0,
            (PatientAccount.aging_30 + PatientAccount.aging_60 + PatientAccount.aging_90 + PatientAccount.aging_120_plus) > 0,
        )
    )
    return [row[0] for row in result.all()]
