from datetime import datetime
from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_

from orca.domain.payments.models import (
    Payment, PaymentAllocation, PaymentStatus, Refund, RefundStatus, PaymentMethod, StoredMethodStatus,
    PaymentLink, PaymentLinkStatus,
)
from orca.models.pagination import paginate, sort_column_for


class PaymentRepository:
    """Data access for payments, allocations and refunds"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, payment_id: str) -> Optional[Payment]:
        result = await self.db.execute(
            select(Payment).where(
                Payment.id == payment_id,
                Payment.clinic_id == clinic_id,
                Payment.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    def _filtered(
        self,
        clinic_id: str,
        account_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        invoice_id: Optional[str] = None,
        status=None,
        payment_type=None,
        method=None,
        source=None,
        gateway=None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        min_amount: Optional[float] = None,
        max_amount: Optional[float] = None,
        search: Optional[str] = None,
    ):
        query = select(Payment).where(Payment.clinic_id == clinic_id, Payment.deleted_at.is_(None))
        if account_id:
            query = query.where(Payment.account_id == account_id)
        if patient_id:
            query = query.where(Payment.patient_id == patient_id)
        if invoice_id:
            allocated = select(PaymentAllocation.payment_id).where(PaymentAllocation.invoice_id == invoice_id)
            query = query.where(or_(Payment.invoice_id == invoice_id, Payment.id.in_(allocated)))
        if status:
            query = query.where(Payment.status == status)
        if payment_type:
            query = query.where(Payment.payment_type == payment_type)
        if method:
            query = query.where(Payment.method == method)
        if source:
            query = query.where(Payment.source == source)
        if gateway:
            query = query.where(Payment.gateway == gateway)
        if date_from:
            query = query.where(Payment.payment_date >= date_from)
        if date_to:
            query = query.where(Payment.payment_date <= date_to)
        if min_amount is not None:
            query = query.where(Payment.amount >= min_amount)
        if max_amount is not None:
            query = query.where(Payment.amount <= max_amount)
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(
                Payment.payment_number.ilike(pattern),
                Payment.receipt_number.ilike(pattern),
                Payment.reference_number.ilike(pattern),
                Payment.check_number.ilike(pattern),
            ))
        return query

    async def get_all(
        self,
        clinic_id: str,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "payment_date",
        sort_order: str = "desc",
        **filters,
    ) -> Dict[str, Any]:
        query = self._filtered(clinic_id, **filters)
        result = await paginate(
            self.db, query, page, page_size, sort_column_for(Payment, sort_by, "payment_date"), sort_order
        )

        completed = query.where(Payment.status == PaymentStatus.COMPLETED).subquery()
        summary = (await self.db.execute(
            select(func.count(), func.coalesce(func.sum(completed.c.amount), 0)).select_from(completed)
        )).one()
        result["stats"] = {"completed_count": summary[0], "completed_amount": round(float(summary[1]), 2)}
        return result

    async def total_refunded(self, payment_id: str, statuses=None) -> float:
        statuses = statuses or [RefundStatus.COMPLETED]
        result = await self.db.execute(
            select(func.coalesce(func.sum(Refund.amount), 0)).where(
                Refund.payment_id == payment_id,
                Refund.status.in_(statuses),
                Refund.deleted_at.is_(None),
            )
        )
        return float(result.scalar_one())

    async def get_refund(self, clinic_id: str, refund_id: str) -> Optional[Refund]:
        result = await self.db.execute(
            select(Refund).where(
                Refund.id == refund_id,
                Refund.clinic_id == clinic_id,
                Refund.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_refunds(
        self,
        clinic_id: str,
        payment_id: Optional[str] = None,
        account_id: Optional[str] = None,
        status=None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(Refund).where(Refund.clinic_id == clinic_id, Refund.deleted_at.is_(None))
        if payment_id:
            query = query.where(Refund.payment_id == payment_id)
        if account_id:
            query = query.where(Refund.account_id == account_id)
        if status:
            query = query.where(Refund.status == status)
        return await paginate(self.db, query, page, page_size, Refund.created_at, "desc")


class PaymentMethodRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, method_id: str) -> Optional[PaymentMethod]:
        result = await self.db.execute(
            select(PaymentMethod).where(
                PaymentMethod.id == method_id,
                PaymentMethod.clinic_id == clinic_id,
                PaymentMethod.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_for_account(self, clinic_id: str, account_id: str, include_removed: bool = False) -> List[PaymentMethod]:
        query = select(PaymentMethod).where(
            PaymentMethod.clinic_id == clinic_id,
            PaymentMethod.account_id == account_id,
            PaymentMethod.deleted_at.is_(None),
        )
        if not include_removed:
            query = query.where(PaymentMethod.status != StoredMethodStatus.REMOVED)
        result = await self.db.execute(query.order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc()))
        return list(result.scalars().all())


class PaymentLinkRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, link_id: str) -> Optional[PaymentLink]:
        result = await self.db.execute(
            select(PaymentLink).where(
                PaymentLink.id == link_id,
                PaymentLink.clinic_id == clinic_id,
                PaymentLink.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Optional[PaymentLink]:
        result = await self.db.execute(
            select(PaymentLink).where(PaymentLink.code == code, PaymentLink.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def code_exists(self, code: str) -> bool:
        result = await self.db.execute(select(PaymentLink.id).where(PaymentLink.code == code))
        return result.first() is not None

    async def get_all(
        self,
        clinic_id: str,
        account_id: Optional[str] = None,
        status=None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(PaymentLink).where(PaymentLink.clinic_id == clinic_id, PaymentLink.deleted_at.is_(None))
        if account_id:
            query = query.where(PaymentLink.account_id == account_id)
        if status:
            query = query.where(PaymentLink.status == status)
        return await paginate(self.db, query, page, page_size, PaymentLink.created_at, "desc")

    async def get_expired_active(self, now: datetime) -> List[PaymentLink]:
        result = await self.db.execute(
            select(PaymentLink).where(
                PaymentLink.status == PaymentLinkStatus.ACTIVE,
                PaymentLink.expires_at < now,
                PaymentLink.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())
