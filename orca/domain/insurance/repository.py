from datetime import date
from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_

from orca.domain.insurance.models import (
    InsuranceCompany, PatientInsurance, InsurancePriority, InsuranceClaim, ClaimStatusHistory, EOB,
    InsurancePayment,
)
from orca.models.pagination import paginate, sort_column_for


class InsuranceCompanyRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, company_id: str) -> Optional[InsuranceCompany]:
        result = await self.db.execute(
            select(InsuranceCompany).where(
                InsuranceCompany.id == company_id,
                InsuranceCompany.clinic_id == clinic_id,
                InsuranceCompany.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_by_payer_id(self, clinic_id: str, payer_id: str) -> Optional[InsuranceCompany]:
        result = await self.db.execute(
            select(InsuranceCompany).where(
                InsuranceCompany.clinic_id == clinic_id,
                InsuranceCompany.payer_id == payer_id,
                InsuranceCompany.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        search: Optional[str] = None,
        insurance_type=None,
        is_active: Optional[bool] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(InsuranceCompany).where(
            InsuranceCompany.clinic_id == clinic_id, InsuranceCompany.deleted_at.is_(None)
        )
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(InsuranceCompany.name.ilike(pattern), InsuranceCompany.payer_id.ilike(pattern)))
        if insurance_type:
            query = query.where(InsuranceCompany.insurance_type == insurance_type)
        if is_active is not None:
            query = query.where(InsuranceCompany.is_active == is_active)
        return await paginate(self.db, query, page, page_size, InsuranceCompany.name, "asc")


class PatientInsuranceRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, insurance_id: str) -> Optional[PatientInsurance]:
        result = await self.db.execute(
            select(PatientInsurance).where(
                PatientInsurance.id == insurance_id,
                PatientInsurance.clinic_id == clinic_id,
                PatientInsurance.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_active_with_priority(
        self, clinic_id: str, patient_id: str, priority: InsurancePriority, exclude_id: Optional[str] = None
    ) -> Optional[PatientInsurance]:
        query = select(PatientInsurance).where(
            PatientInsurance.clinic_id == clinic_id,
            PatientInsurance.patient_id == patient_id,
            PatientInsurance.priority == priority,
            PatientInsurance.is_active.is_(True),
            PatientInsurance.deleted_at.is_(None),
        )
        if exclude_id:
            query = query.where(PatientInsurance.id != exclude_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        patient_id: Optional[str] = None,
        insurance_company_id: Optional[str] = None,
        priority=None,
        is_active: Optional[bool] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(PatientInsurance).where(
            PatientInsurance.clinic_id == clinic_id, PatientInsurance.deleted_at.is_(None)
        )
        if patient_id:
            query = query.where(PatientInsurance.patient_id == patient_id)
        if insurance_company_id:
            query = query.where(PatientInsurance.insurance_company_id == insurance_company_id)
        if priority:
            query = query.where(PatientInsurance.priority == priority)
        if is_active is not None:
            query = query.where(PatientInsurance.is_active == is_active)
        return await paginate(self.db, query, page, page_size, PatientInsurance.priority, "asc")


class ClaimRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, claim_id: str) -> Optional[InsuranceClaim]:
        result = await self.db.execute(
            select(InsuranceClaim).where(
                InsuranceClaim.id == claim_id,
                InsuranceClaim.clinic_id == clinic_id,
                InsuranceClaim.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    def _filtered(
        self,
        clinic_id: str,
        search: Optional[str] = None,
        patient_id: Optional[str] = None,
        patient_insurance_id: Optional[str] = None,
        insurance_company_id: Optional[str] = None,
        status=None,
        claim_type=None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ):
        query = select(InsuranceClaim).where(
            InsuranceClaim.clinic_id == clinic_id, InsuranceClaim.deleted_at.is_(None)
        )
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(
                InsuranceClaim.claim_number.ilike(pattern), InsuranceClaim.payer_claim_id.ilike(pattern)
            ))
        if patient_id:
            query = query.where(InsuranceClaim.patient_id == patient_id)
        if patient_insurance_id:
            query = query.where(InsuranceClaim.patient_insurance_id == patient_insurance_id)
        if insurance_company_id:
            query = query.where(InsuranceClaim.insurance_company_id == insurance_company_id)
        if status:
            query = query.where(InsuranceClaim.status == status)
        if claim_type:
            query = query.where(InsuranceClaim.claim_type == claim_type)
        if date_from:
            query = query.where(InsuranceClaim.service_date >= date_from)
        if date_to:
            query = query.where(InsuranceClaim.service_date <= date_to)
        return query

    async def get_all(
        self,
        clinic_id: str,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        **filters,
    ) -> Dict[str, Any]:
        return await paginate(
            self.db, self._filtered(clinic_id, **filters), page, page_size,
            sort_column_for(InsuranceClaim, sort_by, "created_at"), sort_order,
        )

    async def get_for_summary(self, clinic_id: str, **filters) -> List[InsuranceClaim]:
        result = await self.db.execute(self._filtered(clinic_id, **filters))
        return list(result.scalars().all())

    async def get_by_statuses(self, clinic_id: str, statuses) -> List[InsuranceClaim]:
        result = await self.db.execute(
            select(InsuranceClaim).where(
                InsuranceClaim.clinic_id == clinic_id,
                InsuranceClaim.status.in_(statuses),
                InsuranceClaim.deleted_at.is_(None),
            )
        )
        return list(result.scalars().all())

    async def get_history(self, claim_id: str) -> List[ClaimStatusHistory]:
        result = await self.db.execute(
            select(ClaimStatusHistory)
            .where(ClaimStatusHistory.claim_id == claim_id)
            .order_by(ClaimStatusHistory.changed_at.asc())
        )
        return list(result.scalars().all())


class EOBRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_id(self, clinic_id: str, eob_id: str) -> Optional[EOB]:
        result = await self.db.execute(
            select(EOB).where(EOB.id == eob_id, EOB.clinic_id == clinic_id, EOB.deleted_at.is_(None))
        )
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        claim_id: Optional[str] = None,
        status=None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        query = select(EOB).where(EOB.clinic_id == clinic_id, EOB.deleted_at.is_(None))
        if claim_id:
            query = query.where(EOB.claim_id == claim_id)
        if status:
            query = query.where(EOB.status == status)
        if date_from:
            query = query.where(EOB.received_date >= date_from)
        if date_to:
            query = query.where(EOB.received_date <= date_to)
        return await paginate(self.db, query, page, page_size, EOB.received_date, "desc")

    async def get_payments(self, eob_id: str) -> List[InsurancePayment]:
        result = await self.db.execute(select(InsurancePayment).where(InsurancePayment.eob_id == eob_id))
        return list(result.scalars().all())
