from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, or_
from orca.domain.patients.models import Patient
from orca.models.pagination import paginate, sort_column_for


class PatientRepository:
    """Repository for patient data access operations"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(self, patient_data: dict) -> Patient:
        patient = Patient(**patient_data)
        self.db.add(patient)
        await self.db.commit()
        await self.db.refresh(patient)
        return patient

    async def get_by_id(self, clinic_id: str, patient_id: str) -> Optional[Patient]:
        result = await self.db.execute(
            select(Patient).where(
                Patient.id == patient_id,
                Patient.clinic_id == clinic_id,
                Patient.deleted_at.is_(None),
            )
        )
        return result.scalar_one_or_none()

    async def get_all(
        self,
        clinic_id: str,
        search: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        page_size: int = 20,
        sort_by: str = "last_name",
        sort_order: str = "asc",
    ) -> Dict[str, Any]:
        query = select(Patient).where(Patient.clinic_id == clinic_id, Patient.deleted_at.is_(None))
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(Patient.first_name.ilike(pattern), Patient.last_name.ilike(pattern)))
        if is_active is not None:
            query = query.where(Patient.is_active == is_active)

        return await paginate(
            self.db, query, page, page_size, sort_column_for(Patient, sort_by, "last_name"), sort_order
        )

    async def update(self, patient: Patient, update_data: dict) -> Patient:
        for field, value in update_data.items():
            setattr(patient, field, value)
        await self.db.commit()
        await self.db.refresh(patient)
        return patient
