from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession

from orca.domain.patients.models import Patient
from orca.domain.patients.repository import PatientRepository
from orca.api.v1.patients.schemas import PatientCreate, PatientUpdate
from orca.core.exceptions import NotFoundError


class PatientService:
    """Service layer for the patient registry shared by billing, insurance and lab"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.patient_repo = PatientRepository(db)

    async def create_patient(self, clinic_id: str, patient_data: PatientCreate, created_by: str) -> Patient:
        data = patient_data.model_dump()
        data.update(clinic_id=clinic_id, created_by=created_by)
        return await self.patient_repo.create(data)

    async def get_patient(self, clinic_id: str, patient_id: str, error_code: str = "PATIENT_NOT_FOUND") -> Patient:
        patient = await self.patient_repo.get_by_id(clinic_id, patient_id)
        if not patient:
            raise NotFoundError("Patient not found", error_code=error_code)
        return patient

    async def get_patients(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.patient_repo.get_all(clinic_id, **filters)

    async def update_patient(self, clinic_id: str, patient_id: str, patient_data: PatientUpdate, updated_by: str) -> Patient:
        patient = await self.get_patient(clinic_id, patient_id)
        data = patient_data.model_dump(exclude_unset=True)
        data["updated_by"] = updated_by
        return await self.patient_repo.update(patient, data)

    async def delete_patient(self, clinic_id: str, patient_id: str, deleted_by: Optional[str] = None) -> None:
        patient = await self.get_patient(clinic_id, patient_id)
        patient.soft_delete(deleted_by)
        await self.db.commit()
