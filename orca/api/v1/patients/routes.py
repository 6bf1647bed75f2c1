from fastapi import APIRouter, Depends, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional

from orca.core.permissions import require_permissions, Permissions
from orca.core.events import AuditLogger
from orca.domain.audit.models import AuditAction
from orca.domain.patients.service import PatientService
from orca.api.v1.common import Page, SuccessResponse
from orca.api.v1.patients.schemas import PatientCreate, PatientResponse, PatientUpdate
from orca.infrastructure.database import get_db

router = APIRouter(prefix="/patients", tags=["Patients"])


@router.post("", response_model=PatientResponse, status_code=status.HTTP_201_CREATED)
async def create_patient(
    patient_data: PatientCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PATIENTS_CREATE]))
):
    """Register a patient in the caller's clinic"""
    patient = await PatientService(db).create_patient(current_user["clinic_id"], patient_data, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.CREATE, "Patient", patient.id, request=request)
    return patient


@router.get("", response_model=Page[PatientResponse])
async def list_patients(
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = Query("last_name", pattern="^(last_name|first_name|created_at)$"),
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PATIENTS_READ]))
):
    return await PatientService(db).get_patients(
        current_user["clinic_id"],
        search=search,
        is_active=is_active,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/{patient_id}", response_model=PatientResponse)
async def get_patient(
    patient_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PATIENTS_READ]))
):
    return await PatientService(db).get_patient(current_user["clinic_id"], patient_id)


@router.patch("/{patient_id}", response_model=PatientResponse)
async def update_patient(
    patient_id: str,
    patient_data: PatientUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PATIENTS_UPDATE]))
):
    patient = await PatientService(db).update_patient(
        current_user["clinic_id"], patient_id, patient_data, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "Patient", patient.id,
        {"changes": sorted(patient_data.model_dump(exclude_unset=True))}, request
    )
    return patient


@router.delete("/{patient_id}", response_model=SuccessResponse)
async def delete_patient(
    patient_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = Depends(require_permissions([Permissions.PATIENTS_DELETE]))
):
    await PatientService(db).delete_patient(current_user["clinic_id"], patient_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "Patient", patient_id, request=request)
    return SuccessResponse(message="Patient deleted")
