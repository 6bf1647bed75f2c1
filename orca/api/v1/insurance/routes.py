from fastapi import APIRouter, Depends, status, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, List
from datetime import date

from orca.core.permissions import require_permissions, Permissions
from orca.core.events import AuditLogger
from orca.domain.audit.models import AuditAction
from orca.domain.insurance.models import InsuranceType, InsurancePriority, ClaimStatus, ClaimType, EOBStatus
from orca.domain.insurance.service import InsuranceCompanyService, PatientInsuranceService, ClaimService, EOBService
from orca.api.v1.common import Page, SuccessResponse
from orca.api.v1.insurance.schemas import (
    InsuranceCompanyCreate, InsuranceCompanyUpdate, InsuranceCompanyResponse,
    PatientInsuranceCreate, PatientInsuranceUpdate, PatientInsuranceResponse, BenefitAvailability,
    ClaimCreate, ClaimUpdate, ClaimSubmit, ClaimVoid, ClaimAppeal, ClaimResubmit, ClaimStatusUpdate,
    ClaimResponse, ClaimStatusHistoryResponse, ClaimsSummaryResponse,
    EOBCreate, EOBUpdate, EOBPost, EOBResponse, EOBPostResponse, InsurancePaymentResponse,
)
from orca.infrastructure.database import get_db

router = APIRouter(prefix="/insurance", tags=["Insurance"])

READ = Depends(require_permissions([Permissions.INSURANCE_READ]))
CREATE = Depends(require_permissions([Permissions.INSURANCE_CREATE]))
UPDATE = Depends(require_permissions([Permissions.INSURANCE_UPDATE]))
SUBMIT = Depends(require_permissions([Permissions.INSURANCE_SUBMIT]))
DELETE = Depends(require_permissions([Permissions.INSURANCE_DELETE]))


# Companies

@router.post("/companies", response_model=InsuranceCompanyResponse, status_code=status.HTTP_201_CREATED)
async def create_company(
    data: InsuranceCompanyCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = CREATE
):
    company = await InsuranceCompanyService(db).create_company(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "InsuranceCompany", company.id, {"payer_id": company.payer_id}, request
    )
    return company


@router.get("/companies", response_model=Page[InsuranceCompanyResponse])
async def list_companies(
    search: Optional[str] = None,
    insurance_type: Optional[InsuranceType] = Query(None, alias="type"),
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await InsuranceCompanyService(db).get_companies(
        current_user["clinic_id"], search=search, insurance_type=insurance_type, is_active=is_active,
        page=page, page_size=page_size,
    )


@router.get("/companies/{company_id}", response_model=InsuranceCompanyResponse)
async def get_company(company_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await InsuranceCompanyService(db).get_company(current_user["clinic_id"], company_id)


@router.patch("/companies/{company_id}", response_model=InsuranceCompanyResponse)
async def update_company(
    company_id: str,
    data: InsuranceCompanyUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE,
):
    company = await InsuranceCompanyService(db).update_company(
        current_user["clinic_id"], company_id, data, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "InsuranceCompany", company.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return company


@router.delete("/companies/{company_id}", response_model=SuccessResponse)
async def delete_company(
    company_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = DELETE
):
    await InsuranceCompanyService(db).delete_company(current_user["clinic_id"], company_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "InsuranceCompany", company_id, request=request)
    return SuccessResponse(message="Insurance company deleted")


# Patient insurance

@router.post("/policies", response_model=PatientInsuranceResponse, status_code=status.HTTP_201_CREATED)
async def create_patient_insurance(
    data: PatientInsuranceCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = CREATE
):
    insurance = await PatientInsuranceService(db).create_insurance(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "PatientInsurance", insurance.id,
        {"patient_id": insurance.patient_id, "priority": insurance.priority.value}, request
    )
    return insurance


@router.get("/policies", response_model=Page[PatientInsuranceResponse])
async def list_patient_insurance(
    patient_id: Optional[str] = None,
    insurance_company_id: Optional[str] = None,
    priority: Optional[InsurancePriority] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await PatientInsuranceService(db).get_insurances(
        current_user["clinic_id"], patient_id=patient_id, insurance_company_id=insurance_company_id,
        priority=priority, is_active=is_active, page=page, page_size=page_size,
    )


@router.get("/policies/{insurance_id}", response_model=PatientInsuranceResponse)
async def get_patient_insurance(insurance_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await PatientInsuranceService(db).get_insurance(current_user["clinic_id"], insurance_id)


@router.get("/policies/{insurance_id}/benefits", response_model=BenefitAvailability)
async def check_benefits(
    insurance_id: str,
    fee: Optional[float] = Query(None, ge=0),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    """Remaining ortho benefit, with the payer's estimated share of ``fee``"""
    return await PatientInsuranceService(db).check_benefits(current_user["clinic_id"], insurance_id, fee)


@router.patch("/policies/{insurance_id}", response_model=PatientInsuranceResponse)
async def update_patient_insurance(
    insurance_id: str,
    data: PatientInsuranceUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE,
):
    insurance = await PatientInsuranceService(db).update_insurance(
        current_user["clinic_id"], insurance_id, data, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "PatientInsurance", insurance.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return insurance


@router.delete("/policies/{insurance_id}", response_model=SuccessResponse)
async def delete_patient_insurance(
    insurance_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = DELETE
):
    await PatientInsuranceService(db).delete_insurance(current_user["clinic_id"], insurance_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "PatientInsurance", insurance_id, request=request)
    return SuccessResponse(message="Patient insurance deleted")


# Claims

@router.post("/claims", response_model=ClaimResponse, status_code=status.HTTP_201_CREATED)
async def create_claim(
    data: ClaimCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = CREATE
):
    claim = await ClaimService(db).create_claim(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "InsuranceClaim", claim.id,
        {"claim_number": claim.claim_number, "billed_amount": claim.billed_amount}, request
    )
    return claim


@router.get("/claims", response_model=Page[ClaimResponse])
async def list_claims(
    search: Optional[str] = None,
    patient_id: Optional[str] = None,
    patient_insurance_id: Optional[str] = None,
    insurance_company_id: Optional[str] = None,
    claim_status: Optional[ClaimStatus] = Query(None, alias="status"),
    claim_type: Optional[ClaimType] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    sort_by: str = Query("created_at", pattern="^(claim_number|service_date|filing_date|billed_amount|status|created_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await ClaimService(db).get_claims(
        current_user["clinic_id"],
        search=search,
        patient_id=patient_id,
        patient_insurance_id=patient_insurance_id,
        insurance_company_id=insurance_company_id,
        status=claim_status,
        claim_type=claim_type,
        date_from=date_from,
        date_to=date_to,
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/claims/summary", response_model=ClaimsSummaryResponse)
async def get_claims_summary(
    insurance_company_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await ClaimService(db).get_summary(
        current_user["clinic_id"], insurance_company_id=insurance_company_id, date_from=date_from, date_to=date_to
    )


@router.get("/claims/{claim_id}", response_model=ClaimResponse)
async def get_claim(claim_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await ClaimService(db).get_claim(current_user["clinic_id"], claim_id)


@router.get("/claims/{claim_id}/history", response_model=List[ClaimStatusHistoryResponse])
async def get_claim_history(claim_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await ClaimService(db).get_history(current_user["clinic_id"], claim_id)


@router.patch("/claims/{claim_id}", response_model=ClaimResponse)
async def update_claim(
    claim_id: str,
    data: ClaimUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE,
):
    claim = await ClaimService(db).update_claim(current_user["clinic_id"], claim_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "InsuranceClaim", claim.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return claim


@router.post("/claims/{claim_id}/submit", response_model=ClaimResponse)
async def submit_claim(
    claim_id: str,
    data: ClaimSubmit,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = SUBMIT,
):
    claim = await ClaimService(db).submit_claim(
        current_user["clinic_id"], claim_id, data.submission_method, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "InsuranceClaim", claim.id,
        {"status": claim.status.value, "submission_method": data.submission_method.value}, request
    )
    return claim


@router.post("/claims/{claim_id}/void", response_model=ClaimResponse)
async def void_claim(
    claim_id: str,
    data: ClaimVoid,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE,
):
    claim = await ClaimService(db).void_claim(current_user["clinic_id"], claim_id, data.reason, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "InsuranceClaim", claim.id,
        {"status": "VOID", "reason": data.reason}, request
    )
    return claim


@router.post("/claims/{claim_id}/appeal", response_model=ClaimResponse)
async def appeal_claim(
    claim_id: str,
    data: ClaimAppeal,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = SUBMIT,
):
    claim = await ClaimService(db).appeal_claim(
        current_user["clinic_id"], claim_id, data.appeal_notes, current_user["sub"]
    )
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "InsuranceClaim", claim.id, {"status": "APPEALED"}, request
    )
    return claim


@router.post("/claims/{claim_id}/resubmit", response_model=ClaimResponse, status_code=status.HTTP_201_CREATED)
async def resubmit_claim(
    claim_id: str,
    data: ClaimResubmit,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = SUBMIT,
):
    """Close a denied claim and return the corrected draft that replaces it"""
    corrected = await ClaimService(db).resubmit_claim(
        current_user["clinic_id"], claim_id, current_user["sub"], items=data.items, correction_notes=data.correction_notes
    )
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "InsuranceClaim", corrected.id,
        {"claim_number": corrected.claim_number, "original_claim_id": claim_id}, request
    )
    return corrected


@router.post("/claims/{claim_id}/status", response_model=ClaimResponse)
async def update_claim_status(
    claim_id: str,
    data: ClaimStatusUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: dict = UPDATE,
):
    claim = await ClaimService(db).update_status(current_user["clinic_id"], claim_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "InsuranceClaim", claim.id,
        {"status": claim.status.value, "reason": data.reason or data.denial_reason}, request
    )
    return claim


@router.delete("/claims/{claim_id}", response_model=SuccessResponse)
async def delete_claim(claim_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = DELETE):
    await ClaimService(db).delete_claim(current_user["clinic_id"], claim_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.DELETE, "InsuranceClaim", claim_id, request=request)
    return SuccessResponse(message="Claim deleted")


# EOBs

@router.post("/eobs", response_model=EOBResponse, status_code=status.HTTP_201_CREATED)
async def create_eob(data: EOBCreate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = CREATE):
    eob = await EOBService(db).create_eob(current_user["clinic_id"], data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.CREATE, "EOB", eob.id,
        {"claim_id": eob.claim_id, "total_paid": eob.total_paid}, request
    )
    return eob


@router.get("/eobs", response_model=Page[EOBResponse])
async def list_eobs(
    claim_id: Optional[str] = None,
    eob_status: Optional[EOBStatus] = Query(None, alias="status"),
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    current_user: dict = READ,
):
    return await EOBService(db).get_eobs(
        current_user["clinic_id"], claim_id=claim_id, status=eob_status, date_from=date_from, date_to=date_to,
        page=page, page_size=page_size,
    )


@router.get("/eobs/{eob_id}", response_model=EOBResponse)
async def get_eob(eob_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await EOBService(db).get_eob(current_user["clinic_id"], eob_id)


@router.get("/eobs/{eob_id}/payments", response_model=List[InsurancePaymentResponse])
async def get_eob_payments(eob_id: str, db: AsyncSession = Depends(get_db), current_user: dict = READ):
    return await EOBService(db).get_payments(current_user["clinic_id"], eob_id)


@router.patch("/eobs/{eob_id}", response_model=EOBResponse)
async def update_eob(
    eob_id: str, data: EOBUpdate, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = UPDATE
):
    eob = await EOBService(db).update_eob(current_user["clinic_id"], eob_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.UPDATE, "EOB", eob.id,
        {"changes": sorted(data.model_dump(exclude_unset=True))}, request
    )
    return eob


@router.post("/eobs/{eob_id}/process", response_model=EOBResponse)
async def process_eob(eob_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = UPDATE):
    eob = await EOBService(db).process_eob(current_user["clinic_id"], eob_id, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.STATUS_CHANGE, "EOB", eob.id, {"status": eob.status.value}, request
    )
    return eob


@router.post("/eobs/{eob_id}/post", response_model=EOBPostResponse)
async def post_eob(
    eob_id: str, data: EOBPost, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = UPDATE
):
    result = await EOBService(db).post_eob(current_user["clinic_id"], eob_id, data, current_user["sub"])
    await AuditLogger.log(
        db, current_user, AuditAction.PAYMENT, "InsurancePayment", result["insurance_payment"].id,
        {"eob_id": eob_id, "amount": result["insurance_payment"].amount, "claim_status": result["claim_status"].value},
        request,
    )
    return result


@router.post("/eobs/{eob_id}/void", response_model=EOBResponse)
async def void_eob(eob_id: str, request: Request, db: AsyncSession = Depends(get_db), current_user: dict = UPDATE):
    eob = await EOBService(db).void_eob(current_user["clinic_id"], eob_id, current_user["sub"])
    await AuditLogger.log(db, current_user, AuditAction.STATUS_CHANGE, "EOB", eob.id, {"status": "VOID"}, request)
    return eob
