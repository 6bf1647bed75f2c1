from datetime import date
from typing import Optional, Dict, Any, List
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from orca.api.v1.insurance.schemas import (
    InsuranceCompanyCreate, InsuranceCompanyUpdate, PatientInsuranceCreate, PatientInsuranceUpdate, ClaimCreate,
    ClaimUpdate, ClaimItemCreate, ClaimStatusUpdate, EOBCreate, EOBUpdate, EOBPost,
)
from orca.core.config import settings
from orca.core.exceptions import NotFoundError, ConflictError, BusinessLogicError, ValidationError
from orca.domain.billing.repository import AccountRepository
from orca.domain.billing.utils import round_currency
from orca.domain.insurance.models import (
    InsuranceCompany, PatientInsurance, InsuranceClaim, ClaimItem, ClaimItemStatus, ClaimStatus, ClaimType,
    ClaimStatusHistory, EOB, EOBLine, EOBStatus, InsurancePayment, LOCKED_CLAIM_STATUSES, OUTSTANDING_CLAIM_STATUSES,
    PAYER_RESPONSE_STATUSES, AWAITING_RESPONSE_STATUSES,
)
from orca.domain.insurance.repository import (
    InsuranceCompanyRepository, PatientInsuranceRepository, ClaimRepository, EOBRepository,
)
from orca.domain.insurance.utils import (
    validate_cdt_code, format_payer_id, calculate_claim_totals, claim_aging_bucket, calculate_claims_summary,
    check_ortho_benefit_availability, calculate_estimated_insurance_payment, days_until_appeal_deadline,
    CLAIM_AGING_BUCKETS,
)
from orca.domain.patients.service import PatientService
from orca.domain.payments.models import Payment, PaymentType, PaymentMethodType, PaymentSource, PaymentGatewayName
from orca.domain.payments.service import PaymentService
from orca.models.mixins import utcnow
from orca.models.numbering import generate_number

logger = logging.getLogger(__name__)


async def update_insurance_benefit_usage(db: AsyncSession, insurance_id: str, amount: float) -> Optional[PatientInsurance]:
    """Draw ``amount`` from the policy's ortho lifetime maximum; the caller commits"""
    insurance = await db.get(PatientInsurance, insurance_id)
    if insurance is None:
        return None
    insurance.ortho_used_amount = round_currency((insurance.ortho_used_amount or 0) + amount)
    return insurance


def record_claim_status(
    db: AsyncSession,
    claim: InsuranceClaim,
    to_status: ClaimStatus,
    changed_by: Optional[str],
    reason: Optional[str] = None,
) -> None:
    db.add(ClaimStatusHistory(
        claim_id=claim.id, from_status=claim.status, to_status=to_status, reason=reason, changed_by=changed_by,
    ))
    claim.status = to_status


class InsuranceCompanyService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = InsuranceCompanyRepository(db)

    async def _check_payer_id(self, clinic_id: str, payer_id: str, exclude_id: Optional[str] = None) -> None:
        existing = await self.repo.get_by_payer_id(clinic_id, payer_id)
        if existing and existing.id != exclude_id:
            raise ConflictError(
                f"An insurance company with payer id {payer_id} already exists", error_code="DUPLICATE_PAYER_ID"
            )

    async def create_company(self, clinic_id: str, data: InsuranceCompanyCreate, created_by: str) -> InsuranceCompany:
        values = data.model_dump()
        values["payer_id"] = format_payer_id(values["payer_id"])
        await self._check_payer_id(clinic_id, values["payer_id"])
        company = InsuranceCompany(clinic_id=clinic_id, created_by=created_by, **values)
        self.db.add(company)
        await self.db.commit()
        await self.db.refresh(company)
        return company

    async def get_company(self, clinic_id: str, company_id: str) -> InsuranceCompany:
        company = await self.repo.get_by_id(clinic_id, company_id)
        if not company:
            raise NotFoundError("Insurance company not found", error_code="COMPANY_NOT_FOUND")
        return company

    async def get_companies(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def update_company(
        self, clinic_id: str, company_id: str, data: InsuranceCompanyUpdate, updated_by: str
    ) -> InsuranceCompany:
        company = await self.get_company(clinic_id, company_id)
        values = data.model_dump(exclude_unset=True)
        if values.get("payer_id"):
            values["payer_id"] = format_payer_id(values["payer_id"])
            await self._check_payer_id(clinic_id, values["payer_id"], exclude_id=company.id)
        for field, value in values.items():
            setattr(company, field, value)
        company.updated_by = updated_by
        await self.db.commit()
        await self.db.refresh(company)
        return company

    async def delete_company(self, clinic_id: str, company_id: str, deleted_by: str) -> None:
        company = await self.get_company(clinic_id, company_id)
        company.soft_delete(deleted_by)
        await self.db.commit()


class PatientInsuranceService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = PatientInsuranceRepository(db)
        self.companies = InsuranceCompanyRepository(db)

    async def _check_priority(self, clinic_id: str, patient_id: str, priority, exclude_id: Optional[str] = None) -> None:
        if await self.repo.get_active_with_priority(clinic_id, patient_id, priority, exclude_id):
            raise ConflictError(
                f"Patient already has an active {priority.value} policy", error_code="DUPLICATE_PRIORITY"
            )

    async def _check_company(self, clinic_id: str, company_id: str) -> None:
        if not await self.companies.get_by_id(clinic_id, company_id):
            raise NotFoundError("Insurance company not found", error_code="COMPANY_NOT_FOUND")

    async def create_insurance(self, clinic_id: str, data: PatientInsuranceCreate, created_by: str) -> PatientInsurance:
        await PatientService(self.db).get_patient(clinic_id, data.patient_id)
        await self._check_company(clinic_id, data.insurance_company_id)
        await self._check_priority(clinic_id, data.patient_id, data.priority)

        insurance = PatientInsurance(clinic_id=clinic_id, created_by=created_by, **data.model_dump())
        self.db.add(insurance)
        await self.db.commit()
        await self.db.refresh(insurance)
        return insurance

    async def get_insurance(self, clinic_id: str, insurance_id: str) -> PatientInsurance:
        insurance = await self.repo.get_by_id(clinic_id, insurance_id)
        if not insurance:
            raise NotFoundError("Patient insurance not found", error_code="INSURANCE_NOT_FOUND")
        return insurance

    async def get_insurances(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def update_insurance(
        self, clinic_id: str, insurance_id: str, data: PatientInsuranceUpdate, updated_by: str
    ) -> PatientInsurance:
        insurance = await self.get_insurance(clinic_id, insurance_id)
        values = data.model_dump(exclude_unset=True)
        if values.get("insurance_company_id"):
            await self._check_company(clinic_id, values["insurance_company_id"])

        priority = values.get("priority", insurance.priority)
        becomes_active = values.get("is_active", insurance.is_active)
        if becomes_active and (priority != insurance.priority or not insurance.is_active):
            await self._check_priority(clinic_id, insurance.patient_id, priority, exclude_id=insurance.id)

        for field, value in values.items():
            setattr(insurance, field, value)
        insurance.updated_by = updated_by
        await self.db.commit()
        await self.db.refresh(insurance)
        return insurance

    async def delete_insurance(self, clinic_id: str, insurance_id: str, deleted_by: str) -> None:
        insurance = await self.get_insurance(clinic_id, insurance_id)
        insurance.is_active = False
        insurance.soft_delete(deleted_by)
        await self.db.commit()

    async def check_benefits(
        self, clinic_id: str, insurance_id: str, fee: Optional[float] = None, today: Optional[date] = None
    ) -> Dict[str, Any]:
        """Ortho benefit availability, with an estimated payer share when a fee is given"""
        insurance = await self.get_insurance(clinic_id, insurance_id)
        availability = check_ortho_benefit_availability(insurance, today)
        if fee is not None:
            availability["estimated_payment"] = (
                calculate_estimated_insurance_payment(
                    fee,
                    insurance.ortho_coverage_percent or 0,
                    insurance.ortho_deductible or 0,
                    insurance.ortho_deductible_met or 0,
                    availability["remaining"],
                )
                if availability["available"] else 0.0
            )
        return availability


class ClaimService:
    """Insurance claims from draft through payer adjudication"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = ClaimRepository(db)
        self.insurances = PatientInsuranceRepository(db)

    def _build_items(self, items: List[ClaimItemCreate]) -> List[ClaimItem]:
        invalid = [item.procedure_code for item in items if not validate_cdt_code(item.procedure_code)]
        if invalid:
            raise ValidationError(
                f"Invalid CDT procedure code(s): {', '.join(invalid)}",
                details={"codes": invalid},
                error_code="INVALID_CDT_CODE",
            )
        built = []
        for line_number, item in enumerate(items, start=1):
            values = item.model_dump()
            values["procedure_code"] = values["procedure_code"].upper()
            built.append(ClaimItem(line_number=line_number, **values))
        return built

    async def create_claim(self, clinic_id: str, data: ClaimCreate, created_by: str) -> InsuranceClaim:
        await PatientService(self.db).get_patient(clinic_id, data.patient_id)
        insurance = await self.insurances.get_by_id(clinic_id, data.patient_insurance_id)
        if not insurance or insurance.patient_id != data.patient_id:
            raise NotFoundError("Patient insurance not found", error_code="INSURANCE_NOT_FOUND")

        items = self._build_items(data.items)
        values = data.model_dump(exclude={"items"})
        claim = InsuranceClaim(
            clinic_id=clinic_id,
            claim_number=await generate_number(self.db, InsuranceClaim.claim_number, clinic_id, "CLM"),
            insurance_company_id=insurance.insurance_company_id,
            claim_type=ClaimType.ORIGINAL,
            status=ClaimStatus.DRAFT,
            billed_amount=calculate_claim_totals(items)["billed_amount"],
            created_by=created_by,
            items=items,
            **values,
        )
        self.db.add(claim)
        await self.db.flush()
        self.db.add(ClaimStatusHistory(
            claim_id=claim.id, from_status=None, to_status=ClaimStatus.DRAFT, reason="Claim created",
            changed_by=created_by,
        ))
        await self.db.commit()
        await self.db.refresh(claim)
        logger.info(f"Created claim {claim.claim_number} for patient {claim.patient_id}")
        return claim

    async def get_claim(self, clinic_id: str, claim_id: str) -> InsuranceClaim:
        claim = await self.repo.get_by_id(clinic_id, claim_id)
        if not claim:
            raise NotFoundError("Claim not found", error_code="CLAIM_NOT_FOUND")
        return claim

    async def get_claims(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def get_history(self, clinic_id: str, claim_id: str) -> List[ClaimStatusHistory]:
        claim = await self.get_claim(clinic_id, claim_id)
        return await self.repo.get_history(claim.id)

    async def update_claim(self, clinic_id: str, claim_id: str, data: ClaimUpdate, updated_by: str) -> InsuranceClaim:
        claim = await self.get_claim(clinic_id, claim_id)
        if claim.status in LOCKED_CLAIM_STATUSES:
            raise BusinessLogicError(f"Cannot edit a {claim.status.value} claim", error_code="CLAIM_LOCKED")

        values = data.model_dump(exclude_unset=True, exclude={"items"})
        for field, value in values.items():
            setattr(claim, field, value)
        if data.items is not None:
            claim.items = self._build_items(data.items)
            claim.billed_amount = calculate_claim_totals(claim.items)["billed_amount"]
        claim.updated_by = updated_by
        await self.db.commit()
        await self.db.refresh(claim)
        return claim

    async def submit_claim(self, clinic_id: str, claim_id: str, submission_method, submitted_by: str) -> InsuranceClaim:
        claim = await self.get_claim(clinic_id, claim_id)
        if claim.status not in (ClaimStatus.DRAFT, ClaimStatus.READY):
            raise BusinessLogicError(
                f"Cannot submit a {claim.status.value} claim", error_code="INVALID_STATUS"
            )
        claim.submitted_at = utcnow()
        claim.submission_method = submission_method
        if claim.filing_date is None:
            claim.filing_date = claim.submitted_at.date()
        record_claim_status(self.db, claim, ClaimStatus.SUBMITTED, submitted_by, f"Submitted via {submission_method.value}")
        claim.updated_by = submitted_by
        await self.db.commit()
        await self.db.refresh(claim)
        return claim

    async def void_claim(self, clinic_id: str, claim_id: str, reason: Optional[str], voided_by: str) -> InsuranceClaim:
        claim = await self.get_claim(clinic_id, claim_id)
        if claim.status in (ClaimStatus.VOID, ClaimStatus.CLOSED):
            raise BusinessLogicError(f"Cannot void a {claim.status.value} claim", error_code="INVALID_STATUS")
        record_claim_status(self.db, claim, ClaimStatus.VOID, voided_by, reason)
        claim.updated_by = voided_by
        await self.db.commit()
        await self.db.refresh(claim)
        return claim

    async def appeal_claim(self, clinic_id: str, claim_id: str, appeal_notes: str, appealed_by: str) -> InsuranceClaim:
        claim = await self.get_claim(clinic_id, claim_id)
        if claim.status != ClaimStatus.DENIED:
            raise BusinessLogicError("Only denied claims can be appealed", error_code="INVALID_STATUS")
        claim.appeal_notes = appeal_notes
        claim.appeal_date = date.today()
        record_claim_status(self.db, claim, ClaimStatus.APPEALED, appealed_by, appeal_notes)
        claim.updated_by = appealed_by
        await self.db.commit()
        await self.db.refresh(claim)
        return claim

    async def resubmit_claim(
        self,
        clinic_id: str,
        claim_id: str,
        resubmitted_by: str,
        items: Optional[List[ClaimItemCreate]] = None,
        correction_notes: Optional[str] = None,
    ) -> InsuranceClaim:
        """Replace a denied claim with a corrected draft; the original is closed"""
        original = await self.get_claim(clinic_id, claim_id)
        if original.status not in (ClaimStatus.DENIED, ClaimStatus.APPEALED):
            raise BusinessLogicError(
                "Only denied or appealed claims can be resubmitted", error_code="INVALID_STATUS"
            )

        if items is not None:
            new_items = self._build_items(items)
        else:
            new_items = [
                ClaimItem(
                    line_number=item.line_number,
                    procedure_code=item.procedure_code,
                    description=item.description,
                    service_date=item.service_date,
                    quantity=item.quantity,
                    tooth_numbers=item.tooth_numbers,
                    billed_amount=item.billed_amount,
                )
                for item in original.items
            ]

        corrected = InsuranceClaim(
            clinic_id=clinic_id,
            claim_number=await generate_number(self.db, InsuranceClaim.claim_number, clinic_id, "CLM"),
            patient_id=original.patient_id,
            patient_insurance_id=original.patient_insurance_id,
            insurance_company_id=original.insurance_company_id,
            original_claim_id=original.id,
            claim_type=ClaimType.CORRECTED,
            status=ClaimStatus.DRAFT,
            service_date=original.service_date,
            preauth_number=original.preauth_number,
            rendering_provider_id=original.rendering_provider_id,
            npi=original.npi,
            notes=correction_notes,
            billed_amount=calculate_claim_totals(new_items)["billed_amount"],
            created_by=resubmitted_by,
            items=new_items,
        )
        self.db.add(corrected)
        await self.db.flush()
        self.db.add(ClaimStatusHistory(
            claim_id=corrected.id, from_status=None, to_status=ClaimStatus.DRAFT,
            reason=f"Corrected claim for {original.claim_number}", changed_by=resubmitted_by,
        ))
        record_claim_status(
            self.db, original, ClaimStatus.CLOSED, resubmitted_by,
            f"Replaced by corrected claim {corrected.claim_number}",
        )
        original.updated_by = resubmitted_by
        await self.db.commit()
        await self.db.refresh(corrected)
        return corrected

    async def update_status(self, clinic_id: str, claim_id: str, data: ClaimStatusUpdate, changed_by: str) -> InsuranceClaim:
        claim = await self.get_claim(clinic_id, claim_id)
        if claim.status in LOCKED_CLAIM_STATUSES:
            raise BusinessLogicError(f"Claim is {claim.status.value}", error_code="CLAIM_LOCKED")
        if data.status not in PAYER_RESPONSE_STATUSES or claim.status not in AWAITING_RESPONSE_STATUSES:
            raise BusinessLogicError(
                f"Cannot move a {claim.status.value} claim to {data.status.value}", error_code="INVALID_STATUS"
            )
        if data.payer_claim_id:
            claim.payer_claim_id = data.payer_claim_id
        if data.status == ClaimStatus.DENIED:
            claim.denial_reason = data.denial_reason
            claim.denial_date = data.denial_date or date.today()
        claim.response_at = utcnow()
        record_claim_status(self.db, claim, data.status, changed_by, data.reason or data.denial_reason)
        claim.updated_by = changed_by
        await self.db.commit()
        await self.db.refresh(claim)
        return claim

    async def delete_claim(self, clinic_id: str, claim_id: str, deleted_by: str) -> None:
        claim = await self.get_claim(clinic_id, claim_id)
        if claim.status != ClaimStatus.DRAFT:
            raise BusinessLogicError("Only draft claims can be deleted", error_code="INVALID_STATUS")
        claim.soft_delete(deleted_by)
        await self.db.commit()

    async def get_summary(self, clinic_id: str, today: Optional[date] = None, **filters) -> Dict[str, Any]:
        today = today or date.today()
        summary = calculate_claims_summary(await self.repo.get_for_summary(clinic_id, **filters))

        aging = {bucket: {"count": 0, "amount": 0.0} for bucket in CLAIM_AGING_BUCKETS}
        for claim in await self.repo.get_by_statuses(clinic_id, OUTSTANDING_CLAIM_STATUSES):
            filed = claim.filing_date or (claim.submitted_at.date() if claim.submitted_at else today)
            bucket = aging[claim_aging_bucket(max(0, (today - filed).days))]
            bucket["count"] += 1
            bucket["amount"] = round_currency(bucket["amount"] + claim.billed_amount - (claim.paid_amount or 0))
        summary["aging"] = aging

        appeals_due = []
        for claim in await self.repo.get_by_statuses(clinic_id, (ClaimStatus.DENIED,)):
            days_left = days_until_appeal_deadline(claim.denial_date, settings.APPEAL_WINDOW_DAYS, today)
            if days_left is not None and days_left >= 0:
                appeals_due.append({"claim_id": claim.id, "claim_number": claim.claim_number, "days_left": days_left})
        summary["appeals_due"] = sorted(appeals_due, key=lambda entry: entry["days_left"])
        return summary


class EOBService:
    """Payer remittances: review against the claim, then post to the patient's account"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = EOBRepository(db)
        self.claims = ClaimRepository(db)

    async def _check_claim(self, clinic_id: str, claim_id: Optional[str]) -> Optional[InsuranceClaim]:
        if not claim_id:
            return None
        claim = await self.claims.get_by_id(clinic_id, claim_id)
        if not claim:
            raise NotFoundError("Claim not found", error_code="CLAIM_NOT_FOUND")
        return claim

    async def create_eob(self, clinic_id: str, data: EOBCreate, created_by: str) -> EOB:
        claim = await self._check_claim(clinic_id, data.claim_id)
        values = data.model_dump(exclude={"lines"})
        if claim and not values.get("insurance_company_id"):
            values["insurance_company_id"] = claim.insurance_company_id
        eob = EOB(
            clinic_id=clinic_id,
            status=EOBStatus.PENDING,
            created_by=created_by,
            lines=[EOBLine(**line.model_dump()) for line in data.lines],
            **values,
        )
        self.db.add(eob)
        await self.db.commit()
        await self.db.refresh(eob)
        return eob

    async def get_eob(self, clinic_id: str, eob_id: str) -> EOB:
        eob = await self.repo.get_by_id(clinic_id, eob_id)
        if not eob:
            raise NotFoundError("EOB not found", error_code="EOB_NOT_FOUND")
        return eob

    async def get_eobs(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def get_payments(self, clinic_id: str, eob_id: str) -> List[InsurancePayment]:
        eob = await self.get_eob(clinic_id, eob_id)
        return await self.repo.get_payments(eob.id)

    async def update_eob(self, clinic_id: str, eob_id: str, data: EOBUpdate, updated_by: str) -> EOB:
        eob = await self.get_eob(clinic_id, eob_id)
        if eob.status == EOBStatus.PROCESSED:
            raise BusinessLogicError("Cannot edit a processed EOB", error_code="EOB_LOCKED")
        values = data.model_dump(exclude_unset=True, exclude={"lines"})
        if "claim_id" in values:
            await self._check_claim(clinic_id, values["claim_id"])
        for field, value in values.items():
            setattr(eob, field, value)
        if data.lines is not None:
            eob.lines = [EOBLine(**line.model_dump()) for line in data.lines]
        eob.updated_by = updated_by
        await self.db.commit()
        await self.db.refresh(eob)
        return eob

    async def process_eob(self, clinic_id: str, eob_id: str, processed_by: str) -> EOB:
        """Copy line results onto the claim items and flag totals that don't reconcile"""
        eob = await self.get_eob(clinic_id, eob_id)
        if eob.status not in (EOBStatus.PENDING, EOBStatus.REVIEWING):
            raise BusinessLogicError(f"Cannot process a {eob.status.value} EOB", error_code="INVALID_STATUS")

        claim = await self._check_claim(clinic_id, eob.claim_id)
        claim_items = {item.id: item for item in claim.items} if claim else {}
        for line in eob.lines:
            item = claim_items.get(line.claim_item_id)
            if item is None:
                continue
            item.paid_amount = line.paid_amount
            item.allowed_amount = line.allowed_amount
            item.adjustment_amount = line.adjustment_amount
            item.denial_code = line.denial_code
            item.denial_reason = line.denial_reason
            if line.denial_code:
                item.status = ClaimItemStatus.DENIED
            elif line.paid_amount > 0:
                item.status = ClaimItemStatus.PAID
            else:
                item.status = ClaimItemStatus.ADJUSTED

        lines_paid = round_currency(sum(line.paid_amount for line in eob.lines))
        if eob.lines and lines_paid != round_currency(eob.total_paid):
            eob.status = EOBStatus.DISCREPANCY
            logger.warning(f"EOB {eob.id} lines pay {lines_paid} against a total of {eob.total_paid}")
        else:
            eob.status = EOBStatus.REVIEWING
        eob.updated_by = processed_by
        await self.db.commit()
        await self.db.refresh(eob)
        return eob

    async def post_eob(self, clinic_id: str, eob_id: str, data: EOBPost, posted_by: str) -> Dict[str, Any]:
        eob = await self.get_eob(clinic_id, eob_id)
        if eob.status != EOBStatus.REVIEWING:
            raise BusinessLogicError("EOB must be reviewed before posting", error_code="NOT_REVIEWED")
        if not eob.claim_id:
            raise BusinessLogicError("EOB must be linked to a claim before posting", error_code="NO_CLAIM")
        claim = await self._check_claim(clinic_id, eob.claim_id)
        accounts = AccountRepository(self.db)
        if data.account_id:
            account = await accounts.get_by_id(clinic_id, data.account_id)
            if account and account.patient_id != claim.patient_id:
                raise BusinessLogicError(
                    "Account does not belong to the claim's patient",
                    details={"account_id": account.id, "claim_id": claim.id},
                    error_code="ACCOUNT_MISMATCH",
                )
        else:
            account = await accounts.get_for_patient(clinic_id, claim.patient_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")

        now = utcnow()
        payment = Payment(
            clinic_id=clinic_id,
            account_id=account.id,
            patient_id=account.patient_id,
            amount=eob.total_paid,
            payment_date=data.payment_date or now,
            payment_type=PaymentType.INSURANCE,
            method=PaymentMethodType.CHECK if eob.check_number else PaymentMethodType.E_TRANSFER,
            source=PaymentSource.INSURANCE,
            gateway=PaymentGatewayName.MANUAL,
            check_number=eob.check_number,
            reference_number=eob.eft_number or eob.eob_number,
            created_by=posted_by,
            payment_metadata={"eob_id": eob.id, "claim_id": claim.id},
        )
        await PaymentService(self.db).record_completed_payment(payment, [])

        insurance_payment = InsurancePayment(
            clinic_id=clinic_id,
            eob_id=eob.id,
            claim_id=claim.id,
            account_id=account.id,
            payment_id=payment.id,
            payment_date=payment.payment_date,
            amount=eob.total_paid,
            adjustment_amount=eob.total_adjusted,
            adjustment_reason=data.adjustment_reason,
            posted_at=now,
            posted_by=posted_by,
            created_by=posted_by,
        )
        self.db.add(insurance_payment)

        claim.paid_amount = round_currency((claim.paid_amount or 0) + eob.total_paid)
        claim.adjustment_amount = round_currency((claim.adjustment_amount or 0) + eob.total_adjusted)
        claim.patient_responsibility = eob.patient_responsibility
        if claim.paid_amount >= claim.billed_amount:
            new_status = ClaimStatus.PAID
        elif claim.paid_amount > 0:
            new_status = ClaimStatus.PARTIAL
        else:
            new_status = claim.status
        if new_status != claim.status:
            claim.response_at = claim.response_at or now
            record_claim_status(self.db, claim, new_status, posted_by, f"Payment posted from EOB: {eob.total_paid:.2f}")
        claim.updated_by = posted_by

        if eob.total_paid > 0:
            await update_insurance_benefit_usage(self.db, claim.patient_insurance_id, eob.total_paid)

        eob.status = EOBStatus.PROCESSED
        eob.processed_at = now
        eob.processed_by = posted_by
        await self.db.commit()
        await self.db.refresh(insurance_payment)
        logger.info(f"Posted EOB {eob.id}: {eob.total_paid:.2f} to claim {claim.claim_number}")
        return {"insurance_payment": insurance_payment, "claim_status": claim.status, "payment_id": payment.id}

    async def void_eob(self, clinic_id: str, eob_id: str, voided_by: str) -> EOB:
        eob = await self.get_eob(clinic_id, eob_id)
        if eob.status == EOBStatus.PROCESSED:
            raise BusinessLogicError("Cannot void a processed EOB", error_code="EOB_LOCKED")
        eob.status = EOBStatus.VOID
        eob.voided_at = utcnow()
        eob.updated_by = voided_by
        await self.db.commit()
        await self.db.refresh(eob)
        return eob
