from datetime import date, timedelta
from typing import Dict

import pytest
from httpx import AsyncClient

from conftest import CLINIC_ID, STAFF_ID
from orca.api.v1.billing.schemas import AccountCreate
from orca.api.v1.insurance.schemas import (
    ClaimCreate, ClaimItemCreate, ClaimStatusUpdate, ClaimUpdate, EOBCreate, EOBLineCreate, EOBPost, EOBUpdate,
    InsuranceCompanyCreate, PatientInsuranceCreate,
)
from orca.core.exceptions import BusinessLogicError, ConflictError, ValidationError
from orca.domain.billing.service import AccountService
from orca.domain.insurance.models import ClaimItemStatus, ClaimStatus, EOBStatus, SubmissionMethod
from orca.domain.insurance.service import ClaimService, EOBService, InsuranceCompanyService, PatientInsuranceService
from orca.domain.insurance.utils import (
    calculate_estimated_insurance_payment,
    check_ortho_benefit_availability,
    claim_aging_bucket,
    days_until_appeal_deadline,
    format_payer_id,
    validate_cdt_code,
)
from orca.domain.patients.models import Patient
from orca.domain.payments.models import PaymentType
from orca.domain.payments.service import PaymentService


@pytest.fixture
async def company(db_session):
    return await InsuranceCompanyService(db_session).create_company(
        CLINIC_ID, InsuranceCompanyCreate(name="Maple Dental Benefits", payer_id="md-204 11"), STAFF_ID
    )


@pytest.fixture
async def policy(db_session, patient, company):
    return await PatientInsuranceService(db_session).create_insurance(
        CLINIC_ID,
        PatientInsuranceCreate(
            patient_id=patient.id,
            insurance_company_id=company.id,
            subscriber_id="SUB-77812",
            subscriber_name="Erik Lindqvist",
            effective_date=date(2024, 1, 1),
            has_ortho_benefit=True,
            ortho_lifetime_max=2000.0,
            ortho_coverage_percent=50.0,
        ),
        STAFF_ID,
    )


@pytest.fixture
async def claim(db_session, patient, policy):
    service_date = date.today() - timedelta(days=10)
    return await ClaimService(db_session).create_claim(
        CLINIC_ID,
        ClaimCreate(
            patient_id=patient.id,
            patient_insurance_id=policy.id,
            service_date=service_date,
            items=[
                ClaimItemCreate(procedure_code="d8080", description="Comprehensive ortho", service_date=service_date, billed_amount=1500.0),
                ClaimItemCreate(procedure_code="D8670", description="Periodic visit", service_date=service_date, billed_amount=250.0, quantity=2),
            ],
        ),
        STAFF_ID,
    )


@pytest.mark.insurance
@pytest.mark.unit
class TestInsuranceUtils:
    """Claim and benefit helpers"""

    def test_cdt_codes(self) -> None:
        """Test CDT code validation is case-insensitive"""
        assert validate_cdt_code("d8080")
        assert not validate_cdt_code("8080")
        assert not validate_cdt_code("")

    def test_payer_id_is_normalised(self) -> None:
        """Test payer ids are uppercased and stripped"""
        assert format_payer_id("md-204 11") == "MD20411"

    def test_benefit_availability(self) -> None:
        """Test each reason ortho benefits can be unavailable"""
        today = date(2026, 6, 1)
        base = {"has_ortho_benefit": True, "effective_date": date(2026, 1, 1), "ortho_lifetime_max": 1500.0}

        assert check_ortho_benefit_availability({**base, "ortho_used_amount": 500.0}, today) == {"available": True, "remaining": 1000.0}
        assert check_ortho_benefit_availability({**base, "has_ortho_benefit": False}, today)["reason"] == "NO_ORTHO_COVERAGE"
        assert check_ortho_benefit_availability({**base, "termination_date": date(2026, 5, 1)}, today)["reason"] == "COVERAGE_TERMINATED"
        assert check_ortho_benefit_availability({**base, "ortho_waiting_period_months": 12}, today)["reason"] == "WAITING_PERIOD"
        assert check_ortho_benefit_availability({**base, "ortho_used_amount": 1500.0}, today)["reason"] == "LIFETIME_MAX_MET"

    def test_estimated_payment(self) -> None:
        """Test the payer share honours deductible and remaining maximum"""
        assert calculate_estimated_insurance_payment(1000.0, 50, deductible=100, deductible_met=0) == 450.0
        assert calculate_estimated_insurance_payment(1000.0, 80, remaining=300.0) == 300.0

    def test_claim_aging_and_appeal_window(self) -> None:
        """Test aging buckets and appeal deadlines"""
        assert claim_aging_bucket(30) == "0-30"
        assert claim_aging_bucket(121) == "120+"
        assert days_until_appeal_deadline(date(2026, 1, 1), 90, date(2026, 1, 31)) == 60
        assert days_until_appeal_deadline(None) is None


@pytest.mark.insurance
@pytest.mark.integration
class TestPoliciesAndClaims:
    """Policies and the claim lifecycle"""

    @pytest.mark.asyncio
    async def test_duplicate_payer_id(self, db_session, company) -> None:
        """Test payer ids are unique per clinic after normalising"""
        assert company.payer_id == "MD20411"

        with pytest.raises(ConflictError) as exc:
            await InsuranceCompanyService(db_session).create_company(
                CLINIC_ID, InsuranceCompanyCreate(name="Copy", payer_id="MD20411"), STAFF_ID
            )
        assert exc.value.error_code == "DUPLICATE_PAYER_ID"

    @pytest.mark.asyncio
    async def test_one_active_policy_per_priority(self, db_session, patient, company, policy) -> None:
        """Test a second active PRIMARY policy conflicts"""
        with pytest.raises(ConflictError) as exc:
            await PatientInsuranceService(db_session).create_insurance(
                CLINIC_ID,
                PatientInsuranceCreate(
                    patient_id=patient.id, insurance_company_id=company.id, subscriber_id="X",
                    subscriber_name="Maya Lindqvist", effective_date=date(2025, 1, 1),
                ),
                STAFF_ID,
            )
        assert exc.value.error_code == "DUPLICATE_PRIORITY"

    @pytest.mark.asyncio
    async def test_check_benefits_with_fee(self, db_session, policy) -> None:
        """Test the estimate is capped by coverage percent"""
        result = await PatientInsuranceService(db_session).check_benefits(CLINIC_ID, policy.id, fee=1000.0)

        assert result == {"available": True, "remaining": 2000.0, "estimated_payment": 500.0}

    @pytest.mark.asyncio
    async def test_claim_creation(self, db_session, claim) -> None:
        """Test a new claim is a DRAFT with billed totals and history"""
        history = await ClaimService(db_session).get_history(CLINIC_ID, claim.id)

        assert claim.claim_number.startswith("CLM-")
        assert claim.status == ClaimStatus.DRAFT
        assert claim.billed_amount == 2000.0
        assert [item.procedure_code for item in claim.items] == ["D8080", "D8670"]
        assert [(h.from_status, h.to_status) for h in history] == [(None, ClaimStatus.DRAFT)]

    @pytest.mark.asyncio
    async def test_invalid_procedure_codes(self, db_session, patient, policy) -> None:
        """Test claims with non-CDT codes are rejected"""
        with pytest.raises(ValidationError) as exc:
            await ClaimService(db_session).create_claim(
                CLINIC_ID,
                ClaimCreate(
                    patient_id=patient.id, patient_insurance_id=policy.id, service_date=date.today(),
                    items=[ClaimItemCreate(procedure_code="BRACES", description="x", service_date=date.today(), billed_amount=1.0)],
                ),
                STAFF_ID,
            )
        assert exc.value.details == {"codes": ["BRACES"]}

    @pytest.mark.asyncio
    async def test_submit_and_lock(self, db_session, claim) -> None:
        """Test submission stamps the filing date and a submitted claim can't be deleted"""
        service = ClaimService(db_session)
        claim = await service.submit_claim(CLINIC_ID, claim.id, SubmissionMethod.ELECTRONIC, STAFF_ID)

        assert claim.status == ClaimStatus.SUBMITTED
        assert claim.filing_date == date.today()
        with pytest.raises(BusinessLogicError):
            await service.submit_claim(CLINIC_ID, claim.id, SubmissionMethod.PAPER, STAFF_ID)
        with pytest.raises(BusinessLogicError):
            await service.delete_claim(CLINIC_ID, claim.id, STAFF_ID)

    @pytest.mark.asyncio
    async def test_denial_appeal_and_resubmit(self, db_session, claim) -> None:
        """Test a denied claim can be appealed, then replaced by a corrected claim"""
        service = ClaimService(db_session)
        await service.submit_claim(CLINIC_ID, claim.id, SubmissionMethod.ELECTRONIC, STAFF_ID)
        denied = await service.update_status(
            CLINIC_ID, claim.id, ClaimStatusUpdate(status=ClaimStatus.DENIED, denial_reason="Missing x-rays"), STAFF_ID
        )
        assert denied.denial_date == date.today()

        summary = await service.get_summary(CLINIC_ID)
        assert summary["appeals_due"] == [{"claim_id": claim.id, "claim_number": claim.claim_number, "days_left": 90}]
        assert summary["denial_rate"] == 100.0

        appealed = await service.appeal_claim(CLINIC_ID, claim.id, "X-rays attached", STAFF_ID)
        assert appealed.status == ClaimStatus.APPEALED

        corrected = await service.resubmit_claim(CLINIC_ID, claim.id, STAFF_ID, correction_notes="Added films")
        original = await service.get_claim(CLINIC_ID, claim.id)
        assert corrected.original_claim_id == claim.id
        assert corrected.status == ClaimStatus.DRAFT
        assert corrected.billed_amount == 2000.0
        assert original.status == ClaimStatus.CLOSED

    @pytest.mark.asyncio
    async def test_status_updates_follow_payer_responses(self, db_session, claim) -> None:
        """Test only submitted claims take payer responses, and only response statuses"""
        service = ClaimService(db_session)

        with pytest.raises(BusinessLogicError) as exc:
            await service.update_status(CLINIC_ID, claim.id, ClaimStatusUpdate(status=ClaimStatus.ACCEPTED), STAFF_ID)
        assert exc.value.error_code == "INVALID_STATUS"

        await service.submit_claim(CLINIC_ID, claim.id, SubmissionMethod.ELECTRONIC, STAFF_ID)
        for shortcut in (ClaimStatus.PAID, ClaimStatus.VOID, ClaimStatus.CLOSED):
            with pytest.raises(BusinessLogicError) as exc:
                await service.update_status(CLINIC_ID, claim.id, ClaimStatusUpdate(status=shortcut), STAFF_ID)
            assert exc.value.error_code == "INVALID_STATUS"

        accepted = await service.update_status(
            CLINIC_ID, claim.id, ClaimStatusUpdate(status=ClaimStatus.ACCEPTED, payer_claim_id="MD-88120"), STAFF_ID
        )
        assert accepted.status == ClaimStatus.ACCEPTED
        assert accepted.payer_claim_id == "MD-88120"
        assert accepted.response_at is not None

        in_process = await service.update_status(
            CLINIC_ID, claim.id, ClaimStatusUpdate(status=ClaimStatus.IN_PROCESS), STAFF_ID
        )
        assert in_process.status == ClaimStatus.IN_PROCESS

    @pytest.mark.asyncio
    async def test_void_claim_is_locked(self, db_session, claim) -> None:
        """Test a voided claim can be neither edited nor moved"""
        service = ClaimService(db_session)
        await service.void_claim(CLINIC_ID, claim.id, "Wrong policy", STAFF_ID)

        with pytest.raises(BusinessLogicError) as exc:
            await service.update_claim(CLINIC_ID, claim.id, ClaimUpdate(notes="Fix policy"), STAFF_ID)
        assert exc.value.error_code == "CLAIM_LOCKED"

        with pytest.raises(BusinessLogicError) as exc:
            await service.update_status(CLINIC_ID, claim.id, ClaimStatusUpdate(status=ClaimStatus.ACCEPTED), STAFF_ID)
        assert exc.value.error_code == "CLAIM_LOCKED"

    def test_denial_needs_reason(self) -> None:
        """Test denying without a reason fails validation"""
        with pytest.raises(ValueError):
            ClaimStatusUpdate(status=ClaimStatus.DENIED)


@pytest.mark.insurance
@pytest.mark.integration
class TestEOBs:
    """Remittance review and posting"""

    @pytest.mark.asyncio
    async def test_process_and_post(self, db_session, gateway, claim, policy, account) -> None:
        """Test a reconciled EOB posts an insurance payment and updates the claim"""
        first, second = claim.items
        service = EOBService(db_session)
        eob = await service.create_eob(
            CLINIC_ID,
            EOBCreate(
                claim_id=claim.id,
                received_date=date.today(),
                check_number="CHK-5531",
                total_paid=800.0,
                lines=[
                    EOBLineCreate(claim_item_id=first.id, billed_amount=1500.0, paid_amount=800.0),
                    EOBLineCreate(claim_item_id=second.id, billed_amount=500.0, denial_code="N130", denial_reason="Frequency"),
                ],
            ),
            STAFF_ID,
        )
        assert eob.insurance_company_id == claim.insurance_company_id

        eob = await service.process_eob(CLINIC_ID, eob.id, STAFF_ID)
        assert eob.status == EOBStatus.REVIEWING
        assert first.status == ClaimItemStatus.PAID
        assert second.status == ClaimItemStatus.DENIED

        result = await service.post_eob(CLINIC_ID, eob.id, EOBPost(account_id=account.id), STAFF_ID)
        payment = await PaymentService(db_session, gateway).get_payment(CLINIC_ID, result["payment_id"])

        assert result["claim_status"] == ClaimStatus.PARTIAL
        assert result["insurance_payment"].amount == 800.0
        assert payment.payment_type == PaymentType.INSURANCE
        assert payment.check_number == "CHK-5531"
        assert payment.allocations == []
        assert policy.ortho_used_amount == 800.0
        assert eob.status == EOBStatus.PROCESSED

        with pytest.raises(BusinessLogicError) as exc:
            await service.post_eob(CLINIC_ID, eob.id, EOBPost(account_id=account.id), STAFF_ID)
        assert exc.value.error_code == "NOT_REVIEWED"

    @pytest.mark.asyncio
    async def test_unbalanced_lines_flag_discrepancy(self, db_session, claim) -> None:
        """Test line totals that disagree with the EOB total are flagged"""
        service = EOBService(db_session)
        eob = await service.create_eob(
            CLINIC_ID,
            EOBCreate(
                claim_id=claim.id, received_date=date.today(), total_paid=900.0,
                lines=[EOBLineCreate(claim_item_id=claim.items[0].id, paid_amount=700.0)],
            ),
            STAFF_ID,
        )

        eob = await service.process_eob(CLINIC_ID, eob.id, STAFF_ID)

        assert eob.status == EOBStatus.DISCREPANCY

    @pytest.fixture
    async def reviewed_eob(self, db_session, claim):
        service = EOBService(db_session)
        eob = await service.create_eob(
            CLINIC_ID, EOBCreate(claim_id=claim.id, received_date=date.today(), total_paid=2000.0), STAFF_ID
        )
        return await service.process_eob(CLINIC_ID, eob.id, STAFF_ID)

    @pytest.mark.asyncio
    async def test_posting_goes_to_the_claim_patient(self, db_session, account, claim, reviewed_eob) -> None:
        """Test an EOB cannot be posted to another patient's account"""
        sibling = Patient(clinic_id=CLINIC_ID, first_name="Elias", last_name="Lindqvist", created_by=STAFF_ID)
        db_session.add(sibling)
        await db_session.commit()
        other = await AccountService(db_session).create_account(CLINIC_ID, AccountCreate(patient_id=sibling.id), STAFF_ID)
        service = EOBService(db_session)

        with pytest.raises(BusinessLogicError) as exc:
            await service.post_eob(CLINIC_ID, reviewed_eob.id, EOBPost(account_id=other.id), STAFF_ID)
        assert exc.value.error_code == "ACCOUNT_MISMATCH"
        assert reviewed_eob.status == EOBStatus.REVIEWING

        result = await service.post_eob(CLINIC_ID, reviewed_eob.id, EOBPost(), STAFF_ID)

        assert result["insurance_payment"].account_id == account.id
        assert result["claim_status"] == ClaimStatus.PAID
        assert other.last_payment_amount is None

    @pytest.mark.asyncio
    async def test_eob_without_claim_cannot_post(self, db_session, account, company) -> None:
        """Test an EOB must be matched to a claim before posting"""
        service = EOBService(db_session)
        eob = await service.create_eob(
            CLINIC_ID,
            EOBCreate(insurance_company_id=company.id, received_date=date.today(), total_paid=120.0),
            STAFF_ID,
        )
        eob = await service.process_eob(CLINIC_ID, eob.id, STAFF_ID)

        with pytest.raises(BusinessLogicError) as exc:
            await service.post_eob(CLINIC_ID, eob.id, EOBPost(account_id=account.id), STAFF_ID)
        assert exc.value.error_code == "NO_CLAIM"

    @pytest.mark.asyncio
    async def test_processed_eob_is_locked(self, db_session, account, reviewed_eob) -> None:
        """Test a posted EOB can be neither edited nor voided"""
        service = EOBService(db_session)
        await service.post_eob(CLINIC_ID, reviewed_eob.id, EOBPost(), STAFF_ID)

        with pytest.raises(BusinessLogicError) as exc:
            await service.update_eob(CLINIC_ID, reviewed_eob.id, EOBUpdate(check_number="CHK-1"), STAFF_ID)
        assert exc.value.error_code == "EOB_LOCKED"

        with pytest.raises(BusinessLogicError) as exc:
            await service.void_eob(CLINIC_ID, reviewed_eob.id, STAFF_ID)
        assert exc.value.error_code == "EOB_LOCKED"


@pytest.mark.insurance
@pytest.mark.integration
class TestInsuranceRoutes:
    """HTTP surface for insurance"""

    @pytest.mark.asyncio
    async def test_front_desk_cannot_create_company(self, client: AsyncClient, front_desk_headers: Dict[str, str]) -> None:
        """Test company creation needs insurance write access"""
        response = await client.post(
            "/api/v1/insurance/companies", json={"name": "Acme", "payer_id": "ACME1"}, headers=front_desk_headers
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_benefits_endpoint(self, client: AsyncClient, billing_headers: Dict[str, str], policy) -> None:
        """Test the benefits check over HTTP"""
        response = await client.get(
            f"/api/v1/insurance/policies/{policy.id}/benefits", params={"fee": 400}, headers=billing_headers
        )

        assert response.status_code == 200
        assert response.json()["estimated_payment"] == 200.0

    @pytest.mark.asyncio
    async def test_claims_summary(self, client: AsyncClient, billing_headers: Dict[str, str], claim) -> None:
        """Test the claims summary lists totals by status"""
        response = await client.get("/api/v1/insurance/claims/summary", headers=billing_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total_claims"] == 1
        assert body["by_status"] == {"DRAFT": 1}
