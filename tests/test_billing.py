from datetime import date, datetime, timedelta
from typing import Dict

import pytest
from httpx import AsyncClient

from conftest import CLINIC_ID, STAFF_ID
from orca.api.v1.billing.schemas import (
    AccountCreate, CreditCreate, EstimateCreate, EstimateScenarioCreate, EstimateUpdate, FamilyGroupCreate,
    InvoiceCreate, InvoiceItemCreate, InvoiceUpdate, PaymentPlanCreate, PaymentPlanUpdate, StatementGenerate,
)
from orca.api.v1.payments.schemas import PaymentCreate
from orca.core.exceptions import BusinessLogicError, ConflictError, NotFoundError, ValidationError
from orca.domain.billing.models import (
    AccountStatus, CreditSource, CreditStatus, EstimateStatus, InvoiceStatus, PatientAccount, PaymentPlanStatus,
    ScheduledPaymentStatus, StatementDeliveryMethod,
)
from orca.domain.billing.service import (
    AccountService, CreditService, EstimateService, FamilyGroupService, InvoiceService, PaymentPlanService,
    StatementService,
)
from orca.domain.patients.models import Patient
from orca.domain.payments.models import PaymentMethodType
from orca.domain.payments.service import PaymentService
from orca.domain.billing.utils import (
    add_months,
    build_installment_schedule,
    calculate_aging_bucket_for_account,
    calculate_invoice_totals,
    calculate_payment_plan_amounts,
    days_past_due,
    format_currency,
    round_currency,
)
from orca.models.numbering import generate_number, next_number_after


@pytest.mark.billing
@pytest.mark.unit
class TestBillingUtils:
    """Pure calculation helpers"""

    def test_invoice_totals_subtract_discount_and_insurance(self) -> None:
        """Test the patient portion is what remains after discount and insurance"""
        totals = calculate_invoice_totals([
            {"quantity": 2, "unit_price": 150.0, "discount": 20.0, "insurance_amount": 100.0},
            {"quantity": 1, "unit_price": 89.99},
        ])

        assert totals["subtotal"] == 389.99
        assert totals["adjustments"] == 20.0
        assert totals["insurance_amount"] == 100.0
        assert totals["patient_amount"] == 269.99
        assert totals["balance"] == totals["patient_amount"]

    def test_explicit_patient_amount_wins(self) -> None:
        """Test a line's explicit patient_amount is used as given"""
        totals = calculate_invoice_totals([{"quantity": 1, "unit_price": 500.0, "patient_amount": 125.0}])

        assert totals["patient_amount"] == 125.0

    def test_payment_plan_amounts(self) -> None:
        """Test the financed amount excludes the down payment"""
        amounts = calculate_payment_plan_amounts(5400.0, 600.0, 24)

        assert amounts == {"financed_amount": 4800.0, "monthly_payment": 200.0, "remaining_balance": 4800.0}

    def test_payment_plan_requires_a_payment(self) -> None:
        """Test zero installments is rejected"""
        with pytest.raises(ValueError):
            calculate_payment_plan_amounts(100.0, 0.0, 0)

    def test_last_installment_absorbs_rounding(self) -> None:
        """Test installment amounts always sum to the financed amount"""
        schedule = build_installment_schedule(date(2026, 1, 31), 1000.0, 3)

        assert [amount for _, _, amount in schedule] == [333.33, 333.33, 333.34]
        assert [due for _, due, _ in schedule] == [date(2026, 1, 31), date(2026, 2, 28), date(2026, 3, 31)]

    def test_schedule_skips_first_period_after_down_payment(self) -> None:
        """Test the first installment moves one period out"""
        schedule = build_installment_schedule(date(2026, 3, 1), 200.0, 2, "BIWEEKLY", skip_first_period=True)

        assert schedule[0] == (1, date(2026, 3, 15), 100.0)
        assert schedule[1] == (2, date(2026, 3, 29), 100.0)

    def test_add_months_clamps_day(self) -> None:
        """Test month arithmetic clamps to the month's last day"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)

    def test_aging_buckets(self) -> None:
        """Test bucket boundaries"""
        assert calculate_aging_bucket_for_account(30) == "current"
        assert calculate_aging_bucket_for_account(31) == "aging_30"
        assert calculate_aging_bucket_for_account(90) == "aging_60"
        assert calculate_aging_bucket_for_account(120) == "aging_90"
        assert calculate_aging_bucket_for_account(121) == "aging_120_plus"

    def test_days_past_due_never_negative(self) -> None:
        """Test future due dates count as zero days"""
        today = date(2026, 5, 1)
        assert days_past_due(date(2026, 5, 20), today) == 0
        assert days_past_due(date(2026, 4, 1), today) == 30
        assert days_past_due(None, today) == 0

    def test_format_currency(self) -> None:
        """Test currency formatting"""
        assert format_currency(1234.5) == "$1,234.50 CAD"
        assert format_currency(-20, "usd") == "-$20.00 USD"
        assert round_currency(None) == 0.0

    def test_document_numbers(self) -> None:
        """Test numbers continue the highest existing sequence"""
        assert next_number_after("INV", 2026, None) == "INV-2026-00001"
        assert next_number_after("INV", 2026, "INV-2026-00041") == "INV-2026-00042"


@pytest.mark.billing
@pytest.mark.integration
class TestAccountsAndInvoices:
    """Account ledger and invoice lifecycle"""

    @pytest.mark.asyncio
    async def test_one_account_per_patient(self, db_session, account) -> None:
        """Test a second account for the same patient conflicts"""
        assert account.account_number.startswith("ACC-")
        assert account.status == AccountStatus.ACTIVE

        with pytest.raises(ConflictError) as exc:
            await AccountService(db_session).create_account(
                CLINIC_ID, AccountCreate(patient_id=account.patient_id), STAFF_ID
            )
        assert exc.value.error_code == "ACCOUNT_EXISTS"

    @pytest.mark.asyncio
    async def test_draft_invoices_do_not_count_towards_balance(self, account, make_invoice) -> None:
        """Test a draft adds nothing until it is sent"""
        draft = await make_invoice(account, 300.0, send=False)

        assert draft.status == InvoiceStatus.DRAFT
        assert draft.due_date == draft.invoice_date + timedelta(days=30)
        assert account.current_balance == 0

        sent = await make_invoice(account, 200.0)
        assert sent.status == InvoiceStatus.SENT
        assert sent.invoice_number != draft.invoice_number
        assert account.current_balance == 200.0

    @pytest.mark.asyncio
    async def test_send_emails_the_patient(self, account, make_invoice, notifier) -> None:
        """Test sending an invoice notifies the patient by email"""
        invoice = await make_invoice(account, 250.0)

        assert len(notifier.sent) == 1
        assert notifier.sent[0]["recipient"] == "maya.parent@example.com"
        assert invoice.invoice_number in notifier.sent[0]["subject"]
        assert "$250.00 CAD" in notifier.sent[0]["body"]

    @pytest.mark.asyncio
    async def test_sent_invoice_cannot_be_sent_again(self, db_session, account, make_invoice, notifier) -> None:
        """Test send is rejected outside DRAFT and PENDING"""
        invoice = await make_invoice(account, 100.0)

        with pytest.raises(BusinessLogicError) as exc:
            await InvoiceService(db_session, notifier).send_invoice(CLINIC_ID, invoice.id, STAFF_ID)
        assert exc.value.error_code == "INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_void_clears_balance(self, db_session, account, make_invoice, notifier) -> None:
        """Test voiding zeroes the invoice and the account"""
        invoice = await make_invoice(account, 180.0)

        voided = await InvoiceService(db_session, notifier).void_invoice(CLINIC_ID, invoice.id, "Entered twice", STAFF_ID)

        assert voided.status == InvoiceStatus.VOID
        assert voided.balance == 0
        assert account.current_balance == 0

    @pytest.mark.asyncio
    async def test_account_with_balance_cannot_be_deleted(self, db_session, account, make_invoice) -> None:
        """Test deleting an account that still owes money is refused"""
        await make_invoice(account, 75.0)

        with pytest.raises(BusinessLogicError) as exc:
            await AccountService(db_session).delete_account(CLINIC_ID, account.id, STAFF_ID)
        assert exc.value.error_code == "HAS_BALANCE"

    @pytest.mark.asyncio
    async def test_mark_overdue_and_age(self, db_session, account, make_invoice, notifier, overdue_dates) -> None:
        """Test past-due invoices become OVERDUE and land in their aging bucket"""
        invoice_date, due_date = overdue_dates(75)
        late = await make_invoice(account, 320.0, invoice_date=invoice_date, due_date=due_date)
        await make_invoice(account, 90.0)

        result = await InvoiceService(db_session, notifier).mark_overdue_invoices(CLINIC_ID)

        assert result == {"updated": 1, "invoice_ids": [late.id], "accounts_aged": 1}
        assert late.status == InvoiceStatus.OVERDUE
        assert account.aging_60 == 320.0
        assert account.current_balance == 410.0

    @pytest.mark.asyncio
    async def test_aging_moves_with_the_calendar(self, db_session, account, make_invoice, notifier, overdue_dates) -> None:
        """Test the nightly run re-buckets debt that was already OVERDUE"""
        invoice_date, due_date = overdue_dates(10)
        await make_invoice(account, 200.0, invoice_date=invoice_date, due_date=due_date)
        service = InvoiceService(db_session, notifier)

        await service.mark_overdue_invoices(CLINIC_ID)
        assert account.aging_30 == 0

        later = await service.mark_overdue_invoices(CLINIC_ID, today=date.today() + timedelta(days=25))

        assert later["updated"] == 0
        assert later["accounts_aged"] == 1
        assert account.aging_30 == 200.0

    @pytest.mark.asyncio
    async def test_sent_invoice_is_locked(self, db_session, account, make_invoice, notifier) -> None:
        """Test a sent invoice can no longer be edited"""
        invoice = await make_invoice(account, 60.0)

        with pytest.raises(BusinessLogicError) as exc:
            await InvoiceService(db_session, notifier).update_invoice(
                CLINIC_ID, invoice.id, InvoiceUpdate(notes="Late edit"), STAFF_ID
            )
        assert exc.value.error_code == "INVOICE_LOCKED"

    @pytest.mark.asyncio
    async def test_numbers_continue_past_five_digits(self, db_session, account) -> None:
        """Test a six-digit sequence still counts as the highest"""
        year = date.today().year
        account.account_number = f"ACC-{year}-99999"
        await db_session.commit()
        sibling = Patient(clinic_id=CLINIC_ID, first_name="Noor", last_name="Lindqvist", created_by=STAFF_ID)
        db_session.add(sibling)
        await db_session.commit()
        second = await AccountService(db_session).create_account(CLINIC_ID, AccountCreate(patient_id=sibling.id), STAFF_ID)
        assert second.account_number == f"ACC-{year}-100000"

        assert await generate_number(db_session, PatientAccount.account_number, CLINIC_ID, "ACC") == f"ACC-{year}-100001"

    @pytest.mark.asyncio
    async def test_late_fee_invoice_is_pending(self, db_session, account, notifier) -> None:
        """Test late fees are issued straight to PENDING"""
        service = InvoiceService(db_session, notifier)
        fee = await service.create_late_fee_invoice(CLINIC_ID, account, 25.0, created_by=STAFF_ID)
        await db_session.commit()

        assert fee.status == InvoiceStatus.PENDING
        assert fee.items[0].procedure_code == "LATE_FEE"
        assert account.current_balance == 25.0


@pytest.mark.billing
@pytest.mark.integration
class TestPlansAndCredits:
    """Payment plans and account credit"""

    @pytest.mark.asyncio
    async def test_activation_builds_schedule(self, db_session, account) -> None:
        """Test activating a plan creates one pending installment per payment"""
        service = PaymentPlanService(db_session)
        plan = await service.create_plan(
            CLINIC_ID,
            PaymentPlanCreate(account_id=account.id, total_amount=1000.0, number_of_payments=3, start_date=date(2026, 1, 31)),
            STAFF_ID,
        )
        assert plan.status == PaymentPlanStatus.PENDING
        assert plan.plan_number.startswith("PLN-")

        plan = await service.activate_plan(CLINIC_ID, plan.id, STAFF_ID)
        schedule = await service.get_schedule(CLINIC_ID, plan.id)

        assert plan.status == PaymentPlanStatus.ACTIVE
        assert [s.amount for s in schedule] == [333.33, 333.33, 333.34]
        assert all(s.status == ScheduledPaymentStatus.PENDING for s in schedule)
        assert plan.next_payment_date == date(2026, 1, 31)
        assert plan.end_date == date(2026, 3, 31)

    @pytest.mark.asyncio
    async def test_cancel_plan_cancels_installments(self, db_session, account) -> None:
        """Test cancelling a plan cancels what is still pending"""
        service = PaymentPlanService(db_session)
        plan = await service.create_plan(
            CLINIC_ID,
            PaymentPlanCreate(account_id=account.id, total_amount=600.0, number_of_payments=2, start_date=date.today()),
            STAFF_ID,
        )
        await service.activate_plan(CLINIC_ID, plan.id, STAFF_ID)

        plan = await service.cancel_plan(CLINIC_ID, plan.id, "Patient moved", STAFF_ID)
        schedule = await service.get_schedule(CLINIC_ID, plan.id)

        assert plan.status == PaymentPlanStatus.CANCELLED
        assert {s.status for s in schedule} == {ScheduledPaymentStatus.CANCELLED}

        with pytest.raises(BusinessLogicError):
            await service.cancel_plan(CLINIC_ID, plan.id, "Again", STAFF_ID)
        with pytest.raises(BusinessLogicError) as exc:
            await service.update_plan(CLINIC_ID, plan.id, PaymentPlanUpdate(notes="Reopen"), STAFF_ID)
        assert exc.value.error_code == "PLAN_LOCKED"

    @pytest.mark.asyncio
    async def test_installment_override_leaves_a_final_payment(self, db_session, account) -> None:
        """Test an installment so large the last one would be zero or negative is refused"""
        service = PaymentPlanService(db_session)

        with pytest.raises(ValidationError) as exc:
            await service.create_plan(
                CLINIC_ID,
                PaymentPlanCreate(account_id=account.id, total_amount=1000.0, number_of_payments=3,
                                  monthly_payment=600.0, start_date=date.today()),
                STAFF_ID,
            )
        assert exc.value.error_code == "VALIDATION_ERROR"

        plan = await service.create_plan(
            CLINIC_ID,
            PaymentPlanCreate(account_id=account.id, total_amount=1000.0, number_of_payments=3,
                              monthly_payment=400.0, start_date=date(2026, 1, 31)),
            STAFF_ID,
        )
        plan = await service.activate_plan(CLINIC_ID, plan.id, STAFF_ID)
        assert [s.amount for s in await service.get_schedule(CLINIC_ID, plan.id)] == [400.0, 400.0, 200.0]

        with pytest.raises(ValidationError):
            await service.update_plan(CLINIC_ID, plan.id, PaymentPlanUpdate(monthly_payment=500.0), STAFF_ID)

    def test_down_payment_must_be_below_total(self) -> None:
        """Test a down payment covering the whole total is rejected"""
        with pytest.raises(ValueError):
            PaymentPlanCreate(account_id="a", total_amount=100.0, down_payment=100.0, number_of_payments=1, start_date=date.today())

    @pytest.mark.asyncio
    async def test_apply_credit_pays_invoice(self, db_session, account, make_invoice) -> None:
        """Test credit applied to an invoice reduces it and the account"""
        invoice = await make_invoice(account, 120.0)
        service = CreditService(db_session)
        credit = await service.create_credit(
            CLINIC_ID, CreditCreate(account_id=account.id, amount=50.0, source=CreditSource.ADJUSTMENT), STAFF_ID
        )
        assert account.credit_balance == 50.0

        await service.apply_credit(CLINIC_ID, credit.id, invoice.id, 50.0, STAFF_ID)

        assert invoice.status == InvoiceStatus.PARTIAL
        assert invoice.balance == 70.0
        assert account.current_balance == 70.0

    @pytest.mark.asyncio
    async def test_credit_cannot_exceed_invoice_balance(self, db_session, account, make_invoice) -> None:
        """Test applying more than the invoice owes is refused"""
        invoice = await make_invoice(account, 40.0)
        service = CreditService(db_session)
        credit = await service.create_credit(
            CLINIC_ID, CreditCreate(account_id=account.id, amount=100.0, source=CreditSource.ADJUSTMENT), STAFF_ID
        )

        with pytest.raises(BusinessLogicError) as exc:
            await service.apply_credit(CLINIC_ID, credit.id, invoice.id, 60.0, STAFF_ID)
        assert exc.value.error_code == "AMOUNT_EXCEEDS_BALANCE"


@pytest.mark.billing
@pytest.mark.integration
class TestBillingRoutes:
    """HTTP surface for billing"""

    @pytest.mark.asyncio
    async def test_invoice_flow(self, client: AsyncClient, billing_headers: Dict[str, str], account) -> None:
        """Test create then send over HTTP"""
        payload = InvoiceCreate(
            account_id=account.id,
            patient_id=account.patient_id,
            items=[InvoiceItemCreate(procedure_code="D8670", description="Adjustment visit", unit_price=95.0)],
        ).model_dump(mode="json")

        response = await client.post("/api/v1/billing/invoices", json=payload, headers=billing_headers)
        assert response.status_code == 201
        invoice = response.json()
        assert invoice["status"] == "DRAFT"
        assert invoice["items"][0]["procedure_code"] == "D8670"

        response = await client.post(f"/api/v1/billing/invoices/{invoice['id']}/send", headers=billing_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "SENT"

    @pytest.mark.asyncio
    async def test_invoice_without_items_is_422(self, client: AsyncClient, billing_headers: Dict[str, str], account) -> None:
        """Test request validation rejects an empty item list"""
        response = await client.post(
            "/api/v1/billing/invoices",
            json={"account_id": account.id, "patient_id": account.patient_id, "items": []},
            headers=billing_headers,
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_account_is_404(self, client: AsyncClient, billing_headers: Dict[str, str]) -> None:
        """Test a missing account returns the error envelope"""
        response = await client.get("/api/v1/billing/accounts/missing", headers=billing_headers)

        assert response.status_code == 404
        body = response.json()
        assert body["error_code"] == "ACCOUNT_NOT_FOUND"
        assert "request_id" in body

    @pytest.mark.asyncio
    async def test_requires_authentication(self, client: AsyncClient) -> None:
        """Test billing routes reject anonymous callers"""
        response = await client.get("/api/v1/billing/accounts")
        assert response.status_code in (401, 403)


@pytest.mark.billing
@pytest.mark.integration
class TestFamilyGroupsAndCredits:
    """Household grouping and moving credit between accounts"""

    @pytest.fixture
    async def sibling_account(self, db_session):
        sibling = Patient(clinic_id=CLINIC_ID, first_name="Elias", last_name="Lindqvist", created_by=STAFF_ID)
        db_session.add(sibling)
        await db_session.commit()
        return await AccountService(db_session).create_account(CLINIC_ID, AccountCreate(patient_id=sibling.id), STAFF_ID)

    @pytest.mark.asyncio
    async def test_group_membership(self, db_session, patient, account, sibling_account) -> None:
        """Test members join once and leave once"""
        service = FamilyGroupService(db_session)
        group = await service.create_group(
            CLINIC_ID, FamilyGroupCreate(group_name="Lindqvist household", primary_guarantor_id=patient.id), STAFF_ID
        )

        await service.add_member(CLINIC_ID, group.id, account.id)
        await service.add_member(CLINIC_ID, group.id, sibling_account.id)
        members = await service.get_members(CLINIC_ID, group.id)
        assert {m.id for m in members} == {account.id, sibling_account.id}

        with pytest.raises(BusinessLogicError) as exc:
            await service.add_member(CLINIC_ID, group.id, account.id)
        assert exc.value.error_code == "ALREADY_IN_GROUP"

        await service.remove_member(CLINIC_ID, group.id, account.id)
        with pytest.raises(BusinessLogicError) as exc:
            await service.remove_member(CLINIC_ID, group.id, account.id)
        assert exc.value.error_code == "ACCOUNT_NOT_IN_GROUP"

    @pytest.mark.asyncio
    async def test_unknown_guarantor(self, db_session) -> None:
        """Test the guarantor must be a patient of the clinic"""
        with pytest.raises(NotFoundError) as exc:
            await FamilyGroupService(db_session).create_group(
                CLINIC_ID, FamilyGroupCreate(group_name="Ghosts", primary_guarantor_id="missing"), STAFF_ID
            )
        assert exc.value.error_code == "GUARANTOR_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_transfer_credit(self, db_session, account, sibling_account) -> None:
        """Test part of a credit moves to another account as a TRANSFER credit"""
        service = CreditService(db_session)
        credit = await service.create_credit(
            CLINIC_ID, CreditCreate(account_id=account.id, amount=80.0, source=CreditSource.OVERPAYMENT), STAFF_ID
        )

        moved = await service.transfer_credit(CLINIC_ID, credit.id, sibling_account.id, 30.0, STAFF_ID)

        assert moved.source == CreditSource.TRANSFER
        assert moved.remaining_amount == 30.0
        assert credit.remaining_amount == 50.0
        assert account.credit_balance == 50.0
        assert sibling_account.credit_balance == 30.0

        with pytest.raises(BusinessLogicError) as exc:
            await service.transfer_credit(CLINIC_ID, credit.id, sibling_account.id, 60.0, STAFF_ID)
        assert exc.value.error_code == "INSUFFICIENT_CREDIT"

        with pytest.raises(NotFoundError) as exc:
            await service.transfer_credit(CLINIC_ID, credit.id, "missing", 10.0, STAFF_ID)
        assert exc.value.error_code == "DEST_ACCOUNT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_expire_credits(self, db_session, account) -> None:
        """Test credits past their expiry stop counting"""
        service = CreditService(db_session)
        credit = await service.create_credit(
            CLINIC_ID,
            CreditCreate(
                account_id=account.id, amount=25.0, source=CreditSource.PROMOTIONAL,
                expires_at=datetime.utcnow() - timedelta(days=1),
            ),
            STAFF_ID,
        )

        assert await service.expire_credits() == {"expired": 1}
        assert credit.status == CreditStatus.EXPIRED
        assert account.credit_balance == 0.0


@pytest.mark.billing
@pytest.mark.integration
class TestEstimatesAndStatements:
    """Treatment estimates and periodic statements"""

    @pytest.mark.asyncio
    async def test_estimate_lifecycle(self, db_session, account) -> None:
        """Test present then accept copies the chosen scenario's totals"""
        service = EstimateService(db_session)
        estimate = await service.create_estimate(
            CLINIC_ID,
            EstimateCreate(
                account_id=account.id,
                patient_id=account.patient_id,
                valid_until=date.today() + timedelta(days=60),
                total_cost=5800.0,
                scenarios=[
                    EstimateScenarioCreate(name="Metal braces", total_cost=5800.0, insurance_estimate=1500.0,
                                           patient_estimate=4300.0, is_recommended=True),
                    EstimateScenarioCreate(name="Clear aligners", total_cost=6900.0, insurance_estimate=1500.0,
                                           patient_estimate=5400.0),
                ],
            ),
            STAFF_ID,
        )
        assert estimate.estimate_number.startswith("EST-")
        assert estimate.status == EstimateStatus.DRAFT

        with pytest.raises(BusinessLogicError) as exc:
            await service.accept_estimate(CLINIC_ID, estimate.id, None, STAFF_ID)
        assert exc.value.error_code == "INVALID_STATUS"

        await service.present_estimate(CLINIC_ID, estimate.id, STAFF_ID)
        aligners = next(s for s in estimate.scenarios if s.name == "Clear aligners")
        await service.accept_estimate(CLINIC_ID, estimate.id, aligners.id, STAFF_ID)

        assert estimate.status == EstimateStatus.ACCEPTED
        assert estimate.presented_by == STAFF_ID
        assert estimate.total_cost == 6900.0
        assert estimate.patient_estimate == 5400.0
        assert [s.is_selected for s in estimate.scenarios if s.name == "Metal braces"] == [False]

        with pytest.raises(BusinessLogicError) as exc:
            await service.update_estimate(CLINIC_ID, estimate.id, EstimateUpdate(notes="Too late"), STAFF_ID)
        assert exc.value.error_code == "ESTIMATE_LOCKED"

    @pytest.mark.asyncio
    async def test_statement_totals(self, db_session, gateway, notifier, account, make_invoice) -> None:
        """Test a statement carries prior balance, new charges and payments in the period"""
        today = date.today()
        await make_invoice(account, 200.0, invoice_date=today - timedelta(days=60), due_date=today - timedelta(days=30))
        current = await make_invoice(account, 300.0)
        await PaymentService(db_session, gateway).create_payment(
            CLINIC_ID,
            PaymentCreate(account_id=account.id, patient_id=account.patient_id, amount=100.0,
                          method=PaymentMethodType.CASH, invoice_id=current.id),
            STAFF_ID,
        )

        service = StatementService(db_session, notifier)
        statement = await service.generate_statement(
            CLINIC_ID,
            StatementGenerate(
                account_id=account.id,
                period_start=today - timedelta(days=30),
                period_end=today + timedelta(days=1),
                due_date=today + timedelta(days=21),
            ),
            STAFF_ID,
        )

        assert statement.statement_number.startswith("STM-")
        assert statement.previous_balance == 200.0
        assert statement.new_charges == 300.0
        assert statement.payments_received == 100.0
        assert statement.amount_due == 400.0

        await service.send_statement(CLINIC_ID, statement.id, StatementDeliveryMethod.MAIL, STAFF_ID)

        assert statement.sent_at is not None
        assert notifier.sent[-1]["channel"] == "LETTER"
        assert notifier.sent[-1]["recipient"] == "12 King St W, Toronto ON"
