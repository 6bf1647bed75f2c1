from datetime import date, datetime, time, timedelta
from typing import Dict
from urllib.parse import parse_qs

import httpx
import pytest
from httpx import AsyncClient

from conftest import CLINIC_ID, STAFF_ID
from orca.api.v1.billing.schemas import PaymentPlanCreate
from orca.api.v1.payments.schemas import (
    AllocationCreate, PaymentCreate, PaymentLinkCreate, PaymentMethodCreate, RefundCreate,
)
from orca.core.exceptions import BusinessLogicError, ConfigurationError, ExternalServiceError, PaymentGatewayError
from orca.domain.billing.models import CreditSource, InvoiceStatus, PaymentPlanStatus, ScheduledPaymentStatus
from orca.domain.billing.service import CreditService, PaymentPlanService
from orca.domain.payments.models import (
    PaymentLinkStatus, PaymentMethod, PaymentMethodType, PaymentSource, PaymentStatus, RefundReason, RefundStatus,
    StoredMethodStatus,
)
from orca.domain.payments.recurring import RecurringBillingConfig, RecurringBillingService
from orca.domain.payments.service import PaymentLinkService, PaymentMethodService, PaymentService
from orca.infrastructure.payment_gateway import GatewayResult, StripeGateway, to_cents
from orca.models.mixins import utcnow


def _payment(account, amount: float, method: PaymentMethodType = PaymentMethodType.CASH, **extra) -> PaymentCreate:
    return PaymentCreate(account_id=account.id, patient_id=account.patient_id, amount=amount, method=method, **extra)


@pytest.mark.payments
@pytest.mark.integration
class TestPayments:
    """Taking payments against invoices"""

    @pytest.mark.asyncio
    async def test_cash_payment_settles_invoice(self, db_session, gateway, account, make_invoice) -> None:
        """Test cash completes immediately and pays the invoice"""
        invoice = await make_invoice(account, 150.0)

        payment = await PaymentService(db_session, gateway).create_payment(
            CLINIC_ID, _payment(account, 150.0, invoice_id=invoice.id), STAFF_ID
        )

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.payment_number.startswith("PAY-")
        assert payment.receipt_number.startswith("RCT-")
        assert [a.amount for a in payment.allocations] == [150.0]
        assert invoice.status == InvoiceStatus.PAID
        assert account.current_balance == 0
        assert account.last_payment_amount == 150.0
        assert gateway.intents == []

    @pytest.mark.asyncio
    async def test_overpayment_becomes_credit(self, db_session, gateway, account, make_invoice) -> None:
        """Test money beyond the allocations is kept as account credit"""
        first = await make_invoice(account, 100.0)
        second = await make_invoice(account, 80.0)

        await PaymentService(db_session, gateway).create_payment(
            CLINIC_ID,
            _payment(account, 200.0, allocations=[
                AllocationCreate(invoice_id=first.id, amount=100.0),
                AllocationCreate(invoice_id=second.id, amount=50.0),
            ]),
            STAFF_ID,
        )

        credits = await CreditService(db_session).get_account_credits(CLINIC_ID, account.id)
        assert first.status == InvoiceStatus.PAID
        assert second.status == InvoiceStatus.PARTIAL
        assert [(c.amount, c.source) for c in credits] == [(50.0, CreditSource.OVERPAYMENT)]
        assert account.credit_balance == 50.0
        assert account.current_balance == 30.0

    @pytest.mark.asyncio
    async def test_unallocated_payment_creates_no_credit(self, db_session, gateway, account) -> None:
        """Test a payment with nothing to allocate leaves credit untouched"""
        payment = await PaymentService(db_session, gateway).create_payment(CLINIC_ID, _payment(account, 60.0), STAFF_ID)

        assert payment.status == PaymentStatus.COMPLETED
        assert await CreditService(db_session).get_account_credits(CLINIC_ID, account.id) == []

    @pytest.mark.asyncio
    async def test_allocations_cannot_exceed_amount(self, db_session, gateway, account, make_invoice) -> None:
        """Test over-allocation is refused"""
        invoice = await make_invoice(account, 300.0)

        with pytest.raises(BusinessLogicError) as exc:
            await PaymentService(db_session, gateway).create_payment(
                CLINIC_ID,
                _payment(account, 100.0, allocations=[AllocationCreate(invoice_id=invoice.id, amount=150.0)]),
                STAFF_ID,
            )
        assert exc.value.error_code == "ALLOCATION_EXCEEDS_AMOUNT"

    @pytest.mark.asyncio
    async def test_allocation_cannot_exceed_invoice_balance(self, db_session, gateway, account, make_invoice) -> None:
        """Test money allocated beyond what an invoice owes is refused"""
        invoice = await make_invoice(account, 100.0)

        with pytest.raises(BusinessLogicError) as exc:
            await PaymentService(db_session, gateway).create_payment(
                CLINIC_ID,
                _payment(account, 150.0, allocations=[AllocationCreate(invoice_id=invoice.id, amount=150.0)]),
                STAFF_ID,
            )

        assert exc.value.error_code == "ALLOCATION_EXCEEDS_BALANCE"
        assert exc.value.details == {"invoice_ids": [invoice.id]}
        assert invoice.balance == 100.0

    @pytest.mark.asyncio
    async def test_draft_invoice_is_not_payable(self, db_session, gateway, account, make_invoice) -> None:
        """Test drafts are rejected as allocation targets"""
        draft = await make_invoice(account, 90.0, send=False)

        with pytest.raises(BusinessLogicError) as exc:
            await PaymentService(db_session, gateway).create_payment(
                CLINIC_ID, _payment(account, 90.0, invoice_id=draft.id), STAFF_ID
            )
        assert exc.value.error_code == "INVALID_INVOICES"
        assert exc.value.details == {"invoice_ids": [draft.id]}

    @pytest.mark.asyncio
    async def test_patient_must_match_account(self, db_session, gateway, account) -> None:
        """Test a payment naming another patient is refused"""
        data = PaymentCreate(account_id=account.id, patient_id="someone-else", amount=10.0, method=PaymentMethodType.CASH)

        with pytest.raises(BusinessLogicError) as exc:
            await PaymentService(db_session, gateway).create_payment(CLINIC_ID, data, STAFF_ID)
        assert exc.value.error_code == "PATIENT_MISMATCH"

    @pytest.mark.asyncio
    async def test_card_payment_charges_gateway(self, db_session, gateway, account, make_invoice) -> None:
        """Test card payments go through the gateway with an idempotency key"""
        invoice = await make_invoice(account, 240.0)

        payment = await PaymentService(db_session, gateway).create_payment(
            CLINIC_ID,
            _payment(account, 240.0, PaymentMethodType.CREDIT_CARD, invoice_id=invoice.id, gateway_payment_method_id="pm_card_visa"),
            STAFF_ID,
        )

        assert payment.status == PaymentStatus.COMPLETED
        assert payment.gateway_transaction_id == "pi_1"
        assert gateway.intents[0]["amount"] == 240.0
        assert gateway.intents[0]["payment_method_id"] == "pm_card_visa"
        assert gateway.intents[0]["idempotency_key"] == f"{CLINIC_ID}:{payment.payment_number}"
        assert invoice.status == InvoiceStatus.PAID

    @pytest.mark.asyncio
    async def test_declined_card_is_recorded(self, db_session, gateway, account, make_invoice) -> None:
        """Test a decline persists a FAILED payment and raises"""
        invoice = await make_invoice(account, 99.0)
        gateway.intent_results.append(GatewayResult(
            success=False, status="requires_payment_method", transaction_id="pi_declined",
            error="Your card was declined.", error_code="card_declined",
        ))
        service = PaymentService(db_session, gateway)

        with pytest.raises(PaymentGatewayError) as exc:
            await service.create_payment(
                CLINIC_ID, _payment(account, 99.0, PaymentMethodType.DEBIT_CARD, invoice_id=invoice.id), STAFF_ID
            )

        assert exc.value.error_code == "PAYMENT_FAILED"
        assert exc.value.details["gateway_code"] == "card_declined"
        failed = await service.get_payment(CLINIC_ID, exc.value.details["payment_id"])
        assert failed.status == PaymentStatus.FAILED
        assert failed.failure_reason == "Your card was declined."
        assert invoice.status == InvoiceStatus.SENT

    @pytest.mark.asyncio
    async def test_transfer_waits_for_completion(self, db_session, gateway, account, make_invoice) -> None:
        """Test e-transfers stay pending until confirmed"""
        invoice = await make_invoice(account, 500.0)
        service = PaymentService(db_session, gateway)

        payment = await service.create_payment(
            CLINIC_ID, _payment(account, 500.0, PaymentMethodType.E_TRANSFER, invoice_id=invoice.id), STAFF_ID
        )
        assert payment.status == PaymentStatus.PENDING
        assert invoice.status == InvoiceStatus.SENT

        payment = await service.complete_pending(CLINIC_ID, payment.id, STAFF_ID)
        assert payment.status == PaymentStatus.COMPLETED
        assert invoice.status == InvoiceStatus.PAID

        with pytest.raises(BusinessLogicError):
            await service.complete_pending(CLINIC_ID, payment.id, STAFF_ID)


@pytest.mark.payments
@pytest.mark.integration
class TestRefunds:
    """Refund request, approval and processing"""

    @pytest.mark.asyncio
    async def test_card_refund_flow(self, db_session, gateway, account) -> None:
        """Test a partial card refund goes through the gateway"""
        service = PaymentService(db_session, gateway)
        payment = await service.create_payment(CLINIC_ID, _payment(account, 300.0, PaymentMethodType.CREDIT_CARD), STAFF_ID)

        refund = await service.request_refund(
            CLINIC_ID, RefundCreate(payment_id=payment.id, amount=100.0, reason=RefundReason.DUPLICATE_PAYMENT), STAFF_ID
        )
        assert refund.status == RefundStatus.PENDING
        assert refund.refund_number.startswith("REF-")

        await service.approve_refund(CLINIC_ID, refund.id, STAFF_ID)
        refund = await service.process_refund(CLINIC_ID, refund.id, STAFF_ID)

        assert refund.status == RefundStatus.COMPLETED
        assert refund.gateway_refund_id == "re_1"
        assert gateway.refunds == [{"payment_intent": "pi_1", "amount": 100.0, "reason": "DUPLICATE_PAYMENT"}]
        assert payment.status == PaymentStatus.PARTIALLY_REFUNDED
        assert payment.refunded_amount == 100.0

    @pytest.mark.asyncio
    async def test_in_flight_refunds_count_against_payment(self, db_session, gateway, account) -> None:
        """Test pending refunds reduce what can still be requested"""
        service = PaymentService(db_session, gateway)
        payment = await service.create_payment(CLINIC_ID, _payment(account, 120.0), STAFF_ID)
        await service.request_refund(
            CLINIC_ID, RefundCreate(payment_id=payment.id, amount=80.0, reason=RefundReason.PATIENT_REQUEST), STAFF_ID
        )

        with pytest.raises(BusinessLogicError) as exc:
            await service.request_refund(
                CLINIC_ID, RefundCreate(payment_id=payment.id, amount=50.0, reason=RefundReason.PATIENT_REQUEST), STAFF_ID
            )
        assert exc.value.error_code == "REFUND_EXCEEDS_PAYMENT"
        assert exc.value.details["refundable"] == 40.0

    @pytest.mark.asyncio
    async def test_full_cash_refund(self, db_session, gateway, account) -> None:
        """Test a cash refund completes without the gateway"""
        service = PaymentService(db_session, gateway)
        payment = await service.create_payment(CLINIC_ID, _payment(account, 45.0), STAFF_ID)
        refund = await service.request_refund(
            CLINIC_ID, RefundCreate(payment_id=payment.id, amount=45.0, reason=RefundReason.OVERPAYMENT), STAFF_ID
        )
        await service.approve_refund(CLINIC_ID, refund.id, STAFF_ID)
        await service.process_refund(CLINIC_ID, refund.id, STAFF_ID)

        assert payment.status == PaymentStatus.REFUNDED
        assert gateway.refunds == []

    @pytest.mark.asyncio
    async def test_unapproved_refund_cannot_be_processed(self, db_session, gateway, account) -> None:
        """Test processing requires approval and rejection is final"""
        service = PaymentService(db_session, gateway)
        payment = await service.create_payment(CLINIC_ID, _payment(account, 20.0), STAFF_ID)
        refund = await service.request_refund(
            CLINIC_ID, RefundCreate(payment_id=payment.id, amount=20.0, reason=RefundReason.OTHER), STAFF_ID
        )

        with pytest.raises(BusinessLogicError):
            await service.process_refund(CLINIC_ID, refund.id, STAFF_ID)

        refund = await service.reject_refund(CLINIC_ID, refund.id, "Not eligible", STAFF_ID)
        assert refund.status == RefundStatus.REJECTED
        with pytest.raises(BusinessLogicError):
            await service.approve_refund(CLINIC_ID, refund.id, STAFF_ID)

    @pytest.mark.asyncio
    async def test_gateway_refund_failure(self, db_session, gateway, account) -> None:
        """Test a refund the gateway rejects is marked FAILED"""
        service = PaymentService(db_session, gateway)
        payment = await service.create_payment(CLINIC_ID, _payment(account, 70.0, PaymentMethodType.CREDIT_CARD), STAFF_ID)
        refund = await service.request_refund(
            CLINIC_ID, RefundCreate(payment_id=payment.id, amount=70.0, reason=RefundReason.OTHER), STAFF_ID
        )
        await service.approve_refund(CLINIC_ID, refund.id, STAFF_ID)
        gateway.refund_results.append(GatewayResult(success=False, error="Charge already refunded"))

        with pytest.raises(BusinessLogicError) as exc:
            await service.process_refund(CLINIC_ID, refund.id, STAFF_ID)

        assert exc.value.error_code == "REFUND_FAILED"
        assert refund.status == RefundStatus.FAILED
        assert payment.status == PaymentStatus.COMPLETED


@pytest.mark.payments
@pytest.mark.integration
class TestRecurringBilling:
    """Auto-pay installments"""

    @pytest.fixture
    async def auto_pay_plan(self, db_session, account):
        method = PaymentMethod(
            clinic_id=CLINIC_ID,
            account_id=account.id,
            card_brand="visa",
            last_four="4242",
            gateway_customer_id="cus_test",
            gateway_method_id="pm_card_visa",
        )
        db_session.add(method)
        await db_session.commit()

        service = PaymentPlanService(db_session)
        plan = await service.create_plan(
            CLINIC_ID,
            PaymentPlanCreate(
                account_id=account.id,
                total_amount=600.0,
                number_of_payments=2,
                start_date=date.today() - timedelta(days=1),
                payment_method_id=method.id,
                auto_pay_enabled=True,
            ),
            STAFF_ID,
        )
        return await service.activate_plan(CLINIC_ID, plan.id, STAFF_ID)

    @pytest.mark.asyncio
    async def test_due_installment_is_charged(self, db_session, gateway, auto_pay_plan) -> None:
        """Test a due installment is charged off-session and recorded"""
        summary = await RecurringBillingService(db_session, gateway).process_due_payments(CLINIC_ID)

        assert summary["processed"] == 1
        assert summary["successful"] == 1
        assert summary["failed"] == 0
        assert gateway.intents[0]["off_session"] is True
        assert gateway.intents[0]["payment_method_id"] == "pm_card_visa"
        assert auto_pay_plan.completed_payments == 1
        assert auto_pay_plan.remaining_balance == 300.0

        payment = await PaymentService(db_session, gateway).get_payment(CLINIC_ID, summary["results"][0]["payment_id"])
        assert payment.source == PaymentSource.PAYMENT_PLAN
        assert payment.status == PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_declines_retry_then_default(self, db_session, gateway, auto_pay_plan) -> None:
        """Test a decline is rescheduled and the plan defaults at the attempt limit"""
        declined = dict(success=False, error="Your card was declined.", error_code="card_declined")
        gateway.intent_results.extend([GatewayResult(**declined), GatewayResult(**declined)])
        service = RecurringBillingService(
            db_session, gateway, RecurringBillingConfig(max_retry_attempts=2, retry_delay_days=[3])
        )
        now = utcnow()

        first = await service.process_due_payments(CLINIC_ID, now=now)
        assert first["failed"] == 1
        assert first["results"][0]["retry_in_days"] == 3
        assert auto_pay_plan.status == PaymentPlanStatus.ACTIVE

        second = await service.process_due_payments(CLINIC_ID, now=now + timedelta(days=4))
        schedule = await PaymentPlanService(db_session).get_schedule(CLINIC_ID, auto_pay_plan.id)

        assert second["failed"] == 1
        assert schedule[0].status == ScheduledPaymentStatus.FAILED
        assert schedule[0].attempt_count == 2
        assert auto_pay_plan.status == PaymentPlanStatus.DEFAULTED

    @pytest.mark.asyncio
    async def test_manual_retry_after_failure(self, db_session, gateway, auto_pay_plan) -> None:
        """Test a declined installment can be retried by hand, but only until it is paid"""
        gateway.intent_results.append(GatewayResult(success=False, error="Insufficient funds", error_code="insufficient_funds"))
        service = RecurringBillingService(db_session, gateway, RecurringBillingConfig(max_retry_attempts=2, retry_delay_days=[1]))
        summary = await service.process_due_payments(CLINIC_ID)
        scheduled_id = summary["results"][0]["scheduled_payment_id"]

        result = await service.retry_scheduled_payment(CLINIC_ID, scheduled_id)

        assert result["success"] is True
        schedule = await PaymentPlanService(db_session).get_schedule(CLINIC_ID, auto_pay_plan.id)
        assert schedule[0].status == ScheduledPaymentStatus.COMPLETED
        assert schedule[0].attempt_count == 2

        with pytest.raises(BusinessLogicError) as exc:
            await service.retry_scheduled_payment(CLINIC_ID, scheduled_id)
        assert exc.value.error_code == "ALREADY_COMPLETED"

    @pytest.mark.asyncio
    async def test_retry_refused_once_plan_defaulted(self, db_session, gateway, auto_pay_plan) -> None:
        """Test a defaulted plan's installment is never charged again"""
        gateway.intent_results.append(GatewayResult(success=False, error="Card expired", error_code="expired_card"))
        service = RecurringBillingService(db_session, gateway, RecurringBillingConfig(max_retry_attempts=1))
        summary = await service.process_due_payments(CLINIC_ID)
        assert auto_pay_plan.status == PaymentPlanStatus.DEFAULTED

        with pytest.raises(BusinessLogicError) as exc:
            await service.retry_scheduled_payment(CLINIC_ID, summary["results"][0]["scheduled_payment_id"])

        assert exc.value.error_code == "INVALID_STATUS"
        assert len(gateway.intents) == 1

    @pytest.mark.asyncio
    async def test_unexpected_charge_error_is_rescheduled(self, db_session, gateway, auto_pay_plan) -> None:
        """Test an error raised mid-charge sends the installment back for retry"""
        async def broken_intent(amount, **kwargs):
            raise ValueError("Malformed gateway response")

        gateway.create_payment_intent = broken_intent
        service = RecurringBillingService(
            db_session, gateway, RecurringBillingConfig(max_retry_attempts=3, retry_delay_days=[2])
        )

        summary = await service.process_due_payments(CLINIC_ID)
        schedule = await PaymentPlanService(db_session).get_schedule(CLINIC_ID, auto_pay_plan.id)

        assert summary["failed"] == 1
        assert summary["results"][0]["retry_in_days"] == 2
        assert schedule[0].status == ScheduledPaymentStatus.PENDING
        assert schedule[0].attempt_count == 1
        assert schedule[0].failure_reason.startswith("Charge error")

    @pytest.mark.asyncio
    async def test_unconfigured_gateway_is_not_charged(self, db_session, auto_pay_plan) -> None:
        """Test a missing gateway key fails the installment before it is marked processing"""
        stripe = StripeGateway()
        stripe.api_key = None

        summary = await RecurringBillingService(db_session, stripe).process_due_payments(CLINIC_ID)
        schedule = await PaymentPlanService(db_session).get_schedule(CLINIC_ID, auto_pay_plan.id)

        assert summary["failed"] == 1
        assert schedule[0].status == ScheduledPaymentStatus.FAILED
        assert schedule[0].attempt_count == 0
        assert schedule[0].failure_reason == "Payment gateway is not configured"

    @pytest.mark.asyncio
    async def test_processing_intent_is_retried(self, db_session, gateway, auto_pay_plan) -> None:
        """Test an intent that has not settled is not booked as paid"""
        gateway.intent_results.append(GatewayResult(success=True, status="processing", transaction_id="pi_slow"))
        service = RecurringBillingService(db_session, gateway, RecurringBillingConfig(max_retry_attempts=3))

        summary = await service.process_due_payments(CLINIC_ID)
        schedule = await PaymentPlanService(db_session).get_schedule(CLINIC_ID, auto_pay_plan.id)

        assert summary["successful"] == 0
        assert schedule[0].status == ScheduledPaymentStatus.PENDING
        assert auto_pay_plan.completed_payments == 0

    @pytest.mark.asyncio
    async def test_skip_installment(self, db_session, gateway, auto_pay_plan) -> None:
        """Test a skipped installment is never charged and the next date moves on"""
        service = RecurringBillingService(db_session, gateway)
        schedule = await PaymentPlanService(db_session).get_schedule(CLINIC_ID, auto_pay_plan.id)

        await service.skip_scheduled_payment(CLINIC_ID, schedule[0].id, "Family travelling")

        assert schedule[0].status == ScheduledPaymentStatus.SKIPPED
        assert auto_pay_plan.next_payment_date == schedule[1].scheduled_date.date()
        assert (await service.process_due_payments(CLINIC_ID))["processed"] == 0
        with pytest.raises(BusinessLogicError) as exc:
            await service.skip_scheduled_payment(CLINIC_ID, schedule[0].id, "Again")
        assert exc.value.error_code == "INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_payments_needing_attention(self, db_session, gateway, auto_pay_plan) -> None:
        """Test an unpaid installment from yesterday shows as overdue"""
        noon = datetime.combine(date.today(), time(12))

        attention = await RecurringBillingService(db_session, gateway).get_payments_needing_attention(CLINIC_ID, now=noon)

        assert attention["counts"] == {"failed": 0, "overdue": 1, "due_today": 0, "upcoming": 0}
        assert attention["overdue"][0].installment_number == 1


@pytest.mark.payments
@pytest.mark.integration
class TestPaymentMethodsAndLinks:
    """Stored cards and pay-by-link"""

    @pytest.mark.asyncio
    async def test_add_card_creates_gateway_customer(self, db_session, gateway, account) -> None:
        """Test the first card registers the account with the gateway"""
        method = await PaymentMethodService(db_session, gateway).add_method(
            CLINIC_ID,
            PaymentMethodCreate(account_id=account.id, card_brand="visa", last_four="4242",
                                gateway_method_id="pm_card_visa", is_default=True),
            STAFF_ID,
        )

        assert method.status == StoredMethodStatus.ACTIVE
        assert method.gateway_customer_id == "cus_test"
        assert account.gateway_customer_id == "cus_test"

    @pytest.mark.asyncio
    async def test_default_and_removal(self, db_session, gateway, account) -> None:
        """Test a new default replaces the old one and removal turns off autopay"""
        service = PaymentMethodService(db_session, gateway)
        first = await service.add_method(
            CLINIC_ID, PaymentMethodCreate(account_id=account.id, last_four="4242", is_default=True), STAFF_ID
        )
        second = await service.add_method(
            CLINIC_ID, PaymentMethodCreate(account_id=account.id, last_four="5555", is_default=True), STAFF_ID
        )
        assert first.is_default is False
        assert second.is_default is True

        plan = await PaymentPlanService(db_session).create_plan(
            CLINIC_ID,
            PaymentPlanCreate(account_id=account.id, total_amount=1200.0, number_of_payments=12,
                              start_date=date.today(), payment_method_id=second.id, auto_pay_enabled=True),
            STAFF_ID,
        )

        await service.remove_method(CLINIC_ID, second.id, STAFF_ID)

        assert second.status == StoredMethodStatus.REMOVED
        assert plan.auto_pay_enabled is False

    @pytest.mark.asyncio
    async def test_link_is_closed_by_its_payment(self, db_session, gateway, account, make_invoice) -> None:
        """Test paying through a link marks it paid"""
        invoice = await make_invoice(account, 75.0)
        links = PaymentLinkService(db_session)
        link = await links.create_link(
            CLINIC_ID, PaymentLinkCreate(account_id=account.id, amount=75.0, invoice_id=invoice.id), STAFF_ID
        )
        assert len(link.code) == 12
        assert (await links.get_by_code(link.code)).id == link.id

        payment = await PaymentService(db_session, gateway).create_payment(
            CLINIC_ID,
            _payment(account, 75.0, invoice_id=invoice.id, source=PaymentSource.PAYMENT_LINK, payment_link_code=link.code),
            None,
        )

        assert link.status == PaymentLinkStatus.PAID
        assert link.payment_id == payment.id
        with pytest.raises(BusinessLogicError) as exc:
            await links.cancel_link(CLINIC_ID, link.id, STAFF_ID)
        assert exc.value.error_code == "INVALID_STATUS"

    @pytest.mark.asyncio
    async def test_link_must_match_payment(self, db_session, gateway, account) -> None:
        """Test a link only pays its own amount"""
        link = await PaymentLinkService(db_session).create_link(
            CLINIC_ID, PaymentLinkCreate(account_id=account.id, amount=75.0), STAFF_ID
        )

        with pytest.raises(BusinessLogicError) as exc:
            await PaymentService(db_session, gateway).create_payment(
                CLINIC_ID, _payment(account, 20.0, source=PaymentSource.PAYMENT_LINK, payment_link_code=link.code), None
            )

        assert exc.value.error_code == "LINK_MISMATCH"
        assert link.status == PaymentLinkStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_expire_links(self, db_session, account) -> None:
        """Test active links past their expiry are closed"""
        links = PaymentLinkService(db_session)
        link = await links.create_link(
            CLINIC_ID, PaymentLinkCreate(account_id=account.id, amount=50.0, expires_in_days=1), STAFF_ID
        )

        assert await links.expire_links(utcnow() + timedelta(days=2)) == {"expired": 1}
        assert link.status == PaymentLinkStatus.EXPIRED


@pytest.mark.payments
@pytest.mark.unit
class TestStripeGateway:
    """HTTP behaviour of the Stripe client"""

    @pytest.mark.asyncio
    async def test_payment_intent_is_form_encoded_in_cents(self) -> None:
        """Test amounts are sent in cents with the idempotency key"""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"id": "pi_123", "status": "succeeded"})

        gateway = StripeGateway(api_key="sk_test_key", transport=httpx.MockTransport(handler))
        result = await gateway.create_payment_intent(12.34, payment_method_id="pm_1", idempotency_key="k-1")

        form = parse_qs(seen[0].content.decode())
        assert result.success
        assert result.transaction_id == "pi_123"
        assert form["amount"] == ["1234"]
        assert form["confirm"] == ["true"]
        assert seen[0].headers["Idempotency-Key"] == "k-1"
        assert seen[0].headers["Authorization"] == "Bearer sk_test_key"

    @pytest.mark.asyncio
    async def test_card_error_is_a_failed_result(self) -> None:
        """Test a 402 comes back as a decline, not an exception"""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(402, json={"error": {
                "message": "Your card has insufficient funds.",
                "code": "card_declined",
                "decline_code": "insufficient_funds",
                "payment_intent": {"id": "pi_9", "status": "requires_payment_method"},
            }})

        gateway = StripeGateway(api_key="sk_test_key", transport=httpx.MockTransport(handler))
        result = await gateway.create_payment_intent(50.0)

        assert not result.success
        assert result.error_code == "insufficient_funds"
        assert result.transaction_id == "pi_9"

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self) -> None:
        """Test 5xx responses are retried until success"""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"id": "re_1", "status": "succeeded"})

        gateway = StripeGateway(
            api_key="sk_test_key", max_attempts=3, backoff_multiplier=0, transport=httpx.MockTransport(handler)
        )
        result = await gateway.create_refund("pi_1", 5.0, "DUPLICATE_PAYMENT")

        assert result.success
        assert len(calls) == 3
        assert parse_qs(calls[-1].content.decode())["reason"] == ["duplicate"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise(self) -> None:
        """Test the gateway reports unavailability after the last attempt"""
        gateway = StripeGateway(
            api_key="sk_test_key", max_attempts=2, backoff_multiplier=0,
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        with pytest.raises(ExternalServiceError) as exc:
            await gateway.create_payment_intent(10.0)
        assert exc.value.details["service_name"] == "stripe"

    @pytest.mark.asyncio
    async def test_missing_key(self) -> None:
        """Test an unconfigured gateway refuses to send"""
        gateway = StripeGateway(api_key="unset")
        gateway.api_key = None

        with pytest.raises(ConfigurationError) as exc:
            await gateway.create_customer("a@example.com", "A")
        assert exc.value.error_code == "GATEWAY_NOT_CONFIGURED"

    def test_to_cents(self) -> None:
        """Test cent conversion rounds rather than truncates"""
        assert to_cents(19.99) == 1999
        assert to_cents(0.1 + 0.2) == 30


@pytest.mark.payments
@pytest.mark.integration
class TestPaymentRoutes:
    """HTTP surface for payments"""

    @pytest.mark.asyncio
    async def test_record_payment(self, client: AsyncClient, front_desk_headers: Dict[str, str], account, make_invoice) -> None:
        """Test front desk can take a cash payment"""
        invoice = await make_invoice(account, 65.0)
        payload = _payment(account, 65.0, invoice_id=invoice.id).model_dump(mode="json")

        response = await client.post("/api/v1/payments", json=payload, headers=front_desk_headers)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "COMPLETED"
        assert body["allocations"][0]["invoice_id"] == invoice.id

    @pytest.mark.asyncio
    async def test_decline_returns_400(self, client: AsyncClient, front_desk_headers: Dict[str, str], gateway, account) -> None:
        """Test a declined card maps to PAYMENT_FAILED"""
        gateway.intent_results.append(GatewayResult(success=False, error="Do not honor", error_code="do_not_honor"))
        payload = _payment(account, 30.0, PaymentMethodType.CREDIT_CARD).model_dump(mode="json")

        response = await client.post("/api/v1/payments", json=payload, headers=front_desk_headers)

        assert response.status_code == 400
        assert response.json()["error_code"] == "PAYMENT_FAILED"

    @pytest.mark.asyncio
    async def test_front_desk_cannot_refund(self, client: AsyncClient, front_desk_headers: Dict[str, str]) -> None:
        """Test refunds need the refund permission"""
        response = await client.post(
            "/api/v1/payments/refunds",
            json={"payment_id": "p", "amount": 10.0, "reason": "OTHER"},
            headers=front_desk_headers,
        )
        assert response.status_code == 403
