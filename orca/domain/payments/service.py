from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Tuple
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orca.api.v1.payments.schemas import (
    PaymentCreate, RefundCreate, PaymentMethodCreate, PaymentMethodUpdate, PaymentLinkCreate,
)
from orca.core.config import settings
from orca.core.exceptions import NotFoundError, BusinessLogicError, PaymentGatewayError
from orca.domain.billing.models import (
    PatientAccount, Invoice, PaymentPlan, CreditSource, PAYABLE_INVOICE_STATUSES,
)
from orca.domain.billing.repository import AccountRepository, InvoiceRepository
from orca.domain.billing.service import CreditService, apply_amount_to_invoice, update_account_balance
from orca.domain.billing.utils import round_currency, generate_payment_link_code
from orca.domain.patients.service import PatientService
from orca.domain.payments.models import (
    Payment, PaymentAllocation, PaymentStatus, PaymentGatewayName, Refund,
    RefundStatus, PaymentMethod, StoredMethodStatus, PaymentLink, PaymentLinkStatus, CARD_METHODS,
    IMMEDIATE_METHODS, REFUNDABLE_PAYMENT_STATUSES,
)
from orca.domain.payments.repository import PaymentRepository, PaymentMethodRepository, PaymentLinkRepository
from orca.infrastructure.payment_gateway import StripeGateway, GatewayResult, get_payment_gateway
from orca.models.mixins import utcnow
from orca.models.numbering import generate_number

logger = logging.getLogger(__name__)

IN_FLIGHT_REFUND_STATUSES = (
    RefundStatus.PENDING, RefundStatus.APPROVED, RefundStatus.PROCESSING, RefundStatus.COMPLETED,
)


def status_from_intent(result: GatewayResult) -> PaymentStatus:
    if result.status == "succeeded":
        return PaymentStatus.COMPLETED
    if result.status == "processing":
        return PaymentStatus.PROCESSING
    return PaymentStatus.PENDING


class PaymentService:
    """Takes money in: card charges through the gateway, cash and cheques at the desk, bank transfers"""

    def __init__(self, db: AsyncSession, gateway: Optional[StripeGateway] = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.repo = PaymentRepository(db)
        self.accounts = AccountRepository(db)
        self.invoices = InvoiceRepository(db)
        self.methods = PaymentMethodRepository(db)
        self.links = PaymentLinkRepository(db)

    async def _get_account(self, clinic_id: str, account_id: str) -> PatientAccount:
        account = await self.accounts.get_by_id(clinic_id, account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
        return account

    async def _resolve_allocations(
        self, clinic_id: str, account: PatientAccount, data: PaymentCreate
    ) -> List[Tuple[Invoice, float]]:
        requested = [(a.invoice_id, a.amount) for a in data.allocations]
        invoice_ids = [invoice_id for invoice_id, _ in requested]
        if not requested and data.invoice_id:
            invoice_ids = [data.invoice_id]

        invoices = {invoice.id: invoice for invoice in await self.invoices.get_many(clinic_id, invoice_ids)}
        invalid = [
            invoice_id for invoice_id in invoice_ids
            if invoice_id not in invoices
            or invoices[invoice_id].account_id != account.id
            or invoices[invoice_id].status not in PAYABLE_INVOICE_STATUSES
        ]
        if invalid:
            raise BusinessLogicError(
                "Invoices are not payable on this account",
                details={"invoice_ids": invalid},
                error_code="INVALID_INVOICES",
            )

        if not requested and data.invoice_id:
            invoice = invoices[data.invoice_id]
            return [(invoice, round_currency(min(data.amount, invoice.balance)))]

        allocated = round_currency(sum(amount for _, amount in requested))
        if allocated > round_currency(data.amount):
            raise BusinessLogicError(
                "Allocations exceed the payment amount",
                details={"allocated": allocated, "amount": data.amount},
                error_code="ALLOCATION_EXCEEDS_AMOUNT",
            )
        over_balance = [
            invoice_id for invoice_id, amount in requested
            if round_currency(amount) > round_currency(invoices[invoice_id].balance or 0)
        ]
        if over_balance:
            raise BusinessLogicError(
                "Allocations exceed the invoice balance",
                details={"invoice_ids": over_balance},
                error_code="ALLOCATION_EXCEEDS_BALANCE",
            )
        return [(invoices[invoice_id], round_currency(amount)) for invoice_id, amount in requested]

    async def _check_link(self, code: str, account: PatientAccount, amount: float) -> PaymentLink:
        link = await self.links.get_by_code(code)
        if not link or link.clinic_id != account.clinic_id:
            raise NotFoundError("Payment link not found", error_code="LINK_NOT_FOUND")
        if link.status != PaymentLinkStatus.ACTIVE or link.expires_at < utcnow():
            raise BusinessLogicError("Payment link is no longer active", error_code="LINK_INACTIVE")
        if link.account_id != account.id or round_currency(amount) != round_currency(link.amount):
            raise BusinessLogicError(
                "Payment does not match the link",
                details={"link_amount": link.amount, "amount": amount},
                error_code="LINK_MISMATCH",
            )
        return link

    async def create_payment(self, clinic_id: str, data: PaymentCreate, created_by: Optional[str]) -> Payment:
        account = await self._get_account(clinic_id, data.account_id)
        if account.patient_id != data.patient_id:
            raise BusinessLogicError("Patient does not match the account", error_code="PATIENT_MISMATCH")
        allocations = await self._resolve_allocations(clinic_id, account, data)
        if data.payment_link_code:
            await self._check_link(data.payment_link_code, account, data.amount)

        payment = Payment(
            clinic_id=clinic_id,
            payment_number=await generate_number(self.db, Payment.payment_number, clinic_id, "PAY"),
            account_id=account.id,
            patient_id=data.patient_id,
            invoice_id=data.invoice_id,
            payment_plan_id=data.payment_plan_id,
            payment_method_id=data.payment_method_id,
            amount=round_currency(data.amount),
            payment_type=data.payment_type,
            method=data.method,
            source=data.source,
            check_number=data.check_number,
            reference_number=data.reference_number,
            payment_link_code=data.payment_link_code,
            notes=data.notes,
            payment_metadata={
                **(data.metadata or {}),
                "requested_allocations": [
                    {"invoice_id": invoice.id, "amount": amount} for invoice, amount in allocations
                ],
            },
            created_by=created_by,
            allocations=[],
        )

        if data.method in CARD_METHODS:
            await self._charge_card(payment, account, data)
        elif data.method in IMMEDIATE_METHODS:
            payment.status = PaymentStatus.COMPLETED
            payment.gateway = PaymentGatewayName.MANUAL
        else:
            payment.status = PaymentStatus.PENDING
            payment.gateway = PaymentGatewayName.MANUAL

        self.db.add(payment)
        await self.db.flush()
        if payment.status == PaymentStatus.COMPLETED:
            await self._apply_completed_payment(payment, allocations)

        await self.db.commit()
        logger.info(f"Payment {payment.payment_number} of {payment.amount} recorded as {payment.status.value}")
        return payment

    async def _charge_card(self, payment: Payment, account: PatientAccount, data: PaymentCreate) -> None:
        customer_id = account.gateway_customer_id
        method_id = data.gateway_payment_method_id
        if data.payment_method_id:
            stored = await self.methods.get_by_id(payment.clinic_id, data.payment_method_id)
            if not stored or stored.account_id != account.id or stored.status != StoredMethodStatus.ACTIVE:
                raise BusinessLogicError(
                    "Payment method not found or inactive for this account", error_code="PAYMENT_METHOD_NOT_FOUND"
                )
            customer_id = stored.gateway_customer_id or customer_id
            method_id = stored.gateway_method_id

        result = await self.gateway.create_payment_intent(
            payment.amount,
            customer_id=customer_id,
            payment_method_id=method_id,
            description=f"Payment {payment.payment_number}",
            metadata={"payment_number": payment.payment_number, "clinic_id": payment.clinic_id},
            idempotency_key=f"{payment.clinic_id}:{payment.payment_number}",
        )
        payment.gateway = PaymentGatewayName.STRIPE
        payment.gateway_transaction_id = result.transaction_id
        payment.gateway_status = result.status

        if not result.success:
            payment.status = PaymentStatus.FAILED
            payment.failure_reason = result.error
            self.db.add(payment)
            await self.db.commit()
            logger.warning(f"Card payment {payment.payment_number} declined: {result.error}")
            raise PaymentGatewayError(
                result.error or "Card payment failed",
                details={"payment_id": payment.id, "gateway_code": result.error_code},
            )
        payment.status = status_from_intent(result)

    async def _apply_completed_payment(self, payment: Payment, allocations: List[Tuple[Invoice, float]]) -> None:
        allocated = 0.0
        for invoice, amount in allocations:
            payment.allocations.append(PaymentAllocation(invoice_id=invoice.id, amount=amount))
            apply_amount_to_invoice(invoice, amount)
            allocated = round_currency(allocated + amount)

        overpayment = round_currency(payment.amount - allocated)
        if allocations and overpayment > 0:
            await CreditService(self.db).add_credit(
                payment.clinic_id, payment.account_id, overpayment, CreditSource.OVERPAYMENT,
                f"Overpayment on {payment.payment_number}", payment.created_by, source_payment_id=payment.id,
            )

        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = utcnow()
        payment.receipt_number = await generate_number(self.db, Payment.receipt_number, payment.clinic_id, "RCT")

        account = await self.db.get(PatientAccount, payment.account_id)
        account.last_payment_date = payment.completed_at
        account.last_payment_amount = payment.amount
        await update_account_balance(self.db, payment.account_id)

        if payment.payment_link_code:
            await PaymentLinkService(self.db).mark_paid(payment.payment_link_code, payment.id)

    async def record_completed_payment(self, payment: Payment, invoice_allocations: List[Tuple[Invoice, float]]) -> Payment:
        """Persist an already-settled payment (plan installment, insurance remittance); the caller commits"""
        payment.payment_number = await generate_number(self.db, Payment.payment_number, payment.clinic_id, "PAY")
        payment.allocations = []
        self.db.add(payment)
        await self.db.flush()
        await self._apply_completed_payment(payment, invoice_allocations)
        return payment

    async def complete_pending(self, clinic_id: str, payment_id: str, user_id: str) -> Payment:
        payment = await self.get_payment(clinic_id, payment_id)
        if payment.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
            raise BusinessLogicError(
                f"Payment is {payment.status.value}", error_code="INVALID_STATUS"
            )
        if payment.method in CARD_METHODS:
            raise BusinessLogicError(
                "Card payments are settled by the gateway", error_code="INVALID_STATUS"
            )

        requested = (payment.payment_metadata or {}).get("requested_allocations", [])
        invoices = {
            invoice.id: invoice
            for invoice in await self.invoices.get_many(clinic_id, [a["invoice_id"] for a in requested])
        }
        # Balances may have moved since the payment was recorded; any excess becomes credit
        allocations = [
            (invoices[a["invoice_id"]], round_currency(min(a["amount"], invoices[a["invoice_id"]].balance or 0)))
            for a in requested
            if a["invoice_id"] in invoices and invoices[a["invoice_id"]].status in PAYABLE_INVOICE_STATUSES
        ]
        payment.updated_by = user_id
        await self._apply_completed_payment(payment, allocations)
        await self.db.commit()
        return payment

    async def get_payment(self, clinic_id: str, payment_id: str) -> Payment:
        payment = await self.repo.get_by_id(clinic_id, payment_id)
        if not payment:
            raise NotFoundError("Payment not found", error_code="PAYMENT_NOT_FOUND")
        return payment

    async def get_payments(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    # Refunds

    async def request_refund(self, clinic_id: str, data: RefundCreate, requested_by: str) -> Refund:
        payment = await self.get_payment(clinic_id, data.payment_id)
        if payment.status not in REFUNDABLE_PAYMENT_STATUSES:
            raise BusinessLogicError(
                f"Payment in {payment.status.value} status cannot be refunded", error_code="INVALID_STATUS"
            )
        committed = await self.repo.total_refunded(payment.id, IN_FLIGHT_REFUND_STATUSES)
        refundable = round_currency(payment.amount - committed)
        if round_currency(data.amount) > refundable:
            raise BusinessLogicError(
                "Refund exceeds the refundable amount",
                details={"refundable": refundable, "requested": data.amount},
                error_code="REFUND_EXCEEDS_PAYMENT",
            )

        refund = Refund(
            clinic_id=clinic_id,
            refund_number=await generate_number(self.db, Refund.refund_number, clinic_id, "REF"),
            payment_id=payment.id,
            account_id=payment.account_id,
            amount=round_currency(data.amount),
            reason=data.reason,
            reason_details=data.reason_details,
            status=RefundStatus.PENDING,
            requested_by=requested_by,
            created_by=requested_by,
        )
        self.db.add(refund)
        await self.db.commit()
        return refund

    async def get_refund(self, clinic_id: str, refund_id: str) -> Refund:
        refund = await self.repo.get_refund(clinic_id, refund_id)
        if not refund:
            raise NotFoundError("Refund not found", error_code="REFUND_NOT_FOUND")
        return refund

    async def get_refunds(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_refunds(clinic_id, **filters)

    def _require_refund_status(self, refund: Refund, *allowed: RefundStatus) -> None:
        if refund.status not in allowed:
            raise BusinessLogicError(f"Refund is {refund.status.value}", error_code="INVALID_STATUS")

    async def approve_refund(self, clinic_id: str, refund_id: str, approved_by: str) -> Refund:
        refund = await self.get_refund(clinic_id, refund_id)
        self._require_refund_status(refund, RefundStatus.PENDING)
        refund.status = RefundStatus.APPROVED
        refund.approved_by = approved_by
        refund.approved_at = utcnow()
        await self.db.commit()
        return refund

    async def reject_refund(self, clinic_id: str, refund_id: str, reason: str, rejected_by: str) -> Refund:
        refund = await self.get_refund(clinic_id, refund_id)
        self._require_refund_status(refund, RefundStatus.PENDING)
        refund.status = RefundStatus.REJECTED
        refund.rejected_by = rejected_by
        refund.rejected_at = utcnow()
        refund.rejection_reason = reason
        await self.db.commit()
        return refund

    async def cancel_refund(self, clinic_id: str, refund_id: str, user_id: str) -> Refund:
        refund = await self.get_refund(clinic_id, refund_id)
        self._require_refund_status(refund, RefundStatus.PENDING, RefundStatus.APPROVED)
        refund.status = RefundStatus.CANCELLED
        refund.updated_by = user_id
        await self.db.commit()
        return refund

    async def process_refund(self, clinic_id: str, refund_id: str, user_id: str) -> Refund:
        refund = await self.get_refund(clinic_id, refund_id)
        self._require_refund_status(refund, RefundStatus.APPROVED)
        payment = await self.get_payment(clinic_id, refund.payment_id)

        if payment.method in CARD_METHODS and payment.gateway_transaction_id:
            result = await self.gateway.create_refund(
                payment.gateway_transaction_id, refund.amount, refund.reason.value
            )
            if not result.success:
                refund.status = RefundStatus.FAILED
                refund.failure_reason = result.error
                await self.db.commit()
                logger.warning(f"Refund {refund.refund_number} failed at gateway: {result.error}")
                raise BusinessLogicError(
                    result.error or "Refund failed", details={"refund_id": refund.id}, error_code="REFUND_FAILED"
                )
            refund.gateway_refund_id = result.transaction_id

        refund.status = RefundStatus.COMPLETED
        refund.processed_at = utcnow()
        refund.updated_by = user_id

        payment.refunded_amount = round_currency((payment.refunded_amount or 0) + refund.amount)
        if payment.refunded_amount >= round_currency(payment.amount):
            payment.status = PaymentStatus.REFUNDED
        else:
            payment.status = PaymentStatus.PARTIALLY_REFUNDED
        await self.db.commit()
        logger.info(f"Refund {refund.refund_number} of {refund.amount} completed on {payment.payment_number}")
        return refund


class PaymentMethodService:
    """Stored card and bank references; the gateway holds the actual instrument"""

    def __init__(self, db: AsyncSession, gateway: Optional[StripeGateway] = None):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.repo = PaymentMethodRepository(db)
        self.accounts = AccountRepository(db)

    async def _clear_default(self, clinic_id: str, account_id: str, keep_id: Optional[str] = None) -> None:
        for method in await self.repo.get_for_account(clinic_id, account_id):
            if method.id != keep_id:
                method.is_default = False

    async def _ensure_customer(self, clinic_id: str, account: PatientAccount) -> str:
        if account.gateway_customer_id:
            return account.gateway_customer_id
        patient = await PatientService(self.db).get_patient(clinic_id, account.patient_id)
        result = await self.gateway.create_customer(
            patient.email, patient.full_name, {"account_number": account.account_number, "clinic_id": clinic_id}
        )
        if not result.success:
            raise PaymentGatewayError(result.error or "Could not create gateway customer")
        account.gateway_customer_id = result.transaction_id
        return account.gateway_customer_id

    async def add_method(self, clinic_id: str, data: PaymentMethodCreate, created_by: str) -> PaymentMethod:
        account = await self.accounts.get_by_id(clinic_id, data.account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")

        values = data.model_dump()
        if data.gateway_method_id and not data.gateway_customer_id:
            customer_id = await self._ensure_customer(clinic_id, account)
            result = await self.gateway.attach_payment_method(customer_id, data.gateway_method_id)
            if not result.success:
                raise PaymentGatewayError(result.error or "Could not attach payment method")
            values["gateway_customer_id"] = customer_id

        method = PaymentMethod(clinic_id=clinic_id, status=StoredMethodStatus.ACTIVE, created_by=created_by, **values)
        self.db.add(method)
        await self.db.flush()
        if method.is_default:
            await self._clear_default(clinic_id, account.id, keep_id=method.id)
        await self.db.commit()
        return method

    async def get_method(self, clinic_id: str, method_id: str) -> PaymentMethod:
        method = await self.repo.get_by_id(clinic_id, method_id)
        if not method:
            raise NotFoundError("Payment method not found", error_code="PAYMENT_METHOD_NOT_FOUND")
        return method

    async def get_account_methods(self, clinic_id: str, account_id: str) -> List[PaymentMethod]:
        return await self.repo.get_for_account(clinic_id, account_id)

    async def update_method(self, clinic_id: str, method_id: str, data: PaymentMethodUpdate, updated_by: str) -> PaymentMethod:
        method = await self.get_method(clinic_id, method_id)
        if method.status == StoredMethodStatus.REMOVED:
            raise BusinessLogicError("Payment method has been removed", error_code="INVALID_STATUS")
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(method, field, value)
        if data.is_default:
            await self._clear_default(clinic_id, method.account_id, keep_id=method.id)
        method.updated_by = updated_by
        await self.db.commit()
        return method

    async def remove_method(self, clinic_id: str, method_id: str, removed_by: str) -> PaymentMethod:
        method = await self.get_method(clinic_id, method_id)
        method.status = StoredMethodStatus.REMOVED
        method.is_default = False
        method.removed_at = utcnow()
        method.updated_by = removed_by

        plans = await self.db.execute(select(PaymentPlan).where(PaymentPlan.payment_method_id == method.id))
        for plan in plans.scalars().all():
            plan.auto_pay_enabled = False
            logger.info(f"Autopay disabled on plan {plan.plan_number}: payment method removed")
        await self.db.commit()
        return method


class PaymentLinkService:
    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = PaymentLinkRepository(db)
        self.accounts = AccountRepository(db)
        self.invoices = InvoiceRepository(db)

    async def _unique_code(self) -> str:
        code = generate_payment_link_code()
        while await self.repo.code_exists(code):
            code = generate_payment_link_code()
        return code

    async def create_link(self, clinic_id: str, data: PaymentLinkCreate, created_by: str) -> PaymentLink:
        account = await self.accounts.get_by_id(clinic_id, data.account_id)
        if not account:
            raise NotFoundError("Account not found", error_code="ACCOUNT_NOT_FOUND")
        if data.invoice_id:
            invoice = await self.invoices.get_by_id(clinic_id, data.invoice_id)
            if not invoice or invoice.account_id != account.id:
                raise NotFoundError("Invoice not found on this account", error_code="INVOICE_NOT_FOUND")

        days = data.expires_in_days or settings.PAYMENT_LINK_EXPIRY_DAYS
        link = PaymentLink(
            clinic_id=clinic_id,
            code=await self._unique_code(),
            account_id=account.id,
            invoice_id=data.invoice_id,
            amount=round_currency(data.amount),
            description=data.description,
            status=PaymentLinkStatus.ACTIVE,
            expires_at=utcnow() + timedelta(days=days),
            created_by=created_by,
        )
        self.db.add(link)
        await self.db.commit()
        return link

    async def get_link(self, clinic_id: str, link_id: str) -> PaymentLink:
        link = await self.repo.get_by_id(clinic_id, link_id)
        if not link:
            raise NotFoundError("Payment link not found", error_code="LINK_NOT_FOUND")
        return link

    async def get_by_code(self, code: str) -> PaymentLink:
        link = await self.repo.get_by_code(code)
        if not link:
            raise NotFoundError("Payment link not found", error_code="LINK_NOT_FOUND")
        return link

    async def get_links(self, clinic_id: str, **filters) -> Dict[str, Any]:
        return await self.repo.get_all(clinic_id, **filters)

    async def cancel_link(self, clinic_id: str, link_id: str, user_id: str) -> PaymentLink:
        link = await self.get_link(clinic_id, link_id)
        if link.status != PaymentLinkStatus.ACTIVE:
            raise BusinessLogicError(f"Payment link is {link.status.value}", error_code="INVALID_STATUS")
        link.status = PaymentLinkStatus.CANCELLED
        link.cancelled_at = utcnow()
        link.updated_by = user_id
        await self.db.commit()
        return link

    async def mark_paid(self, code: str, payment_id: str) -> Optional[PaymentLink]:
        """Close the link a payment came through; the caller commits"""
        link = await self.repo.get_by_code(code)
        if link is None or link.status != PaymentLinkStatus.ACTIVE:
            return None
        link.status = PaymentLinkStatus.PAID
        link.paid_at = utcnow()
        link.payment_id = payment_id
        return link

    async def expire_links(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        links = await self.repo.get_expired_active(now or utcnow())
        for link in links:
            link.status = PaymentLinkStatus.EXPIRED
        await self.db.commit()
        return {"expired": len(links)}
