"""Recurring billing for payment plans.

Each plan owns a schedule of installments. A daily job charges the due
ones against the plan's stored card; declines are retried on a widening
delay until the attempt limit, at which point the plan defaults.
"""
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Optional, Dict, Any, List
import logging

from sqlalchemy import select, distinct
from sqlalchemy.ext.asyncio import AsyncSession

from orca.core.config import settings
from orca.core.exceptions import NotFoundError, BusinessLogicError, ExternalServiceError
from orca.domain.billing.models import (
    PatientAccount, PaymentPlan, PaymentPlanStatus, ScheduledPayment, ScheduledPaymentStatus,
)
from orca.domain.billing.service import create_plan_schedule
from orca.domain.billing.utils import round_currency
from orca.domain.payments.models import (
    Payment, PaymentMethod, PaymentMethodType, PaymentSource, PaymentGatewayName, PaymentStatus,
    StoredMethodStatus,
)
from orca.domain.payments.service import PaymentService, status_from_intent
from orca.infrastructure.payment_gateway import StripeGateway, get_payment_gateway
from orca.models.mixins import utcnow

logger = logging.getLogger(__name__)

UPCOMING_WINDOW_DAYS = 7


@dataclass
class RecurringBillingConfig:
    max_retry_attempts: int = field(default_factory=lambda: settings.RECURRING_MAX_RETRY_ATTEMPTS)
    retry_delay_days: List[int] = field(default_factory=lambda: list(settings.RECURRING_RETRY_DELAY_DAYS))

    def delay_for_attempt(self, attempt_count: int) -> int:
        index = attempt_count - 1
        if 0 <= index < len(self.retry_delay_days):
            return self.retry_delay_days[index]
        return 7


class RecurringBillingService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[StripeGateway] = None,
        config: Optional[RecurringBillingConfig] = None,
    ):
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.config = config or RecurringBillingConfig()

    async def generate_scheduled_payments(self, plan: PaymentPlan) -> List[ScheduledPayment]:
        payments = await create_plan_schedule(self.db, plan)
        await self.db.commit()
        return payments

    async def _get_scheduled(self, scheduled_id: str, clinic_id: Optional[str] = None) -> ScheduledPayment:
        query = select(ScheduledPayment).where(ScheduledPayment.id == scheduled_id)
        if clinic_id:
            query = query.where(ScheduledPayment.clinic_id == clinic_id)
        scheduled = (await self.db.execute(query)).scalar_one_or_none()
        if not scheduled:
            raise NotFoundError("Scheduled payment not found", error_code="SCHEDULED_PAYMENT_NOT_FOUND")
        return scheduled

    async def process_due_payments(self, clinic_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Charge every PENDING installment due by ``now`` on an ACTIVE plan, oldest first"""
        now = now or utcnow()
        result = await self.db.execute(
            select(ScheduledPayment.id)
            .join(PaymentPlan, PaymentPlan.id == ScheduledPayment.payment_plan_id)
            .where(
                ScheduledPayment.clinic_id == clinic_id,
                ScheduledPayment.status == ScheduledPaymentStatus.PENDING,
                ScheduledPayment.scheduled_date <= now,
                PaymentPlan.status == PaymentPlanStatus.ACTIVE,
                PaymentPlan.deleted_at.is_(None),
            )
            .order_by(ScheduledPayment.scheduled_date.asc())
        )
        due_ids = [row[0] for row in result.all()]

        summary = {"processed": 0, "successful": 0, "failed": 0, "results": []}
        for scheduled_id in due_ids:
            outcome = await self.process_scheduled_payment(scheduled_id, now=now)
            summary["processed"] += 1
            summary["successful" if outcome["success"] else "failed"] += 1
            summary["results"].append(outcome)

        logger.info(
            f"Recurring billing for clinic {clinic_id}: {summary['successful']} succeeded, "
            f"{summary['failed']} failed of {summary['processed']}"
        )
        return summary

    async def process_scheduled_payment(self, scheduled_id: str, clinic_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        scheduled = await self._get_scheduled(scheduled_id, clinic_id)
        if scheduled.status != ScheduledPaymentStatus.PENDING:
            return {"scheduled_payment_id": scheduled.id, "success": False, "skipped": True,
                    "error": f"Scheduled payment is {scheduled.status.value}"}

        plan = await self.db.get(PaymentPlan, scheduled.payment_plan_id)
        method = None
        if plan.payment_method_id:
            method = await self.db.get(PaymentMethod, plan.payment_method_id)

        if not plan.auto_pay_enabled:
            return await self._fail_without_charge(scheduled, "Auto-pay is not enabled for this plan", now)
        if method is None or method.status != StoredMethodStatus.ACTIVE or not method.gateway_method_id:
            return await self._fail_without_charge(scheduled, "No active payment method on file", now)
        if not self.gateway.configured:
            return await self._fail_without_charge(scheduled, "Payment gateway is not configured", now)

        scheduled.status = ScheduledPaymentStatus.PROCESSING
        scheduled.attempt_count = (scheduled.attempt_count or 0) + 1
        scheduled.last_attempt_at = now
        await self.db.commit()

        try:
            result = await self.gateway.create_payment_intent(
                scheduled.amount,
                customer_id=method.gateway_customer_id,
                payment_method_id=method.gateway_method_id,
                description=f"Payment plan {plan.plan_number} installment {scheduled.installment_number}",
                metadata={"plan_number": plan.plan_number, "scheduled_payment_id": scheduled.id},
                off_session=True,
                idempotency_key=f"{scheduled.id}:{scheduled.attempt_count}",
            )
        except ExternalServiceError as e:
            logger.error(f"Gateway unavailable for scheduled payment {scheduled.id}: {e.message}")
            return await self._handle_failure(scheduled, plan, e.message, now)
        except Exception as e:
            # The row is already PROCESSING; it must go back through the retry path
            logger.exception(f"Charge for scheduled payment {scheduled.id} raised")
            return await self._handle_failure(scheduled, plan, f"Charge error: {e}", now)

        if not result.success or status_from_intent(result) != PaymentStatus.COMPLETED:
            return await self._handle_failure(scheduled, plan, result.error or f"Charge {result.status}", now)
        return await self._handle_success(scheduled, plan, method, result.transaction_id, now)

    async def _fail_without_charge(self, scheduled: ScheduledPayment, reason: str, now: datetime) -> Dict[str, Any]:
        scheduled.status = ScheduledPaymentStatus.FAILED
        scheduled.failure_reason = reason
        scheduled.last_attempt_at = now
        await self.db.commit()
        logger.warning(f"Scheduled payment {scheduled.id} not charged: {reason}")
        return {"scheduled_payment_id": scheduled.id, "success": False, "error": reason}

    async def _handle_success(
        self, scheduled: ScheduledPayment, plan: PaymentPlan, method: PaymentMethod, transaction_id: str, now: datetime
    ) -> Dict[str, Any]:
        account = await self.db.get(PatientAccount, plan.account_id)
        payment = Payment(
            clinic_id=plan.clinic_id,
            account_id=plan.account_id,
            patient_id=account.patient_id,
            payment_plan_id=plan.id,
            payment_method_id=method.id,
            amount=scheduled.amount,
            payment_date=now,
            method=PaymentMethodType.CREDIT_CARD,
            source=PaymentSource.PAYMENT_PLAN,
            gateway=PaymentGatewayName.STRIPE,
            gateway_transaction_id=transaction_id,
            gateway_status="succeeded",
            payment_metadata={"scheduled_payment_id": scheduled.id},
        )
        await PaymentService(self.db, self.gateway).record_completed_payment(payment, [])

        scheduled.status = ScheduledPaymentStatus.COMPLETED
        scheduled.result_payment_id = payment.id
        scheduled.processed_at = now
        scheduled.failure_reason = None

        plan.completed_payments = (plan.completed_payments or 0) + 1
        plan.remaining_balance = round_currency(max(0.0, plan.remaining_balance - scheduled.amount))
        await self._advance_next_payment_date(plan)
        await self.check_plan_completion(plan)
        await self.db.commit()
        logger.info(f"Plan {plan.plan_number} installment {scheduled.installment_number} paid ({payment.payment_number})")
        return {"scheduled_payment_id": scheduled.id, "success": True, "payment_id": payment.id}

    async def _handle_failure(self, scheduled: ScheduledPayment, plan: PaymentPlan, reason: str, now: datetime) -> Dict[str, Any]:
        if scheduled.attempt_count < self.config.max_retry_attempts:
            delay = self.config.delay_for_attempt(scheduled.attempt_count)
            scheduled.status = ScheduledPaymentStatus.PENDING
            scheduled.failure_reason = reason
            scheduled.scheduled_date = now + timedelta(days=delay)
            await self.db.commit()
            logger.warning(
                f"Scheduled payment {scheduled.id} attempt {scheduled.attempt_count} failed, retrying in {delay} days: {reason}"
            )
            return {"scheduled_payment_id": scheduled.id, "success": False, "error": reason, "retry_in_days": delay}

        scheduled.status = ScheduledPaymentStatus.FAILED
        scheduled.failure_reason = f"Max retries reached: {reason}"
        plan.status = PaymentPlanStatus.DEFAULTED
        await self.db.commit()
        logger.error(f"Plan {plan.plan_number} defaulted after {scheduled.attempt_count} failed attempts: {reason}")
        return {"scheduled_payment_id": scheduled.id, "success": False, "error": scheduled.failure_reason}

    async def _advance_next_payment_date(self, plan: PaymentPlan) -> None:
        result = await self.db.execute(
            select(ScheduledPayment.scheduled_date)
            .where(
                ScheduledPayment.payment_plan_id == plan.id,
                ScheduledPayment.status == ScheduledPaymentStatus.PENDING,
            )
            .order_by(ScheduledPayment.scheduled_date.asc())
            .limit(1)
        )
        upcoming = result.scalar_one_or_none()
        plan.next_payment_date = upcoming.date() if upcoming else None

    async def check_plan_completion(self, plan: PaymentPlan) -> bool:
        await self.db.flush()
        result = await self.db.execute(
            select(ScheduledPayment.id).where(
                ScheduledPayment.payment_plan_id == plan.id,
                ScheduledPayment.status.in_([ScheduledPaymentStatus.PENDING, ScheduledPaymentStatus.PROCESSING]),
            ).limit(1)
        )
        if result.first() is not None:
            return False
        plan.status = PaymentPlanStatus.COMPLETED
        plan.completed_at = utcnow()
        plan.next_payment_date = None
        return True

    async def retry_scheduled_payment(self, clinic_id: str, scheduled_id: str) -> Dict[str, Any]:
        scheduled = await self._get_scheduled(scheduled_id, clinic_id)
        if scheduled.status == ScheduledPaymentStatus.COMPLETED:
            raise BusinessLogicError("Scheduled payment already completed", error_code="ALREADY_COMPLETED")
        if scheduled.status not in (ScheduledPaymentStatus.FAILED, ScheduledPaymentStatus.PENDING):
            raise BusinessLogicError(f"Scheduled payment is {scheduled.status.value}", error_code="INVALID_STATUS")
        plan = await self.db.get(PaymentPlan, scheduled.payment_plan_id)
        if plan.status != PaymentPlanStatus.ACTIVE:
            raise BusinessLogicError(f"Payment plan is {plan.status.value}", error_code="INVALID_STATUS")
        scheduled.status = ScheduledPaymentStatus.PENDING
        scheduled.failure_reason = None
        await self.db.commit()
        return await self.process_scheduled_payment(scheduled.id, clinic_id)

    async def skip_scheduled_payment(self, clinic_id: str, scheduled_id: str, reason: str) -> ScheduledPayment:
        scheduled = await self._get_scheduled(scheduled_id, clinic_id)
        if scheduled.status not in (ScheduledPaymentStatus.PENDING, ScheduledPaymentStatus.FAILED):
            raise BusinessLogicError(
                f"Scheduled payment is {scheduled.status.value}", error_code="INVALID_STATUS"
            )
        scheduled.status = ScheduledPaymentStatus.SKIPPED
        scheduled.skip_reason = reason
        plan = await self.db.get(PaymentPlan, scheduled.payment_plan_id)
        await self.db.flush()
        await self._advance_next_payment_date(plan)
        await self.db.commit()
        return scheduled

    async def get_payments_needing_attention(self, clinic_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        start_of_day = datetime.combine(now.date(), time.min)
        end_of_day = datetime.combine(now.date(), time.max)
        upcoming_end = end_of_day + timedelta(days=UPCOMING_WINDOW_DAYS)

        async def fetch(*conditions) -> List[ScheduledPayment]:
            result = await self.db.execute(
                select(ScheduledPayment)
                .where(ScheduledPayment.clinic_id == clinic_id, *conditions)
                .order_by(ScheduledPayment.scheduled_date.asc())
            )
            return list(result.scalars().all())

        pending = ScheduledPayment.status == ScheduledPaymentStatus.PENDING
        failed = await fetch(ScheduledPayment.status == ScheduledPaymentStatus.FAILED)
        overdue = await fetch(pending, ScheduledPayment.scheduled_date < start_of_day)
        due_today = await fetch(
            pending, ScheduledPayment.scheduled_date >= start_of_day, ScheduledPayment.scheduled_date <= end_of_day
        )
        upcoming = await fetch(
            pending, ScheduledPayment.scheduled_date > end_of_day, ScheduledPayment.scheduled_date <= upcoming_end
        )
        return {
            "counts": {
                "failed": len(failed),
                "overdue": len(overdue),
                "due_today": len(due_today),
                "upcoming": len(upcoming),
            },
            "failed": failed,
            "overdue": overdue,
            "due_today": due_today,
            "upcoming": upcoming,
        }


async def clinics_with_active_plans(db: AsyncSession) -> List[str]:
    result = await db.execute(
        select(distinct(PaymentPlan.clinic_id)).where(
            PaymentPlan.status == PaymentPlanStatus.ACTIVE,
            PaymentPlan.deleted_at.is_(None),
        )
    )
    return [row[0] for row in result.all()]
