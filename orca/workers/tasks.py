"""Scheduled jobs. Each task opens its own session and returns a summary dict."""
from typing import Dict, Any
import asyncio
import logging

from orca.workers.celery_app import celery_app
from orca.core.config import settings
from orca.core.tenant import set_clinic_id, reset_clinic_id
from orca.api.v1.collections.schemas import ReminderBatchSend
from orca.domain.billing.service import InvoiceService, CreditService
from orca.domain.collections.models import ReminderType, CommunicationChannel
from orca.domain.collections.repository import clinics_with_past_due_accounts
from orca.domain.collections.service import CollectionService, PromiseService, ReminderService
from orca.domain.payments.recurring import RecurringBillingService, clinics_with_active_plans
from orca.domain.payments.service import PaymentLinkService
from orca.infrastructure.database import AsyncSessionLocal, close_db
from orca.infrastructure.redis import get_lock_service, redis_manager

logger = logging.getLogger(__name__)

REMINDER_MIN_DAYS_OVERDUE = 30


def recurring_lock_key(clinic_id: str) -> str:
    return f"recurring-billing:{clinic_id}"


async def _process_recurring_payments() -> Dict[str, Any]:
    async with AsyncSessionLocal() as db:
        clinic_ids = await clinics_with_active_plans(db)

    locks = get_lock_service()
    summary = {"clinics": len(clinic_ids), "skipped_locked": 0, "processed": 0, "successful": 0, "failed": 0}
    for clinic_id in clinic_ids:
        lock_key = recurring_lock_key(clinic_id)
        lock_value = await locks.acquire_lock(lock_key, timeout=settings.RECURRING_LOCK_TIMEOUT_SECONDS)
        if not lock_value:
            logger.warning(f"Recurring billing already running for clinic {clinic_id}, skipping")
            summary["skipped_locked"] += 1
            continue

        token = set_clinic_id(clinic_id)
        try:
            async with AsyncSessionLocal() as db:
                result = await RecurringBillingService(db).process_due_payments(clinic_id)
            for key in ("processed", "successful", "failed"):
                summary[key] += result[key]
        finally:
            reset_clinic_id(token)
            await locks.release_lock(lock_key, lock_value)
    return summary


async def _mark_overdue_invoices() -> Dict[str, Any]:
    async with AsyncSessionLocal() as db:
        return await InvoiceService(db).mark_overdue_invoices()


async def _advance_collection_stages() -> Dict[str, Any]:
    async with AsyncSessionLocal() as db:
        return await CollectionService(db).process_due_stage_advances()


async def _check_broken_promises() -> Dict[str, Any]:
    async with AsyncSessionLocal() as db:
        return await PromiseService(db).check_broken_promises()


async def _send_collection_reminders() -> Dict[str, Any]:
    async with AsyncSessionLocal() as db:
        clinic_ids = await clinics_with_past_due_accounts(db)

    request = ReminderBatchSend(
        reminder_type=ReminderType.PAST_DUE_GENTLE,
        channel=CommunicationChannel.EMAIL,
        min_days_overdue=REMINDER_MIN_DAYS_OVERDUE,
    )
    summary = {"clinics": len(clinic_ids), "sent": 0, "skipped": 0, "failed": 0}
    for clinic_id in clinic_ids:
        token = set_clinic_id(clinic_id)
        try:
            async with AsyncSessionLocal() as db:
                result = await ReminderService(db).send_batch_reminders(clinic_id, request, None)
        finally:
            reset_clinic_id(token)
        for key in ("sent", "skipped", "failed"):
            summary[key] += result[key]
    return summary


async def _expire_payment_links_and_credits() -> Dict[str, Any]:
    async with AsyncSessionLocal() as db:
        links = await PaymentLinkService(db).expire_links()
        credits = await CreditService(db).expire_credits()
    return {"links_expired": links["expired"], "credits_expired": credits["expired"]}


async def _in_fresh_loop(coroutine_fn) -> Dict[str, Any]:
    # Pooled connections are bound to the loop that opened them
    try:
        return await coroutine_fn()
    finally:
        await close_db()
        await redis_manager.disconnect()


def _run(task, coroutine_fn) -> Dict[str, Any]:
    """Run the async job, log its summary and retry with exponential backoff on failure"""
    try:
        summary = asyncio.run(_in_fresh_loop(coroutine_fn))
    except Exception as exc:
        logger.error(f"Task {task.name} failed: {exc}")
        raise task.retry(exc=exc, countdown=2 ** task.request.retries)
    logger.info(f"Task {task.name} finished: {summary}")
    return summary


@celery_app.task(bind=True, max_retries=3)
def process_recurring_payments(self):
    """Charge due payment plan installments, one locked run per clinic"""
    return _run(self, _process_recurring_payments)


@celery_app.task(bind=True, max_retries=3)
def mark_overdue_invoices(self):
    return _run(self, _mark_overdue_invoices)


@celery_app.task(bind=True, max_retries=3)
def advance_collection_stages(self):
    return _run(self, _advance_collection_stages)


@celery_app.task(bind=True, max_retries=3)
def check_broken_promises(self):
    return _run(self, _check_broken_promises)


@celery_app.task(bind=True, max_retries=3)
def send_collection_reminders(self):
    """Gentle past-due emails for accounts 30+ days overdue"""
    return _run(self, _send_collection_reminders)


@celery_app.task(bind=True, max_retries=3)
def expire_payment_links_and_credits(self):
    return _run(self, _expire_payment_links_and_credits)
