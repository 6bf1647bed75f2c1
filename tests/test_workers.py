from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

from orca.workers import tasks
from orca.workers.celery_app import celery_app


class FakeLocks:
    """In-memory stand-in for the redis lock service"""

    def __init__(self, held: Optional[List[str]] = None):
        self.held = set(held or [])
        self.released: List[str] = []

    async def acquire_lock(self, lock_key: str, timeout: int = 30, **kwargs) -> Optional[str]:
        if lock_key in self.held:
            return None
        self.held.add(lock_key)
        return f"token-{lock_key}"

    async def release_lock(self, lock_key: str, lock_value: str) -> bool:
        self.held.discard(lock_key)
        self.released.append(lock_key)
        return True


class FakeSession:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class FakeRecurringService:
    calls: List[str] = []

    def __init__(self, db, gateway=None):
        self.db = db

    async def process_due_payments(self, clinic_id: str) -> Dict[str, int]:
        FakeRecurringService.calls.append(clinic_id)
        return {"processed": 2, "successful": 1, "failed": 1, "results": []}


@pytest.fixture
def patched_recurring(monkeypatch):
    async def clinics(db):
        return ["clinic-a", "clinic-b"]

    FakeRecurringService.calls = []
    monkeypatch.setattr(tasks, "AsyncSessionLocal", FakeSession)
    monkeypatch.setattr(tasks, "clinics_with_active_plans", clinics)
    monkeypatch.setattr(tasks, "RecurringBillingService", FakeRecurringService)

    def install(locks: FakeLocks) -> FakeLocks:
        monkeypatch.setattr(tasks, "get_lock_service", lambda: locks)
        return locks

    return install


@pytest.mark.workers
@pytest.mark.unit
class TestRecurringPaymentsTask:
    """Per-clinic locked recurring billing run"""

    def test_lock_key(self) -> None:
        """Test the lock key names the clinic"""
        assert tasks.recurring_lock_key("clinic-a") == "recurring-billing:clinic-a"

    @pytest.mark.asyncio
    async def test_processes_every_clinic(self, patched_recurring) -> None:
        """Test each clinic is processed once and its lock released"""
        locks = patched_recurring(FakeLocks())

        summary = await tasks._process_recurring_payments()

        assert summary == {"clinics": 2, "skipped_locked": 0, "processed": 4, "successful": 2, "failed": 2}
        assert FakeRecurringService.calls == ["clinic-a", "clinic-b"]
        assert locks.released == ["recurring-billing:clinic-a", "recurring-billing:clinic-b"]
        assert locks.held == set()

    @pytest.mark.asyncio
    async def test_skips_locked_clinic(self, patched_recurring) -> None:
        """Test a clinic already being processed elsewhere is skipped"""
        patched_recurring(FakeLocks(held=["recurring-billing:clinic-a"]))

        summary = await tasks._process_recurring_payments()

        assert summary["skipped_locked"] == 1
        assert summary["processed"] == 2
        assert FakeRecurringService.calls == ["clinic-b"]

    @pytest.mark.asyncio
    async def test_lock_released_on_failure(self, patched_recurring, monkeypatch) -> None:
        """Test the lock is released when processing raises"""
        locks = patched_recurring(FakeLocks())

        class Exploding(FakeRecurringService):
            async def process_due_payments(self, clinic_id):
                raise RuntimeError("database went away")

        monkeypatch.setattr(tasks, "RecurringBillingService", Exploding)

        with pytest.raises(RuntimeError):
            await tasks._process_recurring_payments()
        assert locks.released == ["recurring-billing:clinic-a"]


@pytest.mark.workers
@pytest.mark.unit
class TestTaskRunner:
    """Synchronous Celery entry wrapper"""

    @staticmethod
    def _task(retries: int = 0):
        retried = {}

        def retry(exc=None, countdown=None):
            retried.update(exc=exc, countdown=countdown)
            return RuntimeError("retry scheduled")

        return SimpleNamespace(name="orca.workers.tasks.demo", request=SimpleNamespace(retries=retries), retry=retry), retried

    def test_returns_summary(self) -> None:
        """Test a successful job returns its summary"""
        task, retried = self._task()

        async def job():
            return {"updated": 3}

        assert tasks._run(task, job) == {"updated": 3}
        assert retried == {}

    def test_failure_schedules_retry_with_backoff(self) -> None:
        """Test failures retry with an exponential countdown"""
        task, retried = self._task(retries=2)
        error = ValueError("boom")

        async def job():
            raise error

        with pytest.raises(RuntimeError, match="retry scheduled"):
            tasks._run(task, job)
        assert retried == {"exc": error, "countdown": 4}


@pytest.mark.workers
@pytest.mark.unit
class TestSchedule:
    """Beat configuration"""

    def test_every_task_is_scheduled(self) -> None:
        """Test each periodic task has a beat entry"""
        scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}

        assert scheduled == {
            "orca.workers.tasks.process_recurring_payments",
            "orca.workers.tasks.mark_overdue_invoices",
            "orca.workers.tasks.advance_collection_stages",
            "orca.workers.tasks.check_broken_promises",
            "orca.workers.tasks.send_collection_reminders",
            "orca.workers.tasks.expire_payment_links_and_credits",
        }

    def test_recurring_runs_on_billing_queue(self) -> None:
        """Test recurring billing is routed to its own queue"""
        routes = celery_app.conf.task_routes
        assert routes["orca.workers.tasks.process_recurring_payments"] == {"queue": "billing"}
