from datetime import date, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from orca.api.v1.collections.schemas import (
    WorkflowCreate, StageCreate, StageAction, CollectionStart, PromiseCreate, AgencyCreate, ReferralCreate,
    WriteOffCreate, ReminderSend, ReminderBatchSend,
)
from orca.core.exceptions import BusinessLogicError, ConflictError
from orca.domain.billing.models import AccountStatus, InvoiceStatus, PatientAccount
from orca.domain.collections.models import (
    CollectionStatus, CollectionActionType, CollectionActivityType, CommunicationChannel, PromiseStatus,
    WriteOffReason, WriteOffStatus, ReminderType, ReminderStatus, AgencyReferralStatus,
)
from orca.domain.collections.service import (
    WorkflowService, CollectionService, PromiseService, AgencyService, WriteOffService, ReminderService,
    CollectionAnalyticsService,
)
from orca.domain.collections.utils import get_aging_bucket, days_overdue_from_account, calculate_dso
from orca.models.mixins import utcnow
from conftest import CLINIC_ID, STAFF_ID, RecordingNotifier


def _workflow(**overrides) -> WorkflowCreate:
    data = dict(
        name="Standard recall",
        trigger_days_overdue=30,
        is_default=True,
        stages=[
            StageCreate(stage_number=1, name="Friendly email", days_from_previous=0,
                        actions=[StageAction(type=CollectionActionType.EMAIL)]),
            StageCreate(stage_number=2, name="Late fee", days_from_previous=14,
                        actions=[StageAction(type=CollectionActionType.APPLY_LATE_FEE, amount=25.0),
                                 StageAction(type=CollectionActionType.PHONE_CALL)]),
            StageCreate(stage_number=3, name="Final notice", days_from_previous=14,
                        actions=[StageAction(type=CollectionActionType.LETTER)]),
        ],
    )
    data.update(overrides)
    return WorkflowCreate(**data)


@pytest.fixture
async def overdue_account(account: PatientAccount, make_invoice, overdue_dates) -> PatientAccount:
    """An account carrying 400.00 that is 45 days past due"""
    invoice_date, due_date = overdue_dates(45)
    await make_invoice(account, 400.0, invoice_date=invoice_date, due_date=due_date)
    return account


@pytest.fixture
async def workflow(db_session: AsyncSession):
    return await WorkflowService(db_session).create_workflow(CLINIC_ID, _workflow(), STAFF_ID)


@pytest.mark.unit
@pytest.mark.collections
class TestCollectionUtils:
    """Aging helpers"""

    def test_aging_buckets(self) -> None:
        """Days overdue map onto the reporting buckets."""
        assert get_aging_bucket(0) == "CURRENT"
        assert get_aging_bucket(30) == "1_30"
        assert get_aging_bucket(31) == "31_60"
        assert get_aging_bucket(120) == "91_120"
        assert get_aging_bucket(121) == "120_PLUS"

    def test_days_overdue_uses_oldest_bucket(self) -> None:
        """The oldest non-empty aging bucket decides the account's age."""
        assert days_overdue_from_account({"aging_30": 10.0, "aging_90": 5.0}) == 90
        assert days_overdue_from_account({"aging_120_plus": 1.0}) == 120
        assert days_overdue_from_account({}) == 0

    def test_dso(self) -> None:
        """DSO is receivables over sales scaled to the period."""
        assert calculate_dso(5000.0, 15000.0, 90) == 30.0
        assert calculate_dso(100.0, 0.0) == 0.0


@pytest.mark.collections
class TestCollectionWorkflow:
    """Stage progression"""

    @pytest.mark.asyncio
    async def test_new_default_replaces_previous(self, db_session: AsyncSession, workflow) -> None:
        """Only one workflow per clinic is the default."""
        second = await WorkflowService(db_session).create_workflow(
            CLINIC_ID, _workflow(name="Aggressive"), STAFF_ID
        )
        assert second.is_default is True
        assert (await WorkflowService(db_session).get_workflow(CLINIC_ID, workflow.id)).is_default is False

    @pytest.mark.asyncio
    async def test_start_uses_default_workflow(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """Starting a collection snapshots the balance and flags the account."""
        service = CollectionService(db_session, RecordingNotifier())
        collection = await service.start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )

        assert collection.workflow_id == workflow.id
        assert collection.current_stage == 1
        assert collection.status == CollectionStatus.ACTIVE
        assert collection.starting_balance == 400.0
        assert overdue_account.status == AccountStatus.COLLECTIONS

        with pytest.raises(ConflictError) as exc:
            await service.start_collection_workflow(
                CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
            )
        assert exc.value.error_code == "COLLECTION_EXISTS"

    @pytest.mark.asyncio
    async def test_advance_runs_stage_actions(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """Stage 2 issues a late fee invoice and creates a call task."""
        notifier = RecordingNotifier()
        service = CollectionService(db_session, notifier)
        collection = await service.start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )

        collection = await service.advance_to_next_stage(CLINIC_ID, collection.id, STAFF_ID)

        assert collection.current_stage == 2
        assert collection.next_action_date is not None
        activities = await service.get_activities(CLINIC_ID, collection.id)
        types = [activity.activity_type for activity in activities]
        assert CollectionActivityType.STAGE_ADVANCED in types
        assert CollectionActivityType.TASK_CREATED in types
        fee = next(a for a in activities if a.amount == 25.0)
        assert fee.details["invoice_id"]
        assert overdue_account.current_balance == 425.0

    @pytest.mark.asyncio
    async def test_final_stage_cannot_advance(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """The last stage leaves nothing scheduled and refuses to advance."""
        notifier = RecordingNotifier()
        service = CollectionService(db_session, notifier)
        collection = await service.start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )
        await service.advance_to_next_stage(CLINIC_ID, collection.id, STAFF_ID)
        collection = await service.advance_to_next_stage(CLINIC_ID, collection.id, STAFF_ID)

        assert collection.current_stage == 3
        assert collection.next_action_date is None
        assert notifier.sent[-1]["channel"] == "LETTER"
        with pytest.raises(BusinessLogicError) as exc:
            await service.advance_to_next_stage(CLINIC_ID, collection.id, STAFF_ID)
        assert exc.value.error_code == "FINAL_STAGE"

    @pytest.mark.asyncio
    async def test_failed_notification_is_logged_not_raised(
        self, db_session: AsyncSession, overdue_account: PatientAccount
    ) -> None:
        """A provider failure becomes a note on the collection."""
        workflow = await WorkflowService(db_session).create_workflow(
            CLINIC_ID,
            _workflow(stages=[
                StageCreate(stage_number=1, name="Start"),
                StageCreate(stage_number=2, name="Email", days_from_previous=7,
                            actions=[StageAction(type=CollectionActionType.EMAIL)]),
            ]),
            STAFF_ID,
        )
        service = CollectionService(db_session, RecordingNotifier(fail=True))
        collection = await service.start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id, workflow_id=workflow.id), STAFF_ID
        )
        await service.advance_to_next_stage(CLINIC_ID, collection.id, STAFF_ID)

        activities = await service.get_activities(CLINIC_ID, collection.id)
        assert any(a.description.startswith("EMAIL failed") for a in activities)

    @pytest.mark.asyncio
    async def test_process_due_advances(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """Collections whose next action date has passed move forward."""
        service = CollectionService(db_session, RecordingNotifier())
        collection = await service.start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )

        summary = await service.process_due_stage_advances(CLINIC_ID, now=utcnow() + timedelta(days=1))

        assert summary == {"processed": 1, "advanced": 1, "errors": []}
        assert collection.current_stage == 2

    @pytest.mark.asyncio
    async def test_pause_resume_and_payment_closes(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """Paying the balance completes the collection and restores the account."""
        service = CollectionService(db_session, RecordingNotifier())
        collection = await service.start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )
        await service.pause_collection(CLINIC_ID, collection.id, "Disputing charge", STAFF_ID)
        with pytest.raises(BusinessLogicError):
            await service.advance_to_next_stage(CLINIC_ID, collection.id, STAFF_ID)
        await service.resume_collection(CLINIC_ID, collection.id, STAFF_ID)

        await service.record_payment(CLINIC_ID, collection.id, 150.0, STAFF_ID)
        assert collection.status == CollectionStatus.ACTIVE
        collection = await service.record_payment(CLINIC_ID, collection.id, 250.0, STAFF_ID)

        assert collection.status == CollectionStatus.COMPLETED
        assert collection.paid_amount == 400.0
        assert overdue_account.status == AccountStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_workflow_in_use_cannot_be_deleted(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """A workflow driving an open collection stays in place."""
        await CollectionService(db_session, RecordingNotifier()).start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )

        with pytest.raises(BusinessLogicError) as exc:
            await WorkflowService(db_session).delete_workflow(CLINIC_ID, workflow.id, STAFF_ID)

        assert exc.value.error_code == "WORKFLOW_IN_USE"
        assert exc.value.details == {"active_collections": 1}

    @pytest.mark.asyncio
    async def test_workflow_effectiveness(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """Effectiveness counts completions and money recovered against the starting balance."""
        service = CollectionService(db_session, RecordingNotifier())
        collection = await service.start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )
        await service.record_payment(CLINIC_ID, collection.id, 400.0, STAFF_ID)

        report = await CollectionAnalyticsService(db_session).get_workflow_effectiveness(CLINIC_ID, workflow.id)

        assert report == {
            "workflow_id": workflow.id,
            "total_collections": 1,
            "completed_collections": 1,
            "completion_rate": 100.0,
            "collection_rate": 100.0,
            "average_days_to_complete": 0.0,
        }


@pytest.mark.collections
class TestPromisesAndAgencies:
    """Payment promises and agency referrals"""

    @pytest.mark.asyncio
    async def test_promise_fulfilled_by_payments(
        self, db_session: AsyncSession, overdue_account: PatientAccount
    ) -> None:
        """Partial payments accumulate until the promise is kept."""
        service = PromiseService(db_session)
        promise = await service.create_promise(
            CLINIC_ID,
            PromiseCreate(account_id=overdue_account.id, promised_amount=200.0, promise_date=date.today()),
            STAFF_ID,
        )
        await service.record_promise_payment(CLINIC_ID, promise.id, 50.0, STAFF_ID)
        assert promise.status == PromiseStatus.PARTIAL
        await service.record_promise_payment(CLINIC_ID, promise.id, 150.0, STAFF_ID)
        assert promise.status == PromiseStatus.FULFILLED

    @pytest.mark.asyncio
    async def test_broken_promises_detected(
        self, db_session: AsyncSession, overdue_account: PatientAccount
    ) -> None:
        """Open promises past their date are marked broken."""
        service = PromiseService(db_session)
        promise = await service.create_promise(
            CLINIC_ID,
            PromiseCreate(account_id=overdue_account.id, promised_amount=100.0, promise_date=date.today()),
            STAFF_ID,
        )

        result = await service.check_broken_promises(CLINIC_ID, today=date.today() + timedelta(days=1))

        assert result["broken"] == 1
        assert promise.status == PromiseStatus.BROKEN
        assert promise.broken_at is not None

    def test_promise_date_cannot_be_past(self) -> None:
        """Promises are made for today or later."""
        with pytest.raises(ValueError):
            PromiseCreate(account_id="a", promised_amount=10.0, promise_date=date.today() - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_referral_moves_collection_to_agency(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """Referring an eligible account hands the open collection to the agency."""
        collections = CollectionService(db_session, RecordingNotifier())
        collection = await collections.start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )
        agencies = AgencyService(db_session)
        agency = await agencies.create_agency(
            CLINIC_ID, AgencyCreate(name="Maple Recovery", fee_percentage=25.0, is_default=True), STAFF_ID
        )

        eligibility = await agencies.check_agency_eligibility(CLINIC_ID, overdue_account.id)
        assert eligibility["eligible"] is True
        assert eligibility["days_overdue"] == 30

        referral = await agencies.refer_to_agency(
            CLINIC_ID, ReferralCreate(account_id=overdue_account.id, agency_id=agency.id), STAFF_ID
        )
        assert referral.referred_balance == 400.0
        assert collection.status == CollectionStatus.AGENCY

        eligibility = await agencies.check_agency_eligibility(CLINIC_ID, overdue_account.id)
        assert eligibility["eligible"] is False
        assert "Already in collections with an agency" in eligibility["reasons"]

        referral = await agencies.record_agency_collection(CLINIC_ID, referral.id, 400.0, STAFF_ID)
        assert referral.status == AgencyReferralStatus.COLLECTED

    @pytest.mark.asyncio
    async def test_zero_balance_not_eligible(self, db_session: AsyncSession, account: PatientAccount) -> None:
        """Accounts with nothing owing stay with the clinic."""
        agencies = AgencyService(db_session)
        eligibility = await agencies.check_agency_eligibility(CLINIC_ID, account.id)
        assert eligibility["reasons"] == ["Account has no balance"]

        agency = await agencies.create_agency(CLINIC_ID, AgencyCreate(name="Maple Recovery", fee_percentage=25.0), STAFF_ID)
        with pytest.raises(BusinessLogicError) as exc:
            await agencies.refer_to_agency(CLINIC_ID, ReferralCreate(account_id=account.id, agency_id=agency.id), STAFF_ID)
        assert exc.value.error_code == "NOT_ELIGIBLE"
        assert exc.value.details == {"reasons": ["Account has no balance"]}


@pytest.mark.collections
class TestWriteOffsAndReminders:
    """Write-offs and patient reminders"""

    @pytest.mark.asyncio
    async def test_write_off_cannot_exceed_balance(
        self, db_session: AsyncSession, overdue_account: PatientAccount
    ) -> None:
        """Write-offs are capped at the account balance."""
        with pytest.raises(BusinessLogicError) as exc:
            await WriteOffService(db_session).request_write_off(
                CLINIC_ID,
                WriteOffCreate(account_id=overdue_account.id, amount=500.0, reason=WriteOffReason.HARDSHIP),
                STAFF_ID,
            )
        assert exc.value.error_code == "AMOUNT_EXCEEDS_BALANCE"

    @pytest.mark.asyncio
    async def test_approved_write_off_clears_invoices(
        self, db_session: AsyncSession, overdue_account: PatientAccount, workflow
    ) -> None:
        """Approval zeroes the invoice, closes the collection and supports recoveries."""
        collection = await CollectionService(db_session, RecordingNotifier()).start_collection_workflow(
            CLINIC_ID, CollectionStart(account_id=overdue_account.id), STAFF_ID
        )
        service = WriteOffService(db_session)
        write_off = await service.request_write_off(
            CLINIC_ID,
            WriteOffCreate(account_id=overdue_account.id, amount=400.0, reason=WriteOffReason.UNCOLLECTIBLE),
            STAFF_ID,
        )
        assert write_off.write_off_number.startswith("WO-")

        write_off = await service.approve_write_off(CLINIC_ID, write_off.id, STAFF_ID)

        assert write_off.status == WriteOffStatus.APPROVED
        assert overdue_account.current_balance == 0.0
        assert collection.status == CollectionStatus.WRITTEN_OFF

        write_off = await service.record_recovery(CLINIC_ID, write_off.id, 100.0, STAFF_ID)
        assert write_off.status == WriteOffStatus.PARTIALLY_RECOVERED

    def test_other_reason_needs_details(self) -> None:
        """OTHER write-offs must be explained."""
        with pytest.raises(ValueError):
            WriteOffCreate(account_id="a", amount=10.0, reason=WriteOffReason.OTHER)

    @pytest.mark.asyncio
    async def test_reminder_sent_and_recorded(
        self, db_session: AsyncSession, overdue_account: PatientAccount
    ) -> None:
        """A single reminder goes to the patient's email and is stored as SENT."""
        notifier = RecordingNotifier()
        reminder = await ReminderService(db_session, notifier).send_reminder(
            CLINIC_ID,
            ReminderSend(account_id=overdue_account.id, reminder_type=ReminderType.PAST_DUE_GENTLE),
            STAFF_ID,
        )

        assert reminder.status == ReminderStatus.SENT
        assert reminder.recipient == "maya.parent@example.com"
        assert reminder.days_overdue == 30
        assert notifier.sent[0]["message_id"] == reminder.message_id

    @pytest.mark.asyncio
    async def test_batch_reminders_respect_window(
        self, db_session: AsyncSession, overdue_account: PatientAccount
    ) -> None:
        """Accounts outside the days-overdue window are skipped."""
        service = ReminderService(db_session, RecordingNotifier())

        skipped = await service.send_batch_reminders(
            CLINIC_ID,
            ReminderBatchSend(reminder_type=ReminderType.PAST_DUE_URGENT, min_days_overdue=60),
            STAFF_ID,
        )
        assert skipped["sent"] == 0
        assert skipped["skipped"] == 1

        sent = await service.send_batch_reminders(
            CLINIC_ID,
            ReminderBatchSend(reminder_type=ReminderType.PAST_DUE_GENTLE, channel=CommunicationChannel.SMS),
            STAFF_ID,
        )
        assert sent["sent"] == 1
        assert sent["results"][0]["status"] == "SENT"


@pytest.mark.collections
@pytest.mark.integration
class TestCollectionRoutes:
    """HTTP surface"""

    @pytest.mark.asyncio
    async def test_front_desk_cannot_write_off(
        self, client: AsyncClient, front_desk_headers, overdue_account: PatientAccount
    ) -> None:
        """Write-off requests need collections rights."""
        response = await client.post(
            "/api/v1/collections/write-offs",
            json={"account_id": overdue_account.id, "amount": 10.0, "reason": "SMALL_BALANCE"},
            headers=front_desk_headers,
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_start_collection_over_http(
        self, client: AsyncClient, billing_headers, overdue_account: PatientAccount, workflow
    ) -> None:
        """Collections can be started and listed through the API."""
        response = await client.post(
            "/api/v1/collections/accounts", json={"account_id": overdue_account.id}, headers=billing_headers
        )
        assert response.status_code == 201
        assert response.json()["status"] == "ACTIVE"

        response = await client.get("/api/v1/collections/accounts", headers=billing_headers)
        assert response.status_code == 200
        assert response.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_aging_summary(
        self, client: AsyncClient, billing_headers, overdue_account: PatientAccount
    ) -> None:
        """The aging report reflects the overdue invoice."""
        response = await client.get("/api/v1/collections/analytics/aging", headers=billing_headers)
        assert response.status_code == 200
