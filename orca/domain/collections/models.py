"""Collections: escalation workflows, promises to pay, agencies, write-offs and reminders."""
from sqlalchemy import (
    Column, String, Text, Date, DateTime, Integer, Float, Boolean, JSON, Enum, ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
import enum

from orca.infrastructure.database import Base
from orca.models.mixins import ClinicScopedMixin, gen_uuid, utcnow


class CollectionPatientType(str, enum.Enum):
    PATIENT = "PATIENT"
    INSURANCE = "INSURANCE"
    BOTH = "BOTH"


class CollectionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    PAYMENT_PLAN = "PAYMENT_PLAN"
    SETTLED = "SETTLED"
    WRITTEN_OFF = "WRITTEN_OFF"
    AGENCY = "AGENCY"
    COMPLETED = "COMPLETED"


class CollectionActionType(str, enum.Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    LETTER = "LETTER"
    PHONE_CALL = "PHONE_CALL"
    CREATE_TASK = "CREATE_TASK"
    FLAG_ACCOUNT = "FLAG_ACCOUNT"
    APPLY_LATE_FEE = "APPLY_LATE_FEE"
    SEND_TO_AGENCY = "SEND_TO_AGENCY"
    SUSPEND_TREATMENT = "SUSPEND_TREATMENT"


class CollectionActivityType(str, enum.Enum):
    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    STAGE_ADVANCED = "STAGE_ADVANCED"
    EMAIL_SENT = "EMAIL_SENT"
    SMS_SENT = "SMS_SENT"
    LETTER_SENT = "LETTER_SENT"
    PHONE_CALL = "PHONE_CALL"
    TASK_CREATED = "TASK_CREATED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PROMISE_MADE = "PROMISE_MADE"
    PROMISE_BROKEN = "PROMISE_BROKEN"
    PAUSED = "PAUSED"
    RESUMED = "RESUMED"
    SENT_TO_AGENCY = "SENT_TO_AGENCY"
    RECALLED_FROM_AGENCY = "RECALLED_FROM_AGENCY"
    WRITTEN_OFF = "WRITTEN_OFF"
    COMPLETED = "COMPLETED"
    MANUAL_NOTE = "MANUAL_NOTE"


class CommunicationChannel(str, enum.Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    LETTER = "LETTER"
    PHONE = "PHONE"
    PORTAL = "PORTAL"


class PromiseStatus(str, enum.Enum):
    PENDING = "PENDING"
    FULFILLED = "FULFILLED"
    PARTIAL = "PARTIAL"
    BROKEN = "BROKEN"
    CANCELLED = "CANCELLED"


class AgencyReferralStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COLLECTED = "COLLECTED"
    PARTIAL = "PARTIAL"
    RETURNED = "RETURNED"
    RECALLED = "RECALLED"


class WriteOffReason(str, enum.Enum):
    BANKRUPTCY = "BANKRUPTCY"
    DECEASED = "DECEASED"
    UNCOLLECTIBLE = "UNCOLLECTIBLE"
    STATUTE_OF_LIMITATIONS = "STATUTE_OF_LIMITATIONS"
    SMALL_BALANCE = "SMALL_BALANCE"
    HARDSHIP = "HARDSHIP"
    OTHER = "OTHER"


class WriteOffStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PARTIALLY_RECOVERED = "PARTIALLY_RECOVERED"
    FULLY_RECOVERED = "FULLY_RECOVERED"


class ReminderType(str, enum.Enum):
    UPCOMING_DUE = "UPCOMING_DUE"
    PAST_DUE_GENTLE = "PAST_DUE_GENTLE"
    PAST_DUE_FIRM = "PAST_DUE_FIRM"
    PAST_DUE_URGENT = "PAST_DUE_URGENT"
    FINAL_NOTICE = "FINAL_NOTICE"
    PAYMENT_PLAN_DUE = "PAYMENT_PLAN_DUE"
    PAYMENT_PLAN_LATE = "PAYMENT_PLAN_LATE"


class ReminderStatus(str, enum.Enum):
    SENT = "SENT"
    FAILED = "FAILED"


OPEN_COLLECTION_STATUSES = (CollectionStatus.ACTIVE, CollectionStatus.PAUSED, CollectionStatus.PAYMENT_PLAN)
OPEN_REFERRAL_STATUSES = (AgencyReferralStatus.ACTIVE, AgencyReferralStatus.PARTIAL)


class CollectionWorkflow(ClinicScopedMixin, Base):
    __tablename__ = "collection_workflows"

    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    trigger_days_overdue = Column(Integer, nullable=False)
    min_balance = Column(Float, nullable=False, default=0.0)
    patient_type = Column(Enum(CollectionPatientType), nullable=False, default=CollectionPatientType.PATIENT)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    stages = relationship(
        "CollectionStage",
        back_populates="workflow",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CollectionStage.stage_number",
    )


class CollectionStage(Base):
    __tablename__ = "collection_stages"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    workflow_id = Column(String(36), ForeignKey("collection_workflows.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_number = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)
    days_from_previous = Column(Integer, nullable=False, default=0)
    days_overdue = Column(Integer, nullable=False, default=0)
    escalate_after_days = Column(Integer, nullable=True)
    actions = Column(JSON, nullable=False, default=list)

    workflow = relationship("CollectionWorkflow", back_populates="stages")


class AccountCollection(ClinicScopedMixin, Base):
    """An account's run through a collection workflow"""
    __tablename__ = "account_collections"

    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    workflow_id = Column(String(36), ForeignKey("collection_workflows.id"), nullable=False, index=True)
    current_stage = Column(Integer, nullable=False, default=1)
    status = Column(Enum(CollectionStatus), nullable=False, default=CollectionStatus.ACTIVE, index=True)

    starting_balance = Column(Float, nullable=False, default=0.0)
    current_balance = Column(Float, nullable=False, default=0.0)
    paid_amount = Column(Float, nullable=False, default=0.0)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    last_action_at = Column(DateTime, nullable=True)
    next_action_date = Column(DateTime, nullable=True, index=True)
    paused_at = Column(DateTime, nullable=True)
    pause_reason = Column(String(500), nullable=True)
    completed_at = Column(DateTime, nullable=True)


class CollectionActivity(Base):
    __tablename__ = "collection_activities"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    clinic_id = Column(String(36), nullable=False, index=True)
    collection_id = Column(String(36), ForeignKey("account_collections.id", ondelete="CASCADE"), nullable=True, index=True)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    activity_type = Column(Enum(CollectionActivityType), nullable=False)
    description = Column(Text, nullable=False)
    stage_number = Column(Integer, nullable=True)
    channel = Column(Enum(CommunicationChannel), nullable=True)
    amount = Column(Float, nullable=True)
    details = Column(JSON, nullable=True)
    performed_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class PaymentPromise(ClinicScopedMixin, Base):
    __tablename__ = "payment_promises"

    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    collection_id = Column(String(36), ForeignKey("account_collections.id"), nullable=True)
    promised_amount = Column(Float, nullable=False)
    promise_date = Column(Date, nullable=False, index=True)
    paid_amount = Column(Float, nullable=False, default=0.0)
    paid_date = Column(Date, nullable=True)
    status = Column(Enum(PromiseStatus), nullable=False, default=PromiseStatus.PENDING, index=True)
    notes = Column(String(500), nullable=True)
    broken_at = Column(DateTime, nullable=True)


class CollectionAgency(ClinicScopedMixin, Base):
    __tablename__ = "collection_agencies"

    name = Column(String(200), nullable=False)
    contact_name = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    address = Column(Text, nullable=True)
    fee_percentage = Column(Float, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)


class AgencyReferral(ClinicScopedMixin, Base):
    __tablename__ = "agency_referrals"

    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    agency_id = Column(String(36), ForeignKey("collection_agencies.id"), nullable=False, index=True)
    collection_id = Column(String(36), ForeignKey("account_collections.id"), nullable=True)
    status = Column(Enum(AgencyReferralStatus), nullable=False, default=AgencyReferralStatus.ACTIVE, index=True)
    referred_balance = Column(Float, nullable=False)
    collected_amount = Column(Float, nullable=False, default=0.0)
    days_overdue = Column(Integer, nullable=False, default=0)
    referred_at = Column(DateTime, nullable=False, default=utcnow)
    recalled_at = Column(DateTime, nullable=True)
    recall_reason = Column(String(500), nullable=True)
    last_collection_at = Column(DateTime, nullable=True)


class WriteOff(ClinicScopedMixin, Base):
    __tablename__ = "write_offs"

    write_off_number = Column(String(20), nullable=False)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    collection_id = Column(String(36), ForeignKey("account_collections.id"), nullable=True)
    amount = Column(Float, nullable=False)
    reason = Column(Enum(WriteOffReason), nullable=False)
    reason_details = Column(Text, nullable=True)
    status = Column(Enum(WriteOffStatus), nullable=False, default=WriteOffStatus.PENDING, index=True)
    requested_by = Column(String(36), nullable=True)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_by = Column(String(36), nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String(500), nullable=True)
    recovered_amount = Column(Float, nullable=False, default=0.0)
    last_recovery_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("clinic_id", "write_off_number", name="uq_write_offs_number"),
    )


class PaymentReminder(Base):
    __tablename__ = "payment_reminders"

    id = Column(String(36), primary_key=True, default=gen_uuid)
    clinic_id = Column(String(36), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("patient_accounts.id"), nullable=False, index=True)
    reminder_type = Column(Enum(ReminderType), nullable=False)
    channel = Column(Enum(CommunicationChannel), nullable=False)
    status = Column(Enum(ReminderStatus), nullable=False, index=True)
    recipient = Column(String(255), nullable=True)
    subject = Column(String(200), nullable=True)
    message = Column(Text, nullable=True)
    message_id = Column(String(64), nullable=True)
    failure_reason = Column(String(500), nullable=True)
    days_overdue = Column(Integer, nullable=True)
    balance = Column(Float, nullable=True)
    payment_received = Column(Boolean, nullable=False, default=False)
    sent_by = Column(String(36), nullable=True)
    sent_at = Column(DateTime, default=utcnow, nullable=False, index=True)
