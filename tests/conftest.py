import os

os.environ.setdefault("SECRET_KEY", "orca-test-secret-key-0123456789abcdef")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENCRYPTION_KEY", "orca-test-encryption-key")

import uuid
from datetime import date, timedelta
from typing import AsyncGenerator, Callable, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import orca.domain.models  # noqa: F401
from orca.main import app
from orca.api.v1.billing.schemas import AccountCreate, InvoiceCreate, InvoiceItemCreate
from orca.core.permissions import get_role_permissions
from orca.core.security import create_access_token
from orca.domain.auth.models import User, UserRole
from orca.domain.billing.models import PatientAccount, Invoice
from orca.domain.billing.service import AccountService, InvoiceService
from orca.domain.patients.models import Patient, ContactMethod
from orca.infrastructure.database import Base, get_db
from orca.infrastructure.payment_gateway import GatewayResult, get_payment_gateway


CLINIC_ID = "clinic-0001"
OTHER_CLINIC_ID = "clinic-0002"
STAFF_ID = "user-staff-0001"

test_engine = create_async_engine(
    "sqlite+aiosqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


class RecordingNotifier:
    """Collects outgoing messages instead of delivering them"""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Dict[str, str]] = []

    async def send(self, recipient: str, subject: str, body: str, channel: str = "EMAIL") -> Dict[str, str]:
        from orca.core.exceptions import ExternalServiceError

        if self.fail:
            raise ExternalServiceError("Provider unavailable", error_code="NOTIFICATION_FAILED")
        message = {
            "recipient": recipient,
            "subject": subject,
            "body": body,
            "channel": channel,
            "message_id": str(uuid.uuid4()),
            "status": "sent",
        }
        self.sent.append(message)
        return message


class StubGateway:
    """Stands in for StripeGateway; results are queued per call type"""

    name = "STRIPE"
    configured = True

    def __init__(self):
        self.intent_results: List[GatewayResult] = []
        self.refund_results: List[GatewayResult] = []
        self.intents: List[Dict] = []
        self.refunds: List[Dict] = []

    async def create_payment_intent(self, amount: float, **kwargs) -> GatewayResult:
        self.intents.append({"amount": amount, **kwargs})
        if self.intent_results:
            return self.intent_results.pop(0)
        return GatewayResult(success=True, status="succeeded", transaction_id=f"pi_{len(self.intents)}")

    async def create_refund(self, payment_intent_id: str, amount: Optional[float] = None, reason: Optional[str] = None) -> GatewayResult:
        self.refunds.append({"payment_intent": payment_intent_id, "amount": amount, "reason": reason})
        if self.refund_results:
            return self.refund_results.pop(0)
        return GatewayResult(success=True, status="succeeded", transaction_id=f"re_{len(self.refunds)}")

    async def create_customer(self, email, name, metadata=None) -> GatewayResult:
        return GatewayResult(success=True, status="created", transaction_id="cus_test")

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> GatewayResult:
        return GatewayResult(success=True, status="attached", transaction_id=payment_method_id)


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, gateway: StubGateway) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client sharing the test session and stub gateway."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def make_token(role: UserRole, clinic_id: str = CLINIC_ID, user_id: str = STAFF_ID) -> str:
    return create_access_token(
        user_id,
        {
            "clinic_id": clinic_id,
            "role": role.value,
            "permissions": get_role_permissions(role.value),
        },
    )


def auth_headers(role: UserRole, clinic_id: str = CLINIC_ID, user_id: str = STAFF_ID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(role, clinic_id, user_id)}"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return auth_headers(UserRole.CLINIC_ADMIN)


@pytest.fixture
def billing_headers() -> Dict[str, str]:
    return auth_headers(UserRole.BILLING_MANAGER)


@pytest.fixture
def front_desk_headers() -> Dict[str, str]:
    return auth_headers(UserRole.FRONT_DESK)


@pytest.fixture
def lab_headers() -> Dict[str, str]:
    return auth_headers(UserRole.LAB_COORDINATOR)


@pytest.fixture
def clinical_headers() -> Dict[str, str]:
    return auth_headers(UserRole.CLINICAL_STAFF)


@pytest.fixture
async def staff_user(db_session: AsyncSession) -> User:
    """An active clinic admin with a known password."""
    user = User(
        clinic_id=CLINIC_ID,
        email="admin@orca-clinic.test",
        first_name="Dana",
        last_name="Admin",
        role=UserRole.CLINIC_ADMIN,
        is_active=True,
    )
    user.set_password("Sup3rSecret!")
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def patient(db_session: AsyncSession) -> Patient:
    patient = Patient(
        clinic_id=CLINIC_ID,
        first_name="Maya",
        last_name="Lindqvist",
        date_of_birth=date(2010, 4, 12),
        email="maya.parent@example.com",
        phone="+1 416 555 0101",
        address="12 King St W, Toronto ON",
        preferred_contact_method=ContactMethod.EMAIL,
        created_by=STAFF_ID,
    )
    db_session.add(patient)
    await db_session.commit()
    return patient


@pytest.fixture
async def account(db_session: AsyncSession, patient: Patient) -> PatientAccount:
    return await AccountService(db_session).create_account(
        CLINIC_ID, AccountCreate(patient_id=patient.id), STAFF_ID
    )


@pytest.fixture
def make_invoice(db_session: AsyncSession, notifier: RecordingNotifier) -> Callable:
    """Factory issuing a SENT single-line invoice on an account."""

    async def _make(
        account: PatientAccount,
        amount: float,
        invoice_date: Optional[date] = None,
        due_date: Optional[date] = None,
        send: bool = True,
    ) -> Invoice:
        service = InvoiceService(db_session, notifier)
        invoice = await service.create_invoice(
            CLINIC_ID,
            InvoiceCreate(
                account_id=account.id,
                patient_id=account.patient_id,
                invoice_date=invoice_date,
                due_date=due_date,
                items=[InvoiceItemCreate(procedure_code="D8080", description="Comprehensive ortho", unit_price=amount)],
            ),
            STAFF_ID,
        )
        if send:
            invoice = await service.send_invoice(CLINIC_ID, invoice.id, STAFF_ID)
        return invoice

    return _make


@pytest.fixture
def overdue_dates() -> Callable:
    """(invoice_date, due_date) pairs that land an invoice in a given aging bucket"""

    def _dates(days_overdue: int):
        due = date.today() - timedelta(days=days_overdue)
        return due - timedelta(days=30), due

    return _dates


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "auth: mark test as authentication related")
    config.addinivalue_line("markers", "patients: mark test as patient management related")
    config.addinivalue_line("markers", "billing: mark test as billing related")
    config.addinivalue_line("markers", "payments: mark test as payment processing related")
    config.addinivalue_line("markers", "insurance: mark test as insurance claim related")
    config.addinivalue_line("markers", "collections: mark test as collections related")
    config.addinivalue_line("markers", "lab: mark test as lab order related")
    config.addinivalue_line("markers", "audit: mark test as audit logging related")
    config.addinivalue_line("markers", "workers: mark test as background task related")
