"""Pytest fixtures for testing"""

import hashlib
import uuid
import pytest
from datetime import datetime, timedelta, timezone
from typing import Generator
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from engagement_gateway.api.main import create_app
from engagement_gateway.api.dependencies import (
    get_clock,
    get_engagement_client,
    get_notification_client,
    get_otp_client,
)
from engagement_gateway.domain.models import (
    ApprovalAction,
    Contract,
    ContractDraft,
    OtpChallenge,
    OtpEvidence,
    OtpVerification,
    PaymentMethod,
    SigningAudit,
)
from engagement_gateway.infrastructure.database.models import Base, NegotiationModel, UserModel
from engagement_gateway.infrastructure.database.session import get_db
from engagement_gateway.services.contract_lifecycle import ContractLifecycle
from engagement_gateway.services.payment_schedule import PaymentScheduleEngine
from engagement_gateway.services.signature_ledger import SignatureLedger
from engagement_gateway.utils.date_utils import FixedClock


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

STUDENT = "student_1"
TUTOR = "tutor_1"
OUTSIDER = "outsider_1"
NEGOTIATION = "neg_1"
VALID_CODE = "123456"
NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session, seeded with parties and one accepted negotiation"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    db.add_all(
        [
            UserModel(id=STUDENT, email="student@example.com", display_name="Sam Student"),
            UserModel(id=TUTOR, email="tutor@example.com", display_name="Tara Tutor"),
            UserModel(id=OUTSIDER, email="outsider@example.com", display_name="Olly Outsider"),
            NegotiationModel(id=NEGOTIATION, student_id=STUDENT, tutor_id=TUTOR, subject_id="math", status="ACCEPTED"),
            NegotiationModel(id="neg_pending", student_id=STUDENT, tutor_id=TUTOR, subject_id="math", status="PENDING"),
        ]
    )
    db.commit()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def otp_client() -> AsyncMock:
    """OTP collaborator fake: VALID_CODE matches, anything else does not"""
    otp = AsyncMock()

    async def generate(contract_id, email, role, contract_label):
        return OtpChallenge(handle=f"handle-{role.value}-{uuid.uuid4()}", expires_at=NOW + timedelta(minutes=5))

    async def verify(handle, code):
        return OtpVerification(matched=code == VALID_CODE, otp_hash=hashlib.sha256(code.encode()).hexdigest())

    otp.generate.side_effect = generate
    otp.verify.side_effect = verify
    return otp


@pytest.fixture
def engagement_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def notification_client() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def schedules(db: Session, clock: FixedClock) -> PaymentScheduleEngine:
    return PaymentScheduleEngine(db, clock)


@pytest.fixture
def ledger(db: Session, otp_client: AsyncMock, clock: FixedClock) -> SignatureLedger:
    return SignatureLedger(db, otp_client, clock)


@pytest.fixture
def lifecycle(
    db: Session,
    schedules: PaymentScheduleEngine,
    ledger: SignatureLedger,
    engagement_client: AsyncMock,
    notification_client: AsyncMock,
    clock: FixedClock,
) -> ContractLifecycle:
    return ContractLifecycle(db, schedules, ledger, engagement_client, notification_client, clock)


@pytest.fixture
def full_payment_draft() -> ContractDraft:
    """10 sessions at 100,000 = 1,000,000"""
    return ContractDraft(
        negotiation_id=NEGOTIATION,
        title="Calculus tutoring",
        price_per_session=100_000,
        session_duration=60,
        total_sessions=10,
        payment_method=PaymentMethod.FULL_PAYMENT,
        start_date=NOW.date(),
    )


@pytest.fixture
def installment_draft(full_payment_draft: ContractDraft) -> ContractDraft:
    full_payment_draft.payment_method = PaymentMethod.INSTALLMENTS
    full_payment_draft.installment_count = 3
    full_payment_draft.down_payment = 200_000
    return full_payment_draft


@pytest.fixture
async def approved_contract(lifecycle: ContractLifecycle, full_payment_draft: ContractDraft) -> Contract:
    """FULL_PAYMENT contract submitted and approved, ready for signatures"""
    contract = await lifecycle.create_contract(TUTOR, full_payment_draft)
    await lifecycle.submit_for_approval(contract.id, TUTOR)
    return await lifecycle.respond_to_approval(contract.id, STUDENT, ApprovalAction.APPROVE)


@pytest.fixture
def evidence():
    """Factory for OTP evidence; defaults to the code the OTP fake accepts"""

    def make(code: str = VALID_CODE, handle: str = "handle") -> OtpEvidence:
        return OtpEvidence(
            handle=handle,
            code=code,
            audit=SigningAudit(consent_text="I agree", ip_address="10.0.0.1", user_agent="pytest"),
        )

    return make


@pytest.fixture
def client(
    db: Session,
    clock: FixedClock,
    otp_client: AsyncMock,
    engagement_client: AsyncMock,
    notification_client: AsyncMock,
) -> TestClient:
    """Create FastAPI test client with test database and collaborator fakes"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_otp_client] = lambda: otp_client
    app.dependency_overrides[get_engagement_client] = lambda: engagement_client
    app.dependency_overrides[get_notification_client] = lambda: notification_client
    return TestClient(app)
