import os
import secrets
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path so 'clinicore' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from clinicore.main import app  # type: ignore
from clinicore.database import Base  # type: ignore
from clinicore.api import deps  # type: ignore
"""Pytest fixtures and factories.

Important: SQLAlchemy relationship configuration requires all model modules to be imported
before Base.metadata.create_all(), otherwise back_populates targets might not exist yet.
"""
from clinicore.models.db import (
    Appointment, EmailLog, Member, Organization, Patient, User,
)
from clinicore.models.db.enums import AppointmentStatus, EmailStatus, EmailType, MemberRole
from clinicore.integrations.email import EmailDeliveryError, OutgoingEmail
from clinicore.jobs.report_handlers import ReportJobProcessor
from clinicore.jobs.report_queue import ReportQueue
from clinicore.jobs.store import InMemoryJobStore
from clinicore.jobs.worker import ReportWorker

# Fixed "now" shared by job, sweep and factory defaults.
NOW = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)

# Use file-based SQLite for thread-safe multi-connection access (worker threads + test thread)
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_clinicore.db"
engine = create_engine(
    SQLALCHEMY_TEST_URL,
    connect_args={"check_same_thread": False},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMailer:
    """Records every message; recipients in ``failing`` raise like a rejecting SMTP server."""

    def __init__(self):
        self.sent: list[OutgoingEmail] = []
        self.attempted: list[OutgoingEmail] = []
        self.failing: set[str] = set()

    def send(self, message: OutgoingEmail) -> None:
        self.attempted.append(message)
        if message.to in self.failing:
            raise EmailDeliveryError(f"550 mailbox unavailable: {message.to}")
        self.sent.append(message)

    @property
    def recipients(self) -> list[str]:
        return [m.to for m in self.sent]


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_clinicore.db")
    except OSError:
        pass

@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture(autouse=True)
def _clean_tables(create_test_db):
    """Every test starts from empty tables."""
    yield
    session = TestingSessionLocal()
    try:
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
    finally:
        session.close()

# Override dependency
def _override_get_db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()

app.dependency_overrides[deps.get_db] = _override_get_db

@pytest.fixture()
def clock():
    return FrozenClock()

@pytest.fixture()
def mailer():
    return FakeMailer()

@pytest.fixture()
def job_store(clock):
    store = InMemoryJobStore(clock=clock)
    yield store
    store.close()

@pytest.fixture()
def report_queue(job_store, clock):
    return ReportQueue(job_store, clock=clock)

@pytest.fixture()
def report_worker(job_store, report_queue, mailer, clock):
    """Worker wired to the test database; drive it with ``run_once`` / ``drain``."""
    processor = ReportJobProcessor(TestingSessionLocal, mailer, report_queue, interval_days=3, clock=clock)
    return ReportWorker(job_store, processor, lane=report_queue.lane, concurrency=2, poll_timeout=0.1)

@pytest.fixture(autouse=True)
def _app_state(job_store, report_queue, mailer):
    """The production app builds these in lifespan. Tests bypass lifespan so we replicate here."""
    app.state.job_store = job_store  # type: ignore[attr-defined]
    app.state.report_queue = report_queue  # type: ignore[attr-defined]
    app.state.mailer = mailer  # type: ignore[attr-defined]
    yield

@pytest.fixture()
def client():
    return TestClient(app)

# ---------- Data factory helpers ----------

@pytest.fixture()
def organization_factory(db_session):
    def _create(name: str | None = None, *, auto_reports_enabled: bool = True, last_report_generated_at: datetime | None = None):
        org = Organization(
            name=name or f"Clinic {secrets.token_hex(2)}",
            auto_reports_enabled=auto_reports_enabled,
            last_report_generated_at=last_report_generated_at,
        )
        db_session.add(org)
        db_session.commit()
        db_session.refresh(org)
        return org
    return _create

@pytest.fixture()
def user_factory(db_session):
    def _create(email: str | None = "generate", *, name: str | None = None):
        if email == "generate":
            email = f"{secrets.token_hex(4)}@example.com"
        user = User(
            name=name or f"Staff {secrets.token_hex(2)}",
            email=email,
            api_key=f"ck_{secrets.token_hex(12)}",
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user
    return _create

@pytest.fixture()
def member_factory(db_session, user_factory):
    def _create(org: Organization, *, role: MemberRole = MemberRole.ADMIN, email: str | None = "generate", user: User | None = None):
        user = user or user_factory(email)
        member = Member(organization_id=org.id, user_id=user.id, role=role)
        db_session.add(member)
        db_session.commit()
        return user
    return _create

@pytest.fixture()
def patient_factory(db_session):
    def _create(org: Organization | None, *, email: str | None = "generate", created_at: datetime = NOW - timedelta(days=30)):
        if email == "generate":
            email = f"patient_{secrets.token_hex(4)}@example.com"
        patient = Patient(
            organization_id=org.id if org else None,
            first_name="Jane",
            last_name=f"Doe-{secrets.token_hex(2)}",
            email=email,
            created_at=created_at,
        )
        db_session.add(patient)
        db_session.commit()
        db_session.refresh(patient)
        return patient
    return _create

@pytest.fixture()
def appointment_factory(db_session):
    def _create(
        patient: Patient,
        *,
        time: datetime,
        status: AppointmentStatus = AppointmentStatus.SCHEDULED,
        organization_id: str | None = "inherit",
        reminder_sent: bool = False,
    ):
        appointment = Appointment(
            patient_id=patient.id,
            organization_id=patient.organization_id if organization_id == "inherit" else organization_id,
            doctor_name="Dr. Adams",
            time=time,
            type="Consultation",
            status=status,
            reminder_sent=reminder_sent,
        )
        db_session.add(appointment)
        db_session.commit()
        db_session.refresh(appointment)
        return appointment
    return _create

@pytest.fixture()
def email_log_factory(db_session):
    def _create(org: Organization, count: int, *, sent_at: datetime = NOW):
        db_session.add_all([
            EmailLog(
                organization_id=org.id,
                recipient_email=f"bulk{i}@example.com",
                email_type=EmailType.APPOINTMENT_REMINDER,
                subject="Appointment Reminder",
                status=EmailStatus.SENT,
                sent_at=sent_at,
            )
            for i in range(count)
        ])
        db_session.commit()
    return _create
