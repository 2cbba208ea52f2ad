"""
Shared pytest fixtures: fixed clock, actors, and both repository implementations.
"""

import os
import sys
from datetime import datetime, timezone

import pytest
import pytest_asyncio

# Add the project root to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Settings are read at import time; point them at throwaway stores first
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("CLINIC_TIMEZONE", "UTC")
os.environ.pop("NOTIFICATION_WEBHOOK_URL", None)

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.pool import StaticPool

from clinicbook.crud.appointment import InMemoryAppointmentRepository, SqlAppointmentRepository
from clinicbook.db.base import init_db
from clinicbook.domain.appointment import Role, create_appointment
from clinicbook.domain.commands import Actor

UTC = timezone.utc
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Booking requests are made on 2025-05-20 for 2025-06-01 10:00
NOW = datetime(2025, 5, 20, 9, 0, tzinfo=UTC)
PATIENT_ID = "patient-1"
CLINIC_ID = "clinic-1"


class FakeClock:
    """Callable clock the tests can move forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingDispatcher:
    """Collects intents instead of delivering them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def dispatch(self, intents):
        if self.fail:
            raise RuntimeError("push gateway unavailable")
        self.sent.extend(intents)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def patient():
    return Actor(role=Role.PATIENT, party_id=PATIENT_ID)


@pytest.fixture
def clinic():
    return Actor(role=Role.CLINIC, party_id=CLINIC_ID)


@pytest.fixture
def pending_appointment():
    """Patient asks for a 30 min cleaning on 2025-06-01 at 10:00."""
    return create_appointment(
        PATIENT_ID,
        CLINIC_ID,
        "2025-06-01",
        "10:00",
        "cleaning",
        30,
        now=NOW,
        tz=UTC,
        appointment_id="appt-1",
    )


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest_asyncio.fixture
async def sql_repository():
    """SQL repository on a private in-memory SQLite database."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    yield SqlAppointmentRepository(session_factory, retry_attempts=2, retry_backoff=0)
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def repository_kind(request):
    return request.param


@pytest_asyncio.fixture
async def repository(repository_kind, sql_repository):
    """Runs repository tests against both implementations."""
    if repository_kind == "memory":
        return InMemoryAppointmentRepository()
    return sql_repository


# Pytest configuration hooks
def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "unit: Pure unit tests with no external dependencies")
    config.addinivalue_line("markers", "integration: Tests that touch the database or HTTP stack")
