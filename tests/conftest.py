"""Pytest configuration and fixtures"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "development")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from datetime import datetime
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from homezy.api.deps import get_app_notifier, get_clock
from homezy.db import models  # noqa: F401
from homezy.db.database import Base, get_db
from homezy.db.models import CreditType
from homezy.main import app
from homezy.services.claims import ClaimCoordinator
from homezy.services.credit_ledger import CreditLedger
from homezy.services.lead_store import LeadStore
from homezy.services.matching import match_cache
from homezy.services.notifications import Notifier
from homezy.utils.time import FrozenClock

START = datetime(2025, 3, 3, 9, 0, 0)


class RecordingNotifier(Notifier):
    """Keeps every delivered event in memory"""

    def __init__(self):
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
        self.events.append((recipient_id, kind, payload))

    def of_kind(self, kind: str) -> list[tuple[str, str, dict[str, Any]]]:
        return [event for event in self.events if event[1] == kind]


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'homezy-test.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture(autouse=True)
def clear_match_cache():
    match_cache.clear()
    yield
    match_cache.clear()


@pytest.fixture
def store(test_db, clock) -> LeadStore:
    return LeadStore(test_db, clock=clock)


@pytest.fixture
def ledger(test_db, clock) -> CreditLedger:
    return CreditLedger(test_db, clock=clock)


@pytest.fixture
def coordinator(test_db, notifier, clock) -> ClaimCoordinator:
    return ClaimCoordinator(test_db, notifier=notifier, clock=clock)


@pytest.fixture
def lead_fields():
    """Builds valid lead creation kwargs, with overrides"""

    def build(**overrides) -> dict[str, Any]:
        fields = {
            "title": "Leaking kitchen sink",
            "description": "Water pooling under the kitchen sink since last night.",
            "category": "plumbing",
            "location": {"emirate": "dubai", "neighborhood": "JLT"},
            "budget_bracket": "1k-5k",
            "urgency": "flexible",
            "timeline": "this week",
            "service_answers": {
                "service_id": "plumbing",
                "answers": {"job_type": "leak-repair", "property_type": "apartment", "fixtures": ["sink"]},
            },
        }
        fields.update(overrides)
        return fields

    return build


@pytest.fixture
def fund(session_factory, clock):
    """Gives a professional credits through a short-lived session of its own"""

    async def grant(professional_id: str, paid: int = 0, free: int = 0) -> None:
        async with session_factory() as session:
            ledger = CreditLedger(session, clock=clock)
            if paid:
                await ledger.grant(professional_id, paid, CreditType.PAID, "Test purchase")
            if free:
                await ledger.grant(professional_id, free, CreditType.FREE, "Test bonus")

    return grant


@pytest_asyncio.fixture
async def client(session_factory, notifier, clock) -> AsyncGenerator[AsyncClient, None]:
    """Test client with database, notifier and clock overridden"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_notifier] = lambda: notifier
    app.dependency_overrides[get_clock] = lambda: clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def as_user(user_id: str, role: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest.fixture
def headers():
    return as_user
