"""Shared fixtures for ledger tests.

Every ledger test runs against both store implementations via the
parametrized ``store`` fixture: the in-memory store and the SQLAlchemy
store on an in-memory SQLite database (aiosqlite).
"""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from credit_ledger.core.config import Settings
from credit_ledger.models.base import Base
from credit_ledger.repositories.credit_repository import SqlLedgerStore
from credit_ledger.repositories.ledger_store import LedgerStore
from credit_ledger.repositories.memory_store import InMemoryLedgerStore
from credit_ledger.services.credit_expiry import CreditExpiryService
from credit_ledger.services.credit_holds import CreditHoldService
from credit_ledger.services.credit_ledger_service import CreditLedgerService
from credit_ledger.services.credit_reporting import CreditReportingService
from credit_ledger.services.grant_policies import GrantPolicies
from credit_ledger.services.pricing import PricedOperations

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

FROZEN_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

USER_ID = "user-0001"
OTHER_USER_ID = "user-0002"


class FrozenClock:
    """Clock returning a fixed time that tests can move forward."""

    def __init__(self, now: datetime = FROZEN_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


async def create_test_engine() -> AsyncEngine:
    """Create an in-memory SQLite engine with the ledger schema.

    StaticPool keeps one shared connection so every session sees the same
    in-memory database.
    """
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


@pytest.fixture
def clock() -> FrozenClock:
    """Frozen clock shared by the services under test."""
    return FrozenClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings with the default grant recipes and windows."""
    return Settings(
        database_url_override=TEST_DATABASE_URL,
        environment="test",
    )


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with tables created."""
    engine = await create_test_engine()
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory over the test engine."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def sql_store(session_factory: async_sessionmaker[AsyncSession]) -> SqlLedgerStore:
    """SQLAlchemy-backed ledger store."""
    return SqlLedgerStore(session_factory)


@pytest.fixture
def memory_store() -> InMemoryLedgerStore:
    """Fresh in-memory ledger store."""
    return InMemoryLedgerStore()


@pytest.fixture(params=["memory", "sql"])
async def store(request: pytest.FixtureRequest) -> AsyncGenerator[LedgerStore, None]:
    """Each store implementation in turn."""
    if request.param == "memory":
        yield InMemoryLedgerStore()
        return

    engine = await create_test_engine()
    yield SqlLedgerStore(
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    )
    await engine.dispose()


@pytest.fixture
def ledger(
    store: LedgerStore, clock: FrozenClock, test_settings: Settings
) -> CreditLedgerService:
    """Ledger engine over the parametrized store."""
    return CreditLedgerService(store, clock=clock, settings=test_settings)


@pytest.fixture
def policies(ledger: CreditLedgerService, test_settings: Settings) -> GrantPolicies:
    """Grant recipes over the ledger engine."""
    return GrantPolicies(ledger, settings=test_settings)


@pytest.fixture
def priced(ledger: CreditLedgerService) -> PricedOperations:
    """Priced operation wrappers over the ledger engine."""
    return PricedOperations(ledger)


@pytest.fixture
def holds(ledger: CreditLedgerService, test_settings: Settings) -> CreditHoldService:
    """Hold/capture/refund service over the ledger engine."""
    return CreditHoldService(ledger, settings=test_settings)


@pytest.fixture
def reporting(store: LedgerStore) -> CreditReportingService:
    """Reporting service over the parametrized store."""
    return CreditReportingService(store)


@pytest.fixture
def expiry(store: LedgerStore, clock: FrozenClock) -> CreditExpiryService:
    """Expiry sweep over the parametrized store."""
    return CreditExpiryService(store, clock=clock)


async def ledger_sum(store: LedgerStore, user_id: str) -> int:
    """Sum of every transaction amount for a user."""
    async with store.transaction() as session:
        sums = await session.sum_amounts_by_type(user_id)
    return sum(sums.values())
