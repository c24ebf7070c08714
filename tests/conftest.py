"""
HR Loan Ledger - Test Configuration

Pytest fixtures and configuration.

Each test gets its own SQLite database file, so separate sessions really do
race against each other in the concurrency tests.
"""

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

import hrloans.models  # noqa: F401
from hrloans.config import settings
from hrloans.database import Base
from hrloans.dependencies import get_balance_reconciler, get_document_store, get_loan_ledger
from hrloans.schemas.loan import Actor, Loan
from hrloans.services.balance_reconciler import BalanceReconcilerService
from hrloans.services.document_store import DocumentStore
from hrloans.services.loan_ledger import LoanLedgerService
from hrloans.services.payroll_port import PayrollIntegrationPort
from hrloans.utils.permissions import ActorRole
from main import app


class FixedClock:
    """Injectable clock; tests move it forward explicitly."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, *args: int) -> None:
        self.now = datetime(*args, tzinfo=timezone.utc)


# ===========================================
# DATABASE & SERVICES
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Fresh file-backed database for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'hrloans_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def store(session_factory) -> DocumentStore:
    return DocumentStore(session_factory)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 1, 15, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def ledger(store: DocumentStore, clock: FixedClock) -> LoanLedgerService:
    return LoanLedgerService(store, clock=clock)


@pytest.fixture
def reconciler(store: DocumentStore, clock: FixedClock) -> BalanceReconcilerService:
    return BalanceReconcilerService(store, clock=clock)


@pytest.fixture
def payroll_port(ledger: LoanLedgerService, reconciler: BalanceReconcilerService) -> PayrollIntegrationPort:
    return PayrollIntegrationPort(ledger, reconciler)


@pytest_asyncio.fixture(scope="function")
async def client(
    store: DocumentStore,
    ledger: LoanLedgerService,
    reconciler: BalanceReconcilerService,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client bound to the per-test store and services."""
    app.dependency_overrides[get_document_store] = lambda: store
    app.dependency_overrides[get_loan_ledger] = lambda: ledger
    app.dependency_overrides[get_balance_reconciler] = lambda: reconciler

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# DATA FIXTURES
# ===========================================

async def create_employee(store: DocumentStore, name: str, gross: int, status: str = "active") -> str:
    return await store.create(
        settings.employees_path,
        {
            "employeeId": f"EMP-{name.split()[0].upper()}",
            "name": name,
            "department": "Engineering",
            "salary": {"grossMonthly": gross},
            "joiningDate": "2022-04-01",
            "status": status,
        },
    )


@pytest_asyncio.fixture
async def employee_id(store: DocumentStore) -> str:
    """Active employee with 100,000 gross, so the standard ceiling is 300,000."""
    return await create_employee(store, "Adaeze Okafor", 100_000)


@pytest_asyncio.fixture
async def other_employee_id(store: DocumentStore) -> str:
    return await create_employee(store, "Tunde Bello", 80_000, status="Active")


@pytest_asyncio.fixture
async def inactive_employee_id(store: DocumentStore) -> str:
    return await create_employee(store, "Kemi Adeyemi", 90_000, status="terminated")


@pytest.fixture
def admin() -> Actor:
    return Actor(id="u-admin", name="Ada Admin", role=ActorRole.ADMIN)


@pytest.fixture
def manager() -> Actor:
    return Actor(id="u-manager", name="Mo Manager", role=ActorRole.MANAGER)


@pytest.fixture
def second_manager() -> Actor:
    return Actor(id="u-manager-2", name="Nkechi Manager", role=ActorRole.MANAGER)


@pytest.fixture
def hr_officer() -> Actor:
    return Actor(id="u-hr", name="Halima HR", role=ActorRole.HR)


@pytest.fixture
def payroll_clerk() -> Actor:
    return Actor(id="u-payroll", name="Paul Payroll", role=ActorRole.PAYROLL)


@pytest.fixture
def employee_actor(employee_id: str) -> Actor:
    return Actor(id="u-adaeze", name="Adaeze Okafor", role=ActorRole.EMPLOYEE, employee_id=employee_id)


@pytest_asyncio.fixture
async def approved_loan(ledger: LoanLedgerService, employee_id: str, hr_officer: Actor, manager: Actor) -> Loan:
    """120,000 over 12 months, approved in January 2025 (EMI 10,000)."""
    loan = await ledger.request_loan(employee_id, 120_000, "Medical bills", 12, hr_officer)
    return await ledger.approve_loan(loan.id, manager)


@pytest.fixture
def auth_headers():
    """Gateway identity headers for an actor."""

    def build(actor: Actor) -> dict:
        headers = {
            "X-Actor-Id": actor.id,
            "X-Actor-Name": actor.name,
            "X-Actor-Role": actor.role.value,
        }
        if actor.employee_id:
            headers["X-Actor-Employee-Id"] = actor.employee_id
        return headers

    return build
