"""Pytest fixtures for payrun engine tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payrun_engine.config import Settings
from payrun_engine.models import (
    AttendanceRecord,
    Base,
    CompensationComponent,
    CompensationStructure,
    Employee,
    Organization,
    StatutoryRateTable,
    TaxRegime,
    TaxSlab,
)
from payrun_engine.services.authorization import Actor, Role

# In-memory SQLite shared across one test's connections
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# April 2025 has 22 Monday-Friday working days and opens FY 2025-2026
PAY_PERIOD = "2025-04"
FINANCIAL_YEAR = "2025-2026"

STANDARD_COMPONENTS = {
    "BASIC": Decimal("480000"),
    "HRA": Decimal("240000"),
    "SPECIAL": Decimal("480000"),
}

PROFESSIONAL_TAX_SLABS = {
    "Maharashtra": [
        {"above": "10000", "amount": "200"},
        {"above": "7500", "amount": "175"},
    ],
    "Karnataka": [
        {"above": "15000", "amount": "200"},
    ],
}

EmployeeFactory = Callable[..., Awaitable[Employee]]


@pytest.fixture
def settings() -> Settings:
    """Settings for tests; rounding to whole rupees."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        engine_version="test",
        host="127.0.0.1",
        port=8000,
        debug=False,
        log_level="INFO",
        default_tax_regime="new",
        rounding_unit=Decimal("1"),
        enforce_maker_checker=False,
        unmarked_days_are_present=True,
    )


@pytest_asyncio.fixture
async def engine():
    """Create a fresh test database per test."""
    engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=StaticPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def organization(session: AsyncSession) -> Organization:
    """Create a test organization."""
    org = Organization(organization_id=uuid4(), name="Test Analytics Pvt Ltd")
    session.add(org)
    await session.flush()
    return org


@pytest_asyncio.fixture
async def tax_reference_data(session: AsyncSession) -> None:
    """FY 2025-2026 regimes and the statutory rate table."""
    new_regime = TaxRegime(
        name="new",
        financial_year=FINANCIAL_YEAR,
        standard_deduction=Decimal("75000"),
        cess_percent=Decimal("4"),
        is_default=True,
        allows_declarations=False,
        slabs=[
            TaxSlab(income_from=Decimal(low), income_to=high, rate_percent=Decimal(rate))
            for low, high, rate in [
                (0, Decimal("400000"), 0),
                (400000, Decimal("800000"), 5),
                (800000, Decimal("1200000"), 10),
                (1200000, Decimal("1600000"), 15),
                (1600000, Decimal("2000000"), 20),
                (2000000, Decimal("2400000"), 25),
                (2400000, None, 30),
            ]
        ],
    )
    old_regime = TaxRegime(
        name="old",
        financial_year=FINANCIAL_YEAR,
        standard_deduction=Decimal("50000"),
        cess_percent=Decimal("4"),
        is_default=False,
        allows_declarations=True,
        slabs=[
            TaxSlab(income_from=Decimal(low), income_to=high, rate_percent=Decimal(rate))
            for low, high, rate in [
                (0, Decimal("250000"), 0),
                (250000, Decimal("500000"), 5),
                (500000, Decimal("1000000"), 20),
                (1000000, None, 30),
            ]
        ],
    )
    rates = StatutoryRateTable(
        effective_from=date(2025, 4, 1),
        pf_wage_ceiling=Decimal("15000"),
        pf_employee_rate=Decimal("12"),
        pf_employer_rate=Decimal("12"),
        esi_wage_ceiling=Decimal("21000"),
        esi_employee_rate=Decimal("0.75"),
        esi_employer_rate=Decimal("3.25"),
        professional_tax_slabs=PROFESSIONAL_TAX_SLABS,
    )
    session.add_all([new_regime, old_regime, rates])
    await session.flush()


@pytest.fixture
def employee_factory(session: AsyncSession, organization: Organization) -> EmployeeFactory:
    """Create an employee, optionally with a structure of annual earnings."""
    counter = iter(range(1, 1000))

    async def create(
        components: dict[str, Decimal] | None = None,
        *,
        code: str | None = None,
        join_date: date = date(2024, 1, 1),
        exit_date: date | None = None,
        work_week_policy: str = "5_day",
        work_state: str | None = "Maharashtra",
        effective_from: date = date(2024, 4, 1),
        status: str = "active",
    ) -> Employee:
        employee = Employee(
            organization_id=organization.organization_id,
            employee_code=code or f"EMP{next(counter):03d}",
            full_name="Test Employee",
            department="Engineering",
            job_title="Analyst",
            work_week_policy=work_week_policy,
            work_state=work_state,
            join_date=join_date,
            exit_date=exit_date,
            status=status,
        )
        session.add(employee)
        await session.flush()

        if components is not None:
            session.add(
                CompensationStructure(
                    organization_id=organization.organization_id,
                    employee_id=employee.employee_id,
                    annual_ctc=sum(components.values(), Decimal("0")),
                    effective_from=effective_from,
                    revision_number=1,
                    is_active=True,
                    components=[
                        CompensationComponent(
                            component_code=component_code,
                            component_name=component_code.title(),
                            component_type="earning",
                            annual_amount=amount,
                            is_taxable=True,
                            display_order=index,
                        )
                        for index, (component_code, amount) in enumerate(components.items())
                    ],
                )
            )
            await session.flush()
        return employee

    return create


async def mark_attendance(
    session: AsyncSession,
    employee: Employee,
    status: str,
    *days: date,
) -> None:
    """Record the same attendance status on several days."""
    session.add_all(
        AttendanceRecord(employee_id=employee.employee_id, attendance_date=day, status=status)
        for day in days
    )
    await session.flush()


def make_actor(organization: Organization, role: Role, employee_id=None) -> Actor:
    """Actor with a fresh user id."""
    return Actor(
        user_id=uuid4(),
        organization_id=organization.organization_id,
        role=role,
        employee_id=employee_id,
    )


@pytest.fixture
def hr_actor(organization: Organization) -> Actor:
    return make_actor(organization, Role.HR)


@pytest.fixture
def finance_actor(organization: Organization) -> Actor:
    return make_actor(organization, Role.FINANCE)


@pytest.fixture
def admin_actor(organization: Organization) -> Actor:
    return make_actor(organization, Role.ADMIN)


@pytest_asyncio.fixture
async def payroll_setup(
    session: AsyncSession,
    tax_reference_data: None,
    employee_factory: EmployeeFactory,
) -> dict[str, Employee]:
    """Four employees covering the main generation paths for April 2025.

    - salaried: 12L CTC, two unpaid leave days
    - esi: 1.8L CTC, inside the ESI wage ceiling
    - unstructured: no compensation structure
    - future_joiner: joins after the period
    """
    salaried = await employee_factory(STANDARD_COMPONENTS, code="EMP001")
    await mark_attendance(session, salaried, "unpaid_leave", date(2025, 4, 14), date(2025, 4, 15))

    esi = await employee_factory(
        {"BASIC": Decimal("90000"), "SPECIAL": Decimal("90000")},
        code="EMP002",
    )
    unstructured = await employee_factory(None, code="EMP003")
    future_joiner = await employee_factory(
        STANDARD_COMPONENTS,
        code="EMP004",
        join_date=date(2025, 5, 12),
        effective_from=date(2025, 5, 12),
    )
    return {
        "salaried": salaried,
        "esi": esi,
        "unstructured": unstructured,
        "future_joiner": future_joiner,
    }
