"""Seed script for tax regimes and statutory rates.

Run with:
    python scripts/seed_tax_rules.py [--create-schema]

This creates the FY 2025-2026 income tax regimes and the statutory rate
table needed for payroll calculation.
"""

from __future__ import annotations

import argparse
import asyncio
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.database import dispose_db, get_session, init_db
from payrun_engine.models import Base, StatutoryRateTable, TaxRegime, TaxSlab

FINANCIAL_YEAR = "2025-2026"

# (income_from, income_to, rate_percent); None = no upper bound
NEW_REGIME_SLABS = [
    (0, 400000, 0),
    (400000, 800000, 5),
    (800000, 1200000, 10),
    (1200000, 1600000, 15),
    (1600000, 2000000, 20),
    (2000000, 2400000, 25),
    (2400000, None, 30),
]

OLD_REGIME_SLABS = [
    (0, 250000, 0),
    (250000, 500000, 5),
    (500000, 1000000, 20),
    (1000000, None, 30),
]

# Monthly professional tax by work state: flat amount once earned gross exceeds "above"
PROFESSIONAL_TAX_SLABS = {
    "Maharashtra": [
        {"above": "10000", "amount": "200"},
        {"above": "7500", "amount": "175"},
    ],
    "Karnataka": [
        {"above": "15000", "amount": "200"},
    ],
}


async def seed_regime(
    session: AsyncSession,
    name: str,
    standard_deduction: int,
    slabs: list[tuple[int, int | None, int]],
    is_default: bool,
    allows_declarations: bool,
    description: str,
) -> None:
    """Create one regime with its slabs unless it already exists."""
    result = await session.execute(
        select(TaxRegime).where(
            TaxRegime.name == name,
            TaxRegime.financial_year == FINANCIAL_YEAR,
        )
    )
    if result.scalar_one_or_none():
        print(f"{name} regime for {FINANCIAL_YEAR} already exists, skipping...")
        return

    regime = TaxRegime(
        name=name,
        financial_year=FINANCIAL_YEAR,
        standard_deduction=Decimal(standard_deduction),
        cess_percent=Decimal("4"),
        is_default=is_default,
        allows_declarations=allows_declarations,
        description=description,
        slabs=[
            TaxSlab(
                income_from=Decimal(low),
                income_to=Decimal(high) if high is not None else None,
                rate_percent=Decimal(rate),
            )
            for low, high, rate in slabs
        ],
    )
    session.add(regime)
    print(f"Created {name} regime for {FINANCIAL_YEAR} ({len(slabs)} slabs)")


async def seed_statutory_rates(session: AsyncSession) -> None:
    """Create the PF/ESI/professional tax rate table."""
    effective_from = date(2025, 4, 1)
    result = await session.execute(
        select(StatutoryRateTable).where(StatutoryRateTable.effective_from == effective_from)
    )
    if result.scalar_one_or_none():
        print("Statutory rates already exist, skipping...")
        return

    session.add(
        StatutoryRateTable(
            effective_from=effective_from,
            pf_wage_ceiling=Decimal("15000"),
            pf_employee_rate=Decimal("12"),
            pf_employer_rate=Decimal("12"),
            esi_wage_ceiling=Decimal("21000"),
            esi_employee_rate=Decimal("0.75"),
            esi_employer_rate=Decimal("3.25"),
            professional_tax_slabs=PROFESSIONAL_TAX_SLABS,
        )
    )
    print(f"Created statutory rates effective {effective_from}")


async def create_schema() -> None:
    """Create all tables from the ORM metadata."""
    engine, _ = init_db()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Schema created")


async def main(with_schema: bool) -> None:
    """Run all seed functions."""
    print("Seeding tax rules...")

    if with_schema:
        await create_schema()

    async with get_session() as session:
        await seed_regime(
            session,
            "new",
            standard_deduction=75000,
            slabs=NEW_REGIME_SLABS,
            is_default=True,
            allows_declarations=False,
            description="Section 115BAC regime; declarations do not apply",
        )
        await seed_regime(
            session,
            "old",
            standard_deduction=50000,
            slabs=OLD_REGIME_SLABS,
            is_default=False,
            allows_declarations=True,
            description="Old regime with Chapter VI-A deductions",
        )
        await seed_statutory_rates(session)

    await dispose_db()
    print("\nSeeding complete!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed tax regimes and statutory rates")
    parser.add_argument(
        "--create-schema",
        action="store_true",
        help="Create tables before seeding",
    )
    args = parser.parse_args()
    asyncio.run(main(args.create_schema))
