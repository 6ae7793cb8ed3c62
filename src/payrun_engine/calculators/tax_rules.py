"""Read-only access to tax regimes, slabs and statutory rate tables."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payrun_engine.calculators.types import RegimeRules, StatutoryRates, TaxBracket
from payrun_engine.config import Settings, get_settings
from payrun_engine.models import Organization, StatutoryRateTable, TaxRegime

# Statutory caps on approved investment declarations; 0 = no cap
SECTION_LIMITS: dict[str, Decimal] = {
    "80C": Decimal("150000"),
    "80D": Decimal("100000"),
    "80E": Decimal("0"),
    "80G": Decimal("0"),
    "HRA": Decimal("0"),
    "NPS": Decimal("50000"),  # 80CCD(1B)
    "OTHER": Decimal("0"),
}


class StatutoryConfigMissingError(Exception):
    """Raised when no tax regime, slab set or statutory rate table applies."""

    def __init__(self, what: str, key: str):
        self.what = what
        self.key = key
        super().__init__(f"No {what} configured for {key}")


def section_limit(section_type: str) -> Decimal:
    """Cap for a declaration section (0 = unlimited)."""
    try:
        return SECTION_LIMITS[section_type]
    except KeyError:
        raise ValueError(f"Unknown investment section '{section_type}'") from None


class TaxRuleStore:
    """Loads versioned tax reference data.

    Regimes and slabs are keyed by financial year; statutory rates by the
    date range they are effective for. Results are cached per instance, so
    one store should not outlive a request.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self._regime_cache: dict[tuple[str, str], RegimeRules] = {}
        self._rates_cache: dict[date, StatutoryRates] = {}
        self._default_cache: dict[tuple[UUID, str], str] = {}

    async def get_regime(self, financial_year: str, name: str) -> RegimeRules:
        """Get a regime and its slabs for a financial year.

        Raises:
            StatutoryConfigMissingError: If the regime or its slabs are missing
        """
        cache_key = (financial_year, name)
        if cache_key in self._regime_cache:
            return self._regime_cache[cache_key]

        result = await self.session.execute(
            select(TaxRegime)
            .where(TaxRegime.financial_year == financial_year, TaxRegime.name == name)
            .options(selectinload(TaxRegime.slabs))
        )
        regime = result.scalar_one_or_none()
        if regime is None:
            raise StatutoryConfigMissingError("tax regime", f"'{name}' in {financial_year}")
        if not regime.slabs:
            raise StatutoryConfigMissingError("tax slabs", f"regime '{name}' in {financial_year}")

        rules = RegimeRules(
            name=regime.name,
            financial_year=regime.financial_year,
            standard_deduction=regime.standard_deduction,
            cess_percent=regime.cess_percent,
            brackets=tuple(
                TaxBracket(
                    min_amount=slab.income_from,
                    max_amount=slab.income_to,
                    rate=slab.rate_percent,
                )
                for slab in sorted(regime.slabs, key=lambda s: s.income_from)
            ),
            allows_declarations=regime.allows_declarations,
        )
        self._regime_cache[cache_key] = rules
        return rules

    async def get_default_regime_name(self, organization_id: UUID, financial_year: str) -> str:
        """Regime applied when an employee has not chosen one.

        Order: organization default, then the regime flagged default for the
        year, then the configured application default.
        """
        cache_key = (organization_id, financial_year)
        if cache_key in self._default_cache:
            return self._default_cache[cache_key]

        name = await self.session.scalar(
            select(Organization.default_tax_regime).where(
                Organization.organization_id == organization_id
            )
        )
        if not name:
            name = await self.session.scalar(
                select(TaxRegime.name).where(
                    TaxRegime.financial_year == financial_year,
                    TaxRegime.is_default.is_(True),
                )
            )
        if not name:
            name = self.settings.default_tax_regime

        self._default_cache[cache_key] = name
        return name

    async def get_statutory_rates(self, as_of_date: date) -> StatutoryRates:
        """Get the statutory rate table in force on a date.

        Raises:
            StatutoryConfigMissingError: If no table covers the date
        """
        if as_of_date in self._rates_cache:
            return self._rates_cache[as_of_date]

        result = await self.session.execute(
            select(StatutoryRateTable)
            .where(
                StatutoryRateTable.effective_from <= as_of_date,
                (
                    StatutoryRateTable.effective_to.is_(None)
                    | (StatutoryRateTable.effective_to >= as_of_date)
                ),
            )
            .order_by(StatutoryRateTable.effective_from.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise StatutoryConfigMissingError("statutory rate table", f"effective {as_of_date}")

        slabs = {
            state: tuple(
                sorted(
                    (
                        (Decimal(str(slab["above"])), Decimal(str(slab["amount"])))
                        for slab in state_slabs
                    ),
                    key=lambda s: s[0],
                    reverse=True,
                )
            )
            for state, state_slabs in (row.professional_tax_slabs or {}).items()
        }
        rates = StatutoryRates(
            pf_wage_ceiling=row.pf_wage_ceiling,
            pf_employee_rate=row.pf_employee_rate,
            pf_employer_rate=row.pf_employer_rate,
            esi_wage_ceiling=row.esi_wage_ceiling,
            esi_employee_rate=row.esi_employee_rate,
            esi_employer_rate=row.esi_employer_rate,
            professional_tax_slabs=slabs,
            effective_from=row.effective_from,
        )
        self._rates_cache[as_of_date] = rates
        return rates
