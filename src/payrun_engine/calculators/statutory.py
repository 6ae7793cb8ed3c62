"""Statutory contributions: provident fund, ESI and professional tax.

All functions are pure; rates come from the statutory rate table in force
for the pay period. Professional tax slabs are keyed by the employee's work
state.
"""

from __future__ import annotations

from decimal import Decimal

from payrun_engine.calculators.types import (
    HUNDRED,
    ZERO,
    PeriodContributions,
    StatutoryContribution,
    StatutoryRates,
    round_amount,
)


def compute_statutory(
    basic_monthly: Decimal,
    rates: StatutoryRates,
    unit: Decimal = Decimal("1"),
) -> StatutoryContribution:
    """Provident fund on min(basic_monthly, wage ceiling).

    Employee and employer shares use the same capped base with their own
    rates.
    """
    if basic_monthly <= 0:
        return StatutoryContribution()
    base = min(basic_monthly, rates.pf_wage_ceiling)
    return StatutoryContribution(
        employee=round_amount(base * rates.pf_employee_rate / HUNDRED, unit),
        employer=round_amount(base * rates.pf_employer_rate / HUNDRED, unit),
    )


def compute_esi(
    gross_monthly: Decimal,
    rates: StatutoryRates,
    unit: Decimal = Decimal("1"),
) -> StatutoryContribution:
    """ESI on gross pay, only while gross is within the wage ceiling."""
    if gross_monthly <= 0 or gross_monthly > rates.esi_wage_ceiling:
        return StatutoryContribution()
    return StatutoryContribution(
        employee=round_amount(gross_monthly * rates.esi_employee_rate / HUNDRED, unit),
        employer=round_amount(gross_monthly * rates.esi_employer_rate / HUNDRED, unit),
    )


def compute_professional_tax(
    gross_monthly: Decimal,
    rates: StatutoryRates,
    state: str | None,
) -> Decimal:
    """Flat amount of the highest slab of the state whose threshold gross exceeds.

    States without configured slabs levy no professional tax.
    """
    for above, amount in rates.professional_tax_slabs.get(state, ()):  # sorted high to low
        if gross_monthly > above:
            return amount
    return ZERO


def compute_period_contributions(
    basic_monthly: Decimal,
    gross_monthly: Decimal,
    lwp_deduction: Decimal,
    paid_days: Decimal,
    working_days: int,
    rates: StatutoryRates,
    unit: Decimal = Decimal("1"),
    state: str | None = None,
) -> PeriodContributions:
    """All statutory contributions for a month, on earned (post-LWP) pay."""
    if working_days <= 0:
        return PeriodContributions()
    earned_basic = round_amount(basic_monthly * paid_days / Decimal(working_days), unit)
    earned_gross = gross_monthly - lwp_deduction
    return PeriodContributions(
        pf=compute_statutory(earned_basic, rates, unit),
        esi=compute_esi(earned_gross, rates, unit),
        professional_tax=compute_professional_tax(earned_gross, rates, state),
    )
