"""Type definitions for the payroll calculation pipeline."""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterator
from uuid import UUID

ZERO = Decimal("0")
HUNDRED = Decimal("100")

_PAY_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


def round_amount(amount: Decimal, unit: Decimal = Decimal("1")) -> Decimal:
    """Round half-up to the currency unit (1 = whole rupee, 0.01 = paise)."""
    return amount.quantize(unit, rounding=ROUND_HALF_UP)


class InvalidPayPeriodError(ValueError):
    """Raised when a pay period string is not a valid YYYY-MM month."""

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Invalid pay period '{value}', expected YYYY-MM")


@dataclass(frozen=True, order=True)
class PayPeriod:
    """Calendar month payroll is run for.

    Financial years run April to March and are written "2025-2026".
    """

    year: int
    month: int

    @classmethod
    def parse(cls, value: str) -> PayPeriod:
        match = _PAY_PERIOD_RE.match(value or "")
        if match is None:
            raise InvalidPayPeriodError(value)
        year, month = int(match.group(1)), int(match.group(2))
        if not 1 <= month <= 12:
            raise InvalidPayPeriodError(value)
        return cls(year, month)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    @property
    def financial_year_start_year(self) -> int:
        return self.year if self.month >= 4 else self.year - 1

    @property
    def financial_year(self) -> str:
        start_year = self.financial_year_start_year
        return f"{start_year}-{start_year + 1}"

    @property
    def first_period_of_financial_year(self) -> PayPeriod:
        return PayPeriod(self.financial_year_start_year, 4)

    @property
    def months_remaining_in_financial_year(self) -> int:
        """Months left in the financial year, counting this one (April = 12, March = 1)."""
        return (3 - self.month) % 12 + 1

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)


class ComponentType(str, Enum):
    """Compensation component kinds."""

    EARNING = "earning"
    DEDUCTION = "deduction"


class SkipReason(str, Enum):
    """Reason codes for employees left out of a run."""

    COMPENSATION_NOT_FOUND = "compensation_not_found"
    NO_WORKING_DAYS = "no_working_days"


@dataclass
class ComponentAmount:
    """Monthly amount of one compensation component."""

    code: str
    name: str
    component_type: ComponentType
    amount: Decimal
    is_taxable: bool = True
    # Set when a deduction was cut short because earned pay ran out
    scheduled_amount: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "code": self.code,
            "name": self.name,
            "type": self.component_type.value,
            "amount": str(self.amount),
            "is_taxable": self.is_taxable,
        }
        if self.scheduled_amount is not None:
            data["scheduled_amount"] = str(self.scheduled_amount)
        return data


@dataclass(frozen=True)
class AttendanceDays:
    """Working and paid day counts inside the employment window."""

    working_days: int
    paid_days: Decimal
    calendar_working_days: int

    @property
    def lwp_days(self) -> Decimal:
        return Decimal(self.working_days) - self.paid_days

    @property
    def employment_ratio(self) -> Decimal:
        """Share of the month's working days the employee was employed for."""
        if self.calendar_working_days == 0:
            return ZERO
        return Decimal(self.working_days) / Decimal(self.calendar_working_days)


@dataclass(frozen=True)
class ProrationResult:
    """Paid versus working days for one employee and period."""

    working_days: int
    paid_days: Decimal
    lwp_days: Decimal
    lwp_deduction: Decimal
    calendar_working_days: int


@dataclass(frozen=True)
class StatutoryRates:
    """Statutory contribution parameters in force on a date."""

    pf_wage_ceiling: Decimal
    pf_employee_rate: Decimal  # Percent, e.g. 12 for 12%
    pf_employer_rate: Decimal
    esi_wage_ceiling: Decimal
    esi_employee_rate: Decimal
    esi_employer_rate: Decimal
    # State name -> ((above, amount), ...) sorted high to low
    professional_tax_slabs: dict[str, tuple[tuple[Decimal, Decimal], ...]] = field(
        default_factory=dict
    )
    effective_from: date | None = None


@dataclass(frozen=True)
class StatutoryContribution:
    """Employee and employer shares of a statutory contribution."""

    employee: Decimal = ZERO
    employer: Decimal = ZERO


@dataclass(frozen=True)
class PeriodContributions:
    """Statutory contributions for one employee-month."""

    pf: StatutoryContribution = field(default_factory=StatutoryContribution)
    esi: StatutoryContribution = field(default_factory=StatutoryContribution)
    professional_tax: Decimal = ZERO

    @property
    def employee_total(self) -> Decimal:
        """Employee-side contributions deducted from pay."""
        return self.pf.employee + self.esi.employee + self.professional_tax


@dataclass(frozen=True)
class TaxBracket:
    """Tax slab for progressive taxation: income in (min_amount, max_amount]."""

    min_amount: Decimal
    max_amount: Decimal | None  # None = no upper limit
    rate: Decimal  # Percent, e.g. 5 for 5%


@dataclass(frozen=True)
class RegimeRules:
    """Tax regime configuration for one financial year."""

    name: str
    financial_year: str
    standard_deduction: Decimal
    cess_percent: Decimal
    brackets: tuple[TaxBracket, ...]
    allows_declarations: bool


@dataclass
class TdsComputation:
    """Intermediate figures of a monthly TDS computation."""

    regime: str
    annual_gross: Decimal
    standard_deduction: Decimal
    declaration_deductions: Decimal
    taxable_income: Decimal
    annual_tax: Decimal
    cess: Decimal
    already_withheld: Decimal
    months_remaining: int
    monthly_tds: Decimal
    months_employed: int = 12

    def to_dict(self) -> dict[str, Any]:
        return {
            "regime": self.regime,
            "annual_gross": str(self.annual_gross),
            "standard_deduction": str(self.standard_deduction),
            "declaration_deductions": str(self.declaration_deductions),
            "taxable_income": str(self.taxable_income),
            "annual_tax": str(self.annual_tax),
            "cess": str(self.cess),
            "already_withheld": str(self.already_withheld),
            "months_remaining": self.months_remaining,
            "monthly_tds": str(self.monthly_tds),
            "months_employed": self.months_employed,
        }


@dataclass
class EntryCandidate:
    """A computed payroll entry before persistence."""

    employee_id: UUID
    compensation_structure_id: UUID | None
    annual_ctc: Decimal
    tax_regime: str
    working_days: int
    paid_days: Decimal
    lwp_days: Decimal
    lwp_deduction: Decimal
    gross_earnings: Decimal
    pf_employee: Decimal = ZERO
    pf_employer: Decimal = ZERO
    esi_employee: Decimal = ZERO
    esi_employer: Decimal = ZERO
    professional_tax: Decimal = ZERO
    tds_amount: Decimal = ZERO
    other_deductions: Decimal = ZERO
    earnings: list[ComponentAmount] = field(default_factory=list)
    deductions: list[ComponentAmount] = field(default_factory=list)
    tds: TdsComputation | None = None

    @property
    def total_deductions(self) -> Decimal:
        return (
            self.lwp_deduction
            + self.pf_employee
            + self.esi_employee
            + self.professional_tax
            + self.tds_amount
            + self.other_deductions
        )

    @property
    def net_pay(self) -> Decimal:
        return self.gross_earnings - self.total_deductions


@dataclass(frozen=True)
class SkippedEmployee:
    """Employee excluded from a run, with the reason."""

    employee_id: UUID
    reason_code: SkipReason
    message: str


@dataclass
class RunCalculationResult:
    """Result of computing every employee of a run."""

    entries: list[EntryCandidate] = field(default_factory=list)
    skipped: list[SkippedEmployee] = field(default_factory=list)

    @property
    def total_gross(self) -> Decimal:
        return sum((e.gross_earnings for e in self.entries), ZERO)

    @property
    def total_deductions(self) -> Decimal:
        return sum((e.total_deductions for e in self.entries), ZERO)

    @property
    def total_net(self) -> Decimal:
        return sum((e.net_pay for e in self.entries), ZERO)
