"""Monthly TDS (income tax withheld at source) calculation."""

from __future__ import annotations

from collections import defaultdict
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.compensation_resolver import CompensationResolver
from payrun_engine.calculators.tax_rules import TaxRuleStore, section_limit
from payrun_engine.calculators.types import (
    HUNDRED,
    ZERO,
    PayPeriod,
    RegimeRules,
    TaxBracket,
    TdsComputation,
    round_amount,
)
from payrun_engine.config import Settings, get_settings
from payrun_engine.models import (
    CompensationStructure,
    Employee,
    EmployeeTaxSettings,
    InvestmentDeclaration,
    PayrollEntry,
    PayrollRun,
)

TWELVE = Decimal("12")

# Runs whose entries count as tax actually withheld
WITHHELD_RUN_STATUSES = ("completed", "under_review", "approved", "locked")


def taxable_annual_earnings(structure: CompensationStructure) -> Decimal:
    """Sum of the structure's taxable earning components."""
    return sum(
        (c.annual_amount for c in structure.components if c.is_earning and c.is_taxable),
        ZERO,
    )


def months_employed_in_year(join_date: date | None, pay_period: PayPeriod) -> int:
    """Months of the pay period's financial year from joining to March.

    The joining month counts in full. Employees who joined before the year
    started are employed for all 12 months.
    """
    first = pay_period.first_period_of_financial_year
    if join_date is None or join_date <= first.start:
        return 12
    return PayPeriod(join_date.year, join_date.month).months_remaining_in_financial_year


class TdsCalculator:
    """Derives a month's TDS from projected annual tax.

    Pipeline per employee:
    1) Annualize taxable income: taxable earnings here, projected over the
       months employed this financial year, plus any previous-employer
       income, less the regime's standard deduction, and for regimes that
       allow them, approved declarations capped per section
    2) Apply the regime's progressive slabs, then cess
    3) Subtract tax already withheld this financial year and spread the
       remainder over the months left, this one included
    4) Clamp to zero and round
    """

    def __init__(
        self,
        session: AsyncSession,
        tax_rules: TaxRuleStore | None = None,
        settings: Settings | None = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.tax_rules = tax_rules or TaxRuleStore(session, self.settings)
        self.compensation_resolver = CompensationResolver(session)

    async def compute_monthly_tds(
        self,
        employee_id: UUID,
        pay_period: PayPeriod,
        regime: str | None = None,
        *,
        organization_id: UUID,
        annual_taxable_earnings: Decimal | None = None,
        join_date: date | None = None,
    ) -> TdsComputation:
        """Compute TDS for one employee and month.

        Args:
            employee_id: Employee to compute for
            pay_period: Month being paid
            regime: Regime name; when None the employee's choice for the
                financial year is used, then the organization default
            organization_id: Tenant whose earlier runs hold withheld TDS
            annual_taxable_earnings: Full-year taxable earnings of the
                structure; resolved from the compensation structure when omitted
            join_date: Employee's joining date; loaded when omitted

        Raises:
            StatutoryConfigMissingError: If the regime has no slabs for the year
            CompensationNotFoundError: If earnings must be resolved and no structure applies
        """
        financial_year = pay_period.financial_year
        tax_settings = await self._get_tax_settings(employee_id, financial_year)

        regime_name = regime
        if regime_name is None and tax_settings is not None:
            regime_name = tax_settings.tax_regime
        if regime_name is None:
            regime_name = await self.tax_rules.get_default_regime_name(
                organization_id, financial_year
            )
        rules = await self.tax_rules.get_regime(financial_year, regime_name)

        if annual_taxable_earnings is None:
            structure = await self.compensation_resolver.resolve(employee_id, pay_period.end)
            annual_taxable_earnings = taxable_annual_earnings(structure)
        if join_date is None:
            join_date = await self.session.scalar(
                select(Employee.join_date).where(Employee.employee_id == employee_id)
            )

        months_employed = months_employed_in_year(join_date, pay_period)
        previous_income = tax_settings.previous_employer_income if tax_settings else ZERO
        previous_tds = tax_settings.previous_employer_tds if tax_settings else ZERO
        annual_gross = (
            self.project_earnings(annual_taxable_earnings, months_employed) + previous_income
        )

        declaration_deductions = ZERO
        if rules.allows_declarations:
            approved = await self.approved_total_by_section(
                organization_id, employee_id, financial_year
            )
            declaration_deductions = self.capped_declaration_total(approved)

        taxable_income = self.annualize_taxable_income(
            annual_gross, rules.standard_deduction, declaration_deductions
        )
        slab_tax = self._calculate_progressive_tax(taxable_income, rules.brackets)
        cess = self._calculate_cess(slab_tax, rules)

        withheld = await self._get_withheld_this_year(employee_id, organization_id, pay_period)
        already_withheld = withheld + previous_tds
        months_remaining = pay_period.months_remaining_in_financial_year

        monthly_tds = self._spread_over_remaining_months(
            slab_tax + cess, already_withheld, months_remaining
        )

        return TdsComputation(
            regime=rules.name,
            annual_gross=annual_gross,
            standard_deduction=rules.standard_deduction,
            declaration_deductions=declaration_deductions,
            taxable_income=taxable_income,
            annual_tax=slab_tax,
            cess=cess,
            already_withheld=already_withheld,
            months_remaining=months_remaining,
            monthly_tds=monthly_tds,
            months_employed=months_employed,
        )

    @staticmethod
    def project_earnings(annual_taxable_earnings: Decimal, months_employed: int) -> Decimal:
        """Share of a full year's earnings paid over the months employed."""
        if months_employed >= 12:
            return annual_taxable_earnings
        return (annual_taxable_earnings * Decimal(months_employed) / TWELVE).quantize(
            Decimal("0.01")
        )

    @staticmethod
    def annualize_taxable_income(
        annual_gross: Decimal,
        standard_deduction: Decimal,
        declaration_deductions: Decimal = ZERO,
    ) -> Decimal:
        """Annual gross less standard deduction and declarations, floored at zero."""
        return max(annual_gross - standard_deduction - declaration_deductions, ZERO)

    @staticmethod
    def capped_declaration_total(approved_by_section: dict[str, Decimal]) -> Decimal:
        """Sum approved declaration amounts, each section capped at its limit."""
        total = ZERO
        for section, amount in approved_by_section.items():
            limit = section_limit(section)
            total += min(amount, limit) if limit > 0 else amount
        return total

    async def approved_total_by_section(
        self,
        organization_id: UUID,
        employee_id: UUID,
        financial_year: str,
    ) -> dict[str, Decimal]:
        """Approved amounts summed per section, before section caps.

        Submitted and rejected declarations do not count.
        """
        result = await self.session.execute(
            select(InvestmentDeclaration.section_type, InvestmentDeclaration.approved_amount).where(
                InvestmentDeclaration.organization_id == organization_id,
                InvestmentDeclaration.employee_id == employee_id,
                InvestmentDeclaration.financial_year == financial_year,
                InvestmentDeclaration.status == "approved",
            )
        )
        totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for row in result:
            totals[row.section_type] += row.approved_amount
        return dict(totals)

    def _calculate_progressive_tax(
        self,
        income: Decimal,
        brackets: tuple[TaxBracket, ...] | list[TaxBracket],
    ) -> Decimal:
        """Calculate annual tax using progressive slabs."""
        if income <= 0:
            return ZERO

        total_tax = ZERO
        for bracket in sorted(brackets, key=lambda b: b.min_amount):
            if income <= bracket.min_amount:
                break
            upper = income if bracket.max_amount is None else min(income, bracket.max_amount)
            taxable_in_bracket = upper - bracket.min_amount
            if taxable_in_bracket > 0:
                total_tax += taxable_in_bracket * bracket.rate / HUNDRED

        return total_tax.quantize(Decimal("0.01"))

    def _calculate_cess(self, slab_tax: Decimal, rules: RegimeRules) -> Decimal:
        """Health and education cess on slab tax."""
        return (slab_tax * rules.cess_percent / HUNDRED).quantize(Decimal("0.01"))

    def _spread_over_remaining_months(
        self,
        annual_tax: Decimal,
        already_withheld: Decimal,
        months_remaining: int,
    ) -> Decimal:
        """Remaining annual tax divided evenly over the months left."""
        remaining = annual_tax - already_withheld
        if remaining <= 0 or months_remaining <= 0:
            return ZERO
        return round_amount(remaining / Decimal(months_remaining), self.settings.rounding_unit)

    async def _get_tax_settings(
        self, employee_id: UUID, financial_year: str
    ) -> EmployeeTaxSettings | None:
        result = await self.session.execute(
            select(EmployeeTaxSettings).where(
                EmployeeTaxSettings.employee_id == employee_id,
                EmployeeTaxSettings.financial_year == financial_year,
            )
        )
        return result.scalar_one_or_none()

    async def _get_withheld_this_year(
        self,
        employee_id: UUID,
        organization_id: UUID,
        pay_period: PayPeriod,
    ) -> Decimal:
        """TDS on this employee's entries in earlier completed runs of the financial year."""
        result = await self.session.execute(
            select(PayrollEntry.tds_amount)
            .join(PayrollRun, PayrollRun.payroll_run_id == PayrollEntry.payroll_run_id)
            .where(
                PayrollRun.organization_id == organization_id,
                PayrollRun.status.in_(WITHHELD_RUN_STATUSES),
                PayrollEntry.employee_id == employee_id,
                PayrollRun.pay_period >= str(pay_period.first_period_of_financial_year),
                PayrollRun.pay_period < str(pay_period),
            )
        )
        return sum(result.scalars().all(), ZERO)
