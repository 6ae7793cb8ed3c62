"""Payroll calculation engine - per-employee orchestration."""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.attendance import (
    AttendanceProrator,
    NoWorkingDaysError,
    employment_window,
)
from payrun_engine.calculators.compensation_resolver import (
    CompensationNotFoundError,
    CompensationResolver,
)
from payrun_engine.calculators.statutory import compute_period_contributions
from payrun_engine.calculators.tax_calculator import TdsCalculator, taxable_annual_earnings
from payrun_engine.calculators.tax_rules import TaxRuleStore
from payrun_engine.calculators.types import (
    ZERO,
    ComponentAmount,
    ComponentType,
    EntryCandidate,
    PayPeriod,
    RunCalculationResult,
    SkippedEmployee,
    SkipReason,
    StatutoryRates,
    round_amount,
)
from payrun_engine.config import Settings, get_settings
from payrun_engine.models import CompensationStructure, Employee

logger = logging.getLogger(__name__)

BASIC_CODE = "BASIC"
LWP_CODE = "LWP"

# Deduction codes the engine computes itself; fixed amounts on a structure are ignored
STATUTORY_CODES = frozenset(
    {"PF_EMPLOYEE", "PF_EMPLOYER", "ESI_EMPLOYEE", "ESI_EMPLOYER", "PROFESSIONAL_TAX", "TDS"}
)

TWELVE = Decimal("12")


def build_deduction_lines(
    fixed: Iterable[ComponentAmount],
    *,
    lwp_deduction: Decimal,
    pf_employee: Decimal,
    esi_employee: Decimal,
    professional_tax: Decimal,
    tds_amount: Decimal,
) -> list[ComponentAmount]:
    """Deduction breakdown in payslip order, zero lines dropped."""
    computed = [
        (LWP_CODE, "Loss of Pay", lwp_deduction),
        ("PF_EMPLOYEE", "Provident Fund (Employee)", pf_employee),
        ("ESI_EMPLOYEE", "ESI (Employee)", esi_employee),
        ("PROFESSIONAL_TAX", "Professional Tax", professional_tax),
        ("TDS", "Income Tax (TDS)", tds_amount),
    ]
    lines = [
        ComponentAmount(code, name, ComponentType.DEDUCTION, amount, is_taxable=False)
        for code, name, amount in computed
        if amount > 0
    ]
    lines.extend(fixed)
    return lines


def fixed_deductions_from_breakdown(breakdown: list[dict[str, Any]]) -> list[ComponentAmount]:
    """Non-statutory deduction lines of a persisted entry.

    Lines cut short by earned pay come back at their scheduled amount.
    """
    return [
        ComponentAmount(
            code=line["code"],
            name=line["name"],
            component_type=ComponentType.DEDUCTION,
            amount=Decimal(line.get("scheduled_amount") or line["amount"]),
            is_taxable=line.get("is_taxable", False),
        )
        for line in breakdown
        if line["code"] != LWP_CODE and line["code"] not in STATUTORY_CODES
    ]


def limit_to_earned_pay(
    earned_pay: Decimal,
    statutory: Decimal,
    tds_amount: Decimal,
    fixed: Iterable[ComponentAmount],
) -> tuple[Decimal, list[ComponentAmount]]:
    """TDS and fixed deductions limited to what statutory contributions leave.

    TDS is taken first, then fixed deductions in structure order, so net pay
    never goes below zero. TDS not taken is not counted as withheld and
    later months' projections pick it up.
    """
    available = max(earned_pay - statutory, ZERO)
    tds = min(tds_amount, available)
    available -= tds

    limited = []
    for line in fixed:
        amount = min(line.amount, available)
        available -= amount
        if amount < line.amount:
            line = replace(line, amount=amount, scheduled_amount=line.amount)
        limited.append(line)
    return tds, limited


def basic_from_breakdown(breakdown: list[dict[str, Any]]) -> Decimal:
    """Monthly basic of a persisted entry's earnings breakdown."""
    for line in breakdown:
        if line["code"] == BASIC_CODE:
            return Decimal(line["amount"])
    return ZERO


class PayrollEngine:
    """Main payroll calculation engine.

    Calculation pipeline (stable order per employee):
    1) Check the employment window overlaps the period
    2) Resolve the compensation structure in force at the window's end
    3) Count working and paid days from attendance
    4) Monthly earnings and fixed deductions, prorated for partial employment
    5) Loss-of-pay deduction on gross
    6) PF, ESI and the work state's professional tax on earned pay
    7) TDS from projected annual taxable earnings
    8) TDS and fixed deductions limited to the earned pay left

    Employees without a structure or without working days are skipped and
    reported; every other exception propagates.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.tax_rules = TaxRuleStore(session, self.settings)
        self.compensation_resolver = CompensationResolver(session)
        self.prorator = AttendanceProrator(session, self.settings)
        self.tds_calculator = TdsCalculator(session, self.tax_rules, self.settings)

    async def calculate_run(
        self,
        organization_id: UUID,
        pay_period: PayPeriod,
        rates: StatutoryRates,
    ) -> RunCalculationResult:
        """Calculate entries for every payable employee of an organization."""
        result = RunCalculationResult()

        for employee in await self._load_employees(organization_id, pay_period):
            try:
                candidate = await self.calculate_employee(employee, pay_period, rates)
            except CompensationNotFoundError as e:
                result.skipped.append(
                    self._skip(employee, SkipReason.COMPENSATION_NOT_FOUND, str(e), pay_period)
                )
                continue
            except NoWorkingDaysError as e:
                result.skipped.append(
                    self._skip(employee, SkipReason.NO_WORKING_DAYS, str(e), pay_period)
                )
                continue
            result.entries.append(candidate)

        return result

    async def calculate_employee(
        self,
        employee: Employee,
        pay_period: PayPeriod,
        rates: StatutoryRates,
    ) -> EntryCandidate:
        """Calculate one employee's entry.

        Raises:
            NoWorkingDaysError: If the employee has no working day in the period
            CompensationNotFoundError: If no structure covers the period
        """
        window = employment_window(employee, pay_period)
        if window is None:
            raise NoWorkingDaysError(employee.employee_id, pay_period)

        structure = await self.compensation_resolver.resolve(employee.employee_id, window[1])
        days = await self.prorator.count_days(employee, pay_period)

        earnings, fixed_deductions = self._monthly_components(structure, days.employment_ratio)
        gross = sum((line.amount for line in earnings), ZERO)
        basic = sum((line.amount for line in earnings if line.code == BASIC_CODE), ZERO)

        proration = self.prorator.apply(days, gross)
        contributions = compute_period_contributions(
            basic_monthly=basic,
            gross_monthly=gross,
            lwp_deduction=proration.lwp_deduction,
            paid_days=proration.paid_days,
            working_days=proration.working_days,
            rates=rates,
            unit=self.settings.rounding_unit,
            state=employee.work_state,
        )
        if employee.work_state not in rates.professional_tax_slabs:
            logger.warning(
                "No professional tax slabs for state %r of employee %s",
                employee.work_state,
                employee.employee_code,
            )

        tds = await self.tds_calculator.compute_monthly_tds(
            employee.employee_id,
            pay_period,
            organization_id=employee.organization_id,
            annual_taxable_earnings=taxable_annual_earnings(structure),
            join_date=employee.join_date,
        )
        tds_amount, fixed_deductions = limit_to_earned_pay(
            gross - proration.lwp_deduction,
            contributions.employee_total,
            tds.monthly_tds,
            fixed_deductions,
        )
        if tds_amount < tds.monthly_tds:
            logger.info(
                "TDS of employee %s for %s limited to %s of %s by earned pay",
                employee.employee_code,
                pay_period,
                tds_amount,
                tds.monthly_tds,
            )

        return EntryCandidate(
            employee_id=employee.employee_id,
            compensation_structure_id=structure.compensation_structure_id,
            annual_ctc=structure.annual_ctc,
            tax_regime=tds.regime,
            working_days=proration.working_days,
            paid_days=proration.paid_days,
            lwp_days=proration.lwp_days,
            lwp_deduction=proration.lwp_deduction,
            gross_earnings=gross,
            pf_employee=contributions.pf.employee,
            pf_employer=contributions.pf.employer,
            esi_employee=contributions.esi.employee,
            esi_employer=contributions.esi.employer,
            professional_tax=contributions.professional_tax,
            tds_amount=tds_amount,
            other_deductions=sum((line.amount for line in fixed_deductions), ZERO),
            earnings=earnings,
            deductions=build_deduction_lines(
                fixed_deductions,
                lwp_deduction=proration.lwp_deduction,
                pf_employee=contributions.pf.employee,
                esi_employee=contributions.esi.employee,
                professional_tax=contributions.professional_tax,
                tds_amount=tds_amount,
            ),
            tds=tds,
        )

    def _monthly_components(
        self,
        structure: CompensationStructure,
        employment_ratio: Decimal,
    ) -> tuple[list[ComponentAmount], list[ComponentAmount]]:
        """Monthly earning and fixed deduction lines of a structure."""
        earnings: list[ComponentAmount] = []
        deductions: list[ComponentAmount] = []

        for component in sorted(structure.components, key=lambda c: c.display_order):
            if not component.is_earning and component.component_code in STATUTORY_CODES:
                continue
            monthly = round_amount(
                component.annual_amount / TWELVE * employment_ratio,
                self.settings.rounding_unit,
            )
            line = ComponentAmount(
                code=component.component_code,
                name=component.component_name,
                component_type=ComponentType(component.component_type),
                amount=monthly,
                is_taxable=component.is_taxable,
            )
            (earnings if component.is_earning else deductions).append(line)

        return earnings, deductions

    async def _load_employees(self, organization_id: UUID, pay_period: PayPeriod) -> list[Employee]:
        """Active employees plus anyone who left during the period."""
        result = await self.session.execute(
            select(Employee)
            .where(
                Employee.organization_id == organization_id,
                or_(Employee.status == "active", Employee.exit_date >= pay_period.start),
            )
            .order_by(Employee.employee_code)
        )
        return list(result.scalars().all())

    def _skip(
        self,
        employee: Employee,
        reason: SkipReason,
        message: str,
        pay_period: PayPeriod,
    ) -> SkippedEmployee:
        logger.warning(
            "Skipping employee %s (%s) for %s: %s",
            employee.employee_code,
            employee.employee_id,
            pay_period,
            reason.value,
        )
        return SkippedEmployee(employee_id=employee.employee_id, reason_code=reason, message=message)
