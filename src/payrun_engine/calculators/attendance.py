"""Attendance proration: working days, paid days and loss of pay."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.types import (
    ZERO,
    AttendanceDays,
    PayPeriod,
    ProrationResult,
    round_amount,
)
from payrun_engine.config import Settings, get_settings
from payrun_engine.models import AttendanceRecord, Employee

# Weekday numbers (Monday = 0) worked under each policy
WORK_WEEKS: dict[str, frozenset[int]] = {
    "5_day": frozenset({0, 1, 2, 3, 4}),
    "6_day": frozenset({0, 1, 2, 3, 4, 5}),
}

# Paid fraction of a working day by attendance status
PAID_FRACTION: dict[str, Decimal] = {
    "present": Decimal("1"),
    "paid_leave": Decimal("1"),
    "holiday": Decimal("1"),
    "half_day": Decimal("0.5"),
    "absent": ZERO,
    "unpaid_leave": ZERO,
}


class NoWorkingDaysError(Exception):
    """Raised when an employee has no working days in a pay period."""

    def __init__(self, employee_id: UUID, pay_period: PayPeriod):
        self.employee_id = employee_id
        self.pay_period = pay_period
        super().__init__(f"Employee {employee_id} has no working days in {pay_period}")


def working_dates(policy: str, start: date, end: date) -> list[date]:
    """Dates between start and end (inclusive) that the policy works."""
    try:
        weekdays = WORK_WEEKS[policy]
    except KeyError:
        raise ValueError(f"Unknown work-week policy '{policy}'") from None
    dates = []
    for day in PayPeriod(start.year, start.month).days():
        if start <= day <= end and day.weekday() in weekdays:
            dates.append(day)
    return dates


def employment_window(employee: Employee, period: PayPeriod) -> tuple[date, date] | None:
    """Part of the period the employee is employed for, or None."""
    start = max(period.start, employee.join_date)
    end = period.end if employee.exit_date is None else min(period.end, employee.exit_date)
    if start > end:
        return None
    return start, end


def lwp_deduction(
    gross_monthly: Decimal,
    lwp_days: Decimal,
    working_days: int,
    unit: Decimal = Decimal("1"),
) -> Decimal:
    """gross_monthly x lwp_days / working_days, rounded half-up."""
    if working_days <= 0 or lwp_days <= 0:
        return ZERO
    return round_amount(gross_monthly * lwp_days / Decimal(working_days), unit)


class AttendanceProrator:
    """Computes paid versus working days for an employee and pay period.

    Working days follow the employee's work-week policy within the calendar
    month and the employment window. A working day is paid when attendance
    marks it present, paid leave or holiday, half paid for a half day, and
    unpaid when absent or on unpaid leave. Unmarked working days count as
    present unless configured otherwise.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()

    async def prorate(
        self,
        employee: Employee,
        pay_period: PayPeriod,
        gross_monthly: Decimal,
    ) -> ProrationResult:
        """Prorate one employee's month against gross_monthly.

        Raises:
            NoWorkingDaysError: If no working day falls inside the employment window
        """
        days = await self.count_days(employee, pay_period)
        return self.apply(days, gross_monthly)

    async def count_days(self, employee: Employee, pay_period: PayPeriod) -> AttendanceDays:
        """Count working and paid days inside the employment window.

        Raises:
            NoWorkingDaysError: If no working day falls inside the employment window
        """
        calendar_days = working_dates(employee.work_week_policy, pay_period.start, pay_period.end)

        window = employment_window(employee, pay_period)
        days = working_dates(employee.work_week_policy, *window) if window else []
        if not days:
            raise NoWorkingDaysError(employee.employee_id, pay_period)

        statuses = await self._load_statuses(employee.employee_id, days[0], days[-1])
        unmarked = Decimal("1") if self.settings.unmarked_days_are_present else ZERO

        paid_days = ZERO
        for day in days:
            status = statuses.get(day)
            paid_days += unmarked if status is None else PAID_FRACTION.get(status, ZERO)

        return AttendanceDays(
            working_days=len(days),
            paid_days=paid_days,
            calendar_working_days=len(calendar_days),
        )

    def apply(self, days: AttendanceDays, gross_monthly: Decimal) -> ProrationResult:
        """Turn day counts into a loss-of-pay deduction on gross_monthly."""
        return ProrationResult(
            working_days=days.working_days,
            paid_days=days.paid_days,
            lwp_days=days.lwp_days,
            lwp_deduction=lwp_deduction(
                gross_monthly, days.lwp_days, days.working_days, self.settings.rounding_unit
            ),
            calendar_working_days=days.calendar_working_days,
        )

    async def _load_statuses(self, employee_id: UUID, start: date, end: date) -> dict[date, str]:
        result = await self.session.execute(
            select(AttendanceRecord.attendance_date, AttendanceRecord.status).where(
                AttendanceRecord.employee_id == employee_id,
                AttendanceRecord.attendance_date >= start,
                AttendanceRecord.attendance_date <= end,
            )
        )
        return {row.attendance_date: row.status for row in result}
