"""Payroll calculation engine."""

from payrun_engine.calculators.attendance import AttendanceProrator, NoWorkingDaysError
from payrun_engine.calculators.compensation_resolver import (
    CompensationNotFoundError,
    CompensationResolver,
)
from payrun_engine.calculators.engine import PayrollEngine
from payrun_engine.calculators.tax_calculator import TdsCalculator
from payrun_engine.calculators.tax_rules import StatutoryConfigMissingError, TaxRuleStore
from payrun_engine.calculators.types import PayPeriod

__all__ = [
    "AttendanceProrator",
    "CompensationNotFoundError",
    "CompensationResolver",
    "NoWorkingDaysError",
    "PayPeriod",
    "PayrollEngine",
    "StatutoryConfigMissingError",
    "TaxRuleStore",
    "TdsCalculator",
]
