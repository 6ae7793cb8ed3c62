"""ORM models for the payrun engine."""

from payrun_engine.models.base import Base, TimestampMixin, utcnow
from payrun_engine.models.compensation import CompensationComponent, CompensationStructure
from payrun_engine.models.employee import AttendanceRecord, Employee, Organization
from payrun_engine.models.payroll import AuditEvent, GenerationLogEntry, PayrollEntry, PayrollRun
from payrun_engine.models.tax import (
    EmployeeTaxSettings,
    InvestmentDeclaration,
    StatutoryRateTable,
    TaxRegime,
    TaxSlab,
)

__all__ = [
    "AttendanceRecord",
    "AuditEvent",
    "Base",
    "CompensationComponent",
    "CompensationStructure",
    "Employee",
    "EmployeeTaxSettings",
    "GenerationLogEntry",
    "InvestmentDeclaration",
    "Organization",
    "PayrollEntry",
    "PayrollRun",
    "StatutoryRateTable",
    "TaxRegime",
    "TaxSlab",
    "TimestampMixin",
    "utcnow",
]
