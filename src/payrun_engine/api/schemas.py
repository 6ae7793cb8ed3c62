"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Payroll run schemas
# ============================================================================


class PayrollRunCreate(BaseModel):
    """Schema for generating a payroll run."""

    pay_period: str = Field(pattern=r"^\d{4}-\d{2}$", examples=["2025-01"])


class PayrollRunResponse(BaseModel):
    """Schema for payroll run response."""

    model_config = ConfigDict(from_attributes=True)

    payroll_run_id: UUID
    organization_id: UUID
    pay_period: str
    status: str
    employee_count: int
    skipped_count: int
    total_gross: Decimal
    total_deductions: Decimal
    total_net: Decimal
    generation_error: str | None = None
    engine_version: str | None = None
    generated_by: UUID | None = None
    generated_at: datetime | None = None
    reviewed_by: UUID | None = None
    reviewed_at: datetime | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    locked_by: UUID | None = None
    locked_at: datetime | None = None
    created_at: datetime


class PayrollRunListResponse(BaseModel):
    """Schema for listing payroll runs."""

    items: list[PayrollRunResponse]
    total: int


class BreakdownLine(BaseModel):
    """One earning or deduction line of an entry."""

    code: str
    name: str
    type: str
    amount: Decimal
    is_taxable: bool = False
    scheduled_amount: Decimal | None = None


class PayrollEntryResponse(BaseModel):
    """Schema for payroll entry response."""

    model_config = ConfigDict(from_attributes=True)

    payroll_entry_id: UUID
    payroll_run_id: UUID
    employee_id: UUID
    compensation_structure_id: UUID | None = None
    tax_regime: str
    annual_ctc: Decimal
    working_days: int
    paid_days: Decimal
    lwp_days: Decimal
    lwp_deduction: Decimal
    gross_earnings: Decimal
    pf_employee: Decimal
    pf_employer: Decimal
    esi_employee: Decimal
    esi_employer: Decimal
    professional_tax: Decimal
    tds_amount: Decimal
    other_deductions: Decimal
    total_deductions: Decimal
    net_pay: Decimal
    earnings_breakdown: list[BreakdownLine]
    deductions_breakdown: list[BreakdownLine]


class PayrollEntryListResponse(BaseModel):
    """Schema for listing a run's entries."""

    items: list[PayrollEntryResponse]
    total: int


class EntryLwpUpdate(BaseModel):
    """Schema for adjusting loss-of-pay days on an entry."""

    lwp_days: Decimal = Field(ge=0, multiple_of=Decimal("0.5"))


class GenerationLogResponse(BaseModel):
    """Schema for a skipped employee."""

    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    reason_code: str
    message: str


class GenerationResponse(BaseModel):
    """Schema for the outcome of generating or regenerating a run."""

    run: PayrollRunResponse
    skipped: list[GenerationLogResponse]


# ============================================================================
# Investment declaration schemas
# ============================================================================


class DeclarationCreate(BaseModel):
    """Schema for submitting an investment declaration."""

    employee_id: UUID
    financial_year: str = Field(pattern=r"^\d{4}-\d{4}$", examples=["2025-2026"])
    section_type: str
    declared_amount: Decimal = Field(ge=0)
    notes: str | None = None


class DeclarationApprove(BaseModel):
    """Schema for approving a declaration."""

    approved_amount: Decimal | None = Field(default=None, ge=0)


class DeclarationReject(BaseModel):
    """Schema for rejecting a declaration."""

    notes: str | None = None


class DeclarationResponse(BaseModel):
    """Schema for investment declaration response."""

    model_config = ConfigDict(from_attributes=True)

    investment_declaration_id: UUID
    organization_id: UUID
    employee_id: UUID
    financial_year: str
    section_type: str
    declared_amount: Decimal
    approved_amount: Decimal
    status: str
    notes: str | None = None
    submitted_by: UUID | None = None
    reviewed_by: UUID | None = None
    reviewed_at: datetime | None = None
    created_at: datetime


class DeclarationListResponse(BaseModel):
    """Schema for listing declarations."""

    items: list[DeclarationResponse]
    total: int


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    code: str | None = None
