"""Payroll run, entry, generation log and audit models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payrun_engine.models.base import Base, TimestampMixin

ZERO = Decimal("0")


class PayrollRun(Base, TimestampMixin):
    """Monthly payroll run for one organization and pay period."""

    __tablename__ = "payroll_run"

    payroll_run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    pay_period: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft")

    employee_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_gross: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    total_net: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)

    generation_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    engine_version: Mapped[str | None] = mapped_column(String, nullable=True)

    generated_by: Mapped[UUID | None] = mapped_column(nullable=True)
    reviewed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    approved_by: Mapped[UUID | None] = mapped_column(nullable=True)
    locked_by: Mapped[UUID | None] = mapped_column(nullable=True)
    generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "pay_period", name="payroll_run_org_period_unique"),
        CheckConstraint(
            "status IN ('draft', 'processing', 'completed', 'under_review', 'approved', 'locked')",
            name="payroll_run_status_check",
        ),
    )

    # Relationships
    entries: Mapped[list[PayrollEntry]] = relationship(
        back_populates="payroll_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    generation_log: Mapped[list[GenerationLogEntry]] = relationship(
        back_populates="payroll_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class PayrollEntry(Base, TimestampMixin):
    """One employee's computed pay within a payroll run."""

    __tablename__ = "payroll_entry"

    payroll_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.payroll_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    compensation_structure_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("compensation_structure.compensation_structure_id"),
        nullable=True,
    )
    tax_regime: Mapped[str] = mapped_column(String, nullable=False)

    annual_ctc: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    working_days: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_days: Mapped[Decimal] = mapped_column(Numeric(5, 1), nullable=False)
    lwp_days: Mapped[Decimal] = mapped_column(Numeric(5, 1), nullable=False, default=ZERO)
    lwp_deduction: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    gross_earnings: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    pf_employee: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    pf_employer: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    esi_employee: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    esi_employer: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    professional_tax: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    tds_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    other_deductions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=ZERO)
    total_deductions: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    net_pay: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    earnings_breakdown: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    deductions_breakdown: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    # Monthly TDS figures as computed, before limiting to earned pay
    tds_computation: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("payroll_run_id", "employee_id", name="payroll_entry_run_employee_unique"),
        CheckConstraint("working_days > 0", name="payroll_entry_working_days_check"),
        CheckConstraint("net_pay >= 0", name="payroll_entry_net_pay_check"),
        CheckConstraint(
            "lwp_days >= 0 AND lwp_days <= working_days",
            name="payroll_entry_lwp_days_check",
        ),
    )

    # Relationships
    payroll_run: Mapped[PayrollRun] = relationship(back_populates="entries")


class GenerationLogEntry(Base, TimestampMixin):
    """Per-employee warning recorded while generating a run."""

    __tablename__ = "generation_log_entry"

    generation_log_entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_run.payroll_run_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    reason_code: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "reason_code IN ('compensation_not_found', 'no_working_days')",
            name="generation_log_reason_check",
        ),
    )

    # Relationships
    payroll_run: Mapped[PayrollRun] = relationship(back_populates="generation_log")


class AuditEvent(Base, TimestampMixin):
    """Audit trail entry."""

    __tablename__ = "audit_event"

    audit_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    actor_user_id: Mapped[UUID | None] = mapped_column(nullable=True)
    entity_type: Mapped[str] = mapped_column(String, nullable=False)
    entity_id: Mapped[UUID] = mapped_column(nullable=False)
    action: Mapped[str] = mapped_column(String, nullable=False)
    details_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    __table_args__ = (Index("ix_audit_event_entity", "entity_type", "entity_id"),)
