"""Tax reference data, statutory rate tables and investment declarations."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payrun_engine.models.base import Base, TimestampMixin


# ===== Tax Regimes & Slabs =====


class TaxRegime(Base, TimestampMixin):
    """Named income-tax ruleset for one financial year."""

    __tablename__ = "tax_regime"

    tax_regime_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    financial_year: Mapped[str] = mapped_column(String, nullable=False)
    standard_deduction: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    cess_percent: Mapped[Decimal] = mapped_column(
        Numeric(7, 4), nullable=False, default=Decimal("0")
    )
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Old-style regimes let approved investment declarations reduce taxable income
    allows_declarations: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("name", "financial_year", name="tax_regime_name_year_unique"),
    )

    # Relationships
    slabs: Mapped[list[TaxSlab]] = relationship(
        back_populates="regime",
        cascade="all, delete-orphan",
        order_by="TaxSlab.income_from",
    )


class TaxSlab(Base):
    """Marginal rate for an income band (income_from, income_to]."""

    __tablename__ = "tax_slab"

    tax_slab_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    tax_regime_id: Mapped[UUID] = mapped_column(
        ForeignKey("tax_regime.tax_regime_id", ondelete="CASCADE"),
        nullable=False,
    )
    income_from: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    income_to: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    rate_percent: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)

    __table_args__ = (
        CheckConstraint(
            "income_to IS NULL OR income_to > income_from",
            name="tax_slab_range_check",
        ),
        CheckConstraint("rate_percent >= 0", name="tax_slab_rate_check"),
    )

    # Relationships
    regime: Mapped[TaxRegime] = relationship(back_populates="slabs")


# ===== Statutory Contributions =====


class StatutoryRateTable(Base, TimestampMixin):
    """PF, ESI and professional tax parameters versioned by effective date.

    Rows are never updated in place; a rate change closes the current row's
    effective_to and inserts a new row.
    """

    __tablename__ = "statutory_rate_table"

    statutory_rate_table_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    pf_wage_ceiling: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    pf_employee_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    pf_employer_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)

    esi_wage_ceiling: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    esi_employee_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    esi_employer_rate: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)

    # {"Karnataka": [{"above": 15000, "amount": 200}], ...} keyed by work state
    professional_tax_slabs: Mapped[dict[str, list[dict[str, Any]]]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    __table_args__ = (
        UniqueConstraint("effective_from", name="statutory_rate_effective_unique"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="statutory_rate_dates_check",
        ),
    )


# ===== Employee Tax Inputs =====


class EmployeeTaxSettings(Base, TimestampMixin):
    """Employee's regime choice and prior-employer figures for a financial year."""

    __tablename__ = "employee_tax_settings"

    employee_tax_settings_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    financial_year: Mapped[str] = mapped_column(String, nullable=False)
    tax_regime: Mapped[str | None] = mapped_column(String, nullable=True)
    previous_employer_income: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    previous_employer_tds: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )

    __table_args__ = (
        UniqueConstraint("employee_id", "financial_year", name="employee_tax_settings_year_unique"),
    )


class InvestmentDeclaration(Base, TimestampMixin):
    """Tax-saving investment declared by an employee under one section."""

    __tablename__ = "investment_declaration"

    investment_declaration_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    financial_year: Mapped[str] = mapped_column(String, nullable=False)
    section_type: Mapped[str] = mapped_column(String, nullable=False)
    declared_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    approved_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0")
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="submitted")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    submitted_by: Mapped[UUID | None] = mapped_column(nullable=True)
    reviewed_by: Mapped[UUID | None] = mapped_column(nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('submitted', 'approved', 'rejected')",
            name="investment_declaration_status_check",
        ),
        CheckConstraint(
            "section_type IN ('80C', '80D', '80E', '80G', 'HRA', 'NPS', 'OTHER')",
            name="investment_declaration_section_check",
        ),
        CheckConstraint("declared_amount >= 0", name="investment_declaration_declared_check"),
        CheckConstraint(
            "approved_amount >= 0 AND approved_amount <= declared_amount",
            name="investment_declaration_approved_check",
        ),
    )
