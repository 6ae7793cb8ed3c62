"""Compensation structure and component models."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payrun_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from payrun_engine.models.employee import Employee


class CompensationStructure(Base, TimestampMixin):
    """One employee's annual pay structure for a date range."""

    __tablename__ = "compensation_structure"

    compensation_structure_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    annual_ctc: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date, nullable=True)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    revision_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("employee_id", "revision_number", name="compensation_employee_revision_unique"),
        CheckConstraint("annual_ctc >= 0", name="compensation_ctc_check"),
        CheckConstraint(
            "effective_to IS NULL OR effective_to >= effective_from",
            name="compensation_dates_check",
        ),
        # At most one active structure per employee
        Index(
            "compensation_one_active_per_employee",
            "employee_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    # Relationships
    employee: Mapped[Employee] = relationship(back_populates="compensation_structures")
    components: Mapped[list[CompensationComponent]] = relationship(
        back_populates="structure",
        cascade="all, delete-orphan",
        order_by="CompensationComponent.display_order",
    )

    def covers(self, as_of_date: date) -> bool:
        """Check if the structure's effective range includes a date."""
        if as_of_date < self.effective_from:
            return False
        return self.effective_to is None or as_of_date <= self.effective_to


class CompensationComponent(Base, TimestampMixin):
    """Earning or deduction line of a compensation structure."""

    __tablename__ = "compensation_component"

    compensation_component_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    compensation_structure_id: Mapped[UUID] = mapped_column(
        ForeignKey("compensation_structure.compensation_structure_id", ondelete="CASCADE"),
        nullable=False,
    )
    component_code: Mapped[str] = mapped_column(String, nullable=False)
    component_name: Mapped[str] = mapped_column(String, nullable=False)
    component_type: Mapped[str] = mapped_column(String, nullable=False)
    annual_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    percentage_of_basic: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    is_taxable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "compensation_structure_id",
            "component_code",
            name="compensation_component_code_unique",
        ),
        CheckConstraint(
            "component_type IN ('earning', 'deduction')",
            name="compensation_component_type_check",
        ),
        CheckConstraint("annual_amount >= 0", name="compensation_component_amount_check"),
    )

    # Relationships
    structure: Mapped[CompensationStructure] = relationship(back_populates="components")

    @property
    def is_earning(self) -> bool:
        return self.component_type == "earning"
