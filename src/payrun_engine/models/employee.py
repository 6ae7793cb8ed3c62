"""Organization, employee directory and attendance models."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, Date, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from payrun_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from payrun_engine.models.compensation import CompensationStructure


class Organization(Base, TimestampMixin):
    """Tenant that owns employees and payroll runs."""

    __tablename__ = "organization"

    organization_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    # Regime used when an employee has not chosen one; NULL falls back to settings
    default_tax_regime: Mapped[str | None] = mapped_column(String, nullable=True)

    # Relationships
    employees: Mapped[list[Employee]] = relationship(back_populates="organization")


class Employee(Base, TimestampMixin):
    """Employee record mirrored from the employee directory."""

    __tablename__ = "employee"

    employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_code: Mapped[str] = mapped_column(String, nullable=False)
    full_name: Mapped[str] = mapped_column(String, nullable=False)
    department: Mapped[str | None] = mapped_column(String, nullable=True)
    job_title: Mapped[str | None] = mapped_column(String, nullable=True)
    work_week_policy: Mapped[str] = mapped_column(String, nullable=False, default="5_day")
    # State whose professional tax slabs apply, e.g. "Maharashtra"
    work_state: Mapped[str | None] = mapped_column(String, nullable=True)
    join_date: Mapped[date] = mapped_column(Date, nullable=False)
    exit_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")

    __table_args__ = (
        UniqueConstraint("organization_id", "employee_code", name="employee_org_code_unique"),
        CheckConstraint(
            "work_week_policy IN ('5_day', '6_day')",
            name="employee_work_week_policy_check",
        ),
        CheckConstraint("status IN ('active', 'inactive')", name="employee_status_check"),
        CheckConstraint(
            "exit_date IS NULL OR exit_date >= join_date",
            name="employee_dates_check",
        ),
    )

    # Relationships
    organization: Mapped[Organization] = relationship(back_populates="employees")
    compensation_structures: Mapped[list[CompensationStructure]] = relationship(
        back_populates="employee"
    )


class AttendanceRecord(Base, TimestampMixin):
    """Per-day attendance status from the attendance source."""

    __tablename__ = "attendance_record"

    attendance_record_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id", ondelete="CASCADE"),
        nullable=False,
    )
    attendance_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        UniqueConstraint("employee_id", "attendance_date", name="attendance_employee_date_unique"),
        CheckConstraint(
            "status IN ('present', 'half_day', 'paid_leave', 'unpaid_leave', 'absent', 'holiday')",
            name="attendance_status_check",
        ),
    )
