"""Compensation structure resolution by effective date."""

from __future__ import annotations

from datetime import date
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payrun_engine.models import CompensationStructure


class CompensationNotFoundError(Exception):
    """Raised when no compensation structure covers a date."""

    def __init__(self, employee_id: UUID, as_of_date: date):
        self.employee_id = employee_id
        self.as_of_date = as_of_date
        super().__init__(
            f"No compensation structure found for employee {employee_id} effective {as_of_date}"
        )


class CompensationResolver:
    """Resolves the compensation structure in force for an employee.

    Selects the structure where effective_from <= as_of_date and
    (effective_to is null or as_of_date <= effective_to). Ranges never
    overlap, so at most one row matches; the latest revision wins if bad
    data ever makes two match.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def resolve(self, employee_id: UUID, as_of_date: date) -> CompensationStructure:
        """Resolve the structure and its components.

        Raises:
            CompensationNotFoundError: If no structure covers the date
        """
        result = await self.session.execute(
            select(CompensationStructure)
            .where(
                CompensationStructure.employee_id == employee_id,
                CompensationStructure.effective_from <= as_of_date,
                (
                    CompensationStructure.effective_to.is_(None)
                    | (CompensationStructure.effective_to >= as_of_date)
                ),
            )
            .options(selectinload(CompensationStructure.components))
            .order_by(CompensationStructure.revision_number.desc())
            .limit(1)
        )
        structure = result.scalar_one_or_none()
        if structure is None:
            raise CompensationNotFoundError(employee_id, as_of_date)
        return structure

    async def get_active(self, employee_id: UUID) -> CompensationStructure | None:
        """Get the open-ended active structure, if any."""
        result = await self.session.execute(
            select(CompensationStructure)
            .where(
                CompensationStructure.employee_id == employee_id,
                CompensationStructure.is_active.is_(True),
            )
            .options(selectinload(CompensationStructure.components))
        )
        return result.scalar_one_or_none()
