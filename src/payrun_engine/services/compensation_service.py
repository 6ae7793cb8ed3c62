"""Compensation revisions: close the structure in force and open the next one."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payrun_engine.calculators.compensation_resolver import CompensationResolver
from payrun_engine.calculators.engine import BASIC_CODE
from payrun_engine.calculators.types import HUNDRED, ZERO
from payrun_engine.models import (
    AuditEvent,
    CompensationComponent,
    CompensationStructure,
    Employee,
)
from payrun_engine.services.authorization import Action, Actor, Resource, authorize

logger = logging.getLogger(__name__)

PAISE = Decimal("0.01")


class InvalidCompensationError(ValueError):
    """Raised when a proposed structure is inconsistent."""


@dataclass(frozen=True)
class ComponentInput:
    """One line of a proposed structure.

    When annual_amount is 0 and percentage_of_basic is set, the amount is
    derived from the BASIC line.
    """

    code: str
    name: str
    component_type: str = "earning"
    annual_amount: Decimal = ZERO
    percentage_of_basic: Decimal | None = None
    is_taxable: bool = True


class CompensationService:
    """Create compensation revisions and read an employee's history."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.resolver = CompensationResolver(session)

    async def create_revision(
        self,
        actor: Actor,
        organization_id: UUID,
        employee_id: UUID,
        annual_ctc: Decimal,
        effective_from: date,
        components: list[ComponentInput],
        revision_reason: str | None = None,
    ) -> CompensationStructure:
        """Open a new structure from effective_from, closing the active one.

        Raises:
            InvalidCompensationError: If the components do not add up to the
                CTC or the new range would not follow the active structure
        """
        authorize(actor, Action.REVISE, Resource.COMPENSATION, organization_id)

        employee = await self.session.scalar(
            select(Employee).where(
                Employee.employee_id == employee_id,
                Employee.organization_id == organization_id,
            )
        )
        if employee is None:
            raise InvalidCompensationError(
                f"Employee {employee_id} not found in organization {organization_id}"
            )

        amounts = self._resolve_amounts(components)
        earnings_total = sum(
            (amounts[c.code] for c in components if c.component_type == "earning"), ZERO
        )
        if earnings_total != annual_ctc:
            raise InvalidCompensationError(
                f"Earning components total {earnings_total}, expected annual CTC {annual_ctc}"
            )

        active = await self.resolver.get_active(employee_id)
        if active is not None:
            if effective_from <= active.effective_from:
                raise InvalidCompensationError(
                    f"Revision must start after {active.effective_from}, got {effective_from}"
                )
            active.effective_to = effective_from - timedelta(days=1)
            active.is_active = False
            # Release the one-active-per-employee index before inserting
            await self.session.flush()

        last_revision = await self.session.scalar(
            select(func.max(CompensationStructure.revision_number)).where(
                CompensationStructure.employee_id == employee_id
            )
        )

        structure = CompensationStructure(
            organization_id=organization_id,
            employee_id=employee_id,
            annual_ctc=annual_ctc,
            effective_from=effective_from,
            effective_to=None,
            revision_number=(last_revision or 0) + 1,
            revision_reason=revision_reason,
            is_active=True,
            created_by=actor.user_id,
            components=[
                CompensationComponent(
                    component_code=c.code,
                    component_name=c.name,
                    component_type=c.component_type,
                    annual_amount=amounts[c.code],
                    percentage_of_basic=c.percentage_of_basic,
                    is_taxable=c.is_taxable,
                    display_order=index,
                )
                for index, c in enumerate(components)
            ],
        )
        self.session.add(structure)
        await self.session.flush()

        self.session.add(
            AuditEvent(
                organization_id=organization_id,
                actor_user_id=actor.user_id,
                entity_type="compensation_structure",
                entity_id=structure.compensation_structure_id,
                action="revised",
                details_json={
                    "employee_id": str(employee_id),
                    "revision_number": structure.revision_number,
                    "annual_ctc": str(annual_ctc),
                    "effective_from": effective_from.isoformat(),
                },
            )
        )
        await self.session.flush()

        logger.info(
            "Compensation revision %d for employee %s effective %s (CTC %s)",
            structure.revision_number,
            employee_id,
            effective_from,
            annual_ctc,
        )
        return structure

    async def history(
        self,
        organization_id: UUID,
        employee_id: UUID,
        actor: Actor | None = None,
    ) -> list[CompensationStructure]:
        """All revisions of an employee, oldest first."""
        if actor is not None:
            authorize(actor, Action.VIEW, Resource.COMPENSATION, organization_id)

        result = await self.session.execute(
            select(CompensationStructure)
            .where(
                CompensationStructure.organization_id == organization_id,
                CompensationStructure.employee_id == employee_id,
            )
            .options(selectinload(CompensationStructure.components))
            .order_by(CompensationStructure.revision_number)
        )
        return list(result.scalars().all())

    @staticmethod
    def _resolve_amounts(components: list[ComponentInput]) -> dict[str, Decimal]:
        """Annual amount per component code, deriving percentage-of-basic lines."""
        codes = [c.code for c in components]
        if len(set(codes)) != len(codes):
            raise InvalidCompensationError(f"Duplicate component codes in {codes}")

        basic = next((c for c in components if c.code == BASIC_CODE), None)
        amounts: dict[str, Decimal] = {}
        for component in components:
            if component.component_type not in ("earning", "deduction"):
                raise InvalidCompensationError(
                    f"Unknown component type '{component.component_type}' for {component.code}"
                )
            if component.annual_amount < 0:
                raise InvalidCompensationError(f"Negative amount for {component.code}")

            amount = component.annual_amount
            if amount == 0 and component.percentage_of_basic is not None:
                if basic is None or basic.annual_amount <= 0:
                    raise InvalidCompensationError(
                        f"{component.code} is a percentage of basic but no BASIC amount is given"
                    )
                amount = (basic.annual_amount * component.percentage_of_basic / HUNDRED).quantize(
                    PAISE
                )
            amounts[component.code] = amount
        return amounts
