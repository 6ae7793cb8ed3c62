"""Investment declaration ledger: submission and review of tax-saving claims."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payrun_engine.calculators.tax_rules import section_limit
from payrun_engine.calculators.types import ZERO
from payrun_engine.models import AuditEvent, Employee, InvestmentDeclaration, utcnow
from payrun_engine.services.authorization import (
    Action,
    Actor,
    Resource,
    Role,
    UnauthorizedError,
    authorize,
)

logger = logging.getLogger(__name__)


class DeclarationNotFoundError(Exception):
    """Raised when a declaration does not exist within the organization."""

    def __init__(self, declaration_id: UUID, organization_id: UUID):
        self.declaration_id = declaration_id
        self.organization_id = organization_id
        super().__init__(f"Declaration {declaration_id} not found in organization {organization_id}")


class DeclarationStateError(Exception):
    """Raised when reviewing a declaration that is no longer submitted."""

    def __init__(self, declaration_id: UUID, status: str, operation: str):
        self.declaration_id = declaration_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} declaration {declaration_id} in status '{status}'")


class DeclarationService:
    """Submit, approve and reject investment declarations.

    Only approved amounts reduce taxable income; submitted declarations are
    ignored by the TDS calculator until reviewed.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def submit(
        self,
        actor: Actor,
        organization_id: UUID,
        employee_id: UUID,
        financial_year: str,
        section_type: str,
        declared_amount: Decimal,
        notes: str | None = None,
    ) -> InvestmentDeclaration:
        """Record a declaration in submitted status.

        Raises:
            UnauthorizedError: If an employee declares for someone else
            ValueError: If the section is unknown or the amount is negative
        """
        authorize(actor, Action.DECLARE, Resource.INVESTMENT_DECLARATION, organization_id)
        if actor.role == Role.EMPLOYEE and actor.employee_id != employee_id:
            raise UnauthorizedError(
                actor,
                Action.DECLARE,
                Resource.INVESTMENT_DECLARATION,
                "employees may only declare for themselves",
            )

        section_limit(section_type)
        if declared_amount < 0:
            raise ValueError(f"Declared amount must not be negative: {declared_amount}")

        employee = await self.session.scalar(
            select(Employee).where(
                Employee.employee_id == employee_id,
                Employee.organization_id == organization_id,
            )
        )
        if employee is None:
            raise ValueError(f"Employee {employee_id} not found in organization {organization_id}")

        declaration = InvestmentDeclaration(
            organization_id=organization_id,
            employee_id=employee_id,
            financial_year=financial_year,
            section_type=section_type,
            declared_amount=declared_amount,
            approved_amount=ZERO,
            status="submitted",
            notes=notes,
            submitted_by=actor.user_id,
        )
        self.session.add(declaration)
        await self.session.flush()

        self._record_audit(declaration, "submitted", actor.user_id)
        await self.session.flush()
        return declaration

    async def approve(
        self,
        actor: Actor,
        organization_id: UUID,
        declaration_id: UUID,
        approved_amount: Decimal | None = None,
    ) -> InvestmentDeclaration:
        """Approve a submitted declaration.

        The approved amount defaults to the declared amount and is clamped to
        the declared amount and the section cap.
        """
        authorize(actor, Action.REVIEW, Resource.INVESTMENT_DECLARATION, organization_id)
        declaration = await self.get(organization_id, declaration_id)
        if declaration.status != "submitted":
            raise DeclarationStateError(declaration_id, declaration.status, "approve")

        amount = declaration.declared_amount if approved_amount is None else approved_amount
        if amount < 0:
            raise ValueError(f"Approved amount must not be negative: {amount}")
        amount = min(amount, declaration.declared_amount)
        cap = section_limit(declaration.section_type)
        if cap > 0:
            amount = min(amount, cap)

        declaration.approved_amount = amount
        declaration.status = "approved"
        declaration.reviewed_by = actor.user_id
        declaration.reviewed_at = utcnow()

        self._record_audit(declaration, "approved", actor.user_id, {"approved_amount": str(amount)})
        await self.session.flush()
        logger.info(
            "Declaration %s (%s) approved for %s by %s",
            declaration_id,
            declaration.section_type,
            amount,
            actor.user_id,
        )
        return declaration

    async def reject(
        self,
        actor: Actor,
        organization_id: UUID,
        declaration_id: UUID,
        notes: str | None = None,
    ) -> InvestmentDeclaration:
        """Reject a submitted declaration."""
        authorize(actor, Action.REVIEW, Resource.INVESTMENT_DECLARATION, organization_id)
        declaration = await self.get(organization_id, declaration_id)
        if declaration.status != "submitted":
            raise DeclarationStateError(declaration_id, declaration.status, "reject")

        declaration.approved_amount = ZERO
        declaration.status = "rejected"
        declaration.reviewed_by = actor.user_id
        declaration.reviewed_at = utcnow()
        if notes:
            declaration.notes = notes

        self._record_audit(declaration, "rejected", actor.user_id)
        await self.session.flush()
        return declaration

    async def get(self, organization_id: UUID, declaration_id: UUID) -> InvestmentDeclaration:
        declaration = await self.session.scalar(
            select(InvestmentDeclaration).where(
                InvestmentDeclaration.investment_declaration_id == declaration_id,
                InvestmentDeclaration.organization_id == organization_id,
            )
        )
        if declaration is None:
            raise DeclarationNotFoundError(declaration_id, organization_id)
        return declaration

    async def list_for_employee(
        self,
        organization_id: UUID,
        employee_id: UUID,
        financial_year: str | None = None,
        actor: Actor | None = None,
    ) -> list[InvestmentDeclaration]:
        """An employee's declarations, optionally for one financial year."""
        if actor is not None:
            authorize(actor, Action.VIEW, Resource.INVESTMENT_DECLARATION, organization_id)
            if actor.role == Role.EMPLOYEE and actor.employee_id != employee_id:
                raise UnauthorizedError(
                    actor,
                    Action.VIEW,
                    Resource.INVESTMENT_DECLARATION,
                    "employees may only view their own declarations",
                )

        query = select(InvestmentDeclaration).where(
            InvestmentDeclaration.organization_id == organization_id,
            InvestmentDeclaration.employee_id == employee_id,
        )
        if financial_year:
            query = query.where(InvestmentDeclaration.financial_year == financial_year)
        result = await self.session.execute(
            query.order_by(InvestmentDeclaration.financial_year, InvestmentDeclaration.section_type)
        )
        return list(result.scalars().all())

    def _record_audit(
        self,
        declaration: InvestmentDeclaration,
        action: str,
        actor_user_id: UUID | None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(
            AuditEvent(
                organization_id=declaration.organization_id,
                actor_user_id=actor_user_id,
                entity_type="investment_declaration",
                entity_id=declaration.investment_declaration_id,
                action=action,
                details_json=details,
            )
        )
