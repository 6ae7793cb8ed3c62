"""Investment declaration API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, status

from payrun_engine.api.dependencies import CurrentActor, DbSession
from payrun_engine.api.schemas import (
    DeclarationApprove,
    DeclarationCreate,
    DeclarationListResponse,
    DeclarationReject,
    DeclarationResponse,
    ErrorResponse,
)
from payrun_engine.services.declaration_service import DeclarationService

router = APIRouter(prefix="/declarations", tags=["declarations"])


@router.post(
    "",
    response_model=DeclarationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={403: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def submit_declaration(
    db: DbSession,
    actor: CurrentActor,
    payload: DeclarationCreate,
) -> DeclarationResponse:
    """Submit an investment declaration."""
    declaration = await DeclarationService(db).submit(
        actor,
        actor.organization_id,
        employee_id=payload.employee_id,
        financial_year=payload.financial_year,
        section_type=payload.section_type,
        declared_amount=payload.declared_amount,
        notes=payload.notes,
    )
    await db.commit()
    return DeclarationResponse.model_validate(declaration)


@router.get("", response_model=DeclarationListResponse)
async def list_declarations(
    db: DbSession,
    actor: CurrentActor,
    employee_id: UUID,
    financial_year: Annotated[str | None, Query()] = None,
) -> DeclarationListResponse:
    """List an employee's declarations."""
    declarations = await DeclarationService(db).list_for_employee(
        actor.organization_id, employee_id, financial_year, actor
    )
    return DeclarationListResponse(
        items=[DeclarationResponse.model_validate(d) for d in declarations],
        total=len(declarations),
    )


@router.post(
    "/{declaration_id}/approve",
    response_model=DeclarationResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def approve_declaration(
    db: DbSession,
    actor: CurrentActor,
    declaration_id: Annotated[UUID, Path()],
    payload: DeclarationApprove,
) -> DeclarationResponse:
    """Approve a submitted declaration, capped at the section limit."""
    declaration = await DeclarationService(db).approve(
        actor, actor.organization_id, declaration_id, payload.approved_amount
    )
    await db.commit()
    return DeclarationResponse.model_validate(declaration)


@router.post(
    "/{declaration_id}/reject",
    response_model=DeclarationResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def reject_declaration(
    db: DbSession,
    actor: CurrentActor,
    declaration_id: Annotated[UUID, Path()],
    payload: DeclarationReject,
) -> DeclarationResponse:
    """Reject a submitted declaration."""
    declaration = await DeclarationService(db).reject(
        actor, actor.organization_id, declaration_id, payload.notes
    )
    await db.commit()
    return DeclarationResponse.model_validate(declaration)
