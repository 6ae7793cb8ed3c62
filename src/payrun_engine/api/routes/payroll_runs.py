"""Payroll run API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query, Response, status

from payrun_engine.api.dependencies import AppSettings, CurrentActor, DbSession
from payrun_engine.api.schemas import (
    EntryLwpUpdate,
    ErrorResponse,
    GenerationLogResponse,
    GenerationResponse,
    PayrollEntryListResponse,
    PayrollEntryResponse,
    PayrollRunCreate,
    PayrollRunListResponse,
    PayrollRunResponse,
)
from payrun_engine.services.payroll_run_service import (
    GenerationFailedError,
    GenerationResult,
    PayrollRunService,
)

router = APIRouter(prefix="/payroll-runs", tags=["payroll-runs"])

RunId = Annotated[UUID, Path()]


def _generation_response(result: GenerationResult) -> GenerationResponse:
    return GenerationResponse(
        run=PayrollRunResponse.model_validate(result.run),
        skipped=[
            GenerationLogResponse(
                employee_id=s.employee_id,
                reason_code=s.reason_code.value,
                message=s.message,
            )
            for s in result.skipped
        ],
    )


# ============================================================================
# Generation and queries
# ============================================================================


@router.post(
    "",
    response_model=GenerationResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def generate_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payload: PayrollRunCreate,
) -> GenerationResponse:
    """Generate the payroll run for a pay period."""
    service = PayrollRunService(db, settings)
    try:
        result = await service.generate(actor, actor.organization_id, payload.pay_period)
    except GenerationFailedError:
        # Keep the processing run and its error for a retry
        await db.commit()
        raise
    await db.commit()
    return _generation_response(result)


@router.get("", response_model=PayrollRunListResponse)
async def list_payroll_runs(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> PayrollRunListResponse:
    """List payroll runs of the caller's organization."""
    runs = await PayrollRunService(db, settings).list_runs(
        actor.organization_id, actor, status=status_filter
    )
    return PayrollRunListResponse(
        items=[PayrollRunResponse.model_validate(r) for r in runs],
        total=len(runs),
    )


@router.get(
    "/{payroll_run_id}",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
) -> PayrollRunResponse:
    """Get a specific payroll run by ID."""
    run = await PayrollRunService(db, settings).get_run(actor.organization_id, payroll_run_id, actor)
    return PayrollRunResponse.model_validate(run)


@router.get(
    "/{payroll_run_id}/entries",
    response_model=PayrollEntryListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_payroll_entries(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
) -> PayrollEntryListResponse:
    """List a run's entries ordered by employee code."""
    entries = await PayrollRunService(db, settings).list_entries(
        actor.organization_id, payroll_run_id, actor
    )
    return PayrollEntryListResponse(
        items=[PayrollEntryResponse.model_validate(e) for e in entries],
        total=len(entries),
    )


@router.get(
    "/{payroll_run_id}/generation-log",
    response_model=list[GenerationLogResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_generation_log(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
) -> list[GenerationLogResponse]:
    """Employees skipped by the latest generation."""
    log = await PayrollRunService(db, settings).get_generation_log(
        actor.organization_id, payroll_run_id, actor
    )
    return [GenerationLogResponse.model_validate(row) for row in log]


# ============================================================================
# Lifecycle
# ============================================================================


@router.post(
    "/{payroll_run_id}/regenerate",
    response_model=GenerationResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def regenerate_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
) -> GenerationResponse:
    """Recompute a run that has not been submitted for review."""
    service = PayrollRunService(db, settings)
    try:
        result = await service.regenerate(actor, actor.organization_id, payroll_run_id)
    except GenerationFailedError:
        await db.commit()
        raise
    await db.commit()
    return _generation_response(result)


@router.post(
    "/{payroll_run_id}/submit",
    response_model=PayrollRunResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def submit_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
) -> PayrollRunResponse:
    """Submit a completed run for review."""
    run = await PayrollRunService(db, settings).submit_for_review(
        actor, actor.organization_id, payroll_run_id
    )
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{payroll_run_id}/approve",
    response_model=PayrollRunResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def approve_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
) -> PayrollRunResponse:
    """Approve a run under review."""
    run = await PayrollRunService(db, settings).approve(actor, actor.organization_id, payroll_run_id)
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.post(
    "/{payroll_run_id}/lock",
    response_model=PayrollRunResponse,
    responses={
        403: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
async def lock_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
) -> PayrollRunResponse:
    """Lock an approved run. Irreversible."""
    run = await PayrollRunService(db, settings).lock(actor, actor.organization_id, payroll_run_id)
    await db.commit()
    return PayrollRunResponse.model_validate(run)


@router.delete(
    "/{payroll_run_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def delete_payroll_run(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
) -> Response:
    """Delete a run that is not yet under review."""
    await PayrollRunService(db, settings).delete(actor, actor.organization_id, payroll_run_id)
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch(
    "/{payroll_run_id}/entries/{payroll_entry_id}",
    response_model=PayrollEntryResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
)
async def update_payroll_entry(
    db: DbSession,
    actor: CurrentActor,
    settings: AppSettings,
    payroll_run_id: RunId,
    payroll_entry_id: Annotated[UUID, Path()],
    payload: EntryLwpUpdate,
) -> PayrollEntryResponse:
    """Adjust an entry's loss-of-pay days."""
    entry = await PayrollRunService(db, settings).update_entry_lwp(
        actor, actor.organization_id, payroll_run_id, payroll_entry_id, payload.lwp_days
    )
    await db.commit()
    return PayrollEntryResponse.model_validate(entry)
