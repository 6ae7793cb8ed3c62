"""Payrun engine services."""

from payrun_engine.services.authorization import Action, Actor, Resource, Role, UnauthorizedError
from payrun_engine.services.compensation_service import CompensationService, ComponentInput
from payrun_engine.services.declaration_service import DeclarationService
from payrun_engine.services.payroll_run_service import (
    DuplicateRunError,
    GenerationFailedError,
    PayrollRunNotFoundError,
    PayrollRunService,
)
from payrun_engine.services.state_machine import (
    ImmutableRunError,
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
    TransitionConflictError,
)

__all__ = [
    "Action",
    "Actor",
    "CompensationService",
    "ComponentInput",
    "DeclarationService",
    "DuplicateRunError",
    "GenerationFailedError",
    "ImmutableRunError",
    "InvalidTransitionError",
    "PayrollRunNotFoundError",
    "PayrollRunService",
    "PayrollRunStateMachine",
    "PayrollRunStatus",
    "Resource",
    "Role",
    "TransitionConflictError",
    "UnauthorizedError",
]
