"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator, Callable, Coroutine
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from payrun_engine.api.routes import declarations_router, health_router, payroll_runs_router
from payrun_engine.calculators.compensation_resolver import CompensationNotFoundError
from payrun_engine.calculators.tax_rules import StatutoryConfigMissingError
from payrun_engine.config import get_settings
from payrun_engine.database import dispose_db, init_db
from payrun_engine.services.authorization import UnauthorizedError
from payrun_engine.services.declaration_service import (
    DeclarationNotFoundError,
    DeclarationStateError,
)
from payrun_engine.services.payroll_run_service import (
    DuplicateRunError,
    GenerationFailedError,
    PayrollEntryNotFoundError,
    PayrollRunNotFoundError,
)
from payrun_engine.services.state_machine import (
    ImmutableRunError,
    InvalidTransitionError,
    TransitionConflictError,
)

logger = logging.getLogger(__name__)

# Domain exception -> (HTTP status, error code)
ERROR_RESPONSES: dict[type[Exception], tuple[int, str]] = {
    PayrollRunNotFoundError: (status.HTTP_404_NOT_FOUND, "PAYROLL_RUN_NOT_FOUND"),
    PayrollEntryNotFoundError: (status.HTTP_404_NOT_FOUND, "PAYROLL_ENTRY_NOT_FOUND"),
    DeclarationNotFoundError: (status.HTTP_404_NOT_FOUND, "DECLARATION_NOT_FOUND"),
    CompensationNotFoundError: (status.HTTP_404_NOT_FOUND, "COMPENSATION_NOT_FOUND"),
    DuplicateRunError: (status.HTTP_409_CONFLICT, "DUPLICATE_RUN"),
    ImmutableRunError: (status.HTTP_409_CONFLICT, "IMMUTABLE_RUN"),
    InvalidTransitionError: (status.HTTP_409_CONFLICT, "INVALID_TRANSITION"),
    TransitionConflictError: (status.HTTP_409_CONFLICT, "CONFLICT"),
    DeclarationStateError: (status.HTTP_409_CONFLICT, "INVALID_DECLARATION_STATE"),
    UnauthorizedError: (status.HTTP_403_FORBIDDEN, "FORBIDDEN"),
    StatutoryConfigMissingError: (
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "STATUTORY_CONFIG_MISSING",
    ),
    ValueError: (status.HTTP_422_UNPROCESSABLE_ENTITY, "VALIDATION_ERROR"),
    GenerationFailedError: (status.HTTP_500_INTERNAL_SERVER_ERROR, "GENERATION_FAILED"),
}


def _error_handler(
    status_code: int, code: str
) -> Callable[[Request, Exception], Coroutine[Any, Any, JSONResponse]]:
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "code": code},
        )

    return handler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    init_db()
    yield
    await dispose_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Payrun Engine API",
        description="Monthly payroll generation, statutory deductions and approvals",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    for exc_class, (status_code, code) in ERROR_RESPONSES.items():
        app.add_exception_handler(exc_class, _error_handler(status_code, code))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payroll_runs_router, prefix="/api/v1")
    app.include_router(declarations_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
