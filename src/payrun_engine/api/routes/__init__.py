"""API routes."""

from payrun_engine.api.routes.declarations import router as declarations_router
from payrun_engine.api.routes.health import router as health_router
from payrun_engine.api.routes.payroll_runs import router as payroll_runs_router

__all__ = ["declarations_router", "health_router", "payroll_runs_router"]
