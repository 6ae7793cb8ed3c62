"""Payroll run service - generation and lifecycle orchestration."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from payrun_engine.calculators.attendance import lwp_deduction
from payrun_engine.calculators.engine import (
    PayrollEngine,
    basic_from_breakdown,
    build_deduction_lines,
    fixed_deductions_from_breakdown,
    limit_to_earned_pay,
)
from payrun_engine.calculators.statutory import compute_period_contributions
from payrun_engine.calculators.types import (
    ZERO,
    EntryCandidate,
    PayPeriod,
    SkippedEmployee,
    StatutoryRates,
)
from payrun_engine.config import Settings, get_settings
from payrun_engine.models import (
    AuditEvent,
    Employee,
    GenerationLogEntry,
    PayrollEntry,
    PayrollRun,
    utcnow,
)
from payrun_engine.services.authorization import (
    Action,
    Actor,
    Resource,
    UnauthorizedError,
    authorize,
)
from payrun_engine.services.state_machine import (
    InvalidTransitionError,
    PayrollRunStateMachine,
    PayrollRunStatus,
    TransitionConflictError,
)

logger = logging.getLogger(__name__)


class DuplicateRunError(Exception):
    """Raised when a run already exists for the organization and pay period."""

    def __init__(self, organization_id: UUID, pay_period: str):
        self.organization_id = organization_id
        self.pay_period = pay_period
        super().__init__(
            f"Payroll run for {pay_period} already exists in organization {organization_id}"
        )


class PayrollRunNotFoundError(Exception):
    """Raised when a run does not exist within the organization."""

    def __init__(self, payroll_run_id: UUID, organization_id: UUID):
        self.payroll_run_id = payroll_run_id
        self.organization_id = organization_id
        super().__init__(f"Payroll run {payroll_run_id} not found in organization {organization_id}")


class PayrollEntryNotFoundError(Exception):
    """Raised when an entry does not belong to the given run."""

    def __init__(self, payroll_entry_id: UUID, payroll_run_id: UUID):
        self.payroll_entry_id = payroll_entry_id
        self.payroll_run_id = payroll_run_id
        super().__init__(f"Payroll entry {payroll_entry_id} not found in run {payroll_run_id}")


class InvalidLwpDaysError(ValueError):
    """Raised when edited LWP days fall outside 0..working_days."""

    def __init__(self, lwp_days: Decimal, working_days: int):
        self.lwp_days = lwp_days
        self.working_days = working_days
        super().__init__(f"LWP days {lwp_days} must be between 0 and {working_days}")


class GenerationFailedError(Exception):
    """Raised when computing a run fails after the run was created.

    The run stays in processing with generation_error set; commit the
    session to keep it for a retry (regenerate) or delete it.
    """

    def __init__(self, payroll_run_id: UUID, reason: str):
        self.payroll_run_id = payroll_run_id
        self.reason = reason
        super().__init__(f"Generation of payroll run {payroll_run_id} failed: {reason}")


@dataclass
class GenerationResult:
    """Outcome of generating or regenerating a run."""

    run: PayrollRun
    entries: list[PayrollEntry] = field(default_factory=list)
    skipped: list[SkippedEmployee] = field(default_factory=list)

    @property
    def skipped_count(self) -> int:
        return len(self.skipped)


@dataclass(frozen=True)
class EntrySnapshot:
    """Read-only copy of an entry for exporters."""

    payroll_entry_id: UUID
    employee_id: UUID
    employee_code: str
    employee_name: str
    department: str | None
    job_title: str | None
    work_state: str | None
    tax_regime: str
    annual_ctc: Decimal
    working_days: int
    paid_days: Decimal
    lwp_days: Decimal
    lwp_deduction: Decimal
    gross_earnings: Decimal
    pf_employee: Decimal
    pf_employer: Decimal
    esi_employee: Decimal
    esi_employer: Decimal
    professional_tax: Decimal
    tds_amount: Decimal
    other_deductions: Decimal
    total_deductions: Decimal
    net_pay: Decimal
    earnings: tuple[tuple[str, str, Decimal], ...]
    deductions: tuple[tuple[str, str, Decimal], ...]


@dataclass(frozen=True)
class RunSnapshot:
    """Read-only copy of a run and its entries for exporters."""

    payroll_run_id: UUID
    organization_id: UUID
    pay_period: str
    status: str
    employee_count: int
    total_gross: Decimal
    total_deductions: Decimal
    total_net: Decimal
    approved_at: datetime | None
    locked_at: datetime | None
    entries: tuple[EntrySnapshot, ...]


def _lines(breakdown: list[dict[str, Any]]) -> tuple[tuple[str, str, Decimal], ...]:
    return tuple((line["code"], line["name"], Decimal(line["amount"])) for line in breakdown)


class PayrollRunService:
    """Service for generating payroll runs and managing their lifecycle.

    Operations:
    - generate: compute every payable employee and persist run + entries
    - regenerate: recompute a run that has not been submitted for review
    - finalize_generation: complete a run left in processing
    - submit_for_review / approve / lock: lifecycle transitions
    - delete: remove a run that is not yet under review
    - update_entry_lwp: adjust one entry's loss of pay and the run totals
    - export_snapshot: read-only copy of a run for exporters

    Every status change is a compare-and-swap on the status column; losing a
    race raises TransitionConflictError. The service flushes but never
    commits; the caller owns the transaction.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self.session = session
        self.settings = settings or get_settings()
        self.engine = PayrollEngine(session, self.settings)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_run(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        actor: Actor | None = None,
    ) -> PayrollRun:
        """Load a run scoped to an organization."""
        if actor is not None:
            authorize(actor, Action.VIEW, Resource.PAYROLL_RUN, organization_id)

        result = await self.session.execute(
            select(PayrollRun).where(
                PayrollRun.payroll_run_id == payroll_run_id,
                PayrollRun.organization_id == organization_id,
            )
        )
        run = result.scalar_one_or_none()
        if run is None:
            raise PayrollRunNotFoundError(payroll_run_id, organization_id)
        return run

    async def list_runs(
        self,
        organization_id: UUID,
        actor: Actor | None = None,
        status: str | None = None,
    ) -> list[PayrollRun]:
        """List an organization's runs, newest period first."""
        if actor is not None:
            authorize(actor, Action.VIEW, Resource.PAYROLL_RUN, organization_id)

        query = select(PayrollRun).where(PayrollRun.organization_id == organization_id)
        if status:
            query = query.where(PayrollRun.status == status)
        result = await self.session.execute(query.order_by(PayrollRun.pay_period.desc()))
        return list(result.scalars().all())

    async def list_entries(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        actor: Actor | None = None,
    ) -> list[PayrollEntry]:
        """List a run's entries ordered by employee code."""
        run = await self.get_run(organization_id, payroll_run_id, actor)
        result = await self.session.execute(
            select(PayrollEntry)
            .join(Employee, Employee.employee_id == PayrollEntry.employee_id)
            .where(PayrollEntry.payroll_run_id == run.payroll_run_id)
            .order_by(Employee.employee_code)
        )
        return list(result.scalars().all())

    async def get_generation_log(
        self,
        organization_id: UUID,
        payroll_run_id: UUID,
        actor: Actor | None = None,
    ) -> list[GenerationLogEntry]:
        """Employees skipped by the latest generation of a run."""
        run = await self.get_run(organization_id, payroll_run_id, actor)
        result = await self.session.execute(
            select(GenerationLogEntry)
            .where(GenerationLogEntry.payroll_run_id == run.payroll_run_id)
            .order_by(GenerationLogEntry.created_at)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(
        self,
        actor: Actor,
        organization_id: UUID,
        pay_period: str,
        *,
        finalize: bool = True,
    ) -> GenerationResult:
        """Generate the run for an organization and pay period.

        Args:
            actor: Caller; must hold the generate capability
            organization_id: Tenant to generate for
            pay_period: Month as YYYY-MM
            finalize: Complete the run once entries are stored; when False the
                run stays in processing until finalize_generation

        Raises:
            DuplicateRunError: If a run for the period already exists
            StatutoryConfigMissingError: If rates or the default regime are
                missing; no run is created
            GenerationFailedError: If computation fails after the run exists
        """
        authorize(actor, Action.GENERATE, Resource.PAYROLL_RUN, organization_id)
        period = PayPeriod.parse(pay_period)

        existing = await self.session.scalar(
            select(PayrollRun.payroll_run_id).where(
                PayrollRun.organization_id == organization_id,
                PayrollRun.pay_period == str(period),
            )
        )
        if existing is not None:
            raise DuplicateRunError(organization_id, str(period))

        rates = await self._resolve_config(organization_id, period)

        run = PayrollRun(
            organization_id=organization_id,
            pay_period=str(period),
            status=PayrollRunStatus.DRAFT.value,
            generated_by=actor.user_id,
            engine_version=self.settings.engine_version,
        )
        self.session.add(run)
        try:
            await self.session.flush()
        except IntegrityError as e:
            raise DuplicateRunError(organization_id, str(period)) from e

        self._record_audit(run, "created", actor.user_id, {"pay_period": str(period)})
        await self._transition(run, PayrollRunStatus.PROCESSING, actor.user_id)

        return await self._run_generation(run, period, rates, actor, finalize)

    async def regenerate(
        self,
        actor: Actor,
        organization_id: UUID,
        payroll_run_id: UUID,
    ) -> GenerationResult:
        """Discard a run's entries and compute them again.

        Raises:
            ImmutableRunError: If the run is approved or locked
            InvalidTransitionError: If the run is under review
        """
        authorize(actor, Action.REGENERATE, Resource.PAYROLL_RUN, organization_id)
        run = await self.get_run(organization_id, payroll_run_id)
        PayrollRunStateMachine.validate_regeneration(run.status, run.payroll_run_id)

        period = PayPeriod.parse(run.pay_period)
        rates = await self._resolve_config(organization_id, period)

        await self._compare_and_set(
            run,
            PayrollRunStatus.PROCESSING,
            generation_error=None,
            generated_by=actor.user_id,
        )
        await self.session.execute(
            delete(PayrollEntry).where(PayrollEntry.payroll_run_id == run.payroll_run_id)
        )
        await self.session.execute(
            delete(GenerationLogEntry).where(
                GenerationLogEntry.payroll_run_id == run.payroll_run_id
            )
        )
        self._record_audit(run, "regenerated", actor.user_id)

        return await self._run_generation(run, period, rates, actor, finalize=True)

    async def finalize_generation(
        self,
        actor: Actor,
        organization_id: UUID,
        payroll_run_id: UUID,
    ) -> PayrollRun:
        """Complete a processing run, recomputing totals from stored entries."""
        authorize(actor, Action.GENERATE, Resource.PAYROLL_RUN, organization_id)
        run = await self.get_run(organization_id, payroll_run_id)
        if run.generation_error:
            raise InvalidTransitionError(
                run.status,
                PayrollRunStatus.COMPLETED,
                "last generation failed; regenerate before completing",
            )
        await self._complete(run, actor.user_id)
        await self.session.flush()
        return run

    async def _resolve_config(self, organization_id: UUID, period: PayPeriod) -> StatutoryRates:
        """Fail before creating anything when reference data is missing."""
        rates = await self.engine.tax_rules.get_statutory_rates(period.end)
        regime = await self.engine.tax_rules.get_default_regime_name(
            organization_id, period.financial_year
        )
        await self.engine.tax_rules.get_regime(period.financial_year, regime)
        return rates

    async def _run_generation(
        self,
        run: PayrollRun,
        period: PayPeriod,
        rates: StatutoryRates,
        actor: Actor,
        finalize: bool,
    ) -> GenerationResult:
        try:
            calculation = await self.engine.calculate_run(run.organization_id, period, rates)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.exception("Generation of payroll run %s for %s failed", run.payroll_run_id, period)
            run.generation_error = reason
            await self.session.flush()
            raise GenerationFailedError(run.payroll_run_id, reason) from e

        entries = [self._build_entry(run, candidate) for candidate in calculation.entries]
        self.session.add_all(entries)
        self.session.add_all(
            GenerationLogEntry(
                payroll_run_id=run.payroll_run_id,
                employee_id=skipped.employee_id,
                reason_code=skipped.reason_code.value,
                message=skipped.message,
            )
            for skipped in calculation.skipped
        )

        run.employee_count = len(entries)
        run.skipped_count = len(calculation.skipped)
        run.total_gross = calculation.total_gross
        run.total_deductions = calculation.total_deductions
        run.total_net = calculation.total_net
        run.generation_error = None
        run.generated_at = utcnow()
        await self.session.flush()

        logger.info(
            "Generated payroll run %s for %s: %d entries, %d skipped",
            run.payroll_run_id,
            period,
            len(entries),
            len(calculation.skipped),
        )

        if finalize:
            await self._complete(run, actor.user_id)
        await self.session.flush()

        return GenerationResult(run=run, entries=entries, skipped=calculation.skipped)

    def _build_entry(self, run: PayrollRun, candidate: EntryCandidate) -> PayrollEntry:
        return PayrollEntry(
            payroll_run_id=run.payroll_run_id,
            employee_id=candidate.employee_id,
            compensation_structure_id=candidate.compensation_structure_id,
            tax_regime=candidate.tax_regime,
            annual_ctc=candidate.annual_ctc,
            working_days=candidate.working_days,
            paid_days=candidate.paid_days,
            lwp_days=candidate.lwp_days,
            lwp_deduction=candidate.lwp_deduction,
            gross_earnings=candidate.gross_earnings,
            pf_employee=candidate.pf_employee,
            pf_employer=candidate.pf_employer,
            esi_employee=candidate.esi_employee,
            esi_employer=candidate.esi_employer,
            professional_tax=candidate.professional_tax,
            tds_amount=candidate.tds_amount,
            other_deductions=candidate.other_deductions,
            total_deductions=candidate.total_deductions,
            net_pay=candidate.net_pay,
            earnings_breakdown=[line.to_dict() for line in candidate.earnings],
            deductions_breakdown=[line.to_dict() for line in candidate.deductions],
            tds_computation=candidate.tds.to_dict() if candidate.tds else None,
        )

    async def _recompute_totals(self, run: PayrollRun) -> dict[str, Any]:
        """Run totals summed from the persisted entries."""
        result = await self.session.execute(
            select(PayrollEntry).where(PayrollEntry.payroll_run_id == run.payroll_run_id)
        )
        entries = result.scalars().all()
        return {
            "employee_count": len(entries),
            "total_gross": sum((e.gross_earnings for e in entries), ZERO),
            "total_deductions": sum((e.total_deductions for e in entries), ZERO),
            "total_net": sum((e.net_pay for e in entries), ZERO),
        }

    async def _complete(self, run: PayrollRun, actor_user_id: UUID | None) -> None:
        totals = await self._recompute_totals(run)
        await self._transition(run, PayrollRunStatus.COMPLETED, actor_user_id, **totals)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def submit_for_review(
        self,
        actor: Actor,
        organization_id: UUID,
        payroll_run_id: UUID,
    ) -> PayrollRun:
        """Move a completed run to under_review."""
        authorize(actor, Action.SUBMIT, Resource.PAYROLL_RUN, organization_id)
        run = await self.get_run(organization_id, payroll_run_id)
        await self._transition(
            run,
            PayrollRunStatus.UNDER_REVIEW,
            actor.user_id,
            reviewed_at=utcnow(),
            reviewed_by=actor.user_id,
        )
        await self.session.flush()
        return run

    async def approve(
        self,
        actor: Actor,
        organization_id: UUID,
        payroll_run_id: UUID,
    ) -> PayrollRun:
        """Approve a run under review (finance or admin)."""
        authorize(actor, Action.APPROVE, Resource.PAYROLL_RUN, organization_id)
        run = await self.get_run(organization_id, payroll_run_id)
        PayrollRunStateMachine.validate_transition(
            run.status, PayrollRunStatus.APPROVED, run.payroll_run_id
        )
        if self.settings.enforce_maker_checker and actor.user_id in (
            run.generated_by,
            run.reviewed_by,
        ):
            raise UnauthorizedError(
                actor,
                Action.APPROVE,
                Resource.PAYROLL_RUN,
                "approver must differ from the user who prepared or submitted the run",
            )
        await self._transition(
            run,
            PayrollRunStatus.APPROVED,
            actor.user_id,
            approved_at=utcnow(),
            approved_by=actor.user_id,
        )
        await self.session.flush()
        return run

    async def lock(
        self,
        actor: Actor,
        organization_id: UUID,
        payroll_run_id: UUID,
    ) -> PayrollRun:
        """Lock an approved run. Locking is irreversible."""
        authorize(actor, Action.LOCK, Resource.PAYROLL_RUN, organization_id)
        run = await self.get_run(organization_id, payroll_run_id)
        PayrollRunStateMachine.validate_transition(
            run.status, PayrollRunStatus.LOCKED, run.payroll_run_id
        )
        if self.settings.enforce_maker_checker and actor.user_id == run.generated_by:
            raise UnauthorizedError(
                actor,
                Action.LOCK,
                Resource.PAYROLL_RUN,
                "locker must differ from the user who prepared the run",
            )
        await self._transition(
            run,
            PayrollRunStatus.LOCKED,
            actor.user_id,
            locked_at=utcnow(),
            locked_by=actor.user_id,
        )
        self._record_audit(
            run,
            "payroll_locked",
            actor.user_id,
            {"pay_period": run.pay_period, "total_net": str(run.total_net)},
        )
        await self.session.flush()
        return run

    async def delete(
        self,
        actor: Actor,
        organization_id: UUID,
        payroll_run_id: UUID,
    ) -> None:
        """Delete a draft, processing or completed run with its entries.

        Raises:
            ImmutableRunError: If the run is approved or locked
            InvalidTransitionError: If the run is under review
        """
        authorize(actor, Action.DELETE, Resource.PAYROLL_RUN, organization_id)
        run = await self.get_run(organization_id, payroll_run_id)
        PayrollRunStateMachine.validate_deletion(run.status, run.payroll_run_id)

        status = run.status
        self._record_audit(run, "deleted", actor.user_id, {"status": status})
        await self.session.flush()

        result = await self.session.execute(
            delete(PayrollRun).where(
                PayrollRun.payroll_run_id == payroll_run_id,
                PayrollRun.status == status,
            )
        )
        if result.rowcount == 0:
            raise TransitionConflictError(payroll_run_id, status, "deleted")

        # Cascades in Postgres; explicit for stores without FK enforcement
        await self.session.execute(
            delete(PayrollEntry).where(PayrollEntry.payroll_run_id == payroll_run_id)
        )
        await self.session.execute(
            delete(GenerationLogEntry).where(GenerationLogEntry.payroll_run_id == payroll_run_id)
        )
        logger.info("Deleted payroll run %s (%s) by %s", payroll_run_id, status, actor.user_id)

    # ------------------------------------------------------------------
    # Entry edits
    # ------------------------------------------------------------------

    async def update_entry_lwp(
        self,
        actor: Actor,
        organization_id: UUID,
        payroll_run_id: UUID,
        payroll_entry_id: UUID,
        lwp_days: Decimal | int | str,
    ) -> PayrollEntry:
        """Set an entry's LWP days, recomputing the entry and run totals.

        TDS and fixed deductions are limited to the earned pay left, as in
        generation, so net pay stays at or above zero.

        Raises:
            ImmutableRunError: If the run is approved or locked
            InvalidTransitionError: If the run is not processing or completed
            InvalidLwpDaysError: If lwp_days is outside 0..working_days
        """
        authorize(actor, Action.EDIT_ENTRY, Resource.PAYROLL_RUN, organization_id)
        run = await self.get_run(organization_id, payroll_run_id)
        PayrollRunStateMachine.validate_entry_edit(run.status, run.payroll_run_id)

        entry = await self.session.scalar(
            select(PayrollEntry).where(
                PayrollEntry.payroll_entry_id == payroll_entry_id,
                PayrollEntry.payroll_run_id == run.payroll_run_id,
            )
        )
        if entry is None:
            raise PayrollEntryNotFoundError(payroll_entry_id, payroll_run_id)

        lwp = Decimal(str(lwp_days))
        if lwp < 0 or lwp > entry.working_days:
            raise InvalidLwpDaysError(lwp, entry.working_days)

        period = PayPeriod.parse(run.pay_period)
        rates = await self.engine.tax_rules.get_statutory_rates(period.end)
        unit = self.settings.rounding_unit
        previous_lwp = entry.lwp_days

        work_state = await self.session.scalar(
            select(Employee.work_state).where(Employee.employee_id == entry.employee_id)
        )

        paid_days = Decimal(entry.working_days) - lwp
        deduction = lwp_deduction(entry.gross_earnings, lwp, entry.working_days, unit)
        contributions = compute_period_contributions(
            basic_monthly=basic_from_breakdown(entry.earnings_breakdown),
            gross_monthly=entry.gross_earnings,
            lwp_deduction=deduction,
            paid_days=paid_days,
            working_days=entry.working_days,
            rates=rates,
            unit=unit,
            state=work_state,
        )
        # Amounts cut short by the old LWP are restored before limiting again
        scheduled_tds = (
            Decimal(entry.tds_computation["monthly_tds"])
            if entry.tds_computation
            else entry.tds_amount
        )
        tds_amount, fixed = limit_to_earned_pay(
            entry.gross_earnings - deduction,
            contributions.employee_total,
            scheduled_tds,
            fixed_deductions_from_breakdown(entry.deductions_breakdown),
        )
        other_deductions = sum((line.amount for line in fixed), ZERO)

        entry.lwp_days = lwp
        entry.paid_days = paid_days
        entry.lwp_deduction = deduction
        entry.pf_employee = contributions.pf.employee
        entry.pf_employer = contributions.pf.employer
        entry.esi_employee = contributions.esi.employee
        entry.esi_employer = contributions.esi.employer
        entry.professional_tax = contributions.professional_tax
        entry.tds_amount = tds_amount
        entry.other_deductions = other_deductions
        entry.total_deductions = (
            deduction + contributions.employee_total + tds_amount + other_deductions
        )
        entry.net_pay = entry.gross_earnings - entry.total_deductions
        entry.deductions_breakdown = [
            line.to_dict()
            for line in build_deduction_lines(
                fixed,
                lwp_deduction=deduction,
                pf_employee=contributions.pf.employee,
                esi_employee=contributions.esi.employee,
                professional_tax=contributions.professional_tax,
                tds_amount=tds_amount,
            )
        ]
        await self.session.flush()

        totals = await self._recompute_totals(run)
        await self._compare_and_set(run, run.status, **totals)
        self._record_audit(
            run,
            "entry_lwp_updated",
            actor.user_id,
            {
                "payroll_entry_id": str(entry.payroll_entry_id),
                "employee_id": str(entry.employee_id),
                "previous_lwp_days": str(previous_lwp),
                "lwp_days": str(lwp),
            },
        )
        await self.session.flush()
        return entry

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_snapshot(
        self,
        actor: Actor,
        organization_id: UUID,
        payroll_run_id: UUID,
    ) -> RunSnapshot:
        """Frozen copy of a completed (or later) run for exporters."""
        authorize(actor, Action.EXPORT, Resource.PAYROLL_RUN, organization_id)
        run = await self.get_run(organization_id, payroll_run_id)
        if not PayrollRunStateMachine.can_export(run.status):
            raise InvalidTransitionError(
                run.status, "exported", "only completed or later runs can be exported"
            )

        result = await self.session.execute(
            select(PayrollEntry, Employee)
            .join(Employee, Employee.employee_id == PayrollEntry.employee_id)
            .where(PayrollEntry.payroll_run_id == run.payroll_run_id)
            .order_by(Employee.employee_code)
        )
        entries = tuple(
            EntrySnapshot(
                payroll_entry_id=entry.payroll_entry_id,
                employee_id=entry.employee_id,
                employee_code=employee.employee_code,
                employee_name=employee.full_name,
                department=employee.department,
                job_title=employee.job_title,
                work_state=employee.work_state,
                tax_regime=entry.tax_regime,
                annual_ctc=entry.annual_ctc,
                working_days=entry.working_days,
                paid_days=entry.paid_days,
                lwp_days=entry.lwp_days,
                lwp_deduction=entry.lwp_deduction,
                gross_earnings=entry.gross_earnings,
                pf_employee=entry.pf_employee,
                pf_employer=entry.pf_employer,
                esi_employee=entry.esi_employee,
                esi_employer=entry.esi_employer,
                professional_tax=entry.professional_tax,
                tds_amount=entry.tds_amount,
                other_deductions=entry.other_deductions,
                total_deductions=entry.total_deductions,
                net_pay=entry.net_pay,
                earnings=_lines(entry.earnings_breakdown),
                deductions=_lines(entry.deductions_breakdown),
            )
            for entry, employee in result.all()
        )

        return RunSnapshot(
            payroll_run_id=run.payroll_run_id,
            organization_id=run.organization_id,
            pay_period=run.pay_period,
            status=run.status,
            employee_count=run.employee_count,
            total_gross=run.total_gross,
            total_deductions=run.total_deductions,
            total_net=run.total_net,
            approved_at=run.approved_at,
            locked_at=run.locked_at,
            entries=entries,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _transition(
        self,
        run: PayrollRun,
        to_status: PayrollRunStatus,
        actor_user_id: UUID | None,
        **values: Any,
    ) -> PayrollRun:
        """Validate and apply a lifecycle transition with an audit record."""
        from_status = run.status
        PayrollRunStateMachine.validate_transition(from_status, to_status, run.payroll_run_id)

        await self._compare_and_set(run, to_status, **values)

        self._record_audit(run, f"status_change:{from_status}:{to_status.value}", actor_user_id)
        logger.info(
            "Payroll run %s: %s -> %s by %s",
            run.payroll_run_id,
            from_status,
            to_status.value,
            actor_user_id,
        )
        return run

    async def _compare_and_set(
        self,
        run: PayrollRun,
        to_status: PayrollRunStatus | str,
        **values: Any,
    ) -> None:
        """Conditional update keyed on the status this session last saw.

        Raises:
            TransitionConflictError: If the stored status no longer matches
        """
        expected = run.status
        target = to_status.value if isinstance(to_status, PayrollRunStatus) else to_status
        result = await self.session.execute(
            update(PayrollRun)
            .where(
                PayrollRun.payroll_run_id == run.payroll_run_id,
                PayrollRun.status == expected,
            )
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise TransitionConflictError(run.payroll_run_id, expected, target)

        # Mirror the stored row without marking the instance dirty
        state_values = {"status": target, **values}
        for key, value in state_values.items():
            set_committed_value(run, key, value)

    def _record_audit(
        self,
        run: PayrollRun,
        action: str,
        actor_user_id: UUID | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit event for a payroll run action."""
        event = AuditEvent(
            organization_id=run.organization_id,
            actor_user_id=actor_user_id,
            entity_type="payroll_run",
            entity_id=run.payroll_run_id,
            action=action,
            details_json=details,
        )
        self.session.add(event)
