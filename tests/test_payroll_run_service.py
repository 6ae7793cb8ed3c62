"""Tests for payroll run generation and lifecycle."""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from conftest import PAY_PERIOD, STANDARD_COMPONENTS, make_actor, mark_attendance
from payrun_engine.calculators.attendance import working_dates
from payrun_engine.calculators.tax_rules import StatutoryConfigMissingError
from payrun_engine.models import AuditEvent, PayrollRun
from payrun_engine.services.authorization import Role, UnauthorizedError
from payrun_engine.services.payroll_run_service import (
    DuplicateRunError,
    GenerationFailedError,
    InvalidLwpDaysError,
    PayrollEntryNotFoundError,
    PayrollRunNotFoundError,
    PayrollRunService,
)
from payrun_engine.services.state_machine import (
    InvalidTransitionError,
    TransitionConflictError,
)


@pytest.fixture
def service(session, settings) -> PayrollRunService:
    return PayrollRunService(session, settings)


def entry_for(entries, employee):
    return next(e for e in entries if e.employee_id == employee.employee_id)


class TestGenerate:
    """Generating a run for April 2025."""

    async def test_generates_entries_and_totals(
        self, service, organization, payroll_setup, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        run = result.run

        assert run.status == "completed"
        assert run.employee_count == 2
        assert run.skipped_count == 2
        assert run.total_gross == Decimal("115000")
        assert run.total_deductions == Decimal("16854")
        assert run.total_net == Decimal("98146")
        assert run.generated_by == hr_actor.user_id
        assert run.engine_version == "test"

        salaried = entry_for(result.entries, payroll_setup["salaried"])
        assert salaried.tax_regime == "new"
        assert salaried.working_days == 22
        assert salaried.paid_days == Decimal("20")
        assert salaried.lwp_days == Decimal("2")
        assert salaried.gross_earnings == Decimal("100000")
        assert salaried.lwp_deduction == Decimal("9091")
        assert salaried.pf_employee == Decimal("1800")
        assert salaried.pf_employer == Decimal("1800")
        assert salaried.esi_employee == Decimal("0")
        assert salaried.professional_tax == Decimal("200")
        assert salaried.tds_amount == Decimal("4550")
        assert salaried.total_deductions == Decimal("15641")
        assert salaried.net_pay == Decimal("84359")

        esi = entry_for(result.entries, payroll_setup["esi"])
        assert esi.gross_earnings == Decimal("15000")
        assert esi.pf_employee == Decimal("900")
        assert esi.esi_employee == Decimal("113")
        assert esi.esi_employer == Decimal("488")
        assert esi.professional_tax == Decimal("200")
        assert esi.tds_amount == Decimal("0")
        assert esi.net_pay == Decimal("13787")

    async def test_totals_match_entries(self, service, organization, payroll_setup, hr_actor):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        entries = await service.list_entries(organization.organization_id, result.run.payroll_run_id)

        assert result.run.total_gross == sum(e.gross_earnings for e in entries)
        assert result.run.total_deductions == sum(e.total_deductions for e in entries)
        assert result.run.total_net == sum(e.net_pay for e in entries)
        for entry in entries:
            assert entry.net_pay == entry.gross_earnings - entry.total_deductions

    async def test_breakdowns(self, service, organization, payroll_setup, hr_actor):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        salaried = entry_for(result.entries, payroll_setup["salaried"])

        assert [line["code"] for line in salaried.earnings_breakdown] == ["BASIC", "HRA", "SPECIAL"]
        assert [line["code"] for line in salaried.deductions_breakdown] == [
            "LWP",
            "PF_EMPLOYEE",
            "PROFESSIONAL_TAX",
            "TDS",
        ]

    async def test_skipped_employees_logged(self, service, organization, payroll_setup, hr_actor):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        log = await service.get_generation_log(
            organization.organization_id, result.run.payroll_run_id
        )
        reasons = {entry.employee_id: entry.reason_code for entry in log}

        assert reasons == {
            payroll_setup["unstructured"].employee_id: "compensation_not_found",
            payroll_setup["future_joiner"].employee_id: "no_working_days",
        }
        assert result.skipped_count == 2

    async def test_duplicate_period(self, service, organization, payroll_setup, hr_actor):
        await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        with pytest.raises(DuplicateRunError):
            await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

    async def test_missing_rates_creates_nothing(
        self, service, session, organization, employee_factory, hr_actor
    ):
        await employee_factory(STANDARD_COMPONENTS)

        with pytest.raises(StatutoryConfigMissingError):
            await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        runs = await session.scalars(select(PayrollRun))
        assert runs.all() == []

    async def test_invalid_period(self, service, organization, payroll_setup, hr_actor):
        with pytest.raises(ValueError):
            await service.generate(hr_actor, organization.organization_id, "2025-13")

    async def test_audit_trail(self, service, session, organization, payroll_setup, hr_actor):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        events = await session.scalars(
            select(AuditEvent).where(AuditEvent.entity_id == result.run.payroll_run_id)
        )
        actions = {event.action for event in events}

        assert actions == {
            "created",
            "status_change:draft:processing",
            "status_change:processing:completed",
        }

    async def test_tds_accounts_for_earlier_months(
        self, service, organization, payroll_setup, hr_actor
    ):
        """May spreads the remaining liability over the 11 months left."""
        await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        may = await service.generate(hr_actor, organization.organization_id, "2025-05")
        salaried = entry_for(may.entries, payroll_setup["salaried"])

        assert salaried.tds_amount == Decimal("4550")
        assert salaried.lwp_days == Decimal("0")
        # Joined on Monday 12 May: 15 of 22 working days
        joiner = entry_for(may.entries, payroll_setup["future_joiner"])
        assert joiner.working_days == 15

    async def test_tds_ignores_runs_that_did_not_complete(
        self, service, session, organization, payroll_setup, hr_actor
    ):
        """TDS on a run stuck in processing was never paid out, so May owes it."""
        april = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        await session.execute(
            update(PayrollRun)
            .where(PayrollRun.payroll_run_id == april.run.payroll_run_id)
            .values(status="processing", generation_error="attendance feed unavailable")
        )

        may = await service.generate(hr_actor, organization.organization_id, "2025-05")
        salaried = entry_for(may.entries, payroll_setup["salaried"])

        # 54,600 over the 11 months left, nothing withheld yet
        assert salaried.tds_amount == Decimal("4964")


class TestGenerationFailure:
    async def test_failure_keeps_run_for_retry(
        self, service, organization, payroll_setup, hr_actor, monkeypatch
    ):
        async def boom(*args, **kwargs):
            raise RuntimeError("attendance feed unavailable")

        monkeypatch.setattr(service.engine, "calculate_run", boom)

        with pytest.raises(GenerationFailedError) as exc_info:
            await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        run = await service.get_run(organization.organization_id, exc_info.value.payroll_run_id)
        assert run.status == "processing"
        assert "attendance feed unavailable" in run.generation_error

        with pytest.raises(InvalidTransitionError):
            await service.finalize_generation(
                hr_actor, organization.organization_id, run.payroll_run_id
            )

        monkeypatch.undo()
        result = await service.regenerate(hr_actor, organization.organization_id, run.payroll_run_id)

        assert result.run.status == "completed"
        assert result.run.generation_error is None
        assert result.run.total_net == Decimal("98146")

    async def test_deferred_finalize(self, service, organization, payroll_setup, hr_actor):
        result = await service.generate(
            hr_actor, organization.organization_id, PAY_PERIOD, finalize=False
        )
        assert result.run.status == "processing"

        run = await service.finalize_generation(
            hr_actor, organization.organization_id, result.run.payroll_run_id
        )

        assert run.status == "completed"
        assert run.total_net == Decimal("98146")


class TestRegenerate:
    async def test_picks_up_new_attendance(
        self, service, session, organization, payroll_setup, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        await mark_attendance(session, payroll_setup["salaried"], "unpaid_leave", date(2025, 4, 16))

        regenerated = await service.regenerate(
            hr_actor, organization.organization_id, result.run.payroll_run_id
        )

        salaried = entry_for(regenerated.entries, payroll_setup["salaried"])
        assert salaried.lwp_days == Decimal("3")
        assert salaried.lwp_deduction == Decimal("13636")
        assert regenerated.run.status == "completed"
        assert regenerated.run.total_deductions == Decimal("21399")
        assert regenerated.run.total_net == Decimal("93601")

        entries = await service.list_entries(
            organization.organization_id, result.run.payroll_run_id
        )
        assert len(entries) == 2
        log = await service.get_generation_log(
            organization.organization_id, result.run.payroll_run_id
        )
        assert len(log) == 2

    async def test_under_review_cannot_regenerate(
        self, service, organization, payroll_setup, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        await service.submit_for_review(hr_actor, organization.organization_id, result.run.payroll_run_id)

        with pytest.raises(InvalidTransitionError):
            await service.regenerate(hr_actor, organization.organization_id, result.run.payroll_run_id)


class TestLifecycle:
    async def test_full_approval_path(
        self, service, organization, payroll_setup, hr_actor, finance_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        run_id = result.run.payroll_run_id

        run = await service.submit_for_review(hr_actor, organization.organization_id, run_id)
        assert run.status == "under_review"
        assert run.reviewed_by == hr_actor.user_id

        run = await service.approve(finance_actor, organization.organization_id, run_id)
        assert run.status == "approved"
        assert run.approved_by == finance_actor.user_id
        assert run.approved_at is not None

        run = await service.lock(finance_actor, organization.organization_id, run_id)
        assert run.status == "locked"
        assert run.locked_by == finance_actor.user_id

    async def test_lock_requires_approval(
        self, service, organization, payroll_setup, hr_actor, finance_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        with pytest.raises(InvalidTransitionError):
            await service.lock(finance_actor, organization.organization_id, result.run.payroll_run_id)

    async def test_hr_cannot_approve(self, service, organization, payroll_setup, hr_actor):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        await service.submit_for_review(hr_actor, organization.organization_id, result.run.payroll_run_id)

        with pytest.raises(UnauthorizedError):
            await service.approve(hr_actor, organization.organization_id, result.run.payroll_run_id)

    async def test_concurrent_change_conflicts(
        self, service, session, organization, payroll_setup, hr_actor
    ):
        """A status change this session has not seen makes the swap fail."""
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        run_id = result.run.payroll_run_id

        await session.execute(
            update(PayrollRun)
            .where(PayrollRun.payroll_run_id == run_id)
            .values(status="under_review")
            .execution_options(synchronize_session=False)
        )

        with pytest.raises(TransitionConflictError) as exc_info:
            await service.submit_for_review(hr_actor, organization.organization_id, run_id)

        assert exc_info.value.expected_status == "completed"

    async def test_maker_checker(
        self, session, settings, organization, payroll_setup, admin_actor, finance_actor
    ):
        service = PayrollRunService(session, replace(settings, enforce_maker_checker=True))
        result = await service.generate(admin_actor, organization.organization_id, PAY_PERIOD)
        run_id = result.run.payroll_run_id
        await service.submit_for_review(admin_actor, organization.organization_id, run_id)

        with pytest.raises(UnauthorizedError, match="approver must differ"):
            await service.approve(admin_actor, organization.organization_id, run_id)

        await service.approve(finance_actor, organization.organization_id, run_id)

        with pytest.raises(UnauthorizedError, match="locker must differ"):
            await service.lock(admin_actor, organization.organization_id, run_id)

        run = await service.lock(finance_actor, organization.organization_id, run_id)
        assert run.status == "locked"

    async def test_other_organization_not_found(
        self, service, organization, payroll_setup, hr_actor
    ):
        from uuid import uuid4

        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        with pytest.raises(PayrollRunNotFoundError):
            await service.get_run(uuid4(), result.run.payroll_run_id)


class TestDelete:
    async def test_delete_completed_run(
        self, service, session, organization, payroll_setup, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        run_id = result.run.payroll_run_id

        await service.delete(hr_actor, organization.organization_id, run_id)

        with pytest.raises(PayrollRunNotFoundError):
            await service.get_run(organization.organization_id, run_id)

        audit = await session.scalars(
            select(AuditEvent.action).where(AuditEvent.entity_id == run_id)
        )
        assert "deleted" in audit.all()

        # The period can be generated again
        again = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        assert again.run.status == "completed"

    async def test_under_review_cannot_delete(
        self, service, organization, payroll_setup, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        await service.submit_for_review(hr_actor, organization.organization_id, result.run.payroll_run_id)

        with pytest.raises(InvalidTransitionError):
            await service.delete(hr_actor, organization.organization_id, result.run.payroll_run_id)


class TestEntryLwpEdit:
    async def test_clearing_lwp_updates_entry_and_run(
        self, service, session, organization, payroll_setup, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        salaried = entry_for(result.entries, payroll_setup["salaried"])

        entry = await service.update_entry_lwp(
            hr_actor,
            organization.organization_id,
            result.run.payroll_run_id,
            salaried.payroll_entry_id,
            Decimal("0"),
        )

        assert entry.lwp_days == Decimal("0")
        assert entry.paid_days == Decimal("22")
        assert entry.lwp_deduction == Decimal("0")
        assert entry.total_deductions == Decimal("6550")
        assert entry.net_pay == Decimal("93450")
        assert "LWP" not in [line["code"] for line in entry.deductions_breakdown]

        run = await service.get_run(organization.organization_id, result.run.payroll_run_id)
        assert run.status == "completed"
        assert run.total_deductions == Decimal("7763")
        assert run.total_net == Decimal("107237")

        audit = await session.scalar(
            select(AuditEvent).where(AuditEvent.action == "entry_lwp_updated")
        )
        assert audit.details_json["previous_lwp_days"] == "2"
        assert audit.details_json["lwp_days"] == "0"

    async def test_half_day_lwp(self, service, organization, payroll_setup, hr_actor):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        salaried = entry_for(result.entries, payroll_setup["salaried"])

        entry = await service.update_entry_lwp(
            hr_actor,
            organization.organization_id,
            result.run.payroll_run_id,
            salaried.payroll_entry_id,
            "0.5",
        )

        # 100,000 x 0.5 / 22 = 2,272.73
        assert entry.lwp_deduction == Decimal("2273")
        assert entry.paid_days == Decimal("21.5")

    @pytest.mark.parametrize("lwp_days", ["-1", "23"])
    async def test_out_of_range(self, service, organization, payroll_setup, hr_actor, lwp_days):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        salaried = entry_for(result.entries, payroll_setup["salaried"])

        with pytest.raises(InvalidLwpDaysError):
            await service.update_entry_lwp(
                hr_actor,
                organization.organization_id,
                result.run.payroll_run_id,
                salaried.payroll_entry_id,
                lwp_days,
            )

    async def test_unknown_entry(self, service, organization, payroll_setup, hr_actor):
        from uuid import uuid4

        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        with pytest.raises(PayrollEntryNotFoundError):
            await service.update_entry_lwp(
                hr_actor,
                organization.organization_id,
                result.run.payroll_run_id,
                uuid4(),
                Decimal("1"),
            )


HIGH_EARNER = {
    "BASIC": Decimal("960000"),
    "HRA": Decimal("480000"),
    "SPECIAL": Decimal("960000"),
}


class TestEarnedPayLimit:
    """Deductions never take net pay below zero."""

    @pytest_asyncio.fixture
    async def unpaid_month(self, session, tax_reference_data, employee_factory):
        """24L CTC employee on unpaid leave every working day of April."""
        employee = await employee_factory(HIGH_EARNER)
        await mark_attendance(
            session,
            employee,
            "unpaid_leave",
            *working_dates("5_day", date(2025, 4, 1), date(2025, 4, 30)),
        )
        return employee

    async def test_full_month_lwp_takes_no_tds(
        self, service, organization, unpaid_month, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        entry = entry_for(result.entries, unpaid_month)

        assert entry.gross_earnings == Decimal("200000")
        assert entry.lwp_deduction == Decimal("200000")
        assert entry.pf_employee == Decimal("0")
        assert entry.professional_tax == Decimal("0")
        assert entry.tds_amount == Decimal("0")
        assert entry.net_pay == Decimal("0")
        assert entry.tds_computation["monthly_tds"] == "24375"
        assert [line["code"] for line in entry.deductions_breakdown] == ["LWP"]
        assert result.run.total_net == Decimal("0")

    async def test_tds_not_taken_moves_to_later_months(
        self, service, organization, unpaid_month, hr_actor
    ):
        await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        may = await service.generate(hr_actor, organization.organization_id, "2025-05")
        entry = entry_for(may.entries, unpaid_month)

        # 292,500 annual tax, none withheld in April, over 11 months
        assert entry.tds_amount == Decimal("26591")

    async def test_lwp_edit_restores_and_limits_tds(
        self, service, organization, unpaid_month, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        entry = entry_for(result.entries, unpaid_month)
        run_id = result.run.payroll_run_id

        cleared = await service.update_entry_lwp(
            hr_actor, organization.organization_id, run_id, entry.payroll_entry_id, Decimal("0")
        )
        assert cleared.tds_amount == Decimal("24375")
        assert cleared.pf_employee == Decimal("1800")
        assert cleared.professional_tax == Decimal("200")
        assert cleared.net_pay == Decimal("173625")

        unpaid = await service.update_entry_lwp(
            hr_actor, organization.organization_id, run_id, entry.payroll_entry_id, Decimal("22")
        )
        assert unpaid.tds_amount == Decimal("0")
        assert unpaid.total_deductions == Decimal("200000")
        assert unpaid.net_pay == Decimal("0")


class TestProfessionalTaxByState:
    """Professional tax follows the employee's work state."""

    async def test_two_states(
        self, service, organization, tax_reference_data, employee_factory, hr_actor
    ):
        components = {"BASIC": Decimal("90000"), "SPECIAL": Decimal("90000")}
        mumbai = await employee_factory(components, work_state="Maharashtra")
        bengaluru = await employee_factory(components, work_state="Karnataka")
        unassigned = await employee_factory(components, work_state=None)

        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        # 15,000 earned gross: above Maharashtra's 10,000 slab, not Karnataka's 15,000
        assert entry_for(result.entries, mumbai).professional_tax == Decimal("200")
        assert entry_for(result.entries, bengaluru).professional_tax == Decimal("0")
        assert entry_for(result.entries, unassigned).professional_tax == Decimal("0")
        assert entry_for(result.entries, bengaluru).net_pay == Decimal("13987")

    async def test_snapshot_carries_state(
        self, service, organization, tax_reference_data, employee_factory, hr_actor
    ):
        await employee_factory(STANDARD_COMPONENTS, work_state="Karnataka")
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        snapshot = await service.export_snapshot(
            hr_actor, organization.organization_id, result.run.payroll_run_id
        )

        assert [entry.work_state for entry in snapshot.entries] == ["Karnataka"]
        assert snapshot.entries[0].professional_tax == Decimal("200")


class TestExportSnapshot:
    async def test_snapshot_of_completed_run(
        self, service, organization, payroll_setup, hr_actor
    ):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)

        snapshot = await service.export_snapshot(
            hr_actor, organization.organization_id, result.run.payroll_run_id
        )

        assert snapshot.pay_period == PAY_PERIOD
        assert snapshot.total_net == Decimal("98146")
        assert [e.employee_code for e in snapshot.entries] == ["EMP001", "EMP002"]
        first = snapshot.entries[0]
        assert first.earnings[0] == ("BASIC", "Basic", Decimal("40000"))
        assert [code for code, _, _ in first.deductions] == [
            "LWP",
            "PF_EMPLOYEE",
            "PROFESSIONAL_TAX",
            "TDS",
        ]

    async def test_processing_run_not_exportable(
        self, service, organization, payroll_setup, hr_actor
    ):
        result = await service.generate(
            hr_actor, organization.organization_id, PAY_PERIOD, finalize=False
        )

        with pytest.raises(InvalidTransitionError):
            await service.export_snapshot(
                hr_actor, organization.organization_id, result.run.payroll_run_id
            )

    async def test_employee_cannot_export(self, service, organization, payroll_setup, hr_actor):
        result = await service.generate(hr_actor, organization.organization_id, PAY_PERIOD)
        employee = make_actor(
            organization, Role.EMPLOYEE, employee_id=payroll_setup["salaried"].employee_id
        )

        with pytest.raises(UnauthorizedError):
            await service.export_snapshot(
                employee, organization.organization_id, result.run.payroll_run_id
            )
