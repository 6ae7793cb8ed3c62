"""Payroll run state machine with transition validation and lock enforcement."""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import event, inspect, select
from sqlalchemy.orm import Session

from payrun_engine.models import PayrollEntry, PayrollRun


class PayrollRunStatus(str, Enum):
    """Payroll run status values."""

    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    LOCKED = "locked"


def _value(status: Any) -> str:
    return status.value if isinstance(status, Enum) else str(status)


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = _value(from_status)
        self.to_status = _value(to_status)
        self.reason = reason
        msg = f"Invalid transition from '{self.from_status}' to '{self.to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ImmutableRunError(Exception):
    """Raised when a write is attempted on an approved or locked run."""

    def __init__(self, payroll_run_id: UUID | None, status: str, operation: str):
        self.payroll_run_id = payroll_run_id
        self.status = _value(status)
        self.operation = operation
        super().__init__(
            f"Payroll run {payroll_run_id} is {self.status}; {operation} is not allowed"
        )


class TransitionConflictError(Exception):
    """Raised when a run's status changed between read and compare-and-swap."""

    def __init__(self, payroll_run_id: UUID, expected_status: str, to_status: str):
        self.payroll_run_id = payroll_run_id
        self.expected_status = _value(expected_status)
        self.to_status = _value(to_status)
        super().__init__(
            f"Payroll run {payroll_run_id} is no longer '{self.expected_status}'; "
            f"transition to '{self.to_status}' lost to a concurrent change"
        )


class PayrollRunStateMachine:
    """State machine for payroll run status transitions.

    Allowed transitions:
    - draft → processing
    - processing → completed
    - completed → under_review (submit for review)
    - under_review → approved
    - approved → locked

    Regeneration re-enters processing from draft, processing or completed and
    is validated separately. Locked is terminal.
    """

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        PayrollRunStatus.DRAFT: [PayrollRunStatus.PROCESSING],
        PayrollRunStatus.PROCESSING: [PayrollRunStatus.COMPLETED],
        PayrollRunStatus.COMPLETED: [PayrollRunStatus.UNDER_REVIEW],
        PayrollRunStatus.UNDER_REVIEW: [PayrollRunStatus.APPROVED],
        PayrollRunStatus.APPROVED: [PayrollRunStatus.LOCKED],
        PayrollRunStatus.LOCKED: [],  # Terminal state
    }

    # Statuses where entries may be regenerated or edited
    REGENERATION_ALLOWED = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.PROCESSING,
        PayrollRunStatus.COMPLETED,
    }

    ENTRIES_MUTABLE = {
        PayrollRunStatus.PROCESSING,
        PayrollRunStatus.COMPLETED,
    }

    DELETABLE = {
        PayrollRunStatus.DRAFT,
        PayrollRunStatus.PROCESSING,
        PayrollRunStatus.COMPLETED,
    }

    # Statuses where the run and its entries are frozen
    IMMUTABLE = {
        PayrollRunStatus.APPROVED,
        PayrollRunStatus.LOCKED,
    }

    # Statuses whose figures may be handed to exporters
    EXPORTABLE = {
        PayrollRunStatus.COMPLETED,
        PayrollRunStatus.UNDER_REVIEW,
        PayrollRunStatus.APPROVED,
        PayrollRunStatus.LOCKED,
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(
        cls,
        from_status: str,
        to_status: str,
        payroll_run_id: UUID | None = None,
    ) -> None:
        """Validate a transition.

        Raises ImmutableRunError for any transition out of locked and
        InvalidTransitionError for anything else off the path.
        """
        if from_status == PayrollRunStatus.LOCKED:
            raise ImmutableRunError(
                payroll_run_id, from_status, f"transition to '{_value(to_status)}'"
            )
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(_value(from_status), _value(to_status))

    @classmethod
    def validate_regeneration(cls, status: str, payroll_run_id: UUID | None = None) -> None:
        """Validate that a run's entries may be recomputed from scratch."""
        if status in cls.IMMUTABLE:
            raise ImmutableRunError(payroll_run_id, _value(status), "regeneration")
        if status not in cls.REGENERATION_ALLOWED:
            raise InvalidTransitionError(
                _value(status),
                PayrollRunStatus.PROCESSING.value,
                "runs under review cannot be regenerated",
            )

    @classmethod
    def validate_entry_edit(cls, status: str, payroll_run_id: UUID | None = None) -> None:
        """Validate that individual entries may be edited."""
        if status in cls.IMMUTABLE:
            raise ImmutableRunError(payroll_run_id, _value(status), "entry edit")
        if status not in cls.ENTRIES_MUTABLE:
            raise InvalidTransitionError(
                _value(status),
                _value(status),
                "entries can only be edited while processing or completed",
            )

    @classmethod
    def validate_deletion(cls, status: str, payroll_run_id: UUID | None = None) -> None:
        """Validate that a run may be deleted."""
        if status in cls.IMMUTABLE:
            raise ImmutableRunError(payroll_run_id, _value(status), "deletion")
        if status not in cls.DELETABLE:
            raise InvalidTransitionError(
                _value(status),
                "deleted",
                "only draft, processing or completed runs can be deleted",
            )

    @classmethod
    def is_immutable(cls, status: str) -> bool:
        """Check if the run and its entries are frozen in this status."""
        return status in cls.IMMUTABLE

    @classmethod
    def can_export(cls, status: str) -> bool:
        """Check if a run's figures are final enough to export."""
        return status in cls.EXPORTABLE

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        return cls.VALID_TRANSITIONS.get(current_status, [])


def _persisted_status(run: PayrollRun) -> str:
    """Status as last loaded from the database, ignoring pending changes."""
    history = inspect(run).attrs.status.history
    if history.deleted:
        return _value(history.deleted[0])
    return _value(run.status)


@event.listens_for(Session, "before_flush")
def _reject_writes_to_locked_runs(session: Session, flush_context: Any, instances: Any) -> None:
    """Block ORM updates and deletes of locked runs and their entries.

    Service methods check status before writing; this catches any other
    writer going through an ORM session.
    """
    entry_run_ids: set[UUID] = set()

    for obj in session.deleted:
        if isinstance(obj, PayrollRun) and _persisted_status(obj) == PayrollRunStatus.LOCKED:
            raise ImmutableRunError(obj.payroll_run_id, PayrollRunStatus.LOCKED.value, "deletion")
        if isinstance(obj, PayrollEntry):
            entry_run_ids.add(obj.payroll_run_id)

    for obj in session.dirty:
        if not session.is_modified(obj):
            continue
        if isinstance(obj, PayrollRun) and _persisted_status(obj) == PayrollRunStatus.LOCKED:
            raise ImmutableRunError(obj.payroll_run_id, PayrollRunStatus.LOCKED.value, "update")
        if isinstance(obj, PayrollEntry):
            entry_run_ids.add(obj.payroll_run_id)

    for obj in session.new:
        if isinstance(obj, PayrollEntry) and obj.payroll_run_id is not None:
            entry_run_ids.add(obj.payroll_run_id)

    if not entry_run_ids:
        return

    locked_run_id = session.scalars(
        select(PayrollRun.payroll_run_id).where(
            PayrollRun.payroll_run_id.in_(entry_run_ids),
            PayrollRun.status == PayrollRunStatus.LOCKED.value,
        )
    ).first()
    if locked_run_id is not None:
        raise ImmutableRunError(locked_run_id, PayrollRunStatus.LOCKED.value, "entry write")
