"""Role-based capability checks for payroll operations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Caller roles supplied by the identity provider."""

    ADMIN = "admin"
    FINANCE = "finance"
    HR = "hr"
    EMPLOYEE = "employee"


class Action(str, Enum):
    """Operations gated by role."""

    VIEW = "view"
    GENERATE = "generate"
    REGENERATE = "regenerate"
    EDIT_ENTRY = "edit_entry"
    SUBMIT = "submit"
    APPROVE = "approve"
    LOCK = "lock"
    DELETE = "delete"
    EXPORT = "export"
    DECLARE = "declare"
    REVIEW = "review"
    REVISE = "revise"


class Resource(str, Enum):
    """Entities operations act on."""

    PAYROLL_RUN = "payroll_run"
    INVESTMENT_DECLARATION = "investment_declaration"
    COMPENSATION = "compensation"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller as resolved by the identity provider."""

    user_id: UUID
    organization_id: UUID
    role: Role
    employee_id: UUID | None = None


_PAYROLL_STAFF = frozenset({Role.ADMIN, Role.FINANCE, Role.HR})
_ELEVATED = frozenset({Role.ADMIN, Role.FINANCE})

# {(resource, action): roles allowed}
PERMISSIONS: dict[tuple[Resource, Action], frozenset[Role]] = {
    (Resource.PAYROLL_RUN, Action.VIEW): _PAYROLL_STAFF,
    (Resource.PAYROLL_RUN, Action.GENERATE): _PAYROLL_STAFF,
    (Resource.PAYROLL_RUN, Action.REGENERATE): _PAYROLL_STAFF,
    (Resource.PAYROLL_RUN, Action.EDIT_ENTRY): _PAYROLL_STAFF,
    (Resource.PAYROLL_RUN, Action.SUBMIT): _PAYROLL_STAFF,
    (Resource.PAYROLL_RUN, Action.DELETE): _PAYROLL_STAFF,
    (Resource.PAYROLL_RUN, Action.EXPORT): _PAYROLL_STAFF,
    (Resource.PAYROLL_RUN, Action.APPROVE): _ELEVATED,
    (Resource.PAYROLL_RUN, Action.LOCK): _ELEVATED,
    (Resource.INVESTMENT_DECLARATION, Action.VIEW): _PAYROLL_STAFF | {Role.EMPLOYEE},
    (Resource.INVESTMENT_DECLARATION, Action.DECLARE): _PAYROLL_STAFF | {Role.EMPLOYEE},
    (Resource.INVESTMENT_DECLARATION, Action.REVIEW): _PAYROLL_STAFF,
    (Resource.COMPENSATION, Action.VIEW): _PAYROLL_STAFF,
    (Resource.COMPENSATION, Action.REVISE): frozenset({Role.ADMIN, Role.HR}),
}


class UnauthorizedError(Exception):
    """Raised when an actor's role or organization does not permit an action."""

    def __init__(self, actor: Actor, action: Action | str, resource: Resource | str, reason: str):
        self.actor = actor
        self.action = Action(action)
        self.resource = Resource(resource)
        self.reason = reason
        super().__init__(
            f"User {actor.user_id} ({actor.role.value}) may not {self.action.value} "
            f"{self.resource.value}: {reason}"
        )


def can(role: Role | str, action: Action | str, resource: Resource | str) -> bool:
    """Check whether a role may perform an action on a resource."""
    try:
        key = (Resource(resource), Action(action))
        role = Role(role)
    except ValueError:
        return False
    return role in PERMISSIONS.get(key, frozenset())


def authorize(
    actor: Actor,
    action: Action | str,
    resource: Resource | str,
    organization_id: UUID,
) -> None:
    """Ensure the actor may act on a resource of an organization.

    Raises:
        UnauthorizedError: If the role lacks the capability or the actor
            belongs to another organization
    """
    if actor.organization_id != organization_id:
        logger.warning(
            "Cross-organization %s on %s denied for user %s",
            Action(action).value,
            Resource(resource).value,
            actor.user_id,
        )
        raise UnauthorizedError(actor, action, resource, "organization mismatch")
    if not can(actor.role, action, resource):
        raise UnauthorizedError(actor, action, resource, "role not permitted")
