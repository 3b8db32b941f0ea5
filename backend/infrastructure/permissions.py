"""Role/permission provider hooks.

The engine only checks *state* validity.  Whether a caller may trigger an
operation at all is answered by a :class:`PermissionProvider`; deployments
with a real identity service install their own provider through
:func:`configure_permission_provider` during application start-up.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    OFFICER = "OFFICER"
    ACCOUNTING = "ACCOUNTING"
    WORKER = "WORKER"
    VIEWER = "VIEWER"


ELEVATED_ROLES = frozenset({Role.ADMIN, Role.MANAGER})


@dataclass(frozen=True)
class Caller:
    user_id: str
    name: str
    role: Role = Role.VIEWER
    department: str | None = None

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES


class Action(str, Enum):
    JOB_INTAKE = "job.intake"
    JOB_WORKFLOW = "job.workflow"
    JOB_CUSTOMER_DECISION = "job.customer_decision"
    JOB_TRANSFER = "job.transfer"
    JOB_TRANSFER_OVERRIDE = "job.transfer_override"
    JOB_REASSIGN = "job.reassign"
    JOB_ADD_ACTIVITY = "job.add_activity"
    ARCHIVED_JOB_ADD_ACTIVITY = "job.archived.add_activity"
    JOB_ARCHIVE = "job.archive"
    DOCUMENT_ISSUE = "document.issue"
    DOCUMENT_EDIT = "document.edit"
    DOCUMENT_REVIEW = "document.review"
    DOCUMENT_CONFIRM_PAID = "document.confirm_paid"
    DOCUMENT_CANCEL = "document.cancel"
    DOCUMENT_CANCEL_PAID = "document.cancel_paid"
    DOCUMENT_DELETE = "document.delete"
    DOCUMENT_LINK = "document.link"


class PermissionProvider(Protocol):
    def is_allowed(self, caller: Caller, action: Action) -> bool: ...


_OFFICE = {Role.OFFICER}
_FLOOR = {Role.WORKER, Role.OFFICER}

DEFAULT_GRANTS: dict[Action, frozenset[Role]] = {
    Action.JOB_INTAKE: frozenset(_OFFICE),
    Action.JOB_WORKFLOW: frozenset(_FLOOR),
    Action.JOB_CUSTOMER_DECISION: frozenset(_OFFICE),
    Action.JOB_TRANSFER: frozenset(_OFFICE),
    Action.JOB_TRANSFER_OVERRIDE: frozenset(),
    Action.JOB_REASSIGN: frozenset(_OFFICE),
    Action.JOB_ADD_ACTIVITY: frozenset(_FLOOR | {Role.ACCOUNTING}),
    Action.ARCHIVED_JOB_ADD_ACTIVITY: frozenset(),
    Action.JOB_ARCHIVE: frozenset({Role.ACCOUNTING}),
    Action.DOCUMENT_ISSUE: frozenset(_OFFICE | {Role.ACCOUNTING}),
    Action.DOCUMENT_EDIT: frozenset(_OFFICE | {Role.ACCOUNTING}),
    Action.DOCUMENT_REVIEW: frozenset({Role.ACCOUNTING}),
    Action.DOCUMENT_CONFIRM_PAID: frozenset({Role.ACCOUNTING}),
    Action.DOCUMENT_CANCEL: frozenset(_OFFICE | {Role.ACCOUNTING}),
    Action.DOCUMENT_CANCEL_PAID: frozenset(),
    Action.DOCUMENT_DELETE: frozenset(_OFFICE),
    Action.DOCUMENT_LINK: frozenset(_OFFICE | {Role.ACCOUNTING}),
}


class RolePermissionProvider:
    """Static role table; elevated roles may do everything."""

    def __init__(self, grants: dict[Action, frozenset[Role]] | None = None) -> None:
        self._grants = dict(DEFAULT_GRANTS if grants is None else grants)

    def is_allowed(self, caller: Caller, action: Action) -> bool:
        if caller.is_elevated:
            return True
        return caller.role in self._grants.get(action, frozenset())


_provider: PermissionProvider = RolePermissionProvider()


def configure_permission_provider(provider: PermissionProvider) -> None:
    """Install the permission provider consulted by the engine."""

    global _provider
    _provider = provider


def get_permission_provider() -> PermissionProvider:
    return _provider
