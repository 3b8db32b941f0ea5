from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for every failure surfaced by the engine."""

    code = "engine_error"
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class InvalidTransition(EngineError):
    """Requested event is not valid from the record's current state."""

    code = "invalid_transition"


class StateConflict(EngineError):
    """A racing writer moved the record between read and commit."""

    code = "state_conflict"
    retryable = True


class InvariantViolation(EngineError):
    """The request would break a consistency rule; retrying cannot help."""

    code = "invariant_violation"


class StorageUnavailable(EngineError):
    """The record store did not apply the batch (transport or timeout)."""

    code = "storage_unavailable"
    retryable = True


class PermissionDenied(EngineError):
    """The caller may not trigger the requested operation."""

    code = "permission_denied"


class RecordNotFound(EngineError):
    code = "not_found"


LINKAGE_FIELDS = ("sales_doc_id", "sales_doc_no", "sales_doc_type")


def validate_job_linkage(job: Any) -> None:
    present = [getattr(job, name) is not None for name in LINKAGE_FIELDS]
    if any(present) and not all(present):
        raise InvariantViolation(
            f"job {job.job_id} has a partially set sales document link",
            job_id=job.job_id,
        )


def validate_job_closed(job: Any) -> None:
    if job.status == "CLOSED" and job.closed_date is None:
        raise InvariantViolation(f"closed job {job.job_id} has no closed date", job_id=job.job_id)

