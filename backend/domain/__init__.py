"""Domain entities and state machines for job/document reconciliation."""

from .activity import Activity
from .claims import ClaimStatus, PaymentClaim
from .documents import (
    BILLABLE_DOC_TYPES,
    REFERENCE_ONLY_DOC_TYPES,
    DocStatus,
    DocType,
    LineItem,
    SalesDocument,
)
from .jobs import Department, Job, JobStatus

__all__ = [
    "Activity",
    "BILLABLE_DOC_TYPES",
    "REFERENCE_ONLY_DOC_TYPES",
    "ClaimStatus",
    "Department",
    "DocStatus",
    "DocType",
    "Job",
    "JobStatus",
    "LineItem",
    "PaymentClaim",
    "SalesDocument",
]
