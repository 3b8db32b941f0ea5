"""Application services."""

from .archival import ArchivalMover, ArchiveResult, JobLocation
from .engine import (
    Engine,
    configure_engine,
    get_activity_feed,
    get_coordinator,
    get_dashboard_reader,
    get_engine,
    get_job_service,
    reset_engine_state,
)
from .reconciliation import DocumentOutcome, IssueRequest, Proposal, ReconciliationCoordinator

__all__ = [
    "ArchivalMover",
    "ArchiveResult",
    "DocumentOutcome",
    "Engine",
    "IssueRequest",
    "JobLocation",
    "Proposal",
    "ReconciliationCoordinator",
    "configure_engine",
    "get_activity_feed",
    "get_coordinator",
    "get_dashboard_reader",
    "get_engine",
    "get_job_service",
    "reset_engine_state",
]
