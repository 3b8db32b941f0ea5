"""Job workflow state machine.

Every event is listed in :data:`JOB_TRANSITIONS` with the set of statuses it
may fire from and the status it lands on (``None`` keeps the current
status).  The functions in this module are pure: they return a
:class:`JobTransition` describing the new job value and the activity text
that must be committed with it, or raise :class:`InvalidTransition` /
:class:`InvariantViolation` without touching the input.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from enum import Enum

from backend.core.validation import InvalidTransition, InvariantViolation
from backend.domain.documents import DocType, SalesDocument
from backend.domain.jobs import TERMINAL_JOB_STATUSES, Department, Job, JobStatus


class JobEvent(str, Enum):
    ACCEPT = "accept"
    REQUEST_QUOTATION = "request_quotation"
    QUOTATION_ISSUED = "quotation_issued"
    MARK_DONE = "mark_done"
    CUSTOMER_APPROVE = "customer_approve"
    CUSTOMER_REJECT_WITH_COST = "customer_reject_with_cost"
    CUSTOMER_REJECT_NO_COST = "customer_reject_no_cost"
    PARTS_READY = "parts_ready"
    TRANSFER_DEPARTMENT = "transfer_department"
    REASSIGN_WORKER = "reassign_worker"
    ATTACH_BILLABLE_DOCUMENT = "attach_billable_document"
    DOCUMENT_PAID = "document_paid"
    ATTACH_AND_SETTLE = "attach_and_settle"
    DOCUMENT_CANCELLED = "document_cancelled"


@dataclass(frozen=True)
class Rule:
    sources: frozenset[JobStatus]
    target: JobStatus | None


ALL_STATUSES = frozenset(JobStatus)
OPEN_STATUSES = ALL_STATUSES - TERMINAL_JOB_STATUSES
BILLABLE_SOURCES = frozenset({JobStatus.DONE, JobStatus.WAITING_CUSTOMER_PICKUP})

JOB_TRANSITIONS: dict[JobEvent, Rule] = {
    JobEvent.ACCEPT: Rule(frozenset({JobStatus.RECEIVED}), JobStatus.IN_PROGRESS),
    JobEvent.REQUEST_QUOTATION: Rule(frozenset({JobStatus.IN_PROGRESS}), JobStatus.WAITING_QUOTATION),
    JobEvent.QUOTATION_ISSUED: Rule(
        frozenset({JobStatus.IN_PROGRESS, JobStatus.WAITING_QUOTATION}), JobStatus.WAITING_APPROVE
    ),
    JobEvent.MARK_DONE: Rule(
        frozenset(
            {
                JobStatus.IN_PROGRESS,
                JobStatus.WAITING_QUOTATION,
                JobStatus.WAITING_APPROVE,
                JobStatus.IN_REPAIR_PROCESS,
            }
        ),
        JobStatus.DONE,
    ),
    JobEvent.CUSTOMER_APPROVE: Rule(frozenset({JobStatus.WAITING_APPROVE}), JobStatus.PENDING_PARTS),
    JobEvent.CUSTOMER_REJECT_WITH_COST: Rule(frozenset({JobStatus.WAITING_APPROVE}), JobStatus.DONE),
    JobEvent.CUSTOMER_REJECT_NO_COST: Rule(frozenset({JobStatus.WAITING_APPROVE}), JobStatus.CLOSED),
    JobEvent.PARTS_READY: Rule(frozenset({JobStatus.PENDING_PARTS}), JobStatus.IN_REPAIR_PROCESS),
    JobEvent.TRANSFER_DEPARTMENT: Rule(OPEN_STATUSES, JobStatus.RECEIVED),
    JobEvent.REASSIGN_WORKER: Rule(OPEN_STATUSES, None),
    JobEvent.ATTACH_BILLABLE_DOCUMENT: Rule(BILLABLE_SOURCES, JobStatus.WAITING_CUSTOMER_PICKUP),
    JobEvent.DOCUMENT_PAID: Rule(frozenset({JobStatus.WAITING_CUSTOMER_PICKUP}), JobStatus.CLOSED),
    JobEvent.ATTACH_AND_SETTLE: Rule(BILLABLE_SOURCES, JobStatus.CLOSED),
    JobEvent.DOCUMENT_CANCELLED: Rule(ALL_STATUSES, JobStatus.DONE),
}


@dataclass(frozen=True)
class Worker:
    worker_id: str
    name: str
    department: Department | None
    active: bool = True


@dataclass(frozen=True)
class JobTransition:
    event: JobEvent
    before: Job
    after: Job
    activity_text: str

    @property
    def status_changed(self) -> bool:
        return self.before.status != self.after.status


def allowed_events(status: JobStatus) -> list[JobEvent]:
    return [event for event, rule in JOB_TRANSITIONS.items() if status in rule.sources]


def _target(job: Job, event: JobEvent) -> JobStatus:
    rule = JOB_TRANSITIONS[event]
    if job.is_archived and event is not JobEvent.DOCUMENT_CANCELLED:
        raise InvalidTransition(
            f"job {job.job_id} is archived; {event.value} is not allowed",
            job_id=job.job_id,
            event=event.value,
        )
    if job.status not in rule.sources:
        raise InvalidTransition(
            f"cannot {event.value} job {job.job_id} from {job.status.value}",
            job_id=job.job_id,
            event=event.value,
            status=job.status.value,
        )
    return rule.target or job.status


def _transition(job: Job, event: JobEvent, text: str, **changes: object) -> JobTransition:
    status = _target(job, event)
    return JobTransition(event=event, before=job, after=replace(job, status=status, **changes), activity_text=text)


def _link(document: SalesDocument) -> dict[str, object]:
    return {
        "sales_doc_id": document.doc_id,
        "sales_doc_no": document.doc_no,
        "sales_doc_type": document.doc_type.value,
    }


def accept_job(job: Job, worker: Worker) -> JobTransition:
    return _transition(
        job,
        JobEvent.ACCEPT,
        f"Job accepted by {worker.name}",
        assignee_id=worker.worker_id,
        assignee_name=worker.name,
    )


def request_quotation(job: Job) -> JobTransition:
    return _transition(job, JobEvent.REQUEST_QUOTATION, "Quotation requested")


def quotation_issued(job: Job, document: SalesDocument) -> JobTransition:
    if document.doc_type is not DocType.QUOTATION:
        raise InvariantViolation(f"{document.doc_no} is not a quotation", doc_id=document.doc_id)
    return _transition(
        job, JobEvent.QUOTATION_ISSUED, f"Quotation {document.doc_no} issued, waiting for customer approval"
    )


def mark_done(job: Job) -> JobTransition:
    return _transition(job, JobEvent.MARK_DONE, "Work marked as done")


def customer_approve(job: Job) -> JobTransition:
    return _transition(job, JobEvent.CUSTOMER_APPROVE, "Customer approved, preparing parts")


def customer_reject(job: Job, with_cost: bool, closed_on: date) -> JobTransition:
    if with_cost:
        return _transition(job, JobEvent.CUSTOMER_REJECT_WITH_COST, "Customer rejected (with cost), sent to billing")
    return _transition(
        job,
        JobEvent.CUSTOMER_REJECT_NO_COST,
        "Customer rejected (no cost), job closed",
        closed_date=closed_on,
    )


def parts_ready(job: Job) -> JobTransition:
    return _transition(job, JobEvent.PARTS_READY, "Parts ready, repair in process")


def transfer_department(job: Job, department: Department, note: str = "", *, override: bool = False) -> JobTransition:
    if job.department == department:
        raise InvariantViolation(f"job {job.job_id} is already in {department.value}", job_id=job.job_id)
    text = f"Department changed to {department.value}. Note: {note or '-'}"
    changes: dict[str, object] = {"department": department, "assignee_id": None, "assignee_name": None}
    if job.status in TERMINAL_JOB_STATUSES:
        if not override or job.is_archived:
            raise InvalidTransition(
                f"job {job.job_id} is {job.status.value}; transfer needs an explicit override",
                job_id=job.job_id,
            )
        changes.update(closed_date=None, closed_by_id=None, closed_by_name=None, payment_status_at_close=None)
        return JobTransition(
            event=JobEvent.TRANSFER_DEPARTMENT,
            before=job,
            after=replace(job, status=JobStatus.RECEIVED, **changes),
            activity_text=text + " (reopened by override)",
        )
    return _transition(job, JobEvent.TRANSFER_DEPARTMENT, text, **changes)


def reassign_worker(job: Job, worker: Worker) -> JobTransition:
    if not job.assignee_id:
        raise InvariantViolation(f"job {job.job_id} has no current assignee to replace", job_id=job.job_id)
    if not worker.active:
        raise InvariantViolation(f"worker {worker.name} is not active", worker_id=worker.worker_id)
    if worker.department != job.department:
        raise InvariantViolation(
            f"worker {worker.name} does not belong to {job.department.value}",
            worker_id=worker.worker_id,
        )
    if worker.worker_id == job.assignee_id:
        raise InvariantViolation(f"worker {worker.name} is already assigned", worker_id=worker.worker_id)
    return _transition(
        job,
        JobEvent.REASSIGN_WORKER,
        f"Worker changed to {worker.name}",
        assignee_id=worker.worker_id,
        assignee_name=worker.name,
    )


def attach_billable_document(job: Job, document: SalesDocument) -> JobTransition:
    if not document.is_billable:
        raise InvariantViolation(f"{document.doc_type.value} cannot bill a job", doc_id=document.doc_id)
    return _transition(
        job,
        JobEvent.ATTACH_BILLABLE_DOCUMENT,
        f"Created {document.doc_type.value} document: {document.doc_no}"
        + (" (backfilled)" if document.is_backfill else ""),
        **_link(document),
    )


def document_paid(job: Job, document: SalesDocument, paid_on: date | None = None) -> JobTransition:
    closed_on = paid_on or document.issue_date
    if closed_on is None:
        raise InvariantViolation(f"{document.doc_no} has no issue date", doc_id=document.doc_id)
    return _transition(
        job,
        JobEvent.DOCUMENT_PAID,
        f"{document.doc_type.value} {document.doc_no} paid, job closed",
        closed_date=closed_on,
    )


def attach_and_settle(job: Job, document: SalesDocument) -> JobTransition:
    if not document.is_billable:
        raise InvariantViolation(f"{document.doc_type.value} cannot bill a job", doc_id=document.doc_id)
    if document.issue_date is None:
        raise InvariantViolation(f"{document.doc_no} has no issue date", doc_id=document.doc_id)
    return _transition(
        job,
        JobEvent.ATTACH_AND_SETTLE,
        f"Linked paid {document.doc_type.value} {document.doc_no}, job closed",
        closed_date=document.issue_date,
        **_link(document),
    )


def document_cancelled(job: Job, document: SalesDocument, reason: str = "") -> JobTransition:
    """Roll a job back to DONE when its representative document goes away.

    This is the only transition accepted on an archived job: the caller is
    expected to restore the job into the live partition in the same batch.
    """

    if job.sales_doc_id != document.doc_id:
        raise InvalidTransition(
            f"{document.doc_no} is not the current document of job {job.job_id}",
            job_id=job.job_id,
            doc_id=document.doc_id,
        )
    text = f"{document.doc_type.value} {document.doc_no} cancelled, job returned to DONE for re-billing"
    if reason:
        text += f". Reason: {reason}"
    return _transition(
        job,
        JobEvent.DOCUMENT_CANCELLED,
        text,
        sales_doc_id=None,
        sales_doc_no=None,
        sales_doc_type=None,
        closed_date=None,
        closed_by_id=None,
        closed_by_name=None,
        payment_status_at_close=None,
        is_archived=False,
        archived_at=None,
    )
