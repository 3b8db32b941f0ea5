from datetime import date

import pytest

from backend.core.validation import InvalidTransition, InvariantViolation
from backend.domain import job_machine
from backend.domain.documents import DocType, SalesDocument
from backend.domain.job_machine import JobEvent, Worker
from backend.domain.jobs import Department, Job, JobStatus

WORKER = Worker("w1", "Wit", Department.CAR_SERVICE)


def _job(status: JobStatus = JobStatus.RECEIVED, **fields) -> Job:
    return Job(job_id="job-1", department=Department.CAR_SERVICE, status=status, **fields)


def _document(doc_type: DocType = DocType.TAX_INVOICE, **fields) -> SalesDocument:
    return SalesDocument(doc_id="doc-1", doc_type=doc_type, doc_no="INV2025-0001", issue_date=date(2025, 3, 1), **fields)


def test_happy_path_through_quotation():
    job = _job()
    job = job_machine.accept_job(job, WORKER).after
    assert job.status is JobStatus.IN_PROGRESS
    assert job.assignee_id == "w1"

    job = job_machine.request_quotation(job).after
    job = job_machine.quotation_issued(job, _document(DocType.QUOTATION)).after
    assert job.status is JobStatus.WAITING_APPROVE

    job = job_machine.customer_approve(job).after
    job = job_machine.parts_ready(job).after
    job = job_machine.mark_done(job).after
    assert job.status is JobStatus.DONE


def test_invalid_transition_leaves_job_untouched():
    job = _job(JobStatus.DONE)

    with pytest.raises(InvalidTransition) as excinfo:
        job_machine.accept_job(job, WORKER)

    assert excinfo.value.context["status"] == "DONE"
    assert job.status is JobStatus.DONE
    assert job.assignee_id is None


def test_attach_and_pay_links_then_closes():
    document = _document()
    attached = job_machine.attach_billable_document(_job(JobStatus.DONE), document)
    assert attached.after.status is JobStatus.WAITING_CUSTOMER_PICKUP
    assert attached.after.sales_doc_no == "INV2025-0001"
    assert attached.activity_text == "Created TAX_INVOICE document: INV2025-0001"

    paid = job_machine.document_paid(attached.after, document)
    assert paid.after.status is JobStatus.CLOSED
    assert paid.after.closed_date == date(2025, 3, 1)


def test_quotation_cannot_bill_a_job():
    with pytest.raises(InvariantViolation):
        job_machine.attach_billable_document(_job(JobStatus.DONE), _document(DocType.QUOTATION))


def test_attach_and_settle_closes_on_issue_date():
    transition = job_machine.attach_and_settle(_job(JobStatus.DONE), _document())

    assert transition.after.status is JobStatus.CLOSED
    assert transition.after.closed_date == date(2025, 3, 1)
    assert transition.after.sales_doc_id == "doc-1"


def test_document_cancelled_reopens_archived_job():
    job = _job(
        JobStatus.CLOSED,
        closed_date=date(2025, 3, 1),
        sales_doc_id="doc-1",
        sales_doc_no="INV2025-0001",
        sales_doc_type="TAX_INVOICE",
        is_archived=True,
    )

    transition = job_machine.document_cancelled(job, _document(), "wrong amount")

    after = transition.after
    assert after.status is JobStatus.DONE
    assert (after.sales_doc_id, after.sales_doc_no, after.sales_doc_type) == (None, None, None)
    assert after.closed_date is None
    assert after.is_archived is False
    assert transition.activity_text.endswith("Reason: wrong amount")


def test_archived_job_refuses_other_events():
    job = _job(JobStatus.CLOSED, closed_date=date(2025, 3, 1), is_archived=True)

    with pytest.raises(InvalidTransition):
        job_machine.transfer_department(job, Department.MECHANIC, override=True)


def test_document_cancelled_requires_current_document():
    job = _job(JobStatus.WAITING_CUSTOMER_PICKUP, sales_doc_id="other", sales_doc_no="X", sales_doc_type="TAX_INVOICE")

    with pytest.raises(InvalidTransition):
        job_machine.document_cancelled(job, _document())


def test_customer_reject_paths():
    waiting = _job(JobStatus.WAITING_APPROVE)

    with_cost = job_machine.customer_reject(waiting, True, date(2025, 3, 2))
    no_cost = job_machine.customer_reject(waiting, False, date(2025, 3, 2))

    assert with_cost.after.status is JobStatus.DONE
    assert with_cost.after.closed_date is None
    assert no_cost.after.status is JobStatus.CLOSED
    assert no_cost.after.closed_date == date(2025, 3, 2)


def test_transfer_clears_assignee_and_restarts():
    job = _job(JobStatus.IN_PROGRESS, assignee_id="w1", assignee_name="Wit")

    transition = job_machine.transfer_department(job, Department.COMMONRAIL, "injector work")

    assert transition.after.status is JobStatus.RECEIVED
    assert transition.after.department is Department.COMMONRAIL
    assert transition.after.assignee_id is None
    assert transition.activity_text == "Department changed to COMMONRAIL. Note: injector work"


def test_transfer_of_closed_job_needs_override():
    job = _job(JobStatus.CLOSED, closed_date=date(2025, 3, 1))

    with pytest.raises(InvalidTransition):
        job_machine.transfer_department(job, Department.MECHANIC)

    reopened = job_machine.transfer_department(job, Department.MECHANIC, override=True).after
    assert reopened.status is JobStatus.RECEIVED
    assert reopened.closed_date is None


def test_reassign_guards():
    job = _job(JobStatus.IN_PROGRESS, assignee_id="w1", assignee_name="Wit")

    with pytest.raises(InvariantViolation):
        job_machine.reassign_worker(job, Worker("w2", "Dao", Department.MECHANIC))
    with pytest.raises(InvariantViolation):
        job_machine.reassign_worker(job, Worker("w2", "Dao", Department.CAR_SERVICE, active=False))
    with pytest.raises(InvariantViolation):
        job_machine.reassign_worker(job, WORKER)

    transition = job_machine.reassign_worker(job, Worker("w2", "Dao", Department.CAR_SERVICE))
    assert transition.after.assignee_name == "Dao"
    assert transition.after.status is JobStatus.IN_PROGRESS


def test_allowed_events_from_done():
    events = job_machine.allowed_events(JobStatus.DONE)

    assert JobEvent.ATTACH_BILLABLE_DOCUMENT in events
    assert JobEvent.ATTACH_AND_SETTLE in events
    assert JobEvent.ACCEPT not in events
