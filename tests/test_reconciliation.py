import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal

import pytest

from conftest import ACCOUNTING, ADMIN, OFFICE, WORKER, build_engine, done_job, invoice, items

from backend.application import IssueRequest, configure_engine, reset_engine_state
from backend.core.partitions import ACTIVE_DOCUMENTS, DOCUMENT_NUMBERS, DOCUMENTS, JOBS, activities_collection
from backend.core.validation import (
    InvariantViolation,
    PermissionDenied,
    StateConflict,
    StorageUnavailable,
    validate_job_closed,
    validate_job_linkage,
)
from backend.domain.documents import DocStatus, DocType
from backend.domain.jobs import Department, Job, JobStatus
from backend.infrastructure import InMemoryRecordStore


def assert_job_invariants(engine):
    partitions = [JOBS] + engine.archival.candidate_partitions()
    for partition in partitions:
        for row in engine.store.query(partition):
            job = Job.from_record(row)
            validate_job_linkage(job)
            validate_job_closed(job)


def pay(engine, doc_id):
    engine.coordinator.approve(doc_id, ACCOUNTING)
    return engine.coordinator.confirm_paid(doc_id, ACCOUNTING)


def test_invoice_moves_job_to_pickup(engine):
    job = engine.jobs.create_job(Department.CAR_SERVICE, OFFICE, description="brake noise")
    engine.jobs.accept_job(job.job_id, WORKER)
    engine.jobs.request_quotation(job.job_id, WORKER)
    engine.jobs.mark_done(job.job_id, WORKER)

    outcome = engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)

    assert outcome.job.status is JobStatus.WAITING_CUSTOMER_PICKUP
    assert outcome.job.sales_doc_id == outcome.document.doc_id
    assert outcome.job.sales_doc_type == DocType.TAX_INVOICE.value
    assert outcome.document.doc_no == "INV2025-0001"
    assert outcome.document.grand_total == Decimal("1070.00")
    assert [activity.event for activity in outcome.activities] == ["attach_billable_document"]
    stored = engine.jobs.get_job(job.job_id).job
    assert stored.status is JobStatus.WAITING_CUSTOMER_PICKUP
    assert_job_invariants(engine)


def test_paid_invoice_closes_and_archives_job(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)

    paid = pay(engine, issued.document.doc_id)

    assert paid.document.status is DocStatus.PAID
    assert paid.job.status is JobStatus.CLOSED
    assert paid.job.closed_date == date(2025, 3, 1)
    assert paid.job.is_archived is True
    assert paid.archive.partition == "jobsArchive_2025"
    assert engine.store.get(JOBS, job.job_id) is None
    assert engine.archival.find_job(job.job_id).partition == "jobsArchive_2025"
    assert engine.store.query(activities_collection(JOBS, job.job_id)) == []
    assert_job_invariants(engine)


def test_cancel_paid_invoice_restores_archived_job(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)
    pay(engine, issued.document.doc_id)
    before = engine.feed.list(job.job_id)

    with pytest.raises(PermissionDenied):
        engine.coordinator.cancel_document(issued.document.doc_id, "wrong amount", ACCOUNTING)

    outcome = engine.coordinator.cancel_document(issued.document.doc_id, "wrong amount", ADMIN)

    assert outcome.document.status is DocStatus.CANCELLED
    location = engine.archival.find_job(job.job_id)
    assert location.partition == JOBS
    assert location.job.status is JobStatus.DONE
    assert location.job.sales_doc_id is None
    assert location.job.sales_doc_no is None
    assert location.job.closed_date is None
    assert location.job.is_archived is False
    assert engine.store.get("jobsArchive_2025", job.job_id) is None
    assert engine.store.query(activities_collection("jobsArchive_2025", job.job_id)) == []

    after = engine.feed.list(job.job_id)
    assert len(after) == len(before) + 1
    assert "cancelled" in after[0].text
    assert after[0].event == "document_cancelled"
    assert_job_invariants(engine)


def test_customer_reject_without_cost_closes_with_no_document(engine):
    job = engine.jobs.create_job(Department.COMMONRAIL, OFFICE)
    engine.jobs.accept_job(job.job_id, WORKER)
    engine.jobs.request_quotation(job.job_id, WORKER)
    quote = engine.coordinator.issue_document(
        job.job_id, IssueRequest(doc_type=DocType.QUOTATION, items=items("2500")), OFFICE
    )
    assert quote.job.status is JobStatus.WAITING_APPROVE

    closed = engine.jobs.customer_reject(job.job_id, OFFICE, with_cost=False)

    assert closed.status is JobStatus.CLOSED
    assert closed.closed_date == date(2025, 3, 1)
    assert closed.sales_doc_id is None
    assert_job_invariants(engine)


def test_customer_reject_with_cost_waits_for_billing(engine):
    job = engine.jobs.create_job(Department.MECHANIC, OFFICE)
    engine.jobs.accept_job(job.job_id, WORKER)
    engine.coordinator.issue_document(job.job_id, IssueRequest(doc_type=DocType.QUOTATION, items=items("900")), OFFICE)

    rejected = engine.jobs.customer_reject(job.job_id, OFFICE, with_cost=True)

    assert rejected.status is JobStatus.DONE
    assert engine.dashboard.unbilled_done() == 1


class RacingStore:
    """Holds document-creating commits until every racer has read its state."""

    def __init__(self, inner):
        self._inner = inner
        self.barrier = None

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def commit_batch(self, writes):
        if self.barrier is not None and any(write.collection == DOCUMENTS for write in writes):
            self.barrier.wait(timeout=5)
        return self._inner.commit_batch(writes)


def test_concurrent_issuance_leaves_one_live_invoice():
    store = RacingStore(InMemoryRecordStore())
    engine = configure_engine(build_engine(store=store))
    try:
        job = done_job(engine)
        store.barrier = threading.Barrier(2)

        def issue():
            try:
                return engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)
            except (StateConflict, InvariantViolation) as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(lambda _: issue(), range(2)))

        winners = [result for result in results if not isinstance(result, Exception)]
        losers = [result for result in results if isinstance(result, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], StateConflict)
        assert losers[0].retryable is True

        live = engine.coordinator.list_documents(job_id=job.job_id, doc_type=DocType.TAX_INVOICE)
        assert [doc.doc_id for doc in live] == [winners[0].document.doc_id]
        assert engine.jobs.get_job(job.job_id).job.sales_doc_id == winners[0].document.doc_id
    finally:
        store.barrier = None
        reset_engine_state()


def test_second_live_document_of_same_type_is_rejected(engine):
    job = done_job(engine)
    first = engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)

    with pytest.raises(InvariantViolation) as excinfo:
        engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)

    assert first.document.doc_no in excinfo.value.message
    assert len(engine.coordinator.list_documents(job_id=job.job_id)) == 1


def test_supersede_cancels_old_delivery_note(engine):
    job = done_job(engine)
    old = engine.coordinator.issue_document(
        job.job_id, IssueRequest(doc_type=DocType.DELIVERY_NOTE, items=items("500")), OFFICE
    )

    new = engine.coordinator.issue_document(
        job.job_id,
        IssueRequest(doc_type=DocType.DELIVERY_NOTE, items=items("650"), supersede=True),
        OFFICE,
    )

    assert [doc.doc_id for doc in new.cancelled] == [old.document.doc_id]
    assert engine.coordinator.get_document(old.document.doc_id).status is DocStatus.CANCELLED
    assert new.job.status is JobStatus.WAITING_CUSTOMER_PICKUP
    assert new.job.sales_doc_id == new.document.doc_id
    assert new.document.vat_amount == Decimal("0.00")
    slot = engine.store.get(ACTIVE_DOCUMENTS, f"{job.job_id}:DELIVERY_NOTE")
    assert slot["doc_id"] == new.document.doc_id
    events = [activity.event for activity in new.activities]
    assert events == ["document_cancelled", "attach_billable_document"]
    assert_job_invariants(engine)


def test_document_numbers_are_sequential_per_type(engine):
    first_job = done_job(engine)
    second_job = done_job(engine)

    first = engine.coordinator.issue_document(first_job.job_id, invoice(), OFFICE)
    second = engine.coordinator.issue_document(second_job.job_id, invoice(), OFFICE)
    note = engine.coordinator.create_standalone_document(
        IssueRequest(doc_type=DocType.DELIVERY_NOTE, items=items("100")), OFFICE
    )

    assert first.document.doc_no == "INV2025-0001"
    assert second.document.doc_no == "INV2025-0002"
    assert note.document.doc_no == "DN2025-0001"
    assert note.document.job_id is None


def test_idempotent_issuance_replays_original_document(engine):
    job = done_job(engine)
    request = invoice(idempotency_key="req-1")

    first = engine.coordinator.issue_document(job.job_id, request, OFFICE)
    second = engine.coordinator.issue_document(job.job_id, request, OFFICE)

    assert second.replayed is True
    assert second.document.doc_id == first.document.doc_id
    assert len(engine.coordinator.list_documents(job_id=job.job_id)) == 1

    with pytest.raises(InvariantViolation):
        engine.coordinator.issue_document(job.job_id, invoice(items=items("2000"), idempotency_key="req-1"), OFFICE)


def test_manual_numbers_are_unique_and_marked_backfilled(engine):
    job = done_job(engine)
    outcome = engine.coordinator.issue_document(job.job_id, invoice(manual_doc_no="IV2024-0101"), OFFICE)

    assert outcome.document.is_backfill is True
    assert outcome.activities[0].text.endswith("(backfilled)")
    with pytest.raises(InvariantViolation):
        engine.coordinator.create_standalone_document(invoice(manual_doc_no="IV2024-0101"), OFFICE)


def test_issue_rejected_for_closed_job():
    engine = configure_engine(build_engine(archive_on_close=False))
    try:
        job = done_job(engine)
        issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)
        paid = pay(engine, issued.document.doc_id)
        assert paid.archive is None
        assert engine.store.get(JOBS, job.job_id)["status"] == JobStatus.CLOSED.value

        with pytest.raises(InvariantViolation):
            engine.coordinator.issue_document(
                job.job_id, IssueRequest(doc_type=DocType.RECEIPT, items=items("1070")), OFFICE
            )
    finally:
        reset_engine_state()


def test_issue_rejected_for_archived_job(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)
    pay(engine, issued.document.doc_id)

    with pytest.raises(InvariantViolation):
        engine.coordinator.issue_document(job.job_id, IssueRequest(doc_type=DocType.RECEIPT), OFFICE)


def test_cancel_unpaid_representative_returns_job_to_done(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)

    outcome = engine.coordinator.cancel_document(issued.document.doc_id, "typo", OFFICE)

    assert outcome.job.status is JobStatus.DONE
    assert outcome.job.sales_doc_id is None
    assert engine.store.get(ACTIVE_DOCUMENTS, f"{job.job_id}:TAX_INVOICE") is None
    reissued = engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)
    assert reissued.job.sales_doc_id == reissued.document.doc_id
    assert_job_invariants(engine)


def test_delete_representative_draft_rolls_job_back(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)
    doc = issued.document

    outcome = engine.coordinator.delete_document(doc.doc_id, OFFICE)

    assert outcome.job.status is JobStatus.DONE
    assert engine.store.get(DOCUMENTS, doc.doc_id) is None
    assert engine.store.get(DOCUMENT_NUMBERS, f"TAX_INVOICE:{doc.doc_no}") is None
    assert engine.store.get(ACTIVE_DOCUMENTS, f"{job.job_id}:TAX_INVOICE") is None


def test_delete_guards(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)
    engine.coordinator.approve(issued.document.doc_id, ACCOUNTING)
    receipt = engine.coordinator.issue_document(
        job.job_id,
        IssueRequest(doc_type=DocType.RECEIPT, items=items("1000"), references_doc_ids=(issued.document.doc_id,)),
        OFFICE,
    )

    with pytest.raises(InvariantViolation):
        engine.coordinator.delete_document(issued.document.doc_id, OFFICE)

    engine.coordinator.delete_document(receipt.document.doc_id, OFFICE)
    paid = engine.coordinator.confirm_paid(issued.document.doc_id, ACCOUNTING)
    assert paid.job.status is JobStatus.CLOSED
    with pytest.raises(InvariantViolation):
        engine.coordinator.delete_document(issued.document.doc_id, ADMIN)


def test_receipt_settles_representative_invoice(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)
    engine.coordinator.approve(issued.document.doc_id, ACCOUNTING)
    receipt = engine.coordinator.issue_document(
        job.job_id,
        IssueRequest(
            doc_type=DocType.RECEIPT,
            items=items("1000"),
            references_doc_ids=(issued.document.doc_id,),
            submit_for_review=True,
        ),
        OFFICE,
    )

    outcome = engine.coordinator.confirm_paid(receipt.document.doc_id, ACCOUNTING)

    assert outcome.document.status is DocStatus.PAID
    assert engine.coordinator.get_document(issued.document.doc_id).status is DocStatus.PAID
    assert outcome.job.status is JobStatus.CLOSED
    assert outcome.archive is not None
    assert any(activity.text.startswith("Receipt") for activity in outcome.activities)


def test_link_paid_standalone_invoice_closes_job(engine):
    job = done_job(engine)
    legacy = engine.coordinator.create_standalone_document(invoice(submit_for_review=True), OFFICE).document
    pay(engine, legacy.doc_id)

    proposal = engine.coordinator.propose_link(job.job_id, legacy.doc_id, OFFICE)
    assert proposal.job_status_before is JobStatus.DONE
    assert proposal.job_status_after is JobStatus.CLOSED
    assert engine.jobs.get_job(job.job_id).job.status is JobStatus.DONE

    outcome = engine.coordinator.confirm_link(job.job_id, legacy.doc_id, proposal.fingerprint, OFFICE)

    assert outcome.document.job_id == job.job_id
    assert outcome.job.status is JobStatus.CLOSED
    assert outcome.job.sales_doc_id == legacy.doc_id
    assert outcome.job.closed_date == legacy.issue_date
    assert outcome.archive is not None
    assert_job_invariants(engine)


def test_confirm_link_rejects_stale_proposal(engine):
    job = done_job(engine)
    legacy = engine.coordinator.create_standalone_document(invoice(), OFFICE).document
    proposal = engine.coordinator.propose_link(job.job_id, legacy.doc_id, OFFICE)

    engine.coordinator.edit_items(legacy.doc_id, items("1200"), OFFICE)

    with pytest.raises(StateConflict):
        engine.coordinator.confirm_link(job.job_id, legacy.doc_id, proposal.fingerprint, OFFICE)
    assert engine.jobs.get_job(job.job_id).job.status is JobStatus.DONE


def test_link_rejects_document_of_other_job(engine):
    first = done_job(engine)
    second = done_job(engine)
    issued = engine.coordinator.issue_document(first.job_id, invoice(), OFFICE)

    with pytest.raises(InvariantViolation):
        engine.coordinator.propose_link(second.job_id, issued.document.doc_id, OFFICE)


def test_replace_delivery_note_with_invoice(engine):
    job = done_job(engine)
    note = engine.coordinator.issue_document(
        job.job_id, IssueRequest(doc_type=DocType.DELIVERY_NOTE, items=items("800")), OFFICE
    ).document

    proposal = engine.coordinator.propose_replace(job.job_id, DocType.DELIVERY_NOTE, OFFICE)
    assert proposal.cancels_doc_id == note.doc_id
    assert proposal.job_status_after is JobStatus.DONE

    outcome = engine.coordinator.confirm_replace(
        job.job_id, DocType.DELIVERY_NOTE, proposal.fingerprint, OFFICE, issue=invoice(items=items("800"))
    )

    assert outcome.document.doc_type is DocType.TAX_INVOICE
    assert [doc.doc_id for doc in outcome.cancelled] == [note.doc_id]
    assert outcome.job.status is JobStatus.WAITING_CUSTOMER_PICKUP
    assert outcome.job.sales_doc_id == outcome.document.doc_id
    assert engine.store.get(ACTIVE_DOCUMENTS, f"{job.job_id}:DELIVERY_NOTE") is None
    assert_job_invariants(engine)


def test_confirm_replace_rejects_stale_fingerprint(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)
    proposal = engine.coordinator.propose_replace(job.job_id, DocType.TAX_INVOICE, OFFICE)

    engine.coordinator.submit_for_review(issued.document.doc_id, OFFICE)

    with pytest.raises(StateConflict):
        engine.coordinator.confirm_replace(job.job_id, DocType.TAX_INVOICE, proposal.fingerprint, OFFICE)


def test_reject_then_edit_returns_to_draft(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)

    with pytest.raises(InvariantViolation):
        engine.coordinator.reject(issued.document.doc_id, "  ", ACCOUNTING)
    rejected = engine.coordinator.reject(issued.document.doc_id, "wrong price", ACCOUNTING)
    assert rejected.document.rejection_reason == "wrong price"

    edited = engine.coordinator.edit_items(issued.document.doc_id, items("1500"), OFFICE, discount=Decimal("500"))

    assert edited.document.status is DocStatus.DRAFT
    assert edited.document.rejection_reason is None
    assert edited.document.grand_total == Decimal("1070.00")
    assert engine.jobs.get_job(job.job_id).job.status is JobStatus.WAITING_CUSTOMER_PICKUP


def test_worker_cannot_issue_documents(engine):
    job = done_job(engine)

    with pytest.raises(PermissionDenied):
        engine.coordinator.issue_document(job.job_id, invoice(), WORKER)
    assert engine.coordinator.list_documents(job_id=job.job_id) == []


def test_failed_archival_leaves_job_closed(engine, monkeypatch, caplog):
    def unavailable(job_id):
        raise StorageUnavailable("archive partition offline")

    monkeypatch.setattr(engine.archival, "archive", unavailable)
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)

    with caplog.at_level(logging.ERROR):
        paid = pay(engine, issued.document.doc_id)

    assert paid.archive is None
    assert paid.job.status is JobStatus.CLOSED
    assert engine.store.get(JOBS, job.job_id)["status"] == JobStatus.CLOSED.value
    assert "stays closed" in caplog.text


def test_delivery_note_cannot_displace_live_invoice(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(submit_for_review=True), OFFICE)

    with pytest.raises(InvariantViolation) as excinfo:
        engine.coordinator.issue_document(
            job.job_id, IssueRequest(doc_type=DocType.DELIVERY_NOTE, items=items("300")), OFFICE
        )

    assert issued.document.doc_no in excinfo.value.message
    assert engine.jobs.get_job(job.job_id).job.sales_doc_id == issued.document.doc_id
    paid = pay(engine, issued.document.doc_id)
    assert paid.job.status is JobStatus.CLOSED
    assert paid.job.sales_doc_id == issued.document.doc_id
    assert_job_invariants(engine)


def test_supersede_swaps_invoice_for_delivery_note(engine):
    job = done_job(engine)
    issued = engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)

    note = engine.coordinator.issue_document(
        job.job_id,
        IssueRequest(doc_type=DocType.DELIVERY_NOTE, items=items("300"), supersede=True),
        OFFICE,
    )

    assert [doc.doc_id for doc in note.cancelled] == [issued.document.doc_id]
    assert engine.coordinator.get_document(issued.document.doc_id).status is DocStatus.CANCELLED
    assert note.job.sales_doc_type == DocType.DELIVERY_NOTE.value
    assert engine.store.get(ACTIVE_DOCUMENTS, f"{job.job_id}:TAX_INVOICE") is None
    assert_job_invariants(engine)


def test_job_receipt_must_settle_the_current_bill(engine):
    job = done_job(engine)
    engine.coordinator.issue_document(job.job_id, invoice(), OFFICE)
    receipt = engine.coordinator.issue_document(
        job.job_id,
        IssueRequest(doc_type=DocType.RECEIPT, items=items("1070"), submit_for_review=True),
        OFFICE,
    )

    with pytest.raises(InvariantViolation):
        engine.coordinator.confirm_paid(receipt.document.doc_id, ACCOUNTING)

    assert engine.coordinator.get_document(receipt.document.doc_id).status is DocStatus.PENDING_REVIEW
    assert engine.jobs.get_job(job.job_id).job.status is JobStatus.WAITING_CUSTOMER_PICKUP


def test_link_refused_while_job_is_billed(engine):
    job = done_job(engine)
    engine.coordinator.issue_document(
        job.job_id, IssueRequest(doc_type=DocType.DELIVERY_NOTE, items=items("300")), OFFICE
    )
    legacy = engine.coordinator.create_standalone_document(invoice(), OFFICE).document

    with pytest.raises(InvariantViolation):
        engine.coordinator.propose_link(job.job_id, legacy.doc_id, OFFICE)


def test_documents_keep_their_vat_rate_after_rate_change():
    before = build_engine()
    paid_job = done_job(before)
    other_job = done_job(before)
    billed = before.coordinator.issue_document(paid_job.job_id, invoice(submit_for_review=True), OFFICE).document
    draft = before.coordinator.issue_document(other_job.job_id, invoice(), OFFICE).document
    assert billed.vat_rate == Decimal("0.07")

    after = build_engine(store=before.store, vat_rate=Decimal("0.10"))
    after.coordinator.approve(billed.doc_id, ACCOUNTING)
    paid = after.coordinator.confirm_paid(billed.doc_id, ACCOUNTING)
    edited = after.coordinator.edit_items(draft.doc_id, items("2000"), OFFICE)
    cancelled = after.coordinator.cancel_document(draft.doc_id, "wrong customer", OFFICE)

    assert paid.document.grand_total == Decimal("1070.00")
    assert paid.job.status is JobStatus.CLOSED
    assert edited.document.vat_amount == Decimal("140.00")
    assert cancelled.document.status is DocStatus.CANCELLED
    fresh_job = done_job(after)
    fresh = after.coordinator.issue_document(fresh_job.job_id, invoice(), OFFICE).document
    assert fresh.vat_rate == Decimal("0.10")
    assert fresh.vat_amount == Decimal("100.00")
