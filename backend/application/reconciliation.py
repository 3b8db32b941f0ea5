"""Reconciliation coordinator keeping jobs and their sales documents in step.

Every public operation reads the records it depends on, runs the job and
document state machines, and commits the resulting job update, document
writes, guard records and activity entries as one atomic batch.  It is the
only writer path for operations touching more than one record family.

``LinkExistingDocument`` and ``ReplaceSupersededDraft`` change financial
linkage retroactively and therefore use a propose/confirm protocol: the
proposal is derived from a read, carries a fingerprint of the records it
was derived from, and confirm refuses to act when a fresh derivation no
longer produces the same fingerprint.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, replace
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Sequence

from backend.application.archival import ArchivalMover, ArchiveResult, JobLocation
from backend.application.batch import TransitionBatch, ensure_allowed
from backend.core.config import EngineSettings
from backend.core.hashing import fingerprint
from backend.core.partitions import (
    ACTIVE_DOCUMENTS,
    DOCUMENT_COUNTERS,
    DOCUMENT_NUMBERS,
    DOCUMENTS,
    IDEMPOTENCY_KEYS,
    JOBS,
    PAYMENT_CLAIMS,
    active_document_key,
    document_number_key,
)
from backend.core.validation import EngineError, InvalidTransition, InvariantViolation, RecordNotFound, StateConflict
from backend.domain import document_machine, job_machine
from backend.domain.activity import Activity
from backend.domain.claims import ClaimStatus, PaymentClaim, claim_status_for
from backend.domain.documents import BILLABLE_DOC_TYPES, REFERENCE_ONLY_DOC_TYPES, DocStatus, DocType, LineItem, SalesDocument
from backend.domain.job_machine import JobTransition
from backend.domain.jobs import Job, JobStatus
from backend.infrastructure.clock import Clock
from backend.infrastructure.permissions import Action, Caller, PermissionProvider
from backend.infrastructure.store import SERVER_TIMESTAMP, Precondition, RecordStore, Write

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssueRequest:
    doc_type: DocType
    items: Sequence[LineItem] = ()
    discount: Decimal | None = None
    tax_applicable: bool | None = None
    issue_date: date | None = None
    submit_for_review: bool = False
    supersede: bool = False
    references_doc_ids: Sequence[str] = ()
    manual_doc_no: str | None = None
    idempotency_key: str | None = None
    customer_name: str | None = None


@dataclass
class DocumentOutcome:
    document: SalesDocument
    job: Job | None = None
    activities: list[Activity] = field(default_factory=list)
    cancelled: list[SalesDocument] = field(default_factory=list)
    archive: ArchiveResult | None = None
    replayed: bool = False


@dataclass(frozen=True)
class Proposal:
    """Effect description returned by ``propose_*`` without mutating anything."""

    kind: str
    job_id: str
    doc_id: str
    doc_no: str
    job_status_before: JobStatus
    job_status_after: JobStatus
    cancels_doc_id: str | None
    effects: tuple[str, ...]
    fingerprint: str


@dataclass
class _Plan:
    """Mutable working state while one operation builds its batch."""

    batch: TransitionBatch
    location: JobLocation | None = None
    steps: list[JobTransition] = field(default_factory=list)
    created: list[SalesDocument] = field(default_factory=list)
    updated: list[tuple[SalesDocument, tuple[str, ...]]] = field(default_factory=list)
    cancelled: list[SalesDocument] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def job(self) -> Job | None:
        if self.steps:
            return self.steps[-1].after
        return self.location.job if self.location else None


class ReconciliationCoordinator:
    def __init__(
        self,
        store: RecordStore,
        settings: EngineSettings,
        clock: Clock,
        permissions: PermissionProvider,
        archival: ArchivalMover,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._permissions = permissions
        self._archival = archival

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_document(self, doc_id: str) -> SalesDocument:
        record = self._store.get(DOCUMENTS, doc_id)
        if record is None:
            raise RecordNotFound(f"document {doc_id} not found", doc_id=doc_id)
        return SalesDocument.from_record(record)

    def list_documents(
        self,
        *,
        job_id: str | None = None,
        doc_type: DocType | None = None,
        status: DocStatus | None = None,
    ) -> list[SalesDocument]:
        where: dict[str, Any] = {}
        if job_id is not None:
            where["job_id"] = job_id
        if doc_type is not None:
            where["doc_type"] = doc_type.value
        if status is not None:
            where["status"] = status.value
        rows = self._store.query(DOCUMENTS, where=where or None, order_by="created_at", descending=True)
        return [SalesDocument.from_record(row) for row in rows]

    def list_payment_claims(
        self,
        *,
        status: ClaimStatus | None = None,
        job_id: str | None = None,
    ) -> list[PaymentClaim]:
        where: dict[str, Any] = {}
        if status is not None:
            where["status"] = status.value
        if job_id is not None:
            where["job_id"] = job_id
        rows = self._store.query(PAYMENT_CLAIMS, where=where or None, order_by="created_at", descending=True)
        return [PaymentClaim.from_record(row) for row in rows]

    def _active_slot(self, job_id: str, doc_type: DocType) -> dict[str, Any] | None:
        return self._store.get(ACTIVE_DOCUMENTS, active_document_key(job_id, doc_type.value))

    def _live_job(self, job_id: str, purpose: str) -> JobLocation:
        location = self._archival.find_job(job_id)
        if location.is_archived:
            raise InvariantViolation(f"job {job_id} is archived; {purpose} is not allowed", job_id=job_id)
        return location

    # ------------------------------------------------------------------
    # batch helpers
    # ------------------------------------------------------------------
    def _plan(self, caller: Caller, location: JobLocation | None = None) -> _Plan:
        return _Plan(TransitionBatch(self._store, caller, self._settings.vat_rate), location)

    def _next_number(self, plan: _Plan, doc_type: DocType, issue_date: date) -> str:
        year = str(issue_date.year)
        counter = self._store.get(DOCUMENT_COUNTERS, year)
        current = int((counter or {}).get(doc_type.value) or 0)
        sequence = current + 1
        prefix = self._settings.prefix_for(doc_type.value)
        while self._store.get(DOCUMENT_NUMBERS, document_number_key(doc_type.value, f"{prefix}{year}-{sequence:04d}")):
            sequence += 1
        if counter is None:
            plan.batch.add(Write.create(DOCUMENT_COUNTERS, year, {"year": int(year), doc_type.value: sequence}))
        else:
            plan.batch.add(
                Write.update(
                    DOCUMENT_COUNTERS,
                    year,
                    {doc_type.value: sequence},
                    Precondition(exists=True, fields={doc_type.value: counter.get(doc_type.value)}),
                )
            )
        return f"{prefix}{year}-{sequence:04d}"

    def _register_number(self, plan: _Plan, document: SalesDocument) -> None:
        plan.batch.add(
            Write.create(
                DOCUMENT_NUMBERS,
                document_number_key(document.doc_type.value, document.doc_no),
                {"doc_id": document.doc_id, "doc_type": document.doc_type.value, "doc_no": document.doc_no},
            )
        )

    def _allocate(self, plan: _Plan, request: IssueRequest, issue_date: date) -> tuple[str, bool]:
        if request.manual_doc_no is None:
            return self._next_number(plan, request.doc_type, issue_date), False
        doc_no = request.manual_doc_no.strip()
        if not doc_no:
            raise InvariantViolation("a backfilled document needs a document number")
        if self._store.get(DOCUMENT_NUMBERS, document_number_key(request.doc_type.value, doc_no)):
            raise InvariantViolation(
                f"{request.doc_type.value} number {doc_no} already exists",
                doc_type=request.doc_type.value,
                doc_no=doc_no,
            )
        return doc_no, True

    def _update(self, plan: _Plan, transition: document_machine.DocTransition, *stamps: str) -> None:
        plan.batch.update_document(transition.before, transition.after, **{name: True for name in stamps})
        plan.updated.append((transition.after, stamps))
        self._sync_claim(plan, transition.after)

    def _sync_claim(self, plan: _Plan, document: SalesDocument) -> None:
        """Ensure a billable document has one claim that follows its status and amount."""

        if not document.is_billable:
            return
        record = self._store.get(PAYMENT_CLAIMS, document.doc_id)
        status = claim_status_for(document)
        if record is None:
            if status is ClaimStatus.PENDING:
                plan.batch.create_payment_claim(document)
            return
        claim = PaymentClaim.from_record(record)
        if claim.status is not ClaimStatus.PENDING:
            return
        if status is ClaimStatus.PENDING and (claim.amount_due, claim.job_id) == (document.grand_total, document.job_id):
            return
        plan.batch.update_payment_claim(claim, document, status)

    def _release_slot(self, plan: _Plan, document: SalesDocument) -> None:
        if document.job_id is None or document.doc_type in REFERENCE_ONLY_DOC_TYPES:
            return
        slot = self._active_slot(document.job_id, document.doc_type)
        if slot and slot.get("doc_id") == document.doc_id:
            plan.batch.release_active_slot(document)

    def _note(self, plan: _Plan, text: str, event: str) -> None:
        """Activity for a document change that leaves the job status alone."""

        location = plan.location
        if location is None:
            return
        # a job restored by this batch takes its notes in the live partition
        partition = JOBS if location.is_archived and plan.steps else location.partition
        plan.batch.add_activity(location.job.job_id, text, partition=partition, event=event)

    def _rollback(self, plan: _Plan, document: SalesDocument, text: str, reason: str = "") -> None:
        """Return the job to DONE because ``document`` stops representing it."""

        job = plan.job
        transition = job_machine.document_cancelled(job, document, reason)
        plan.steps.append(replace(transition, activity_text=text))

    def _cancel_into(self, plan: _Plan, document: SalesDocument, reason: str, *, allow_paid: bool) -> None:
        transition = document_machine.cancel(document, reason, allow_paid=allow_paid)
        self._update(plan, transition, "cancelled_at")
        plan.cancelled.append(transition.after)
        job = plan.job
        if job is not None and job.sales_doc_id == document.doc_id:
            self._rollback(plan, document, f"{transition.description}; job returned to DONE for re-billing", reason)
        else:
            plan.notes.append(transition.description)

    def _finish(self, plan: _Plan) -> list[Write]:
        """Stage job writes and activities, commit, and return the archive clean-up writes."""

        batch = plan.batch
        copies: list[Write] = []
        cleanup: list[Write] = []
        location = plan.location
        if location is not None and plan.steps:
            if location.is_archived:
                first, last = plan.steps[0], plan.steps[-1]
                restored = last.after.to_record()
                restored["last_activity_at"] = SERVER_TIMESTAMP
                copies, main, cleanup = self._archival.restore_writes(location, restored)
                batch.add(*main)
                for step in plan.steps:
                    batch.add_activity(first.before.job_id, step.activity_text, partition=JOBS, event=step.event.value)
                logger.info("restoring archived job %s from %s", first.before.job_id, location.partition)
            else:
                batch.apply_job_steps(plan.steps, location.partition)
        for text in plan.notes:
            self._note(plan, text, "document")
        if copies:
            self._archival.commit_chunked(copies)
        timestamp = batch.commit()
        for document in plan.created:
            document.created_at = timestamp
            document.updated_at = timestamp
        for document, stamps in plan.updated:
            document.updated_at = timestamp
            for name in stamps:
                setattr(document, name, timestamp)
        if plan.steps:
            plan.steps[-1].after.last_activity_at = timestamp
        return cleanup

    def _close_followup(self, job: Job | None) -> ArchiveResult | None:
        if job is None or job.status is not JobStatus.CLOSED or not self._settings.archive_on_close:
            return None
        try:
            return self._archival.archive(job.job_id)
        except EngineError:
            logger.exception("archival of job %s failed; it stays closed in the live partition", job.job_id)
            return None

    def _outcome(self, plan: _Plan, document: SalesDocument, cleanup: list[Write]) -> DocumentOutcome:
        if cleanup:
            self._archival.commit_chunked(cleanup)
        job = plan.job
        archived = self._close_followup(job) if plan.steps else None
        if archived is not None:
            job = self._archival.job_in(archived.partition, archived.job_id) or job
        return DocumentOutcome(
            document=document,
            job=job,
            activities=list(plan.batch.activities),
            cancelled=list(plan.cancelled),
            archive=archived,
        )

    # ------------------------------------------------------------------
    # issuance
    # ------------------------------------------------------------------
    def _request_fingerprint(self, job_id: str | None, request: IssueRequest) -> str:
        return fingerprint({"job_id": job_id, "request": asdict(request)})

    def _replay(self, job_id: str | None, request: IssueRequest) -> DocumentOutcome | None:
        if not request.idempotency_key:
            return None
        record = self._store.get(IDEMPOTENCY_KEYS, request.idempotency_key)
        if record is None:
            return None
        if record.get("request") != self._request_fingerprint(job_id, request):
            raise InvariantViolation(
                "idempotency key was already used for a different request",
                idempotency_key=request.idempotency_key,
            )
        document = self.get_document(record["doc_id"])
        location = self._archival.locate(job_id) if job_id else None
        job = location.job if location else None
        logger.info("replayed issuance of %s for idempotency key %s", document.doc_no, request.idempotency_key)
        return DocumentOutcome(document=document, job=job, replayed=True)

    def _validate_references(self, request: IssueRequest) -> None:
        for ref in request.references_doc_ids:
            referenced = self._store.get(DOCUMENTS, ref)
            if referenced is None:
                raise InvariantViolation(f"referenced document {ref} does not exist", doc_id=ref)
            if referenced.get("status") == DocStatus.CANCELLED.value:
                raise InvariantViolation(
                    f"referenced document {referenced.get('doc_no')} is cancelled",
                    doc_id=ref,
                )

    def _build_document(self, plan: _Plan, request: IssueRequest, job: Job | None) -> SalesDocument:
        self._validate_references(request)
        issue_date = request.issue_date or self._clock.today()
        doc_no, backfill = self._allocate(plan, request, issue_date)
        caller = plan.batch.caller
        document = document_machine.new_document(
            doc_id=self._store.new_id(),
            doc_type=request.doc_type,
            doc_no=doc_no,
            issue_date=issue_date,
            items=request.items,
            discount=request.discount if request.discount is not None else Decimal("0"),
            tax_applicable=(
                request.tax_applicable
                if request.tax_applicable is not None
                else self._settings.tax_default_for(request.doc_type.value)
            ),
            vat_rate=self._settings.vat_rate,
            initial_status=DocStatus.PENDING_REVIEW if request.submit_for_review else DocStatus.DRAFT,
            job_id=job.job_id if job else None,
            references_doc_ids=list(request.references_doc_ids),
            customer_name=request.customer_name or (job.customer_name if job else None),
            is_backfill=backfill,
            idempotency_key=request.idempotency_key,
            created_by_id=caller.user_id,
            created_by_name=caller.name,
        )
        plan.batch.create_document(document)
        self._register_number(plan, document)
        if document.is_billable:
            plan.batch.create_payment_claim(document)
        plan.created.append(document)
        if request.idempotency_key:
            plan.batch.add(
                Write.create(
                    IDEMPOTENCY_KEYS,
                    request.idempotency_key,
                    {
                        "doc_id": document.doc_id,
                        "request": self._request_fingerprint(job.job_id if job else None, request),
                    },
                )
            )
        return document

    def _issue_into(self, plan: _Plan, request: IssueRequest) -> SalesDocument:
        job = plan.job
        if job.status is JobStatus.CLOSED:
            raise InvariantViolation(f"job {job.job_id} is closed; documents cannot be issued", job_id=job.job_id)

        replacing: str | None = None
        if request.doc_type not in REFERENCE_ONLY_DOC_TYPES:
            slot = self._active_slot(job.job_id, request.doc_type)
            already_cancelled = {doc.doc_id for doc in plan.cancelled}
            if slot and slot["doc_id"] not in already_cancelled:
                existing = self.get_document(slot["doc_id"])
                if not request.supersede:
                    raise InvariantViolation(
                        f"job {job.job_id} already has {existing.doc_type.value} {existing.doc_no} "
                        f"({existing.status.value}); supersede it or cancel it first",
                        job_id=job.job_id,
                        doc_id=existing.doc_id,
                        doc_no=existing.doc_no,
                    )
                allow_paid = self._permissions.is_allowed(plan.batch.caller, Action.DOCUMENT_CANCEL_PAID)
                self._cancel_into(plan, existing, "superseded", allow_paid=allow_paid)
                replacing = existing.doc_id
            elif slot:
                replacing = slot["doc_id"]

        if request.doc_type in BILLABLE_DOC_TYPES:
            self._supersede_representative(plan, request)

        document = self._build_document(plan, request, plan.job)
        if request.doc_type not in REFERENCE_ONLY_DOC_TYPES:
            plan.batch.claim_active_slot(document, replacing=replacing)

        current = plan.job
        if document.is_billable:
            plan.steps.append(job_machine.attach_billable_document(current, document))
        elif request.doc_type is DocType.QUOTATION and job_machine.JobEvent.QUOTATION_ISSUED in job_machine.allowed_events(
            current.status
        ):
            plan.steps.append(job_machine.quotation_issued(current, document))
        else:
            text = f"Created {document.doc_type.value} document: {document.doc_no}"
            if document.is_backfill:
                text += " (backfilled)"
            plan.notes.append(text)
        return document

    def _supersede_representative(self, plan: _Plan, request: IssueRequest) -> None:
        """Cancel a representative of another billable type, or refuse without ``supersede``."""

        job = plan.job
        if not job.sales_doc_id or job.sales_doc_id in {doc.doc_id for doc in plan.cancelled}:
            return
        representative = self.get_document(job.sales_doc_id)
        if not request.supersede:
            raise InvariantViolation(
                f"job {job.job_id} is billed by {representative.doc_type.value} {representative.doc_no} "
                f"({representative.status.value}); supersede it or replace it before issuing a {request.doc_type.value}",
                job_id=job.job_id,
                doc_id=representative.doc_id,
                doc_no=representative.doc_no,
            )
        allow_paid = self._permissions.is_allowed(plan.batch.caller, Action.DOCUMENT_CANCEL_PAID)
        self._cancel_into(plan, representative, "superseded", allow_paid=allow_paid)
        self._release_slot(plan, representative)

    def issue_document(self, job_id: str, request: IssueRequest, caller: Caller) -> DocumentOutcome:
        """Create a document for a job and drive the matching job transition."""

        ensure_allowed(self._permissions, caller, Action.DOCUMENT_ISSUE)
        replayed = self._replay(job_id, request)
        if replayed is not None:
            return replayed

        location = self._live_job(job_id, "issuing documents")
        plan = self._plan(caller, location)
        document = self._issue_into(plan, request)
        cleanup = self._finish(plan)
        logger.info("issued %s %s for job %s", document.doc_type.value, document.doc_no, job_id)
        return self._outcome(plan, document, cleanup)

    def create_standalone_document(self, request: IssueRequest, caller: Caller) -> DocumentOutcome:
        """Create a document with no job link, e.g. a backfilled legacy invoice."""

        ensure_allowed(self._permissions, caller, Action.DOCUMENT_ISSUE)
        replayed = self._replay(None, request)
        if replayed is not None:
            return replayed
        plan = self._plan(caller)
        document = self._build_document(plan, request, None)
        self._finish(plan)
        logger.info("created standalone %s %s", document.doc_type.value, document.doc_no)
        return DocumentOutcome(document=document, activities=list(plan.batch.activities))

    # ------------------------------------------------------------------
    # link existing document (propose / confirm)
    # ------------------------------------------------------------------
    def _derive_link(self, job_id: str, doc_id: str) -> tuple[JobLocation, SalesDocument, JobTransition, Proposal]:
        location = self._live_job(job_id, "linking documents")
        job = location.job
        document = self.get_document(doc_id)
        if not document.is_billable:
            raise InvariantViolation(
                f"{document.doc_type.value} {document.doc_no} cannot represent a job", doc_id=doc_id
            )
        if document.status is DocStatus.CANCELLED:
            raise InvariantViolation(f"{document.doc_no} is cancelled", doc_id=doc_id)
        if document.job_id not in (None, job_id):
            raise InvariantViolation(
                f"{document.doc_no} already belongs to job {document.job_id}", doc_id=doc_id, job_id=document.job_id
            )
        if job.sales_doc_id == doc_id:
            raise InvariantViolation(f"{document.doc_no} already represents job {job_id}", doc_id=doc_id)
        if job.sales_doc_id:
            raise InvariantViolation(
                f"job {job_id} is billed by {job.sales_doc_type} {job.sales_doc_no}; "
                f"cancel or replace it before linking {document.doc_no}",
                job_id=job_id,
                doc_id=job.sales_doc_id,
            )
        slot = self._active_slot(job_id, document.doc_type)
        if slot and slot.get("doc_id") != doc_id:
            raise InvariantViolation(
                f"job {job_id} already has a live {document.doc_type.value}; cancel it before linking {document.doc_no}",
                job_id=job_id,
                doc_id=slot.get("doc_id"),
            )

        if document.status is DocStatus.PAID:
            transition = job_machine.attach_and_settle(job, document)
        else:
            transition = job_machine.attach_billable_document(job, document)
        transition = replace(
            transition,
            activity_text=f"Linked existing {document.doc_type.value} {document.doc_no}"
            + (" (paid), job closed" if document.status is DocStatus.PAID else ", waiting for customer pickup"),
        )
        effects = [f"job {job_id}: {job.status.value} -> {transition.after.status.value}"]
        effects.append(f"{document.doc_type.value} {document.doc_no} becomes the job's current document")
        proposal = Proposal(
            kind="link",
            job_id=job_id,
            doc_id=doc_id,
            doc_no=document.doc_no,
            job_status_before=job.status,
            job_status_after=transition.after.status,
            cancels_doc_id=None,
            effects=tuple(effects),
            fingerprint=fingerprint({"job": job.to_record(), "document": document.to_record(), "slot": slot}),
        )
        return location, document, transition, proposal

    def propose_link(self, job_id: str, doc_id: str, caller: Caller) -> Proposal:
        ensure_allowed(self._permissions, caller, Action.DOCUMENT_LINK)
        return self._derive_link(job_id, doc_id)[3]

    def confirm_link(self, job_id: str, doc_id: str, expected_fingerprint: str, caller: Caller) -> DocumentOutcome:
        ensure_allowed(self._permissions, caller, Action.DOCUMENT_LINK)
        location, document, transition, proposal = self._derive_link(job_id, doc_id)
        if proposal.fingerprint != expected_fingerprint:
            raise StateConflict("the job or document changed since the link was proposed", job_id=job_id, doc_id=doc_id)

        plan = self._plan(caller, location)
        linked = replace(document, job_id=job_id)
        plan.batch.update_document(document, linked)
        plan.updated.append((linked, ()))
        self._sync_claim(plan, linked)
        if self._active_slot(job_id, linked.doc_type) is None:
            plan.batch.claim_active_slot(linked)
        document = linked
        plan.steps.append(transition)
        cleanup = self._finish(plan)
        logger.info("linked %s to job %s (%s)", document.doc_no, job_id, transition.after.status.value)
        return self._outcome(plan, document, cleanup)

    # ------------------------------------------------------------------
    # cancellation and deletion
    # ------------------------------------------------------------------
    def _location_for(self, document: SalesDocument) -> JobLocation | None:
        return self._archival.find_job(document.job_id) if document.job_id else None

    def cancel_document(self, doc_id: str, reason: str, caller: Caller) -> DocumentOutcome:
        """Cancel a document and roll its job back to DONE when it was the representative."""

        ensure_allowed(self._permissions, caller, Action.DOCUMENT_CANCEL)
        document = self.get_document(doc_id)
        allow_paid = False
        if document.status is DocStatus.PAID:
            ensure_allowed(self._permissions, caller, Action.DOCUMENT_CANCEL_PAID)
            allow_paid = True

        plan = self._plan(caller, self._location_for(document))
        self._cancel_into(plan, document, reason, allow_paid=allow_paid)
        self._release_slot(plan, document)
        cleanup = self._finish(plan)
        cancelled = plan.cancelled[-1]
        logger.info("cancelled %s %s", cancelled.doc_type.value, cancelled.doc_no)
        return self._outcome(plan, cancelled, cleanup)

    def delete_document(self, doc_id: str, caller: Caller) -> DocumentOutcome:
        ensure_allowed(self._permissions, caller, Action.DOCUMENT_DELETE)
        document = self.get_document(doc_id)
        transition = document_machine.delete(document)
        for row in self._store.query(DOCUMENTS):
            if doc_id in (row.get("references_doc_ids") or []) and row.get("status") != DocStatus.CANCELLED.value:
                raise InvariantViolation(
                    f"{document.doc_no} is referenced by {row.get('doc_type')} {row.get('doc_no')}",
                    doc_id=doc_id,
                    referenced_by=row.get("doc_id"),
                )

        plan = self._plan(caller, self._location_for(document))
        plan.batch.delete_document(document)
        number_key = document_number_key(document.doc_type.value, document.doc_no)
        if self._store.get(DOCUMENT_NUMBERS, number_key):
            plan.batch.add(Write.delete(DOCUMENT_NUMBERS, number_key, Precondition(fields={"doc_id": document.doc_id})))
        claim = self._store.get(PAYMENT_CLAIMS, doc_id)
        if claim is not None:
            plan.batch.delete_payment_claim(PaymentClaim.from_record(claim))
        self._release_slot(plan, document)
        job = plan.job
        if job is not None and job.sales_doc_id == doc_id:
            self._rollback(plan, document, f"{transition.description}; job returned to DONE for re-billing")
        else:
            plan.notes.append(transition.description)
        cleanup = self._finish(plan)
        logger.info("deleted %s %s", document.doc_type.value, document.doc_no)
        return self._outcome(plan, document, cleanup)

    # ------------------------------------------------------------------
    # replace superseded draft (propose / confirm)
    # ------------------------------------------------------------------
    def _derive_replace(self, job_id: str, old_doc_type: DocType) -> tuple[JobLocation, SalesDocument, Proposal]:
        location = self._live_job(job_id, "replacing documents")
        job = location.job
        slot = self._active_slot(job_id, old_doc_type)
        if slot is None:
            raise InvariantViolation(f"job {job_id} has no live {old_doc_type.value} to replace", job_id=job_id)
        document = self.get_document(slot["doc_id"])
        if document.status is DocStatus.PAID:
            raise InvariantViolation(
                f"{document.doc_no} is paid; cancel it explicitly instead of replacing it", doc_id=document.doc_id
            )
        representative = job.sales_doc_id == document.doc_id
        after = JobStatus.DONE if representative else job.status
        effects = [f"{document.doc_type.value} {document.doc_no} will be cancelled"]
        if representative:
            effects.append(f"job {job_id}: {job.status.value} -> {JobStatus.DONE.value}, linkage cleared")
        proposal = Proposal(
            kind="replace",
            job_id=job_id,
            doc_id=document.doc_id,
            doc_no=document.doc_no,
            job_status_before=job.status,
            job_status_after=after,
            cancels_doc_id=document.doc_id,
            effects=tuple(effects),
            fingerprint=fingerprint({"job": job.to_record(), "document": document.to_record(), "slot": slot}),
        )
        return location, document, proposal

    def propose_replace(self, job_id: str, old_doc_type: DocType, caller: Caller) -> Proposal:
        ensure_allowed(self._permissions, caller, Action.DOCUMENT_CANCEL)
        return self._derive_replace(job_id, old_doc_type)[2]

    def confirm_replace(
        self,
        job_id: str,
        old_doc_type: DocType,
        expected_fingerprint: str,
        caller: Caller,
        issue: IssueRequest | None = None,
        reason: str = "",
    ) -> DocumentOutcome:
        """Cancel the superseded document, optionally issuing its successor in the same batch."""

        ensure_allowed(self._permissions, caller, Action.DOCUMENT_CANCEL)
        if issue is not None:
            ensure_allowed(self._permissions, caller, Action.DOCUMENT_ISSUE)
        location, old, proposal = self._derive_replace(job_id, old_doc_type)
        if proposal.fingerprint != expected_fingerprint:
            raise StateConflict("the job or document changed since the replacement was proposed", job_id=job_id)

        plan = self._plan(caller, location)
        self._cancel_into(plan, old, reason or "replaced", allow_paid=False)
        document = plan.cancelled[-1]
        if issue is not None:
            if issue.doc_type is old.doc_type:
                issue = replace(issue, supersede=True)
            else:
                self._release_slot(plan, old)
            document = self._issue_into(plan, issue)
        else:
            self._release_slot(plan, old)
        cleanup = self._finish(plan)
        logger.info("replaced %s on job %s", old.doc_no, job_id)
        return self._outcome(plan, document, cleanup)

    # ------------------------------------------------------------------
    # document lifecycle
    # ------------------------------------------------------------------
    def _simple(
        self,
        doc_id: str,
        caller: Caller,
        action: Action,
        step: Callable[[SalesDocument], document_machine.DocTransition],
        *stamps: str,
    ) -> DocumentOutcome:
        ensure_allowed(self._permissions, caller, action)
        document = self.get_document(doc_id)
        transition = step(document)
        plan = self._plan(caller, self._location_for(document))
        self._update(plan, transition, *stamps)
        plan.notes.append(transition.description)
        cleanup = self._finish(plan)
        logger.info("%s %s -> %s", transition.event.value, document.doc_no, transition.after.status.value)
        return self._outcome(plan, transition.after, cleanup)

    def submit_for_review(self, doc_id: str, caller: Caller) -> DocumentOutcome:
        return self._simple(doc_id, caller, Action.DOCUMENT_ISSUE, document_machine.submit_for_review)

    def approve(self, doc_id: str, caller: Caller) -> DocumentOutcome:
        return self._simple(doc_id, caller, Action.DOCUMENT_REVIEW, document_machine.approve)

    def reject(self, doc_id: str, reason: str, caller: Caller) -> DocumentOutcome:
        return self._simple(
            doc_id, caller, Action.DOCUMENT_REVIEW, lambda document: document_machine.reject(document, reason)
        )

    def edit_items(
        self,
        doc_id: str,
        items: Sequence[LineItem],
        caller: Caller,
        *,
        discount: Decimal | None = None,
        tax_applicable: bool | None = None,
    ) -> DocumentOutcome:
        return self._simple(
            doc_id,
            caller,
            Action.DOCUMENT_EDIT,
            lambda document: document_machine.edit_items(
                document,
                items,
                document.discount if discount is None else discount,
                document.tax_applicable if tax_applicable is None else tax_applicable,
                self._settings.vat_rate,
            ),
        )

    def confirm_paid(self, doc_id: str, caller: Caller) -> DocumentOutcome:
        """Mark a document paid; closes the job when it settles the job's bill."""

        ensure_allowed(self._permissions, caller, Action.DOCUMENT_CONFIRM_PAID)
        document = self.get_document(doc_id)
        transition = document_machine.confirm_paid(
            document, requires_approval=self._settings.requires_approval(document.doc_type.value)
        )
        location = self._location_for(document)
        plan = self._plan(caller, location)
        self._update(plan, transition, "paid_at")
        job = plan.job

        if job is not None and job.sales_doc_id == document.doc_id:
            if location.is_archived:
                raise InvalidTransition(f"job {job.job_id} is archived", job_id=job.job_id)
            plan.steps.append(job_machine.document_paid(job, transition.after))
        elif (
            job is not None
            and document.doc_type is DocType.RECEIPT
            and job.sales_doc_id is not None
            and job.sales_doc_id in document.references_doc_ids
        ):
            if location.is_archived:
                raise InvalidTransition(f"job {job.job_id} is archived", job_id=job.job_id)
            settled = self.get_document(job.sales_doc_id)
            if settled.status is not DocStatus.PAID:
                settle = document_machine.confirm_paid(settled, requires_approval=False)
                self._update(plan, settle, "paid_at")
                settled = settle.after
            step = job_machine.document_paid(job, settled, paid_on=document.issue_date)
            plan.steps.append(
                replace(step, activity_text=f"Receipt {document.doc_no} settles {settled.doc_no}, job closed")
            )
        elif job is not None and (document.is_billable or document.doc_type is DocType.RECEIPT):
            raise InvariantViolation(
                f"{document.doc_no} does not settle the current bill of job {job.job_id} "
                f"({job.sales_doc_no or 'none'}); link or replace it before confirming payment",
                doc_id=document.doc_id,
                job_id=job.job_id,
            )
        else:
            plan.notes.append(transition.description)

        cleanup = self._finish(plan)
        logger.info("confirmed payment of %s %s", document.doc_type.value, document.doc_no)
        return self._outcome(plan, transition.after, cleanup)
