"""Atomic batch construction shared by every multi-record operation.

A :class:`TransitionBatch` collects the job, document, guard and activity
writes of a single operation.  Each record update carries the guard fields
that were read when the transition was validated, so a racing writer turns
the whole batch into a :class:`StateConflict` instead of a lost update.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Sequence

from backend.core.partitions import (
    ACTIVE_DOCUMENTS,
    DOCUMENTS,
    JOBS,
    PAYMENT_CLAIMS,
    active_document_key,
    activities_collection,
)
from backend.core.totals import validate_document_totals
from backend.core.validation import PermissionDenied, StateConflict, StorageUnavailable, validate_job_closed, validate_job_linkage
from backend.domain.activity import Activity
from backend.domain.claims import ClaimStatus, PaymentClaim
from backend.domain.documents import SalesDocument
from backend.domain.job_machine import JobTransition
from backend.domain.jobs import Job, JobStatus
from backend.infrastructure.permissions import Action, Caller, PermissionProvider
from backend.infrastructure.store import SERVER_TIMESTAMP, BatchRejected, Precondition, RecordStore, StoreUnavailable, Write

logger = logging.getLogger(__name__)


def ensure_allowed(permissions: PermissionProvider, caller: Caller, action: Action) -> None:
    if not permissions.is_allowed(caller, action):
        logger.info("denied %s for %s (%s)", action.value, caller.user_id, caller.role.value)
        raise PermissionDenied("you are not allowed to perform this action")


def job_guard(job: Job) -> Precondition:
    return Precondition(
        exists=True,
        fields={
            "status": job.status.value,
            "sales_doc_id": job.sales_doc_id,
            "assignee_id": job.assignee_id,
            "department": job.department.value,
        },
    )


def document_guard(document: SalesDocument) -> Precondition:
    return Precondition(
        exists=True,
        fields={"status": document.status.value, "job_id": document.job_id, "updated_at": document.updated_at},
    )


@dataclass
class TransitionBatch:
    store: RecordStore
    caller: Caller
    vat_rate: Decimal
    writes: list[Write] = field(default_factory=list)
    activities: list[Activity] = field(default_factory=list)

    # ------------------------------------------------------------------
    # jobs and activities
    # ------------------------------------------------------------------
    def create_job(self, job: Job, text: str, partition: str = JOBS) -> None:
        validate_job_linkage(job)
        record = job.to_record()
        record["created_at"] = SERVER_TIMESTAMP
        record["last_activity_at"] = SERVER_TIMESTAMP
        self.writes.append(Write.create(partition, job.job_id, record))
        self.add_activity(job.job_id, text, partition=partition, event="intake")

    def apply_job(self, transition: JobTransition, partition: str = JOBS, *, log_activity: bool = True) -> None:
        after = transition.after
        if after.status is JobStatus.CLOSED and transition.before.status is not JobStatus.CLOSED:
            after.closed_by_id = self.caller.user_id
            after.closed_by_name = self.caller.name
        validate_job_linkage(after)
        validate_job_closed(after)
        record = after.to_record()
        record.pop("job_id", None)
        record.pop("created_at", None)
        record["last_activity_at"] = SERVER_TIMESTAMP
        self.writes.append(Write.update(partition, after.job_id, record, job_guard(transition.before)))
        if log_activity:
            self.add_activity(after.job_id, transition.activity_text, partition=partition, event=transition.event.value)

    def apply_job_steps(self, transitions: Sequence[JobTransition], partition: str = JOBS) -> None:
        """Fold consecutive transitions of one job into a single guarded update.

        The guard comes from the first step's ``before`` value; every step
        still appends its own activity entry.
        """

        first, last = transitions[0], transitions[-1]
        folded = JobTransition(last.event, first.before, last.after, last.activity_text)
        self.apply_job(folded, partition, log_activity=False)
        for transition in transitions:
            self.add_activity(
                transition.after.job_id, transition.activity_text, partition=partition, event=transition.event.value
            )

    def add_activity(
        self,
        job_id: str,
        text: str,
        *,
        partition: str = JOBS,
        photos: Iterable[str] = (),
        event: str | None = None,
    ) -> Activity:
        activity = Activity(
            activity_id=self.store.new_id(),
            job_id=job_id,
            text=text,
            author_id=self.caller.user_id,
            author_name=self.caller.name,
            photos=list(photos),
            event=event,
        )
        record = activity.to_record()
        record["created_at"] = SERVER_TIMESTAMP
        self.writes.append(Write.create(activities_collection(partition, job_id), activity.activity_id, record))
        self.activities.append(activity)
        return activity

    # ------------------------------------------------------------------
    # documents
    # ------------------------------------------------------------------
    def create_document(self, document: SalesDocument) -> None:
        validate_document_totals(document, self.vat_rate)
        record = document.to_record()
        record["created_at"] = SERVER_TIMESTAMP
        record["updated_at"] = SERVER_TIMESTAMP
        self.writes.append(Write.create(DOCUMENTS, document.doc_id, record))

    def update_document(self, before: SalesDocument, after: SalesDocument, **stamps: Any) -> None:
        validate_document_totals(after, self.vat_rate)
        record = after.to_record()
        record.pop("doc_id", None)
        record.pop("created_at", None)
        record["updated_at"] = SERVER_TIMESTAMP
        for name in stamps:
            record[name] = SERVER_TIMESTAMP
        self.writes.append(Write.update(DOCUMENTS, after.doc_id, record, document_guard(before)))

    def delete_document(self, document: SalesDocument) -> None:
        self.writes.append(Write.delete(DOCUMENTS, document.doc_id, document_guard(document)))

    # ------------------------------------------------------------------
    # one-live-document-per-type guard records
    # ------------------------------------------------------------------
    def claim_active_slot(self, document: SalesDocument, replacing: str | None = None) -> None:
        key = active_document_key(str(document.job_id), document.doc_type.value)
        record = {"job_id": document.job_id, "doc_type": document.doc_type.value, "doc_id": document.doc_id}
        if replacing is None:
            self.writes.append(Write.create(ACTIVE_DOCUMENTS, key, record))
        else:
            self.writes.append(
                Write.set(ACTIVE_DOCUMENTS, key, record, Precondition(exists=True, fields={"doc_id": replacing}))
            )

    def release_active_slot(self, document: SalesDocument) -> None:
        key = active_document_key(str(document.job_id), document.doc_type.value)
        self.writes.append(Write.delete(ACTIVE_DOCUMENTS, key, Precondition(exists=True, fields={"doc_id": document.doc_id})))

    # ------------------------------------------------------------------
    # payment claims
    # ------------------------------------------------------------------
    def create_payment_claim(self, document: SalesDocument) -> PaymentClaim:
        claim = PaymentClaim.for_document(document, self.caller.user_id, self.caller.name)
        record = claim.to_record()
        record["created_at"] = SERVER_TIMESTAMP
        self.writes.append(Write.create(PAYMENT_CLAIMS, claim.claim_id, record))
        return claim

    def update_payment_claim(self, claim: PaymentClaim, document: SalesDocument, status: ClaimStatus) -> None:
        changes: dict[str, Any] = {
            "status": status.value,
            "amount_due": document.grand_total,
            "job_id": document.job_id,
        }
        if status is not ClaimStatus.PENDING:
            changes["settled_at"] = SERVER_TIMESTAMP
        guard = Precondition(exists=True, fields={"status": claim.status.value})
        self.writes.append(Write.update(PAYMENT_CLAIMS, claim.claim_id, changes, guard))

    def delete_payment_claim(self, claim: PaymentClaim) -> None:
        self.writes.append(Write.delete(PAYMENT_CLAIMS, claim.claim_id, Precondition(fields={"status": claim.status.value})))

    def add(self, *writes: Write) -> None:
        self.writes.extend(writes)

    # ------------------------------------------------------------------
    # commit
    # ------------------------------------------------------------------
    def commit(self) -> datetime:
        try:
            timestamp = self.store.commit_batch(self.writes)
        except BatchRejected as exc:
            logger.warning("batch rejected: %s", exc)
            raise StateConflict(
                "the record changed since it was read; refresh and retry",
                collection=exc.collection,
                record_id=exc.record_id,
            ) from exc
        except (StoreUnavailable, TimeoutError, ConnectionError) as exc:
            logger.warning("batch not applied: %s", exc)
            raise StorageUnavailable("the record store did not apply the change") from exc
        for activity in self.activities:
            activity.created_at = timestamp
        return timestamp
