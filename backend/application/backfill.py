"""Import legacy documents from a spreadsheet register."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from backend.application.reconciliation import IssueRequest, ReconciliationCoordinator
from backend.core.validation import EngineError
from backend.domain.documents import DocStatus
from backend.extractors import backfill_sheet
from backend.extractors.backfill_sheet import BackfillDocument
from backend.infrastructure.permissions import Caller

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    created: list[str] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class BackfillImporter:
    """Creates backfilled documents one at a time; a failing document is reported, not retried."""

    def __init__(self, coordinator: ReconciliationCoordinator) -> None:
        self._coordinator = coordinator

    def _import_one(self, entry: BackfillDocument, caller: Caller) -> str:
        request = IssueRequest(
            doc_type=entry.doc_type,
            items=tuple(entry.items),
            discount=entry.discount,
            tax_applicable=entry.tax_applicable,
            issue_date=entry.issue_date,
            submit_for_review=entry.paid,
            manual_doc_no=entry.doc_no,
            idempotency_key=f"backfill:{entry.doc_type.value}:{entry.doc_no}",
            customer_name=entry.customer_name,
        )
        if entry.job_id:
            outcome = self._coordinator.issue_document(entry.job_id, request, caller)
        else:
            outcome = self._coordinator.create_standalone_document(request, caller)
        document = outcome.document
        if entry.paid and document.status is not DocStatus.PAID:
            if self._coordinator.get_document(document.doc_id).status is DocStatus.PENDING_REVIEW:
                self._coordinator.approve(document.doc_id, caller)
            self._coordinator.confirm_paid(document.doc_id, caller)
        return document.doc_id

    def import_documents(self, entries: list[BackfillDocument], caller: Caller) -> BackfillReport:
        report = BackfillReport()
        for entry in entries:
            try:
                report.created.append(self._import_one(entry, caller))
            except EngineError as exc:
                logger.warning("backfill of %s %s skipped: %s", entry.doc_type.value, entry.doc_no, exc.message)
                report.skipped.append({"doc_no": entry.doc_no, "doc_type": entry.doc_type.value, "reason": exc.message})
        logger.info("backfill created %d documents, skipped %d", len(report.created), len(report.skipped))
        return report

    def import_file(self, path: Path, caller: Caller, sheet_name: str | None = None) -> BackfillReport:
        parsed = backfill_sheet.parse(path, sheet_name=sheet_name)
        report = self.import_documents(parsed.documents, caller)
        report.errors.extend(parsed.errors)
        return report
