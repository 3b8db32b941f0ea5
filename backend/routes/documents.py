from __future__ import annotations

import shutil
import tempfile
from dataclasses import asdict
from pathlib import Path

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from starlette.background import BackgroundTask

from backend.application import DocumentOutcome, IssueRequest, get_coordinator, get_engine
from backend.core.schema import (
    ActivityOut,
    CancelRequest,
    DocumentOut,
    EditItemsRequest,
    IssueDocumentRequest,
    JobOut,
    LinkConfirm,
    PaymentClaimOut,
    LinkRequest,
    ProposalOut,
    RejectRequest,
    ReplaceConfirm,
    ReplaceRequest,
)
from backend.domain.claims import ClaimStatus
from backend.domain.documents import DocStatus, DocType
from backend.exporters.sales_register_csv import export_sales_register
from backend.infrastructure.permissions import Caller
from backend.routes.identity import get_caller

router = APIRouter(prefix="/documents", tags=["documents"])

BACKFILL_SUFFIXES = {".csv", ".xlsx", ".xlsm"}


def to_issue_request(payload: IssueDocumentRequest) -> IssueRequest:
    return IssueRequest(
        doc_type=payload.doc_type,
        items=tuple(item.to_domain() for item in payload.items),
        discount=payload.discount,
        tax_applicable=payload.tax_applicable,
        issue_date=payload.issue_date,
        submit_for_review=payload.submit_for_review,
        supersede=payload.supersede,
        references_doc_ids=tuple(payload.references_doc_ids),
        manual_doc_no=payload.manual_doc_no,
        idempotency_key=payload.idempotency_key,
        customer_name=payload.customer_name,
    )


def outcome_payload(outcome: DocumentOutcome) -> dict:
    return {
        "document": DocumentOut.from_domain(outcome.document).model_dump(mode="json"),
        "job": JobOut.from_domain(outcome.job).model_dump(mode="json") if outcome.job else None,
        "activities": [ActivityOut.from_domain(item).model_dump(mode="json") for item in outcome.activities],
        "cancelled": [item.doc_id for item in outcome.cancelled],
        "archived_to": outcome.archive.partition if outcome.archive else None,
        "replayed": outcome.replayed,
    }


@router.get("")
async def list_documents(
    job_id: str | None = Query(default=None),
    doc_type: DocType | None = Query(default=None),
    status: DocStatus | None = Query(default=None),
) -> dict:
    documents = get_coordinator().list_documents(job_id=job_id, doc_type=doc_type, status=status)
    return {"items": [DocumentOut.from_domain(doc).model_dump(mode="json") for doc in documents]}


@router.get("/payment-claims")
async def list_payment_claims(
    status: ClaimStatus | None = Query(default=None),
    job_id: str | None = Query(default=None),
) -> dict:
    claims = get_coordinator().list_payment_claims(status=status, job_id=job_id)
    return {"items": [PaymentClaimOut.from_domain(claim).model_dump(mode="json") for claim in claims]}


@router.post("")
async def create_standalone_document(payload: IssueDocumentRequest, caller: Caller = Depends(get_caller)) -> dict:
    outcome = get_coordinator().create_standalone_document(to_issue_request(payload), caller)
    return outcome_payload(outcome)


@router.get("/export.csv")
async def export_register(
    doc_type: DocType | None = Query(default=None),
    status: DocStatus | None = Query(default=None),
) -> FileResponse:
    documents = get_coordinator().list_documents(doc_type=doc_type, status=status)
    workdir = Path(tempfile.mkdtemp(prefix="sales-register-"))
    target = export_sales_register(workdir / "sales_register.csv", documents)
    return FileResponse(
        target,
        media_type="text/csv",
        filename="sales_register.csv",
        background=BackgroundTask(shutil.rmtree, workdir, ignore_errors=True),
    )


@router.post("/backfill")
async def backfill_documents(
    file: UploadFile = File(...),
    sheet: str | None = Query(default=None),
    caller: Caller = Depends(get_caller),
) -> dict:
    """Import a legacy document register (CSV or Excel)."""
    if not file.filename:
        raise HTTPException(status_code=400, detail="Uploaded file must have a filename")
    suffix = Path(file.filename).suffix.lower()
    if suffix not in BACKFILL_SUFFIXES:
        raise HTTPException(status_code=400, detail=f"unsupported file type {suffix or '(none)'}")

    workdir = Path(tempfile.mkdtemp(prefix="backfill-"))
    target = workdir / f"register{suffix}"
    try:
        with target.open("wb") as fp:
            shutil.copyfileobj(file.file, fp)
        report = get_engine().backfill.import_file(target, caller, sheet_name=sheet)
    finally:
        await file.close()
        shutil.rmtree(workdir, ignore_errors=True)
    return asdict(report)


@router.post("/link/propose")
async def propose_link(payload: LinkRequest, caller: Caller = Depends(get_caller)) -> dict:
    proposal = get_coordinator().propose_link(payload.job_id, payload.doc_id, caller)
    return ProposalOut(**asdict(proposal)).model_dump(mode="json")


@router.post("/link/confirm")
async def confirm_link(payload: LinkConfirm, caller: Caller = Depends(get_caller)) -> dict:
    outcome = get_coordinator().confirm_link(payload.job_id, payload.doc_id, payload.fingerprint, caller)
    return outcome_payload(outcome)


@router.get("/{doc_id}")
async def get_document(doc_id: str) -> dict:
    return DocumentOut.from_domain(get_coordinator().get_document(doc_id)).model_dump(mode="json")


@router.post("/{doc_id}/submit")
async def submit_document(doc_id: str, caller: Caller = Depends(get_caller)) -> dict:
    return outcome_payload(get_coordinator().submit_for_review(doc_id, caller))


@router.post("/{doc_id}/approve")
async def approve_document(doc_id: str, caller: Caller = Depends(get_caller)) -> dict:
    return outcome_payload(get_coordinator().approve(doc_id, caller))


@router.post("/{doc_id}/reject")
async def reject_document(doc_id: str, payload: RejectRequest, caller: Caller = Depends(get_caller)) -> dict:
    return outcome_payload(get_coordinator().reject(doc_id, payload.reason, caller))


@router.post("/{doc_id}/confirm-paid")
async def confirm_paid(doc_id: str, caller: Caller = Depends(get_caller)) -> dict:
    return outcome_payload(get_coordinator().confirm_paid(doc_id, caller))


@router.post("/{doc_id}/cancel")
async def cancel_document(doc_id: str, payload: CancelRequest, caller: Caller = Depends(get_caller)) -> dict:
    return outcome_payload(get_coordinator().cancel_document(doc_id, payload.reason, caller))


@router.put("/{doc_id}/items")
async def edit_items(doc_id: str, payload: EditItemsRequest, caller: Caller = Depends(get_caller)) -> dict:
    outcome = get_coordinator().edit_items(
        doc_id,
        [item.to_domain() for item in payload.items],
        caller,
        discount=payload.discount,
        tax_applicable=payload.tax_applicable,
    )
    return outcome_payload(outcome)


@router.delete("/{doc_id}")
async def delete_document(doc_id: str, caller: Caller = Depends(get_caller)) -> dict:
    outcome = get_coordinator().delete_document(doc_id, caller)
    return {"deleted": doc_id, "job": JobOut.from_domain(outcome.job).model_dump(mode="json") if outcome.job else None}


job_documents_router = APIRouter(prefix="/jobs", tags=["documents"])


@job_documents_router.post("/{job_id}/replace/propose")
async def propose_replace(job_id: str, payload: ReplaceRequest, caller: Caller = Depends(get_caller)) -> dict:
    proposal = get_coordinator().propose_replace(job_id, payload.old_doc_type, caller)
    return ProposalOut(**asdict(proposal)).model_dump(mode="json")


@job_documents_router.post("/{job_id}/replace/confirm")
async def confirm_replace(job_id: str, payload: ReplaceConfirm, caller: Caller = Depends(get_caller)) -> dict:
    outcome = get_coordinator().confirm_replace(
        job_id,
        payload.old_doc_type,
        payload.fingerprint,
        caller,
        issue=to_issue_request(payload.issue) if payload.issue else None,
        reason=payload.reason,
    )
    return outcome_payload(outcome)


@job_documents_router.post("/{job_id}/documents")
async def issue_document(job_id: str, payload: IssueDocumentRequest, caller: Caller = Depends(get_caller)) -> dict:
    outcome = get_coordinator().issue_document(job_id, to_issue_request(payload), caller)
    return outcome_payload(outcome)
