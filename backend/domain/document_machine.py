"""Sales document state machine and totals derivation."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable

from backend.core.totals import compute_totals, rate_for
from backend.core.validation import InvalidTransition, InvariantViolation
from backend.domain.documents import DocStatus, DocType, LineItem, SalesDocument


class DocEvent(str, Enum):
    SUBMIT_FOR_REVIEW = "submit_for_review"
    REJECT = "reject"
    APPROVE = "approve"
    CONFIRM_PAID = "confirm_paid"
    CANCEL = "cancel"
    EDIT_ITEMS = "edit_items"
    DELETE = "delete"


@dataclass(frozen=True)
class Rule:
    sources: frozenset[DocStatus]
    target: DocStatus | None


DOC_TRANSITIONS: dict[DocEvent, Rule] = {
    DocEvent.SUBMIT_FOR_REVIEW: Rule(frozenset({DocStatus.DRAFT}), DocStatus.PENDING_REVIEW),
    DocEvent.REJECT: Rule(frozenset({DocStatus.PENDING_REVIEW}), DocStatus.REJECTED),
    DocEvent.APPROVE: Rule(frozenset({DocStatus.PENDING_REVIEW}), DocStatus.APPROVED),
    DocEvent.CONFIRM_PAID: Rule(frozenset({DocStatus.APPROVED, DocStatus.PENDING_REVIEW}), DocStatus.PAID),
    DocEvent.CANCEL: Rule(
        frozenset(
            {
                DocStatus.DRAFT,
                DocStatus.PENDING_REVIEW,
                DocStatus.REJECTED,
                DocStatus.APPROVED,
                DocStatus.PAID,
            }
        ),
        DocStatus.CANCELLED,
    ),
    DocEvent.EDIT_ITEMS: Rule(frozenset({DocStatus.DRAFT, DocStatus.REJECTED}), DocStatus.DRAFT),
    DocEvent.DELETE: Rule(frozenset(DocStatus) - {DocStatus.PAID}, None),
}

INITIAL_STATUSES = frozenset({DocStatus.DRAFT, DocStatus.PENDING_REVIEW})


@dataclass(frozen=True)
class DocTransition:
    event: DocEvent
    before: SalesDocument
    after: SalesDocument
    description: str


def _check(document: SalesDocument, event: DocEvent) -> DocStatus:
    rule = DOC_TRANSITIONS[event]
    if document.status not in rule.sources:
        raise InvalidTransition(
            f"cannot {event.value} {document.doc_no} from {document.status.value}",
            doc_id=document.doc_id,
            event=event.value,
            status=document.status.value,
        )
    return rule.target or document.status


def _label(document: SalesDocument) -> str:
    return f"{document.doc_type.value} {document.doc_no}"


def with_totals(document: SalesDocument, vat_rate: Decimal) -> SalesDocument:
    rate = rate_for(document, vat_rate)
    totals = compute_totals(document.items, document.discount, document.tax_applicable, rate)
    return replace(
        document,
        vat_rate=rate,
        subtotal=totals.subtotal,
        net=totals.net,
        vat_amount=totals.vat_amount,
        grand_total=totals.grand_total,
    )


def new_document(
    *,
    doc_id: str,
    doc_type: DocType,
    doc_no: str,
    issue_date: date,
    items: Iterable[LineItem],
    discount: Decimal,
    tax_applicable: bool,
    vat_rate: Decimal,
    initial_status: DocStatus = DocStatus.DRAFT,
    **fields: object,
) -> SalesDocument:
    if initial_status not in INITIAL_STATUSES:
        raise InvalidTransition(f"documents cannot be created as {initial_status.value}")
    document = SalesDocument(
        doc_id=doc_id,
        doc_type=doc_type,
        doc_no=doc_no,
        status=initial_status,
        issue_date=issue_date,
        items=list(items),
        discount=discount,
        tax_applicable=tax_applicable,
        vat_rate=vat_rate,
        **fields,
    )
    return with_totals(document, vat_rate)


def submit_for_review(document: SalesDocument) -> DocTransition:
    status = _check(document, DocEvent.SUBMIT_FOR_REVIEW)
    return DocTransition(
        DocEvent.SUBMIT_FOR_REVIEW, document, replace(document, status=status), f"{_label(document)} submitted for review"
    )


def reject(document: SalesDocument, reason: str) -> DocTransition:
    if not reason or not reason.strip():
        raise InvariantViolation("a rejection reason is required", doc_id=document.doc_id)
    status = _check(document, DocEvent.REJECT)
    return DocTransition(
        DocEvent.REJECT,
        document,
        replace(document, status=status, rejection_reason=reason.strip()),
        f"{_label(document)} rejected: {reason.strip()}",
    )


def approve(document: SalesDocument) -> DocTransition:
    status = _check(document, DocEvent.APPROVE)
    return DocTransition(DocEvent.APPROVE, document, replace(document, status=status), f"{_label(document)} approved")


def confirm_paid(document: SalesDocument, *, requires_approval: bool) -> DocTransition:
    status = _check(document, DocEvent.CONFIRM_PAID)
    if document.status is DocStatus.PENDING_REVIEW and requires_approval:
        raise InvalidTransition(
            f"{document.doc_no} must be approved before it can be paid",
            doc_id=document.doc_id,
            status=document.status.value,
        )
    return DocTransition(
        DocEvent.CONFIRM_PAID, document, replace(document, status=status), f"{_label(document)} confirmed paid"
    )


def cancel(document: SalesDocument, reason: str, *, allow_paid: bool = False) -> DocTransition:
    status = _check(document, DocEvent.CANCEL)
    if document.status is DocStatus.PAID and not allow_paid:
        raise InvalidTransition(
            f"{document.doc_no} is paid; only an elevated caller may cancel it",
            doc_id=document.doc_id,
            status=document.status.value,
        )
    text = f"{_label(document)} cancelled"
    if reason:
        text += f": {reason}"
    return DocTransition(
        DocEvent.CANCEL, document, replace(document, status=status, cancel_reason=reason or None), text
    )


def edit_items(
    document: SalesDocument,
    items: Iterable[LineItem],
    discount: Decimal,
    tax_applicable: bool,
    vat_rate: Decimal,
) -> DocTransition:
    status = _check(document, DocEvent.EDIT_ITEMS)
    edited = replace(
        document,
        status=status,
        items=list(items),
        discount=discount,
        tax_applicable=tax_applicable,
        rejection_reason=None,
    )
    return DocTransition(DocEvent.EDIT_ITEMS, document, with_totals(edited, vat_rate), f"{_label(document)} items edited")


def delete(document: SalesDocument) -> DocTransition:
    if document.status is DocStatus.PAID:
        raise InvariantViolation(f"{document.doc_no} is paid and cannot be deleted", doc_id=document.doc_id)
    _check(document, DocEvent.DELETE)
    return DocTransition(DocEvent.DELETE, document, document, f"{_label(document)} deleted")
