"""Sales document entity (quotation, delivery note, tax invoice, receipt)."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class DocType(str, Enum):
    QUOTATION = "QUOTATION"
    DELIVERY_NOTE = "DELIVERY_NOTE"
    TAX_INVOICE = "TAX_INVOICE"
    RECEIPT = "RECEIPT"
    CREDIT_NOTE = "CREDIT_NOTE"


class DocStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    REJECTED = "REJECTED"
    APPROVED = "APPROVED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


# Revenue documents that move a job to WAITING_CUSTOMER_PICKUP and become its
# representative document.
BILLABLE_DOC_TYPES = frozenset({DocType.DELIVERY_NOTE, DocType.TAX_INVOICE})
# Reference-only types never take part in the one-live-document-per-type rule.
REFERENCE_ONLY_DOC_TYPES = frozenset({DocType.CREDIT_NOTE})
TERMINAL_DOC_STATUSES = frozenset({DocStatus.PAID, DocStatus.CANCELLED})


@dataclass(frozen=True, slots=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal

    @property
    def total(self) -> Decimal:
        return self.quantity * self.unit_price

    def to_record(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "total": self.total,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "LineItem":
        return cls(
            description=str(record.get("description") or ""),
            quantity=Decimal(str(record.get("quantity", "0"))),
            unit_price=Decimal(str(record.get("unit_price", "0"))),
        )


@dataclass(slots=True)
class SalesDocument:
    doc_id: str
    doc_type: DocType
    doc_no: str
    status: DocStatus = DocStatus.DRAFT
    issue_date: date | None = None
    items: list[LineItem] = field(default_factory=list)
    discount: Decimal = Decimal("0.00")
    tax_applicable: bool = True
    vat_rate: Decimal | None = None
    subtotal: Decimal = Decimal("0.00")
    net: Decimal = Decimal("0.00")
    vat_amount: Decimal = Decimal("0.00")
    grand_total: Decimal = Decimal("0.00")
    job_id: str | None = None
    references_doc_ids: list[str] = field(default_factory=list)
    customer_name: str | None = None
    rejection_reason: str | None = None
    cancel_reason: str | None = None
    is_backfill: bool = False
    idempotency_key: str | None = None
    created_by_id: str | None = None
    created_by_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_live(self) -> bool:
        return self.status != DocStatus.CANCELLED

    @property
    def is_billable(self) -> bool:
        return self.doc_type in BILLABLE_DOC_TYPES

    def to_record(self) -> dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "doc_type": self.doc_type.value,
            "doc_no": self.doc_no,
            "status": self.status.value,
            "issue_date": self.issue_date,
            "items": [item.to_record() for item in self.items],
            "discount": self.discount,
            "tax_applicable": self.tax_applicable,
            "vat_rate": self.vat_rate,
            "subtotal": self.subtotal,
            "net": self.net,
            "vat_amount": self.vat_amount,
            "grand_total": self.grand_total,
            "job_id": self.job_id,
            "references_doc_ids": list(self.references_doc_ids),
            "customer_name": self.customer_name,
            "rejection_reason": self.rejection_reason,
            "cancel_reason": self.cancel_reason,
            "is_backfill": self.is_backfill,
            "idempotency_key": self.idempotency_key,
            "created_by_id": self.created_by_id,
            "created_by_name": self.created_by_name,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "paid_at": self.paid_at,
            "cancelled_at": self.cancelled_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "SalesDocument":
        data = dict(record)
        data["doc_type"] = DocType(data["doc_type"])
        data["status"] = DocStatus(data.get("status") or DocStatus.DRAFT)
        data["items"] = [LineItem.from_record(item) for item in data.get("items") or []]
        data["references_doc_ids"] = list(data.get("references_doc_ids") or [])
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})
