"""Payment claims: the accounting inbox entry raised for every bill."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from backend.domain.documents import DocStatus, SalesDocument


class ClaimStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


def claim_status_for(document: SalesDocument) -> ClaimStatus:
    if document.status is DocStatus.PAID:
        return ClaimStatus.PAID
    if document.status is DocStatus.CANCELLED:
        return ClaimStatus.CANCELLED
    return ClaimStatus.PENDING


@dataclass(slots=True)
class PaymentClaim:
    """One claim per billable document, keyed by the document id."""

    claim_id: str
    source_doc_id: str
    source_doc_type: str
    source_doc_no: str
    amount_due: Decimal
    status: ClaimStatus = ClaimStatus.PENDING
    job_id: str | None = None
    customer_name: str | None = None
    created_by_id: str | None = None
    created_by_name: str | None = None
    note: str | None = None
    created_at: datetime | None = None
    settled_at: datetime | None = None

    @classmethod
    def for_document(cls, document: SalesDocument, created_by_id: str, created_by_name: str) -> "PaymentClaim":
        return cls(
            claim_id=document.doc_id,
            source_doc_id=document.doc_id,
            source_doc_type=document.doc_type.value,
            source_doc_no=document.doc_no,
            amount_due=document.grand_total,
            job_id=document.job_id,
            customer_name=document.customer_name,
            created_by_id=created_by_id,
            created_by_name=created_by_name,
            note=f"Claim auto-generated from {document.doc_type.value} {document.doc_no}",
        )

    def to_record(self) -> dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "source_doc_id": self.source_doc_id,
            "source_doc_type": self.source_doc_type,
            "source_doc_no": self.source_doc_no,
            "amount_due": self.amount_due,
            "status": self.status.value,
            "job_id": self.job_id,
            "customer_name": self.customer_name,
            "created_by_id": self.created_by_id,
            "created_by_name": self.created_by_name,
            "note": self.note,
            "created_at": self.created_at,
            "settled_at": self.settled_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "PaymentClaim":
        known = {name for name in cls.__dataclass_fields__}
        data = {key: value for key, value in record.items() if key in known}
        data["status"] = ClaimStatus(data.get("status") or ClaimStatus.PENDING)
        data["amount_due"] = Decimal(str(data.get("amount_due", "0")))
        return cls(**data)
