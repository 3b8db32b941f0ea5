from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, constr

from backend.domain.activity import Activity
from backend.domain.claims import ClaimStatus, PaymentClaim
from backend.domain.documents import DocStatus, DocType, LineItem, SalesDocument
from backend.domain.jobs import Department, Job, JobStatus


class LineItemIn(BaseModel):
    description: str = ""
    quantity: Decimal = Field(default=Decimal("1"), ge=0)
    unit_price: Decimal = Field(ge=0)

    def to_domain(self) -> LineItem:
        return LineItem(description=self.description.strip(), quantity=self.quantity, unit_price=self.unit_price)


class JobCreate(BaseModel):
    department: Department
    description: str = ""
    customer_name: str | None = None
    photos: list[str] = Field(default_factory=list)


class AcceptJobRequest(BaseModel):
    worker_id: str | None = None


class CustomerRejectRequest(BaseModel):
    with_cost: bool


class TransferRequest(BaseModel):
    department: Department
    note: str = ""
    override: bool = False


class ReassignRequest(BaseModel):
    worker_id: constr(min_length=1)


class ActivityCreate(BaseModel):
    text: str = ""
    photos: list[str] = Field(default_factory=list)


class IssueDocumentRequest(BaseModel):
    doc_type: DocType
    items: list[LineItemIn] = Field(default_factory=list)
    discount: Decimal | None = Field(default=None, ge=0)
    tax_applicable: bool | None = None
    issue_date: date | None = None
    submit_for_review: bool = False
    supersede: bool = False
    references_doc_ids: list[str] = Field(default_factory=list)
    manual_doc_no: str | None = None
    idempotency_key: str | None = None
    customer_name: str | None = None


class CancelRequest(BaseModel):
    reason: str = ""


class RejectRequest(BaseModel):
    reason: constr(strip_whitespace=True, min_length=1)


class EditItemsRequest(BaseModel):
    items: list[LineItemIn]
    discount: Decimal | None = Field(default=None, ge=0)
    tax_applicable: bool | None = None


class LinkRequest(BaseModel):
    job_id: constr(min_length=1)
    doc_id: constr(min_length=1)


class LinkConfirm(LinkRequest):
    fingerprint: constr(min_length=1)


class ReplaceRequest(BaseModel):
    old_doc_type: DocType


class ReplaceConfirm(ReplaceRequest):
    fingerprint: constr(min_length=1)
    reason: str = ""
    issue: IssueDocumentRequest | None = None


class JobOut(BaseModel):
    job_id: str
    department: Department
    status: JobStatus
    description: str
    customer_name: str | None = None
    assignee_id: str | None = None
    assignee_name: str | None = None
    created_at: datetime | None = None
    last_activity_at: datetime | None = None
    closed_date: date | None = None
    closed_by_id: str | None = None
    closed_by_name: str | None = None
    payment_status_at_close: str | None = None
    sales_doc_id: str | None = None
    sales_doc_no: str | None = None
    sales_doc_type: str | None = None
    is_archived: bool = False
    archived_at: datetime | None = None
    photos: list[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, job: Job) -> "JobOut":
        return cls(**job.to_record())


class LineItemOut(BaseModel):
    description: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal


class DocumentOut(BaseModel):
    doc_id: str
    doc_type: DocType
    doc_no: str
    status: DocStatus
    issue_date: date | None = None
    items: list[LineItemOut] = Field(default_factory=list)
    discount: Decimal
    tax_applicable: bool
    vat_rate: Decimal | None = None
    subtotal: Decimal
    net: Decimal
    vat_amount: Decimal
    grand_total: Decimal
    job_id: str | None = None
    references_doc_ids: list[str] = Field(default_factory=list)
    customer_name: str | None = None
    rejection_reason: str | None = None
    cancel_reason: str | None = None
    is_backfill: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    paid_at: datetime | None = None
    cancelled_at: datetime | None = None

    @classmethod
    def from_domain(cls, document: SalesDocument) -> "DocumentOut":
        return cls(**document.to_record())


class PaymentClaimOut(BaseModel):
    claim_id: str
    source_doc_id: str
    source_doc_type: DocType
    source_doc_no: str
    amount_due: Decimal
    status: ClaimStatus
    job_id: str | None = None
    customer_name: str | None = None
    created_by_id: str | None = None
    created_by_name: str | None = None
    note: str | None = None
    created_at: datetime | None = None
    settled_at: datetime | None = None

    @classmethod
    def from_domain(cls, claim: PaymentClaim) -> "PaymentClaimOut":
        return cls(**claim.to_record())


class ActivityOut(BaseModel):
    activity_id: str
    job_id: str
    text: str
    author_id: str
    author_name: str
    created_at: datetime | None = None
    photos: list[str] = Field(default_factory=list)
    event: str | None = None

    @classmethod
    def from_domain(cls, activity: Activity) -> "ActivityOut":
        return cls(**activity.to_record())


class ProposalOut(BaseModel):
    kind: Literal["link", "replace"]
    job_id: str
    doc_id: str
    doc_no: str
    job_status_before: JobStatus
    job_status_after: JobStatus
    cancels_doc_id: str | None = None
    effects: list[str]
    fingerprint: str
