"""Job entity and its status vocabulary."""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    RECEIVED = "RECEIVED"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_QUOTATION = "WAITING_QUOTATION"
    WAITING_APPROVE = "WAITING_APPROVE"
    PENDING_PARTS = "PENDING_PARTS"
    IN_REPAIR_PROCESS = "IN_REPAIR_PROCESS"
    DONE = "DONE"
    WAITING_CUSTOMER_PICKUP = "WAITING_CUSTOMER_PICKUP"
    CLOSED = "CLOSED"


class Department(str, Enum):
    CAR_SERVICE = "CAR_SERVICE"
    COMMONRAIL = "COMMONRAIL"
    MECHANIC = "MECHANIC"
    OUTSOURCE = "OUTSOURCE"


TERMINAL_JOB_STATUSES = frozenset({JobStatus.CLOSED})


@dataclass(slots=True)
class Job:
    """One repair work order tracked from intake to close."""

    job_id: str
    department: Department
    status: JobStatus = JobStatus.RECEIVED
    description: str = ""
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
    photos: list[str] = field(default_factory=list)

    @property
    def has_sales_document(self) -> bool:
        return self.sales_doc_id is not None

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["department"] = self.department.value
        record["status"] = self.status.value
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Job":
        data = dict(record)
        data["department"] = Department(data["department"])
        data["status"] = JobStatus(data.get("status") or JobStatus.RECEIVED)
        data["photos"] = list(data.get("photos") or [])
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in data.items() if key in known})
