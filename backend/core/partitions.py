"""Collection naming for the live and year-partitioned archive stores."""
from __future__ import annotations

from datetime import date, datetime

JOBS = "jobs"
DOCUMENTS = "documents"
ACTIVE_DOCUMENTS = "activeDocuments"
DOCUMENT_COUNTERS = "documentCounters"
DOCUMENT_NUMBERS = "documentNumbers"
IDEMPOTENCY_KEYS = "idempotencyKeys"
PAYMENT_CLAIMS = "paymentClaims"
USERS = "users"

DEFAULT_ARCHIVE_PREFIX = "jobsArchive_"


def year_from_date(value: date | str | None, fallback: int | None = None) -> int:
    if isinstance(value, (date, datetime)):
        return value.year
    text = str(value or "")[:4]
    if text.isdigit():
        return int(text)
    return fallback if fallback is not None else date.today().year


def archive_collection(year: int, prefix: str = DEFAULT_ARCHIVE_PREFIX) -> str:
    return f"{prefix}{year}"


def activities_collection(partition: str, job_id: str) -> str:
    return f"{partition}/{job_id}/activities"


def active_document_key(job_id: str, doc_type: str) -> str:
    return f"{job_id}:{doc_type}"


def document_number_key(doc_type: str, doc_no: str) -> str:
    return f"{doc_type}:{doc_no}"


def archive_years(current_year: int, horizon: int) -> list[int]:
    """Years to search for an archived job, newest first."""

    return [current_year - offset for offset in range(horizon)]
