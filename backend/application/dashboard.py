"""Read-only dashboard metrics derived from job and document records."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, Iterable

import pandas as pd

from backend.core.partitions import DOCUMENTS, JOBS
from backend.core.totals import ZERO
from backend.domain.documents import BILLABLE_DOC_TYPES, DocStatus
from backend.domain.jobs import JobStatus
from backend.infrastructure.clock import Clock
from backend.infrastructure.store import RecordStore

AGING_BUCKETS = ("0-30", "31-60", "61-90", "90+")
_AGING_BINS = [-float("inf"), 30, 60, 90, float("inf")]
_REVENUE_TYPES = sorted(doc_type.value for doc_type in BILLABLE_DOC_TYPES)


def _money(values: Iterable[Any]) -> Decimal:
    return sum((Decimal(str(value)) for value in values), ZERO)


class DashboardReader:
    """Aggregations for the office dashboard; never writes to the store."""

    def __init__(self, store: RecordStore, clock: Clock) -> None:
        self._store = store
        self._clock = clock

    def _jobs(self) -> pd.DataFrame:
        return pd.DataFrame(self._store.query(JOBS))

    def _revenue_documents(self) -> pd.DataFrame:
        dataframe = pd.DataFrame(self._store.query(DOCUMENTS))
        if dataframe.empty:
            return dataframe
        return dataframe[dataframe["doc_type"].isin(_REVENUE_TYPES)]

    def backlog(self) -> list[dict[str, Any]]:
        """Open job counts per status and department."""

        jobs = self._jobs()
        if jobs.empty:
            return []
        open_jobs = jobs[jobs["status"] != JobStatus.CLOSED.value]
        if open_jobs.empty:
            return []
        counts = open_jobs.groupby(["status", "department"]).size().reset_index(name="count")
        counts["count"] = counts["count"].astype(int)
        return counts.sort_values(["status", "department"]).to_dict(orient="records")

    def unbilled_done(self) -> int:
        """Jobs sitting in DONE without a sales document (e.g. rejected with cost)."""

        jobs = self._jobs()
        if jobs.empty:
            return 0
        mask = (jobs["status"] == JobStatus.DONE.value) & jobs["sales_doc_id"].isna()
        return int(mask.sum())

    def ar_aging(self, as_of: date | None = None) -> list[dict[str, Any]]:
        """Outstanding revenue documents bucketed by days since issue."""

        as_of = as_of or self._clock.today()
        documents = self._revenue_documents()
        empty = [{"bucket": label, "count": 0, "amount": ZERO} for label in AGING_BUCKETS]
        if documents.empty:
            return empty
        settled = {DocStatus.PAID.value, DocStatus.CANCELLED.value}
        outstanding = documents[~documents["status"].isin(settled)].copy()
        outstanding = outstanding[outstanding["issue_date"].notna()]
        if outstanding.empty:
            return empty

        outstanding["age"] = [max((as_of - issued).days, 0) for issued in outstanding["issue_date"]]
        outstanding["bucket"] = pd.cut(outstanding["age"], bins=_AGING_BINS, labels=list(AGING_BUCKETS))
        rows = []
        for label in AGING_BUCKETS:
            subset = outstanding[outstanding["bucket"] == label]
            rows.append({"bucket": label, "count": int(len(subset)), "amount": _money(subset["grand_total"])})
        return rows

    def cash_flow(self) -> list[dict[str, Any]]:
        """Paid revenue per calendar month of payment."""

        records = [
            {"month": (row.get("paid_at") or row["issue_date"]).strftime("%Y-%m"), "grand_total": row["grand_total"]}
            for row in self._store.query(DOCUMENTS, where={"status": DocStatus.PAID.value})
            if row["doc_type"] in _REVENUE_TYPES and (row.get("paid_at") or row.get("issue_date"))
        ]
        if not records:
            return []
        paid = pd.DataFrame(records)
        rows = []
        for month, group in paid.groupby("month", sort=True):
            rows.append({"month": month, "count": int(len(group)), "amount": _money(group["grand_total"])})
        return rows

    def summary(self, as_of: date | None = None) -> dict[str, Any]:
        return {
            "backlog": self.backlog(),
            "unbilled_done": self.unbilled_done(),
            "ar_aging": self.ar_aging(as_of),
            "cash_flow": self.cash_flow(),
        }
