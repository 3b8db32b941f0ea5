from __future__ import annotations

from pathlib import Path
from typing import Iterable

import pandas as pd

from backend.domain.documents import SalesDocument

COLUMNS = [
    "doc_no",
    "doc_type",
    "status",
    "issue_date",
    "job_id",
    "customer_name",
    "subtotal",
    "discount",
    "net",
    "vat_amount",
    "grand_total",
    "is_backfill",
]


def export_sales_register(path: Path, documents: Iterable[SalesDocument]) -> Path:
    records = []
    for document in documents:
        data = document.to_record()
        records.append({column: data[column] for column in COLUMNS})
    df = pd.DataFrame(records, columns=COLUMNS)
    df = df.sort_values(["issue_date", "doc_no"], kind="stable") if not df.empty else df
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(path, index=False)
    return path
