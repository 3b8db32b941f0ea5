"""Parser for legacy document registers used to backfill sales documents.

One spreadsheet row is one line item; consecutive rows sharing a document
type and number form a single document.  Column headers are matched by
keyword (English or Thai) so the office's existing registers can be
imported as they are.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import pandas as pd

from backend.domain.documents import DocType, LineItem

DOC_TYPE_COLUMNS = ["doc_type", "type", "ประเภท"]
DOC_NO_COLUMNS = ["doc_no", "number", "เลขที่"]
DATE_COLUMNS = ["issue_date", "date", "วันที่"]
JOB_COLUMNS = ["job_id", "job", "ใบงาน"]
CUSTOMER_COLUMNS = ["customer", "ลูกค้า"]
DESCRIPTION_COLUMNS = ["description", "item", "รายการ"]
QUANTITY_COLUMNS = ["quantity", "qty", "จำนวน"]
PRICE_COLUMNS = ["unit_price", "price", "ราคา"]
DISCOUNT_COLUMNS = ["discount", "ส่วนลด"]
TAX_COLUMNS = ["tax_applicable", "vat", "ภาษี"]
PAID_COLUMNS = ["paid", "ชำระ"]

DOC_TYPE_ALIASES = {
    "QT": DocType.QUOTATION,
    "QUOTE": DocType.QUOTATION,
    "DN": DocType.DELIVERY_NOTE,
    "INV": DocType.TAX_INVOICE,
    "INVOICE": DocType.TAX_INVOICE,
    "RE": DocType.RECEIPT,
    "CN": DocType.CREDIT_NOTE,
}

TRUE_WORDS = {"1", "true", "yes", "y", "paid", "x", "✓"}


@dataclass
class BackfillDocument:
    doc_type: DocType
    doc_no: str
    issue_date: date
    job_id: str | None = None
    customer_name: str | None = None
    items: list[LineItem] = field(default_factory=list)
    discount: Decimal = Decimal("0")
    tax_applicable: bool | None = None
    paid: bool = False
    source_rows: list[int] = field(default_factory=list)


@dataclass
class BackfillParseResult:
    documents: list[BackfillDocument]
    errors: list[str]


def _normalise_columns(dataframe: pd.DataFrame) -> pd.DataFrame:
    renamed = {col: str(col).strip() for col in dataframe.columns}
    dataframe = dataframe.rename(columns=renamed)
    return dataframe.dropna(how="all")


def _find_column(dataframe: pd.DataFrame, candidates: list[str]) -> str | None:
    for candidate in candidates:
        for column in dataframe.columns:
            if candidate.lower() in str(column).lower():
                return column
    return None


def _text(value: Any) -> str:
    if value is None or (not isinstance(value, str) and pd.isna(value)):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _decimal(value: Any, default: str | None = None) -> Decimal | None:
    text = _text(value).replace(",", "")
    if not text:
        return Decimal(default) if default is not None else None
    try:
        result = Decimal(text)
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def _flag(value: Any) -> bool | None:
    text = _text(value).lower()
    if not text:
        return None
    return text in TRUE_WORDS


def _doc_type(value: Any) -> DocType | None:
    text = _text(value).upper().replace(" ", "_").replace("-", "_")
    if not text:
        return None
    if text in DOC_TYPE_ALIASES:
        return DOC_TYPE_ALIASES[text]
    try:
        return DocType(text)
    except ValueError:
        return None


def _date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    parsed = pd.to_datetime(_text(value) or None, errors="coerce")
    if parsed is None or pd.isna(parsed):
        return None
    return parsed.date()


def read_frame(path: Path, sheet_name: str | None = None) -> pd.DataFrame:
    if path.suffix.lower() == ".csv":
        return pd.read_csv(path, dtype=str)
    return pd.read_excel(path, sheet_name=sheet_name or 0)


def parse(path: Path, sheet_name: str | None = None) -> BackfillParseResult:
    return parse_frame(read_frame(path, sheet_name))


def parse_frame(dataframe: pd.DataFrame) -> BackfillParseResult:
    dataframe = _normalise_columns(dataframe)
    columns = {
        "doc_type": _find_column(dataframe, DOC_TYPE_COLUMNS),
        "doc_no": _find_column(dataframe, DOC_NO_COLUMNS),
        "issue_date": _find_column(dataframe, DATE_COLUMNS),
        "job_id": _find_column(dataframe, JOB_COLUMNS),
        "customer": _find_column(dataframe, CUSTOMER_COLUMNS),
        "description": _find_column(dataframe, DESCRIPTION_COLUMNS),
        "quantity": _find_column(dataframe, QUANTITY_COLUMNS),
        "price": _find_column(dataframe, PRICE_COLUMNS),
        "discount": _find_column(dataframe, DISCOUNT_COLUMNS),
        "tax": _find_column(dataframe, TAX_COLUMNS),
        "paid": _find_column(dataframe, PAID_COLUMNS),
    }
    missing = [name for name in ("doc_type", "doc_no", "issue_date", "price") if columns[name] is None]
    if missing:
        return BackfillParseResult(documents=[], errors=[f"missing column(s): {', '.join(missing)}"])

    def cell(row: pd.Series, name: str) -> Any:
        column = columns[name]
        return row.get(column) if column else None

    documents: dict[tuple[DocType, str], BackfillDocument] = {}
    errors: list[str] = []
    for position, (_, row) in enumerate(dataframe.iterrows()):
        line = position + 2
        doc_type = _doc_type(cell(row, "doc_type"))
        doc_no = _text(cell(row, "doc_no"))
        if doc_type is None or not doc_no:
            errors.append(f"row {line}: unknown document type or empty document number")
            continue
        quantity = _decimal(cell(row, "quantity"), default="1")
        price = _decimal(cell(row, "price"))
        if quantity is None or price is None:
            errors.append(f"row {line}: quantity and unit price must be numbers")
            continue

        document = documents.get((doc_type, doc_no))
        if document is None:
            issue_date = _date(cell(row, "issue_date"))
            if issue_date is None:
                errors.append(f"row {line}: {doc_no} has no valid issue date")
                continue
            document = BackfillDocument(
                doc_type=doc_type,
                doc_no=doc_no,
                issue_date=issue_date,
                job_id=_text(cell(row, "job_id")) or None,
                customer_name=_text(cell(row, "customer")) or None,
                tax_applicable=_flag(cell(row, "tax")),
                paid=bool(_flag(cell(row, "paid"))),
            )
            documents[(doc_type, doc_no)] = document

        discount = _decimal(cell(row, "discount"), default="0") or Decimal("0")
        document.discount += discount
        document.items.append(
            LineItem(
                description=_text(cell(row, "description")) or doc_no,
                quantity=quantity,
                unit_price=price,
            )
        )
        document.source_rows.append(line)

    return BackfillParseResult(documents=list(documents.values()), errors=errors)
