#!/usr/bin/env python
from __future__ import annotations

import argparse
from pathlib import Path

from openpyxl import Workbook


HEADER = [
    "doc_type",
    "doc_no",
    "issue_date",
    "job_id",
    "customer_name",
    "description",
    "quantity",
    "unit_price",
    "discount",
    "tax_applicable",
    "paid",
]


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a legacy document register for backfill import")
    parser.add_argument("--output", required=True, help="output path (.xlsx)")
    parser.add_argument("--year", type=int, default=2024, help="issue year of the sample documents")
    parser.add_argument("--job-id", default="", help="job the sample invoice belongs to")
    args = parser.parse_args()

    output = Path(args.output)
    output.parent.mkdir(parents=True, exist_ok=True)

    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "register"
    sheet.append(HEADER)
    sheet.append(["TAX_INVOICE", f"IV{args.year}-0101", f"{args.year}-03-05", args.job_id, "Somchai Garage", "Injector overhaul", 4, 1250, 0, "yes", "yes"])
    sheet.append(["TAX_INVOICE", f"IV{args.year}-0101", f"{args.year}-03-05", args.job_id, "Somchai Garage", "Labour", 1, 800, 100, "yes", "yes"])
    sheet.append(["DELIVERY_NOTE", f"DN{args.year}-0042", f"{args.year}-03-07", "", "Walk-in", "Oil change", 1, 650, 0, "no", ""])
    workbook.save(output)

    print(f"backfill register generated: {output}")


if __name__ == "__main__":
    main()
