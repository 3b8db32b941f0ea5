"""Derived monetary totals for sales documents."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from backend.core.validation import InvariantViolation

ZERO = Decimal("0.00")


def quantize(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def to_decimal(value: Any, default: str = "0") -> Decimal:
    if value is None or value == "":
        return Decimal(default)
    try:
        result = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvariantViolation(f"{value!r} is not a valid amount") from exc
    if not result.is_finite():
        raise InvariantViolation(f"{value!r} is not a finite amount")
    return result


@dataclass(frozen=True, slots=True)
class DocumentTotals:
    subtotal: Decimal
    net: Decimal
    vat_amount: Decimal
    grand_total: Decimal

    def as_tuple(self) -> tuple[Decimal, Decimal, Decimal, Decimal]:
        return (self.subtotal, self.net, self.vat_amount, self.grand_total)


def compute_totals(
    items: Iterable[Any],
    discount: Decimal,
    tax_applicable: bool,
    vat_rate: Decimal,
) -> DocumentTotals:
    """Derive subtotal, net, VAT and grand total from line items.

    ``net = subtotal - discount``; VAT is ``net * vat_rate`` only for
    tax-applicable documents; ``grand_total = net + vat``.
    """

    subtotal = ZERO
    for item in items:
        if item.quantity < 0 or item.unit_price < 0:
            raise InvariantViolation(f"line item {item.description!r} has a negative quantity or price")
        subtotal += item.quantity * item.unit_price
    subtotal = quantize(subtotal)
    discount = quantize(discount)
    if discount < 0:
        raise InvariantViolation("discount cannot be negative")
    if discount > subtotal:
        raise InvariantViolation("discount cannot exceed the subtotal")

    net = subtotal - discount
    vat_amount = quantize(net * vat_rate) if tax_applicable else ZERO
    return DocumentTotals(subtotal=subtotal, net=net, vat_amount=vat_amount, grand_total=net + vat_amount)


def rate_for(document: Any, default: Decimal) -> Decimal:
    """The VAT rate a document was issued under; older records fall back to ``default``."""

    rate = getattr(document, "vat_rate", None)
    return default if rate is None else rate


def validate_document_totals(document: Any, vat_rate: Decimal) -> None:
    """Reject a document whose stored totals differ from a fresh derivation.

    The document's own rate takes precedence over ``vat_rate``.
    """

    expected = compute_totals(document.items, document.discount, document.tax_applicable, rate_for(document, vat_rate))
    actual = (document.subtotal, document.net, document.vat_amount, document.grand_total)
    if actual != expected.as_tuple():
        raise InvariantViolation(
            f"document {document.doc_no or document.doc_id} totals do not match its items",
            doc_id=document.doc_id,
        )
