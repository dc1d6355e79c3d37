"""
approvals/workflow/financials.py

Line and record totals for priced line items.

Formula (fixed 15% VAT):
  line_total = unit_price * quantity
  vat        = line_total * 0.15
  subtotal   = line_total + vat
Record totals are the sums of the line values.

IMPORTANT:
- Pure function; re-run whenever a record's lines are replaced. Never cache.
- No rounding. Prices carry at most 2 decimals and quantities at most 3, so every
  amount fits AMOUNT_PLACES (2 + 3 + 2 for the 0.15 rate) and is stored exactly.
  Finer input is refused rather than rounded.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping

from ..errors import ValidationError

VAT_RATE = Decimal("0.15")

INPUT_DIGITS = 12
PRICE_PLACES = 2
QUANTITY_PLACES = 3
AMOUNT_PLACES = 7
# room for the largest price * quantity plus record sums
AMOUNT_DIGITS = 28


@dataclass(frozen=True)
class PricedLine:
    description: str
    medad_product_no: str | None
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal
    vat: Decimal
    subtotal: Decimal

    def as_columns(self) -> dict:
        return {
            "description": self.description,
            "medad_product_no": self.medad_product_no,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "line_total": self.line_total,
            "vat": self.vat,
            "subtotal": self.subtotal,
        }


@dataclass(frozen=True)
class Totals:
    total_price: Decimal
    total_vat: Decimal
    total_subtotal: Decimal

    def as_columns(self) -> dict:
        return {
            "total_price": self.total_price,
            "total_vat": self.total_vat,
            "total_subtotal": self.total_subtotal,
        }


def parse_positive_decimal(value: Any, field: str) -> Decimal:
    """Parse a strictly positive, finite decimal (accepts "12,5" as 12.5)."""
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} must be a number greater than 0")
    raw = str(value).strip().replace(",", ".")
    try:
        number = Decimal(raw)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number greater than 0") from None
    if not number.is_finite() or number <= 0:
        raise ValidationError(f"{field} must be a number greater than 0")
    return number


def _check_places(value: Decimal, places: int, field: str) -> Decimal:
    """Refuse values that would not be stored exactly in Numeric(INPUT_DIGITS, places)."""
    if value.adjusted() >= INPUT_DIGITS - places:
        raise ValidationError(f"{field} is too large")
    if value != value.quantize(Decimal(1).scaleb(-places)):
        raise ValidationError(f"{field} allows at most {places} decimal places")
    return value


def _price_of(item: Mapping[str, Any]) -> Any:
    return item.get("unit_price", item.get("price"))


def aggregate(items: Iterable[Mapping[str, Any]], vat_rate: Decimal = VAT_RATE) -> tuple[list[PricedLine], Totals]:
    """Compute per-line amounts and record totals. Raises ValidationError for bad lines."""
    lines: list[PricedLine] = []
    total_price = Decimal("0")
    total_vat = Decimal("0")
    total_subtotal = Decimal("0")

    for index, item in enumerate(items, start=1):
        if not isinstance(item, Mapping):
            raise ValidationError(f"Product {index} must be an object")

        quantity_field = f"Product {index} quantity"
        price_field = f"Product {index} price"
        quantity = _check_places(
            parse_positive_decimal(item.get("quantity"), quantity_field), QUANTITY_PLACES, quantity_field
        )
        unit_price = _check_places(parse_positive_decimal(_price_of(item), price_field), PRICE_PLACES, price_field)

        line_total = unit_price * quantity
        vat = line_total * vat_rate
        subtotal = line_total + vat

        product_no = item.get("medad_product_no") or item.get("productNo")
        lines.append(
            PricedLine(
                description=str(item.get("description") or ""),
                medad_product_no=str(product_no).strip() if product_no else None,
                quantity=quantity,
                unit_price=unit_price,
                line_total=line_total,
                vat=vat,
                subtotal=subtotal,
            )
        )
        total_price += line_total
        total_vat += vat
        total_subtotal += subtotal

    return lines, Totals(total_price=total_price, total_vat=total_vat, total_subtotal=total_subtotal)
