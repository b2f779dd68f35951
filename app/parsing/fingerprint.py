"""
app/parsing/fingerprint.py

Transaction identity used for deduplication.

fingerprint = type | started date | description | canonical amount

The identity is deliberately lossy: fee, balance, currency and state do
not participate, so two rows agreeing on the four fields are one
transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal, InvalidOperation

from app.domain.statement import (
    AMOUNT_INDEX,
    DESCRIPTION_INDEX,
    STARTED_DATE_INDEX,
    TYPE_INDEX,
    ParsedRow,
)

FINGERPRINT_SEPARATOR = "|"


def canonical_amount(amount_text: str) -> str:
    """
    Render a decimal amount without exponent or trailing fractional zeros.

    "-12.50", "-12.5" and "-12.500" all map to "-12.5"; "100.00" maps to
    "100". Text that is not a finite decimal is returned stripped.
    """

    stripped = amount_text.strip()
    try:
        value = Decimal(stripped)
    except InvalidOperation:
        return stripped
    if not value.is_finite():
        return stripped
    if value.is_zero():
        return "0"

    rendered = format(value, "f")
    if "." in rendered:
        rendered = rendered.rstrip("0").rstrip(".")
    return rendered


def build_fingerprint(type_: str, started_date: str, description: str, amount_text: str) -> str:
    return FINGERPRINT_SEPARATOR.join(
        (type_, started_date, description, canonical_amount(amount_text))
    )


def fingerprint(row: ParsedRow) -> str:
    return build_fingerprint(row.type, row.started_date, row.description, row.amount_text)


def fingerprint_fields(fields: Sequence[str]) -> str:
    """
    Fingerprint an already-split line; missing positions count as empty.
    """

    def _at(index: int) -> str:
        return fields[index] if index < len(fields) else ""

    return build_fingerprint(
        _at(TYPE_INDEX),
        _at(STARTED_DATE_INDEX),
        _at(DESCRIPTION_INDEX),
        _at(AMOUNT_INDEX),
    )
