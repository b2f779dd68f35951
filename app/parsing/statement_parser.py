"""
app/parsing/statement_parser.py

Line-level parsing for bank statement exports.

The export is simple comma-delimited text. A double quote toggles
"inside quoted field" mode and is never copied into the field; while
quoted, the delimiter is literal. Lines with fewer than ``min_field_count``
fields are skipped rather than failing the batch.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from app.domain.errors import MalformedInputError
from app.domain.statement import (
    AMOUNT_INDEX,
    BALANCE_INDEX,
    COMPLETED_DATE_INDEX,
    CURRENCY_INDEX,
    DESCRIPTION_INDEX,
    FEE_INDEX,
    PRODUCT_INDEX,
    STARTED_DATE_INDEX,
    STATE_INDEX,
    TYPE_INDEX,
    ParsedRow,
    ParsedStatement,
)

logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = ","
QUOTE_CHAR = '"'
MIN_FIELD_COUNT = 10
REQUIRED_HEADER_MARKERS: tuple[str, ...] = ("type", "amount", "started date")


def split_lines(raw_text: str) -> list[str]:
    """
    Split upload text into lines after trimming surrounding whitespace.

    Only ``\\n`` and ``\\r\\n`` end a line. Other characters that
    ``str.splitlines`` treats as boundaries (form feed, U+2028 and friends)
    stay inside the field they appear in.
    """

    stripped = raw_text.strip()
    if not stripped:
        return []
    return [line[:-1] if line.endswith("\r") else line for line in stripped.split("\n")]


def count_data_rows(raw_text: str) -> int:
    """
    Count non-blank lines after the header.
    """

    lines = split_lines(raw_text)
    return sum(1 for line in lines[1:] if line.strip())


def split_csv_line(line: str, delimiter: str = DEFAULT_DELIMITER) -> list[str]:
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False

    for char in line:
        if char == QUOTE_CHAR:
            in_quotes = not in_quotes
        elif char == delimiter and not in_quotes:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)

    fields.append("".join(current).strip())
    return fields


def validate_header(header_line: str) -> None:
    """
    Raise MalformedInputError unless every required column marker is present.
    """

    lowered = header_line.lower()
    missing = [marker for marker in REQUIRED_HEADER_MARKERS if marker not in lowered]
    if missing:
        raise MalformedInputError(
            f"Missing required columns: {', '.join(missing)}. "
            "Expected a statement export with Type, Amount, Started Date columns."
        )


def parse_row(
    line: str,
    *,
    delimiter: str = DEFAULT_DELIMITER,
    min_field_count: int = MIN_FIELD_COUNT,
) -> ParsedRow | None:
    """
    Parse one data line, returning None when it is too short to be a row.
    """

    source_line = line.strip()
    fields = split_csv_line(source_line, delimiter)
    if len(fields) < max(min_field_count, BALANCE_INDEX + 1):
        return None

    balance_text = fields[BALANCE_INDEX]
    return ParsedRow(
        type=fields[TYPE_INDEX],
        product=fields[PRODUCT_INDEX],
        started_date=fields[STARTED_DATE_INDEX],
        completed_date=fields[COMPLETED_DATE_INDEX] or None,
        description=fields[DESCRIPTION_INDEX],
        amount=_decimal_or_zero(fields[AMOUNT_INDEX]),
        fee=_decimal_or_zero(fields[FEE_INDEX]),
        currency=fields[CURRENCY_INDEX],
        state=fields[STATE_INDEX],
        balance=_parse_decimal(balance_text) if balance_text else None,
        amount_text=fields[AMOUNT_INDEX],
        source_line=source_line,
    )


def parse_statement(
    raw_text: str,
    *,
    delimiter: str = DEFAULT_DELIMITER,
    min_field_count: int = MIN_FIELD_COUNT,
) -> ParsedStatement:
    """Validate the header and parse every well-formed data line.

    Args:
        raw_text: Full upload body, header first.
        delimiter: Field separator.
        min_field_count: Lines with fewer fields are skipped.

    Returns:
        ParsedStatement with the header, parsed rows and skipped-line count.

    Raises:
        MalformedInputError: If the upload is empty or the header lacks a
            required column marker.
    """

    lines = split_lines(raw_text)
    if not lines:
        raise MalformedInputError("CSV file is empty.")

    header = lines[0].strip()
    validate_header(header)

    rows: list[ParsedRow] = []
    skipped = 0
    for line_number, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue
        row = parse_row(line, delimiter=delimiter, min_field_count=min_field_count)
        if row is None:
            skipped += 1
            logger.debug("Skipping short statement line line_number=%s", line_number)
            continue
        rows.append(row)

    if skipped:
        logger.info("Skipped malformed statement lines count=%s parsed=%s", skipped, len(rows))

    return ParsedStatement(header=header, rows=rows, skipped_line_count=skipped)


def serialize_row(row: ParsedRow, delimiter: str = DEFAULT_DELIMITER) -> str:
    """
    Render a row as one delimited line; fields containing the delimiter are quoted.
    """

    values = [
        row.type,
        row.product,
        row.started_date,
        row.completed_date or "",
        row.description,
        row.amount_text,
        str(row.fee),
        row.currency,
        row.state,
        "" if row.balance is None else str(row.balance),
    ]
    return delimiter.join(_quote_field(value, delimiter) for value in values)


def _quote_field(value: str, delimiter: str) -> str:
    # Quote characters cannot be escaped under toggle semantics.
    cleaned = value.replace(QUOTE_CHAR, "")
    if delimiter in cleaned:
        return f"{QUOTE_CHAR}{cleaned}{QUOTE_CHAR}"
    return cleaned


def _parse_decimal(value: str) -> Decimal | None:
    try:
        parsed = Decimal(value.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def _decimal_or_zero(value: str) -> Decimal:
    parsed = _parse_decimal(value)
    return Decimal("0") if parsed is None else parsed
