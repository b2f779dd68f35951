"""
app/parsing package marker.
"""

from app.parsing.fingerprint import canonical_amount, fingerprint, fingerprint_fields
from app.parsing.statement_parser import (
    count_data_rows,
    parse_row,
    parse_statement,
    serialize_row,
    split_csv_line,
    validate_header,
)

__all__ = [
    "canonical_amount",
    "count_data_rows",
    "fingerprint",
    "fingerprint_fields",
    "parse_row",
    "parse_statement",
    "serialize_row",
    "split_csv_line",
    "validate_header",
]
