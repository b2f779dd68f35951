"""
app/services/merge_service.py

Merge engine: folds newly parsed rows into the stored statement.

Ordering relies on the export's fixed-width, zero-padded date format
("YYYY-MM-DD HH:MM:SS"), under which lexicographic and chronological order
agree. This is a format assumption, not a general date comparator.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from app.domain.errors import MergeLogicError
from app.domain.statement import STARTED_DATE_INDEX, MergeResult, ParsedRow
from app.parsing.fingerprint import fingerprint, fingerprint_fields
from app.parsing.statement_parser import DEFAULT_DELIMITER, split_csv_line, split_lines

logger = logging.getLogger(__name__)


class MergeService:
    """
    Deduplicates uploaded rows against stored lines and produces sorted output.
    """

    def __init__(self, *, delimiter: str = DEFAULT_DELIMITER) -> None:
        self._delimiter = delimiter

    def merge(
        self,
        *,
        existing_content: str,
        new_rows: Sequence[ParsedRow],
        upload_header: str,
        base_version_token: str | None = None,
    ) -> MergeResult:
        """Combine stored content with new rows.

        Args:
            existing_content: Current blob text; empty when the store has none.
            new_rows: Parsed rows from the upload, in upload order.
            upload_header: Header line of the upload, canonical when the
                store is empty.
            base_version_token: Version token the content was read at.

        Returns:
            MergeResult with header-first, date-ordered content ending in a
            newline, plus new/duplicate/total counts.

        Raises:
            MergeLogicError: If a new row has no start date.
        """

        existing_lines = [line.strip() for line in split_lines(existing_content)]
        if existing_lines:
            header = existing_lines[0]
            existing_data = [line for line in existing_lines[1:] if line]
        else:
            header = upload_header.strip()
            existing_data = []

        existing_fingerprints = {
            fingerprint_fields(split_csv_line(line, self._delimiter)) for line in existing_data
        }

        accepted: list[str] = []
        duplicates = 0
        for row in new_rows:
            if not row.started_date:
                raise MergeLogicError(
                    f"Parsed row has no start date: {row.source_line[:200]!r}"
                )
            if fingerprint(row) in existing_fingerprints:
                duplicates += 1
                continue
            accepted.append(row.source_line)

        combined = existing_data + accepted
        combined.sort(key=self._started_date_key)

        merged_content = "\n".join([header, *combined]) + "\n"

        logger.info(
            "Merged statement rows existing=%s new=%s duplicates=%s total=%s",
            len(existing_data),
            len(accepted),
            duplicates,
            len(combined),
        )

        return MergeResult(
            merged_content=merged_content,
            new_row_count=len(accepted),
            total_row_count=len(combined),
            base_version_token=base_version_token,
            duplicate_row_count=duplicates,
            header=header,
        )

    def _started_date_key(self, line: str) -> str:
        fields = split_csv_line(line, self._delimiter)
        if len(fields) <= STARTED_DATE_INDEX:
            return ""
        return fields[STARTED_DATE_INDEX]
