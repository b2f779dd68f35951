"""
app/domain/statement.py

Domain models used by the statement ingestion pipeline.

Step outputs are checkpointed as JSON, so every model that crosses a step
boundary exposes ``to_payload`` / ``from_payload``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

TYPE_INDEX = 0
PRODUCT_INDEX = 1
STARTED_DATE_INDEX = 2
COMPLETED_DATE_INDEX = 3
DESCRIPTION_INDEX = 4
AMOUNT_INDEX = 5
FEE_INDEX = 6
CURRENCY_INDEX = 7
STATE_INDEX = 8
BALANCE_INDEX = 9


@dataclass(frozen=True)
class IngestionRequest:
    """
    One submitted upload, immutable for the lifetime of its workflow instance.
    """

    raw_text: str
    row_count_hint: int
    filename: str = "upload.csv"
    dataset_path: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "raw_text": self.raw_text,
            "row_count_hint": self.row_count_hint,
            "filename": self.filename,
            "dataset_path": self.dataset_path,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> IngestionRequest:
        return cls(
            raw_text=payload.get("raw_text", ""),
            row_count_hint=int(payload.get("row_count_hint", 0)),
            filename=payload.get("filename") or "upload.csv",
            dataset_path=payload.get("dataset_path"),
        )


@dataclass(frozen=True)
class ParsedRow:
    """
    One well-formed statement line.

    ``amount_text`` keeps the amount exactly as it appeared in the source so
    identity never depends on float formatting.
    """

    type: str
    product: str
    started_date: str
    completed_date: str | None
    description: str
    amount: Decimal
    fee: Decimal
    currency: str
    state: str
    balance: Decimal | None
    amount_text: str
    source_line: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "product": self.product,
            "started_date": self.started_date,
            "completed_date": self.completed_date,
            "description": self.description,
            "amount": str(self.amount),
            "fee": str(self.fee),
            "currency": self.currency,
            "state": self.state,
            "balance": None if self.balance is None else str(self.balance),
            "amount_text": self.amount_text,
            "source_line": self.source_line,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ParsedRow:
        balance = payload.get("balance")
        return cls(
            type=payload["type"],
            product=payload["product"],
            started_date=payload["started_date"],
            completed_date=payload.get("completed_date"),
            description=payload["description"],
            amount=Decimal(payload["amount"]),
            fee=Decimal(payload["fee"]),
            currency=payload["currency"],
            state=payload["state"],
            balance=None if balance is None else Decimal(balance),
            amount_text=payload["amount_text"],
            source_line=payload["source_line"],
        )


@dataclass(frozen=True)
class ParsedStatement:
    """
    Output of the Validate step: header plus well-formed rows.
    """

    header: str
    rows: list[ParsedRow] = field(default_factory=list)
    skipped_line_count: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "header": self.header,
            "rows": [row.to_payload() for row in self.rows],
            "skipped_line_count": self.skipped_line_count,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ParsedStatement:
        return cls(
            header=payload["header"],
            rows=[ParsedRow.from_payload(row) for row in payload.get("rows", [])],
            skipped_line_count=int(payload.get("skipped_line_count", 0)),
        )


@dataclass(frozen=True)
class StoreSnapshot:
    """
    Remote blob content at one read. ``version_token`` is None when absent.
    """

    content: str = ""
    version_token: str | None = None

    @property
    def exists(self) -> bool:
        return self.version_token is not None

    def to_payload(self) -> dict[str, Any]:
        return {"content": self.content, "version_token": self.version_token}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StoreSnapshot:
        return cls(
            content=payload.get("content") or "",
            version_token=payload.get("version_token"),
        )


@dataclass(frozen=True)
class MergeResult:
    """
    Merged dataset ready for the Commit step.
    """

    merged_content: str
    new_row_count: int
    total_row_count: int
    base_version_token: str | None
    duplicate_row_count: int = 0
    header: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "merged_content": self.merged_content,
            "new_row_count": self.new_row_count,
            "total_row_count": self.total_row_count,
            "base_version_token": self.base_version_token,
            "duplicate_row_count": self.duplicate_row_count,
            "header": self.header,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> MergeResult:
        return cls(
            merged_content=payload["merged_content"],
            new_row_count=int(payload["new_row_count"]),
            total_row_count=int(payload["total_row_count"]),
            base_version_token=payload.get("base_version_token"),
            duplicate_row_count=int(payload.get("duplicate_row_count", 0)),
            header=payload.get("header", ""),
        )
