"""
Structured logging helpers for workflow lifecycle events.

Each event is one compact JSON object on a single line, so log shippers can
index ``event``, ``instance_id`` and ``step`` without a custom parser.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

_MAX_FIELD_LENGTH = 1000


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Emit one structured log line. Fields whose value is None are omitted.
    """

    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    payload.update({key: value for key, value in fields.items() if value is not None})
    logger.log(
        level,
        json.dumps(payload, default=_json_default, sort_keys=True, separators=(",", ":")),
    )


def _json_default(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"[:_MAX_FIELD_LENGTH]
    return str(value)[:_MAX_FIELD_LENGTH]
