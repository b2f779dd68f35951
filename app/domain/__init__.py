"""
app/domain package marker.
"""

from app.domain.errors import (
    EmptyUploadError,
    MalformedInputError,
    MergeLogicError,
    PipelineError,
    StepRetryExhaustedError,
    StoreConflictError,
    TransientStoreError,
    WorkflowInstanceNotFoundError,
)
from app.domain.statement import (
    IngestionRequest,
    MergeResult,
    ParsedRow,
    ParsedStatement,
    StoreSnapshot,
)

__all__ = [
    "EmptyUploadError",
    "IngestionRequest",
    "MalformedInputError",
    "MergeLogicError",
    "MergeResult",
    "ParsedRow",
    "ParsedStatement",
    "PipelineError",
    "StepRetryExhaustedError",
    "StoreConflictError",
    "StoreSnapshot",
    "TransientStoreError",
    "WorkflowInstanceNotFoundError",
]
