"""
app/schemas package marker.
"""

from app.schemas.ingestion import (
    HealthResponse,
    StatementUploadAcceptedResponse,
    UploadHistoryItem,
    UploadHistoryResponse,
    WorkflowStatusResponse,
)

__all__ = [
    "HealthResponse",
    "StatementUploadAcceptedResponse",
    "UploadHistoryItem",
    "UploadHistoryResponse",
    "WorkflowStatusResponse",
]
