"""
Schemas for statement upload trigger, status and history endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class StatementUploadAcceptedResponse(BaseModel):
    instance_id: UUID
    row_count: int
    status: str


class WorkflowStatusResponse(BaseModel):
    instance_id: UUID
    status: str
    output: dict[str, Any] | None = None
    error: str | None = None
    error_code: str | None = None
    steps: dict[str, str] = Field(default_factory=dict)


class UploadHistoryItem(BaseModel):
    instance_id: UUID
    filename: str
    dataset_path: str
    row_count: int
    status: str
    created_at: datetime
    completed_at: datetime | None = None
    output: dict[str, Any] | None = None
    error: str | None = None


class UploadHistoryResponse(BaseModel):
    uploads: list[UploadHistoryItem] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    store_backend: str
