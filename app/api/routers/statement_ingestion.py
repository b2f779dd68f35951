"""
Statement upload, workflow status and upload history endpoints.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.api.dependencies import get_csv_body
from app.domain.errors import EmptyUploadError, WorkflowInstanceNotFoundError
from app.schemas.ingestion import (
    StatementUploadAcceptedResponse,
    UploadHistoryItem,
    UploadHistoryResponse,
    WorkflowStatusResponse,
)
from app.services.ingestion_orchestrator_service import (
    FastAPIBackgroundTaskExecutor,
    IngestionOrchestratorService,
    get_ingestion_orchestrator_service,
)
from db.models.workflow_instance import WorkflowInstance
from db.session import get_db

router = APIRouter(tags=["statement-ingestion"])


@router.post(
    "/upload",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=StatementUploadAcceptedResponse,
)
def upload_statement(
    background_tasks: BackgroundTasks,
    raw_text: str = Depends(get_csv_body),
    filename: str | None = Query(default=None, description="Original upload file name"),
    dataset_path: str | None = Query(default=None, description="Optional remote dataset path override"),
    db: Session = Depends(get_db),
    orchestrator: IngestionOrchestratorService = Depends(get_ingestion_orchestrator_service),
) -> StatementUploadAcceptedResponse:
    try:
        instance = orchestrator.trigger_statement_ingestion(
            db=db,
            executor=FastAPIBackgroundTaskExecutor(background_tasks),
            raw_text=raw_text,
            filename=filename,
            dataset_path=dataset_path,
        )
    except EmptyUploadError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return StatementUploadAcceptedResponse(
        instance_id=instance.id,
        row_count=instance.row_count_hint,
        status=instance.status,
    )


@router.get("/status/{instance_id}", response_model=WorkflowStatusResponse)
def get_workflow_status(
    instance_id: UUID,
    db: Session = Depends(get_db),
    orchestrator: IngestionOrchestratorService = Depends(get_ingestion_orchestrator_service),
) -> WorkflowStatusResponse:
    try:
        instance = orchestrator.get_instance_status(db=db, instance_id=instance_id)
    except WorkflowInstanceNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return WorkflowStatusResponse(
        instance_id=instance.id,
        status=instance.status,
        output=instance.output,
        error=instance.error_message,
        error_code=instance.error_code,
        steps={step.step_name: step.status for step in instance.steps},
    )


@router.get("/uploads", response_model=UploadHistoryResponse)
def list_uploads(
    status_filter: str | None = Query(default=None, alias="status", description="Optional status filter"),
    limit: int = Query(default=50, ge=1, le=500, description="Max uploads returned"),
    db: Session = Depends(get_db),
    orchestrator: IngestionOrchestratorService = Depends(get_ingestion_orchestrator_service),
) -> UploadHistoryResponse:
    instances = orchestrator.list_instances(db=db, limit=limit, status=status_filter)
    return UploadHistoryResponse(uploads=[_to_history_item(instance) for instance in instances])


def _to_history_item(instance: WorkflowInstance) -> UploadHistoryItem:
    return UploadHistoryItem(
        instance_id=instance.id,
        filename=instance.filename,
        dataset_path=instance.dataset_path,
        row_count=instance.row_count_hint,
        status=instance.status,
        created_at=instance.created_at,
        completed_at=instance.completed_at,
        output=instance.output,
        error=instance.error_message,
    )
