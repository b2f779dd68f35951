"""
Orchestrator service for statement upload dispatch and workflow lifecycle tracking.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Protocol

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session, sessionmaker

from app.config import PipelineSettings, get_pipeline_settings, get_remote_store_settings
from app.connectors.base import RemoteStore
from app.connectors.remote_store import get_remote_store
from app.domain.errors import EmptyUploadError, WorkflowInstanceNotFoundError
from app.domain.statement import IngestionRequest
from app.parsing.statement_parser import count_data_rows
from app.services.ingestion_pipeline import StatementIngestionPipeline
from app.services.step_engine import DurableStepEngine
from db.models.workflow_instance import WorkflowInstance
from db.repositories.workflow_instance_repository import WorkflowInstanceRepository

logger = logging.getLogger(__name__)


class IngestionTaskExecutor(Protocol):
    def submit(self, task: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        ...


class FastAPIBackgroundTaskExecutor:
    def __init__(self, background_tasks: BackgroundTasks) -> None:
        self._background_tasks = background_tasks

    def submit(self, task: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._background_tasks.add_task(task, *args, **kwargs)


class IngestionOrchestratorService:
    """
    Coordinates instance creation, background execution, status queries and
    recovery of stalled instances.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session] | Callable[[], Session] | None = None,
        remote_store: RemoteStore | None = None,
        pipeline_settings: PipelineSettings | None = None,
        default_dataset_path: str | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        if session_factory is None:
            from db.session import SessionLocal

            self._session_factory = SessionLocal
        else:
            self._session_factory = session_factory

        self._settings = pipeline_settings or get_pipeline_settings()
        self._default_dataset_path = default_dataset_path or get_remote_store_settings().path

        pipeline = StatementIngestionPipeline(
            remote_store=remote_store or get_remote_store(),
            settings=self._settings,
            default_dataset_path=self._default_dataset_path,
        )
        engine_kwargs: dict[str, Any] = {}
        if sleep is not None:
            engine_kwargs["sleep"] = sleep
        self._engine = DurableStepEngine(
            workflow=pipeline.build_workflow(),
            session_factory=self._session_factory,
            stale_after_seconds=self._settings.stale_after_seconds,
            **engine_kwargs,
        )

    @property
    def engine(self) -> DurableStepEngine:
        return self._engine

    def trigger_statement_ingestion(
        self,
        *,
        db: Session,
        executor: IngestionTaskExecutor,
        raw_text: str,
        filename: str | None = None,
        dataset_path: str | None = None,
    ) -> WorkflowInstance:
        row_count = count_data_rows(raw_text)
        if row_count == 0:
            raise EmptyUploadError("CSV is empty")

        request = IngestionRequest(
            raw_text=raw_text,
            row_count_hint=row_count,
            filename=(filename or "").strip() or "upload.csv",
            dataset_path=(dataset_path or "").strip() or self._default_dataset_path,
        )

        repository = WorkflowInstanceRepository(db)
        with db.begin():
            instance = repository.create_instance(
                workflow_name=self._engine.workflow.name,
                dataset_path=request.dataset_path,
                filename=request.filename,
                row_count_hint=row_count,
                step_names=self._engine.workflow.step_names,
                request_payload=request.to_payload(),
            )

        logger.info(
            "Accepted statement upload id=%s filename=%s rows=%s path=%s",
            instance.id,
            request.filename,
            row_count,
            request.dataset_path,
        )

        try:
            executor.submit(self.run_instance, instance.id)
        except Exception:
            with db.begin():
                repository.mark_errored(
                    instance_id=instance.id,
                    error_message="Failed to schedule statement ingestion workflow.",
                    error_code="scheduling_failed",
                )
            raise

        return instance

    def run_instance(self, instance_id: uuid.UUID) -> str | None:
        try:
            return self._engine.run(instance_id)
        except Exception:
            logger.exception("Statement ingestion run aborted id=%s", instance_id)
            return None

    def get_instance_status(self, *, db: Session, instance_id: uuid.UUID) -> WorkflowInstance:
        repository = WorkflowInstanceRepository(db)
        instance = repository.get_instance(instance_id)
        if instance is None:
            raise WorkflowInstanceNotFoundError(f"Workflow instance not found: {instance_id}")
        return instance

    def list_instances(
        self,
        *,
        db: Session,
        limit: int = 100,
        status: str | None = None,
    ) -> list[WorkflowInstance]:
        repository = WorkflowInstanceRepository(db)
        return repository.list_instances(limit=limit, status=status)

    def resume_stalled_instances(self, *, limit: int = 100) -> list[uuid.UUID]:
        """
        Drive every queued or stale running instance to a terminal state.

        Returns the ids this sweep actually claimed.
        """

        with self._session_factory() as db:
            instance_ids = WorkflowInstanceRepository(db).list_resumable_ids(
                stale_before=self._engine.stale_before(),
                limit=limit,
            )

        if not instance_ids:
            return []

        logger.info("Resuming stalled statement ingestions count=%s", len(instance_ids))
        resumed: list[uuid.UUID] = []
        for instance_id in instance_ids:
            if self.run_instance(instance_id) is not None:
                resumed.append(instance_id)
        return resumed


@lru_cache(maxsize=1)
def get_ingestion_orchestrator_service() -> IngestionOrchestratorService:
    return IngestionOrchestratorService()
