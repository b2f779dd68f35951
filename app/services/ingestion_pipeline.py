"""
app/services/ingestion_pipeline.py

Statement ingestion workflow: the five durable steps and their wiring.

    1. validate-csv        parse upload, reject malformed headers (no retry)
    2. fetch-existing      read stored statement + version token (retried)
    3. deduplicate-merge   pure merge of stored and new rows (no retry)
    4. commit-to-store     conditional write at the fetched version (retried;
                           conflicts are not retried unless restart is enabled)
    5. confirm-propagation acknowledge that downstream consumers can refresh

Every handler reads its inputs from checkpointed outputs of earlier steps
and returns a JSON-serialisable dict.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from app.config import PipelineSettings, StepRetrySettings
from app.connectors.base import RemoteStore, build_commit_message
from app.domain.errors import StoreConflictError, TransientStoreError
from app.domain.statement import IngestionRequest, MergeResult, ParsedStatement, StoreSnapshot
from app.parsing.statement_parser import parse_statement
from app.services.merge_service import MergeService
from app.services.step_engine import (
    RetryPolicy,
    RewindPolicy,
    StepContext,
    StepDefinition,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "statement_ingestion"

VALIDATE_STEP = "validate-csv"
FETCH_STEP = "fetch-existing"
MERGE_STEP = "deduplicate-merge"
COMMIT_STEP = "commit-to-store"
CONFIRM_STEP = "confirm-propagation"

STEP_NAMES: tuple[str, ...] = (VALIDATE_STEP, FETCH_STEP, MERGE_STEP, COMMIT_STEP, CONFIRM_STEP)


class StatementIngestionPipeline:
    """
    Step handlers for merging one uploaded statement into the remote store.
    """

    def __init__(
        self,
        *,
        remote_store: RemoteStore,
        settings: PipelineSettings,
        default_dataset_path: str,
        merge_service: MergeService | None = None,
    ) -> None:
        self._store = remote_store
        self._settings = settings
        self._default_dataset_path = default_dataset_path
        self._merge_service = merge_service or MergeService()

    def build_workflow(self) -> WorkflowDefinition:
        commit_rewind: RewindPolicy | None = None
        if self._settings.restart_on_conflict and self._settings.max_conflict_restarts > 0:
            commit_rewind = RewindPolicy(
                on=(StoreConflictError,),
                to_step=FETCH_STEP,
                max_rewinds=self._settings.max_conflict_restarts,
            )

        return WorkflowDefinition(
            name=WORKFLOW_NAME,
            steps=(
                StepDefinition(name=VALIDATE_STEP, handler=self.validate),
                StepDefinition(
                    name=FETCH_STEP,
                    handler=self.fetch_existing,
                    retry=_retry_policy(self._settings.fetch_retry),
                ),
                StepDefinition(name=MERGE_STEP, handler=self.deduplicate_merge),
                StepDefinition(
                    name=COMMIT_STEP,
                    handler=self.commit,
                    retry=_retry_policy(self._settings.commit_retry),
                    rewind=commit_rewind,
                ),
                StepDefinition(name=CONFIRM_STEP, handler=self.confirm_propagation),
            ),
            finalize=summarize_outputs,
        )

    def validate(self, context: StepContext) -> dict[str, Any]:
        request = IngestionRequest.from_payload(dict(context.request_payload))
        statement = parse_statement(
            request.raw_text,
            min_field_count=self._settings.min_field_count,
        )
        logger.info(
            "Validated statement upload instance=%s filename=%s rows=%s skipped=%s",
            context.instance_id,
            request.filename,
            len(statement.rows),
            statement.skipped_line_count,
        )
        return statement.to_payload()

    def fetch_existing(self, context: StepContext) -> dict[str, Any]:
        path = self._dataset_path(context)
        snapshot = self._store.read(path)
        logger.info(
            "Fetched stored statement instance=%s path=%s exists=%s attempt=%s",
            context.instance_id,
            path,
            snapshot.exists,
            context.attempt,
        )
        return {**snapshot.to_payload(), "path": path}

    def deduplicate_merge(self, context: StepContext) -> dict[str, Any]:
        statement = ParsedStatement.from_payload(dict(context.output_of(VALIDATE_STEP)))
        snapshot = StoreSnapshot.from_payload(dict(context.output_of(FETCH_STEP)))
        result = self._merge_service.merge(
            existing_content=snapshot.content,
            new_rows=statement.rows,
            upload_header=statement.header,
            base_version_token=snapshot.version_token,
        )
        return result.to_payload()

    def commit(self, context: StepContext) -> dict[str, Any]:
        path = self._dataset_path(context)
        merged = MergeResult.from_payload(dict(context.output_of(MERGE_STEP)))
        try:
            version_token = self._store.write(
                path,
                merged.merged_content,
                expected_version_token=merged.base_version_token,
                message=build_commit_message(
                    new_row_count=merged.new_row_count,
                    total_row_count=merged.total_row_count,
                ),
            )
        except StoreConflictError:
            # An earlier attempt of this instance may have landed before its
            # acknowledgement was lost.
            current = self._current_snapshot(path)
            if current is None or current.content != merged.merged_content:
                raise
            logger.warning(
                "Commit conflict matches merged content, treating as committed instance=%s path=%s version=%s",
                context.instance_id,
                path,
                current.version_token,
            )
            return {
                "committed": True,
                "path": path,
                "version_token": current.version_token,
                "already_applied": True,
            }
        logger.info(
            "Committed merged statement instance=%s path=%s version=%s new=%s total=%s",
            context.instance_id,
            path,
            version_token,
            merged.new_row_count,
            merged.total_row_count,
        )
        return {"committed": True, "path": path, "version_token": version_token}

    def confirm_propagation(self, context: StepContext) -> dict[str, Any]:
        commit_output = context.output_of(COMMIT_STEP)
        return {
            "triggered": True,
            "version_token": commit_output.get("version_token"),
            "note": "Downstream consumers refresh from the committed revision.",
        }

    def _current_snapshot(self, path: str) -> StoreSnapshot | None:
        try:
            return self._store.read(path)
        except TransientStoreError as exc:
            logger.warning("Could not re-read store after commit conflict path=%s error=%s", path, exc)
            return None

    def _dataset_path(self, context: StepContext) -> str:
        return context.request_payload.get("dataset_path") or self._default_dataset_path


def summarize_outputs(outputs: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    merged = outputs[MERGE_STEP]
    return {
        "newRowCount": int(merged["new_row_count"]),
        "totalRowCount": int(merged["total_row_count"]),
        "duplicateRowCount": int(merged.get("duplicate_row_count", 0)),
    }


def _retry_policy(settings: StepRetrySettings) -> RetryPolicy:
    return RetryPolicy(
        limit=settings.limit,
        delay_seconds=settings.delay_seconds,
        backoff=settings.backoff,
    )
