"""
Repository for workflow instance lifecycle persistence and step checkpoints.

Methods mutate the session only; callers own commit boundaries.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, or_, select, update
from sqlalchemy.orm import Session

from db.base import utcnow
from db.models.workflow_instance import (
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStep,
)


class WorkflowInstanceRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def create_instance(
        self,
        *,
        workflow_name: str,
        dataset_path: str,
        filename: str,
        row_count_hint: int,
        step_names: Sequence[str],
        request_payload: dict[str, Any] | None = None,
    ) -> WorkflowInstance:
        instance = WorkflowInstance(
            workflow_name=workflow_name,
            dataset_path=dataset_path,
            filename=filename,
            row_count_hint=row_count_hint,
            status=WorkflowStatus.QUEUED,
            current_step_index=0,
            request_payload=request_payload,
        )
        instance.steps = [
            WorkflowStep(step_index=index, step_name=name, status=StepStatus.PENDING, attempts=0)
            for index, name in enumerate(step_names)
        ]
        self._session.add(instance)
        self._session.flush()
        self._session.refresh(instance)
        return instance

    def get_instance(self, instance_id: uuid.UUID) -> WorkflowInstance | None:
        return self._session.get(WorkflowInstance, instance_id)

    def list_instances(
        self,
        *,
        limit: int = 100,
        status: str | None = None,
    ) -> list[WorkflowInstance]:
        stmt: Select[tuple[WorkflowInstance]] = select(WorkflowInstance)
        if status:
            stmt = stmt.where(WorkflowInstance.status == status)
        stmt = stmt.order_by(WorkflowInstance.created_at.desc()).limit(max(1, limit))
        return list(self._session.scalars(stmt).all())

    def list_resumable_ids(self, *, stale_before: datetime, limit: int = 100) -> list[uuid.UUID]:
        stmt = (
            select(WorkflowInstance.id)
            .where(self._claimable_clause(stale_before))
            .order_by(WorkflowInstance.created_at.asc())
            .limit(max(1, limit))
        )
        return list(self._session.scalars(stmt).all())

    def claim_instance(self, *, instance_id: uuid.UUID, stale_before: datetime) -> bool:
        """
        Move a queued or stale running instance to running.

        The conditional UPDATE is the mutual-exclusion point: at most one
        caller observes rowcount == 1 for a live instance.
        """

        now = utcnow()
        result = self._session.execute(
            update(WorkflowInstance)
            .where(WorkflowInstance.id == instance_id)
            .where(self._claimable_clause(stale_before))
            .values(status=WorkflowStatus.RUNNING, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        instance = self.get_instance(instance_id)
        if instance is not None:
            self._session.refresh(instance)
            if instance.started_at is None:
                instance.started_at = now
        return True

    def get_steps(self, instance_id: uuid.UUID) -> list[WorkflowStep]:
        stmt = (
            select(WorkflowStep)
            .where(WorkflowStep.instance_id == instance_id)
            .order_by(WorkflowStep.step_index.asc())
        )
        return list(self._session.scalars(stmt).all())

    def get_step(self, *, instance_id: uuid.UUID, step_name: str) -> WorkflowStep | None:
        stmt = select(WorkflowStep).where(
            WorkflowStep.instance_id == instance_id,
            WorkflowStep.step_name == step_name,
        )
        return self._session.scalars(stmt).first()

    def mark_step_attempt(
        self,
        *,
        instance_id: uuid.UUID,
        step_name: str,
        attempt: int,
    ) -> WorkflowStep | None:
        step = self.get_step(instance_id=instance_id, step_name=step_name)
        if step is None:
            return None
        now = utcnow()
        step.status = StepStatus.RUNNING
        step.attempts = attempt
        if step.started_at is None:
            step.started_at = now
        self._touch(instance_id, now)
        return step

    def record_step_failure(
        self,
        *,
        instance_id: uuid.UUID,
        step_name: str,
        error_message: str,
        final: bool,
    ) -> WorkflowStep | None:
        step = self.get_step(instance_id=instance_id, step_name=step_name)
        if step is None:
            return None
        now = utcnow()
        step.last_error = error_message
        if final:
            step.status = StepStatus.ERRORED
            step.completed_at = now
        self._touch(instance_id, now)
        return step

    def checkpoint_step(
        self,
        *,
        instance_id: uuid.UUID,
        step_name: str,
        output: dict[str, Any],
    ) -> WorkflowStep | None:
        step = self.get_step(instance_id=instance_id, step_name=step_name)
        instance = self.get_instance(instance_id)
        if step is None or instance is None:
            return None
        now = utcnow()
        step.status = StepStatus.COMPLETE
        step.output = output
        step.completed_at = now
        step.last_error = None
        instance.current_step_index = step.step_index + 1
        instance.updated_at = now
        return step

    def rewind_to(self, *, instance_id: uuid.UUID, step_index: int) -> WorkflowInstance | None:
        instance = self.get_instance(instance_id)
        if instance is None:
            return None
        for step in self.get_steps(instance_id):
            if step.step_index < step_index:
                continue
            step.status = StepStatus.PENDING
            step.output = None
            step.attempts = 0
            step.started_at = None
            step.completed_at = None
        instance.current_step_index = step_index
        instance.rewind_count = instance.rewind_count + 1
        instance.updated_at = utcnow()
        return instance

    def mark_completed(
        self,
        *,
        instance_id: uuid.UUID,
        output: dict[str, Any] | None = None,
    ) -> WorkflowInstance | None:
        instance = self.get_instance(instance_id)
        if instance is None:
            return None
        instance.status = WorkflowStatus.COMPLETE
        instance.completed_at = utcnow()
        instance.output = output
        instance.error_code = None
        instance.error_message = None
        return instance

    def mark_errored(
        self,
        *,
        instance_id: uuid.UUID,
        error_message: str,
        error_code: str | None = None,
    ) -> WorkflowInstance | None:
        instance = self.get_instance(instance_id)
        if instance is None:
            return None
        instance.status = WorkflowStatus.ERRORED
        instance.completed_at = utcnow()
        instance.error_code = error_code
        instance.error_message = error_message
        return instance

    def _touch(self, instance_id: uuid.UUID, now: datetime) -> None:
        instance = self.get_instance(instance_id)
        if instance is not None:
            instance.updated_at = now

    @staticmethod
    def _claimable_clause(stale_before: datetime):
        return or_(
            WorkflowInstance.status == WorkflowStatus.QUEUED,
            and_(
                WorkflowInstance.status == WorkflowStatus.RUNNING,
                WorkflowInstance.updated_at < stale_before,
            ),
        )
