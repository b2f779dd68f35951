"""
app/services/step_engine.py

Durable step engine.

A workflow is an ordered list of steps. Each step's output is committed to
the database before the next step starts, so a restarted process resumes at
the first incomplete step and feeds it the checkpointed outputs of the
steps before it.

Per-step retry:
    Attempting(1) -> Succeeded
    Attempting(n) -> (transient failure, backoff) -> Attempting(n + 1)
    Attempting(limit) -> (failure) -> instance Errored

Errors that are ``PipelineError`` instances with ``retryable = False`` end
the instance immediately. Any other exception is retried within the step's
budget. A resumed step starts a fresh budget.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.domain.errors import PipelineError, StepRetryExhaustedError
from app.logging_utils import log_event
from db.base import utcnow
from db.models.workflow_instance import StepStatus, WorkflowStatus
from db.repositories.workflow_instance_repository import WorkflowInstanceRepository

logger = logging.getLogger(__name__)

BACKOFF_CONSTANT = "constant"
BACKOFF_LINEAR = "linear"
_MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget and delay schedule for one step.

    ``limit`` counts total attempts. With linear backoff the wait after the
    n-th failed attempt is ``delay_seconds * n``.
    """

    limit: int = 1
    delay_seconds: float = 0.0
    backoff: str = BACKOFF_CONSTANT

    def delay_for(self, failed_attempt: int) -> float:
        if self.backoff == BACKOFF_LINEAR:
            return self.delay_seconds * failed_attempt
        return self.delay_seconds


@dataclass(frozen=True)
class RewindPolicy:
    """
    Restart the instance from an earlier step when ``on`` is raised.
    """

    on: tuple[type[BaseException], ...]
    to_step: str
    max_rewinds: int = 1


@dataclass(frozen=True)
class StepContext:
    instance_id: uuid.UUID
    step_name: str
    attempt: int
    request_payload: Mapping[str, Any]
    outputs: Mapping[str, Mapping[str, Any]]

    def output_of(self, step_name: str) -> Mapping[str, Any]:
        try:
            return self.outputs[step_name]
        except KeyError:
            raise RuntimeError(
                f"Step '{self.step_name}' requires output of '{step_name}', which is not checkpointed."
            ) from None


StepHandler = Callable[[StepContext], dict[str, Any]]


@dataclass(frozen=True)
class StepDefinition:
    name: str
    handler: StepHandler
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rewind: RewindPolicy | None = None


@dataclass(frozen=True)
class WorkflowDefinition:
    """
    Named, ordered step list plus a reducer for the instance's final output.
    """

    name: str
    steps: tuple[StepDefinition, ...]
    finalize: Callable[[Mapping[str, Mapping[str, Any]]], dict[str, Any]]

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    def index_of(self, step_name: str) -> int:
        for index, step in enumerate(self.steps):
            if step.name == step_name:
                return index
        raise KeyError(f"Unknown step '{step_name}' in workflow '{self.name}'.")


class _StepFailed(Exception):
    def __init__(self, step_name: str, error: BaseException) -> None:
        super().__init__(str(error))
        self.step_name = step_name
        self.error = error


class _RewindRequested(Exception):
    def __init__(self, to_step: str, error: BaseException) -> None:
        super().__init__(str(error))
        self.to_step = to_step
        self.error = error


class DurableStepEngine:
    """
    Drives one workflow instance at a time through its steps.

    Instances are independent: callers run each ``run`` call on its own
    worker thread, and the engine shares no mutable state between them
    beyond the database.
    """

    def __init__(
        self,
        *,
        workflow: WorkflowDefinition,
        session_factory: sessionmaker[Session] | Callable[[], Session],
        stale_after_seconds: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._workflow = workflow
        self._session_factory = session_factory
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._sleep = sleep

    @property
    def workflow(self) -> WorkflowDefinition:
        return self._workflow

    def stale_before(self) -> datetime:
        return utcnow() - self._stale_after

    def run(self, instance_id: uuid.UUID) -> str | None:
        """
        Claim and drive an instance to a terminal state.

        Returns the terminal status, or None when the instance could not be
        claimed (unknown, terminal, or actively running elsewhere).
        """

        with self._session_factory() as db:
            repository = WorkflowInstanceRepository(db)
            try:
                claimed = repository.claim_instance(
                    instance_id=instance_id,
                    stale_before=self.stale_before(),
                )
                db.commit()
            except Exception:
                db.rollback()
                logger.exception("Failed to claim workflow instance id=%s", instance_id)
                raise

            if not claimed:
                log_event(logger, logging.INFO, "instance_not_claimed", instance_id=instance_id)
                return None

            log_event(
                logger,
                logging.INFO,
                "instance_claimed",
                instance_id=instance_id,
                workflow=self._workflow.name,
            )
            try:
                return self._drive(db, repository, instance_id)
            except Exception as exc:
                self._mark_errored(db=db, instance_id=instance_id, step_name=None, exc=exc)
                return WorkflowStatus.ERRORED

    def _drive(
        self,
        db: Session,
        repository: WorkflowInstanceRepository,
        instance_id: uuid.UUID,
    ) -> str:
        while True:
            instance = repository.get_instance(instance_id)
            if instance is None:
                raise RuntimeError(f"Workflow instance not found: {instance_id}")

            outputs = {
                step.step_name: step.output or {}
                for step in repository.get_steps(instance_id)
                if step.status == StepStatus.COMPLETE
            }
            index = instance.current_step_index

            if index >= len(self._workflow.steps):
                final_output = self._workflow.finalize(outputs)
                repository.mark_completed(instance_id=instance_id, output=final_output)
                db.commit()
                log_event(
                    logger,
                    logging.INFO,
                    "instance_completed",
                    instance_id=instance_id,
                    output=final_output,
                )
                return WorkflowStatus.COMPLETE

            step = self._workflow.steps[index]
            try:
                output = self._run_step(
                    db=db,
                    repository=repository,
                    instance_id=instance_id,
                    step=step,
                    request_payload=instance.request_payload or {},
                    outputs=outputs,
                    rewind_count=instance.rewind_count,
                )
            except _RewindRequested as rewind:
                target = self._workflow.index_of(rewind.to_step)
                repository.rewind_to(instance_id=instance_id, step_index=target)
                db.commit()
                log_event(
                    logger,
                    logging.WARNING,
                    "instance_rewound",
                    instance_id=instance_id,
                    from_step=step.name,
                    to_step=rewind.to_step,
                    error=_describe(rewind.error),
                )
                continue
            except _StepFailed as failure:
                self._mark_errored(
                    db=db,
                    instance_id=instance_id,
                    step_name=failure.step_name,
                    exc=failure.error,
                )
                return WorkflowStatus.ERRORED

            repository.checkpoint_step(instance_id=instance_id, step_name=step.name, output=output)
            db.commit()
            log_event(
                logger,
                logging.INFO,
                "step_checkpointed",
                instance_id=instance_id,
                step=step.name,
                step_index=index,
            )

    def _run_step(
        self,
        *,
        db: Session,
        repository: WorkflowInstanceRepository,
        instance_id: uuid.UUID,
        step: StepDefinition,
        request_payload: Mapping[str, Any],
        outputs: Mapping[str, Mapping[str, Any]],
        rewind_count: int,
    ) -> dict[str, Any]:
        limit = max(1, step.retry.limit)

        for attempt in range(1, limit + 1):
            repository.mark_step_attempt(instance_id=instance_id, step_name=step.name, attempt=attempt)
            db.commit()
            log_event(
                logger,
                logging.INFO,
                "step_started",
                instance_id=instance_id,
                step=step.name,
                attempt=attempt,
                limit=limit,
            )

            context = StepContext(
                instance_id=instance_id,
                step_name=step.name,
                attempt=attempt,
                request_payload=request_payload,
                outputs=outputs,
            )
            try:
                return step.handler(context)
            except Exception as exc:
                if (
                    step.rewind is not None
                    and isinstance(exc, step.rewind.on)
                    and rewind_count < step.rewind.max_rewinds
                ):
                    repository.record_step_failure(
                        instance_id=instance_id,
                        step_name=step.name,
                        error_message=_describe(exc),
                        final=False,
                    )
                    db.commit()
                    raise _RewindRequested(step.rewind.to_step, exc) from exc

                retryable = not (isinstance(exc, PipelineError) and not exc.retryable)
                exhausted = attempt >= limit
                repository.record_step_failure(
                    instance_id=instance_id,
                    step_name=step.name,
                    error_message=_describe(exc),
                    final=not retryable or exhausted,
                )
                db.commit()
                log_event(
                    logger,
                    logging.WARNING,
                    "step_attempt_failed",
                    instance_id=instance_id,
                    step=step.name,
                    attempt=attempt,
                    limit=limit,
                    retryable=retryable,
                    error=_describe(exc),
                )

                if not retryable:
                    raise _StepFailed(step.name, exc) from exc
                if exhausted:
                    if limit == 1:
                        raise _StepFailed(step.name, exc) from exc
                    raise _StepFailed(
                        step.name,
                        StepRetryExhaustedError(step_name=step.name, attempts=attempt, last_error=exc),
                    ) from exc

                delay = step.retry.delay_for(attempt)
                log_event(
                    logger,
                    logging.INFO,
                    "step_retry_scheduled",
                    instance_id=instance_id,
                    step=step.name,
                    next_attempt=attempt + 1,
                    delay_seconds=delay,
                )
                if delay > 0:
                    self._sleep(delay)

        raise RuntimeError(f"Step '{step.name}' exited its retry loop without a result.")

    def _mark_errored(
        self,
        *,
        db: Session,
        instance_id: uuid.UUID,
        step_name: str | None,
        exc: BaseException,
    ) -> None:
        repository = WorkflowInstanceRepository(db)
        prefix = f"{step_name}: " if step_name else ""
        error_message = f"{prefix}{_describe(exc)}"[:_MAX_ERROR_LENGTH]
        error_code = _error_code(exc)
        if step_name is None:
            logger.exception("Workflow instance failed id=%s error=%s", instance_id, error_message)
        log_event(
            logger,
            logging.ERROR,
            "instance_errored",
            instance_id=instance_id,
            step=step_name,
            error_code=error_code,
            error=error_message,
        )
        try:
            db.rollback()
            errored = repository.mark_errored(
                instance_id=instance_id,
                error_message=error_message,
                error_code=error_code,
            )
            if errored is None:
                logger.error("Unable to mark workflow instance errored because it was not found id=%s", instance_id)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Failed to persist errored workflow state id=%s", instance_id)


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, StepRetryExhaustedError) and isinstance(exc.last_error, PipelineError):
        return exc.last_error.code
    if isinstance(exc, PipelineError):
        return exc.code
    return "unexpected_error"
