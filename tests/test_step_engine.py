"""
tests/test_step_engine.py

Tests for DurableStepEngine against an in-memory SQLite database.

Coverage
--------
- Checkpointed outputs feed later steps; finalize builds the instance output
- Retry with linear and constant backoff (sleep injected, never real)
- Non-retryable errors fail immediately
- Retry exhaustion surfaces the underlying error code
- Crash after a checkpoint resumes at the first incomplete step
- Claiming: live running instances are never run twice
- Rewind on a configured error type, bounded by max_rewinds
"""

from __future__ import annotations

import uuid
from typing import Any

import pytest
from sqlalchemy.orm import Session, sessionmaker

from app.domain.errors import MalformedInputError, StoreConflictError, TransientStoreError
from app.services.step_engine import (
    DurableStepEngine,
    RetryPolicy,
    RewindPolicy,
    StepContext,
    StepDefinition,
    WorkflowDefinition,
)
from db.base import utcnow
from db.models.workflow_instance import StepStatus, WorkflowStatus
from db.repositories.workflow_instance_repository import WorkflowInstanceRepository


class _SimulatedCrash(BaseException):
    """Escapes the engine's exception handling, like a killed process."""


class Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _create_instance(factory: sessionmaker[Session], workflow: WorkflowDefinition) -> uuid.UUID:
    with factory() as db:
        instance = WorkflowInstanceRepository(db).create_instance(
            workflow_name=workflow.name,
            dataset_path="data/statement.csv",
            filename="upload.csv",
            row_count_hint=1,
            step_names=workflow.step_names,
            request_payload={"seed": 2},
        )
        db.commit()
        return instance.id


def _load(factory: sessionmaker[Session], instance_id: uuid.UUID):
    with factory() as db:
        repository = WorkflowInstanceRepository(db)
        instance = repository.get_instance(instance_id)
        steps = {step.step_name: step for step in repository.get_steps(instance_id)}
        return instance, steps


def _summarize(outputs: dict[str, Any]) -> dict[str, Any]:
    return {"total": outputs["double"]["value"]}


# ---------------------------------------------------------------------------
# Happy path and checkpoints
# ---------------------------------------------------------------------------


class TestHappyPath:
    def test_outputs_flow_between_steps(self, session_factory) -> None:
        recorder = Recorder()

        def seed(ctx: StepContext) -> dict[str, Any]:
            recorder.calls.append((ctx.step_name, ctx.attempt))
            return {"value": ctx.request_payload["seed"]}

        def double(ctx: StepContext) -> dict[str, Any]:
            recorder.calls.append((ctx.step_name, ctx.attempt))
            return {"value": ctx.output_of("seed")["value"] * 2}

        workflow = WorkflowDefinition(
            name="arith",
            steps=(StepDefinition("seed", seed), StepDefinition("double", double)),
            finalize=_summarize,
        )
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory, sleep=recorder.sleep)
        instance_id = _create_instance(session_factory, workflow)

        assert engine.run(instance_id) == WorkflowStatus.COMPLETE

        instance, steps = _load(session_factory, instance_id)
        assert instance.status == WorkflowStatus.COMPLETE
        assert instance.output == {"total": 4}
        assert instance.current_step_index == 2
        assert instance.completed_at is not None
        assert steps["seed"].output == {"value": 2}
        assert steps["double"].status == StepStatus.COMPLETE
        assert recorder.calls == [("seed", 1), ("double", 1)]
        assert recorder.sleeps == []

    def test_terminal_instance_is_not_rerun(self, session_factory) -> None:
        workflow = WorkflowDefinition(
            name="noop",
            steps=(StepDefinition("only", lambda ctx: {}),),
            finalize=lambda outputs: {},
        )
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory)
        instance_id = _create_instance(session_factory, workflow)

        assert engine.run(instance_id) == WorkflowStatus.COMPLETE
        assert engine.run(instance_id) is None

    def test_unknown_instance_is_not_claimed(self, session_factory) -> None:
        workflow = WorkflowDefinition(
            name="noop",
            steps=(StepDefinition("only", lambda ctx: {}),),
            finalize=lambda outputs: {},
        )
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory)
        assert engine.run(uuid.uuid4()) is None


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestRetry:
    def test_transient_failures_are_retried_with_linear_backoff(self, session_factory) -> None:
        recorder = Recorder()

        def flaky(ctx: StepContext) -> dict[str, Any]:
            recorder.calls.append((ctx.step_name, ctx.attempt))
            if ctx.attempt < 3:
                raise TransientStoreError("503 from store", status_code=503)
            return {"value": 1}

        workflow = WorkflowDefinition(
            name="retry",
            steps=(
                StepDefinition(
                    "flaky",
                    flaky,
                    retry=RetryPolicy(limit=3, delay_seconds=2.0, backoff="linear"),
                ),
            ),
            finalize=lambda outputs: outputs["flaky"],
        )
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory, sleep=recorder.sleep)
        instance_id = _create_instance(session_factory, workflow)

        assert engine.run(instance_id) == WorkflowStatus.COMPLETE
        assert recorder.sleeps == [2.0, 4.0]

        _, steps = _load(session_factory, instance_id)
        assert steps["flaky"].attempts == 3
        assert steps["flaky"].last_error is None

    def test_constant_backoff(self) -> None:
        policy = RetryPolicy(limit=4, delay_seconds=1.5, backoff="constant")
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.5, 1.5, 1.5]

    def test_exhausted_retries_error_the_instance(self, session_factory) -> None:
        recorder = Recorder()

        def always_down(ctx: StepContext) -> dict[str, Any]:
            raise TransientStoreError("store unavailable", status_code=503)

        workflow = WorkflowDefinition(
            name="exhaust",
            steps=(StepDefinition("fetch", always_down, retry=RetryPolicy(limit=3, delay_seconds=1.0)),),
            finalize=lambda outputs: {},
        )
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory, sleep=recorder.sleep)
        instance_id = _create_instance(session_factory, workflow)

        assert engine.run(instance_id) == WorkflowStatus.ERRORED

        instance, steps = _load(session_factory, instance_id)
        assert instance.status == WorkflowStatus.ERRORED
        assert instance.output is None
        assert instance.error_code == "transient_store_error"
        assert instance.error_message.startswith("fetch: StepRetryExhaustedError")
        assert "store unavailable" in instance.error_message
        assert steps["fetch"].status == StepStatus.ERRORED
        assert steps["fetch"].attempts == 3
        assert recorder.sleeps == [1.0, 1.0]

    def test_non_retryable_error_fails_on_first_attempt(self, session_factory) -> None:
        recorder = Recorder()
        later_calls: list[int] = []

        def validate(ctx: StepContext) -> dict[str, Any]:
            recorder.calls.append((ctx.step_name, ctx.attempt))
            raise MalformedInputError("Missing required columns: amount.")

        workflow = WorkflowDefinition(
            name="fatal",
            steps=(
                StepDefinition("validate", validate, retry=RetryPolicy(limit=5, delay_seconds=1.0)),
                StepDefinition("next", lambda ctx: later_calls.append(1) or {}),
            ),
            finalize=lambda outputs: {},
        )
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory, sleep=recorder.sleep)
        instance_id = _create_instance(session_factory, workflow)

        assert engine.run(instance_id) == WorkflowStatus.ERRORED

        instance, steps = _load(session_factory, instance_id)
        assert instance.error_code == "malformed_input"
        assert instance.error_message == "validate: MalformedInputError: Missing required columns: amount."
        assert recorder.calls == [("validate", 1)]
        assert recorder.sleeps == []
        assert later_calls == []
        assert steps["next"].status == StepStatus.PENDING

    def test_error_message_is_truncated(self, session_factory) -> None:
        def noisy(ctx: StepContext) -> dict[str, Any]:
            raise MalformedInputError("x" * 5000)

        workflow = WorkflowDefinition(
            name="noisy",
            steps=(StepDefinition("noisy", noisy),),
            finalize=lambda outputs: {},
        )
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory)
        instance_id = _create_instance(session_factory, workflow)
        engine.run(instance_id)

        instance, _ = _load(session_factory, instance_id)
        assert len(instance.error_message) == 2000


# ---------------------------------------------------------------------------
# Resume and claiming
# ---------------------------------------------------------------------------


class TestResume:
    def test_crash_after_checkpoint_resumes_at_next_step(self, session_factory) -> None:
        calls: list[str] = []
        crash = {"armed": True}

        def first(ctx: StepContext) -> dict[str, Any]:
            calls.append("first")
            return {"token": "abc"}

        def second(ctx: StepContext) -> dict[str, Any]:
            calls.append("second")
            if crash["armed"]:
                raise _SimulatedCrash()
            return {"seen": ctx.output_of("first")["token"]}

        workflow = WorkflowDefinition(
            name="resume",
            steps=(StepDefinition("first", first), StepDefinition("second", second)),
            finalize=lambda outputs: outputs["second"],
        )
        instance_id = _create_instance(session_factory, workflow)

        crashing = DurableStepEngine(workflow=workflow, session_factory=session_factory)
        with pytest.raises(_SimulatedCrash):
            crashing.run(instance_id)

        instance, steps = _load(session_factory, instance_id)
        assert instance.status == WorkflowStatus.RUNNING
        assert instance.current_step_index == 1
        assert steps["first"].status == StepStatus.COMPLETE

        # A fresh heartbeat keeps other workers away.
        assert crashing.run(instance_id) is None

        crash["armed"] = False
        recovering = DurableStepEngine(
            workflow=workflow,
            session_factory=session_factory,
            stale_after_seconds=0.0,
        )
        assert recovering.run(instance_id) == WorkflowStatus.COMPLETE

        instance, _ = _load(session_factory, instance_id)
        assert instance.output == {"seen": "abc"}
        assert calls == ["first", "second", "second"]

    def test_resumable_ids_include_queued_and_stale(self, session_factory) -> None:
        workflow = WorkflowDefinition(
            name="noop",
            steps=(StepDefinition("only", lambda ctx: {}),),
            finalize=lambda outputs: {},
        )
        queued_id = _create_instance(session_factory, workflow)
        done_id = _create_instance(session_factory, workflow)
        DurableStepEngine(workflow=workflow, session_factory=session_factory).run(done_id)

        with session_factory() as db:
            ids = WorkflowInstanceRepository(db).list_resumable_ids(stale_before=utcnow())
        assert ids == [queued_id]


# ---------------------------------------------------------------------------
# Rewind
# ---------------------------------------------------------------------------


class TestRewind:
    def _workflow(self, commit_outcomes: list[bool], max_rewinds: int, calls: list[str]) -> WorkflowDefinition:
        def fetch(ctx: StepContext) -> dict[str, Any]:
            calls.append("fetch")
            return {"version": len([c for c in calls if c == "fetch"])}

        def commit(ctx: StepContext) -> dict[str, Any]:
            calls.append("commit")
            if not commit_outcomes.pop(0):
                raise StoreConflictError("stale", path="a.csv", expected_version_token="v1")
            return {"committed_at": ctx.output_of("fetch")["version"]}

        return WorkflowDefinition(
            name="rewind",
            steps=(
                StepDefinition("fetch", fetch),
                StepDefinition(
                    "commit",
                    commit,
                    retry=RetryPolicy(limit=3),
                    rewind=RewindPolicy(on=(StoreConflictError,), to_step="fetch", max_rewinds=max_rewinds),
                ),
            ),
            finalize=lambda outputs: outputs["commit"],
        )

    def test_conflict_rewinds_to_fetch_once(self, session_factory) -> None:
        calls: list[str] = []
        workflow = self._workflow([False, True], max_rewinds=1, calls=calls)
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory)
        instance_id = _create_instance(session_factory, workflow)

        assert engine.run(instance_id) == WorkflowStatus.COMPLETE

        instance, _ = _load(session_factory, instance_id)
        assert instance.rewind_count == 1
        assert instance.output == {"committed_at": 2}
        assert calls == ["fetch", "commit", "fetch", "commit"]

    def test_rewinds_are_bounded(self, session_factory) -> None:
        calls: list[str] = []
        workflow = self._workflow([False, False, False], max_rewinds=1, calls=calls)
        engine = DurableStepEngine(workflow=workflow, session_factory=session_factory)
        instance_id = _create_instance(session_factory, workflow)

        assert engine.run(instance_id) == WorkflowStatus.ERRORED

        instance, _ = _load(session_factory, instance_id)
        assert instance.error_code == "store_conflict"
        assert calls == ["fetch", "commit", "fetch", "commit"]
