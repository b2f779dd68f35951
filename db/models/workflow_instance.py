"""
db/models/workflow_instance.py

Durable workflow instances and their per-step checkpoints.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.base import Base, JSONDocument, TimestampMixin


class WorkflowStatus:
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    ERRORED = "errored"


class StepStatus:
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    ERRORED = "errored"

class WorkflowInstance(Base, TimestampMixin):
    __tablename__ = "workflow_instances"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    workflow_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    dataset_path: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="Remote store path this instance merges into",
    )
    filename: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=WorkflowStatus.QUEUED,
    )
    current_step_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    row_count_hint: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    rewind_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    request_payload: Mapped[dict[str, Any] | None] = mapped_column(
        JSONDocument,
        nullable=True,
        comment="Immutable upload payload, including raw text for resume",
    )
    output: Mapped[dict[str, Any] | None] = mapped_column(
        JSONDocument,
        nullable=True,
    )
    error_code: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    steps: Mapped[list[WorkflowStep]] = relationship(
        back_populates="instance",
        order_by="WorkflowStep.step_index",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_workflow_instances_status", "status"),
        Index("ix_workflow_instances_created_at", "created_at"),
        Index("ix_workflow_instances_status_updated_at", "status", "updated_at"),
    )


class WorkflowStep(Base, TimestampMixin):
    __tablename__ = "workflow_steps"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    instance_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=StepStatus.PENDING,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    output: Mapped[dict[str, Any] | None] = mapped_column(
        JSONDocument,
        nullable=True,
        comment="Checkpointed step result consumed by later steps",
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    instance: Mapped[WorkflowInstance] = relationship(back_populates="steps")

    __table_args__ = (
        UniqueConstraint("instance_id", "step_name", name="uq_workflow_steps_instance_step"),
        Index("ix_workflow_steps_instance_id", "instance_id"),
    )
