"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.workflow_instance import (
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowStep,
)

__all__ = [
    "StepStatus",
    "WorkflowInstance",
    "WorkflowStatus",
    "WorkflowStep",
]
