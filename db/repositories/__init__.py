"""
Repository layer exports.
"""

from db.repositories.workflow_instance_repository import WorkflowInstanceRepository

__all__ = [
    "WorkflowInstanceRepository",
]
