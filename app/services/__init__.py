"""
app/services package marker.
"""

from app.services.ingestion_orchestrator_service import (
    FastAPIBackgroundTaskExecutor,
    IngestionOrchestratorService,
    get_ingestion_orchestrator_service,
)
from app.services.ingestion_pipeline import StatementIngestionPipeline
from app.services.merge_service import MergeService
from app.services.step_engine import (
    DurableStepEngine,
    RetryPolicy,
    RewindPolicy,
    StepContext,
    StepDefinition,
    WorkflowDefinition,
)

__all__ = [
    "DurableStepEngine",
    "FastAPIBackgroundTaskExecutor",
    "IngestionOrchestratorService",
    "MergeService",
    "RetryPolicy",
    "RewindPolicy",
    "StatementIngestionPipeline",
    "StepContext",
    "StepDefinition",
    "WorkflowDefinition",
    "get_ingestion_orchestrator_service",
]
