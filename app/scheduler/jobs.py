"""
app/scheduler/jobs.py

APScheduler-based recovery sweep for durable statement ingestions.

Recovery
--------
A process that dies mid-pipeline leaves its instance ``running`` with a
heartbeat (``updated_at``) that stops advancing. Once the heartbeat is older
than ``PIPELINE_STALE_AFTER_SECONDS`` the instance becomes claimable again,
and the sweep resumes it at its first incomplete step. Queued instances
whose background task never ran are picked up the same way.

Schedule
--------
  resume_stalled_instances - every PIPELINE_RECOVERY_INTERVAL_SECONDS,
                             first run immediately on scheduler start

Lifecycle
----------
Call ``build_scheduler()`` once to get a configured ``BackgroundScheduler``.
Start it on app boot; shut it down gracefully on app shutdown.
The scheduler is wired into FastAPI via the ``lifespan`` context in main.py.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler

from app.config import get_pipeline_settings
from app.services.ingestion_orchestrator_service import (
    IngestionOrchestratorService,
    get_ingestion_orchestrator_service,
)

logger = logging.getLogger(__name__)

RESUME_JOB_ID = "resume_stalled_instances"


# ---------------------------------------------------------------------------
# Job: resume stalled workflow instances
# ---------------------------------------------------------------------------


def resume_stalled_instances(orchestrator: IngestionOrchestratorService | None = None) -> int:
    """
    Claim and drive every queued or stale running instance.
    Failures are logged per sweep; the next interval retries.
    """
    service = orchestrator or get_ingestion_orchestrator_service()
    try:
        resumed = service.resume_stalled_instances()
    except Exception:
        logger.exception("Scheduler: resume_stalled_instances failed")
        return 0

    if resumed:
        logger.info("Scheduler: resume_stalled_instances resumed=%d", len(resumed))
    return len(resumed)


# ---------------------------------------------------------------------------
# Scheduler factory
# ---------------------------------------------------------------------------


def build_scheduler() -> BackgroundScheduler:
    """
    Build and register the recovery job.

    Returns a configured but *not yet started* ``BackgroundScheduler``.
    The caller must call ``.start()`` and ``.shutdown(wait=True)`` at the
    appropriate lifecycle points.
    """
    settings = get_pipeline_settings()
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        resume_stalled_instances,
        trigger="interval",
        seconds=settings.recovery_interval_seconds,
        next_run_time=datetime.now(tz=timezone.utc),
        id=RESUME_JOB_ID,
        name="Resume stalled statement ingestions",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=int(settings.recovery_interval_seconds),
    )

    return scheduler
