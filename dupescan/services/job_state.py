"""Job stage table, transitions and snapshot projection."""

import logging
from datetime import datetime
from typing import Optional

from dupescan.models.job import AnalysisJob
from dupescan.schemas.analysis import JobSnapshot, StageView

logger = logging.getLogger(__name__)

STAGE_NAMES = {
    1: "fetching",
    2: "embedding",
    3: "analyzing",
    4: "reporting",
}

# Job status while a stage is running
STAGE_STATUSES = {
    1: "fetching",
    2: "processing",
    3: "analyzing",
    4: "reporting",
}

ACTIVE_STATUSES = ("fetching", "processing", "analyzing")
WORKER_STATUSES = ("processing", "analyzing", "reporting")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")

TIMEOUT_ERROR = "Analysis exceeded maximum time limit of 15 minutes"
CANCELLED_ERROR = "Analysis cancelled by user"
STALE_JOB_ERROR = "Job timed out"


class StageTransitionError(ValueError):
    """A transition would move a job backwards."""


def percent(done: int, total: int) -> float:
    """Stage progress in [0, 100]."""
    if total <= 0:
        return 100.0
    return min(done / total * 100, 100.0)


def advance_stage(job: AnalysisJob, stage_number: int, now: datetime) -> bool:
    """
    Move a job to a later stage.

    Args:
        job: Job to update
        stage_number: Target stage (1-4)
        now: Transition time

    Returns:
        True if the job moved, False if it was already at that stage

    Raises:
        StageTransitionError: If the target stage is behind the current one
    """
    if stage_number not in STAGE_NAMES:
        raise StageTransitionError(f"Unknown stage {stage_number}")
    if stage_number < job.stage_number:
        raise StageTransitionError(
            f"Job {job.id} cannot move from stage {job.stage_number} back to {stage_number}"
        )
    if stage_number == job.stage_number:
        return False

    logger.info(f"Job {job.id}: stage {job.stage_number} -> {stage_number} ({STAGE_NAMES[stage_number]})")
    job.stage_number = stage_number
    job.processing_stage = STAGE_NAMES[stage_number]
    job.status = STAGE_STATUSES[stage_number]
    job.stage_progress = 0.0
    job.stage_started_at = now
    job.last_processed_at = now
    return True


def mark_failed(job: AnalysisJob, error: str, now: datetime) -> None:
    logger.error(f"Job {job.id} failed: {error}")
    job.status = "failed"
    job.error = error
    job.last_processed_at = now


def mark_cancelled(job: AnalysisJob, error: str, now: datetime) -> None:
    logger.warning(f"Job {job.id} cancelled: {error}")
    job.status = "cancelled"
    job.error = error
    job.last_processed_at = now


def mark_completed(job: AnalysisJob, now: datetime) -> None:
    logger.info(f"Job {job.id} completed")
    job.status = "completed"
    job.stage_progress = 100.0
    job.completed_at = now
    job.last_processed_at = now


def _stage_state(job: AnalysisJob, stage_number: int) -> str:
    if job.status == "completed" or stage_number < job.stage_number:
        return "completed"
    if stage_number > job.stage_number:
        return "pending"
    if job.status in ("failed", "cancelled"):
        return "error"
    return "active"


def to_snapshot(job: Optional[AnalysisJob]) -> Optional[JobSnapshot]:
    """Project a job row onto the snapshot the UI reads."""
    if job is None:
        return None

    return JobSnapshot(
        job_id=job.id,
        phase=job.status,
        stage_number=job.stage_number,
        processing_stage=job.processing_stage,
        stage_progress=round(job.stage_progress or 0.0, 2),
        processed_issues_count=job.processed_issues_count or 0,
        total_issues_count=job.total_issues_count or 0,
        embedded_issues_count=job.embedded_issues_count or 0,
        failed_items_count=job.failed_items_count or 0,
        error=job.error,
        stages=[
            StageView(stage_number=number, name=name, state=_stage_state(job, number))
            for number, name in STAGE_NAMES.items()
        ],
    )
