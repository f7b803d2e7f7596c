"""Analysis-related Pydantic schemas."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel


class StageView(BaseModel):
    """One pipeline stage as shown in the UI."""

    stage_number: int
    name: str
    state: str  # 'pending', 'active', 'completed', 'error'


class JobSnapshot(BaseModel):
    """Current state of an analysis job."""

    job_id: UUID
    phase: str  # Job status
    stage_number: int
    processing_stage: str
    stage_progress: float
    processed_issues_count: int
    total_issues_count: int
    embedded_issues_count: int
    failed_items_count: int = 0
    error: Optional[str] = None
    stages: List[StageView] = []


class BatchResult(BaseModel):
    """Outcome of one batch worker invocation."""

    success: bool
    error: Optional[str] = None


class DuplicateView(BaseModel):
    """A duplicate pair in an analysis report."""

    source_issue_number: int
    source_title: str
    duplicate_issue_number: int
    duplicate_title: str
    confidence: float


class ReportResponse(BaseModel):
    """Report of a completed analysis."""

    job_id: UUID
    repository_id: int
    completed_at: Optional[str] = None
    total_items: int
    embedded_items: int
    failed_items: int
    duplicate_pairs: int
    duplicates: List[DuplicateView]

    @classmethod
    def from_job(cls, job) -> "ReportResponse":
        report: Dict[str, Any] = job.report or {}
        return cls(
            job_id=job.id,
            repository_id=job.repository_id,
            completed_at=job.completed_at.isoformat() if job.completed_at else None,
            total_items=report.get("total_items", 0),
            embedded_items=report.get("embedded_items", 0),
            failed_items=report.get("failed_items", 0),
            duplicate_pairs=report.get("duplicate_pairs", 0),
            duplicates=report.get("duplicates", []),
        )
