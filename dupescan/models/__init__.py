"""SQLAlchemy ORM models."""

from dupescan.models.repository import Repository
from dupescan.models.job import AnalysisJob, JobItem
from dupescan.models.duplicate import DuplicatePair

__all__ = [
    "Repository",
    "AnalysisJob",
    "JobItem",
    "DuplicatePair",
]
