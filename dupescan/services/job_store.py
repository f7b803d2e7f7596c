"""Durable job and job item store."""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
import uuid
from uuid import UUID

from sqlalchemy import func, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from dupescan.models.duplicate import DuplicatePair
from dupescan.models.job import AnalysisJob, JobItem
from dupescan.models.repository import Repository
from dupescan.services.job_state import ACTIVE_STATUSES

logger = logging.getLogger(__name__)

# Dialects with INSERT ... ON CONFLICT DO NOTHING
CONFLICT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class JobStore:
    """Queries and mutations on jobs and job items for one session.

    The store is the only state shared between the driver and the batch
    worker; every coordination decision is re-read from it.
    """

    def __init__(self, db: Session):
        """Initialize the store."""
        self.db = db

    # Session control
    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def flush(self) -> None:
        self.db.flush()

    # Repositories
    def get_repository(self, repository_id: int, lock: bool = False) -> Optional[Repository]:
        query = self.db.query(Repository).filter(Repository.id == repository_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    # Jobs
    def get_job(self, job_id: UUID, lock: bool = False) -> Optional[AnalysisJob]:
        query = self.db.query(AnalysisJob).filter(AnalysisJob.id == job_id)
        if lock:
            query = query.with_for_update()
        return query.first()

    def create_job(self, repository_id: int, now: datetime) -> AnalysisJob:
        """Create a job entering stage 1."""
        job = AnalysisJob(
            repository_id=repository_id,
            status="fetching",
            processing_stage="fetching",
            stage_number=1,
            stage_progress=0.0,
            created_at=now,
            stage_started_at=now,
            last_processed_at=now,
        )
        self.db.add(job)
        self.db.flush()
        logger.info(f"Created analysis job {job.id} for repository {repository_id}")
        return job

    def find_active_job(self, repository_id: int) -> Optional[AnalysisJob]:
        """The job for a repository currently fetching, processing or analyzing."""
        return (
            self.db.query(AnalysisJob)
            .filter(
                AnalysisJob.repository_id == repository_id,
                AnalysisJob.status.in_(ACTIVE_STATUSES),
            )
            .order_by(AnalysisJob.created_at.desc())
            .first()
        )

    def latest_job(self, repository_id: int) -> Optional[AnalysisJob]:
        return (
            self.db.query(AnalysisJob)
            .filter(AnalysisJob.repository_id == repository_id)
            .order_by(AnalysisJob.created_at.desc())
            .first()
        )

    def latest_completed_job(self, repository_id: int) -> Optional[AnalysisJob]:
        return (
            self.db.query(AnalysisJob)
            .filter(
                AnalysisJob.repository_id == repository_id,
                AnalysisJob.status == "completed",
            )
            .order_by(AnalysisJob.completed_at.desc())
            .first()
        )

    def jobs_with_status(self, statuses: Sequence[str]) -> List[AnalysisJob]:
        """Jobs in the given statuses, least recently processed first."""
        return (
            self.db.query(AnalysisJob)
            .filter(AnalysisJob.status.in_(statuses))
            .order_by(AnalysisJob.last_processed_at.asc())
            .all()
        )

    # Items
    def upsert_items(self, job_id: UUID, issues: Iterable[Dict[str, Any]]) -> int:
        """
        Insert pending items for issues not yet recorded for the job.

        Items already present keep their embedding state, so fetching the
        same page twice is harmless, even from overlapping writers.

        Args:
            job_id: Owning job
            issues: GitHub issue dicts with number, title and body

        Returns:
            Number of items inserted
        """
        by_number = {}
        for issue in issues:
            by_number[issue["number"]] = issue
        if not by_number:
            return 0

        rows = [
            {
                "id": uuid.uuid4(),
                "job_id": job_id,
                "issue_number": number,
                "issue_title": issue.get("title") or "",
                "issue_body": issue.get("body") or "",
                "embedding_status": "pending",
                "retry_count": 0,
            }
            for number, issue in by_number.items()
        ]

        insert = CONFLICT_INSERTS.get(self.db.get_bind().dialect.name)
        if insert is None:
            return self._insert_missing_items(job_id, rows)

        statement = insert(JobItem).values(rows).on_conflict_do_nothing(
            index_elements=["job_id", "issue_number"]
        )
        return self.db.execute(statement).rowcount

    def _insert_missing_items(self, job_id: UUID, rows: List[Dict[str, Any]]) -> int:
        """Check-then-insert for dialects without conflict-ignoring inserts."""
        existing = {
            number
            for (number,) in self.db.query(JobItem.issue_number).filter(
                JobItem.job_id == job_id,
                JobItem.issue_number.in_([row["issue_number"] for row in rows]),
            )
        }

        missing = [row for row in rows if row["issue_number"] not in existing]
        for row in missing:
            self.db.add(JobItem(**row))

        self.db.flush()
        return len(missing)

    def _item_filters(
        self,
        job_id: UUID,
        status: Optional[str] = None,
        retry_below: Optional[int] = None,
        retry_at_least: Optional[int] = None,
        processed_before: Optional[datetime] = None,
    ) -> list:
        filters = [JobItem.job_id == job_id]
        if status is not None:
            filters.append(JobItem.embedding_status == status)
        if retry_below is not None:
            filters.append(JobItem.retry_count < retry_below)
        if retry_at_least is not None:
            filters.append(JobItem.retry_count >= retry_at_least)
        if processed_before is not None:
            # Claims without a timestamp are treated as abandoned
            filters.append(or_(JobItem.processed_at.is_(None), JobItem.processed_at < processed_before))
        return filters

    def items(
        self,
        job_id: UUID,
        status: Optional[str] = None,
        retry_below: Optional[int] = None,
        retry_at_least: Optional[int] = None,
        processed_before: Optional[datetime] = None,
        limit: Optional[int] = None,
        lock: bool = False,
    ) -> List[JobItem]:
        """Items of a job matching the filters, ordered by issue number."""
        query = (
            self.db.query(JobItem)
            .filter(*self._item_filters(job_id, status, retry_below, retry_at_least, processed_before))
            .order_by(JobItem.issue_number)
        )
        if limit is not None:
            query = query.limit(limit)
        if lock:
            query = query.with_for_update(skip_locked=True)
        return query.all()

    def count_items(
        self,
        job_id: UUID,
        status: Optional[str] = None,
        retry_below: Optional[int] = None,
        retry_at_least: Optional[int] = None,
    ) -> int:
        return (
            self.db.query(func.count(JobItem.id))
            .filter(*self._item_filters(job_id, status, retry_below, retry_at_least))
            .scalar()
        )

    def reset_stale_items(self, job_id: UUID, stale_before: datetime) -> int:
        """Return abandoned processing claims to pending."""
        stale = self.items(job_id, status="processing", processed_before=stale_before)
        for item in stale:
            item.embedding_status = "pending"
        if stale:
            self.db.flush()
            logger.warning(f"Job {job_id}: reclaimed {len(stale)} stale items")
        return len(stale)

    def delete_items(self, job_id: UUID) -> int:
        """Delete a job's items and the duplicate pairs referring to them."""
        self.db.query(DuplicatePair).filter(DuplicatePair.job_id == job_id).delete(synchronize_session=False)
        deleted = self.db.query(JobItem).filter(JobItem.job_id == job_id).delete(synchronize_session=False)
        logger.info(f"Job {job_id}: deleted {deleted} items")
        return deleted
