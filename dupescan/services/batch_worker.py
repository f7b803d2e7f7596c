"""Batch worker: advances stages 2-4 of an analysis job in bounded steps."""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from dupescan.config import settings
from dupescan.models.job import AnalysisJob, JobItem
from dupescan.schemas.analysis import BatchResult
from dupescan.services.embeddings import EmbeddingClient
from dupescan.services.errors import CriticalError
from dupescan.services.job_state import (
    STAGE_STATUSES,
    TERMINAL_STATUSES,
    advance_stage,
    mark_completed,
    mark_failed,
    percent,
)
from dupescan.services.job_store import JobStore
from dupescan.services.similarity import SimilaritySearch, build_report

logger = logging.getLogger(__name__)

MISSING_EMBEDDING_ERROR = "Failed to generate embedding"


class BatchWorker:
    """Processes one bounded step of a job per invocation.

    Invocations share nothing in memory; each one re-reads the job and its
    items, so repeated or overlapping invocations for the same job are safe.
    """

    def __init__(
        self,
        db: Session,
        embedding_client: EmbeddingClient,
        similarity: Optional[SimilaritySearch] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize the batch worker."""
        self.db = db
        self.store = JobStore(db)
        self.embedding_client = embedding_client
        self.similarity = similarity or SimilaritySearch(db)
        self.clock = clock
        self.batch_size = settings.BATCH_SIZE
        self.max_retries = settings.MAX_ITEM_RETRIES
        self.stale_after = timedelta(seconds=settings.STALE_AFTER_SECONDS)

    def process_batch(self, job_id: UUID) -> BatchResult:
        """
        Advance a job by one step.

        Stage 2 embeds one batch of items; stage 3 runs the similarity search
        and builds the report; stage 4 finishes reporting.

        Args:
            job_id: Job to advance

        Returns:
            BatchResult with success flag and error message if any
        """
        job = self.store.get_job(job_id)
        if job is None:
            return BatchResult(success=False, error=f"Job {job_id} not found")
        if job.status in TERMINAL_STATUSES:
            logger.info(f"Job {job_id} is {job.status}, nothing to process")
            return BatchResult(success=False, error=f"Job {job_id} is {job.status}")

        try:
            if job.stage_number == 1:
                if not self._fetch_finished(job):
                    logger.info(f"Job {job_id} is still fetching issues, nothing to process")
                    return BatchResult(success=False, error=f"Job {job_id} is still fetching issues")
                self._finish_fetch(job)

            if job.stage_number == 2:
                return self._embed_batch(job)
            if job.stage_number == 3:
                self._find_duplicates(job)
            if job.stage_number == 4:
                self._finish_report(job)
            return BatchResult(success=True)

        except CriticalError as e:
            mark_failed(job, str(e), self.clock())
            self.store.commit()
            return BatchResult(success=False, error=str(e))

        except Exception as e:
            logger.error(f"Batch for job {job_id} failed: {e}", exc_info=True)
            self.store.rollback()
            return BatchResult(success=False, error=str(e))

    def _fetch_finished(self, job: AnalysisJob) -> bool:
        """Stage 1 saw every issue, or its driver stopped updating it."""
        if (job.stage_progress or 0.0) >= 100.0:
            return True
        last_update = job.last_processed_at or job.created_at
        return last_update is not None and self.clock() - last_update >= self.stale_after

    def _finish_fetch(self, job: AnalysisJob) -> None:
        """Hand a stage-1 job whose driver stopped before the handoff over to embedding."""
        self.store.flush()
        job.total_issues_count = self.store.count_items(job.id)
        job.embedded_issues_count = 0
        advance_stage(job, 2, self.clock())
        self.store.commit()
        logger.info(f"Job {job.id}: finished stage 1 with {job.total_issues_count} issues")

    def _select_batch(self, job: AnalysisJob) -> List[JobItem]:
        """Retryable failures first, then pending items, by issue number."""
        batch = self.store.items(
            job.id,
            status="error",
            retry_below=self.max_retries,
            limit=self.batch_size,
            lock=True,
        )
        if len(batch) < self.batch_size:
            batch += self.store.items(
                job.id,
                status="pending",
                limit=self.batch_size - len(batch),
                lock=True,
            )
        return batch

    def _embed_batch(self, job: AnalysisJob) -> BatchResult:
        now = self.clock()
        self.store.reset_stale_items(job.id, now - self.stale_after)

        pending = self.store.count_items(job.id, status="pending")
        retryable = self.store.count_items(job.id, status="error", retry_below=self.max_retries)

        if pending == 0 and retryable == 0:
            in_flight = self.store.count_items(job.id, status="processing")
            if in_flight:
                logger.info(f"Job {job.id}: waiting on {in_flight} items claimed by another invocation")
                self.store.commit()
                return BatchResult(success=True)

            job.failed_items_count = self.store.count_items(
                job.id, status="error", retry_at_least=self.max_retries
            )
            job.embedded_issues_count = self.store.count_items(job.id, status="completed")
            advance_stage(job, 3, now)
            self.store.commit()
            logger.info(
                f"Job {job.id}: embedding done, {job.embedded_issues_count} embedded, "
                f"{job.failed_items_count} permanently failed"
            )
            return BatchResult(success=True)

        batch = self._select_batch(job)

        # Claim before calling the provider so a crash leaves visible stale claims
        for item in batch:
            item.embedding_status = "processing"
            item.processed_at = now
        self.store.commit()

        texts = [f"{item.issue_title}\n\n{item.issue_body or ''}" for item in batch]

        try:
            vectors = self.embedding_client.create_embedding_batch(texts)
        except CriticalError:
            for item in batch:
                item.embedding_status = "pending"
            raise
        except Exception as e:
            logger.warning(f"Job {job.id}: embedding batch of {len(batch)} failed: {e}")
            failed_at = self.clock()
            for item in batch:
                self._record_failure(item, str(e), failed_at)
                item.last_retry_at = failed_at
            self._update_progress(job, failed_at)
            self.store.commit()
            return BatchResult(success=False, error=str(e))

        resolved_at = self.clock()
        succeeded = 0
        for index, item in enumerate(batch):
            vector = vectors[index] if index < len(vectors) else None
            if vector is None:
                self._record_failure(item, MISSING_EMBEDDING_ERROR, resolved_at)
                continue

            item.embedding = vector
            item.embedding_status = "completed"
            item.error_message = None
            item.processed_at = resolved_at
            succeeded += 1

        self._update_progress(job, resolved_at)
        self.store.commit()
        logger.info(
            f"Job {job.id}: batch of {len(batch)} done, {succeeded} embedded, "
            f"{len(batch) - succeeded} failed ({job.embedded_issues_count} total)"
        )
        return BatchResult(success=True)

    def _record_failure(self, item: JobItem, message: str, now: datetime) -> None:
        item.embedding_status = "error"
        item.error_message = message
        item.retry_count = (item.retry_count or 0) + 1
        item.processed_at = now

    def _update_progress(self, job: AnalysisJob, now: datetime) -> None:
        """Recount embedded items and refresh stage progress, unless the job was stopped."""
        self.store.flush()

        # Pick up a cancellation written while the batch was running
        self.db.refresh(job)
        if job.status != STAGE_STATUSES[2]:
            logger.info(f"Job {job.id} is {job.status}, leaving its progress untouched")
            return

        total_items = self.store.count_items(job.id)
        job.embedded_issues_count = self.store.count_items(job.id, status="completed")
        job.stage_progress = percent(job.embedded_issues_count, total_items)
        job.last_processed_at = now

    def _find_duplicates(self, job: AnalysisJob) -> None:
        pairs = self.similarity.find_duplicates(job.id, settings.SIMILARITY_THRESHOLD)
        advance_stage(job, 4, self.clock())
        self.store.commit()
        logger.info(f"Job {job.id}: similarity search stored {pairs} duplicate pairs")

    def _finish_report(self, job: AnalysisJob) -> None:
        now = self.clock()
        job.report = build_report(self.db, job)
        mark_completed(job, now)
        if job.repository is not None:
            job.repository.last_analysis_timestamp = now
        self.store.commit()


def build_embedding_client(**overrides) -> EmbeddingClient:
    """Embedding client for batch processing.

    Transient provider errors are retried a bounded number of times, after
    which the batch fails and its items go through per-item retry bookkeeping.
    """
    overrides.setdefault("max_attempts", settings.PIPELINE_EMBEDDING_MAX_ATTEMPTS)
    return EmbeddingClient(**overrides)


def run_batch(db: Session, job_id: UUID, embedding_client: Optional[EmbeddingClient] = None) -> BatchResult:
    """
    Process one batch for a job, building the embedding client if needed.

    A client that cannot be built (missing credentials) fails the job.

    Args:
        db: Database session
        job_id: Job to advance
        embedding_client: Client to reuse across invocations

    Returns:
        BatchResult
    """
    if embedding_client is None:
        try:
            embedding_client = build_embedding_client()
        except CriticalError as e:
            store = JobStore(db)
            job = store.get_job(job_id)
            if job is not None and job.status not in TERMINAL_STATUSES:
                mark_failed(job, str(e), datetime.utcnow())
                store.commit()
            return BatchResult(success=False, error=str(e))

    return BatchWorker(db, embedding_client).process_batch(job_id)
