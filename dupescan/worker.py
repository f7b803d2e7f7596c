"""Background worker that drives analysis jobs through stages 2-4."""

import logging
import threading
import time
from datetime import datetime
from typing import Optional

import sqlalchemy

from dupescan.config import settings
from dupescan.database import SessionLocal
from dupescan.services.batch_worker import build_embedding_client, run_batch
from dupescan.services.driver import enforce_deadlines
from dupescan.services.embeddings import EmbeddingClient
from dupescan.services.errors import CriticalError
from dupescan.services.job_state import ACTIVE_STATUSES, WORKER_STATUSES
from dupescan.services.job_store import JobStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


class Worker:
    """Background worker for processing analysis jobs."""

    def __init__(self, session_factory=SessionLocal, embedding_client: Optional[EmbeddingClient] = None):
        """Initialize worker."""
        self.session_factory = session_factory
        self.embedding_client = embedding_client
        self.poll_interval = settings.WORKER_POLL_INTERVAL
        self._wake = threading.Event()

    def wake(self, job_id=None):
        """Cut the current idle wait short, e.g. when a job is handed off."""
        if job_id is not None:
            logger.info(f"Worker woken for job {job_id}")
        self._wake.set()

    def get_embedding_client(self) -> Optional[EmbeddingClient]:
        """The shared embedding client, so quotas hold across batches."""
        if self.embedding_client is None:
            try:
                self.embedding_client = build_embedding_client()
            except CriticalError as e:
                logger.error(f"Embedding client unavailable: {e}")
                return None
        return self.embedding_client

    def wait_for_database(self, max_wait: int = 60):
        """Block until the analysis tables exist or ``max_wait`` seconds pass."""
        waited = 0
        while waited < max_wait:
            db = self.session_factory()
            try:
                db.execute(sqlalchemy.text("SELECT 1 FROM analysis_jobs LIMIT 1"))
                logger.info("Database is ready, starting worker loop")
                return
            except Exception as e:
                logger.info(f"Waiting for database... ({waited}s): {e}")
                time.sleep(2)
                waited += 2
            finally:
                db.close()

        logger.error(f"Database not ready after {max_wait} seconds, starting anyway...")

    def run(self, stop_event=None):
        """Main worker loop.

        Args:
            stop_event: Optional threading.Event to signal worker to stop
        """
        logger.info("Worker started - waiting for database to be ready...")
        self.wait_for_database()

        while True:
            if stop_event and stop_event.is_set():
                logger.info("Worker stop signal received")
                break

            try:
                worked = self.run_once()
            except KeyboardInterrupt:
                logger.info("Worker shutting down")
                break
            except Exception as e:
                logger.error(f"Worker error: {e}", exc_info=True)
                worked = False

            if not worked:
                self._wake.wait(self.poll_interval)
                self._wake.clear()

    def run_once(self) -> bool:
        """
        Enforce deadlines and advance every runnable job by one batch.

        Returns:
            True if any job made progress
        """
        db = self.session_factory()
        try:
            store = JobStore(db)

            now = datetime.utcnow()
            for job in store.jobs_with_status(ACTIVE_STATUSES):
                if enforce_deadlines(store, job, now):
                    logger.warning(f"Job {job.id} stopped by deadline: {job.error}")
            store.commit()

            worked = False
            for job in store.jobs_with_status(WORKER_STATUSES):
                job_id = job.id
                before = self._progress_marker(job)

                result = run_batch(db, job_id, self.get_embedding_client())
                if not result.success:
                    logger.warning(f"Batch for job {job_id} did not succeed: {result.error}")

                after = store.get_job(job_id)
                if after is not None and self._progress_marker(after) != before:
                    worked = True

            return worked
        finally:
            db.close()

    @staticmethod
    def _progress_marker(job):
        return (job.status, job.stage_number, job.embedded_issues_count, job.last_processed_at)


def worker_loop(stop_event=None, worker: Optional[Worker] = None):
    """Run worker loop (for use as background thread).

    Args:
        stop_event: Optional threading.Event to signal worker to stop
        worker: Worker instance to run; a new one by default
    """
    worker = worker or Worker()
    worker.run(stop_event=stop_event)


def main():
    """Entry point for standalone worker."""
    worker = Worker()
    worker.run()


if __name__ == "__main__":
    main()
