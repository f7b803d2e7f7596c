"""Analysis driver: starts, resumes, fetches, watches and cancels jobs."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from dupescan.config import settings
from dupescan.models.job import AnalysisJob
from dupescan.models.repository import Repository
from dupescan.schemas.analysis import JobSnapshot
from dupescan.services.github_client import GitHubClient, GitHubError
from dupescan.services.job_state import (
    ACTIVE_STATUSES,
    CANCELLED_ERROR,
    STALE_JOB_ERROR,
    TIMEOUT_ERROR,
    advance_stage,
    mark_cancelled,
    mark_failed,
    percent,
    to_snapshot,
)
from dupescan.services.job_store import JobStore

logger = logging.getLogger(__name__)

STAGE_START_ERROR = (
    "Embedding stage did not start within {seconds} seconds after fetching completed: "
    "the batch worker was not invoked or the embedding quota is exhausted"
)


class RepositoryNotFoundError(LookupError):
    """No tracked repository with the requested id."""


def enforce_deadlines(store: JobStore, job: AnalysisJob, now: datetime) -> bool:
    """
    Apply the wall-clock ceiling and the stage-2 start watchdog to a job.

    Both checks are derived from stored timestamps, so any reader may run
    them at any time.

    Args:
        store: Job store
        job: Job to check
        now: Current time

    Returns:
        True if the job was cancelled or failed by this call
    """
    if job.status not in ACTIVE_STATUSES:
        return False

    if job.created_at and now - job.created_at > timedelta(seconds=settings.JOB_TIMEOUT_SECONDS):
        mark_cancelled(job, TIMEOUT_ERROR, now)
        return True

    if job.stage_number == 2 and job.embedded_issues_count == 0:
        started = job.stage_started_at or job.last_processed_at or job.created_at
        waited = now - started if started else timedelta(0)
        if waited > timedelta(seconds=settings.STAGE_START_TIMEOUT_SECONDS):
            untouched = store.count_items(job.id, status="pending") == store.count_items(job.id)
            if untouched:
                mark_failed(
                    job,
                    STAGE_START_ERROR.format(seconds=settings.STAGE_START_TIMEOUT_SECONDS),
                    now,
                )
                return True

    return False


def get_job_status(db: Session, repository_id: int, clock: Callable[[], datetime] = datetime.utcnow) -> Optional[JobSnapshot]:
    """Snapshot of the repository's most recent job, deadlines applied."""
    store = JobStore(db)
    job = store.latest_job(repository_id)
    if job is None:
        return None

    if enforce_deadlines(store, job, clock()):
        store.commit()
    return to_snapshot(job)


def cancel_analysis(db: Session, repository_id: int, clock: Callable[[], datetime] = datetime.utcnow) -> Optional[JobSnapshot]:
    """Cancel the repository's active job, if any."""
    store = JobStore(db)
    job = store.find_active_job(repository_id)
    if job is None:
        return None

    mark_cancelled(job, CANCELLED_ERROR, clock())
    store.commit()
    return to_snapshot(job)


class AnalysisDriver:
    """Drives one repository's analysis through stage 1 and hands off to the worker."""

    def __init__(
        self,
        db: Session,
        github: GitHubClient,
        on_handoff: Optional[Callable[[UUID], None]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """Initialize the driver."""
        self.db = db
        self.store = JobStore(db)
        self.github = github
        self.on_handoff = on_handoff
        self.clock = clock
        self.page_size = settings.ISSUES_PAGE_SIZE
        self.stale_after = timedelta(seconds=settings.STALE_AFTER_SECONDS)

    def start_or_resume(self, repository_id: int) -> JobSnapshot:
        """
        Start a new analysis or resume the one already running.

        Args:
            repository_id: Tracked repository id

        Returns:
            Snapshot of the started or resumed job

        Raises:
            RepositoryNotFoundError: Unknown repository
            GitHubError: Fetching failed (the job is marked failed first)
        """
        now = self.clock()

        # Serializes concurrent start calls for the same repository
        repository = self.store.get_repository(repository_id, lock=True)
        if repository is None:
            raise RepositoryNotFoundError(f"Repository {repository_id} not found")

        job = self.store.find_active_job(repository_id)

        if job is not None:
            last_update = job.last_processed_at or job.created_at
            if enforce_deadlines(self.store, job, now):
                self.store.commit()
                job = None
            elif now - last_update >= self.stale_after:
                logger.warning(f"Job {job.id} has not progressed since {last_update}, replacing it")
                mark_failed(job, STALE_JOB_ERROR, now)
                self.store.delete_items(job.id)
                self.store.commit()
                job = None
            else:
                # Whoever is driving the job keeps going; this caller only observes it
                logger.info(f"Resuming job {job.id} in place at stage {job.stage_number}")
                self.store.commit()
                return to_snapshot(job)

        job = self.store.create_job(repository_id, now)
        self.store.commit()

        self.run_fetch_stage(job, repository)
        return to_snapshot(job)

    def get_job_status(self, repository_id: int) -> Optional[JobSnapshot]:
        return get_job_status(self.db, repository_id, self.clock)

    def cancel_analysis(self, repository_id: int) -> Optional[JobSnapshot]:
        return cancel_analysis(self.db, repository_id, self.clock)

    def run_fetch_stage(self, job: AnalysisJob, repository: Repository) -> None:
        """
        Page through the repository's open issues into job items.

        Paging continues after the last page recorded in
        ``processed_issues_count``, so a partially fetched job picks up where
        it stopped.

        Args:
            job: Job in stage 1
            repository: Repository whose issues are fetched

        Raises:
            GitHubError: Fetching failed (the job is marked failed first)
        """
        try:
            self._fetch_issues(job, repository)
        except GitHubError as e:
            logger.error(f"Job {job.id}: fetching issues for {repository.full_name} failed: {e}")
            self.store.rollback()
            mark_failed(job, str(e), self.clock())
            self.store.commit()
            raise

    def _fetch_issues(self, job: AnalysisJob, repository: Repository) -> None:
        owner, name = repository.owner, repository.name

        repo_data = self.github.get_repository(owner, name)
        job.total_issues_count = repo_data.get("open_issues_count", 0)
        job.last_processed_at = self.clock()
        self.store.commit()

        page = job.processed_issues_count // self.page_size + 1
        logger.info(f"Job {job.id}: fetching issues of {repository.full_name} from page {page}")

        while True:
            issues = self.github.list_issues(owner, name, state="open", per_page=self.page_size, page=page)
            if not issues:
                break

            inserted = self.store.upsert_items(
                job.id, [issue for issue in issues if "pull_request" not in issue]
            )

            job.processed_issues_count = (page - 1) * self.page_size + len(issues)
            job.stage_progress = percent(job.processed_issues_count, job.total_issues_count)
            job.last_processed_at = self.clock()
            self.store.commit()
            logger.info(
                f"Job {job.id}: page {page} gave {len(issues)} entries, {inserted} new items "
                f"({job.processed_issues_count}/{job.total_issues_count})"
            )

            # Cancellation is cooperative: stop once the stored status changes
            self.db.refresh(job)
            if job.status != "fetching":
                logger.info(f"Job {job.id} is {job.status}, stopping fetch")
                return

            page += 1

        now = self.clock()
        job.total_issues_count = self.store.count_items(job.id)
        advance_stage(job, 2, now)
        repository.last_analysis_timestamp = now
        self.store.commit()
        logger.info(f"Job {job.id}: fetched {job.total_issues_count} issues, handing off to batch worker")

        if self.on_handoff is not None:
            self.on_handoff(job.id)
