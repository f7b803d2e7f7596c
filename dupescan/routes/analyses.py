"""Analysis routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from dupescan.database import SessionLocal, get_db
from dupescan.routes.dependencies import get_driver
from dupescan.schemas.analysis import JobSnapshot, ReportResponse
from dupescan.services.driver import AnalysisDriver, RepositoryNotFoundError, cancel_analysis, get_job_status
from dupescan.services.github_client import CredentialExpiredError, GitHubError
from dupescan.services.job_store import JobStore
from dupescan.services.progress import ProgressFeed

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/repositories/{repository_id}/analysis", tags=["analyses"])


def get_session_factory():
    """Session factory for long-lived readers that outlive the request session."""
    return SessionLocal


@router.post("", response_model=JobSnapshot)
def start_analysis(repository_id: int, driver: AnalysisDriver = Depends(get_driver)):
    """
    Start a new analysis or resume the running one.

    Fetching runs inside the request; embedding continues in the background
    worker.

    Args:
        repository_id: Tracked repository id
        driver: Analysis driver

    Returns:
        JobSnapshot of the started or resumed job
    """
    try:
        return driver.start_or_resume(repository_id)
    except RepositoryNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CredentialExpiredError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except GitHubError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("", response_model=JobSnapshot)
def analysis_status(repository_id: int, db: Session = Depends(get_db)):
    """Status of the repository's most recent analysis."""
    snapshot = get_job_status(db, repository_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No analysis found for repository")
    return snapshot


@router.delete("", response_model=JobSnapshot)
def cancel(repository_id: int, db: Session = Depends(get_db)):
    """Cancel the repository's running analysis."""
    snapshot = cancel_analysis(db, repository_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="No active analysis for repository")
    logger.info(f"Cancelled analysis {snapshot.job_id} of repository {repository_id}")
    return snapshot


@router.get("/events")
def analysis_events(
    repository_id: int,
    request: Request,
    session_factory=Depends(get_session_factory),
):
    """Stream job snapshots as server-sent events until the job finishes."""

    def load_snapshot(repo_id: int):
        db = session_factory()
        try:
            return get_job_status(db, repo_id)
        finally:
            db.close()

    feed = ProgressFeed(load_snapshot, bus=getattr(request.app.state, "job_events", None))

    def stream():
        for snapshot in feed.watch(repository_id):
            yield f"data: {snapshot.model_dump_json()}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream")


@router.get("/report", response_model=ReportResponse)
def analysis_report(repository_id: int, db: Session = Depends(get_db)):
    """Report of the repository's latest completed analysis."""
    job = JobStore(db).latest_completed_job(repository_id)
    if job is None:
        raise HTTPException(status_code=404, detail="No completed analysis for repository")
    return ReportResponse.from_job(job)
