"""Shared route dependencies."""

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from dupescan.database import get_db
from dupescan.services.driver import AnalysisDriver
from dupescan.services.github_client import GitHubClient


def get_github_client(request: Request) -> GitHubClient:
    """GitHub client bound to the application's credential session."""
    return GitHubClient(request.app.state.github_session)


def get_driver(
    request: Request,
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
) -> AnalysisDriver:
    """Analysis driver that wakes the background worker on handoff."""
    worker = getattr(request.app.state, "worker", None)
    on_handoff = worker.wake if worker is not None else None
    return AnalysisDriver(db, github, on_handoff=on_handoff)
