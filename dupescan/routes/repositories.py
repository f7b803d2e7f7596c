"""Repository routes."""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from dupescan.database import get_db
from dupescan.models.repository import Repository
from dupescan.routes.dependencies import get_github_client
from dupescan.schemas.repository import RepositoryCreate, RepositoryResponse
from dupescan.services.github_client import CredentialExpiredError, GitHubClient, GitHubError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/repositories", tags=["repositories"])


@router.post("", response_model=RepositoryResponse)
def track_repository(
    data: RepositoryCreate,
    db: Session = Depends(get_db),
    github: GitHubClient = Depends(get_github_client),
):
    """
    Track a repository: insert if new, return existing if already tracked.

    Args:
        data: Repository owner and name
        db: Database session
        github: GitHub client used for the access check

    Returns:
        RepositoryResponse
    """
    full_name = f"{data.owner}/{data.name}"

    existing = db.query(Repository).filter(Repository.full_name == full_name).first()
    if existing:
        logger.info(f"Repository already tracked: {full_name}")
        return existing

    try:
        access = github.check_repository_access(data.owner, data.name)
    except CredentialExpiredError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except GitHubError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not access["has_access"]:
        raise HTTPException(status_code=404, detail=f"Repository {full_name} not found or not accessible")

    repository = Repository(
        owner=data.owner,
        name=data.name,
        full_name=full_name,
        is_private=bool(access["is_private"]),
    )
    db.add(repository)
    db.commit()
    db.refresh(repository)

    logger.info(f"Tracking repository {full_name} as {repository.id}")
    return repository


@router.get("", response_model=List[RepositoryResponse])
def list_repositories(db: Session = Depends(get_db)):
    """List tracked repositories."""
    return db.query(Repository).order_by(Repository.full_name).all()


@router.get("/{repository_id}", response_model=RepositoryResponse)
def get_repository(repository_id: int, db: Session = Depends(get_db)):
    repository = db.query(Repository).filter(Repository.id == repository_id).first()
    if not repository:
        raise HTTPException(status_code=404, detail="Repository not found")
    return repository
