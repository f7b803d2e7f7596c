"""Job routes."""

import logging
import uuid

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from dupescan.database import get_db
from dupescan.schemas.analysis import BatchResult
from dupescan.services.batch_worker import run_batch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/{job_id}/process-batch", response_model=BatchResult)
def process_batch(job_id: uuid.UUID, request: Request, db: Session = Depends(get_db)):
    """Advance a job by one batch."""
    # Reuse the background worker's client so both share one set of quotas
    worker = getattr(request.app.state, "worker", None)
    embedding_client = worker.get_embedding_client() if worker is not None else None

    result = run_batch(db, job_id, embedding_client)
    if not result.success:
        logger.warning(f"Batch for job {job_id} did not succeed: {result.error}")
    return result
