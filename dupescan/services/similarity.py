"""Duplicate detection over issue embeddings and report building."""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

import numpy as np
from sqlalchemy.orm import Session

from dupescan.config import settings
from dupescan.models.duplicate import DuplicatePair
from dupescan.models.job import AnalysisJob, JobItem

logger = logging.getLogger(__name__)


class SimilaritySearch:
    """Pairwise cosine similarity search within one job's issues."""

    def __init__(self, db: Session):
        """Initialize similarity search."""
        self.db = db

    def find_duplicates(self, job_id: UUID, threshold: Optional[float] = None) -> int:
        """
        Record every pair of issues whose embeddings are at least ``threshold`` similar.

        Earlier pairs for the job are replaced, so a repeated search leaves
        the same rows behind.

        Args:
            job_id: Job whose completed embeddings are compared
            threshold: Minimum cosine similarity

        Returns:
            Number of duplicate pairs stored
        """
        if threshold is None:
            threshold = settings.SIMILARITY_THRESHOLD

        items = (
            self.db.query(JobItem)
            .filter(
                JobItem.job_id == job_id,
                JobItem.embedding_status == "completed",
                JobItem.embedding.isnot(None),
            )
            .order_by(JobItem.issue_number)
            .all()
        )

        self.db.query(DuplicatePair).filter(DuplicatePair.job_id == job_id).delete(synchronize_session=False)

        if len(items) < 2:
            logger.info(f"Job {job_id}: fewer than two embeddings, no duplicates to find")
            return 0

        matrix = np.array([np.asarray(item.embedding, dtype=np.float64) for item in items])
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        normalized = matrix / (norms + 1e-10)
        similarities = normalized @ normalized.T

        # Upper triangle only: each unordered pair once, no self-matches
        upper = np.triu(np.ones(similarities.shape, dtype=bool), k=1)
        rows, cols = np.nonzero(upper & (similarities >= threshold))

        for row, col in zip(rows, cols):
            confidence = float(np.clip(similarities[row, col], 0.0, 1.0))
            self.db.add(
                DuplicatePair(
                    job_id=job_id,
                    source_item_id=items[row].id,
                    duplicate_item_id=items[col].id,
                    confidence_score=confidence,
                )
            )

        self.db.flush()
        logger.info(f"Job {job_id}: found {len(rows)} duplicate pairs among {len(items)} issues")
        return len(rows)


def build_report(db: Session, job: AnalysisJob) -> Dict[str, Any]:
    """Summarize a job's items and duplicate pairs."""
    counts = {"completed": 0, "error": 0}
    total_items = 0
    for item in db.query(JobItem.embedding_status).filter(JobItem.job_id == job.id):
        total_items += 1
        if item.embedding_status in counts:
            counts[item.embedding_status] += 1

    pairs = (
        db.query(DuplicatePair)
        .filter(DuplicatePair.job_id == job.id)
        .order_by(DuplicatePair.confidence_score.desc())
        .all()
    )

    duplicates: List[Dict[str, Any]] = [
        {
            "source_issue_number": pair.source_item.issue_number,
            "source_title": pair.source_item.issue_title,
            "duplicate_issue_number": pair.duplicate_item.issue_number,
            "duplicate_title": pair.duplicate_item.issue_title,
            "confidence": round(pair.confidence_score, 4),
        }
        for pair in pairs
    ]

    return {
        "total_items": total_items,
        "embedded_items": counts["completed"],
        "failed_items": job.failed_items_count or 0,
        "duplicate_pairs": len(duplicates),
        "duplicates": duplicates,
    }
