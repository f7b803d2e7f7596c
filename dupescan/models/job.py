"""Analysis job and job item models."""

import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship

from dupescan.config import settings
from dupescan.database import Base


class AnalysisJob(Base):
    """One end-to-end duplicate analysis run for a repository."""

    __tablename__ = "analysis_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    repository_id = Column(Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False)
    status = Column(Text, nullable=False, default="queued")  # see services.job_state
    processing_stage = Column(Text, nullable=False, default="fetching")
    stage_number = Column(Integer, nullable=False, default=1)  # 1-4, lockstep with processing_stage
    stage_progress = Column(Float, nullable=False, default=0.0)  # 0-100, stage-local
    total_issues_count = Column(Integer, nullable=False, default=0)
    processed_issues_count = Column(Integer, nullable=False, default=0)  # Stage 1 progress
    embedded_issues_count = Column(Integer, nullable=False, default=0)  # Stage 2 progress
    failed_items_count = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    report = Column(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
    stage_started_at = Column(DateTime)
    last_processed_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Relationships
    repository = relationship("Repository", back_populates="jobs")

    __table_args__ = (
        Index("idx_analysis_jobs_repo_status", "repository_id", "status"),
        Index("idx_analysis_jobs_status", "status"),
    )


class JobItem(Base):
    """One issue's unit of embedding work within a job."""

    __tablename__ = "analysis_job_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id = Column(Uuid, ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False)
    issue_number = Column(Integer, nullable=False)
    issue_title = Column(Text, nullable=False)
    issue_body = Column(Text, nullable=False, default="")
    embedding_status = Column(Text, nullable=False, default="pending")  # 'pending', 'processing', 'completed', 'error'
    embedding = Column(Vector(settings.EMBED_DIM))
    error_message = Column(Text)
    retry_count = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime)
    last_retry_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("job_id", "issue_number", name="uq_job_items_job_issue"),
        Index("idx_job_items_job_status", "job_id", "embedding_status"),
    )
