"""Duplicate pair model."""

from sqlalchemy import Column, Float, ForeignKey, Index, Integer, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from dupescan.database import Base


class DuplicatePair(Base):
    """Two issues of the same job whose embeddings are near-identical."""

    __tablename__ = "duplicate_issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(Uuid, ForeignKey("analysis_jobs.id", ondelete="CASCADE"), nullable=False)
    source_item_id = Column(Uuid, ForeignKey("analysis_job_items.id", ondelete="CASCADE"), nullable=False)
    duplicate_item_id = Column(Uuid, ForeignKey("analysis_job_items.id", ondelete="CASCADE"), nullable=False)
    confidence_score = Column(Float, nullable=False)  # Cosine similarity clamped to [0, 1]

    # Relationships
    source_item = relationship("JobItem", foreign_keys=[source_item_id])
    duplicate_item = relationship("JobItem", foreign_keys=[duplicate_item_id])

    __table_args__ = (
        UniqueConstraint("source_item_id", "duplicate_item_id", name="uq_duplicate_pair"),
        Index("idx_duplicate_issues_job_id", "job_id"),
    )
