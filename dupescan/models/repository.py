"""Tracked repository model."""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, Text
from sqlalchemy.orm import relationship

from dupescan.database import Base


class Repository(Base):
    """A GitHub repository tracked for duplicate analysis."""

    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(Text, nullable=False)
    name = Column(Text, nullable=False)
    full_name = Column(Text, nullable=False, unique=True)  # 'owner/name'
    is_private = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_analysis_timestamp = Column(DateTime)

    # Relationships
    jobs = relationship("AnalysisJob", back_populates="repository", passive_deletes=True)
