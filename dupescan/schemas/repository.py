"""Repository-related Pydantic schemas."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class RepositoryCreate(BaseModel):
    """Schema for tracking a GitHub repository."""

    owner: str
    name: str


class RepositoryResponse(BaseModel):
    """A tracked repository."""

    id: int
    owner: str
    name: str
    full_name: str
    is_private: bool = False
    created_at: Optional[datetime] = None
    last_analysis_timestamp: Optional[datetime] = None

    model_config = {"from_attributes": True}
