"""Broker bookkeeping for scheduled analysis work."""

from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field

from capture_analysis.config import settings
from capture_analysis.domain.analysis.schema import JobState


class AnalysisJob(SQLModel, table=True):
    """Queue entry wrapping a capture reference."""
    __tablename__ = "analysis_jobs"

    id: Optional[int] = Field(default=None, primary_key=True)
    item_id: str = Field(index=True)
    resource_locator: str
    item_version: int = Field(default=1)

    state: str = Field(default=JobState.WAITING.value, index=True)
    priority: int = Field(default=1, index=True)  # lower runs first
    timeout_seconds: int = Field(default_factory=lambda: settings.job_timeout_seconds)

    attempts_made: int = Field(default=0)
    stall_count: int = Field(default=0)
    worker_id: Optional[str] = None
    outcome: Optional[str] = None  # analyzed, skipped
    last_error: Optional[str] = None

    enqueued_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    available_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
