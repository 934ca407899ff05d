"""Capture records whose processing_status is observed by dashboards."""

import uuid
from typing import Optional
from datetime import datetime
from sqlmodel import Field, Column, JSON

from capture_analysis.models.base import BaseCreatedUpdated
from capture_analysis.domain.analysis.schema import ProcessingStatus


class Capture(BaseCreatedUpdated, table=True):
    """One screen capture awaiting or having undergone analysis."""
    __tablename__ = "captures"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    resource_locator: str
    processing_status: str = Field(default=ProcessingStatus.PENDING.value, index=True)
    analysis_result: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    processing_error: Optional[str] = None
    processed_at: Optional[datetime] = None

    # Bumped on every reset; workers only write when their job's version matches
    version: int = Field(default=1)
