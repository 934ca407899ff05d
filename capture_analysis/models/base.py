"""Base models shared by the pipeline tables."""

from sqlmodel import SQLModel, Field
from datetime import datetime


class BaseCreatedUpdated(SQLModel):
    """Base model for mutable tables (created_at + updated_at)."""
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
