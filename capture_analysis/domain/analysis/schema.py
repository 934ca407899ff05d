from pydantic import BaseModel, Field
from typing import Literal, List, Optional, Dict, Any
from datetime import datetime
from enum import Enum


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


OUTSTANDING_JOB_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)

ActivityCategory = Literal["productive", "neutral", "distracting"]

ACTIVITY_CATEGORIES = ("productive", "neutral", "distracting")
ACTIVITY_TYPES = (
    "coding", "browsing", "video", "gaming", "document", "social",
    "communication", "design", "reading", "meeting", "other"
)
COLOR_SCHEMES = ("dark", "light", "mixed", "unknown")
SCREEN_DENSITIES = ("cluttered", "organized", "minimal")
TIME_OF_DAY_HINTS = ("morning", "afternoon", "evening", "night", "unknown")
ATTENTION_LEVELS = ("high", "medium", "low")
CONTENT_TYPES = ("text", "video", "image", "mixed", "code", "data")


class UIElements(BaseModel):
    tabs_count: int = Field(default=0, ge=0)
    windows_count: int = Field(default=1, ge=0)
    visible_notifications: bool = False
    full_screen: bool = False
    multiple_monitors: bool = False


class ScreenAnalysis(BaseModel):
    """Semantic description of one capture.

    Every field has a default so a partially populated model reply still
    yields a complete record downstream.
    """
    app_name: str = "Unknown Application"
    window_title: str = ""
    activity_category: ActivityCategory = "neutral"
    activity_type: str = "other"
    focus_score: int = Field(default=50, ge=0, le=100)
    content_summary: str = "Screenshot analysis"

    detected_text: str = ""
    detected_objects: List[str] = Field(default_factory=list)
    ui_elements: UIElements = Field(default_factory=UIElements)

    website_url: Optional[str] = None
    domain: Optional[str] = None
    programming_language: Optional[str] = None
    file_type: Optional[str] = None

    distraction_indicators: List[str] = Field(default_factory=list)
    productivity_indicators: List[str] = Field(default_factory=list)
    visible_brands: List[str] = Field(default_factory=list)
    color_scheme: str = "unknown"
    screen_density: str = "organized"

    user_action: str = "unknown"
    time_of_day_hint: str = "unknown"
    multitasking_detected: bool = False
    attention_level: str = "medium"
    content_type: str = "mixed"
    sensitive_info_detected: bool = False
    keywords: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class VisionResult(BaseModel):
    """Outcome of one adapter call; the adapter never raises."""
    success: bool
    analysis: Optional[ScreenAnalysis] = None
    model: Optional[str] = None
    tokens_used: int = 0
    attempts: int = 0
    retries: int = 0
    defaults_applied: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    total: int = 0


class SweepResult(BaseModel):
    queued: int = 0
    failed: int = 0
    skipped: int = 0


class PruneResult(BaseModel):
    completed: int = 0
    failed: int = 0


class HealthReport(BaseModel):
    healthy: bool
    model: Optional[str] = None
    detail: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CaptureStatusResponse(BaseModel):
    id: str
    processing_status: ProcessingStatus
    analysis_result: Optional[Dict[str, Any]] = None
    processing_error: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime
    version: int
