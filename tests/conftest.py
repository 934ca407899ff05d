"""
Shared fixtures for the capture analysis test suite.

Tests run against in-memory SQLite and a mocked vision API. Rate limiting and
retry backoff run on a virtual clock, so no test waits on real minutes.
"""

import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.pop("VISION_API_KEY", None)

import asyncio
import json
from types import SimpleNamespace
from typing import Callable, List
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from capture_analysis import models  # noqa: F401
from capture_analysis.config import Settings
from capture_analysis.repositories.captures_repo import CaptureRepository
from capture_analysis.services.job_queue import JobQueue
from capture_analysis.services.rate_limiter import SlidingWindowRateLimiter
from capture_analysis.services.vision_client import VisionClient

API_REQUEST = httpx.Request("POST", "https://vision.test/v1/chat/completions")

VALID_ANALYSIS = {
    "app_name": "Visual Studio Code",
    "window_title": "pool.py - capture-analysis",
    "activity_category": "productive",
    "activity_type": "coding",
    "focus_score": 82,
    "content_summary": "Editing a Python worker pool module",
    "detected_text": "async def _worker_loop",
    "programming_language": "Python",
    "keywords": ["python", "asyncio", "worker"],
    "confidence": 0.9
}


class FakeClock:
    """Monotonic virtual clock; sleeping advances it instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def completion(content: str, total_tokens: int = 150):
    """Shape of an OpenAI chat completion as far as the vision client reads it."""
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens)
    )


def valid_reply(**overrides) -> str:
    return json.dumps({**VALID_ANALYSIS, **overrides})


def connection_error():
    import openai
    return openai.APIConnectionError(request=API_REQUEST)


def status_error(status_code: int, headers=None):
    import openai
    response = httpx.Response(status_code, request=API_REQUEST, headers=headers or {})
    if status_code == 429:
        return openai.RateLimitError("rate limited", response=response, body=None)
    if status_code >= 500:
        return openai.InternalServerError("server error", response=response, body=None)
    return openai.BadRequestError("bad request", response=response, body=None)


def make_openai_client(side_effect) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=side_effect)
    client.close = AsyncMock()
    return client


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def captures(engine) -> CaptureRepository:
    return CaptureRepository(engine)


@pytest.fixture
def queue(engine) -> JobQueue:
    return JobQueue(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(clock) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(max_calls=30, clock=clock, sleep=clock.sleep)


@pytest.fixture
def image_file(tmp_path):
    path = tmp_path / "capture.webp"
    path.write_bytes(b"RIFF\x24\x00\x00\x00WEBPVP8 fake-image-bytes")
    return path


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        queue_concurrency=2,
        worker_poll_interval=0.01,
        worker_shutdown_timeout=2.0,
        job_timeout_seconds=5,
        job_max_stalls=1,
        vision_max_retries=3,
        vision_retry_base_delay=2.0
    )


@pytest.fixture
def make_vision(rate_limiter, clock, tmp_path):
    """Build a VisionClient around a mocked OpenAI client."""

    def factory(side_effect, **kwargs) -> VisionClient:
        options = {
            "model": "test-vision-model",
            "max_retries": 3,
            "base_delay": 2.0,
            "image_root": str(tmp_path),
            "sleep": clock.sleep,
        }
        options.update(kwargs)
        return VisionClient(rate_limiter, client=make_openai_client(side_effect), **options)

    return factory
