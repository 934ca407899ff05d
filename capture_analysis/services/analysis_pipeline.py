"""
Analysis Pipeline

Wires the capture repository, job broker, rate limiter, vision client, worker
pool and reconciler together and exposes the operations other services call.
Every operation returns a ServiceResult instead of raising.
"""

from datetime import timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from capture_analysis.config import Settings, settings as default_settings
from capture_analysis.core.exceptions import (
    ConfigurationException, InvalidStateException, ItemNotFoundException,
    JobNotFoundException, PipelineException, QueueUnavailableException
)
from capture_analysis.core.logging_config import get_logger
from capture_analysis.domain.analysis.schema import (
    HealthReport, JobState, ProcessingStatus, PruneResult, QueueStats, SweepResult
)
from capture_analysis.models import Capture
from capture_analysis.repositories.captures_repo import CaptureRepository
from capture_analysis.services.job_queue import JobQueue
from capture_analysis.services.rate_limiter import SlidingWindowRateLimiter
from capture_analysis.services.reconciler import BatchReconciler, ReconcilerScheduler
from capture_analysis.services.result import ServiceResult
from capture_analysis.services.vision_client import VisionClient
from capture_analysis.worker.pool import WorkerPool
from capture_analysis.worker.processor import JobProcessor

logger = get_logger(__name__)


class AnalysisPipeline:
    def __init__(
        self,
        engine: Optional[Engine] = None,
        vision_client: Optional[VisionClient] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        config: Optional[Settings] = None,
        worker_name: str = "worker"
    ):
        self.config = config or default_settings

        owns_engine = engine is None
        if engine is None:
            from capture_analysis.database import engine as default_engine
            engine = default_engine

        self.captures = CaptureRepository(engine)
        self.queue = JobQueue(engine, owns_engine=owns_engine)
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            max_calls=self.config.rate_limit_per_minute,
            safety_margin=self.config.rate_limit_safety_margin,
            sweep_interval=self.config.rate_limit_sweep_interval
        )

        self.vision = vision_client
        if self.vision is None:
            try:
                self.vision = VisionClient(self.rate_limiter)
            except ConfigurationException as e:
                # Queue and status operations still work; workers refuse to start
                logger.error(f"Vision client not configured: {e.message}")

        self.processor = JobProcessor(
            self.captures, self.queue, self.vision, max_stalls=self.config.job_max_stalls
        )
        self.pool = WorkerPool(
            self.queue,
            self.processor,
            concurrency=self.config.queue_concurrency,
            poll_interval=self.config.worker_poll_interval,
            shutdown_timeout=self.config.worker_shutdown_timeout,
            name=worker_name
        )
        self.reconciler = BatchReconciler(
            self.captures,
            self.queue,
            processor=self.processor,
            job_priority=self.config.job_priority,
            job_timeout_seconds=self.config.job_timeout_seconds,
            completed_retention=timedelta(hours=self.config.completed_job_retention_hours),
            failed_retention=timedelta(days=self.config.failed_job_retention_days),
            stall_grace_seconds=self._stall_grace_seconds()
        )
        self.scheduler = ReconcilerScheduler(self.reconciler, batch_limit=self.config.reconcile_batch_limit)
        self._started = False

    def _stall_grace_seconds(self) -> float:
        # A live worker may sit paused on the rate limiter once per vision attempt
        limiter_waits = (self.config.vision_max_retries + 1) * (
            self.rate_limiter.window_seconds + self.rate_limiter.safety_margin
        )
        return self.config.stall_grace_seconds + limiter_waits

    # ===== LIFECYCLE =====

    async def start(self, workers: bool = True, schedule: bool = True):
        if self._started:
            return
        if workers and self.vision is None:
            raise ConfigurationException("vision_api_key", "workers need a configured vision client")

        self.rate_limiter.start_sweeper()
        if workers:
            # Jobs left active by a previous process are recovered before new work starts
            self.reconciler.recover_stalled()
            self.pool.start()
        if schedule:
            self.scheduler.start()

        self._started = True
        logger.info("Analysis pipeline started", workers=workers, schedule=schedule)

    async def shutdown(self):
        logger.info("Shutting down analysis pipeline")
        await self.pool.stop()
        self.scheduler.stop()
        await self.rate_limiter.stop_sweeper()
        if self.vision is not None:
            await self.vision.close()
        self.queue.close()
        self._started = False

    # ===== OPERATIONS =====

    def enqueue_for_analysis(self, item_id: str, locator: Optional[str] = None) -> ServiceResult[int]:
        return self._run("enqueue_for_analysis", self._enqueue, item_id, locator)

    def get_queue_stats(self) -> ServiceResult[QueueStats]:
        return self._run("get_queue_stats", self.queue.stats)

    def count_captures(self) -> ServiceResult[Dict[str, int]]:
        return self._run("count_captures", self.captures.count_by_status)

    def get_capture(self, item_id: str) -> ServiceResult[Capture]:
        return self._run("get_capture", self._get_capture, item_id)

    def retry_job(self, job_id: int) -> ServiceResult[int]:
        return self._run("retry_job", self._retry_job, job_id)

    def reprocess(self, item_id: str) -> ServiceResult[int]:
        return self._run("reprocess", self._reprocess, item_id)

    def sweep_pending(self, limit: Optional[int] = None) -> ServiceResult[SweepResult]:
        return self._run("sweep_pending", self._sweep_pending, limit or self.config.reconcile_batch_limit)

    def prune(self) -> ServiceResult[PruneResult]:
        return self._run("prune", self.reconciler.prune)

    async def check_health(self) -> HealthReport:
        if self.vision is None:
            return HealthReport(healthy=False, detail="Vision client not configured")
        return await self.vision.check_health()

    # ===== IMPLEMENTATION =====

    def _run(self, operation: str, func: Callable[..., Any], *args) -> ServiceResult:
        try:
            return ServiceResult.ok(func(*args))
        except PipelineException as e:
            logger.warning(f"{operation} failed: {e.message}", operation=operation, error_code=e.error_code)
            return ServiceResult.from_exception(e)
        except SQLAlchemyError as e:
            logger.error(f"{operation} failed: {e}", operation=operation)
            return ServiceResult.from_exception(QueueUnavailableException(type(e).__name__))

    def _get_capture(self, item_id: str) -> Capture:
        capture = self.captures.get(item_id)
        if capture is None:
            raise ItemNotFoundException(item_id)
        return capture

    def _enqueue(self, item_id: str, locator: Optional[str]) -> int:
        capture = self._get_capture(item_id)

        if capture.processing_status != ProcessingStatus.PENDING.value:
            existing = self.queue.find_outstanding(item_id, capture.version)
            if existing is not None:
                return existing.id
            raise InvalidStateException("Capture", capture.processing_status, "enqueue")

        job = self.queue.enqueue(
            item_id,
            locator or capture.resource_locator,
            item_version=capture.version,
            priority=self.config.job_priority,
            timeout_seconds=self.config.job_timeout_seconds
        )
        self.pool.notify()
        return job.id

    def _reprocess(self, item_id: str) -> int:
        capture = self.captures.reset(item_id)
        return self._enqueue(capture.id, None)

    def _retry_job(self, job_id: int) -> int:
        job = self.queue.get(job_id)
        if job is None:
            raise JobNotFoundException(job_id)
        if job.state != JobState.FAILED.value:
            raise InvalidStateException("Job", job.state, "retry")

        capture = self._get_capture(job.item_id)
        if capture.processing_status != ProcessingStatus.PENDING.value:
            # Terminal captures would make the retried job a no-op
            capture = self.captures.reset(capture.id)

        existing = self.queue.find_outstanding(capture.id, capture.version)
        if existing is not None:
            return existing.id

        retried = self.queue.retry(job_id, item_version=capture.version)
        self.pool.notify()
        return retried.id

    def _sweep_pending(self, limit: int) -> SweepResult:
        result = self.reconciler.sweep_pending(limit=limit)
        if result.queued:
            self.pool.notify()
        return result
