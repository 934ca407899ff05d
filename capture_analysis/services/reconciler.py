"""
Batch Reconciler

Periodic housekeeping that keeps captures and jobs consistent:
- sweep_pending: re-enqueue pending captures that have no outstanding job
- recover_stalled: requeue or fail jobs left active by a crashed worker
- prune: drop old completed and failed jobs
"""

from datetime import datetime, timedelta
from typing import Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from capture_analysis.config import settings
from capture_analysis.core.exceptions import QueueUnavailableException
from capture_analysis.core.logging_config import get_logger
from capture_analysis.domain.analysis.schema import PruneResult, SweepResult
from capture_analysis.repositories.captures_repo import CaptureRepository
from capture_analysis.services.job_queue import JobQueue
from capture_analysis.worker.processor import JobProcessor

logger = get_logger(__name__)


class BatchReconciler:
    def __init__(
        self,
        captures: CaptureRepository,
        queue: JobQueue,
        processor: Optional[JobProcessor] = None,
        job_priority: int = 1,
        job_timeout_seconds: Optional[int] = None,
        completed_retention: timedelta = timedelta(hours=24),
        failed_retention: timedelta = timedelta(days=7),
        stall_grace_seconds: float = 30
    ):
        self.captures = captures
        self.queue = queue
        self.processor = processor
        self.job_priority = job_priority
        self.job_timeout_seconds = job_timeout_seconds or settings.job_timeout_seconds
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention
        self.stall_grace_seconds = stall_grace_seconds

    def sweep_pending(self, limit: int = 10, now: Optional[datetime] = None) -> SweepResult:
        """Enqueue up to `limit` pending captures, oldest first.

        Captures that already have an outstanding job are counted as skipped,
        so running the sweep twice never produces duplicate work.
        """
        result = SweepResult()
        pending = self.captures.list_pending(limit=limit, created_before=now or datetime.utcnow())

        for capture in pending:
            if self.queue.find_outstanding(capture.id, capture.version) is not None:
                result.skipped += 1
                continue

            try:
                self.queue.enqueue(
                    capture.id,
                    capture.resource_locator,
                    item_version=capture.version,
                    priority=self.job_priority,
                    timeout_seconds=self.job_timeout_seconds
                )
                result.queued += 1
            except QueueUnavailableException as e:
                logger.error(f"Failed to queue pending capture {capture.id}: {e.message}", item_id=capture.id)
                result.failed += 1

        logger.info(
            f"Pending sweep: {result.queued} queued, {result.failed} failed, {result.skipped} skipped",
            operation="sweep_pending"
        )
        return result

    def recover_stalled(self, now: Optional[datetime] = None) -> int:
        """Apply stall handling to active jobs nobody is working on anymore."""
        if self.processor is None:
            return 0

        stalled = self.queue.find_stalled(now=now, grace_seconds=self.stall_grace_seconds)
        recovered = 0
        for job in stalled:
            if self.processor.handle_stall(job) is not None:
                recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stalled jobs", operation="recover_stalled")
        return recovered

    def prune(self, now: Optional[datetime] = None) -> PruneResult:
        now = now or datetime.utcnow()
        return self.queue.prune(
            completed_before=now - self.completed_retention,
            failed_before=now - self.failed_retention
        )


class ReconcilerScheduler:
    """Runs the reconciler on fixed intervals inside the event loop."""

    def __init__(self, reconciler: BatchReconciler, batch_limit: Optional[int] = None):
        self.reconciler = reconciler
        self.batch_limit = batch_limit or settings.reconcile_batch_limit
        self.scheduler = AsyncIOScheduler()

    def start(self):
        logger.info("Starting reconciler scheduler")

        self.scheduler.add_job(
            self._sweep,
            IntervalTrigger(minutes=settings.reconcile_interval_minutes),
            id="sweep_pending",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.add_job(
            self._recover,
            IntervalTrigger(minutes=settings.stall_check_interval_minutes),
            id="recover_stalled",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.add_job(
            self._prune,
            IntervalTrigger(hours=settings.prune_interval_hours),
            id="prune_jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.start()

    def stop(self):
        if self.scheduler.running:
            logger.info("Stopping reconciler scheduler")
            self.scheduler.shutdown(wait=False)

    async def _sweep(self):
        try:
            self.reconciler.sweep_pending(limit=self.batch_limit)
        except Exception as e:
            logger.error(f"Scheduled pending sweep failed: {e}")

    async def _recover(self):
        try:
            self.reconciler.recover_stalled()
        except Exception as e:
            logger.error(f"Scheduled stall recovery failed: {e}")

    async def _prune(self):
        try:
            self.reconciler.prune()
        except Exception as e:
            logger.error(f"Scheduled job pruning failed: {e}")
