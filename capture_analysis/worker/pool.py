"""
Worker Pool - fixed number of asyncio workers pulling jobs from the broker.
"""

import asyncio
from typing import List, Optional

from capture_analysis.core.exceptions import QueueUnavailableException
from capture_analysis.core.job_budget import JobBudget, bind_budget, unbind_budget
from capture_analysis.core.logging_config import get_logger, ContextManager
from capture_analysis.models import AnalysisJob
from capture_analysis.services.job_queue import JobQueue
from capture_analysis.worker.processor import JobProcessor

logger = get_logger(__name__)


class WorkerPool:
    """Runs `concurrency` worker loops; each job is bounded by its own processing budget."""

    def __init__(
        self,
        queue: JobQueue,
        processor: JobProcessor,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        shutdown_timeout: float = 30.0,
        name: str = "worker"
    ):
        self.queue = queue
        self.processor = processor
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.name = name

        self._tasks: List[asyncio.Task] = []
        self._stopping: Optional[asyncio.Event] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._in_flight = 0
        self._processed = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping.is_set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def start(self) -> None:
        if self._tasks:
            return

        self._stopping = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker_loop(f"{self.name}-{index + 1}"))
            for index in range(self.concurrency)
        ]
        logger.info(f"Worker pool started with {self.concurrency} workers")

    def notify(self) -> None:
        """Wake idle workers after new work was enqueued."""
        if self._wakeup is not None:
            self._wakeup.set()

    async def stop(self) -> None:
        """Let in-flight jobs finish (bounded by shutdown_timeout), then cancel."""
        if not self._tasks:
            return

        logger.info(f"Stopping worker pool ({self._in_flight} jobs in flight)")
        self._stopping.set()
        self._wakeup.set()

        done, pending = await asyncio.wait(self._tasks, timeout=self.shutdown_timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} workers still busy after {self.shutdown_timeout}s")
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Worker exited with error: {task.exception()}")

        self._tasks = []
        logger.info(f"Worker pool stopped, {self._processed} jobs processed")

    async def _worker_loop(self, worker_id: str) -> None:
        ContextManager.set_context(worker_id=worker_id)
        logger.debug(f"{worker_id} started")

        while not self._stopping.is_set():
            try:
                job = self.queue.claim_next(worker_id)
            except QueueUnavailableException as e:
                logger.error(f"{worker_id} could not reach the job queue: {e.message}")
                await self._idle()
                continue

            if job is None:
                await self._idle()
                continue

            self._in_flight += 1
            try:
                await self._run_within_budget(job)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Job {job.id} timed out after {job.timeout_seconds}s",
                    job_id=job.id,
                    item_id=job.item_id
                )
                try:
                    self.processor.handle_stall(job)
                except Exception as stall_error:
                    # Left active; stall recovery picks it up once the timeout passes
                    logger.error(f"Could not record stall of job {job.id}: {stall_error}", job_id=job.id)
            except Exception as e:
                logger.error(f"Job {job.id} crashed: {e}", job_id=job.id, exc_info=True)
                try:
                    self.processor.fail(job, f"Unexpected processing error: {type(e).__name__}")
                except Exception as fail_error:
                    # Left active; stall recovery picks it up once the timeout passes
                    logger.error(f"Could not record failure of job {job.id}: {fail_error}", job_id=job.id)
            finally:
                self._in_flight -= 1
                self._processed += 1

        logger.debug(f"{worker_id} stopped")

    async def _run_within_budget(self, job: AnalysisJob) -> str:
        """
        Run one job, raising asyncio.TimeoutError once it used up its budget.

        The budget only counts processing time; waits on the rate limiter
        pause it.
        """
        budget = JobBudget(job.timeout_seconds)
        token = bind_budget(budget)
        try:
            task = asyncio.ensure_future(self.processor.process(job))
        finally:
            unbind_budget(token)

        try:
            while not task.done() and not budget.exhausted():
                await asyncio.wait({task}, timeout=max(budget.remaining(), 0.01))
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            if task.cancelled():
                raise asyncio.TimeoutError()
        return task.result()

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            return
        if not self._stopping.is_set():
            self._wakeup.clear()
