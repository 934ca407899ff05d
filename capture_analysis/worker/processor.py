"""
Job Processor - runs one analysis job against its capture.

Order of writes is always capture first, job second, so a job never reports
success for a capture that was not updated.
"""

from typing import Optional

from capture_analysis.models import AnalysisJob
from capture_analysis.domain.analysis.schema import JobState
from capture_analysis.repositories.captures_repo import CaptureRepository
from capture_analysis.services.job_queue import JobQueue
from capture_analysis.services.vision_client import VisionClient
from capture_analysis.services.prometheus_metrics import get_metrics
from capture_analysis.core.logging_config import get_logger, ContextManager

logger = get_logger(__name__)


class JobProcessor:
    """Drives a capture through processing -> completed/failed for one job."""

    def __init__(self, captures: CaptureRepository, queue: JobQueue,
                 vision: VisionClient, max_stalls: int = 1):
        self.captures = captures
        self.queue = queue
        self.vision = vision
        self.max_stalls = max_stalls
        self.metrics = get_metrics()

    async def process(self, job: AnalysisJob) -> str:
        """
        Process a claimed job.

        Returns:
            One of "completed", "failed", "skipped" or "dropped"
        """
        ContextManager.set_context(job_id=job.id, item_id=job.item_id)

        capture = self.captures.get(job.item_id)
        if capture is None:
            logger.error(f"Capture {job.item_id} not found, dropping job {job.id}")
            self.queue.drop(job.id)
            self.metrics.record_error("item_not_found", "processor")
            return "dropped"

        if not self.captures.mark_processing(job.item_id, job.item_version):
            # Already terminal, or reset since this job was created
            logger.info(
                f"Capture {job.item_id} is {capture.processing_status} "
                f"(version {capture.version}), skipping job {job.id}"
            )
            self.queue.complete(job.id, outcome="skipped")
            self.metrics.record_capture_processed("skipped")
            return "skipped"

        logger.info(f"Processing capture {job.item_id}", attempt=job.attempts_made)
        result = await self.vision.analyze(job.resource_locator)

        if result.success:
            try:
                written = self.captures.mark_completed(
                    job.item_id, job.item_version, result.analysis.model_dump()
                )
            except Exception as e:
                logger.error(f"Failed to store analysis for capture {job.item_id}: {e}")
                written = False

            if not written:
                self.queue.fail(job.id, "Analysis succeeded but the capture could not be updated")
                self.metrics.record_error("capture_write_rejected", "processor")
                return "failed"

            self.queue.complete(job.id, outcome="analyzed")
            self.metrics.record_capture_processed("completed")
            logger.info(
                f"Capture {job.item_id} analyzed",
                retries=result.retries,
                defaults_applied=result.defaults_applied
            )
            return "completed"

        self.fail(job, result.error or "Analysis failed")
        return "failed"

    def fail(self, job: AnalysisJob, error: str) -> None:
        """Fail the capture and then the job."""
        written = self.captures.mark_failed(job.item_id, job.item_version, error)
        self.queue.fail(job.id, error)
        if written:
            self.metrics.record_capture_processed("failed")
        logger.error(f"Analysis failed for capture {job.item_id}: {error}", job_id=job.id, item_id=job.item_id)

    def handle_stall(self, job: AnalysisJob) -> Optional[AnalysisJob]:
        """Requeue a timed-out job, or fail it and its capture once stalls run out."""
        updated = self.queue.mark_stalled(job.id, self.max_stalls)
        if updated is None:
            return None

        if updated.state == JobState.FAILED.value:
            error = f"Analysis timed out after {job.timeout_seconds}s ({updated.stall_count} stalls)"
            if self.captures.mark_failed(job.item_id, job.item_version, error):
                self.metrics.record_capture_processed("failed")
            logger.error(f"Job {job.id} failed after stalling", job_id=job.id, item_id=job.item_id)

        return updated
