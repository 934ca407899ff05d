"""
Database-backed job broker.

Jobs live in the analysis_jobs table so they survive process restarts and
can be shared by several worker processes. Claiming uses a compare-and-set
UPDATE on the job state, so two workers can never hold the same job.
"""

from typing import Dict, List, Optional
from datetime import datetime, timedelta
from sqlalchemy import update, delete, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from capture_analysis.config import settings
from capture_analysis.models import AnalysisJob
from capture_analysis.domain.analysis.schema import (
    JobState, OUTSTANDING_JOB_STATES, QueueStats, PruneResult
)
from capture_analysis.core.exceptions import (
    QueueUnavailableException, JobNotFoundException, InvalidStateException
)
from capture_analysis.core.logging_config import get_logger
from capture_analysis.services.prometheus_metrics import get_metrics

logger = get_logger(__name__)

# Candidates inspected per claim round before giving up to the next poll
CLAIM_CANDIDATES = 5


class JobQueue:
    """Broker operations for analysis jobs."""

    def __init__(self, engine: Engine, owns_engine: bool = False):
        self.engine = engine
        self.owns_engine = owns_engine
        self.metrics = get_metrics()

    def enqueue(self, item_id: str, resource_locator: str, item_version: int = 1,
                priority: int = 1, timeout_seconds: Optional[int] = None,
                delay_seconds: float = 0) -> AnalysisJob:
        """
        Add a job for a capture, or return the job already outstanding for it.

        Raises:
            QueueUnavailableException: the broker database cannot be reached
        """
        now = datetime.utcnow()
        timeout_seconds = timeout_seconds or settings.job_timeout_seconds

        with Session(self.engine) as session:
            try:
                outstanding = self._outstanding(session, item_id)
                for existing in outstanding:
                    if existing.item_version == item_version:
                        logger.debug(
                            f"Capture {item_id} already has outstanding job {existing.id}",
                            item_id=item_id,
                            job_id=existing.id
                        )
                        return existing

                for existing in outstanding:
                    if existing.state != JobState.ACTIVE.value:
                        # Not claimed yet, so it can follow the capture's new version
                        existing.item_version = item_version
                        existing.resource_locator = resource_locator
                        session.add(existing)
                        session.commit()
                        session.refresh(existing)
                        logger.info(
                            f"Re-pointed job {existing.id} at capture {item_id} version {item_version}",
                            item_id=item_id,
                            job_id=existing.id
                        )
                        return existing

                job = AnalysisJob(
                    item_id=item_id,
                    resource_locator=resource_locator,
                    item_version=item_version,
                    priority=priority,
                    timeout_seconds=timeout_seconds,
                    state=(JobState.DELAYED if delay_seconds > 0 else JobState.WAITING).value,
                    enqueued_at=now,
                    available_at=now + timedelta(seconds=delay_seconds)
                )
                session.add(job)
                session.commit()
                session.refresh(job)

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to enqueue capture {item_id}: {e}", item_id=item_id)
                raise QueueUnavailableException(str(e))

        self.metrics.record_job_event("enqueued")
        logger.info(
            f"Queued capture {item_id} as job {job.id}",
            item_id=item_id,
            job_id=job.id,
            priority=priority
        )
        return job

    def find_outstanding(self, item_id: str, item_version: Optional[int] = None) -> Optional[AnalysisJob]:
        """Outstanding job for a capture, restricted to one capture version when given."""
        with Session(self.engine) as session:
            for job in self._outstanding(session, item_id):
                if item_version is None or job.item_version == item_version:
                    return job
        return None

    def get(self, job_id: int) -> Optional[AnalysisJob]:
        with Session(self.engine) as session:
            return session.get(AnalysisJob, job_id)

    def claim_next(self, worker_id: str) -> Optional[AnalysisJob]:
        """Claim the next runnable job: lowest priority number, then oldest."""
        now = datetime.utcnow()

        with Session(self.engine) as session:
            try:
                promoted = session.execute(
                    update(AnalysisJob)
                    .where(
                        AnalysisJob.state == JobState.DELAYED.value,
                        AnalysisJob.available_at <= now
                    )
                    .values(state=JobState.WAITING.value)
                ).rowcount
                session.commit()
                if promoted:
                    logger.debug(f"Promoted {promoted} delayed jobs")

                candidates = session.exec(
                    select(AnalysisJob.id)
                    .where(AnalysisJob.state == JobState.WAITING.value)
                    .order_by(AnalysisJob.priority, AnalysisJob.id)
                    .limit(CLAIM_CANDIDATES)
                ).all()

                for job_id in candidates:
                    claimed = session.execute(
                        update(AnalysisJob)
                        .where(
                            AnalysisJob.id == job_id,
                            AnalysisJob.state == JobState.WAITING.value
                        )
                        .values(
                            state=JobState.ACTIVE.value,
                            worker_id=worker_id,
                            started_at=now,
                            attempts_made=AnalysisJob.attempts_made + 1
                        )
                    ).rowcount
                    session.commit()

                    if claimed == 1:
                        job = session.get(AnalysisJob, job_id)
                        session.refresh(job)
                        logger.debug(f"Worker {worker_id} claimed job {job_id}", job_id=job_id)
                        return job

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to claim job for worker {worker_id}: {e}", worker_id=worker_id)
                raise QueueUnavailableException(str(e))

        return None

    def complete(self, job_id: int, outcome: str = "analyzed") -> bool:
        done = self._finish(job_id, JobState.COMPLETED, outcome=outcome, last_error=None)
        if done:
            self.metrics.record_job_event("completed")
        return done

    def fail(self, job_id: int, error: str) -> bool:
        done = self._finish(job_id, JobState.FAILED, last_error=(error or "Job failed")[:1000])
        if done:
            self.metrics.record_job_event("failed")
        return done

    def drop(self, job_id: int) -> None:
        """Delete a job whose capture no longer exists."""
        with Session(self.engine) as session:
            try:
                session.execute(delete(AnalysisJob).where(AnalysisJob.id == job_id))
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to drop job {job_id}: {e}", job_id=job_id)
                raise

        self.metrics.record_job_event("dropped")
        logger.info(f"Dropped job {job_id}", job_id=job_id)

    def mark_stalled(self, job_id: int, max_stalls: int = 1) -> Optional[AnalysisJob]:
        """
        Handle an active job that ran past its timeout.

        The job goes back to waiting until it has stalled more than
        max_stalls times, after which it is failed. Returns the updated job,
        or None when the job was no longer active.
        """
        now = datetime.utcnow()

        with Session(self.engine) as session:
            try:
                job = session.get(AnalysisJob, job_id)
                if job is None or job.state != JobState.ACTIVE.value:
                    return None

                stall_count = job.stall_count + 1
                if stall_count > max_stalls:
                    values = {
                        "state": JobState.FAILED.value,
                        "finished_at": now,
                        "last_error": "job stalled more than allowable limit"
                    }
                else:
                    values = {
                        "state": JobState.WAITING.value,
                        "worker_id": None,
                        "started_at": None,
                        "last_error": "job stalled"
                    }

                moved = session.execute(
                    update(AnalysisJob)
                    .where(
                        AnalysisJob.id == job_id,
                        AnalysisJob.state == JobState.ACTIVE.value,
                        AnalysisJob.stall_count == job.stall_count
                    )
                    .values(stall_count=stall_count, **values)
                ).rowcount
                session.commit()

                if moved != 1:
                    return None

                session.refresh(job)

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to handle stalled job {job_id}: {e}", job_id=job_id)
                raise

        self.metrics.record_job_event("stalled")
        logger.warning(
            f"Job {job_id} stalled ({stall_count}/{max_stalls}), now {job.state}",
            job_id=job_id,
            item_id=job.item_id
        )
        return job

    def find_stalled(self, now: Optional[datetime] = None, grace_seconds: int = 30) -> List[AnalysisJob]:
        """Active jobs whose timeout plus grace elapsed, e.g. after a worker crash."""
        now = now or datetime.utcnow()

        with Session(self.engine) as session:
            active = session.exec(
                select(AnalysisJob).where(AnalysisJob.state == JobState.ACTIVE.value)
            ).all()

        return [
            job for job in active
            if job.started_at is not None
            and job.started_at + timedelta(seconds=job.timeout_seconds + grace_seconds) < now
        ]

    def retry(self, job_id: int, item_version: Optional[int] = None) -> AnalysisJob:
        """Move a failed job back to waiting with fresh counters."""
        with Session(self.engine) as session:
            try:
                job = session.get(AnalysisJob, job_id)
                if job is None:
                    raise JobNotFoundException(job_id)
                if job.state != JobState.FAILED.value:
                    raise InvalidStateException("Job", job.state, "retry")

                now = datetime.utcnow()
                job.state = JobState.WAITING.value
                job.attempts_made = 0
                job.stall_count = 0
                job.worker_id = None
                job.outcome = None
                job.last_error = None
                job.started_at = None
                job.finished_at = None
                job.enqueued_at = now
                job.available_at = now
                if item_version is not None:
                    job.item_version = item_version

                session.add(job)
                session.commit()
                session.refresh(job)

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to retry job {job_id}: {e}", job_id=job_id)
                raise QueueUnavailableException(str(e))

        self.metrics.record_job_event("retried")
        logger.info(f"Retrying job {job_id}", job_id=job_id, item_id=job.item_id)
        return job

    def stats(self) -> QueueStats:
        counts: Dict[str, int] = {state.value: 0 for state in JobState}

        with Session(self.engine) as session:
            rows = session.exec(
                select(AnalysisJob.state, func.count(AnalysisJob.id))
                .group_by(AnalysisJob.state)
            ).all()

        for state, count in rows:
            counts[state] = count

        stats = QueueStats(total=sum(counts.values()), **counts)
        self.metrics.update_queue_stats(counts)
        return stats

    def prune(self, completed_before: datetime, failed_before: datetime) -> PruneResult:
        with Session(self.engine) as session:
            try:
                completed = session.execute(
                    delete(AnalysisJob).where(
                        AnalysisJob.state == JobState.COMPLETED.value,
                        AnalysisJob.finished_at < completed_before
                    )
                ).rowcount
                failed = session.execute(
                    delete(AnalysisJob).where(
                        AnalysisJob.state == JobState.FAILED.value,
                        AnalysisJob.finished_at < failed_before
                    )
                ).rowcount
                session.commit()

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to prune jobs: {e}")
                raise

        logger.info(f"Pruned {completed} completed and {failed} failed jobs")
        return PruneResult(completed=completed, failed=failed)

    def close(self):
        if self.owns_engine:
            self.engine.dispose()

    def _outstanding(self, session: Session, item_id: str) -> List[AnalysisJob]:
        return list(session.exec(
            select(AnalysisJob)
            .where(
                AnalysisJob.item_id == item_id,
                AnalysisJob.state.in_([s.value for s in OUTSTANDING_JOB_STATES])
            )
            .order_by(AnalysisJob.id)
        ).all())

    def _finish(self, job_id: int, state: JobState, **values) -> bool:
        with Session(self.engine) as session:
            try:
                moved = session.execute(
                    update(AnalysisJob)
                    .where(
                        AnalysisJob.id == job_id,
                        AnalysisJob.state == JobState.ACTIVE.value
                    )
                    .values(state=state.value, finished_at=datetime.utcnow(), **values)
                ).rowcount
                session.commit()

            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to mark job {job_id} {state.value}: {e}", job_id=job_id)
                raise

        if moved != 1:
            logger.warning(f"Job {job_id} was not active, {state.value} write skipped", job_id=job_id)
            return False
        return True
