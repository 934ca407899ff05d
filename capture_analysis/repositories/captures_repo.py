"""Persistence and status transitions for captures.

The worker is the only writer of the forward transitions. Every worker write
is a conditional update keyed on the capture version the job was created for,
so a capture that was reset while a job was in flight is never overwritten by
the stale job's outcome.
"""

from typing import Dict, List, Optional, Any
from datetime import datetime
from sqlalchemy import update, func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from capture_analysis.models import Capture
from capture_analysis.domain.analysis.schema import ProcessingStatus
from capture_analysis.core.exceptions import ItemNotFoundException
from capture_analysis.core.logging_config import get_logger

logger = get_logger(__name__)


class CaptureRepository:
    """Repository for capture records and their processing status."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def create(self, resource_locator: str, item_id: Optional[str] = None,
               created_at: Optional[datetime] = None) -> Capture:
        """Create a pending capture (normally done by the ingestion path)."""
        capture = Capture(resource_locator=resource_locator)
        if item_id:
            capture.id = item_id
        if created_at:
            capture.created_at = created_at

        with Session(self.engine) as session:
            session.add(capture)
            session.commit()
            session.refresh(capture)

        logger.debug(f"Created capture {capture.id}", item_id=capture.id)
        return capture

    def get(self, item_id: str) -> Optional[Capture]:
        with Session(self.engine) as session:
            return session.get(Capture, item_id)

    def mark_processing(self, item_id: str, version: int) -> bool:
        """pending|processing -> processing. Returns False if the capture moved on."""
        return self._transition(
            item_id,
            version,
            allowed_from=(ProcessingStatus.PENDING, ProcessingStatus.PROCESSING),
            values={"processing_status": ProcessingStatus.PROCESSING.value}
        )

    def mark_completed(self, item_id: str, version: int, analysis: Dict[str, Any]) -> bool:
        """processing -> completed, writing the analysis payload in the same statement."""
        return self._transition(
            item_id,
            version,
            allowed_from=(ProcessingStatus.PROCESSING,),
            values={
                "processing_status": ProcessingStatus.COMPLETED.value,
                "analysis_result": analysis,
                "processing_error": None,
                "processed_at": datetime.utcnow()
            }
        )

    def mark_failed(self, item_id: str, version: int, error: str) -> bool:
        """processing -> failed, recording a human-readable reason."""
        return self._transition(
            item_id,
            version,
            allowed_from=(ProcessingStatus.PROCESSING,),
            values={
                "processing_status": ProcessingStatus.FAILED.value,
                "analysis_result": None,
                "processing_error": (error or "Analysis failed")[:1000],
                "processed_at": datetime.utcnow()
            }
        )

    def reset(self, item_id: str) -> Capture:
        """Move a capture back to pending for reprocessing.

        Clears result, error and processed_at and bumps the version. A capture
        that is already pending is returned unchanged so any job queued for it
        stays valid.
        """
        with Session(self.engine) as session:
            try:
                capture = session.get(Capture, item_id)
                if capture is None:
                    raise ItemNotFoundException(item_id)

                if capture.processing_status == ProcessingStatus.PENDING.value:
                    return capture

                previous = capture.processing_status
                capture.processing_status = ProcessingStatus.PENDING.value
                capture.analysis_result = None
                capture.processing_error = None
                capture.processed_at = None
                capture.version += 1
                capture.updated_at = datetime.utcnow()

                session.add(capture)
                session.commit()
                session.refresh(capture)

                logger.info(
                    f"Reset capture {item_id} from {previous} to pending",
                    item_id=item_id,
                    version=capture.version
                )
                return capture

            except ItemNotFoundException:
                raise
            except Exception as e:
                session.rollback()
                logger.error(f"Failed to reset capture {item_id}: {e}", item_id=item_id)
                raise

    def list_pending(self, limit: int = 10, created_before: Optional[datetime] = None) -> List[Capture]:
        """Pending captures, oldest first."""
        created_before = created_before or datetime.utcnow()

        with Session(self.engine) as session:
            return list(session.exec(
                select(Capture).where(
                    Capture.processing_status == ProcessingStatus.PENDING.value,
                    Capture.created_at <= created_before
                ).order_by(
                    Capture.created_at
                ).limit(limit)
            ).all())

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ProcessingStatus}

        with Session(self.engine) as session:
            rows = session.exec(
                select(Capture.processing_status, func.count(Capture.id))
                .group_by(Capture.processing_status)
            ).all()

        for status, count in rows:
            counts[status] = count
        return counts

    def _transition(self, item_id: str, version: int, allowed_from, values: Dict[str, Any]) -> bool:
        with Session(self.engine) as session:
            try:
                result = session.execute(
                    update(Capture)
                    .where(
                        Capture.id == item_id,
                        Capture.version == version,
                        Capture.processing_status.in_([s.value for s in allowed_from])
                    )
                    .values(updated_at=datetime.utcnow(), **values)
                )
                session.commit()

            except Exception as e:
                session.rollback()
                logger.error(
                    f"Failed to move capture {item_id} to {values['processing_status']}: {e}",
                    item_id=item_id
                )
                raise

        if result.rowcount != 1:
            logger.warning(
                f"Capture {item_id} not moved to {values['processing_status']} "
                f"(status changed or version {version} superseded)",
                item_id=item_id
            )
            return False

        return True
