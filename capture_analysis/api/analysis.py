"""
Analysis API endpoints for v1

Operator and collaborator access to capture status and the analysis queue.
"""

from typing import Dict, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from capture_analysis.core.logging_config import get_logger
from capture_analysis.dependencies import get_pipeline
from capture_analysis.domain.analysis.schema import (
    CaptureStatusResponse, PruneResult, QueueStats, SweepResult
)
from capture_analysis.services.analysis_pipeline import AnalysisPipeline

router = APIRouter(prefix="/api/v1/analysis", tags=["analysis"])
logger = get_logger(__name__)


class EnqueueRequest(BaseModel):
    locator: Optional[str] = None


class JobResponse(BaseModel):
    success: bool = True
    job_id: int


class QueueOverview(BaseModel):
    queue: QueueStats
    captures: Dict[str, int]


@router.get("/captures/{item_id}", response_model=CaptureStatusResponse)
async def get_capture_status(item_id: str, pipeline: AnalysisPipeline = Depends(get_pipeline)):
    capture = pipeline.get_capture(item_id).unwrap()
    return CaptureStatusResponse(
        id=capture.id,
        processing_status=capture.processing_status,
        analysis_result=capture.analysis_result,
        processing_error=capture.processing_error,
        processed_at=capture.processed_at,
        created_at=capture.created_at,
        version=capture.version
    )


@router.post("/captures/{item_id}/enqueue", response_model=JobResponse, status_code=202)
async def enqueue_capture(
    item_id: str,
    request: Optional[EnqueueRequest] = None,
    pipeline: AnalysisPipeline = Depends(get_pipeline)
):
    """Queue a pending capture for analysis."""
    locator = request.locator if request else None
    job_id = pipeline.enqueue_for_analysis(item_id, locator).unwrap()
    return JobResponse(job_id=job_id)


@router.post("/captures/{item_id}/reprocess", response_model=JobResponse, status_code=202)
async def reprocess_capture(item_id: str, pipeline: AnalysisPipeline = Depends(get_pipeline)):
    """Reset a capture to pending and queue it again."""
    job_id = pipeline.reprocess(item_id).unwrap()
    logger.info(f"Capture {item_id} queued for reprocessing as job {job_id}", item_id=item_id)
    return JobResponse(job_id=job_id)


@router.get("/queue/stats", response_model=QueueOverview)
async def get_queue_stats(pipeline: AnalysisPipeline = Depends(get_pipeline)):
    return QueueOverview(
        queue=pipeline.get_queue_stats().unwrap(),
        captures=pipeline.count_captures().unwrap()
    )


@router.post("/queue/jobs/{job_id}/retry", response_model=JobResponse, status_code=202)
async def retry_job(job_id: int, pipeline: AnalysisPipeline = Depends(get_pipeline)):
    return JobResponse(job_id=pipeline.retry_job(job_id).unwrap())


@router.post("/queue/batch", response_model=SweepResult)
async def trigger_batch(
    limit: int = Query(10, ge=1, le=500),
    pipeline: AnalysisPipeline = Depends(get_pipeline)
):
    """Queue up to `limit` pending captures, oldest first."""
    return pipeline.sweep_pending(limit).unwrap()


@router.post("/queue/cleanup", response_model=PruneResult)
async def cleanup_queue(pipeline: AnalysisPipeline = Depends(get_pipeline)):
    return pipeline.prune().unwrap()
