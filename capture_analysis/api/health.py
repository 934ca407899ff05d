"""
Health API endpoints for v1

Liveness, readiness and vision reachability. Responses report status only,
never raw exception text.
"""

from datetime import datetime
from typing import Any, Dict
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlmodel import Session

from capture_analysis.core.logging_config import get_logger
from capture_analysis.dependencies import get_pipeline
from capture_analysis.services.analysis_pipeline import AnalysisPipeline

router = APIRouter(prefix="/api/v1/health", tags=["health"])
logger = get_logger(__name__)


@router.get("/liveness")
async def liveness() -> Dict[str, Any]:
    return {"status": "alive", "timestamp": datetime.utcnow().isoformat()}


@router.get("/vision")
async def vision_health(pipeline: AnalysisPipeline = Depends(get_pipeline)):
    """Probe the vision API. 503 when it is unreachable."""
    report = await pipeline.check_health()
    return JSONResponse(
        status_code=200 if report.healthy else 503,
        content=report.model_dump(mode="json")
    )


@router.get("/readiness")
async def readiness(pipeline: AnalysisPipeline = Depends(get_pipeline)):
    checks: Dict[str, Any] = {}

    try:
        with Session(pipeline.captures.engine) as session:
            session.execute(text("SELECT 1"))
        checks["database"] = {"healthy": True}
    except Exception as e:
        logger.error(f"Readiness database check failed: {e}")
        checks["database"] = {"healthy": False, "detail": "Database unreachable"}

    report = await pipeline.check_health()
    checks["vision"] = {"healthy": report.healthy, "detail": report.detail}
    checks["workers"] = {"running": pipeline.pool.running, "in_flight": pipeline.pool.in_flight}

    ready = checks["database"]["healthy"] and report.healthy
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "timestamp": datetime.utcnow().isoformat(),
            "checks": checks
        }
    )
