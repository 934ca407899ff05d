from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from capture_analysis import __version__
from capture_analysis.config import settings
from capture_analysis.database import create_db_and_tables
from capture_analysis.api import analysis as analysis_v1, health as health_v1
from capture_analysis.core.logging_config import setup_logging, get_logger, ContextManager
from capture_analysis.core.error_handlers import register_exception_handlers
from capture_analysis.dependencies import get_pipeline

setup_logging(log_level=settings.log_level, log_format=settings.log_format)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()

    pipeline = get_pipeline()
    # Workers and the reconciler normally run in the worker process
    await pipeline.start(
        workers=settings.run_embedded_workers,
        schedule=settings.run_embedded_workers
    )
    logger.info("Capture analysis API started", embedded_workers=settings.run_embedded_workers)

    yield

    await pipeline.shutdown()
    logger.info("Capture analysis API stopped")


app = FastAPI(
    title="Capture Analysis Pipeline",
    description="Queue-backed vision analysis of screen captures",
    version=__version__,
    lifespan=lifespan
)

register_exception_handlers(app)


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or ContextManager.generate_request_id()
    ContextManager.set_context(request_id=request_id, operation=f"{request.method} {request.url.path}")
    try:
        response = await call_next(request)
    finally:
        ContextManager.clear_context()
    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(analysis_v1.router)
app.include_router(health_v1.router)


@app.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("capture_analysis.main:app", host=settings.api_host, port=settings.api_port)
