#!/usr/bin/env python3
"""
Analysis Worker - runs the worker pool and reconciler outside the API process.
"""

import os
import sys
import signal
import asyncio
import logging
import argparse
from typing import Optional

from dotenv import load_dotenv

# Settings are built when capture_analysis.config is imported
load_dotenv()

from capture_analysis.config import settings  # noqa: E402
from capture_analysis.core.exceptions import PipelineException  # noqa: E402
from capture_analysis.core.logging_config import get_logger, setup_logging  # noqa: E402
from capture_analysis.database import create_db_and_tables  # noqa: E402
from capture_analysis.services.analysis_pipeline import AnalysisPipeline  # noqa: E402
from capture_analysis.worker.metrics_server import MetricsServer  # noqa: E402

logger = get_logger(__name__)


class AnalysisWorker:
    """Main analysis worker class"""

    def __init__(self, concurrency: Optional[int] = None, metrics_port: Optional[int] = None,
                 enable_scheduler: bool = True):
        overrides = {}
        if concurrency:
            overrides["queue_concurrency"] = concurrency
        self.config = settings.model_copy(update=overrides)

        self.enable_scheduler = enable_scheduler
        self.metrics_port = settings.metrics_port if metrics_port is None else metrics_port
        self.metrics_server: Optional[MetricsServer] = None
        self.pipeline: Optional[AnalysisPipeline] = None
        self._stop_event: Optional[asyncio.Event] = None

    def request_stop(self, signum: Optional[int] = None):
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        if self._stop_event is not None:
            self._stop_event.set()

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop, sig)

    async def run(self):
        self._stop_event = asyncio.Event()
        self._setup_signal_handlers()

        create_db_and_tables()
        self.pipeline = AnalysisPipeline(config=self.config, worker_name=f"worker-{os.getpid()}")

        if self.metrics_port:
            self.metrics_server = MetricsServer(port=self.metrics_port)
            self.metrics_server.start()

        await self.pipeline.start(workers=True, schedule=self.enable_scheduler)
        logger.info(
            "Analysis worker started",
            concurrency=self.config.queue_concurrency,
            rate_limit_per_minute=self.config.rate_limit_per_minute
        )

        # Pick up whatever was left pending while no worker was running
        sweep = self.pipeline.sweep_pending()
        if sweep.success:
            logger.info(f"Startup sweep queued {sweep.data.queued} pending captures")

        try:
            await self._stop_event.wait()
        finally:
            await self.pipeline.shutdown()
            if self.metrics_server:
                self.metrics_server.stop()
            logger.info("Analysis worker stopped")

    async def run_maintenance(self, limit: int):
        """Single reconciliation pass without starting workers."""
        create_db_and_tables()
        pipeline = AnalysisPipeline(config=self.config)
        try:
            sweep = pipeline.sweep_pending(limit).unwrap()
            pruned = pipeline.prune().unwrap()
            recovered = pipeline.reconciler.recover_stalled()
            logger.info(
                "Maintenance pass finished",
                queued=sweep.queued,
                failed_to_queue=sweep.failed,
                skipped=sweep.skipped,
                pruned_completed=pruned.completed,
                pruned_failed=pruned.failed,
                recovered=recovered
            )
        finally:
            await pipeline.shutdown()


def main():
    """CLI entry point"""
    parser = argparse.ArgumentParser(description='Capture Analysis Worker')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    parser.add_argument('--concurrency', '-c', type=int, default=None,
                        help='Number of concurrent workers (default: QUEUE_CONCURRENCY)')
    parser.add_argument('--metrics-port', type=int, default=None,
                        help='Port for the Prometheus metrics server, 0 to disable')
    parser.add_argument('--no-scheduler', action='store_true',
                        help='Do not run the periodic reconciler in this process')
    parser.add_argument('--maintenance', action='store_true',
                        help='Run one sweep/prune/stall-recovery pass and exit')
    parser.add_argument('--limit', type=int, default=settings.reconcile_batch_limit,
                        help='Batch size for --maintenance sweeps')

    args = parser.parse_args()

    setup_logging(log_level="DEBUG" if args.verbose else settings.log_level, log_format=settings.log_format)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    worker = AnalysisWorker(
        concurrency=args.concurrency,
        metrics_port=args.metrics_port,
        enable_scheduler=not args.no_scheduler
    )

    try:
        if args.maintenance:
            asyncio.run(worker.run_maintenance(args.limit))
        else:
            asyncio.run(worker.run())
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")
    except PipelineException as e:
        logger.error(f"Worker failed: {e.message}", error_code=e.error_code)
        sys.exit(1)
    except Exception as e:
        logger.error(f"Worker failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
