"""
Prometheus Metrics Service

Provides instrumentation for monitoring the analysis pipeline:
- Counters for events (captures processed, vision calls, retries, errors)
- Gauges for current state (queue counts, calls in rate window)
- Histograms for latency (analysis duration, vision API calls, rate waits)
"""

from prometheus_client import Counter, Gauge, Histogram
from typing import Optional
from capture_analysis.core.logging_config import get_logger

logger = get_logger(__name__)


class PrometheusMetricsService:
    """Centralized Prometheus metrics for the capture analysis pipeline."""

    def __init__(self):
        # ===== COUNTERS (cumulative) =====

        self.captures_processed_total = Counter(
            'capture_analysis_processed_total',
            'Total number of captures that reached a terminal state',
            ['status']  # status: completed, failed, skipped
        )

        self.errors_total = Counter(
            'capture_analysis_errors_total',
            'Total number of errors encountered',
            ['error_type', 'component']
        )

        self.vision_calls_total = Counter(
            'capture_analysis_vision_calls_total',
            'Total number of vision API calls',
            ['model', 'status']  # status: success, failure
        )

        self.vision_retries_total = Counter(
            'capture_analysis_vision_retries_total',
            'Total number of vision call retries'
        )

        self.jobs_total = Counter(
            'capture_analysis_jobs_total',
            'Job lifecycle events',
            ['event']  # enqueued, completed, failed, stalled, dropped, retried
        )

        # ===== GAUGES (current value) =====

        self.queue_jobs = Gauge(
            'capture_analysis_queue_jobs',
            'Current number of jobs per queue state',
            ['state']
        )

        self.rate_window_calls = Gauge(
            'capture_analysis_rate_window_calls',
            'Vision calls inside the current rate window'
        )

        # ===== HISTOGRAMS (distributions) =====

        self.analysis_duration = Histogram(
            'capture_analysis_duration_seconds',
            'Time taken to analyze a single capture, retries included',
            buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0]
        )

        self.vision_request_duration = Histogram(
            'capture_analysis_vision_request_seconds',
            'Time taken for a single vision API request',
            ['model'],
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0]
        )

        self.rate_limit_wait = Histogram(
            'capture_analysis_rate_limit_wait_seconds',
            'Time workers spend blocked on the rate limiter',
            buckets=[0.0, 0.1, 1.0, 5.0, 15.0, 30.0, 61.0]
        )

        logger.info("PrometheusMetricsService initialized with all metrics")

    # ===== HELPER METHODS =====

    def record_capture_processed(self, status: str):
        """
        Record a capture reaching a terminal outcome.

        Args:
            status: completed, failed, or skipped
        """
        self.captures_processed_total.labels(status=status).inc()

    def record_error(self, error_type: str, component: str):
        self.errors_total.labels(error_type=error_type, component=component).inc()

    def record_vision_call(self, model: str, status: str, duration: Optional[float] = None):
        self.vision_calls_total.labels(model=model, status=status).inc()
        if duration is not None:
            self.vision_request_duration.labels(model=model).observe(duration)

    def record_retry(self):
        self.vision_retries_total.inc()

    def record_job_event(self, event: str):
        self.jobs_total.labels(event=event).inc()

    def update_queue_stats(self, stats: dict):
        """
        Mirror a queue stats snapshot into gauges.

        Args:
            stats: Mapping with waiting/active/completed/failed/delayed counts
        """
        for state in ("waiting", "active", "completed", "failed", "delayed"):
            self.queue_jobs.labels(state=state).set(stats.get(state, 0))


# Global instance (singleton pattern)
_global_metrics: Optional[PrometheusMetricsService] = None


def get_metrics() -> PrometheusMetricsService:
    """
    Get or create global metrics service instance.

    Prometheus collectors register once per process, so every component
    shares this instance.
    """
    global _global_metrics

    if _global_metrics is None:
        _global_metrics = PrometheusMetricsService()

    return _global_metrics
