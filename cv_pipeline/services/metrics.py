"""
Prometheus Metrics Service for the CV pipeline

Provides metrics collection for:
- Pipeline state transitions
- Extraction service calls (outcome and latency)
- Import duration
- LLM audit entries and cost
- Worker ticks

Singleton implementation using prometheus_client with a private registry.
"""

import os
import time
from typing import Optional
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from prometheus_client.multiprocess import MultiProcessCollector

from cv_pipeline.core.logging import get_logger

logger = get_logger(__name__)


class MetricsService:
    """
    Singleton service for collecting and exposing Prometheus metrics.

    All metrics are prefixed with 'cv_pipeline_' to avoid collisions.
    """

    _instance: Optional["MetricsService"] = None
    _initialized: bool = False

    def __new__(cls):
        """Ensure singleton pattern"""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        """Initialize metrics collectors (only once)"""
        if self._initialized:
            return

        self.registry = CollectorRegistry()
        # Gunicorn and friends: aggregate across worker processes
        if "PROMETHEUS_MULTIPROC_DIR" in os.environ:
            MultiProcessCollector(self.registry)

        # Pipeline Metrics
        self.transitions_total = Counter(
            "cv_pipeline_transitions_total",
            "Pipeline status transitions",
            ["from_status", "to_status"],
            registry=self.registry,
        )

        self.uploads_total = Counter(
            "cv_pipeline_uploads_total",
            "Accepted CV uploads",
            ["mime_type"],
            registry=self.registry,
        )

        # Extraction Service Metrics
        self.extraction_calls_total = Counter(
            "cv_pipeline_extraction_calls_total",
            "Calls to the extraction service by outcome",
            ["mode", "outcome"],
            registry=self.registry,
        )

        self.extraction_latency_seconds = Histogram(
            "cv_pipeline_extraction_latency_seconds",
            "Extraction service call latency in seconds",
            ["mode"],
            buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 240.0, 480.0],
            registry=self.registry,
        )

        # Import Metrics
        self.import_duration_seconds = Histogram(
            "cv_pipeline_import_duration_seconds",
            "Importer transaction duration in seconds",
            ["outcome"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
            registry=self.registry,
        )

        # Audit Metrics
        self.audit_entries_total = Counter(
            "cv_pipeline_llm_audit_entries_total",
            "LLM audit entries written",
            ["status"],
            registry=self.registry,
        )

        self.audit_failures_total = Counter(
            "cv_pipeline_llm_audit_failures_total",
            "LLM audit writes that failed and were dropped",
            registry=self.registry,
        )

        self.llm_cost_usd_total = Counter(
            "cv_pipeline_llm_cost_usd_total",
            "Total LLM cost in USD",
            ["provider", "model"],
            registry=self.registry,
        )

        # Worker Metrics
        self.worker_ticks_total = Counter(
            "cv_pipeline_worker_ticks_total",
            "Worker ticks executed",
            registry=self.registry,
        )

        self.worker_last_tick_timestamp = Gauge(
            "cv_pipeline_worker_last_tick_timestamp",
            "Unix timestamp of the last completed worker tick",
            registry=self.registry,
        )

        self._initialized = True
        logger.info("Prometheus metrics service initialized successfully")

    def record_transition(self, from_status: str, to_status: str):
        try:
            self.transitions_total.labels(
                from_status=from_status, to_status=to_status
            ).inc()
        except Exception as e:
            logger.error(f"Error recording transition metrics: {e}")

    def record_upload(self, mime_type: str):
        try:
            self.uploads_total.labels(mime_type=mime_type or "unknown").inc()
        except Exception as e:
            logger.error(f"Error recording upload metrics: {e}")

    def record_extraction_call(
        self, mode: str, outcome: str, duration_seconds: Optional[float] = None
    ):
        """
        Record one extraction service call.

        Args:
            mode: 'sync' or 'async'
            outcome: 'success' or the error phase of the failure
            duration_seconds: Wall time of the call
        """
        try:
            self.extraction_calls_total.labels(mode=mode, outcome=outcome).inc()
            if duration_seconds is not None:
                self.extraction_latency_seconds.labels(mode=mode).observe(
                    duration_seconds
                )
        except Exception as e:
            logger.error(f"Error recording extraction metrics: {e}")

    def record_import(self, outcome: str, duration_seconds: float):
        try:
            self.import_duration_seconds.labels(outcome=outcome).observe(
                duration_seconds
            )
        except Exception as e:
            logger.error(f"Error recording import metrics: {e}")

    def record_audit_entry(
        self, provider: str, model: str, status: str, cost_usd: float
    ):
        try:
            self.audit_entries_total.labels(status=status).inc()
            if cost_usd and cost_usd > 0:
                self.llm_cost_usd_total.labels(provider=provider, model=model).inc(
                    cost_usd
                )
        except Exception as e:
            logger.error(f"Error recording audit metrics: {e}")

    def record_audit_failure(self):
        try:
            self.audit_failures_total.inc()
        except Exception as e:
            logger.error(f"Error recording audit failure metrics: {e}")

    def record_worker_tick(self):
        try:
            self.worker_ticks_total.inc()
            self.worker_last_tick_timestamp.set(time.time())
        except Exception as e:
            logger.error(f"Error recording worker metrics: {e}")

    def get_metrics(self) -> bytes:
        """Generate Prometheus metrics in text format."""
        try:
            return generate_latest(self.registry)
        except Exception as e:
            logger.error(f"Error generating metrics: {e}")
            return b""

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


# Singleton instance
_metrics_service: Optional[MetricsService] = None


def get_metrics_service() -> MetricsService:
    """Get or create the metrics service singleton."""
    global _metrics_service
    if _metrics_service is None:
        _metrics_service = MetricsService()
    return _metrics_service


def setup_metrics(app):
    """
    Setup Prometheus metrics endpoint for the FastAPI application.

    Adds a /metrics endpoint that Prometheus can scrape.
    """
    from fastapi import Response

    metrics_service = get_metrics_service()

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint():
        """Prometheus metrics endpoint"""
        return Response(
            content=metrics_service.get_metrics(),
            media_type=metrics_service.get_content_type(),
        )

    logger.info("Prometheus metrics endpoint setup at /metrics")
