"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, external API calls and job outcomes.
Exposes /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_stage_latency_seconds = Histogram(
    "pipeline_stage_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Total Pipeline Duration
pipeline_total_duration = Histogram(
    "pipeline_total_duration_seconds",
    "Total time for complete pipeline execution",
    labelnames=["status"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0]
)

# External API Calls (Gemini, Picsart)
external_api_calls_total = Counter(
    "external_api_calls_total",
    "Total number of external API calls",
    labelnames=["service", "status", "http_status"]
)

# Jobs Counter
jobs_total = Counter(
    "design_jobs_total",
    "Total number of design jobs reaching a terminal status",
    labelnames=["status"]
)

# Active Jobs
active_jobs_gauge = Gauge(
    "design_active_jobs",
    "Number of currently running pipelines"
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "design_pipeline_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("upscale"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_stage_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_external_call(service: str, status: str, http_status: int = 0):
    """Record an external API call. http_status 0 means no response was received."""
    external_api_calls_total.labels(
        service=service,
        status=status,
        http_status=str(http_status)
    ).inc()


def record_job_started():
    active_jobs_gauge.inc()


def record_job_finished(status: str, duration_seconds: float):
    """Record a job reaching a terminal status."""
    jobs_total.labels(status=status).inc()
    pipeline_total_duration.labels(status=status).observe(duration_seconds)
    active_jobs_gauge.dec()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
