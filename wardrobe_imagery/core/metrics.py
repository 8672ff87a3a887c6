"""
Prometheus collectors for the imagery pipeline.

Stage latency, Replicate call outcomes, terminal run outcomes and rejected
uploads. Scraped from /api/v1/metrics.
"""

import time
from contextlib import contextmanager
from typing import Tuple

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "wardrobe_pipeline_latency_seconds",
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0]
)

# Replicate API Calls
replicate_api_calls_total = Counter(
    "replicate_api_calls_total",
    "Total number of Replicate API calls",
    labelnames=["service", "status", "http_status"]
)

# Pipeline Outcomes
pipeline_runs_total = Counter(
    "wardrobe_pipeline_runs_total",
    "Total number of pipeline runs by flow and outcome",
    labelnames=["flow", "status", "failure_stage"]
)

# Rejected uploads (abuse monitoring)
rejected_uploads_total = Counter(
    "wardrobe_rejected_uploads_total",
    "Uploads rejected before any external call",
    labelnames=["reason"]
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
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 120.0]
)

# Application Info
app_info = Info(
    "wardrobe_imagery_app",
    "Application information"
)


# =============================================================================
# Recording
# =============================================================================

def set_app_info(version: str, environment: str):
    app_info.info({"version": version, "environment": environment})


@contextmanager
def track_stage_latency(stage: str):
    """
    Observe the wall time of a block under `stage`, labelled error if it raised.

        with track_stage_latency("background_removal"):
            ...
    """
    outcome = "success"
    started = time.perf_counter()
    try:
        yield
    except Exception:
        outcome = "error"
        raise
    finally:
        pipeline_latency_seconds.labels(stage=stage, status=outcome).observe(
            time.perf_counter() - started
        )


def record_replicate_call(service: str, status: str, http_status: int = 200):
    replicate_api_calls_total.labels(service=service, status=status, http_status=str(http_status)).inc()


def record_pipeline_run(flow: str, status: str, failure_stage: str = "none"):
    pipeline_runs_total.labels(flow=flow, status=status, failure_stage=failure_stage).inc()


def record_rejected_upload(reason: str):
    rejected_uploads_total.labels(reason=reason).inc()


def render_metrics() -> Tuple[bytes, str]:
    """Exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
