"""Observability module for OpenTelemetry-aligned tracing, metrics, and logging."""

from kb_sync.observability.context import bind_job_context, get_trace_context, set_trace_context, trace_context
from kb_sync.observability.logging import (
    JsonFormatter,
    configure_log_exporter,
    configure_logging,
    init_log_exporter,
)
from kb_sync.observability.metrics import (
    ACTIVE_SYNC_JOBS,
    REQUEST_COUNT,
    REQUEST_LATENCY,
    SYNC_JOB_DURATION,
    SYNC_JOBS,
    SYNC_TRIGGERS,
    URL_FETCHES,
    configure_metrics_exporter,
    get_metrics,
    get_metrics_content_type,
    init_metrics,
    track_latency,
)
from kb_sync.observability.tracing import (
    configure_trace_exporter,
    create_span,
    get_tracer,
    init_tracing,
    trace_request,
)


__all__ = [
    "ACTIVE_SYNC_JOBS",
    "REQUEST_COUNT",
    "REQUEST_LATENCY",
    "SYNC_JOBS",
    "SYNC_JOB_DURATION",
    "SYNC_TRIGGERS",
    "URL_FETCHES",
    "JsonFormatter",
    "bind_job_context",
    "configure_log_exporter",
    "configure_logging",
    "configure_metrics_exporter",
    "configure_trace_exporter",
    "create_span",
    "get_metrics",
    "get_metrics_content_type",
    "get_trace_context",
    "get_tracer",
    "init_log_exporter",
    "init_metrics",
    "init_tracing",
    "set_trace_context",
    "trace_context",
    "track_latency",
]
