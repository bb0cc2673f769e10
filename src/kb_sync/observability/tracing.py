"""OpenTelemetry tracing with Starlette middleware."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import time
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter as GrpcOTLPSpanExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter as HttpOTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import SpanKind, Status, StatusCode

from kb_sync.config import ObservabilityCollectorConfig
from kb_sync.observability.context import generate_span_id, get_trace_context, set_trace_context, update_span_id
from kb_sync.observability.metrics import OTLP_EXPORT_ERRORS, OTLP_EXPORT_STATUS, REQUEST_COUNT, REQUEST_LATENCY


if TYPE_CHECKING:
    from collections.abc import Generator

    from opentelemetry.trace import Span, Tracer
    from starlette.requests import Request
    from starlette.responses import Response

logger = logging.getLogger(__name__)

_tracer_holder: dict[str, Tracer | None] = {"tracer": None}


def init_tracing(
    service_name: str = "kb-sync",
    resource_attributes: dict[str, str] | None = None,
) -> TracerProvider:
    """Initialize OpenTelemetry tracing."""
    attributes = {"service.name": service_name}
    if resource_attributes:
        attributes.update(resource_attributes)
    provider = TracerProvider(resource=Resource.create(attributes))
    trace.set_tracer_provider(provider)
    _tracer_holder["tracer"] = trace.get_tracer(__name__)
    logger.info("Tracing initialized for service: %s", service_name)
    return provider


def configure_trace_exporter(
    config: ObservabilityCollectorConfig | None,
    provider: TracerProvider | None = None,
) -> None:
    """Configure OTLP trace export for an initialized tracer provider."""
    if not config or not config.enabled:
        return

    active_provider = provider or trace.get_tracer_provider()
    if not isinstance(active_provider, TracerProvider):
        active_provider = init_tracing(resource_attributes=config.resource_attributes)

    protocol_label = config.otlp_protocol
    OTLP_EXPORT_STATUS.labels(protocol=protocol_label).set(0)

    try:
        if config.otlp_protocol == "grpc":
            exporter = GrpcOTLPSpanExporter(
                endpoint=config.collector_endpoint,
                headers=config.headers,
                timeout=config.timeout_seconds,
                insecure=config.grpc_insecure,
            )
        else:
            exporter = HttpOTLPSpanExporter(
                endpoint=config.collector_endpoint,
                headers=config.headers,
                timeout=config.timeout_seconds,
            )
    except Exception as exc:
        logger.error("Failed to configure OTLP exporter: %s", exc, exc_info=True)
        OTLP_EXPORT_ERRORS.labels(protocol=protocol_label).inc()
        return

    active_provider.add_span_processor(BatchSpanProcessor(exporter))
    OTLP_EXPORT_STATUS.labels(protocol=protocol_label).set(1)
    logger.info("OTLP trace export enabled (%s) to %s", config.otlp_protocol, config.collector_endpoint)


def get_tracer() -> Tracer:
    """Get the configured tracer."""
    if _tracer_holder["tracer"] is None:
        init_tracing()
    return _tracer_holder["tracer"]  # type: ignore[return-value]


@contextmanager
def create_span(
    name: str,
    kind: SpanKind = SpanKind.INTERNAL,
    attributes: dict[str, Any] | None = None,
) -> Generator[Span, None, None]:
    """Create a traced span with context propagation."""
    tracer = get_tracer()
    with tracer.start_as_current_span(name, kind=kind) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)

        ctx = span.get_span_context()
        update_span_id(format(ctx.span_id, "016x"))

        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise


def _route_template(request: Request) -> str:
    """Collapse path parameters so metric labels stay low-cardinality."""
    path = request.url.path
    for name, value in (request.scope.get("path_params") or {}).items():
        path = path.replace(f"/{value}", f"/{{{name}}}", 1)
    return path


async def trace_request(request: Request, call_next: Any) -> Response:
    """Wrap every API request in a server span and record latency metrics."""
    trace_id = request.headers.get("x-trace-id") or get_trace_context()["trace_id"]
    set_trace_context(trace_id, generate_span_id())

    attributes = {
        "http.method": request.method,
        "http.url": str(request.url),
        "http.route": request.url.path,
    }
    start = time.perf_counter()
    with create_span("http.request", kind=SpanKind.SERVER, attributes=attributes) as span:
        try:
            response: Response = await call_next(request)
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            span.record_exception(exc)
            raise

        route = _route_template(request)
        if source_id := (request.scope.get("path_params") or {}).get("source_id"):
            span.set_attribute("kb.source_id", source_id)
        span.set_attribute("http.status_code", response.status_code)
        if response.status_code >= 500:
            span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
        REQUEST_LATENCY.labels(method=request.method, route=route).observe(time.perf_counter() - start)
        REQUEST_COUNT.labels(method=request.method, route=route, status=str(response.status_code)).inc()
        return response
