"""Structured JSON logging with trace and job correlation.

Sync jobs run as background tasks, so every line a job emits carries the
``job_id`` and ``source_id`` bound in its task context. Source URLs are
operator input and may embed credentials; URL-valued extras are scrubbed
before they reach the log stream.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import logging
from pathlib import Path
import sys
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter as GrpcOTLPLogExporter
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter as HttpOTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource
import orjson

from kb_sync.config import ObservabilityCollectorConfig
from kb_sync.observability.context import get_trace_context


_RECORD_ATTRIBUTES = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}
_CONTEXT_FIELDS = ("job_id", "source_id")
_NOISY_LOGGERS = ("httpx", "httpcore", "hpack")
_REDACTED = "[REDACTED]"


def scrub_url(url: str) -> str:
    """Drop userinfo and secret-looking query values from a URL."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return url
    netloc = parts.netloc.rsplit("@", 1)[-1]
    query = parts.query
    if query:
        pairs = [
            (key, _REDACTED if key.lower() in JsonFormatter.REDACT_KEYS else value)
            for key, value in parse_qsl(query, keep_blank_values=True)
        ]
        query = urlencode(pairs, safe="[]")
    return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


class JsonFormatter(logging.Formatter):
    """One JSON object per record, correlated with the active trace and job."""

    REDACT_KEYS = frozenset({"password", "token", "api_key", "apikey", "secret", "authorization", "cookie", "key"})
    MAX_MESSAGE_LEN = 2000
    MAX_EXTRA_LEN = 500

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_trace_context()
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "message": self._truncate(record.getMessage(), self.MAX_MESSAGE_LEN),
            "logger": record.name,
            "trace_id": ctx.get("trace_id", ""),
            "span_id": ctx.get("span_id", ""),
        }
        if "." in record.name:
            entry["component"] = record.name.rsplit(".", 1)[-1]
        entry.update({key: ctx[key] for key in _CONTEXT_FIELDS if ctx.get(key)})

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES or key.startswith("_"):
                continue
            entry[key] = self._redact(key, value)

        return orjson.dumps(entry, default=self._json_default).decode("utf-8")

    @staticmethod
    def _truncate(text: str, limit: int) -> str:
        return text[:limit] + "..." if len(text) > limit else text

    def _redact(self, key: str, value: Any) -> Any:
        lowered = key.lower()
        if lowered in self.REDACT_KEYS:
            return _REDACTED
        if isinstance(value, str):
            if lowered == "url" or lowered.endswith("_url"):
                value = scrub_url(value)
            return self._truncate(value, self.MAX_EXTRA_LEN)
        return value

    def _json_default(self, value: Any) -> Any:
        if isinstance(value, (set, frozenset)):
            try:
                return sorted(value)
            except TypeError:
                return list(value)
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, Path):
            return str(value)
        if isinstance(value, (bytes, bytearray)):
            return value.decode("utf-8", errors="replace")
        if isinstance(value, Exception):
            return str(value)
        return repr(value)


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    *,
    logger_levels: dict[str, str] | None = None,
    access_log: bool = False,
) -> None:
    """Install a single stdout handler on the root logger.

    Args:
        level: Root log level name, case-insensitive
        json_output: Use ``JsonFormatter`` instead of the plain text layout
        logger_levels: Per-logger overrides, applied last
        access_log: Keep uvicorn's per-request access lines
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in root.handlers[:]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter() if json_output else logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    root.addHandler(handler)

    # Page fetches log one line per request at INFO
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    if not access_log:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    for logger_name, logger_level in (logger_levels or {}).items():
        logging.getLogger(logger_name).setLevel(getattr(logging, logger_level.upper(), logging.INFO))


_logger_holder: dict[str, object] = {"provider": None, "handler_added": False}


def init_log_exporter(
    service_name: str = "kb-sync",
    resource_attributes: dict[str, str] | None = None,
) -> LoggerProvider:
    attributes = {"service.name": service_name, **(resource_attributes or {})}
    provider = LoggerProvider(resource=Resource.create(attributes))
    set_logger_provider(provider)
    _logger_holder["provider"] = provider
    return provider


def configure_log_exporter(
    config: ObservabilityCollectorConfig | None,
    provider: LoggerProvider | None = None,
) -> None:
    """Ship log records to the OTLP collector when one is configured."""
    if not config or not config.enabled or _logger_holder.get("handler_added"):
        return

    active_provider = provider or _logger_holder.get("provider")
    if not isinstance(active_provider, LoggerProvider):
        active_provider = init_log_exporter(resource_attributes=config.resource_attributes)

    endpoint = config.collector_endpoint
    if config.otlp_protocol == "http" and endpoint.endswith("/v1/traces"):
        endpoint = endpoint.removesuffix("/v1/traces") + "/v1/logs"

    if config.otlp_protocol == "grpc":
        exporter = GrpcOTLPLogExporter(
            endpoint=endpoint,
            headers=config.headers,
            timeout=config.timeout_seconds,
            insecure=config.grpc_insecure,
        )
    else:
        exporter = HttpOTLPLogExporter(endpoint=endpoint, headers=config.headers, timeout=config.timeout_seconds)

    active_provider.add_log_record_processor(BatchLogRecordProcessor(exporter))
    logging.getLogger().addHandler(LoggingHandler(level=logging.INFO, logger_provider=active_provider))
    _logger_holder["handler_added"] = True
