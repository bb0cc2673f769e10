"""Composable builder for the knowledge-base sync HTTP service."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager, suppress
import functools
import json
import logging
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware.trustedhost import TrustedHostMiddleware
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from kb_sync import service_layer
from kb_sync.config import Settings
from kb_sync.domain.model import SourceBusyError, SourceNotFoundError, SyncType
from kb_sync.observability import (
    configure_log_exporter,
    configure_logging,
    configure_metrics_exporter,
    configure_trace_exporter,
    get_metrics,
    get_metrics_content_type,
    init_log_exporter,
    init_metrics,
    init_tracing,
    trace_request,
)
from kb_sync.runtime.health import build_health_endpoint
from kb_sync.runtime.signals import install_shutdown_signals
from kb_sync.services.document_sink import DocumentSink
from kb_sync.services.job_status_publisher import JobStatusPublisher
from kb_sync.services.scheduler_service import SyncSchedulerService
from kb_sync.services.sync_orchestrator import SyncOrchestrator
from kb_sync.utils.models import (
    ConnectionCheckRequest,
    LedgerQuery,
    PageQuery,
    SourceCreate,
    SourceListQuery,
    SourceUpdate,
    ToggleSyncRequest,
)
from kb_sync.utils.sync_state_store import DatabaseCriticalError, StateStoreError, SyncStateStore


if TYPE_CHECKING:
    from starlette.requests import Request


logger = logging.getLogger(__name__)
_SHUTDOWN_DRAIN_TIMEOUT_S = 30.0
SERVICE_NAME = "kb-sync"

Endpoint = Callable[["Request"], Awaitable[Response]]


def _error(message: str, status_code: int, **extra: Any) -> JSONResponse:
    return JSONResponse({"success": False, "message": message, **extra}, status_code=status_code)


def _validation_details(exc: ValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in error["loc"]], "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]


def api_errors(handler: Endpoint) -> Endpoint:
    """Translate domain and infrastructure errors into the JSON error envelope."""

    @functools.wraps(handler)
    async def wrapper(request: Request) -> Response:
        try:
            return await handler(request)
        except ValidationError as exc:
            return _error("Validation failed", 422, errors=_validation_details(exc))
        except SourceNotFoundError as exc:
            return _error(str(exc), 404)
        except SourceBusyError as exc:
            return _error(str(exc), 409, jobId=exc.job_id)
        except json.JSONDecodeError:
            return _error("Request body must be valid JSON", 400)
        except ValueError as exc:
            return _error(str(exc), 400)
        except DatabaseCriticalError as exc:
            logger.critical(f"Database unavailable while handling {request.url.path}: {exc}")
            return _error("Database unavailable", 503)
        except StateStoreError as exc:
            logger.error(f"State store error while handling {request.url.path}: {exc}", exc_info=True)
            return _error("Internal storage error", 500)

    return wrapper


async def _json_body(request: Request, *, required: bool = True) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise ValueError("Request body is required")
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return payload


class AppBuilder:
    """Builds the ASGI app and wires the sync engine components together."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        sink: DocumentSink | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = SyncStateStore(self.settings.database_path)
        self.publisher = JobStatusPublisher(
            self.store,
            retention_seconds=self.settings.job_retention_seconds,
            checkpoint_seconds=self.settings.job_checkpoint_seconds,
        )
        self.orchestrator = SyncOrchestrator(
            self.store,
            self.publisher,
            self.settings,
            http_client=http_client,
            sink=sink,
        )
        self.scheduler = SyncSchedulerService.from_settings(
            self.settings,
            self.store,
            self.orchestrator,
            self.publisher,
        )

    def build(self, *, configure_observability: bool = True, install_signals: bool = True) -> Starlette:
        """Build and return the Starlette application."""
        if configure_observability:
            self._configure_observability()

        app = Starlette(
            debug=self.settings.log_level.lower() == "debug",
            routes=self._build_routes(),
            lifespan=self._build_lifespan_manager(),
        )
        if self.settings.trusted_hosts:
            app.add_middleware(TrustedHostMiddleware, allowed_hosts=self.settings.trusted_hosts)
        app.middleware("http")(trace_request)

        app.state.store = self.store
        app.state.publisher = self.publisher
        app.state.orchestrator = self.orchestrator
        app.state.scheduler = self.scheduler

        if install_signals:
            install_shutdown_signals(app)
        logger.info("Sync service initialized with database %s", self.settings.database_path)
        return app

    def _configure_observability(self) -> None:
        configure_logging(
            level=self.settings.log_level,
            json_output=self.settings.log_json,
            logger_levels=self.settings.log_levels,
        )
        collector_config = self.settings.observability_collector
        resource_attributes = dict(collector_config.resource_attributes)
        configure_metrics_exporter(collector_config, service_name=SERVICE_NAME, resource_attributes=resource_attributes)
        init_metrics(service_name=SERVICE_NAME, resource_attributes=resource_attributes)
        init_tracing(service_name=SERVICE_NAME, resource_attributes=resource_attributes)
        configure_trace_exporter(collector_config)
        init_log_exporter(service_name=SERVICE_NAME, resource_attributes=resource_attributes)
        configure_log_exporter(collector_config)

    def _build_routes(self) -> list[Route]:
        return [
            Route(
                "/health",
                endpoint=build_health_endpoint(self.store, self.orchestrator, self.scheduler),
                methods=["GET"],
            ),
            Route("/metrics", endpoint=self._build_metrics_endpoint(), methods=["GET"]),
            Route("/sources", endpoint=self._build_create_source_endpoint(), methods=["POST"]),
            Route("/sources/test-connection", endpoint=self._build_check_connection_endpoint(), methods=["POST"]),
            Route("/sources/{source_id}", endpoint=self._build_source_endpoint(), methods=["GET", "PATCH", "DELETE"]),
            Route("/sources/{source_id}/sync", endpoint=self._build_sync_trigger_endpoint(), methods=["POST"]),
            Route("/sources/{source_id}/toggle-sync", endpoint=self._build_toggle_sync_endpoint(), methods=["PATCH"]),
            Route("/sources/{source_id}/urls", endpoint=self._build_source_urls_endpoint(), methods=["GET"]),
            Route("/sources/{source_id}/history", endpoint=self._build_source_history_endpoint(), methods=["GET"]),
            Route("/sync-jobs/{job_id}", endpoint=self._build_job_status_endpoint(), methods=["GET"]),
            Route("/clients/{client_id}/sources", endpoint=self._build_client_sources_endpoint(), methods=["GET"]),
        ]

    def _build_metrics_endpoint(self) -> Endpoint:
        async def metrics_endpoint(_: Request) -> Response:
            return Response(content=get_metrics(), media_type=get_metrics_content_type())

        return metrics_endpoint

    def _build_create_source_endpoint(self) -> Endpoint:
        @api_errors
        async def create_source_endpoint(request: Request) -> Response:
            payload = SourceCreate.model_validate(await _json_body(request))
            source, trigger = await service_layer.create_source(payload, self.store, self.orchestrator, self.settings)
            return JSONResponse(
                {"source": source.to_dict(), "syncJob": trigger.to_dict() if trigger else None},
                status_code=201,
            )

        return create_source_endpoint

    def _build_check_connection_endpoint(self) -> Endpoint:
        @api_errors
        async def check_connection_endpoint(request: Request) -> Response:
            payload = ConnectionCheckRequest.model_validate(await _json_body(request))
            return JSONResponse(await service_layer.check_connection(payload, self.orchestrator.discovery))

        return check_connection_endpoint

    def _build_source_endpoint(self) -> Endpoint:
        @api_errors
        async def source_endpoint(request: Request) -> Response:
            source_id = request.path_params["source_id"]
            if request.method == "GET":
                return JSONResponse(await service_layer.get_source_with_stats(source_id, self.store))
            if request.method == "PATCH":
                payload = SourceUpdate.model_validate(await _json_body(request))
                source = await service_layer.update_source(source_id, payload, self.store)
                return JSONResponse(source.to_dict())
            await service_layer.delete_source(source_id, self.store)
            return JSONResponse({"success": True, "message": f"Source {source_id} deleted"})

        return source_endpoint

    def _build_sync_trigger_endpoint(self) -> Endpoint:
        @api_errors
        async def sync_trigger_endpoint(request: Request) -> Response:
            source_id = request.path_params["source_id"]
            body = await _json_body(request, required=False)
            triggered_by = body.get("triggeredBy")
            if triggered_by is not None and not isinstance(triggered_by, str):
                raise ValueError("triggeredBy must be a string")
            result = await self.orchestrator.trigger(source_id, sync_type=SyncType.MANUAL, triggered_by=triggered_by)
            return JSONResponse(result.to_dict(), status_code=200 if result.deduplicated else 202)

        return sync_trigger_endpoint

    def _build_toggle_sync_endpoint(self) -> Endpoint:
        @api_errors
        async def toggle_sync_endpoint(request: Request) -> Response:
            payload = ToggleSyncRequest.model_validate(await _json_body(request))
            source = await service_layer.toggle_sync(request.path_params["source_id"], payload.enabled, self.store)
            return JSONResponse(source.to_dict())

        return toggle_sync_endpoint

    def _build_source_urls_endpoint(self) -> Endpoint:
        @api_errors
        async def source_urls_endpoint(request: Request) -> Response:
            query = LedgerQuery.model_validate(dict(request.query_params))
            return JSONResponse(
                await service_layer.list_source_urls(request.path_params["source_id"], query, self.store)
            )

        return source_urls_endpoint

    def _build_source_history_endpoint(self) -> Endpoint:
        @api_errors
        async def source_history_endpoint(request: Request) -> Response:
            query = PageQuery.model_validate(dict(request.query_params))
            return JSONResponse(
                await service_layer.list_source_history(request.path_params["source_id"], query, self.store)
            )

        return source_history_endpoint

    def _build_job_status_endpoint(self) -> Endpoint:
        @api_errors
        async def job_status_endpoint(request: Request) -> Response:
            job_id = request.path_params["job_id"]
            snapshot = await self.publisher.get_status(job_id)
            if snapshot is None:
                return _error(f"Sync job {job_id} not found", 404)
            return JSONResponse(snapshot)

        return job_status_endpoint

    def _build_client_sources_endpoint(self) -> Endpoint:
        @api_errors
        async def client_sources_endpoint(request: Request) -> Response:
            query = SourceListQuery.model_validate(dict(request.query_params))
            return JSONResponse(
                await service_layer.list_client_sources(request.path_params["client_id"], query, self.store)
            )

        return client_sources_endpoint

    def _build_lifespan_manager(self):
        @asynccontextmanager
        async def lifespan(app: Starlette):
            self.scheduler.start()

            drained = False

            async def drain(reason: str) -> None:
                nonlocal drained
                if drained:
                    return
                drained = True
                logger.info("Stopping scheduler and cancelling %d running jobs (%s)", len(self.orchestrator.running_jobs), reason)
                await self.scheduler.stop()
                await self.orchestrator.shutdown()

            shutdown_monitor: asyncio.Task | None = None
            shutdown_event = getattr(app.state, "shutdown_event", None)
            if isinstance(shutdown_event, asyncio.Event):

                async def watch_shutdown() -> None:
                    await shutdown_event.wait()
                    reason = getattr(app.state, "shutdown_signal", "signal")
                    try:
                        await asyncio.wait_for(asyncio.shield(drain(reason)), timeout=_SHUTDOWN_DRAIN_TIMEOUT_S)
                    except asyncio.TimeoutError:
                        logger.warning("Drain timed out after %ss (%s)", _SHUTDOWN_DRAIN_TIMEOUT_S, reason)

                shutdown_monitor = asyncio.create_task(watch_shutdown())

            try:
                yield
            finally:
                if shutdown_monitor is not None:
                    shutdown_monitor.cancel()
                    with suppress(asyncio.CancelledError):
                        await shutdown_monitor
                try:
                    await asyncio.wait_for(asyncio.shield(drain("lifespan-exit")), timeout=_SHUTDOWN_DRAIN_TIMEOUT_S)
                except asyncio.TimeoutError:
                    logger.warning("Drain timed out after %ss (lifespan)", _SHUTDOWN_DRAIN_TIMEOUT_S)

        return lifespan
