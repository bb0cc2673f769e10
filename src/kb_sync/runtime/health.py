"""Health endpoint factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from starlette.responses import JSONResponse

from kb_sync.utils.sync_state_store import StateStoreError


if TYPE_CHECKING:
    from starlette.requests import Request

    from kb_sync.services.scheduler_service import SyncSchedulerService
    from kb_sync.services.sync_orchestrator import SyncOrchestrator
    from kb_sync.utils.sync_state_store import SyncStateStore


def build_health_endpoint(store: SyncStateStore, orchestrator: SyncOrchestrator, scheduler: SyncSchedulerService):
    """Return a coroutine function reporting database, scheduler, and job health."""

    async def health_check(_: Request) -> JSONResponse:
        database: dict[str, object] = {"status": "healthy"}
        try:
            await store.ping()
        except StateStoreError as exc:
            database = {"status": "unhealthy", "error": str(exc)}

        scheduler_ok = scheduler.running or not scheduler.enabled
        overall = "healthy" if database["status"] == "healthy" and scheduler_ok else "degraded"
        return JSONResponse(
            {
                "status": overall,
                "database": database,
                "scheduler": scheduler.stats,
                "active_jobs": len(orchestrator.running_jobs),
            },
            status_code=200 if database["status"] == "healthy" else 503,
        )

    return health_check
