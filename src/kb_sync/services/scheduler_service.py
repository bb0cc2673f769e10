"""Periodic scheduler that starts due syncs and retires old job snapshots."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from kb_sync.config import Settings
from kb_sync.domain.model import Source, SourceNotFoundError, SyncType
from kb_sync.services.job_status_publisher import JobStatusPublisher
from kb_sync.services.sync_orchestrator import SyncOrchestrator
from kb_sync.utils.sync_state_store import StateStoreError, SyncStateStore


logger = logging.getLogger(__name__)

SCHEDULER_TRIGGERED_BY = "scheduler"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncSchedulerService:
    """Fixed-tick loop over enabled sources.

    Each tick lists enabled, active sources, starts a ``scheduled`` job for
    every source whose interval has elapsed (at most ``max_jobs_per_tick``),
    and purges retired job snapshots. Due sources that already hold a live
    lease are skipped; the orchestrator's compare-and-set covers races with
    manual triggers and other processes.
    """

    def __init__(
        self,
        store: SyncStateStore,
        orchestrator: SyncOrchestrator,
        publisher: JobStatusPublisher,
        *,
        tick_seconds: float = 60.0,
        max_jobs_per_tick: int = 10,
        stale_lease_seconds: float = 1860.0,
        enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.publisher = publisher
        self.tick_seconds = tick_seconds
        self.max_jobs_per_tick = max(1, max_jobs_per_tick)
        self.stale_lease = timedelta(seconds=stale_lease_seconds)
        self.enabled = enabled
        self._clock = clock

        self._running = False
        self._scheduler_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

        self._total_ticks = 0
        self._total_triggered = 0
        self._errors = 0
        self._last_tick_at: datetime | None = None
        self._last_result: dict[str, Any] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: SyncStateStore,
        orchestrator: SyncOrchestrator,
        publisher: JobStatusPublisher,
    ) -> SyncSchedulerService:
        return cls(
            store,
            orchestrator,
            publisher,
            tick_seconds=settings.scheduler_tick_seconds,
            max_jobs_per_tick=settings.scheduler_max_jobs_per_tick,
            stale_lease_seconds=settings.stale_lease_seconds(),
            enabled=settings.scheduler_enabled,
        )

    @property
    def running(self) -> bool:
        return self._running and self._scheduler_task is not None and not self._scheduler_task.done()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "running": self.running,
            "tick_seconds": self.tick_seconds,
            "total_ticks": self._total_ticks,
            "total_triggered": self._total_triggered,
            "errors": self._errors,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "last_result": self._last_result,
        }

    def start(self) -> bool:
        if not self.enabled:
            logger.info("Scheduler disabled; scheduled syncs will not run")
            return False
        if self._scheduler_task and not self._scheduler_task.done():
            return True
        self._stop_event.clear()
        self._running = True
        self._scheduler_task = asyncio.create_task(self._run_scheduler_loop(), name="kb-sync-scheduler")
        logger.info(f"Scheduler started (tick every {self.tick_seconds}s, max {self.max_jobs_per_tick} jobs per tick)")
        return True

    async def stop(self) -> None:
        self._stop_event.set()
        if self._scheduler_task is not None:
            self._scheduler_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._scheduler_task
            self._scheduler_task = None
        self._running = False

    def is_due(self, source: Source, now: datetime) -> bool:
        if not source.is_due(now):
            return False
        if source.current_job_id is None:
            return True
        started = source.current_job_started_at
        return started is None or started < now - self.stale_lease

    async def run_tick(self) -> dict[str, Any]:
        """Run one scheduling pass; returns a summary with ``success``."""
        now = self._clock()
        triggered: list[str] = []
        deduplicated: list[str] = []
        errors: list[str] = []

        sources = await self.store.list_schedulable_sources()
        due = [source for source in sources if self.is_due(source, now)]
        if len(due) > self.max_jobs_per_tick:
            logger.info(f"{len(due)} sources due; starting {self.max_jobs_per_tick} this tick")

        for source in due[: self.max_jobs_per_tick]:
            try:
                result = await self.orchestrator.trigger(
                    source.id,
                    sync_type=SyncType.SCHEDULED,
                    triggered_by=SCHEDULER_TRIGGERED_BY,
                )
            except SourceNotFoundError:
                logger.debug(f"Source {source.id} disappeared before its scheduled sync")
                continue
            except StateStoreError as exc:
                logger.error(f"Could not start scheduled sync for source {source.id}: {exc}")
                errors.append(source.id)
                continue
            if result.deduplicated:
                deduplicated.append(source.id)
            else:
                triggered.append(source.id)

        purged = await self.publisher.purge_expired()

        self._total_ticks += 1
        self._total_triggered += len(triggered)
        self._last_tick_at = now
        result_payload = {
            "success": not errors,
            "due": len(due),
            "triggered": triggered,
            "deduplicated": deduplicated,
            "errors": errors,
            "purged_jobs": purged,
        }
        self._last_result = result_payload
        if triggered:
            logger.info(f"Scheduler tick started {len(triggered)} syncs")
        return result_payload

    async def _run_scheduler_loop(self) -> None:
        consecutive_failures = 0
        max_retry_delay = 3600.0

        try:
            while not self._stop_event.is_set():
                try:
                    result = await self.run_tick()
                except StateStoreError as exc:
                    logger.error(f"Scheduler tick failed: {exc}", exc_info=True)
                    result = {"success": False, "message": str(exc)}

                if result.get("success"):
                    consecutive_failures = 0
                    delay = self.tick_seconds
                else:
                    self._errors += 1
                    consecutive_failures += 1
                    delay = min(self.tick_seconds * (2 ** (consecutive_failures - 1)), max_retry_delay)
                    logger.warning(f"Scheduler backing off for {delay:.0f}s after {consecutive_failures} failed ticks")

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        finally:
            self._running = False
