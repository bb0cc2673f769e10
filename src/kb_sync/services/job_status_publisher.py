"""Pollable job status with throttled persistence.

Pollers read published snapshots, never the live ``SyncJob`` the orchestrator
mutates, so a terminal snapshot only appears once the run's history entry is
written. Snapshots are checkpointed to the state store so another process
sharing the database can answer polls for jobs it does not run.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Any

from kb_sync.domain.sync_job import SyncJob
from kb_sync.utils.sync_state_store import SyncStateStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Published:
    source_id: str
    snapshot: dict[str, Any]
    terminal: bool
    completed_at: datetime | None
    last_checkpoint: float | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatusPublisher:
    """Keep the latest snapshot per job and retire finished jobs."""

    def __init__(
        self,
        store: SyncStateStore,
        *,
        retention_seconds: float = 300.0,
        checkpoint_seconds: float = 2.0,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.retention = timedelta(seconds=retention_seconds)
        self.checkpoint_seconds = checkpoint_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._jobs: dict[str, _Published] = {}
        self._latest_by_source: dict[str, str] = {}

    async def register(self, job: SyncJob) -> None:
        """Publish a freshly created job, superseding the source's previous one."""
        previous_id = self._latest_by_source.get(job.source_id)
        self._latest_by_source[job.source_id] = job.job_id
        if previous_id and previous_id != job.job_id:
            previous = self._jobs.get(previous_id)
            if previous is not None and previous.terminal:
                del self._jobs[previous_id]
                logger.debug(f"Job {previous_id} superseded by {job.job_id}")
        await self.publish(job, force=True)
        await self.store.supersede_job_snapshots(job.source_id, keep_job_id=job.job_id)

    async def publish(self, job: SyncJob, *, force: bool = False) -> None:
        """Expose the job's current snapshot; persist it at most every ``checkpoint_seconds``."""
        entry = self._jobs.get(job.job_id)
        if entry is not None and entry.terminal:
            return

        snapshot = job.snapshot()
        if entry is None:
            entry = _Published(
                source_id=job.source_id,
                snapshot=snapshot,
                terminal=job.is_terminal,
                completed_at=job.completed_at,
            )
            self._jobs[job.job_id] = entry
        else:
            entry.snapshot = snapshot
            entry.terminal = job.is_terminal
            entry.completed_at = job.completed_at

        now = self._monotonic()
        due = entry.last_checkpoint is None or now - entry.last_checkpoint >= self.checkpoint_seconds
        if force or entry.terminal or due:
            entry.last_checkpoint = now
            await self.store.save_job_snapshot(job.job_id, job.source_id, job.to_dict(), terminal=job.is_terminal)

    async def get_status(self, job_id: str) -> dict[str, Any] | None:
        """Snapshot for ``job_id``, or None once unknown, superseded, or retired."""
        entry = self._jobs.get(job_id)
        if entry is not None:
            if self._expired(entry.terminal, entry.completed_at):
                self._forget(job_id)
                return None
            return entry.snapshot

        payload = await self.store.load_job_snapshot(job_id)
        if payload is None:
            return None
        job = SyncJob.from_dict(payload)
        if self._expired(job.is_terminal, job.completed_at):
            return None
        return job.snapshot()

    def latest_job_id(self, source_id: str) -> str | None:
        return self._latest_by_source.get(source_id)

    async def purge_expired(self) -> int:
        """Drop retired snapshots from memory and from the state store."""
        expired = [
            job_id for job_id, entry in self._jobs.items() if self._expired(entry.terminal, entry.completed_at)
        ]
        for job_id in expired:
            self._forget(job_id)
        purged = await self.store.purge_job_snapshots(finished_before=self._clock() - self.retention)
        if expired or purged:
            logger.debug(f"Retired {len(expired)} in-memory and {purged} stored job snapshots")
        return len(expired)

    def _expired(self, terminal: bool, completed_at: datetime | None) -> bool:
        if not terminal or completed_at is None:
            return False
        return self._clock() - completed_at >= self.retention

    def _forget(self, job_id: str) -> None:
        entry = self._jobs.pop(job_id, None)
        if entry is not None and self._latest_by_source.get(entry.source_id) == job_id:
            del self._latest_by_source[entry.source_id]
