from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from kb_sync.domain.diff import ChangeKind
from kb_sync.domain.model import SyncType
from kb_sync.domain.sync_job import SyncJob
from kb_sync.services.job_status_publisher import JobStatusPublisher
from kb_sync.utils.sync_state_store import SyncStateStore


class Clock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)
        self.mono = 0.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.mono += seconds


def _publisher(store: SyncStateStore, clock: Clock, *, retention: float = 300, checkpoint: float = 2) -> JobStatusPublisher:
    return JobStatusPublisher(
        store,
        retention_seconds=retention,
        checkpoint_seconds=checkpoint,
        clock=clock,
        monotonic=clock.monotonic,
    )


def _job(source_id: str = "src") -> SyncJob:
    return SyncJob.create_new(source_id=source_id, source_name="Docs", sync_type=SyncType.MANUAL)


def _finished(job: SyncJob, completed_at: datetime) -> SyncJob:
    job.start_discovery()
    job.start_syncing(total_urls_in_sitemap=1, new_urls=1, deleted_urls=0, urls_to_process=1)
    job.record_url_synced("https://a/1", ChangeKind.NEW)
    job.finish(completed_at=completed_at)
    return job


@pytest.mark.unit
@pytest.mark.asyncio
async def test_registered_job_is_pollable_and_persisted(store: SyncStateStore) -> None:
    clock = Clock()
    publisher = _publisher(store, clock)
    job = _job()

    await publisher.register(job)

    assert (await publisher.get_status(job.job_id))["state"] == "waiting"
    assert (await store.load_job_snapshot(job.job_id))["jobId"] == job.job_id
    assert publisher.latest_job_id("src") == job.job_id


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pollers_see_published_snapshot_not_live_job(store: SyncStateStore) -> None:
    publisher = _publisher(store, Clock())
    job = _job()
    await publisher.register(job)

    job.start_discovery()

    assert (await publisher.get_status(job.job_id))["state"] == "waiting"
    await publisher.publish(job)
    assert (await publisher.get_status(job.job_id))["state"] == "active"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_checkpoints_are_throttled(store: SyncStateStore) -> None:
    clock = Clock()
    publisher = _publisher(store, clock, checkpoint=5)
    job = _job()
    await publisher.register(job)
    job.start_discovery()
    job.start_syncing(total_urls_in_sitemap=2, new_urls=2, deleted_urls=0, urls_to_process=2)

    job.record_url_synced("https://a/1", ChangeKind.NEW)
    await publisher.publish(job)
    stored = await store.load_job_snapshot(job.job_id)
    assert stored["urlsProcessed"] is None

    clock.advance(5)
    job.record_url_synced("https://a/2", ChangeKind.NEW)
    await publisher.publish(job)
    stored = await store.load_job_snapshot(job.job_id)
    assert stored["urlsProcessed"] == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_terminal_snapshot_is_frozen(store: SyncStateStore) -> None:
    clock = Clock()
    publisher = _publisher(store, clock)
    job = _finished(_job(), clock.now)
    await publisher.publish(job, force=True)
    first = await publisher.get_status(job.job_id)

    job.message = "mutated after finish"
    await publisher.publish(job, force=True)

    assert await publisher.get_status(job.job_id) == first
    assert (await store.load_job_snapshot(job.job_id))["message"] == first["message"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finished_job_expires_after_retention(store: SyncStateStore) -> None:
    clock = Clock()
    publisher = _publisher(store, clock, retention=60)
    job = _job()
    await publisher.register(job)
    _finished(job, clock.now)
    await publisher.publish(job)

    clock.advance(59)
    assert await publisher.get_status(job.job_id) is not None

    clock.advance(1)
    assert await publisher.get_status(job.job_id) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_new_job_supersedes_previous_finished_job(store: SyncStateStore) -> None:
    clock = Clock()
    publisher = _publisher(store, clock)
    first = _job()
    await publisher.register(first)
    _finished(first, clock.now)
    await publisher.publish(first)

    second = _job()
    await publisher.register(second)

    assert await publisher.get_status(first.job_id) is None
    assert await store.load_job_snapshot(first.job_id) is None
    assert publisher.latest_job_id("src") == second.job_id


@pytest.mark.unit
@pytest.mark.asyncio
async def test_status_falls_back_to_store(store: SyncStateStore) -> None:
    clock = Clock()
    writer = _publisher(store, clock)
    job = _job()
    await writer.register(job)
    _finished(job, clock.now)
    await writer.publish(job)

    reader = _publisher(store, clock)

    snapshot = await reader.get_status(job.job_id)
    assert snapshot == job.snapshot()
    assert await reader.get_status("unknown") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_purge_expired_clears_memory_and_store(store: SyncStateStore) -> None:
    clock = Clock()
    publisher = _publisher(store, clock, retention=10)
    finished = _job("src-a")
    running = _job("src-b")
    await publisher.register(finished)
    await publisher.register(running)
    _finished(finished, clock.now)
    await publisher.publish(finished)

    clock.advance(11)
    purged = await publisher.purge_expired()

    assert purged == 1
    assert await publisher.get_status(running.job_id) is not None
    assert publisher.latest_job_id("src-a") is None
