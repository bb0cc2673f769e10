from __future__ import annotations

from datetime import datetime, timedelta, timezone
import sqlite3
from unittest.mock import patch
from uuid import uuid4

import pytest

from kb_sync.domain.model import (
    DiscoveryStats,
    FailedUrl,
    RunStatus,
    RunSyncStats,
    SourceSyncStatus,
    SyncHistoryEntry,
    SyncType,
    UrlStatus,
)
from kb_sync.utils.sync_state_store import (
    _MAX_CONNECT_RETRIES,
    DatabaseCriticalError,
    StateStoreError,
    SyncStateStore,
)
from tests.fixtures.sync_site import make_source


def _history(source_id: str, status: RunStatus = RunStatus.SUCCESS, *, started_at: datetime | None = None) -> SyncHistoryEntry:
    started = started_at or datetime.now(timezone.utc)
    return SyncHistoryEntry(
        id=uuid4().hex,
        source_id=source_id,
        sync_type=SyncType.MANUAL,
        triggered_by="tests",
        started_at=started,
        completed_at=started + timedelta(seconds=2),
        duration_ms=2000,
        status=status,
        discovery_stats=DiscoveryStats(total_urls_in_sitemap=2, new_urls=2),
        sync_stats=RunSyncStats(urls_processed=2, urls_synced=1, urls_failed=1),
        failed_urls=(FailedUrl(url="https://a/2", error="HTTP 500"),),
    )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_and_get_source_roundtrip(store: SyncStateStore) -> None:
    source = make_source(content_selectors=["article"], exclude_selectors=[".ads"], base_url_filter="https://help.example.com/kb/")

    created = await store.create_source(source)
    loaded = await store.get_source(source.id)

    assert loaded == created
    assert loaded.content_selectors == ["article"]
    assert loaded.exclude_selectors == [".ads"]
    assert loaded.last_sync_status == SourceSyncStatus.NEVER
    assert loaded.current_job_id is None
    assert loaded.created_at is not None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_get_missing_source_returns_none(store: SyncStateStore) -> None:
    assert await store.get_source("missing") is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_list_sources_filters_client_and_inactive(store: SyncStateStore) -> None:
    active = await store.create_source(make_source(name="Active"))
    inactive = await store.create_source(make_source(name="Inactive", is_active=False))
    await store.create_source(make_source(client_id="other"))

    visible, total = await store.list_sources("client-1")
    everything, total_all = await store.list_sources("client-1", include_inactive=True)

    assert [source.id for source in visible] == [active.id]
    assert total == 1
    assert {source.id for source in everything} == {active.id, inactive.id}
    assert total_all == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_list_sources_paginates(store: SyncStateStore) -> None:
    for index in range(5):
        await store.create_source(make_source(name=f"Source {index}"))

    first, total = await store.list_sources("client-1", page=1, limit=2)
    third, _ = await store.list_sources("client-1", page=3, limit=2)

    assert total == 5
    assert len(first) == 2
    assert len(third) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_source_applies_known_fields(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())

    updated = await store.update_source(source.id, {"name": "Renamed", "sync_enabled": False, "content_selectors": ["main"]})

    assert updated is not None
    assert updated.name == "Renamed"
    assert updated.sync_enabled is False
    assert updated.content_selectors == ["main"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_source_rejects_unknown_fields(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())

    with pytest.raises(ValueError, match="Unknown source field"):
        await store.update_source(source.id, {"current_job_id": "sneaky"})


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_missing_source_returns_none(store: SyncStateStore) -> None:
    assert await store.update_source("missing", {"name": "x"}) is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_lease_is_single_flight(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    now = datetime.now(timezone.utc)
    stale_before = now - timedelta(minutes=30)

    first = await store.try_acquire_job(source.id, "job-1", now=now, stale_before=stale_before)
    second = await store.try_acquire_job(source.id, "job-2", now=now, stale_before=stale_before)

    assert first == (True, "job-1")
    assert second == (False, "job-1")
    assert (await store.get_source(source.id)).current_job_id == "job-1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stale_lease_can_be_taken_over(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    await store.try_acquire_job(source.id, "job-old", now=old, stale_before=old - timedelta(minutes=30))

    now = datetime.now(timezone.utc)
    acquired = await store.try_acquire_job(source.id, "job-new", now=now, stale_before=now - timedelta(minutes=30))

    assert acquired == (True, "job-new")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_acquire_on_missing_source(store: SyncStateStore) -> None:
    now = datetime.now(timezone.utc)

    assert await store.try_acquire_job("missing", "job", now=now, stale_before=now) == (False, None)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_release_only_clears_matching_job(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    now = datetime.now(timezone.utc)
    await store.try_acquire_job(source.id, "job-1", now=now, stale_before=now - timedelta(minutes=30))

    assert await store.release_job(source.id, "job-2") is False
    assert await store.release_job(source.id, "job-1") is True
    assert (await store.get_source(source.id)).current_job_id is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_apply_diff_inserts_revives_and_soft_deletes(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    await store.apply_diff(
        source.id,
        new_urls=["https://a/1", "https://a/2"],
        revived_urls=[],
        deleted_urls=[],
        lastmod={"https://a/1": "2024-01-01"},
    )
    await store.apply_diff(source.id, new_urls=[], revived_urls=[], deleted_urls=["https://a/2"])

    entries = {entry.url: entry for entry in await store.list_ledger(source.id)}
    assert entries["https://a/1"].status == UrlStatus.PENDING
    assert entries["https://a/1"].lastmod == "2024-01-01"
    assert entries["https://a/2"].status == UrlStatus.DELETED

    await store.apply_diff(source.id, new_urls=[], revived_urls=["https://a/2"], deleted_urls=[])

    revived = await store.get_ledger_entry(source.id, "https://a/2")
    assert revived.status == UrlStatus.PENDING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fetch_outcomes_update_ledger(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    await store.apply_diff(source.id, new_urls=["https://a/1", "https://a/2"], revived_urls=[], deleted_urls=[])

    await store.record_fetch_success(source.id, "https://a/1", title="One", content_hash="abc", word_count=12, attempts=2)
    await store.record_fetch_failure(source.id, "https://a/2", error="HTTP 500", attempts=3)

    synced = await store.get_ledger_entry(source.id, "https://a/1")
    failed = await store.get_ledger_entry(source.id, "https://a/2")
    assert synced.status == UrlStatus.SYNCED
    assert synced.content_hash == "abc"
    assert synced.word_count == 12
    assert synced.sync_attempts == 2
    assert synced.last_synced_at is not None
    assert failed.status == UrlStatus.FAILED
    assert failed.last_sync_error == "HTTP 500"
    assert failed.sync_attempts == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fetch_outcome_for_unknown_url_raises(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())

    with pytest.raises(StateStoreError, match="No ledger entry"):
        await store.record_fetch_success(source.id, "https://a/unknown", title=None, content_hash="x", word_count=1)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_query_ledger_filters_by_status_and_search(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    await store.apply_diff(
        source.id,
        new_urls=["https://a/billing", "https://a/login", "https://a/100%_off"],
        revived_urls=[],
        deleted_urls=[],
    )
    await store.record_fetch_success(source.id, "https://a/login", title="Reset password", content_hash="h", word_count=3)

    synced, synced_total = await store.query_ledger(source.id, status=UrlStatus.SYNCED)
    by_title, _ = await store.query_ledger(source.id, search="password")
    literal, _ = await store.query_ledger(source.id, search="100%_")
    page_two, total = await store.query_ledger(source.id, page=2, limit=2)

    assert [entry.url for entry in synced] == ["https://a/login"]
    assert synced_total == 1
    assert [entry.url for entry in by_title] == ["https://a/login"]
    assert [entry.url for entry in literal] == ["https://a/100%_off"]
    assert total == 3
    assert [entry.url for entry in page_two] == ["https://a/login"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finish_run_records_history_counts_and_releases_lease(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    now = datetime.now(timezone.utc)
    await store.try_acquire_job(source.id, "job-1", now=now, stale_before=now - timedelta(minutes=30))
    await store.apply_diff(source.id, new_urls=["https://a/1", "https://a/2", "https://a/3"], revived_urls=[], deleted_urls=[])
    await store.record_fetch_success(source.id, "https://a/1", title="One", content_hash="h", word_count=1)
    await store.record_fetch_failure(source.id, "https://a/2", error="HTTP 500")
    await store.apply_diff(source.id, new_urls=[], revived_urls=[], deleted_urls=["https://a/3"])
    entry = _history(source.id, RunStatus.PARTIAL)

    updated = await store.finish_run(
        entry,
        job_id="job-1",
        source_status=SourceSyncStatus.PARTIAL,
        source_error="1 of 2 URLs failed",
    )

    assert updated.current_job_id is None
    assert updated.last_sync_status == SourceSyncStatus.PARTIAL
    assert updated.last_sync_error == "1 of 2 URLs failed"
    assert updated.last_sync_duration_ms == 2000
    assert updated.last_sync_at == entry.completed_at
    assert (updated.total_urls, updated.synced_urls, updated.failed_urls, updated.pending_urls) == (2, 1, 1, 0)

    history, total = await store.list_history(source.id)
    assert total == 1
    assert history[0] == entry


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finish_run_keeps_lease_of_other_job(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    now = datetime.now(timezone.utc)
    await store.try_acquire_job(source.id, "job-new", now=now, stale_before=now - timedelta(minutes=30))

    updated = await store.finish_run(
        _history(source.id, RunStatus.FAILED),
        job_id="job-stale",
        source_status=SourceSyncStatus.FAILED,
        source_error="timed out",
    )

    assert updated.current_job_id == "job-new"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_history_is_newest_first(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    base = datetime.now(timezone.utc) - timedelta(days=1)
    older = _history(source.id, started_at=base)
    newer = _history(source.id, started_at=base + timedelta(hours=1))
    for entry in (older, newer):
        await store.finish_run(entry, job_id="x", source_status=SourceSyncStatus.SUCCESS, source_error=None)

    history, total = await store.list_history(source.id)

    assert total == 2
    assert [entry.id for entry in history] == [newer.id, older.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_source_stats_aggregate_ledger_and_history(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    await store.apply_diff(source.id, new_urls=["https://a/1", "https://a/2", "https://a/3"], revived_urls=[], deleted_urls=[])
    await store.record_fetch_success(source.id, "https://a/1", title=None, content_hash="h", word_count=1)
    await store.apply_diff(source.id, new_urls=[], revived_urls=[], deleted_urls=["https://a/3"])
    await store.finish_run(_history(source.id), job_id="x", source_status=SourceSyncStatus.SUCCESS, source_error=None)

    stats = await store.get_source_stats(source.id)

    assert stats == {
        "totalUrls": 2,
        "syncedUrls": 1,
        "failedUrls": 0,
        "pendingUrls": 1,
        "deletedUrls": 1,
        "avgSyncDurationMs": 2000,
    }


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delete_source_cascades(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    await store.apply_diff(source.id, new_urls=["https://a/1"], revived_urls=[], deleted_urls=[])
    await store.finish_run(_history(source.id), job_id="x", source_status=SourceSyncStatus.SUCCESS, source_error=None)
    await store.save_job_snapshot("job-1", source.id, {"jobId": "job-1"}, terminal=True)

    assert await store.delete_source(source.id) == (True, None)

    assert await store.get_source(source.id) is None
    assert await store.list_ledger(source.id) == []
    assert (await store.list_history(source.id))[1] == 0
    assert await store.load_job_snapshot("job-1") is None
    assert await store.delete_source(source.id) == (False, None)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delete_source_refuses_while_lease_is_held(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    now = datetime.now(timezone.utc)
    await store.try_acquire_job(source.id, "job-1", now=now, stale_before=now - timedelta(hours=1))
    await store.apply_diff(source.id, new_urls=["https://a/1"], revived_urls=[], deleted_urls=[])

    assert await store.delete_source(source.id) == (False, "job-1")
    assert await store.get_source(source.id) is not None
    assert len(await store.list_ledger(source.id)) == 1

    await store.finish_run(_history(source.id), job_id="job-1", source_status=SourceSyncStatus.SUCCESS, source_error=None)
    assert await store.delete_source(source.id) == (True, None)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_finish_run_for_deleted_source_writes_no_history(store: SyncStateStore) -> None:
    source = await store.create_source(make_source())
    await store.delete_source(source.id)

    result = await store.finish_run(
        _history(source.id, RunStatus.FAILED), job_id="job-1", source_status=SourceSyncStatus.FAILED, source_error="gone"
    )

    assert result is None
    assert (await store.list_history(source.id))[1] == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_schedulable_sources_exclude_disabled_and_inactive(store: SyncStateStore) -> None:
    enabled = await store.create_source(make_source())
    await store.create_source(make_source(sync_enabled=False))
    await store.create_source(make_source(is_active=False))

    sources = await store.list_schedulable_sources()

    assert [source.id for source in sources] == [enabled.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_job_snapshots_supersede_and_purge(store: SyncStateStore) -> None:
    await store.save_job_snapshot("old", "src", {"jobId": "old"}, terminal=True)
    await store.save_job_snapshot("running", "src", {"jobId": "running"}, terminal=False)
    await store.save_job_snapshot("other", "src-2", {"jobId": "other"}, terminal=True)

    removed = await store.supersede_job_snapshots("src", keep_job_id="new")

    assert removed == 1
    assert await store.load_job_snapshot("old") is None
    assert await store.load_job_snapshot("running") == {"jobId": "running"}

    purged = await store.purge_job_snapshots(finished_before=datetime.now(timezone.utc) + timedelta(seconds=1))

    assert purged == 1
    assert await store.load_job_snapshot("other") is None
    assert await store.load_job_snapshot("running") is not None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_ping(store: SyncStateStore) -> None:
    assert await store.ping() is True


@pytest.mark.unit
def test_connect_raises_critical_after_retries(tmp_path) -> None:
    store = SyncStateStore(tmp_path / "kb.sqlite")

    with (
        patch("kb_sync.utils.sync_state_store.sqlite3.connect", side_effect=sqlite3.OperationalError("disk I/O error")) as connect,
        patch("kb_sync.utils.sync_state_store.time.sleep") as sleep,
        pytest.raises(DatabaseCriticalError, match="Unable to open database"),
    ):
        store._connect()

    assert connect.call_count == _MAX_CONNECT_RETRIES
    assert sleep.call_count == _MAX_CONNECT_RETRIES - 1
