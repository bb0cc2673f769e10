from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from kb_sync.domain.diff import ChangeKind
from kb_sync.domain.model import RunStatus, SyncType
from kb_sync.domain.sync_job import InvalidJobTransitionError, JobPhase, JobState, RunState, SyncJob


def _syncing_job(urls_to_process: int = 3) -> SyncJob:
    job = SyncJob.create_new(source_id="src", source_name="Docs", sync_type=SyncType.MANUAL, triggered_by="alice")
    job.start_discovery()
    job.start_syncing(total_urls_in_sitemap=urls_to_process, new_urls=urls_to_process, deleted_urls=0, urls_to_process=urls_to_process)
    return job


@pytest.mark.unit
def test_new_job_is_waiting_in_discovery() -> None:
    job = SyncJob.create_new(source_id="src", source_name="Docs", sync_type=SyncType.SCHEDULED)

    snapshot = job.snapshot()

    assert snapshot["state"] == JobState.WAITING.value
    assert snapshot["phase"] == JobPhase.DISCOVERY.value
    assert snapshot["syncType"] == "scheduled"
    assert snapshot["urlsProcessed"] is None
    assert snapshot["result"] is None


@pytest.mark.unit
def test_progress_counters_only_grow() -> None:
    job = _syncing_job(3)
    seen: list[int] = []

    job.record_url_synced("https://a/1", ChangeKind.NEW)
    seen.append(job.snapshot()["urlsProcessed"])
    job.record_url_failed("https://a/2", "HTTP 500")
    seen.append(job.snapshot()["urlsProcessed"])
    job.record_url_synced("https://a/3", ChangeKind.UNCHANGED)
    seen.append(job.snapshot()["urlsProcessed"])

    assert seen == [1, 2, 3]
    assert job.urls_synced + job.urls_failed == job.urls_processed
    assert job.snapshot()["currentUrl"] == "https://a/3"
    assert job.state == JobState.ACTIVE


@pytest.mark.unit
@pytest.mark.parametrize(
    ("synced", "failed", "status", "run_state"),
    [
        (3, 0, RunStatus.SUCCESS, RunState.SUCCEEDED),
        (2, 1, RunStatus.PARTIAL, RunState.PARTIALLY_SUCCEEDED),
        (0, 3, RunStatus.FAILED, RunState.ALL_URLS_FAILED),
    ],
)
def test_finish_derives_status_from_counters(synced, failed, status, run_state) -> None:
    job = _syncing_job(synced + failed)
    for index in range(synced):
        job.record_url_synced(f"https://a/ok{index}", ChangeKind.NEW)
    for index in range(failed):
        job.record_url_failed(f"https://a/bad{index}", "timeout")

    assert job.finish() == status
    assert job.run_state == run_state
    assert job.state == JobState.COMPLETED
    result = job.result()
    assert result is not None
    assert result["urlsSynced"] == synced
    assert result["urlsFailed"] == failed
    assert result["success"] is (status != RunStatus.FAILED)
    assert len(result["errors"]) == failed


@pytest.mark.unit
def test_empty_run_succeeds() -> None:
    job = _syncing_job(0)

    assert job.finish() == RunStatus.SUCCESS
    assert job.result()["urlsProcessed"] == 0


@pytest.mark.unit
def test_fail_is_terminal_and_has_no_result() -> None:
    job = SyncJob.create_new(source_id="src", source_name="Docs", sync_type=SyncType.MANUAL)
    job.start_discovery()

    job.fail("Could not fetch sitemap", error_kind="unreachable")

    snapshot = job.snapshot()
    assert snapshot["state"] == "failed"
    assert snapshot["phase"] == "failed"
    assert snapshot["errorKind"] == "unreachable"
    assert snapshot["failedReason"] == "Could not fetch sitemap"
    assert snapshot["result"] is None
    assert job.run_status == RunStatus.FAILED


@pytest.mark.unit
def test_terminal_job_rejects_further_updates() -> None:
    job = _syncing_job(1)
    job.record_url_synced("https://a/1", ChangeKind.NEW)
    job.finish()

    with pytest.raises(InvalidJobTransitionError):
        job.record_url_failed("https://a/1", "late")
    with pytest.raises(InvalidJobTransitionError):
        job.fail("late", error_kind="internal")


@pytest.mark.unit
def test_cannot_sync_before_discovery() -> None:
    job = SyncJob.create_new(source_id="src", source_name="Docs", sync_type=SyncType.MANUAL)

    with pytest.raises(InvalidJobTransitionError):
        job.start_syncing(total_urls_in_sitemap=1, new_urls=1, deleted_urls=0, urls_to_process=1)


@pytest.mark.unit
def test_terminal_snapshot_is_stable() -> None:
    job = _syncing_job(1)
    job.record_url_synced("https://a/1", ChangeKind.UPDATED)
    job.finish(completed_at=datetime.now(timezone.utc) + timedelta(seconds=1))

    assert job.snapshot() == job.snapshot()
    assert job.snapshot()["updatedUrls"] == 1


@pytest.mark.unit
def test_dict_roundtrip_preserves_terminal_state() -> None:
    job = _syncing_job(2)
    job.record_url_synced("https://a/1", ChangeKind.NEW)
    job.record_url_failed("https://a/2", "HTTP 404")
    job.finish()

    restored = SyncJob.from_dict(job.to_dict())

    assert restored.snapshot() == job.snapshot()
    assert restored.failed_urls == job.failed_urls
    assert restored.is_terminal
