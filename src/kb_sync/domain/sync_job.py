"""Domain model for pollable sync job progress.

A ``SyncJob`` is the aggregate root for one run of one source. The sync
orchestrator drives it through the run state machine; pollers only ever see
``snapshot()`` output. Counters only grow, and once the job reaches a
terminal state every further mutation is rejected, so repeated polls of a
finished job return the same payload.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from .diff import ChangeKind
from .model import FailedUrl, RunStatus, SyncType


class SyncJobError(Exception):
    """Base error for sync job domain."""


class InvalidJobTransitionError(SyncJobError):
    """Raised when the run state machine is driven out of order."""


class JobState(str, Enum):
    """Coarse job lifecycle as reported to pollers."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {JobState.COMPLETED, JobState.FAILED}


class JobPhase(str, Enum):
    DISCOVERY = "discovery"
    SYNCING = "syncing"
    COMPLETE = "complete"
    FAILED = "failed"


class RunState(str, Enum):
    """Orchestrator state machine for a single run."""

    NOT_RUNNING = "not_running"
    DISCOVERING = "discovering"
    SYNCING = "syncing"
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    ALL_URLS_FAILED = "all_urls_failed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {
            RunState.SUCCEEDED,
            RunState.PARTIALLY_SUCCEEDED,
            RunState.ALL_URLS_FAILED,
            RunState.FAILED,
        }

    @property
    def job_state(self) -> JobState:
        if self == RunState.NOT_RUNNING:
            return JobState.WAITING
        if self in {RunState.DISCOVERING, RunState.SYNCING}:
            return JobState.ACTIVE
        if self == RunState.FAILED:
            return JobState.FAILED
        return JobState.COMPLETED

    @property
    def phase(self) -> JobPhase:
        if self in {RunState.NOT_RUNNING, RunState.DISCOVERING}:
            return JobPhase.DISCOVERY
        if self == RunState.SYNCING:
            return JobPhase.SYNCING
        if self == RunState.FAILED:
            return JobPhase.FAILED
        return JobPhase.COMPLETE


_ALLOWED_TRANSITIONS: dict[RunState, set[RunState]] = {
    RunState.NOT_RUNNING: {RunState.DISCOVERING, RunState.FAILED},
    RunState.DISCOVERING: {RunState.SYNCING, RunState.FAILED},
    RunState.SYNCING: {
        RunState.SUCCEEDED,
        RunState.PARTIALLY_SUCCEEDED,
        RunState.ALL_URLS_FAILED,
        RunState.FAILED,
    },
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class SyncJob:
    """Aggregate root tracking one synchronization run."""

    job_id: str
    source_id: str
    source_name: str
    sync_type: SyncType
    created_at: datetime
    triggered_by: str | None = None
    run_state: RunState = RunState.NOT_RUNNING
    message: str = "Sync queued"
    started_at: datetime | None = None
    completed_at: datetime | None = None
    total_urls_in_sitemap: int | None = None
    new_urls: int | None = None
    updated_urls: int | None = None
    unchanged_urls: int | None = None
    deleted_urls: int | None = None
    urls_to_process: int | None = None
    urls_processed: int | None = None
    urls_synced: int | None = None
    urls_failed: int | None = None
    current_url: str | None = None
    failed_urls: list[FailedUrl] = field(default_factory=list)
    run_status: RunStatus | None = None
    failed_reason: str | None = None
    error_kind: str | None = None
    version: int = 0

    @classmethod
    def create_new(
        cls,
        *,
        source_id: str,
        source_name: str,
        sync_type: SyncType,
        triggered_by: str | None = None,
        job_id: str | None = None,
    ) -> SyncJob:
        return cls(
            job_id=job_id or uuid4().hex,
            source_id=source_id,
            source_name=source_name,
            sync_type=sync_type,
            triggered_by=triggered_by,
            created_at=_utcnow(),
        )

    @property
    def state(self) -> JobState:
        return self.run_state.job_state

    @property
    def phase(self) -> JobPhase:
        return self.run_state.phase

    @property
    def is_terminal(self) -> bool:
        return self.run_state.is_terminal

    @property
    def duration_ms(self) -> int:
        return self.elapsed_ms(self.completed_at or _utcnow())

    def elapsed_ms(self, end: datetime) -> int:
        start = self.started_at or self.created_at
        return max(0, int((end - start).total_seconds() * 1000))

    def start_discovery(self) -> None:
        self._transition_to(RunState.DISCOVERING)
        self.started_at = _utcnow()
        self.message = "Discovering URLs from sitemap"

    def start_syncing(
        self,
        *,
        total_urls_in_sitemap: int,
        new_urls: int,
        deleted_urls: int,
        urls_to_process: int,
    ) -> None:
        self._transition_to(RunState.SYNCING)
        self.total_urls_in_sitemap = total_urls_in_sitemap
        self.new_urls = new_urls
        self.deleted_urls = deleted_urls
        self.updated_urls = 0
        self.unchanged_urls = 0
        self.urls_to_process = urls_to_process
        self.urls_processed = 0
        self.urls_synced = 0
        self.urls_failed = 0
        self.message = f"Syncing {urls_to_process} URLs"

    def record_url_synced(self, url: str, change: ChangeKind) -> None:
        self._ensure_syncing()
        self.urls_processed = (self.urls_processed or 0) + 1
        self.urls_synced = (self.urls_synced or 0) + 1
        if change == ChangeKind.UPDATED:
            self.updated_urls = (self.updated_urls or 0) + 1
        elif change == ChangeKind.UNCHANGED:
            self.unchanged_urls = (self.unchanged_urls or 0) + 1
        self._after_url(url)

    def record_url_failed(self, url: str, error: str) -> None:
        self._ensure_syncing()
        self.urls_processed = (self.urls_processed or 0) + 1
        self.urls_failed = (self.urls_failed or 0) + 1
        self.failed_urls.append(FailedUrl(url=url, error=error))
        self._after_url(url)

    def outcome(self) -> RunStatus:
        """Terminal status the counters currently imply, without closing the run."""
        if not self.urls_failed:
            return RunStatus.SUCCESS
        if self.urls_synced:
            return RunStatus.PARTIAL
        return RunStatus.FAILED

    def finish(self, *, completed_at: datetime | None = None) -> RunStatus:
        """Close a syncing run and derive its terminal status from the counters."""
        self._ensure_syncing()
        synced = self.urls_synced or 0
        failed = self.urls_failed or 0
        self.run_status = self.outcome()
        if self.run_status == RunStatus.SUCCESS:
            self._transition_to(RunState.SUCCEEDED)
            self.message = f"Sync complete: {synced} URLs synced"
        elif self.run_status == RunStatus.PARTIAL:
            self._transition_to(RunState.PARTIALLY_SUCCEEDED)
            self.message = f"Sync finished with errors: {synced} synced, {failed} failed"
        else:
            self._transition_to(RunState.ALL_URLS_FAILED)
            self.message = f"Sync finished but all {failed} URLs failed"
        self.current_url = None
        self.completed_at = completed_at or _utcnow()
        return self.run_status

    def fail(self, reason: str, *, error_kind: str, completed_at: datetime | None = None) -> None:
        self._transition_to(RunState.FAILED)
        self.run_status = RunStatus.FAILED
        self.failed_reason = reason
        self.error_kind = error_kind
        self.message = f"Sync failed: {reason}"
        self.current_url = None
        self.completed_at = completed_at or _utcnow()
        self.started_at = self.started_at or self.completed_at

    def result(self) -> dict[str, Any] | None:
        if not self.is_terminal or self.run_state == RunState.FAILED:
            return None
        return {
            "sourceId": self.source_id,
            "sourceName": self.source_name,
            "success": self.run_status != RunStatus.FAILED,
            "status": self.run_status.value if self.run_status else None,
            "discovery": {
                "totalUrlsInSitemap": self.total_urls_in_sitemap or 0,
                "newUrls": self.new_urls or 0,
                "updatedUrls": self.updated_urls or 0,
                "deletedUrls": self.deleted_urls or 0,
                "unchangedUrls": self.unchanged_urls or 0,
            },
            "urlsProcessed": self.urls_processed or 0,
            "urlsSynced": self.urls_synced or 0,
            "urlsFailed": self.urls_failed or 0,
            "urlsDeleted": self.deleted_urls or 0,
            "durationMs": self.duration_ms,
            "errors": [item.to_dict() for item in self.failed_urls],
        }

    def snapshot(self) -> dict[str, Any]:
        """Poll payload; stable once the job is terminal."""
        return {
            "jobId": self.job_id,
            "sourceId": self.source_id,
            "sourceName": self.source_name,
            "syncType": self.sync_type.value,
            "triggeredBy": self.triggered_by,
            "state": self.state.value,
            "phase": self.phase.value,
            "message": self.message,
            "createdAt": self.created_at.isoformat(),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationMs": self.duration_ms if self.is_terminal else None,
            "totalUrlsInSitemap": self.total_urls_in_sitemap,
            "newUrls": self.new_urls,
            "updatedUrls": self.updated_urls,
            "unchangedUrls": self.unchanged_urls,
            "deletedUrls": self.deleted_urls,
            "urlsToProcess": self.urls_to_process,
            "urlsProcessed": self.urls_processed,
            "urlsSynced": self.urls_synced,
            "urlsFailed": self.urls_failed,
            "currentUrl": self.current_url,
            "result": self.result(),
            "failedReason": self.failed_reason,
            "errorKind": self.error_kind,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.snapshot()
        payload["runState"] = self.run_state.value
        payload["runStatus"] = self.run_status.value if self.run_status else None
        payload["failedUrls"] = [item.to_dict() for item in self.failed_urls]
        payload["version"] = self.version
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SyncJob:
        created_at = _parse_dt(data.get("createdAt")) or _utcnow()
        run_status = data.get("runStatus")
        return cls(
            job_id=data["jobId"],
            source_id=data["sourceId"],
            source_name=data.get("sourceName", ""),
            sync_type=SyncType(data.get("syncType", SyncType.MANUAL.value)),
            triggered_by=data.get("triggeredBy"),
            created_at=created_at,
            run_state=RunState(data.get("runState", RunState.NOT_RUNNING.value)),
            message=data.get("message", ""),
            started_at=_parse_dt(data.get("startedAt")),
            completed_at=_parse_dt(data.get("completedAt")),
            total_urls_in_sitemap=data.get("totalUrlsInSitemap"),
            new_urls=data.get("newUrls"),
            updated_urls=data.get("updatedUrls"),
            unchanged_urls=data.get("unchangedUrls"),
            deleted_urls=data.get("deletedUrls"),
            urls_to_process=data.get("urlsToProcess"),
            urls_processed=data.get("urlsProcessed"),
            urls_synced=data.get("urlsSynced"),
            urls_failed=data.get("urlsFailed"),
            current_url=data.get("currentUrl"),
            failed_urls=[FailedUrl(url=item["url"], error=item["error"]) for item in data.get("failedUrls", [])],
            run_status=RunStatus(run_status) if run_status else None,
            failed_reason=data.get("failedReason"),
            error_kind=data.get("errorKind"),
            version=int(data.get("version", 0)),
        )

    def _after_url(self, url: str) -> None:
        self.current_url = url
        self.message = f"Processed {self.urls_processed} of {self.urls_to_process} URLs"
        self.version += 1

    def _ensure_syncing(self) -> None:
        if self.run_state != RunState.SYNCING:
            raise InvalidJobTransitionError(f"Job {self.job_id} is not syncing (state {self.run_state.value})")

    def _transition_to(self, new_state: RunState) -> None:
        if self.run_state == new_state:
            return
        allowed = _ALLOWED_TRANSITIONS.get(self.run_state, set())
        if new_state not in allowed:
            raise InvalidJobTransitionError(
                f"Cannot transition job {self.job_id} from {self.run_state.value} to {new_state.value}"
            )
        self.run_state = new_state
        self.version += 1
