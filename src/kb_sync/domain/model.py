"""Domain model - entities and value objects for source synchronization.

- Source: a registered sitemap plus extraction rules for one client
- LedgerEntry: durable per-URL sync state for a source
- SyncHistoryEntry: immutable record of one finished run

No infrastructure dependencies live here; persistence maps rows onto these
dataclasses in ``kb_sync.utils.sync_state_store``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SourceError(Exception):
    """Base error for source registry rules."""


class SourceNotFoundError(SourceError, LookupError):
    def __init__(self, source_id: str):
        super().__init__(f"Source {source_id} not found")
        self.source_id = source_id


class SourceBusyError(SourceError):
    """The source has a live sync job and cannot be changed that way right now."""

    def __init__(self, source_id: str, job_id: str | None):
        super().__init__(f"Source {source_id} has a sync in progress")
        self.source_id = source_id
        self.job_id = job_id


class SourceType(str, Enum):
    HUBSPOT_KB = "hubspot_kb"
    CUSTOM_SITEMAP = "custom_sitemap"
    ZENDESK = "zendesk"
    CONFLUENCE = "confluence"

    @property
    def is_supported(self) -> bool:
        return self in {SourceType.HUBSPOT_KB, SourceType.CUSTOM_SITEMAP}


class SourceSyncStatus(str, Enum):
    """Outcome of the most recent run, as shown on the source summary."""

    NEVER = "never"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class UrlStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    DELETED = "deleted"


class SyncType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class RunStatus(str, Enum):
    """Terminal status recorded in sync history."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(slots=True)
class Source:
    id: str
    client_id: str
    name: str
    source_type: SourceType
    sitemap_url: str
    category: str
    sync_interval_hours: int
    base_url_filter: str | None = None
    content_selectors: list[str] = field(default_factory=list)
    exclude_selectors: list[str] = field(default_factory=list)
    sync_enabled: bool = True
    is_active: bool = True
    last_sync_at: datetime | None = None
    last_sync_status: SourceSyncStatus = SourceSyncStatus.NEVER
    last_sync_error: str | None = None
    last_sync_duration_ms: int | None = None
    total_urls: int = 0
    synced_urls: int = 0
    failed_urls: int = 0
    pending_urls: int = 0
    current_job_id: str | None = None
    current_job_started_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        """True when a scheduled run should start for this source."""
        if not self.sync_enabled or not self.is_active:
            return False
        if self.last_sync_at is None:
            return True
        elapsed_hours = (now - self.last_sync_at).total_seconds() / 3600
        return elapsed_hours >= self.sync_interval_hours

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "clientId": self.client_id,
            "name": self.name,
            "sourceType": self.source_type.value,
            "sitemapUrl": self.sitemap_url,
            "baseUrlFilter": self.base_url_filter,
            "category": self.category,
            "syncIntervalHours": self.sync_interval_hours,
            "contentSelectors": list(self.content_selectors),
            "excludeSelectors": list(self.exclude_selectors),
            "syncEnabled": self.sync_enabled,
            "isActive": self.is_active,
            "lastSyncAt": _iso(self.last_sync_at),
            "lastSyncStatus": self.last_sync_status.value,
            "lastSyncError": self.last_sync_error,
            "lastSyncDurationMs": self.last_sync_duration_ms,
            "totalUrls": self.total_urls,
            "syncedUrls": self.synced_urls,
            "failedUrls": self.failed_urls,
            "pendingUrls": self.pending_urls,
            "syncInProgress": self.current_job_id is not None,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


@dataclass(slots=True)
class LedgerEntry:
    source_id: str
    url: str
    status: UrlStatus = UrlStatus.PENDING
    title: str | None = None
    content_hash: str | None = None
    word_count: int | None = None
    lastmod: str | None = None
    discovered_at: datetime | None = None
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    sync_attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "url": self.url,
            "status": self.status.value,
            "title": self.title,
            "contentHash": self.content_hash,
            "wordCount": self.word_count,
            "lastmod": self.lastmod,
            "discoveredAt": _iso(self.discovered_at),
            "lastSyncedAt": _iso(self.last_synced_at),
            "lastSyncError": self.last_sync_error,
            "syncAttempts": self.sync_attempts,
        }


@dataclass(slots=True, frozen=True)
class DiscoveryStats:
    total_urls_in_sitemap: int = 0
    new_urls: int = 0
    updated_urls: int = 0
    deleted_urls: int = 0
    unchanged_urls: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "totalUrlsInSitemap": self.total_urls_in_sitemap,
            "newUrls": self.new_urls,
            "updatedUrls": self.updated_urls,
            "deletedUrls": self.deleted_urls,
            "unchangedUrls": self.unchanged_urls,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscoveryStats:
        return cls(
            total_urls_in_sitemap=int(data.get("totalUrlsInSitemap", 0)),
            new_urls=int(data.get("newUrls", 0)),
            updated_urls=int(data.get("updatedUrls", 0)),
            deleted_urls=int(data.get("deletedUrls", 0)),
            unchanged_urls=int(data.get("unchangedUrls", 0)),
        )


@dataclass(slots=True, frozen=True)
class RunSyncStats:
    urls_processed: int = 0
    urls_synced: int = 0
    urls_failed: int = 0
    urls_deleted: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "urlsProcessed": self.urls_processed,
            "urlsSynced": self.urls_synced,
            "urlsFailed": self.urls_failed,
            "urlsDeleted": self.urls_deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunSyncStats:
        return cls(
            urls_processed=int(data.get("urlsProcessed", 0)),
            urls_synced=int(data.get("urlsSynced", 0)),
            urls_failed=int(data.get("urlsFailed", 0)),
            urls_deleted=int(data.get("urlsDeleted", 0)),
        )


@dataclass(slots=True, frozen=True)
class FailedUrl:
    url: str
    error: str

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "error": self.error}


@dataclass(slots=True, frozen=True)
class SyncHistoryEntry:
    """Append-only record of a finished (or failed-to-start) run."""

    id: str
    source_id: str
    sync_type: SyncType
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    status: RunStatus
    discovery_stats: DiscoveryStats = field(default_factory=DiscoveryStats)
    sync_stats: RunSyncStats = field(default_factory=RunSyncStats)
    failed_urls: tuple[FailedUrl, ...] = ()
    triggered_by: str | None = None
    error_message: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceId": self.source_id,
            "syncType": self.sync_type.value,
            "triggeredBy": self.triggered_by,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat(),
            "durationMs": self.duration_ms,
            "status": self.status.value,
            "discoveryStats": self.discovery_stats.to_dict(),
            "syncStats": self.sync_stats.to_dict(),
            "failedUrls": [item.to_dict() for item in self.failed_urls],
            "errorMessage": self.error_message,
            "errorKind": self.error_kind,
        }
