"""Domain layer - pure synchronization rules with no infrastructure dependencies.

- Entities: Source, LedgerEntry, SyncHistoryEntry
- Aggregates: SyncJob (run state machine + pollable progress)
- Domain services: diff (ledger versus discovery classification)
"""

from kb_sync.domain.diff import ChangeKind, DiffResult, diff, resolve_change
from kb_sync.domain.model import (
    DiscoveryStats,
    FailedUrl,
    LedgerEntry,
    RunStatus,
    RunSyncStats,
    Source,
    SourceBusyError,
    SourceError,
    SourceNotFoundError,
    SourceSyncStatus,
    SourceType,
    SyncHistoryEntry,
    SyncType,
    UrlStatus,
)
from kb_sync.domain.sync_job import (
    InvalidJobTransitionError,
    JobPhase,
    JobState,
    RunState,
    SyncJob,
    SyncJobError,
)


__all__ = [
    "ChangeKind",
    "DiffResult",
    "DiscoveryStats",
    "FailedUrl",
    "InvalidJobTransitionError",
    "JobPhase",
    "JobState",
    "LedgerEntry",
    "RunState",
    "RunStatus",
    "RunSyncStats",
    "Source",
    "SourceBusyError",
    "SourceError",
    "SourceNotFoundError",
    "SourceSyncStatus",
    "SourceType",
    "SyncHistoryEntry",
    "SyncJob",
    "SyncJobError",
    "SyncType",
    "UrlStatus",
    "diff",
    "resolve_change",
]
