"""SQLite-backed state store for sources, the URL ledger, sync history, and job snapshots."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
import functools
import json
import logging
from pathlib import Path
import sqlite3
import time
from typing import Any, ClassVar, TypeVar

from anyio import to_thread

from kb_sync.domain.model import (
    DiscoveryStats,
    FailedUrl,
    LedgerEntry,
    RunStatus,
    RunSyncStats,
    Source,
    SourceSyncStatus,
    SourceType,
    SyncHistoryEntry,
    SyncType,
    UrlStatus,
)
from kb_sync.utils.sqlite_pragmas import apply_read_pragmas, apply_write_pragmas


logger = logging.getLogger(__name__)

T = TypeVar("T")

_MAX_CONNECT_RETRIES = 3
_RETRY_DELAY_SECONDS = 0.5


class StateStoreError(RuntimeError):
    """A read or write against the state store failed."""


class DatabaseCriticalError(StateStoreError):
    """Unrecoverable database error requiring process restart.

    Raised once connection retries are exhausted so a supervisor can restart
    the process on a healthy volume.
    """


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string comparison matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _like_pattern(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SyncStateStore:
    """Persist the source registry, URL ledger, sync history, and job snapshots in SQLite.

    Every public method is async and runs its SQLite work on a worker thread,
    so network-bound sync jobs never stall behind database I/O. Statements that
    must be atomic (lease compare-and-set, diff application, run finalisation)
    execute inside one transaction.
    """

    _SOURCE_COLUMNS: ClassVar[dict[str, str]] = {
        "name": "name",
        "source_type": "source_type",
        "sitemap_url": "sitemap_url",
        "base_url_filter": "base_url_filter",
        "category": "category",
        "sync_interval_hours": "sync_interval_hours",
        "content_selectors": "content_selectors",
        "exclude_selectors": "exclude_selectors",
        "sync_enabled": "sync_enabled",
        "is_active": "is_active",
    }

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_root = self.db_path.parent
        self.db_root.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    def _connect(self, *, read_only: bool = False) -> sqlite3.Connection:
        """Connect to SQLite with self-healing retry logic."""
        last_error: sqlite3.Error | None = None

        for attempt in range(_MAX_CONNECT_RETRIES):
            try:
                self.db_root.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self.db_path, check_same_thread=False)
                if read_only:
                    apply_read_pragmas(conn)
                else:
                    apply_write_pragmas(conn)
                conn.row_factory = sqlite3.Row
                return conn
            except sqlite3.Error as exc:
                last_error = exc
                if attempt < _MAX_CONNECT_RETRIES - 1:
                    delay = _RETRY_DELAY_SECONDS * (2**attempt)
                    logger.warning(
                        "SQLite connect attempt %d/%d failed for %s: %s. Retrying in %.1fs...",
                        attempt + 1,
                        _MAX_CONNECT_RETRIES,
                        self.db_path,
                        exc,
                        delay,
                    )
                    time.sleep(delay)

        logger.critical(
            "FATAL: Unable to open database at %s after %d attempts: %s",
            self.db_path,
            _MAX_CONNECT_RETRIES,
            last_error,
        )
        raise DatabaseCriticalError(
            f"Unable to open database at {self.db_path} after {_MAX_CONNECT_RETRIES} attempts: {last_error}"
        )

    @contextmanager
    def _transaction(self, *, read_only: bool = False) -> Iterator[sqlite3.Connection]:
        conn = self._connect(read_only=read_only)
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StateStoreError(f"State store operation failed: {exc}") from exc
        finally:
            conn.close()

    async def _run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await to_thread.run_sync(functools.partial(func, *args, **kwargs))

    def _initialize_schema(self) -> None:
        with self._transaction() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sources (
                    id TEXT PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    sitemap_url TEXT NOT NULL,
                    base_url_filter TEXT,
                    category TEXT NOT NULL,
                    sync_interval_hours INTEGER NOT NULL,
                    content_selectors TEXT NOT NULL DEFAULT '[]',
                    exclude_selectors TEXT NOT NULL DEFAULT '[]',
                    sync_enabled INTEGER NOT NULL DEFAULT 1,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    last_sync_at TEXT,
                    last_sync_status TEXT NOT NULL DEFAULT 'never',
                    last_sync_error TEXT,
                    last_sync_duration_ms INTEGER,
                    total_urls INTEGER NOT NULL DEFAULT 0,
                    synced_urls INTEGER NOT NULL DEFAULT 0,
                    failed_urls INTEGER NOT NULL DEFAULT 0,
                    pending_urls INTEGER NOT NULL DEFAULT 0,
                    current_job_id TEXT,
                    current_job_started_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_sources_client ON sources (client_id, created_at DESC);
                CREATE TABLE IF NOT EXISTS sync_urls (
                    source_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    title TEXT,
                    content_hash TEXT,
                    word_count INTEGER,
                    lastmod TEXT,
                    discovered_at TEXT NOT NULL,
                    last_synced_at TEXT,
                    last_sync_error TEXT,
                    sync_attempts INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (source_id, url)
                );
                CREATE INDEX IF NOT EXISTS idx_sync_urls_status ON sync_urls (source_id, status);
                CREATE TABLE IF NOT EXISTS sync_history (
                    id TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    sync_type TEXT NOT NULL,
                    triggered_by TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT NOT NULL,
                    duration_ms INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    discovery_stats TEXT NOT NULL,
                    sync_stats TEXT NOT NULL,
                    failed_urls TEXT NOT NULL,
                    error_message TEXT,
                    error_kind TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_sync_history_source ON sync_history (source_id, started_at DESC);
                CREATE TABLE IF NOT EXISTS sync_jobs (
                    job_id TEXT PRIMARY KEY,
                    source_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    terminal INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_sync_jobs_source ON sync_jobs (source_id, updated_at DESC);
                """
            )

    async def ping(self) -> bool:
        """Cheap read used by the health endpoint."""
        return await self._run(self._ping_sync)

    def _ping_sync(self) -> bool:
        with self._transaction(read_only=True) as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_source(row: sqlite3.Row) -> Source:
        return Source(
            id=row["id"],
            client_id=row["client_id"],
            name=row["name"],
            source_type=SourceType(row["source_type"]),
            sitemap_url=row["sitemap_url"],
            base_url_filter=row["base_url_filter"],
            category=row["category"],
            sync_interval_hours=int(row["sync_interval_hours"]),
            content_selectors=json.loads(row["content_selectors"] or "[]"),
            exclude_selectors=json.loads(row["exclude_selectors"] or "[]"),
            sync_enabled=bool(row["sync_enabled"]),
            is_active=bool(row["is_active"]),
            last_sync_at=_dt(row["last_sync_at"]),
            last_sync_status=SourceSyncStatus(row["last_sync_status"]),
            last_sync_error=row["last_sync_error"],
            last_sync_duration_ms=row["last_sync_duration_ms"],
            total_urls=row["total_urls"],
            synced_urls=row["synced_urls"],
            failed_urls=row["failed_urls"],
            pending_urls=row["pending_urls"],
            current_job_id=row["current_job_id"],
            current_job_started_at=_dt(row["current_job_started_at"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            source_id=row["source_id"],
            url=row["url"],
            status=UrlStatus(row["status"]),
            title=row["title"],
            content_hash=row["content_hash"],
            word_count=row["word_count"],
            lastmod=row["lastmod"],
            discovered_at=_dt(row["discovered_at"]),
            last_synced_at=_dt(row["last_synced_at"]),
            last_sync_error=row["last_sync_error"],
            sync_attempts=row["sync_attempts"],
        )

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> SyncHistoryEntry:
        return SyncHistoryEntry(
            id=row["id"],
            source_id=row["source_id"],
            sync_type=SyncType(row["sync_type"]),
            triggered_by=row["triggered_by"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]),
            duration_ms=row["duration_ms"],
            status=RunStatus(row["status"]),
            discovery_stats=DiscoveryStats.from_dict(json.loads(row["discovery_stats"])),
            sync_stats=RunSyncStats.from_dict(json.loads(row["sync_stats"])),
            failed_urls=tuple(FailedUrl(url=item["url"], error=item["error"]) for item in json.loads(row["failed_urls"])),
            error_message=row["error_message"],
            error_kind=row["error_kind"],
        )

    # ------------------------------------------------------------------
    # Source registry
    # ------------------------------------------------------------------

    async def create_source(self, source: Source) -> Source:
        return await self._run(self._create_source_sync, source)

    def _create_source_sync(self, source: Source) -> Source:
        now = datetime.now(timezone.utc)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sources (
                    id, client_id, name, source_type, sitemap_url, base_url_filter, category,
                    sync_interval_hours, content_selectors, exclude_selectors, sync_enabled,
                    is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source.id,
                    source.client_id,
                    source.name,
                    source.source_type.value,
                    source.sitemap_url,
                    source.base_url_filter,
                    source.category,
                    source.sync_interval_hours,
                    json.dumps(source.content_selectors),
                    json.dumps(source.exclude_selectors),
                    int(source.sync_enabled),
                    int(source.is_active),
                    _ts(now),
                    _ts(now),
                ),
            )
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source.id,)).fetchone()
        return self._row_to_source(row)

    async def get_source(self, source_id: str) -> Source | None:
        return await self._run(self._get_source_sync, source_id)

    def _get_source_sync(self, source_id: str) -> Source | None:
        with self._transaction(read_only=True) as conn:
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return self._row_to_source(row) if row else None

    async def list_sources(
        self,
        client_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        include_inactive: bool = False,
    ) -> tuple[list[Source], int]:
        return await self._run(self._list_sources_sync, client_id, page, limit, include_inactive)

    def _list_sources_sync(
        self, client_id: str, page: int, limit: int, include_inactive: bool
    ) -> tuple[list[Source], int]:
        where = "client_id = ?"
        params: list[Any] = [client_id]
        if not include_inactive:
            where += " AND is_active = 1"
        with self._transaction(read_only=True) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM sources WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM sources WHERE {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        return [self._row_to_source(row) for row in rows], total

    async def list_schedulable_sources(self) -> list[Source]:
        """Enabled, active sources; due-ness is decided by the scheduler."""
        return await self._run(self._list_schedulable_sources_sync)

    def _list_schedulable_sources_sync(self) -> list[Source]:
        with self._transaction(read_only=True) as conn:
            rows = conn.execute(
                "SELECT * FROM sources WHERE sync_enabled = 1 AND is_active = 1 ORDER BY last_sync_at IS NOT NULL, last_sync_at"
            ).fetchall()
        return [self._row_to_source(row) for row in rows]

    async def update_source(self, source_id: str, changes: dict[str, Any]) -> Source | None:
        return await self._run(self._update_source_sync, source_id, changes)

    def _update_source_sync(self, source_id: str, changes: dict[str, Any]) -> Source | None:
        assignments: list[str] = []
        params: list[Any] = []
        for key, value in changes.items():
            column = self._SOURCE_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Unknown source field: {key}")
            if key in {"content_selectors", "exclude_selectors"}:
                value = json.dumps(list(value or []))
            elif key in {"sync_enabled", "is_active"}:
                value = int(bool(value))
            elif isinstance(value, SourceType):
                value = value.value
            assignments.append(f"{column} = ?")
            params.append(value)
        assignments.append("updated_at = ?")
        params.append(_ts(datetime.now(timezone.utc)))

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE sources SET {', '.join(assignments)} WHERE id = ?",
                [*params, source_id],
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return self._row_to_source(row)

    async def delete_source(self, source_id: str) -> tuple[bool, str | None]:
        """Delete an idle source and cascade its ledger, history, and job snapshots.

        Returns ``(True, None)`` when deleted, ``(False, job_id)`` when a job
        holds the lease, and ``(False, None)`` when the source does not exist.
        The lease check and the delete share one transaction.
        """
        return await self._run(self._delete_source_sync, source_id)

    def _delete_source_sync(self, source_id: str) -> tuple[bool, str | None]:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sources WHERE id = ? AND current_job_id IS NULL", (source_id,))
            if cursor.rowcount == 0:
                row = conn.execute("SELECT current_job_id FROM sources WHERE id = ?", (source_id,)).fetchone()
                return False, row["current_job_id"] if row else None
            urls = conn.execute("DELETE FROM sync_urls WHERE source_id = ?", (source_id,)).rowcount
            history = conn.execute("DELETE FROM sync_history WHERE source_id = ?", (source_id,)).rowcount
            conn.execute("DELETE FROM sync_jobs WHERE source_id = ?", (source_id,))
        logger.info("Deleted source %s (%d ledger rows, %d history entries)", source_id, urls, history)
        return True, None

    async def get_source_stats(self, source_id: str) -> dict[str, Any]:
        return await self._run(self._get_source_stats_sync, source_id)

    def _get_source_stats_sync(self, source_id: str) -> dict[str, Any]:
        with self._transaction(read_only=True) as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM sync_urls WHERE source_id = ? GROUP BY status",
                (source_id,),
            ).fetchall()
            avg_row = conn.execute(
                "SELECT AVG(duration_ms) FROM sync_history WHERE source_id = ?",
                (source_id,),
            ).fetchone()
        counts = {row["status"]: row["count"] for row in rows}
        avg = avg_row[0] if avg_row else None
        return {
            "totalUrls": sum(count for status, count in counts.items() if status != UrlStatus.DELETED.value),
            "syncedUrls": counts.get(UrlStatus.SYNCED.value, 0),
            "failedUrls": counts.get(UrlStatus.FAILED.value, 0),
            "pendingUrls": counts.get(UrlStatus.PENDING.value, 0),
            "deletedUrls": counts.get(UrlStatus.DELETED.value, 0),
            "avgSyncDurationMs": int(avg) if avg is not None else None,
        }

    # ------------------------------------------------------------------
    # Single-flight job lease
    # ------------------------------------------------------------------

    async def try_acquire_job(
        self,
        source_id: str,
        job_id: str,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> tuple[bool, str | None]:
        """Compare-and-set the source's current job id.

        Returns ``(True, job_id)`` when the lease was taken, ``(False,
        existing_job_id)`` when another live job holds it, and ``(False,
        None)`` when the source does not exist.
        """
        return await self._run(self._try_acquire_job_sync, source_id, job_id, now, stale_before)

    def _try_acquire_job_sync(
        self, source_id: str, job_id: str, now: datetime, stale_before: datetime
    ) -> tuple[bool, str | None]:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sources SET current_job_id = ?, current_job_started_at = ?
                WHERE id = ? AND (current_job_id IS NULL OR current_job_started_at < ?)
                """,
                (job_id, _ts(now), source_id, _ts(stale_before)),
            )
            if cursor.rowcount == 1:
                return True, job_id
            row = conn.execute("SELECT current_job_id FROM sources WHERE id = ?", (source_id,)).fetchone()
        if row is None:
            return False, None
        return False, row["current_job_id"]

    async def release_job(self, source_id: str, job_id: str) -> bool:
        return await self._run(self._release_job_sync, source_id, job_id)

    def _release_job_sync(self, source_id: str, job_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE sources SET current_job_id = NULL, current_job_started_at = NULL"
                " WHERE id = ? AND current_job_id = ?",
                (source_id, job_id),
            )
        return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # URL ledger
    # ------------------------------------------------------------------

    async def list_ledger(self, source_id: str) -> list[LedgerEntry]:
        return await self._run(self._list_ledger_sync, source_id)

    def _list_ledger_sync(self, source_id: str) -> list[LedgerEntry]:
        with self._transaction(read_only=True) as conn:
            rows = conn.execute("SELECT * FROM sync_urls WHERE source_id = ?", (source_id,)).fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def get_ledger_entry(self, source_id: str, url: str) -> LedgerEntry | None:
        return await self._run(self._get_ledger_entry_sync, source_id, url)

    def _get_ledger_entry_sync(self, source_id: str, url: str) -> LedgerEntry | None:
        with self._transaction(read_only=True) as conn:
            row = conn.execute(
                "SELECT * FROM sync_urls WHERE source_id = ? AND url = ?",
                (source_id, url),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    async def apply_diff(
        self,
        source_id: str,
        *,
        new_urls: list[str],
        revived_urls: list[str],
        deleted_urls: list[str],
        lastmod: dict[str, str | None] | None = None,
    ) -> None:
        """Insert new URLs as pending, revive rediscovered ones, and soft-delete vanished ones."""
        await self._run(self._apply_diff_sync, source_id, new_urls, revived_urls, deleted_urls, lastmod or {})

    def _apply_diff_sync(
        self,
        source_id: str,
        new_urls: list[str],
        revived_urls: list[str],
        deleted_urls: list[str],
        lastmod: dict[str, str | None],
    ) -> None:
        now = _ts(datetime.now(timezone.utc))
        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO sync_urls (source_id, url, status, lastmod, discovered_at, sync_attempts)
                VALUES (?, ?, 'pending', ?, ?, 0)
                ON CONFLICT(source_id, url) DO NOTHING
                """,
                [(source_id, url, lastmod.get(url), now) for url in new_urls],
            )
            conn.executemany(
                "UPDATE sync_urls SET status = 'pending', last_sync_error = NULL WHERE source_id = ? AND url = ?",
                [(source_id, url) for url in revived_urls],
            )
            conn.executemany(
                "UPDATE sync_urls SET status = 'deleted' WHERE source_id = ? AND url = ? AND status != 'deleted'",
                [(source_id, url) for url in deleted_urls],
            )
            conn.executemany(
                "UPDATE sync_urls SET lastmod = ? WHERE source_id = ? AND url = ?",
                [(value, source_id, url) for url, value in lastmod.items() if value],
            )

    async def record_fetch_success(
        self,
        source_id: str,
        url: str,
        *,
        title: str | None,
        content_hash: str,
        word_count: int,
        attempts: int = 1,
        synced_at: datetime | None = None,
    ) -> None:
        await self._run(
            self._record_fetch_sync,
            source_id,
            url,
            UrlStatus.SYNCED,
            attempts,
            synced_at or datetime.now(timezone.utc),
            title=title,
            content_hash=content_hash,
            word_count=word_count,
        )

    async def record_fetch_failure(
        self,
        source_id: str,
        url: str,
        *,
        error: str,
        attempts: int = 1,
    ) -> None:
        await self._run(
            self._record_fetch_sync,
            source_id,
            url,
            UrlStatus.FAILED,
            attempts,
            None,
            error=error,
        )

    def _record_fetch_sync(
        self,
        source_id: str,
        url: str,
        status: UrlStatus,
        attempts: int,
        synced_at: datetime | None,
        *,
        title: str | None = None,
        content_hash: str | None = None,
        word_count: int | None = None,
        error: str | None = None,
    ) -> None:
        with self._transaction() as conn:
            if status == UrlStatus.SYNCED:
                cursor = conn.execute(
                    """
                    UPDATE sync_urls SET status = 'synced', title = ?, content_hash = ?, word_count = ?,
                        last_synced_at = ?, last_sync_error = NULL, sync_attempts = sync_attempts + ?
                    WHERE source_id = ? AND url = ?
                    """,
                    (title, content_hash, word_count, _ts(synced_at or datetime.now(timezone.utc)), attempts, source_id, url),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE sync_urls SET status = 'failed', last_sync_error = ?,
                        sync_attempts = sync_attempts + ?
                    WHERE source_id = ? AND url = ?
                    """,
                    (error, attempts, source_id, url),
                )
            if cursor.rowcount == 0:
                raise StateStoreError(f"No ledger entry for {url} in source {source_id}")

    async def query_ledger(
        self,
        source_id: str,
        *,
        status: UrlStatus | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[LedgerEntry], int]:
        return await self._run(self._query_ledger_sync, source_id, status, search, page, limit)

    def _query_ledger_sync(
        self,
        source_id: str,
        status: UrlStatus | None,
        search: str | None,
        page: int,
        limit: int,
    ) -> tuple[list[LedgerEntry], int]:
        where = "source_id = ?"
        params: list[Any] = [source_id]
        if status is not None:
            where += " AND status = ?"
            params.append(status.value)
        if search:
            where += " AND (url LIKE ? ESCAPE '\\' OR COALESCE(title, '') LIKE ? ESCAPE '\\')"
            pattern = _like_pattern(search)
            params.extend([pattern, pattern])
        with self._transaction(read_only=True) as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM sync_urls WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM sync_urls WHERE {where} ORDER BY url LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            ).fetchall()
        return [self._row_to_entry(row) for row in rows], total

    # ------------------------------------------------------------------
    # Run finalisation and history
    # ------------------------------------------------------------------

    async def finish_run(
        self,
        entry: SyncHistoryEntry,
        *,
        job_id: str,
        source_status: SourceSyncStatus,
        source_error: str | None,
    ) -> Source | None:
        """Append history, recompute source counts from the ledger, and release the lease atomically."""
        return await self._run(self._finish_run_sync, entry, job_id, source_status, source_error)

    def _finish_run_sync(
        self,
        entry: SyncHistoryEntry,
        job_id: str,
        source_status: SourceSyncStatus,
        source_error: str | None,
    ) -> Source | None:
        with self._transaction() as conn:
            if conn.execute("SELECT 1 FROM sources WHERE id = ?", (entry.source_id,)).fetchone() is None:
                logger.warning("Source %s was deleted during job %s; dropping its history entry", entry.source_id, job_id)
                return None
            conn.execute(
                """
                INSERT INTO sync_history (
                    id, source_id, sync_type, triggered_by, started_at, completed_at, duration_ms,
                    status, discovery_stats, sync_stats, failed_urls, error_message, error_kind
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.source_id,
                    entry.sync_type.value,
                    entry.triggered_by,
                    _ts(entry.started_at),
                    _ts(entry.completed_at),
                    entry.duration_ms,
                    entry.status.value,
                    json.dumps(entry.discovery_stats.to_dict()),
                    json.dumps(entry.sync_stats.to_dict()),
                    json.dumps([item.to_dict() for item in entry.failed_urls]),
                    entry.error_message,
                    entry.error_kind,
                ),
            )
            counts = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS count FROM sync_urls WHERE source_id = ? GROUP BY status",
                    (entry.source_id,),
                ).fetchall()
            }
            total = sum(count for status, count in counts.items() if status != UrlStatus.DELETED.value)
            conn.execute(
                """
                UPDATE sources SET
                    last_sync_at = ?, last_sync_status = ?, last_sync_error = ?, last_sync_duration_ms = ?,
                    total_urls = ?, synced_urls = ?, failed_urls = ?, pending_urls = ?,
                    current_job_id = CASE WHEN current_job_id = ? THEN NULL ELSE current_job_id END,
                    current_job_started_at = CASE WHEN current_job_id = ? THEN NULL ELSE current_job_started_at END
                WHERE id = ?
                """,
                (
                    _ts(entry.completed_at),
                    source_status.value,
                    source_error,
                    entry.duration_ms,
                    total,
                    counts.get(UrlStatus.SYNCED.value, 0),
                    counts.get(UrlStatus.FAILED.value, 0),
                    counts.get(UrlStatus.PENDING.value, 0),
                    job_id,
                    job_id,
                    entry.source_id,
                ),
            )
            row = conn.execute("SELECT * FROM sources WHERE id = ?", (entry.source_id,)).fetchone()
        return self._row_to_source(row) if row else None

    async def list_history(
        self, source_id: str, *, page: int = 1, limit: int = 20
    ) -> tuple[list[SyncHistoryEntry], int]:
        return await self._run(self._list_history_sync, source_id, page, limit)

    def _list_history_sync(self, source_id: str, page: int, limit: int) -> tuple[list[SyncHistoryEntry], int]:
        with self._transaction(read_only=True) as conn:
            total = conn.execute("SELECT COUNT(*) FROM sync_history WHERE source_id = ?", (source_id,)).fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM sync_history WHERE source_id = ? ORDER BY started_at DESC, rowid DESC LIMIT ? OFFSET ?",
                (source_id, limit, (page - 1) * limit),
            ).fetchall()
        return [self._row_to_history(row) for row in rows], total

    # ------------------------------------------------------------------
    # Job snapshots
    # ------------------------------------------------------------------

    async def save_job_snapshot(self, job_id: str, source_id: str, payload: dict[str, Any], *, terminal: bool) -> None:
        await self._run(self._save_job_snapshot_sync, job_id, source_id, payload, terminal)

    def _save_job_snapshot_sync(self, job_id: str, source_id: str, payload: dict[str, Any], terminal: bool) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO sync_jobs (job_id, source_id, payload, terminal, updated_at) VALUES (?, ?, ?, ?, ?)"
                " ON CONFLICT(job_id) DO UPDATE SET payload=excluded.payload, terminal=excluded.terminal,"
                " updated_at=excluded.updated_at",
                (job_id, source_id, json.dumps(payload, sort_keys=True), int(terminal), _ts(datetime.now(timezone.utc))),
            )

    async def load_job_snapshot(self, job_id: str) -> dict[str, Any] | None:
        return await self._run(self._load_job_snapshot_sync, job_id)

    def _load_job_snapshot_sync(self, job_id: str) -> dict[str, Any] | None:
        with self._transaction(read_only=True) as conn:
            row = conn.execute("SELECT payload FROM sync_jobs WHERE job_id = ?", (job_id,)).fetchone()
        if not row:
            return None
        try:
            return json.loads(row["payload"])
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt job snapshot %s", job_id)
            return None

    async def supersede_job_snapshots(self, source_id: str, *, keep_job_id: str) -> int:
        """Drop the source's finished snapshots other than ``keep_job_id``."""
        return await self._run(self._supersede_job_snapshots_sync, source_id, keep_job_id)

    def _supersede_job_snapshots_sync(self, source_id: str, keep_job_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_jobs WHERE source_id = ? AND terminal = 1 AND job_id != ?",
                (source_id, keep_job_id),
            )
        return cursor.rowcount

    async def purge_job_snapshots(self, *, finished_before: datetime) -> int:
        """Drop terminal snapshots last updated before the cutoff."""
        return await self._run(self._purge_job_snapshots_sync, finished_before)

    def _purge_job_snapshots_sync(self, finished_before: datetime) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_jobs WHERE terminal = 1 AND updated_at < ?",
                (_ts(finished_before),),
            )
        return cursor.rowcount
