"""Sync orchestrator - runs one source through discovery, diff, fetch, and finalisation.

Run state machine (see ``kb_sync.domain.sync_job``)::

    not_running -> discovering -> syncing -> succeeded | partially_succeeded | all_urls_failed
                        |             |
                        +--> failed <-+   (discovery error, infrastructure error, timeout)

Single-flight is enforced by the lease compare-and-set in the state store, so
two triggers for one source never run concurrently even across processes.
Every terminal state writes exactly one history entry in the same
transaction that recomputes the source counters and releases the lease.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import functools
import logging
import time
from uuid import uuid4

import httpx

from kb_sync.config import Settings
from kb_sync.domain.diff import ChangeKind, DiffResult, diff
from kb_sync.domain.model import (
    DiscoveryStats,
    RunStatus,
    RunSyncStats,
    Source,
    SourceNotFoundError,
    SourceSyncStatus,
    SyncHistoryEntry,
    SyncType,
)
from kb_sync.domain.sync_job import SyncJob
from kb_sync.observability import (
    ACTIVE_SYNC_JOBS,
    SYNC_JOB_DURATION,
    SYNC_JOBS,
    SYNC_TRIGGERS,
    URL_FETCHES,
    bind_job_context,
    create_span,
)
from kb_sync.services.document_sink import DocumentSink, LoggingDocumentSink
from kb_sync.services.job_status_publisher import JobStatusPublisher
from kb_sync.utils.content_fetcher import ContentFetcher, FetchError
from kb_sync.utils.http_client import build_http_client
from kb_sync.utils.sitemap_discovery import DiscoveryError, SitemapDiscovery
from kb_sync.utils.sync_models import SyncWorkerPool
from kb_sync.utils.sync_state_store import StateStoreError, SyncStateStore


logger = logging.getLogger(__name__)

ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_INFRASTRUCTURE = "infrastructure"
ERROR_KIND_CANCELLED = "cancelled"
ERROR_KIND_INTERNAL = "internal"

_SOURCE_STATUS = {
    RunStatus.SUCCESS: SourceSyncStatus.SUCCESS,
    RunStatus.PARTIAL: SourceSyncStatus.PARTIAL,
    RunStatus.FAILED: SourceSyncStatus.FAILED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class TriggerResult:
    job_id: str
    source_id: str
    source_name: str
    sync_type: SyncType
    deduplicated: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "jobId": self.job_id,
            "sourceId": self.source_id,
            "sourceName": self.source_name,
            "syncType": self.sync_type.value,
            "deduplicated": self.deduplicated,
        }


class SyncOrchestrator:
    """Start, run, and finalise sync jobs for registered sources."""

    def __init__(
        self,
        store: SyncStateStore,
        publisher: JobStatusPublisher,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
        sink: DocumentSink | None = None,
    ) -> None:
        self.store = store
        self.publisher = publisher
        self.settings = settings
        self.sink = sink or LoggingDocumentSink()
        self._owns_client = http_client is None
        self._client = http_client or build_http_client(settings)
        self.discovery = SitemapDiscovery.from_settings(settings, self._client)
        self.fetcher = ContentFetcher.from_settings(settings, self._client)
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running_jobs(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    async def trigger(
        self,
        source_id: str,
        *,
        sync_type: SyncType = SyncType.MANUAL,
        triggered_by: str | None = None,
    ) -> TriggerResult:
        """Start a job for the source, or return the job already running for it.

        Raises:
            SourceNotFoundError: the source does not exist.
            StateStoreError: the lease could not be read or written.
        """
        source = await self.store.get_source(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)

        job = SyncJob.create_new(
            source_id=source.id,
            source_name=source.name,
            sync_type=sync_type,
            triggered_by=triggered_by,
        )
        now = _utcnow()
        acquired, holder = await self.store.try_acquire_job(
            source.id,
            job.job_id,
            now=now,
            stale_before=now - timedelta(seconds=self.settings.stale_lease_seconds()),
        )
        if not acquired:
            if holder is None:
                raise SourceNotFoundError(source_id)
            SYNC_TRIGGERS.labels(sync_type=sync_type.value, result="deduplicated").inc()
            logger.info(f"Sync for source {source.id} already running as job {holder}; returning existing job")
            return TriggerResult(
                job_id=holder,
                source_id=source.id,
                source_name=source.name,
                sync_type=sync_type,
                deduplicated=True,
            )

        if source.current_job_id and source.current_job_id != job.job_id:
            logger.warning(f"Took over stale lease of job {source.current_job_id} for source {source.id}")

        try:
            await self.publisher.register(job)
        except StateStoreError:
            await self.store.release_job(source.id, job.job_id)
            raise

        SYNC_TRIGGERS.labels(sync_type=sync_type.value, result="started").inc()
        task = asyncio.create_task(self._run(job, source), name=f"sync-{source.id}-{job.job_id}")
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _task, job_id=job.job_id: self._tasks.pop(job_id, None))
        logger.info(f"Started {sync_type.value} sync job {job.job_id} for source {source.id} ({source.name})")
        return TriggerResult(
            job_id=job.job_id,
            source_id=source.id,
            source_name=source.name,
            sync_type=sync_type,
            deduplicated=False,
        )

    async def wait_for(self, job_id: str) -> None:
        """Block until an in-process job finishes (no-op for unknown jobs)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def _run(self, job: SyncJob, source: Source) -> None:
        bind_job_context(job_id=job.job_id, source_id=source.id)
        ACTIVE_SYNC_JOBS.labels(sync_type=job.sync_type.value).inc()
        started = time.perf_counter()
        timeout = self.settings.sync_job_timeout_seconds
        try:
            with create_span(
                "sync.job",
                attributes={
                    "kb.source_id": source.id,
                    "kb.job_id": job.job_id,
                    "kb.sync_type": job.sync_type.value,
                },
            ):
                try:
                    await asyncio.wait_for(self._execute(job, source), timeout=timeout)
                    await self._complete(job, source)
                except asyncio.TimeoutError:
                    await self._fail(job, source, ERROR_KIND_TIMEOUT, f"Sync timed out after {timeout} seconds")
                except DiscoveryError as exc:
                    await self._fail(job, source, exc.kind.value, exc.message)
                except StateStoreError as exc:
                    logger.error(f"State store failure during job {job.job_id}: {exc}", exc_info=True)
                    await self._fail(
                        job,
                        source,
                        ERROR_KIND_INFRASTRUCTURE,
                        f"Storage error, source state may be inconsistent: {exc}",
                    )
                except asyncio.CancelledError:
                    await self._fail(job, source, ERROR_KIND_CANCELLED, "Sync cancelled during shutdown")
                    raise
                except Exception as exc:
                    logger.exception(f"Unexpected error in sync job {job.job_id}")
                    await self._fail(job, source, ERROR_KIND_INTERNAL, f"Unexpected error: {exc}")
        finally:
            ACTIVE_SYNC_JOBS.labels(sync_type=job.sync_type.value).dec()
            status = job.run_status.value if job.run_status else "unknown"
            SYNC_JOBS.labels(sync_type=job.sync_type.value, status=status).inc()
            SYNC_JOB_DURATION.labels(sync_type=job.sync_type.value, status=status).observe(
                time.perf_counter() - started
            )

    async def _execute(self, job: SyncJob, source: Source) -> None:
        job.start_discovery()
        await self.publisher.publish(job, force=True)

        with create_span("sync.discovery", attributes={"kb.sitemap_url": source.sitemap_url}):
            discovered = await self.discovery.discover_entries(source.sitemap_url, source.base_url_filter)

        ledger = await self.store.list_ledger(source.id)
        plan = diff(discovered.urls, ledger)
        await self.store.apply_diff(
            source.id,
            new_urls=plan.new,
            revived_urls=plan.revived,
            deleted_urls=plan.deleted,
            lastmod=discovered.lastmod_map,
        )
        if plan.deleted:
            await self.sink.remove(source, plan.deleted)

        to_fetch = plan.to_fetch
        job.start_syncing(
            total_urls_in_sitemap=len(plan.discovered),
            new_urls=plan.new_count,
            deleted_urls=len(plan.deleted),
            urls_to_process=len(to_fetch),
        )
        await self.publisher.publish(job, force=True)
        logger.info(
            f"Source {source.id}: {len(plan.discovered)} URLs discovered, {plan.new_count} new, "
            f"{len(plan.candidates)} to re-check, {len(plan.deleted)} deleted"
        )

        pool = SyncWorkerPool(
            urls=to_fetch,
            worker_count=self.settings.sync_worker_count,
            process_url=functools.partial(self._process_url, job, source, plan),
        )
        await pool.run()

    async def _process_url(self, job: SyncJob, source: Source, plan: DiffResult, url: str) -> None:
        try:
            page = await self.fetcher.fetch(url, source.content_selectors, source.exclude_selectors)
        except FetchError as exc:
            await self.store.record_fetch_failure(source.id, url, error=exc.message, attempts=exc.attempts)
            job.record_url_failed(url, exc.message)
            URL_FETCHES.labels(outcome=exc.kind.value).inc()
            logger.debug(f"Fetch failed for {url}: {exc.kind.value} {exc.message}")
            await self.publisher.publish(job)
            return

        change = plan.change_kind(url, page.content_hash)
        if change != ChangeKind.UNCHANGED:
            await self.sink.upsert(source, page, change)
        await self.store.record_fetch_success(
            source.id,
            url,
            title=page.title,
            content_hash=page.content_hash,
            word_count=page.word_count,
            attempts=page.attempts,
        )
        job.record_url_synced(url, change)
        URL_FETCHES.labels(outcome=change.value).inc()
        await self.publisher.publish(job)

    # ------------------------------------------------------------------
    # Finalisation
    # ------------------------------------------------------------------

    async def _complete(self, job: SyncJob, source: Source) -> None:
        status = job.outcome()
        completed_at = _utcnow()
        failed = job.urls_failed or 0
        error_message = None
        if status == RunStatus.PARTIAL:
            error_message = f"{failed} of {job.urls_processed} URLs failed"
        elif status == RunStatus.FAILED:
            error_message = f"All {failed} URLs failed"

        entry = self._history_entry(job, status, completed_at, error_message=error_message)
        job.finish(completed_at=completed_at)
        # The terminal snapshot is visible before the lease frees the source for a new job
        await self._publish_terminal(job)
        await self.store.finish_run(
            entry,
            job_id=job.job_id,
            source_status=_SOURCE_STATUS[status],
            source_error=error_message,
        )
        logger.info(
            f"Sync job {job.job_id} for source {source.id} finished {status.value}: "
            f"{job.urls_synced} synced, {failed} failed, {job.deleted_urls} deleted in {job.duration_ms}ms"
        )

    async def _fail(self, job: SyncJob, source: Source, error_kind: str, message: str) -> None:
        if job.is_terminal:
            logger.error(f"Sync job {job.job_id} already finished; not recording failure: {message}")
            return

        completed_at = _utcnow()
        job.fail(message, error_kind=error_kind, completed_at=completed_at)
        entry = self._history_entry(
            job,
            RunStatus.FAILED,
            completed_at,
            error_message=message,
            error_kind=error_kind,
        )
        logger.warning(f"Sync job {job.job_id} for source {source.id} failed ({error_kind}): {message}")
        await self._publish_terminal(job)
        try:
            await self.store.finish_run(
                entry,
                job_id=job.job_id,
                source_status=SourceSyncStatus.FAILED,
                source_error=message,
            )
        except StateStoreError as exc:
            logger.critical(
                f"Could not record failure of job {job.job_id}; lease stays until it goes stale: {exc}",
                exc_info=True,
            )

    async def _publish_terminal(self, job: SyncJob) -> None:
        try:
            await self.publisher.publish(job, force=True)
        except StateStoreError as exc:
            logger.error(f"Could not checkpoint finished job {job.job_id}: {exc}")

    def _history_entry(
        self,
        job: SyncJob,
        status: RunStatus,
        completed_at: datetime,
        *,
        error_message: str | None = None,
        error_kind: str | None = None,
    ) -> SyncHistoryEntry:
        return SyncHistoryEntry(
            id=uuid4().hex,
            source_id=job.source_id,
            sync_type=job.sync_type,
            triggered_by=job.triggered_by,
            started_at=job.started_at or job.created_at,
            completed_at=completed_at,
            duration_ms=job.elapsed_ms(completed_at),
            status=status,
            discovery_stats=DiscoveryStats(
                total_urls_in_sitemap=job.total_urls_in_sitemap or 0,
                new_urls=job.new_urls or 0,
                updated_urls=job.updated_urls or 0,
                deleted_urls=job.deleted_urls or 0,
                unchanged_urls=job.unchanged_urls or 0,
            ),
            sync_stats=RunSyncStats(
                urls_processed=job.urls_processed or 0,
                urls_synced=job.urls_synced or 0,
                urls_failed=job.urls_failed or 0,
                urls_deleted=job.deleted_urls or 0,
            ),
            failed_urls=tuple(job.failed_urls),
            error_message=error_message,
            error_kind=error_kind,
        )
