"""Data models and worker pool for sync runs."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class SitemapEntry:
    """A page URL discovered in a sitemap."""

    url: str
    lastmod: str | None = None


@dataclass(slots=True)
class DiscoveryResult:
    """Flattened discovery output for one source."""

    entries: list[SitemapEntry] = field(default_factory=list)
    sitemaps_fetched: int = 0
    filtered_out: int = 0

    @property
    def urls(self) -> list[str]:
        return [entry.url for entry in self.entries]

    @property
    def lastmod_map(self) -> dict[str, str | None]:
        return {entry.url: entry.lastmod for entry in self.entries}


@dataclass(slots=True, frozen=True)
class FetchedPage:
    """Extracted page content ready for hashing and the document sink."""

    url: str
    title: str | None
    content: str
    content_hash: str
    word_count: int
    attempts: int = 1


@dataclass(slots=True)
class WorkerPoolResult:
    """Summary of a worker pool run."""

    total_urls: int
    processed: int


UrlProcessor = Callable[[str], Coroutine[Any, Any, None]]


@dataclass(slots=True)
class SyncWorkerPool:
    """Drain a URL list through a bounded number of concurrent workers.

    ``process_url`` is expected to absorb per-URL failures itself. Anything
    it raises is treated as fatal for the whole run: remaining URLs are
    skipped and the first such error is re-raised once the queue drains.
    """

    urls: list[str]
    worker_count: int
    process_url: UrlProcessor
    _fatal: BaseException | None = field(default=None, init=False)

    async def run(self) -> WorkerPoolResult:
        if not self.urls:
            return WorkerPoolResult(total_urls=0, processed=0)

        worker_count = max(1, min(self.worker_count, len(self.urls)))
        processed = 0
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=worker_count * 2)

        async def worker() -> None:
            nonlocal processed
            while True:
                url = await queue.get()
                try:
                    if url is None:
                        return
                    if self._fatal is not None:
                        continue
                    await self.process_url(url)
                    processed += 1
                except Exception as exc:
                    if self._fatal is None:
                        self._fatal = exc
                finally:
                    queue.task_done()

        workers = [asyncio.create_task(worker()) for _ in range(worker_count)]
        try:
            for url in self.urls:
                await queue.put(url)
            for _ in range(worker_count):
                await queue.put(None)
            await queue.join()
            await asyncio.gather(*workers)
        except asyncio.CancelledError:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        if self._fatal is not None:
            raise self._fatal
        return WorkerPoolResult(total_urls=len(self.urls), processed=processed)
