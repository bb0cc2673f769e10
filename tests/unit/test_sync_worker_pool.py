from __future__ import annotations

import asyncio

import pytest

from kb_sync.utils.sync_models import DiscoveryResult, SitemapEntry, SyncWorkerPool


@pytest.mark.unit
@pytest.mark.asyncio
async def test_processes_every_url_once() -> None:
    urls = [f"https://a/{index}" for index in range(25)]
    seen: list[str] = []

    async def process(url: str) -> None:
        await asyncio.sleep(0)
        seen.append(url)

    result = await SyncWorkerPool(urls=urls, worker_count=4, process_url=process).run()

    assert sorted(seen) == sorted(urls)
    assert result.total_urls == 25
    assert result.processed == 25


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrency_is_bounded_by_worker_count() -> None:
    active = 0
    peak = 0

    async def process(url: str) -> None:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001)
        active -= 1

    await SyncWorkerPool(urls=[f"https://a/{index}" for index in range(20)], worker_count=3, process_url=process).run()

    assert 1 < peak <= 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_empty_url_list_is_a_noop() -> None:
    async def process(url: str) -> None:
        raise AssertionError("should not be called")

    result = await SyncWorkerPool(urls=[], worker_count=4, process_url=process).run()

    assert result.processed == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fatal_error_stops_remaining_urls_and_is_reraised() -> None:
    processed: list[str] = []

    async def process(url: str) -> None:
        if url == "https://a/2":
            raise RuntimeError("database gone")
        processed.append(url)

    pool = SyncWorkerPool(urls=[f"https://a/{index}" for index in range(50)], worker_count=1, process_url=process)

    with pytest.raises(RuntimeError, match="database gone"):
        await pool.run()

    assert processed == ["https://a/0", "https://a/1"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cancellation_stops_workers() -> None:
    started = asyncio.Event()

    async def process(url: str) -> None:
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(
        SyncWorkerPool(urls=["https://a/1", "https://a/2"], worker_count=2, process_url=process).run()
    )
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.unit
def test_discovery_result_views() -> None:
    result = DiscoveryResult(entries=[SitemapEntry("https://a/1", "2024-01-01"), SitemapEntry("https://a/2")])

    assert result.urls == ["https://a/1", "https://a/2"]
    assert result.lastmod_map == {"https://a/1": "2024-01-01", "https://a/2": None}
