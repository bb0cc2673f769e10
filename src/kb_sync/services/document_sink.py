"""Boundary to the downstream knowledge-base index.

The sync engine decides what changed; indexing the content belongs to
whatever implements ``DocumentSink``. New and updated pages are upserted,
unchanged pages are skipped, and soft-deleted URLs are removed.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from kb_sync.domain.diff import ChangeKind
from kb_sync.domain.model import Source
from kb_sync.utils.sync_models import FetchedPage


logger = logging.getLogger(__name__)


@runtime_checkable
class DocumentSink(Protocol):
    async def upsert(self, source: Source, page: FetchedPage, change: ChangeKind) -> None: ...

    async def remove(self, source: Source, urls: list[str]) -> None: ...


class LoggingDocumentSink:
    """Default sink that only records what would be indexed."""

    async def upsert(self, source: Source, page: FetchedPage, change: ChangeKind) -> None:
        logger.debug(
            f"Indexing {change.value} page {page.url} for source {source.id} "
            f"({page.word_count} words, category {source.category})"
        )

    async def remove(self, source: Source, urls: list[str]) -> None:
        if urls:
            logger.info(f"Removing {len(urls)} deleted URLs of source {source.id} from the index")
