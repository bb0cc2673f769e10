"""Service layer - source registry use cases.

Each function is one use case behind an HTTP endpoint: validate the request
model, apply it through the state store, and shape the JSON payload.
"""

from __future__ import annotations

import logging
import math
from typing import Any
from uuid import uuid4

from kb_sync.config import Settings
from kb_sync.domain.model import Source, SourceBusyError, SourceNotFoundError, SyncType
from kb_sync.services.sync_orchestrator import SyncOrchestrator, TriggerResult
from kb_sync.utils.models import (
    ConnectionCheckRequest,
    LedgerQuery,
    PageQuery,
    SourceCreate,
    SourceListQuery,
    SourceUpdate,
)
from kb_sync.utils.sitemap_discovery import DiscoveryError, DiscoveryErrorKind, SitemapDiscovery
from kb_sync.utils.sync_state_store import SyncStateStore


logger = logging.getLogger(__name__)


def paginate(items: list[dict[str, Any]], *, page: int, limit: int, total: int) -> dict[str, Any]:
    return {
        "data": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if limit else 0,
        },
    }


async def _require_source(store: SyncStateStore, source_id: str) -> Source:
    source = await store.get_source(source_id)
    if source is None:
        raise SourceNotFoundError(source_id)
    return source


async def create_source(
    payload: SourceCreate,
    store: SyncStateStore,
    orchestrator: SyncOrchestrator,
    settings: Settings,
) -> tuple[Source, TriggerResult | None]:
    """Register a source and, unless asked not to, start its first sync."""
    source = await store.create_source(
        Source(
            id=uuid4().hex,
            client_id=payload.client_id,
            name=payload.name.strip(),
            source_type=payload.source_type,
            sitemap_url=str(payload.sitemap_url),
            base_url_filter=payload.base_url_filter,
            category=payload.category,
            sync_interval_hours=payload.sync_interval_hours or settings.default_sync_interval_hours,
            content_selectors=payload.content_selectors,
            exclude_selectors=payload.exclude_selectors,
            sync_enabled=payload.sync_enabled,
        )
    )
    logger.info(f"Registered source {source.id} ({source.name}) for client {source.client_id}")

    trigger = None
    if payload.start_sync:
        trigger = await orchestrator.trigger(source.id, sync_type=SyncType.MANUAL, triggered_by="registration")
        source = await _require_source(store, source.id)
    return source, trigger


async def get_source_with_stats(source_id: str, store: SyncStateStore) -> dict[str, Any]:
    source = await _require_source(store, source_id)
    payload = source.to_dict()
    payload["stats"] = await store.get_source_stats(source_id)
    return payload


async def list_client_sources(client_id: str, query: SourceListQuery, store: SyncStateStore) -> dict[str, Any]:
    sources, total = await store.list_sources(
        client_id,
        page=query.page,
        limit=query.limit,
        include_inactive=query.include_inactive,
    )
    return paginate([source.to_dict() for source in sources], page=query.page, limit=query.limit, total=total)


async def update_source(source_id: str, payload: SourceUpdate, store: SyncStateStore) -> Source:
    """Apply a partial update; an in-flight job keeps the settings it started with."""
    changes = payload.changes()
    if not changes:
        return await _require_source(store, source_id)
    source = await store.update_source(source_id, changes)
    if source is None:
        raise SourceNotFoundError(source_id)
    logger.info(f"Updated source {source_id}: {', '.join(sorted(changes))}")
    return source


async def delete_source(source_id: str, store: SyncStateStore) -> None:
    """Delete the source unless a sync job currently holds its lease."""
    deleted, holder = await store.delete_source(source_id)
    if deleted:
        return
    if holder is not None:
        raise SourceBusyError(source_id, holder)
    raise SourceNotFoundError(source_id)


async def toggle_sync(source_id: str, enabled: bool, store: SyncStateStore) -> Source:
    """Enable or disable scheduled syncs; a running job is not cancelled."""
    source = await store.update_source(source_id, {"sync_enabled": enabled})
    if source is None:
        raise SourceNotFoundError(source_id)
    logger.info(f"Scheduled sync {'enabled' if enabled else 'disabled'} for source {source_id}")
    return source


async def check_connection(payload: ConnectionCheckRequest, discovery: SitemapDiscovery) -> dict[str, Any]:
    """Run discovery only and report how many URLs the sitemap yields."""
    try:
        urls = await discovery.discover(str(payload.sitemap_url), payload.base_url_filter)
    except DiscoveryError as exc:
        return {"success": False, "error": exc.message, "errorKind": exc.kind.value}
    if not urls:
        return {
            "success": False,
            "urlCount": 0,
            "error": "Sitemap contains no URLs matching the filter",
            "errorKind": DiscoveryErrorKind.EMPTY.value,
        }
    return {"success": True, "urlCount": len(urls), "sampleUrls": urls[:5]}


async def list_source_urls(source_id: str, query: LedgerQuery, store: SyncStateStore) -> dict[str, Any]:
    await _require_source(store, source_id)
    entries, total = await store.query_ledger(
        source_id,
        status=query.status,
        search=query.search,
        page=query.page,
        limit=query.limit,
    )
    return paginate([entry.to_dict() for entry in entries], page=query.page, limit=query.limit, total=total)


async def list_source_history(source_id: str, query: PageQuery, store: SyncStateStore) -> dict[str, Any]:
    await _require_source(store, source_id)
    entries, total = await store.list_history(source_id, page=query.page, limit=query.limit)
    return paginate([entry.to_dict() for entry in entries], page=query.page, limit=query.limit, total=total)
