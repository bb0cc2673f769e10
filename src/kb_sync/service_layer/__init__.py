"""Service layer - source registry use cases behind the HTTP API."""

from .source_registry import (
    create_source,
    delete_source,
    get_source_with_stats,
    list_client_sources,
    list_source_history,
    list_source_urls,
    paginate,
    check_connection,
    toggle_sync,
    update_source,
)


__all__ = [
    "create_source",
    "delete_source",
    "get_source_with_stats",
    "list_client_sources",
    "list_source_history",
    "list_source_urls",
    "paginate",
    "check_connection",
    "toggle_sync",
    "update_source",
]
