"""Shared httpx client construction and retry policy."""

from __future__ import annotations

import httpx

from kb_sync.config import Settings


def is_retryable_status(status_code: int) -> bool:
    """Rate limiting and server errors are worth another attempt."""
    return status_code == 429 or status_code >= 500


def backoff_delay(base_seconds: float, attempt: int, *, cap_seconds: float = 30.0) -> float:
    """Exponential backoff for the given 1-based attempt number."""
    return min(cap_seconds, base_seconds * (2 ** (attempt - 1)))


def build_http_client(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the AsyncClient used for sitemap and page fetches."""
    timeout = httpx.Timeout(settings.http_timeout, connect=settings.http_connect_timeout)
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers=settings.build_http_headers(),
        transport=transport,
    )
