"""Sitemap discovery for knowledge-base sources.

Fetches a sitemap (or sitemap index), follows nested index references,
and returns the page URLs it lists:
- HTTP fetching with retry on transient failures (httpx)
- XML parsing with lxml, with gzip payloads decompressed transparently
- Cycle-safe, depth-bounded traversal of sitemap indexes
- Prefix filtering against the source's base URL filter
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
import gzip
import logging
from urllib.parse import urljoin, urlsplit
import zlib

import httpx
from lxml import etree  # type: ignore[import-untyped]

from kb_sync.config import Settings
from kb_sync.utils.http_client import backoff_delay, is_retryable_status
from kb_sync.utils.sync_models import DiscoveryResult, SitemapEntry


logger = logging.getLogger(__name__)

_GZIP_MAGIC = b"\x1f\x8b"


class DiscoveryErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    INVALID_XML = "invalid_xml"
    EMPTY = "empty"


class DiscoveryError(Exception):
    """Discovery could not produce a URL list for the source."""

    def __init__(self, kind: DiscoveryErrorKind, message: str, url: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.url = url


def _local_name(tag: object) -> str:
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname


def _child_text(element: etree._Element, name: str) -> str | None:
    for child in element:
        if _local_name(child.tag) == name:
            text = (child.text or "").strip()
            return text or None
    return None


def matches_base_filter(url: str, base_url_filter: str | None) -> bool:
    if not base_url_filter:
        return True
    return url.startswith(base_url_filter)


class SitemapDiscovery:
    """Deep module for turning a sitemap URL into a deduplicated page list.

    Simple interface: ``discover(sitemap_url, base_url_filter) -> list[str]``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_attempts: int = 2,
        max_depth: int = 5,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.max_attempts = max(1, max_attempts)
        self.max_depth = max(1, max_depth)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True)

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> SitemapDiscovery:
        return cls(
            client,
            max_attempts=settings.discovery_max_attempts,
            max_depth=settings.sitemap_max_depth,
            backoff_seconds=settings.http_retry_backoff_seconds,
        )

    async def discover(self, sitemap_url: str, base_url_filter: str | None = None) -> list[str]:
        result = await self.discover_entries(sitemap_url, base_url_filter)
        return result.urls

    async def discover_entries(self, sitemap_url: str, base_url_filter: str | None = None) -> DiscoveryResult:
        """Walk the sitemap tree and collect page entries in first-seen order.

        Raises:
            DiscoveryError: ``unreachable`` or ``invalid_xml`` for any sitemap
                document in the tree. An empty tree is not an error.
        """
        result = DiscoveryResult()
        seen_pages: set[str] = set()
        visited: set[str] = set()
        pending: list[tuple[str, int]] = [(sitemap_url, 0)]

        while pending:
            current_url, depth = pending.pop(0)
            if current_url in visited:
                continue
            visited.add(current_url)

            root = await self._load(current_url)
            result.sitemaps_fetched += 1
            kind = _local_name(root.tag)

            if kind == "sitemapindex":
                children = [_child_text(node, "loc") for node in root if _local_name(node.tag) == "sitemap"]
                if depth + 1 > self.max_depth:
                    logger.warning(
                        f"Sitemap index {current_url} exceeds max depth {self.max_depth}; "
                        f"skipping {len(children)} nested sitemaps"
                    )
                    continue
                for child in children:
                    if child:
                        pending.append((urljoin(current_url, child), depth + 1))
            elif kind == "urlset":
                for node in root:
                    if _local_name(node.tag) != "url":
                        continue
                    loc = _child_text(node, "loc")
                    if not loc:
                        continue
                    page_url = urljoin(current_url, loc)
                    if urlsplit(page_url).scheme not in {"http", "https"}:
                        continue
                    if not matches_base_filter(page_url, base_url_filter):
                        result.filtered_out += 1
                        continue
                    if page_url in seen_pages:
                        continue
                    seen_pages.add(page_url)
                    result.entries.append(SitemapEntry(url=page_url, lastmod=_child_text(node, "lastmod")))
            else:
                raise DiscoveryError(
                    DiscoveryErrorKind.INVALID_XML,
                    f"Unexpected root element <{kind or root.tag}> in {current_url}",
                    current_url,
                )

        logger.info(
            f"Discovered {len(result.entries)} URLs from {result.sitemaps_fetched} sitemaps "
            f"for {sitemap_url} (filtered {result.filtered_out})"
        )
        return result

    async def _load(self, url: str) -> etree._Element:
        payload = await self._fetch(url)
        if payload[:2] == _GZIP_MAGIC:
            try:
                payload = gzip.decompress(payload)
            except (OSError, EOFError, zlib.error) as exc:
                raise DiscoveryError(
                    DiscoveryErrorKind.INVALID_XML, f"Invalid gzip payload from {url}: {exc}", url
                ) from exc
        if not payload.strip():
            raise DiscoveryError(DiscoveryErrorKind.INVALID_XML, f"Empty sitemap document at {url}", url)
        try:
            return etree.fromstring(payload, parser=self._parser)
        except etree.XMLSyntaxError as exc:
            preview = payload[:100].decode("utf-8", errors="ignore")
            logger.error(f"XML syntax error parsing sitemap {url}: {exc}; content starts with: {preview}")
            raise DiscoveryError(DiscoveryErrorKind.INVALID_XML, f"Invalid sitemap XML at {url}: {exc}", url) from exc

    async def _fetch(self, url: str) -> bytes:
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self.client.get(url)
            except httpx.TimeoutException as exc:
                last_error = f"timed out ({exc.__class__.__name__})"
            except httpx.TransportError as exc:
                last_error = f"network error: {exc}"
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                last_error = f"request failed: {exc}"
                break
            else:
                if response.status_code < 400:
                    return response.content
                last_error = f"HTTP {response.status_code}"
                if not is_retryable_status(response.status_code):
                    break

            if attempt < self.max_attempts:
                delay = backoff_delay(self.backoff_seconds, attempt)
                logger.warning(
                    f"Sitemap fetch attempt {attempt}/{self.max_attempts} failed for {url}: {last_error}. "
                    f"Retrying in {delay:.1f}s"
                )
                await self._sleep(delay)

        raise DiscoveryError(DiscoveryErrorKind.UNREACHABLE, f"Could not fetch sitemap {url}: {last_error}", url)
