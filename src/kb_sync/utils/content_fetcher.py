"""Page fetching and text extraction for knowledge-base articles.

Architecture:
- Fetching: httpx with retry on timeouts, transport errors, 429 and 5xx
- Extraction: BeautifulSoup over lxml, narrowed by the source's include and
  exclude CSS selectors, rendered to normalised text with markdown headings
- Hashing: SHA-256 of the normalised text drives change detection
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
import hashlib
import logging
import re

from bs4 import BeautifulSoup, Tag
import httpx
from soupsieve import SelectorSyntaxError

from kb_sync.config import Settings
from kb_sync.utils.http_client import backoff_delay, is_retryable_status
from kb_sync.utils.sync_models import FetchedPage


logger = logging.getLogger(__name__)

ALWAYS_STRIPPED_TAGS = ("script", "style", "noscript", "template")
BLOCK_TAGS = frozenset(
    {
        "address",
        "article",
        "aside",
        "blockquote",
        "dd",
        "div",
        "dl",
        "dt",
        "figcaption",
        "figure",
        "footer",
        "form",
        "header",
        "hr",
        "li",
        "main",
        "nav",
        "ol",
        "p",
        "pre",
        "section",
        "table",
        "td",
        "th",
        "tr",
        "ul",
    }
)
HEADING_LEVELS = {f"h{level}": level for level in range(1, 7)}

_INLINE_WHITESPACE = re.compile(r"[ \t\r\f\v\u00a0]+")


class FetchErrorKind(str, Enum):
    HTTP_ERROR = "http_error"
    TIMEOUT = "timeout"
    EXTRACTION_EMPTY = "extraction_empty"


class FetchError(Exception):
    """A single page could not be fetched or yielded no content."""

    def __init__(self, kind: FetchErrorKind, message: str, *, attempts: int = 1):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.attempts = attempts


def normalize_text(raw: str) -> str:
    lines = (_INLINE_WHITESPACE.sub(" ", line).strip() for line in raw.splitlines())
    return "\n".join(line for line in lines if line)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _select_roots(soup: BeautifulSoup, selectors: Iterable[str]) -> list[Tag]:
    # Tag equality is structural, so identity is tracked by id().
    matched: list[Tag] = []
    matched_ids: set[int] = set()
    for selector in selectors:
        for element in soup.select(selector):
            if id(element) in matched_ids or any(id(parent) in matched_ids for parent in element.parents):
                continue
            matched.append(element)
            matched_ids.add(id(element))
    return matched


def _render(root: Tag) -> str:
    for br in root.find_all("br"):
        br.replace_with("\n")
    for name, level in HEADING_LEVELS.items():
        for heading in root.find_all(name):
            text = " ".join(heading.get_text(" ").split())
            heading.replace_with(f"\n{'#' * level} {text}\n" if text else "\n")
    for block in root.find_all(BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")
    return root.get_text()


def extract_content(
    html: str | bytes,
    content_selectors: Iterable[str] = (),
    exclude_selectors: Iterable[str] = (),
) -> tuple[str | None, str]:
    """Return ``(title, normalised_text)`` for an HTML document.

    Raises:
        FetchError: ``extraction_empty`` when include selectors match nothing,
            a selector is malformed, or no text survives extraction.
    """
    soup = BeautifulSoup(html, "lxml")

    title: str | None = None
    if soup.title is not None:
        title = " ".join(soup.title.get_text(" ").split()) or None
    if title is None:
        first_heading = soup.find("h1")
        if first_heading is not None:
            title = " ".join(first_heading.get_text(" ").split()) or None

    include = [selector for selector in content_selectors if selector.strip()]
    try:
        if include:
            roots = _select_roots(soup, include)
            if not roots:
                raise FetchError(
                    FetchErrorKind.EXTRACTION_EMPTY,
                    f"No elements matched content selectors: {', '.join(include)}",
                )
        else:
            roots = [soup.body or soup]

        for root in roots:
            for selector in exclude_selectors:
                if not selector.strip():
                    continue
                for element in root.select(selector):
                    element.decompose()
            for element in root.find_all(ALWAYS_STRIPPED_TAGS):
                element.decompose()
    except SelectorSyntaxError as exc:
        raise FetchError(FetchErrorKind.EXTRACTION_EMPTY, f"Invalid CSS selector: {exc}") from exc

    text = normalize_text("\n".join(_render(root) for root in roots))
    if not text:
        raise FetchError(FetchErrorKind.EXTRACTION_EMPTY, "Page produced no text content")
    return title, text


class ContentFetcher:
    """Fetch a page and extract its content, retrying transient failures."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient) -> ContentFetcher:
        return cls(
            client,
            max_retries=settings.http_max_retries,
            backoff_seconds=settings.http_retry_backoff_seconds,
        )

    async def fetch(
        self,
        url: str,
        content_selectors: Iterable[str] = (),
        exclude_selectors: Iterable[str] = (),
    ) -> FetchedPage:
        html, attempts = await self._download(url)
        try:
            title, text = extract_content(html, content_selectors, exclude_selectors)
        except FetchError as exc:
            exc.attempts = attempts
            raise
        return FetchedPage(
            url=url,
            title=title,
            content=text,
            content_hash=content_hash(text),
            word_count=len(text.split()),
            attempts=attempts,
        )

    async def _download(self, url: str) -> tuple[bytes, int]:
        total_attempts = self.max_retries + 1
        kind = FetchErrorKind.HTTP_ERROR
        message = ""

        for attempt in range(1, total_attempts + 1):
            try:
                response = await self.client.get(url)
            except httpx.TimeoutException as exc:
                kind = FetchErrorKind.TIMEOUT
                message = f"Request timed out ({exc.__class__.__name__})"
            except httpx.TransportError as exc:
                kind = FetchErrorKind.HTTP_ERROR
                message = f"Network error: {exc}"
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                # Redirect loops, undecodable bodies and bad URLs do not improve on retry
                raise FetchError(FetchErrorKind.HTTP_ERROR, f"Request failed: {exc}", attempts=attempt) from exc
            else:
                if response.status_code < 400:
                    return response.content, attempt
                kind = FetchErrorKind.HTTP_ERROR
                message = f"HTTP {response.status_code}"
                if not is_retryable_status(response.status_code):
                    raise FetchError(kind, message, attempts=attempt)

            if attempt < total_attempts:
                delay = backoff_delay(self.backoff_seconds, attempt)
                logger.debug(f"Fetch attempt {attempt}/{total_attempts} failed for {url}: {message}")
                await self._sleep(delay)

        raise FetchError(kind, message, attempts=total_attempts)
