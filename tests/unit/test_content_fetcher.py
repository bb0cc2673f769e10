from __future__ import annotations

import httpx
import pytest

from kb_sync.utils.content_fetcher import (
    ContentFetcher,
    FetchError,
    FetchErrorKind,
    content_hash,
    extract_content,
    normalize_text,
)
from tests.fixtures.sync_site import FakeSite, article


URL = "https://help.example.com/kb/reset-password"


async def _no_sleep(_: float) -> None:
    return None


def _fetcher(site: FakeSite, max_retries: int = 2) -> ContentFetcher:
    return ContentFetcher(site.client(), max_retries=max_retries, sleep=_no_sleep)


@pytest.mark.unit
def test_extract_uses_title_and_strips_scripts() -> None:
    title, text = extract_content(article("Reset your password", "Click the link we email you."))

    assert title == "Reset your password"
    assert "# Reset your password" in text
    assert "Click the link we email you." in text
    assert "tracking" not in text


@pytest.mark.unit
def test_extract_falls_back_to_first_heading_for_title() -> None:
    title, _ = extract_content("<html><body><h1>Billing  FAQ</h1><p>Invoices</p></body></html>")

    assert title == "Billing FAQ"


@pytest.mark.unit
def test_content_selectors_narrow_and_exclude_selectors_remove() -> None:
    html = (
        "<html><body><nav>Menu</nav>"
        "<main><div class='content'><h2>Steps</h2><p>Open settings</p><div class='ads'>Buy now</div></div></main>"
        "<footer>Legal</footer></body></html>"
    )

    _, text = extract_content(html, [".content"], [".ads"])

    assert text == "## Steps\nOpen settings"


@pytest.mark.unit
def test_nested_include_matches_are_not_duplicated() -> None:
    html = "<body><article><section><p>Once</p></section></article></body>"

    _, text = extract_content(html, ["article", "section"])

    assert text.count("Once") == 1


@pytest.mark.unit
def test_unmatched_content_selectors_are_extraction_empty() -> None:
    with pytest.raises(FetchError) as excinfo:
        extract_content(article("Title", "Body"), [".does-not-exist"])

    assert excinfo.value.kind == FetchErrorKind.EXTRACTION_EMPTY


@pytest.mark.unit
def test_page_without_text_is_extraction_empty() -> None:
    with pytest.raises(FetchError) as excinfo:
        extract_content("<html><body><script>only()</script></body></html>")

    assert excinfo.value.kind == FetchErrorKind.EXTRACTION_EMPTY


@pytest.mark.unit
def test_br_and_block_tags_become_line_breaks() -> None:
    _, text = extract_content("<body><p>one<br>two</p><ul><li>three</li><li>four</li></ul></body>")

    assert text.splitlines() == ["one", "two", "three", "four"]


@pytest.mark.unit
def test_normalize_text_collapses_whitespace_and_blank_lines() -> None:
    assert normalize_text("  a \t b c \n\n\n  d  ") == "a b c\nd"


@pytest.mark.unit
def test_content_hash_is_stable_across_markup_noise() -> None:
    _, first = extract_content("<body><p>Same   text</p></body>")
    _, second = extract_content("<body>\n<div><p>Same text</p></div>\n<script>x()</script></body>")

    assert content_hash(first) == content_hash(second)
    assert len(content_hash(first)) == 64


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fetch_returns_page_with_hash_and_word_count(site: FakeSite) -> None:
    site.page(URL, article("Reset", "Use the reset link"))

    page = await _fetcher(site).fetch(URL)

    assert page.url == URL
    assert page.title == "Reset"
    assert page.content_hash == content_hash(page.content)
    assert page.word_count == len(page.content.split())
    assert page.attempts == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fetch_retries_server_errors(site: FakeSite) -> None:
    responses = iter([httpx.Response(502), httpx.Response(429), httpx.Response(200, text=article("Ok", "Body"))])
    site.handler(URL, lambda request: next(responses))

    page = await _fetcher(site, max_retries=2).fetch(URL)

    assert page.attempts == 3
    assert site.count(URL) == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_fetch_gives_up_after_max_retries(site: FakeSite) -> None:
    site.status(URL, 500)

    with pytest.raises(FetchError) as excinfo:
        await _fetcher(site, max_retries=2).fetch(URL)

    assert excinfo.value.kind == FetchErrorKind.HTTP_ERROR
    assert excinfo.value.message == "HTTP 500"
    assert excinfo.value.attempts == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_client_errors_are_not_retried(site: FakeSite) -> None:
    site.status(URL, 404)

    with pytest.raises(FetchError) as excinfo:
        await _fetcher(site).fetch(URL)

    assert excinfo.value.attempts == 1
    assert site.count(URL) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_timeouts_are_reported_as_timeout(site: FakeSite) -> None:
    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    site.handler(URL, slow)

    with pytest.raises(FetchError) as excinfo:
        await _fetcher(site, max_retries=1).fetch(URL)

    assert excinfo.value.kind == FetchErrorKind.TIMEOUT
    assert excinfo.value.attempts == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_extraction_failure_keeps_attempt_count(site: FakeSite) -> None:
    responses = iter([httpx.Response(503), httpx.Response(200, text="<html><body></body></html>")])
    site.handler(URL, lambda request: next(responses))

    with pytest.raises(FetchError) as excinfo:
        await _fetcher(site).fetch(URL)

    assert excinfo.value.kind == FetchErrorKind.EXTRACTION_EMPTY
    assert excinfo.value.attempts == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_redirect_loop_is_an_http_error(site: FakeSite) -> None:
    site.redirect(URL, URL)

    with pytest.raises(FetchError) as excinfo:
        await _fetcher(site).fetch(URL)

    assert excinfo.value.kind == FetchErrorKind.HTTP_ERROR
    assert "redirects" in excinfo.value.message
    assert excinfo.value.attempts == 1
