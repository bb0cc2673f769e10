import httpx
import pytest

from kb_sync.config import Settings
from kb_sync.utils.http_client import backoff_delay, build_http_client, is_retryable_status


@pytest.mark.unit
@pytest.mark.parametrize(
    ("status_code", "expected"),
    [(200, False), (404, False), (403, False), (429, True), (500, True), (503, True)],
)
def test_is_retryable_status(status_code, expected):
    assert is_retryable_status(status_code) is expected


@pytest.mark.unit
def test_backoff_delay_doubles_and_caps():
    assert [backoff_delay(1.0, attempt) for attempt in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]
    assert backoff_delay(1.0, 10, cap_seconds=30.0) == 30.0
    assert backoff_delay(0.0, 5) == 0.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_build_http_client_sends_configured_headers():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text="ok")

    settings = Settings(_env_file=None, http_user_agent="kb-sync-test/1.0", http_timeout=12.0)
    client = build_http_client(settings, transport=httpx.MockTransport(handler))
    try:
        await client.get("https://help.example.com/")
    finally:
        await client.aclose()

    assert seen[0].headers["user-agent"] == "kb-sync-test/1.0"
    assert client.timeout.read == 12.0
    assert client.timeout.connect == settings.http_connect_timeout
    assert client.follow_redirects is True
