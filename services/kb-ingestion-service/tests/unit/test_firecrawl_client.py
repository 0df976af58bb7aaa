import asyncio
import json

import httpx
import pytest

from kb_ingest.clients.firecrawl_client import FirecrawlClient, ScrapeOptions
from kb_ingest.core.errors import FetchServiceError


def _client(handler, **kwargs) -> FirecrawlClient:
    return FirecrawlClient(
        "https://crawl.test",
        "fc-key",
        poll_interval_seconds=kwargs.pop("poll_interval_seconds", 0),
        crawl_timeout_seconds=kwargs.pop("crawl_timeout_seconds", 5),
        transport=httpx.MockTransport(handler),
    )


def test_scrape_options_payload_uses_crawl_service_field_names():
    options = ScrapeOptions(wait_for_ms=5000, timeout_seconds=60, actions=({"type": "wait", "milliseconds": 3000},))
    assert options.to_payload() == {
        "formats": ["markdown"],
        "onlyMainContent": True,
        "timeout": 60000,
        "waitFor": 5000,
        "actions": [{"type": "wait", "milliseconds": 3000}],
    }
    assert "waitFor" not in ScrapeOptions().to_payload()


def test_scrape_posts_url_with_bearer_token_and_returns_markdown():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"success": True, "data": {"markdown": "# Hello"}})

    content = asyncio.run(_client(handler).scrape("https://site.test/a", ScrapeOptions(timeout_seconds=30)))

    assert content == "# Hello"
    assert seen[0].url == "https://crawl.test/v1/scrape"
    assert seen[0].headers["Authorization"] == "Bearer fc-key"
    body = json.loads(seen[0].content)
    assert body["url"] == "https://site.test/a"
    assert body["timeout"] == 30000


def test_scrape_without_markdown_returns_none():
    handler = lambda request: httpx.Response(200, json={"success": True, "data": {}})
    assert asyncio.run(_client(handler).scrape("https://site.test", ScrapeOptions())) is None


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, json={"success": False, "error": "blocked"}),
        httpx.Response(200, content=b"<html>"),
    ],
)
def test_scrape_maps_service_failures_to_fetch_service_error(response):
    with pytest.raises(FetchServiceError):
        asyncio.run(_client(lambda request: response).scrape("https://site.test", ScrapeOptions()))


def test_network_error_is_wrapped():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(FetchServiceError, match="ConnectError"):
        asyncio.run(_client(handler).scrape("https://site.test", ScrapeOptions()))


def test_map_accepts_string_and_object_links():
    def handler(request):
        assert json.loads(request.content) == {"url": "https://site.test", "limit": 50}
        return httpx.Response(200, json={"success": True, "links": ["https://site.test/a", {"url": "https://site.test/b"}, {"title": "x"}]})

    links = asyncio.run(_client(handler).map("https://site.test", 50))
    assert links == ["https://site.test/a", "https://site.test/b"]


def test_crawl_follows_next_pages_and_drops_items_without_source_url():
    polls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            assert json.loads(request.content)["limit"] == 500
            return httpx.Response(200, json={"success": True, "id": "job-1"})
        if request.url.path == "/v1/crawl/job-1" and "skip" not in str(request.url):
            polls["count"] += 1
            if polls["count"] == 1:
                return httpx.Response(200, json={"status": "scraping"})
            return httpx.Response(
                200,
                json={
                    "status": "completed",
                    "data": [{"markdown": "one", "metadata": {"sourceURL": "https://site.test/1"}}],
                    "next": "https://crawl.test/v1/crawl/job-1?skip=1",
                },
            )
        return httpx.Response(
            200,
            json={
                "status": "completed",
                "data": [
                    {"markdown": "orphan", "metadata": {}},
                    {"markdown": "", "metadata": {"url": "https://site.test/2"}},
                ],
            },
        )

    result = asyncio.run(_client(handler).crawl("https://site.test", limit=500, scrape_options=ScrapeOptions()))

    assert result.status == "completed"
    assert polls["count"] == 2
    assert [(p.url, p.markdown) for p in result.pages] == [("https://site.test/1", "one"), ("https://site.test/2", None)]


@pytest.mark.parametrize("status", ["failed", "cancelled"])
def test_crawl_reports_terminal_failure_status(status):
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, json={"success": True, "id": "job-2"})
        return httpx.Response(200, json={"status": status, "error": "site blocked"})

    result = asyncio.run(_client(handler).crawl("https://site.test", limit=10, scrape_options=ScrapeOptions()))
    assert result.status == status
    assert result.pages == []
    assert result.error == "site blocked"


def test_crawl_gives_up_after_timeout():
    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, json={"success": True, "id": "job-3"})
        return httpx.Response(200, json={"status": "scraping"})

    client = _client(handler, crawl_timeout_seconds=0)
    result = asyncio.run(client.crawl("https://site.test", limit=10, scrape_options=ScrapeOptions()))
    assert result.status == "failed"
    assert "did not finish" in result.error


def test_is_configured_requires_api_key():
    assert FirecrawlClient("https://crawl.test", "", poll_interval_seconds=0, crawl_timeout_seconds=1).is_configured() == (
        False,
        "FIRECRAWL_API_KEY is not configured",
    )
    assert FirecrawlClient("https://crawl.test", "k", poll_interval_seconds=0, crawl_timeout_seconds=1).is_configured() == (True, None)
