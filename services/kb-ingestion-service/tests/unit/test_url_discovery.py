import asyncio

import pytest

from fakes import FakeCrawlService
from kb_ingest.core.errors import CrawlServiceNotConfiguredError, IngestValidationError, NoPagesFoundError
from kb_ingest.services.discovery import discover_urls, filter_discovered_urls
from kb_ingest.services.fetcher import PageFetcher
from kb_ingest.services.url_safety import is_private_host, is_safe_url


@pytest.mark.parametrize(
    "url",
    [
        "http://example.com",
        "ftp://example.com/file",
        "https://localhost/admin",
        "https://127.0.0.1/",
        "https://10.0.0.5/",
        "https://192.168.1.1/",
        "https://169.254.169.254/latest/meta-data",
        "https://[::1]/",
        "https://[fd00::1]/",
        "https:///no-host",
        "not a url",
    ],
)
def test_unsafe_urls_are_rejected(url):
    assert is_safe_url(url) is False


def test_public_https_url_is_allowed():
    assert is_safe_url("https://docs.example.com/guide") is True
    assert is_safe_url("http://docs.example.com/guide", require_https=False) is True


def test_private_host_detection():
    assert is_private_host("app.localhost") is True
    assert is_private_host("8.8.8.8") is False
    assert is_private_host("example.com") is False


def test_filter_keeps_same_host_html_pages_once():
    links = [
        "https://site.test/",
        "https://site.test/about",
        "https://site.test/about/",
        "https://other.test/page",
        "https://site.test/brochure.PDF",
        "https://site.test/assets/app.js",
        "https://site.test/cdn-cgi/l/email-protection",
        "https://site.test/wp-admin/options.php",
        "https://site.test/wp-login.php",
        "https://site.test/pricing?ref=nav",
    ]
    assert filter_discovered_urls(links, "https://site.test") == [
        "https://site.test/",
        "https://site.test/about",
        "https://site.test/pricing?ref=nav",
    ]


def _fetcher(service):
    return PageFetcher(service, fast_timeout_seconds=30, render_timeout_seconds=60, render_wait_ms=0, render_action_wait_ms=0)


def test_discover_urls_maps_and_filters():
    service = FakeCrawlService(links=["https://site.test/a", "https://site.test/a/", "https://site.test/logo.png"])
    urls = asyncio.run(discover_urls(_fetcher(service), "acme", "https://site.test", limit=100))
    assert urls == ["https://site.test/a"]


def test_discover_urls_validates_before_calling_the_service():
    service = FakeCrawlService(links=["https://site.test/a"])
    with pytest.raises(IngestValidationError):
        asyncio.run(discover_urls(_fetcher(service), "", "https://site.test", limit=10))
    with pytest.raises(IngestValidationError) as exc_info:
        asyncio.run(discover_urls(_fetcher(service), "acme", "https://127.0.0.1", limit=10))
    assert exc_info.value.error_code == "V-UNSAFE-URL"


def test_discover_urls_requires_configured_service():
    with pytest.raises(CrawlServiceNotConfiguredError):
        asyncio.run(discover_urls(_fetcher(FakeCrawlService(configured=False)), "acme", "https://site.test", limit=10))


def test_discover_urls_without_links_fails():
    with pytest.raises(NoPagesFoundError):
        asyncio.run(discover_urls(_fetcher(FakeCrawlService()), "acme", "https://site.test", limit=10))
