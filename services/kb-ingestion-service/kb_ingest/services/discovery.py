from __future__ import annotations

from urllib.parse import urlsplit

from kb_ingest.core.errors import CrawlServiceNotConfiguredError, IngestValidationError, NoPagesFoundError
from kb_ingest.core.logging import log_event
from kb_ingest.services.fetcher import PageFetcher
from kb_ingest.services.url_safety import is_safe_url

SKIPPED_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp",
    ".mp4", ".mp3", ".zip", ".css", ".js",
)
SKIPPED_PATH_MARKERS = ("/cdn-cgi/", "/wp-admin/", "/wp-login")


def filter_discovered_urls(urls: list[str], base_url: str) -> list[str]:
    base_host = (urlsplit(base_url).hostname or "").lower()
    seen: set[str] = set()
    kept: list[str] = []
    for url in urls:
        try:
            parts = urlsplit(url)
            hostname = (parts.hostname or "").lower()
        except ValueError:
            continue
        if not parts.scheme or hostname != base_host:
            continue

        path = parts.path.lower()
        if path.endswith(SKIPPED_EXTENSIONS):
            continue
        if any(marker in path for marker in SKIPPED_PATH_MARKERS):
            continue

        normalized = f"{parts.scheme.lower()}://{parts.netloc.lower()}{parts.path.rstrip('/')}"
        if normalized in seen:
            continue
        seen.add(normalized)
        kept.append(url)
    return kept


async def discover_urls(fetcher: PageFetcher, tenant_id: str, base_url: str, *, limit: int, require_https: bool = True) -> list[str]:
    if not tenant_id or not tenant_id.strip():
        raise IngestValidationError("tenant_id is required")
    if not is_safe_url(base_url, require_https=require_https):
        raise IngestValidationError(f"URL is not allowed: {base_url}", error_code="V-UNSAFE-URL")
    configured, reason = fetcher.is_configured()
    if not configured:
        raise CrawlServiceNotConfiguredError(reason or "Crawl service is not configured")

    links = await fetcher.map_site(base_url, limit=limit)
    if not links:
        raise NoPagesFoundError("No pages found on this website")
    urls = filter_discovered_urls(links, base_url)
    log_event(
        "discovery.completed",
        tenant_id=tenant_id,
        payload={"base_url": base_url, "links_found": len(links), "urls_kept": len(urls)},
    )
    return urls
