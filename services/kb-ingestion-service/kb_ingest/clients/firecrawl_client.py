from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from kb_ingest.core.errors import FetchServiceError

LOGGER = logging.getLogger(__name__)

_CLIENT_TIMEOUT_MARGIN_SECONDS = 5.0
_CONTROL_TIMEOUT_SECONDS = 30.0
CRAWL_TERMINAL_FAILURES = ("failed", "cancelled")


@dataclass(frozen=True)
class ScrapeOptions:
    formats: tuple[str, ...] = ("markdown",)
    wait_for_ms: int = 0
    timeout_seconds: float = 30.0
    actions: tuple[dict[str, Any], ...] = ()
    only_main_content: bool = True

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "formats": list(self.formats),
            "onlyMainContent": self.only_main_content,
            "timeout": int(self.timeout_seconds * 1000),
        }
        if self.wait_for_ms > 0:
            payload["waitFor"] = self.wait_for_ms
        if self.actions:
            payload["actions"] = [dict(action) for action in self.actions]
        return payload


@dataclass(frozen=True)
class CrawledPage:
    url: str
    markdown: str | None


@dataclass(frozen=True)
class CrawlResult:
    status: str
    pages: list[CrawledPage] = field(default_factory=list)
    error: str | None = None


class FirecrawlClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        poll_interval_seconds: float | None = None,
        crawl_timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if base_url is None or api_key is None or poll_interval_seconds is None or crawl_timeout_seconds is None:
            from kb_ingest.core.config import settings

            base_url = base_url if base_url is not None else settings.FIRECRAWL_API_URL
            api_key = api_key if api_key is not None else settings.FIRECRAWL_API_KEY
            poll_interval_seconds = poll_interval_seconds if poll_interval_seconds is not None else settings.CRAWL_POLL_INTERVAL_SECONDS
            crawl_timeout_seconds = crawl_timeout_seconds if crawl_timeout_seconds is not None else settings.CRAWL_TIMEOUT_SECONDS
        self.base_url = str(base_url).rstrip("/")
        self.api_key = str(api_key)
        self.poll_interval_seconds = max(0.0, float(poll_interval_seconds))
        self.crawl_timeout_seconds = float(crawl_timeout_seconds)
        self._transport = transport

    def is_configured(self) -> tuple[bool, str | None]:
        if not self.base_url:
            return False, "FIRECRAWL_API_URL is not configured"
        if not self.api_key:
            return False, "FIRECRAWL_API_KEY is not configured"
        return True, None

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}{path_or_url}"

    async def _request(self, method: str, path_or_url: str, *, timeout: float, json: dict[str, Any] | None = None) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport, headers=headers) as client:
                response = await client.request(method, self._url(path_or_url), json=json)
        except httpx.HTTPError as exc:
            raise FetchServiceError(f"Crawl service request failed: {exc.__class__.__name__}: {exc}") from exc

        if response.status_code >= 400:
            raise FetchServiceError(f"Crawl service returned HTTP {response.status_code} for {method} {path_or_url}")
        try:
            body = response.json()
        except ValueError as exc:
            raise FetchServiceError("Crawl service returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise FetchServiceError("Crawl service returned an unexpected payload")
        if body.get("success") is False:
            raise FetchServiceError(str(body.get("error") or "Crawl service reported failure"))
        return body

    async def scrape(self, url: str, options: ScrapeOptions) -> str | None:
        body = await self._request(
            "POST",
            "/v1/scrape",
            json={"url": url, **options.to_payload()},
            timeout=options.timeout_seconds + _CLIENT_TIMEOUT_MARGIN_SECONDS,
        )
        data = body.get("data") or {}
        markdown = data.get("markdown") if isinstance(data, dict) else None
        return markdown or None

    async def map(self, url: str, limit: int) -> list[str]:
        body = await self._request("POST", "/v1/map", json={"url": url, "limit": int(limit)}, timeout=_CONTROL_TIMEOUT_SECONDS)
        links: list[str] = []
        for link in body.get("links") or []:
            if isinstance(link, str):
                links.append(link)
            elif isinstance(link, dict) and link.get("url"):
                links.append(str(link["url"]))
        return links

    @staticmethod
    def _parse_pages(items: list[Any]) -> list[CrawledPage]:
        pages: list[CrawledPage] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            metadata = item.get("metadata") or {}
            source_url = metadata.get("sourceURL") or metadata.get("url")
            if not source_url:
                continue
            pages.append(CrawledPage(url=str(source_url), markdown=item.get("markdown") or None))
        return pages

    async def crawl(self, url: str, *, limit: int, scrape_options: ScrapeOptions) -> CrawlResult:
        started = await self._request(
            "POST",
            "/v1/crawl",
            json={"url": url, "limit": int(limit), "scrapeOptions": scrape_options.to_payload()},
            timeout=_CONTROL_TIMEOUT_SECONDS,
        )
        job_id = started.get("id")
        if not job_id:
            raise FetchServiceError("Crawl service did not return a job id")

        deadline = time.monotonic() + self.crawl_timeout_seconds
        while True:
            body = await self._request("GET", f"/v1/crawl/{job_id}", timeout=_CONTROL_TIMEOUT_SECONDS)
            status = str(body.get("status") or "")
            if status in CRAWL_TERMINAL_FAILURES:
                return CrawlResult(status=status, error=body.get("error"))
            if status == "completed":
                pages = self._parse_pages(body.get("data") or [])
                next_url = body.get("next")
                while next_url:
                    page_body = await self._request("GET", str(next_url), timeout=_CONTROL_TIMEOUT_SECONDS)
                    pages.extend(self._parse_pages(page_body.get("data") or []))
                    next_url = page_body.get("next")
                return CrawlResult(status="completed", pages=pages)
            if time.monotonic() >= deadline:
                LOGGER.warning("crawl_poll_timeout", extra={"event_type": "crawl.poll_timeout", "job_id": job_id, "crawl_status": status})
                return CrawlResult(status="failed", error=f"Crawl did not finish within {int(self.crawl_timeout_seconds)}s")
            await asyncio.sleep(self.poll_interval_seconds)
