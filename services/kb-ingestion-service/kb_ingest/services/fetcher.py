from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from kb_ingest.clients.firecrawl_client import CrawlResult, ScrapeOptions
from kb_ingest.core.errors import FetchServiceError
from kb_ingest.core.logging import log_event


class CrawlService(Protocol):
    def is_configured(self) -> tuple[bool, str | None]:
        ...

    async def scrape(self, url: str, options: ScrapeOptions) -> str | None:
        ...

    async def map(self, url: str, limit: int) -> list[str]:
        ...

    async def crawl(self, url: str, *, limit: int, scrape_options: ScrapeOptions) -> CrawlResult:
        ...


@dataclass(frozen=True)
class FetchResult:
    content: str | None
    rendered: bool = False


def _has_content(content: str | None) -> bool:
    return bool(content and content.strip())


class PageFetcher:
    """Two-phase page fetch: a quick scrape first, a rendered scrape when it yields nothing.

    A failure of the quick phase only triggers the rendered phase. Errors raised by the
    rendered phase propagate to the caller, which owns per-URL isolation.
    """

    def __init__(
        self,
        client: CrawlService,
        *,
        fast_timeout_seconds: float | None = None,
        render_timeout_seconds: float | None = None,
        render_wait_ms: int | None = None,
        render_action_wait_ms: int | None = None,
    ):
        if None in (fast_timeout_seconds, render_timeout_seconds, render_wait_ms, render_action_wait_ms):
            from kb_ingest.core.config import settings

            fast_timeout_seconds = fast_timeout_seconds or settings.FETCH_FAST_TIMEOUT_SECONDS
            render_timeout_seconds = render_timeout_seconds or settings.FETCH_RENDER_TIMEOUT_SECONDS
            render_wait_ms = render_wait_ms if render_wait_ms is not None else settings.FETCH_RENDER_WAIT_MS
            render_action_wait_ms = render_action_wait_ms if render_action_wait_ms is not None else settings.FETCH_RENDER_ACTION_WAIT_MS
        self.client = client
        self.fast_options = ScrapeOptions(timeout_seconds=float(fast_timeout_seconds))
        actions: tuple[dict, ...] = ()
        if render_action_wait_ms:
            actions = ({"type": "wait", "milliseconds": int(render_action_wait_ms)},)
        self.render_options = ScrapeOptions(
            wait_for_ms=int(render_wait_ms),
            timeout_seconds=float(render_timeout_seconds),
            actions=actions,
        )

    def is_configured(self) -> tuple[bool, str | None]:
        return self.client.is_configured()

    async def fetch(self, url: str) -> FetchResult:
        try:
            content = await self.client.scrape(url, self.fast_options)
        except FetchServiceError as exc:
            log_event("fetch.fast_failed", level=logging.WARNING, payload={"url": url, "error": str(exc)})
            content = None
        if _has_content(content):
            return FetchResult(content=content)

        log_event("fetch.fallback_render", payload={"url": url})
        content = await self.client.scrape(url, self.render_options)
        if _has_content(content):
            return FetchResult(content=content, rendered=True)
        return FetchResult(content=None, rendered=True)

    async def crawl_site(self, seed_url: str, *, limit: int) -> CrawlResult:
        return await self.client.crawl(seed_url, limit=limit, scrape_options=self.render_options)

    async def map_site(self, base_url: str, *, limit: int) -> list[str]:
        return await self.client.map(base_url, limit)
