"""Incremental per-URL sync with bounded concurrency.

URLs are processed in fixed-size batches; batches run strictly one after another and
the URLs inside a batch run concurrently. Each URL is its own failure domain: any
exception is folded into an ``error`` result and never reaches sibling tasks.

Cancellation and the wall-clock budget are checked between batches only, so a batch
that has started always drains and no source is left half-written by the orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from kb_ingest.core.errors import CrawlServiceNotConfiguredError, IngestValidationError
from kb_ingest.core.logging import log_event
from kb_ingest.db.repositories.chunk_store import ChunkStore, new_version
from kb_ingest.schemas.api import CompleteEvent, ProgressEvent, StartEvent, SyncEvent, SyncStats, UrlStatus
from kb_ingest.services.checksum import calculate_checksum
from kb_ingest.services.fetcher import PageFetcher
from kb_ingest.services.indexing import Embedder, build_chunk_records, chunk_content, extract_title
from kb_ingest.services.telemetry import sync_duration_seconds, sync_urls_total
from kb_ingest.services.url_safety import is_safe_url


@dataclass(frozen=True)
class UrlResult:
    url: str
    status: UrlStatus
    error: str | None = None
    chunks: int | None = None


def _dedupe(urls: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for url in urls:
        cleaned = url.strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            ordered.append(cleaned)
    return ordered


class SyncOrchestrator:
    def __init__(
        self,
        fetcher: PageFetcher,
        embedder: Embedder,
        store: ChunkStore,
        *,
        concurrency: int | None = None,
        max_chars: int | None = None,
        embed_batch_size: int | None = None,
        wall_clock_budget_seconds: float | None = None,
        require_https: bool | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        from kb_ingest.core.config import settings

        self.fetcher = fetcher
        self.embedder = embedder
        self.store = store
        self.concurrency = max(1, int(concurrency or settings.SYNC_CONCURRENCY))
        self.max_chars = int(max_chars or settings.CHUNK_MAX_CHARS)
        self.embed_batch_size = int(embed_batch_size or settings.EMBEDDINGS_BATCH_SIZE)
        self.wall_clock_budget_seconds = float(wall_clock_budget_seconds or settings.SYNC_WALL_CLOCK_BUDGET_SECONDS)
        self.require_https = settings.REQUIRE_HTTPS_URLS if require_https is None else require_https
        self._clock = clock

    def validate(self, tenant_id: str, urls: list[str]) -> list[str]:
        """Reject a run before any network or store work; returns the de-duplicated URLs."""
        if not tenant_id or not tenant_id.strip():
            raise IngestValidationError("tenant_id is required")
        cleaned = _dedupe(urls or [])
        if not cleaned:
            raise IngestValidationError("At least one URL is required")
        unsafe = [url for url in cleaned if not is_safe_url(url, require_https=self.require_https)]
        if unsafe:
            raise IngestValidationError(f"URL is not allowed: {unsafe[0]}", error_code="V-UNSAFE-URL")
        configured, reason = self.fetcher.is_configured()
        if not configured:
            raise CrawlServiceNotConfiguredError(reason or "Crawl service is not configured")
        return cleaned

    async def process_url(self, tenant_id: str, url: str) -> UrlResult:
        fetched = await self.fetcher.fetch(url)
        if fetched.content is None:
            return UrlResult(url=url, status="empty")

        checksum = calculate_checksum(fetched.content)
        stored_checksum = await self.store.find_checksum(tenant_id, url)
        if stored_checksum == checksum:
            return UrlResult(url=url, status="skipped")

        chunks = chunk_content(fetched.content, max_chars=self.max_chars)
        if not chunks:
            return UrlResult(url=url, status="empty")

        records = await build_chunk_records(
            self.embedder,
            tenant_id=tenant_id,
            source_url=url,
            chunks=chunks,
            checksum=checksum,
            version=new_version(),
            batch_size=self.embed_batch_size,
            metadata={"title": extract_title(fetched.content, fallback=url), "rendered": fetched.rendered},
        )
        # old chunks are removed only after the replacement version is fully written
        await self.store.replace_source(tenant_id, url, records)
        status: UrlStatus = "new" if stored_checksum is None else "updated"
        return UrlResult(url=url, status=status, chunks=len(records))

    async def _process_isolated(self, tenant_id: str, url: str, completed: list[UrlResult]) -> None:
        try:
            result = await self.process_url(tenant_id, url)
        except Exception as exc:  # noqa: BLE001
            log_event(
                "sync.url.failed",
                level=logging.WARNING,
                tenant_id=tenant_id,
                payload={"url": url, "error": str(exc), "error_type": type(exc).__name__},
            )
            result = UrlResult(url=url, status="error", error=str(exc) or type(exc).__name__)
        sync_urls_total.labels(status=result.status).inc()
        log_event("sync.url.completed", tenant_id=tenant_id, payload={"url": url, "status": result.status, "chunks": result.chunks})
        completed.append(result)

    async def run(
        self,
        tenant_id: str,
        urls: list[str],
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[SyncEvent]:
        urls = self.validate(tenant_id, urls)
        total = len(urls)
        stats = SyncStats()
        processed = 0
        cancelled = False
        timed_out = False
        started = self._clock()
        t0 = time.perf_counter()

        log_event("sync.started", tenant_id=tenant_id, payload={"total": total, "concurrency": self.concurrency})
        yield StartEvent(total=total)

        for start in range(0, total, self.concurrency):
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                break
            if self._clock() - started >= self.wall_clock_budget_seconds:
                timed_out = True
                break

            completed: list[UrlResult] = []
            batch = urls[start : start + self.concurrency]
            await asyncio.gather(*(self._process_isolated(tenant_id, url, completed) for url in batch))

            for result in completed:
                processed += 1
                stats.record(result.status)
                yield ProgressEvent(
                    current=processed,
                    total=total,
                    url=result.url,
                    status=result.status,
                    error=result.error,
                    chunks=result.chunks,
                    stats=stats.model_copy(),
                )

        sync_duration_seconds.observe(time.perf_counter() - t0)
        log_event(
            "sync.completed",
            level=logging.WARNING if (cancelled or timed_out) else logging.INFO,
            tenant_id=tenant_id,
            payload={
                "total": total,
                "processed": processed,
                "cancelled": cancelled,
                "timed_out": timed_out,
                **stats.model_dump(),
            },
        )
        yield CompleteEvent(
            total=total,
            processed=processed,
            stats=stats.model_copy(),
            cancelled=cancelled,
            timed_out=timed_out,
        )


_RUNNING_SYNCS: set[asyncio.Task] = set()


def _log_detached_failure(task: asyncio.Task) -> None:
    if task.cancelled() or task.exception() is None:
        return
    log_event("sync.detached_failed", level=logging.ERROR, payload={"error": str(task.exception())})


async def stream_detached(orchestrator: SyncOrchestrator, tenant_id: str, urls: list[str]) -> AsyncIterator[SyncEvent]:
    """Relay ``orchestrator.run`` from a task the consumer cannot cancel.

    Events are handed over one at a time, so the run never gets ahead of the consumer.
    Closing this generator (a disconnected client) only sets the cancel signal: the
    batch in flight drains and the run stops before the next one.
    """
    cancel_event = asyncio.Event()
    queue: asyncio.Queue[SyncEvent | None] = asyncio.Queue(maxsize=1)

    async def _produce() -> None:
        try:
            async for event in orchestrator.run(tenant_id, urls, cancel_event=cancel_event):
                if not cancel_event.is_set():
                    await queue.put(event)
        finally:
            if not cancel_event.is_set():
                await queue.put(None)

    producer = asyncio.create_task(_produce())
    _RUNNING_SYNCS.add(producer)
    producer.add_done_callback(_RUNNING_SYNCS.discard)
    producer.add_done_callback(_log_detached_failure)
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield event
        await producer
    finally:
        if not producer.done():
            cancel_event.set()
            while not queue.empty():
                queue.get_nowait()
            log_event("sync.cancel_requested", level=logging.WARNING, tenant_id=tenant_id, payload={"total": len(urls)})
