from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from kb_ingest.clients.firecrawl_client import CrawledPage
from kb_ingest.core.errors import (
    AllPagesEmptyError,
    CrawlFailedError,
    CrawlServiceNotConfiguredError,
    IngestValidationError,
    InvalidTransitionError,
    NoPagesFoundError,
)
from kb_ingest.core.logging import log_event
from kb_ingest.db.repositories.chunk_store import ChunkRecord, ChunkStore, new_version
from kb_ingest.services.checksum import calculate_checksum
from kb_ingest.services.fetcher import PageFetcher
from kb_ingest.services.indexing import Embedder, chunk_content, embed_in_batches, extract_title
from kb_ingest.services.telemetry import bulk_ingest_total
from kb_ingest.services.url_safety import is_safe_url


class BulkIngestState(str, Enum):
    CRAWLING = "CRAWLING"
    CHUNKING = "CHUNKING"
    EMBEDDING = "EMBEDDING"
    REPLACING = "REPLACING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass(slots=True)
class PendingChunk:
    source_url: str
    content: str
    checksum: str
    chunk_index: int
    title: str


@dataclass(slots=True)
class BulkIngestRun:
    tenant_id: str
    seed_url: str
    state: BulkIngestState = BulkIngestState.CRAWLING
    pages: list[CrawledPage] = field(default_factory=list)
    empty_pages: int = 0
    duplicate_pages: int = 0
    pending: list[PendingChunk] = field(default_factory=list)
    records: list[ChunkRecord] = field(default_factory=list)
    error: str | None = None


@dataclass(frozen=True)
class BulkIngestSummary:
    pages_count: int
    chunks_count: int
    empty_pages: int


ALLOWED_TRANSITIONS: dict[BulkIngestState, set[BulkIngestState]] = {
    BulkIngestState.CRAWLING: {BulkIngestState.CHUNKING, BulkIngestState.FAILED},
    BulkIngestState.CHUNKING: {BulkIngestState.EMBEDDING},
    BulkIngestState.EMBEDDING: {BulkIngestState.REPLACING, BulkIngestState.FAILED},
    BulkIngestState.REPLACING: {BulkIngestState.DONE, BulkIngestState.FAILED},
    BulkIngestState.DONE: set(),
    BulkIngestState.FAILED: set(),
}


def _check_entry(run: BulkIngestRun, next_state: BulkIngestState) -> None:
    if next_state == BulkIngestState.CHUNKING and not run.pages:
        raise InvalidTransitionError("CHUNKING requires at least one page with content")
    if next_state == BulkIngestState.EMBEDDING and not run.pending:
        raise InvalidTransitionError("EMBEDDING requires at least one chunk")
    if next_state == BulkIngestState.REPLACING and len(run.records) != len(run.pending):
        raise InvalidTransitionError("REPLACING requires an embedding for every chunk")


def transition(run: BulkIngestRun, next_state: BulkIngestState) -> None:
    if next_state not in ALLOWED_TRANSITIONS.get(run.state, set()):
        raise InvalidTransitionError(f"Invalid transition: {run.state} -> {next_state}")
    _check_entry(run, next_state)
    log_event(
        "bulk_ingest.state",
        tenant_id=run.tenant_id,
        payload={"from_state": run.state.value, "to_state": next_state.value},
    )
    run.state = next_state


def _has_content(page: CrawledPage) -> bool:
    return bool(page.markdown and page.markdown.strip())


class BulkIngestOrchestrator:
    """Full-site ingest: crawl everything, then swap the tenant's whole corpus.

    Nothing in the store is touched until every page is crawled, chunked and embedded.
    The swap itself writes the new corpus under a fresh version before removing the old
    one.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        embedder: Embedder,
        store: ChunkStore,
        *,
        page_limit: int | None = None,
        max_chars: int | None = None,
        embed_batch_size: int | None = None,
        require_https: bool | None = None,
    ):
        from kb_ingest.core.config import settings

        self.fetcher = fetcher
        self.embedder = embedder
        self.store = store
        self.page_limit = int(page_limit or settings.CRAWL_PAGE_LIMIT)
        self.max_chars = int(max_chars or settings.CHUNK_MAX_CHARS)
        self.embed_batch_size = int(embed_batch_size or settings.EMBEDDINGS_BATCH_SIZE)
        self.require_https = settings.REQUIRE_HTTPS_URLS if require_https is None else require_https

    def validate(self, tenant_id: str, seed_url: str) -> None:
        if not tenant_id or not tenant_id.strip():
            raise IngestValidationError("tenant_id is required")
        if not seed_url or not is_safe_url(seed_url, require_https=self.require_https):
            raise IngestValidationError(f"URL is not allowed: {seed_url}", error_code="V-UNSAFE-URL")
        configured, reason = self.fetcher.is_configured()
        if not configured:
            raise CrawlServiceNotConfiguredError(reason or "Crawl service is not configured")

    async def _crawl(self, run: BulkIngestRun) -> None:
        result = await self.fetcher.crawl_site(run.seed_url, limit=self.page_limit)
        if result.status != "completed":
            raise CrawlFailedError(f"Crawl {result.status}: {result.error or 'crawl service reported failure'}")
        if not result.pages:
            raise NoPagesFoundError("No pages found on this website")

        by_url: dict[str, CrawledPage] = {}
        for page in result.pages:
            if not _has_content(page):
                run.empty_pages += 1
            elif page.url in by_url:
                run.duplicate_pages += 1
            else:
                by_url[page.url] = page
        run.pages = list(by_url.values())
        if not run.pages:
            raise AllPagesEmptyError(
                f"All {len(result.pages)} crawled pages were empty. The site may need deeper rendering "
                "or may block automated access."
            )

    def _chunk(self, run: BulkIngestRun) -> None:
        for page in run.pages:
            content = page.markdown or ""
            checksum = calculate_checksum(content)
            title = extract_title(content, fallback=page.url)
            for index, text in enumerate(chunk_content(content, max_chars=self.max_chars)):
                run.pending.append(PendingChunk(page.url, text, checksum, index, title))

    async def _embed(self, run: BulkIngestRun) -> None:
        texts = [chunk.content for chunk in run.pending]
        vectors = await embed_in_batches(self.embedder, texts, batch_size=self.embed_batch_size, tenant_id=run.tenant_id)
        version = new_version()
        run.records = [
            ChunkRecord(
                tenant_id=run.tenant_id,
                source_url=chunk.source_url,
                content=chunk.content,
                embedding=vector,
                checksum=chunk.checksum,
                version=version,
                chunk_index=chunk.chunk_index,
                metadata={"title": chunk.title},
            )
            for chunk, vector in zip(run.pending, vectors)
        ]

    async def ingest(self, tenant_id: str, seed_url: str) -> BulkIngestSummary:
        self.validate(tenant_id, seed_url)
        run = BulkIngestRun(tenant_id=tenant_id, seed_url=seed_url)
        log_event("bulk_ingest.started", tenant_id=tenant_id, payload={"seed_url": seed_url, "page_limit": self.page_limit})
        try:
            await self._crawl(run)
            transition(run, BulkIngestState.CHUNKING)
            self._chunk(run)
            transition(run, BulkIngestState.EMBEDDING)
            await self._embed(run)
            transition(run, BulkIngestState.REPLACING)
            await self.store.replace_all(tenant_id, run.records)
            transition(run, BulkIngestState.DONE)
        except Exception as exc:
            run.error = str(exc)
            if BulkIngestState.FAILED in ALLOWED_TRANSITIONS[run.state]:
                failed_in = run.state
                transition(run, BulkIngestState.FAILED)
                log_event(
                    "bulk_ingest.failed",
                    level=logging.ERROR,
                    tenant_id=tenant_id,
                    payload={"failed_in": failed_in.value, "error": run.error, "error_type": type(exc).__name__},
                )
            bulk_ingest_total.labels(state=BulkIngestState.FAILED.value).inc()
            raise

        bulk_ingest_total.labels(state=BulkIngestState.DONE.value).inc()
        summary = BulkIngestSummary(
            pages_count=len(run.pages),
            chunks_count=len(run.records),
            empty_pages=run.empty_pages,
        )
        log_event(
            "bulk_ingest.completed",
            tenant_id=tenant_id,
            payload={
                "pages_count": summary.pages_count,
                "chunks_count": summary.chunks_count,
                "empty_pages": summary.empty_pages,
                "duplicate_pages": run.duplicate_pages,
            },
        )
        return summary
