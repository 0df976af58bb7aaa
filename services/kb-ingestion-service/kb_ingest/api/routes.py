import math
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import AsyncIterator

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kb_ingest.clients.embeddings_client import EmbeddingsClient
from kb_ingest.clients.firecrawl_client import FirecrawlClient
from kb_ingest.core.config import settings
from kb_ingest.core.errors import (
    AllPagesEmptyError,
    ChunkInsertError,
    CrawlFailedError,
    CrawlServiceNotConfiguredError,
    EmbeddingBatchError,
    FetchServiceError,
    IngestionError,
    IngestValidationError,
    NoPagesFoundError,
)
from kb_ingest.core.logging import log_event
from kb_ingest.db.repositories.chunk_store import ChunkStore, PostgresChunkStore
from kb_ingest.db.session import get_session_factory
from kb_ingest.schemas.api import (
    DeleteSourceResponse,
    DiscoverRequest,
    DiscoverResponse,
    ErrorEnvelope,
    ErrorInfo,
    HealthResponse,
    IngestRequest,
    IngestResponse,
    ManualIngestRequest,
    ManualIngestResponse,
    SourceItem,
    SourcesResponse,
    SyncEvent,
    SyncRequest,
    format_sse,
)
from kb_ingest.services.bulk_ingest import BulkIngestOrchestrator
from kb_ingest.services.discovery import discover_urls
from kb_ingest.services.fetcher import PageFetcher
from kb_ingest.services.manual_ingest import ManualIngestService
from kb_ingest.services.security import FixedWindowRateLimiter, client_identifier, rate_limit_presets
from kb_ingest.services.sync import SyncOrchestrator, stream_detached

router = APIRouter()

rate_limiter = FixedWindowRateLimiter()

_STATUS_BY_ERROR: tuple[tuple[type[IngestionError], int], ...] = (
    (IngestValidationError, 400),
    (CrawlServiceNotConfiguredError, 503),
    (NoPagesFoundError, 422),
    (AllPagesEmptyError, 422),
    (CrawlFailedError, 502),
    (FetchServiceError, 502),
    (EmbeddingBatchError, 500),
    (ChunkInsertError, 500),
)


@lru_cache
def get_crawl_client() -> FirecrawlClient:
    return FirecrawlClient()


@lru_cache
def get_embeddings_client() -> EmbeddingsClient:
    return EmbeddingsClient()


@lru_cache
def get_chunk_store() -> ChunkStore:
    return PostgresChunkStore(get_session_factory(), settings.STORE_INSERT_BATCH_SIZE)


def get_rate_limiter() -> FixedWindowRateLimiter:
    return rate_limiter


def get_page_fetcher(client: FirecrawlClient = Depends(get_crawl_client)) -> PageFetcher:
    return PageFetcher(client)


def get_sync_orchestrator(
    fetcher: PageFetcher = Depends(get_page_fetcher),
    embedder: EmbeddingsClient = Depends(get_embeddings_client),
    store: ChunkStore = Depends(get_chunk_store),
) -> SyncOrchestrator:
    return SyncOrchestrator(fetcher, embedder, store)


def get_bulk_orchestrator(
    fetcher: PageFetcher = Depends(get_page_fetcher),
    embedder: EmbeddingsClient = Depends(get_embeddings_client),
    store: ChunkStore = Depends(get_chunk_store),
) -> BulkIngestOrchestrator:
    return BulkIngestOrchestrator(fetcher, embedder, store)


def get_manual_service(
    embedder: EmbeddingsClient = Depends(get_embeddings_client),
    store: ChunkStore = Depends(get_chunk_store),
) -> ManualIngestService:
    return ManualIngestService(embedder, store)


def _correlation_id(request: Request) -> uuid.UUID:
    raw = getattr(request.state, "request_id", None)
    try:
        return uuid.UUID(str(raw))
    except (TypeError, ValueError):
        return uuid.uuid4()


def _error(
    code: str,
    message: str,
    correlation_id: uuid.UUID,
    retryable: bool,
    status_code: int,
    *,
    details: dict | None = None,
    headers: dict[str, str] | None = None,
) -> HTTPException:
    envelope = ErrorEnvelope(
        error=ErrorInfo(
            code=code,
            message=message,
            details=details,
            correlation_id=correlation_id,
            retryable=retryable,
            timestamp=datetime.now(timezone.utc),
        )
    )
    return HTTPException(status_code=status_code, detail=envelope.model_dump(mode="json"), headers=headers)


def _ingestion_error(exc: IngestionError, request: Request) -> HTTPException:
    status_code = next((code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)), 500)
    details = None
    if isinstance(exc, ChunkInsertError):
        details = {"batch_index": exc.batch_index, "total_batches": exc.total_batches}
    elif isinstance(exc, EmbeddingBatchError):
        details = {"batch_index": exc.batch_index}
    return _error(exc.error_code, exc.message, _correlation_id(request), exc.retryable, status_code, details=details)


def _enforce_rate_limit(request: Request, limiter: FixedWindowRateLimiter, preset: str) -> None:
    identity = client_identifier(request.headers, request.client.host if request.client else None)
    result = limiter.check(f"{preset}:{identity}", rate_limit_presets()[preset])
    if result.allowed:
        return
    retry_after_seconds = max(1, math.ceil(result.retry_after_ms / 1000))
    log_event("rate_limit.rejected", payload={"preset": preset, "identity": identity, "retry_after_ms": result.retry_after_ms})
    raise _error(
        "RATE_LIMITED",
        "Too many requests. Please try again later.",
        _correlation_id(request),
        True,
        429,
        details={"retry_after_ms": result.retry_after_ms},
        headers={"Retry-After": str(retry_after_seconds)},
    )


@router.get("/health", response_model=HealthResponse)
@router.get("/v1/health", response_model=HealthResponse)
def health(client: FirecrawlClient = Depends(get_crawl_client)) -> HealthResponse:
    configured, _ = client.is_configured()
    return HealthResponse(version=settings.APP_VERSION, crawl_service_configured=configured)


@router.get("/metrics")
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.post("/v1/tenants/{tenant_id}/discover", response_model=DiscoverResponse)
async def discover(
    tenant_id: str,
    payload: DiscoverRequest,
    request: Request,
    fetcher: PageFetcher = Depends(get_page_fetcher),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> DiscoverResponse:
    _enforce_rate_limit(request, limiter, "scrape")
    try:
        urls = await discover_urls(
            fetcher,
            tenant_id,
            payload.url,
            limit=settings.DISCOVER_LIMIT,
            require_https=settings.REQUIRE_HTTPS_URLS,
        )
    except IngestionError as exc:
        raise _ingestion_error(exc, request) from exc
    return DiscoverResponse(urls=urls, total=len(urls))


@router.post("/v1/tenants/{tenant_id}/sync")
async def sync_urls(
    tenant_id: str,
    payload: SyncRequest,
    request: Request,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> StreamingResponse:
    _enforce_rate_limit(request, limiter, "ingest")
    try:
        urls = orchestrator.validate(tenant_id, payload.urls)
    except IngestionError as exc:
        raise _ingestion_error(exc, request) from exc

    async def _event_stream(events: AsyncIterator[SyncEvent]) -> AsyncIterator[str]:
        async for event in events:
            yield format_sse(event)

    return StreamingResponse(
        _event_stream(stream_detached(orchestrator, tenant_id, urls)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post("/v1/tenants/{tenant_id}/ingest", response_model=IngestResponse)
async def bulk_ingest(
    tenant_id: str,
    payload: IngestRequest,
    request: Request,
    orchestrator: BulkIngestOrchestrator = Depends(get_bulk_orchestrator),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> IngestResponse:
    _enforce_rate_limit(request, limiter, "ingest")
    try:
        summary = await orchestrator.ingest(tenant_id, payload.url)
    except IngestionError as exc:
        raise _ingestion_error(exc, request) from exc
    return IngestResponse(
        pages_count=summary.pages_count,
        chunks_count=summary.chunks_count,
        empty_pages=summary.empty_pages,
    )


@router.post("/v1/tenants/{tenant_id}/manual", response_model=ManualIngestResponse)
async def manual_ingest(
    tenant_id: str,
    payload: ManualIngestRequest,
    request: Request,
    service: ManualIngestService = Depends(get_manual_service),
) -> ManualIngestResponse:
    try:
        result = await service.ingest_text(tenant_id, payload.text, url=payload.url, title=payload.title)
    except IngestionError as exc:
        raise _ingestion_error(exc, request) from exc
    return ManualIngestResponse(status=result.status, source_url=result.source_url, chunks_count=result.chunks_count)


@router.get("/v1/tenants/{tenant_id}/sources", response_model=SourcesResponse)
async def list_sources(
    tenant_id: str,
    request: Request,
    service: ManualIngestService = Depends(get_manual_service),
) -> SourcesResponse:
    try:
        sources = await service.list_sources(tenant_id)
    except IngestionError as exc:
        raise _ingestion_error(exc, request) from exc
    return SourcesResponse(
        sources=[
            SourceItem(
                source_url=item.source_url,
                title=item.title,
                chunk_count=item.chunk_count,
                is_manual=item.is_manual,
                created_at=item.created_at,
            )
            for item in sources
        ]
    )


@router.delete("/v1/tenants/{tenant_id}/sources", response_model=DeleteSourceResponse)
async def delete_source(
    tenant_id: str,
    url: str,
    request: Request,
    service: ManualIngestService = Depends(get_manual_service),
) -> DeleteSourceResponse:
    try:
        deleted = await service.delete_source(tenant_id, url)
    except IngestionError as exc:
        raise _ingestion_error(exc, request) from exc
    return DeleteSourceResponse(deleted=deleted)
