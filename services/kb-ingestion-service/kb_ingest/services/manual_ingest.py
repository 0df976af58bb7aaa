from __future__ import annotations

from dataclasses import dataclass

from kb_ingest.core.errors import IngestValidationError
from kb_ingest.core.logging import log_event
from kb_ingest.db.repositories.chunk_store import MANUAL_SOURCE, ChunkStore, SourceSummary, new_version
from kb_ingest.services.checksum import calculate_checksum
from kb_ingest.services.indexing import Embedder, build_chunk_records, chunk_content


@dataclass(frozen=True)
class ManualIngestResult:
    status: str
    source_url: str
    chunks_count: int


class ManualIngestService:
    """Operator-entered text and source housekeeping.

    Entries without a URL share the ``manual`` sentinel source and are appended.
    Entries with a URL behave like a synced page: replaced as a unit and skipped when
    unchanged.
    """

    def __init__(self, embedder: Embedder, store: ChunkStore, *, max_chars: int | None = None, embed_batch_size: int | None = None):
        from kb_ingest.core.config import settings

        self.embedder = embedder
        self.store = store
        self.max_chars = int(max_chars or settings.CHUNK_MAX_CHARS)
        self.embed_batch_size = int(embed_batch_size or settings.EMBEDDINGS_BATCH_SIZE)

    async def ingest_text(self, tenant_id: str, text: str, *, url: str | None = None, title: str | None = None) -> ManualIngestResult:
        if not tenant_id or not tenant_id.strip():
            raise IngestValidationError("tenant_id is required")
        if not text or not text.strip():
            raise IngestValidationError("text is required")

        source_url = (url or "").strip() or MANUAL_SOURCE
        checksum = calculate_checksum(text)
        stored_checksum = None
        if source_url != MANUAL_SOURCE:
            stored_checksum = await self.store.find_checksum(tenant_id, source_url)
            if stored_checksum == checksum:
                return ManualIngestResult(status="skipped", source_url=source_url, chunks_count=0)

        chunks = chunk_content(text, max_chars=self.max_chars)
        records = await build_chunk_records(
            self.embedder,
            tenant_id=tenant_id,
            source_url=source_url,
            chunks=chunks,
            checksum=checksum,
            version=new_version(),
            batch_size=self.embed_batch_size,
            metadata={"title": (title or "").strip() or "Manual entry", "manual": True},
        )

        if source_url == MANUAL_SOURCE:
            await self.store.insert_version(tenant_id, records)
            status = "inserted"
        else:
            await self.store.replace_source(tenant_id, source_url, records)
            status = "replaced" if stored_checksum is not None else "inserted"

        log_event(
            "manual_ingest.completed",
            tenant_id=tenant_id,
            payload={"source_url": source_url, "status": status, "chunks": len(records)},
        )
        return ManualIngestResult(status=status, source_url=source_url, chunks_count=len(records))

    async def list_sources(self, tenant_id: str) -> list[SourceSummary]:
        if not tenant_id or not tenant_id.strip():
            raise IngestValidationError("tenant_id is required")
        return await self.store.list_sources(tenant_id)

    async def delete_source(self, tenant_id: str, source_url: str) -> int:
        if not tenant_id or not tenant_id.strip():
            raise IngestValidationError("tenant_id is required")
        if not source_url or not source_url.strip():
            raise IngestValidationError("url is required")
        deleted = await self.store.delete_chunks(tenant_id, source_url.strip())
        log_event("source.deleted", tenant_id=tenant_id, payload={"source_url": source_url, "rows_deleted": deleted})
        return deleted
