from __future__ import annotations

import logging
import time
from typing import Any, Protocol

from kb_ingest.core.errors import EmbeddingBatchError
from kb_ingest.core.logging import log_event
from kb_ingest.db.repositories.chunk_store import ChunkRecord
from kb_ingest.services.chunking import normalize_to_markdown, split_into_chunks
from kb_ingest.services.telemetry import embedding_batches_total


class Embedder(Protocol):
    async def embed_texts(self, texts: list[str], tenant_id: str | None = None) -> list[list[float]]:
        ...


async def embed_in_batches(
    embedder: Embedder,
    texts: list[str],
    *,
    batch_size: int,
    tenant_id: str | None = None,
) -> list[list[float]]:
    """Embed ``texts`` in order, ``batch_size`` at a time.

    A failing batch raises ``EmbeddingBatchError`` carrying its index; there is no retry
    and no partial result is returned.
    """
    batch_size = max(1, int(batch_size))
    vectors: list[list[float]] = []
    for batch_index, start in enumerate(range(0, len(texts), batch_size)):
        batch = texts[start : start + batch_size]
        t0 = time.perf_counter()
        try:
            embeddings = await embedder.embed_texts(batch, tenant_id=tenant_id)
        except Exception as exc:  # noqa: BLE001
            embedding_batches_total.labels(result="error").inc()
            log_event(
                "embeddings.batch_failed",
                level=logging.ERROR,
                tenant_id=tenant_id,
                payload={"batch_index": batch_index, "batch_size": len(batch), "error": str(exc)},
            )
            raise EmbeddingBatchError(f"Embedding batch {batch_index + 1} failed: {exc}", batch_index=batch_index) from exc

        if len(embeddings) != len(batch):
            embedding_batches_total.labels(result="error").inc()
            raise EmbeddingBatchError(
                f"Embedding batch {batch_index + 1} returned {len(embeddings)} vectors for {len(batch)} texts",
                batch_index=batch_index,
            )
        embedding_batches_total.labels(result="ok").inc()
        log_event(
            "embeddings.batch",
            level=logging.DEBUG,
            tenant_id=tenant_id,
            payload={
                "batch_index": batch_index,
                "batch_size": len(batch),
                "duration_ms": int((time.perf_counter() - t0) * 1000),
            },
        )
        vectors.extend(embeddings)
    return vectors


def chunk_content(content: str, *, max_chars: int) -> list[str]:
    return list(split_into_chunks(normalize_to_markdown(content), max_chars=max_chars))


async def build_chunk_records(
    embedder: Embedder,
    *,
    tenant_id: str,
    source_url: str,
    chunks: list[str],
    checksum: str,
    version: str,
    batch_size: int,
    metadata: dict[str, Any] | None = None,
) -> list[ChunkRecord]:
    vectors = await embed_in_batches(embedder, chunks, batch_size=batch_size, tenant_id=tenant_id)
    return [
        ChunkRecord(
            tenant_id=tenant_id,
            source_url=source_url,
            content=text,
            embedding=vector,
            checksum=checksum,
            version=version,
            chunk_index=index,
            metadata=dict(metadata or {}),
        )
        for index, (text, vector) in enumerate(zip(chunks, vectors))
    ]


def extract_title(content: str, *, fallback: str) -> str:
    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("#"):
            title = stripped.lstrip("#").strip()
            if title:
                return title[:200]
    return fallback
