"""Tenant-scoped chunk persistence.

Every write of a source tags its rows with a fresh ``version``. Replacing a source
inserts the new version first and only then deletes rows of any other version, so a
reader never observes a source with zero chunks. A failed insert removes the rows of
the half-written version and leaves the previous one in place.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kb_ingest.core.errors import ChunkInsertError
from kb_ingest.core.logging import log_event
from kb_ingest.db.models import KnowledgeChunk

MANUAL_SOURCE = "manual"


@dataclass(frozen=True)
class ChunkRecord:
    tenant_id: str
    source_url: str
    content: str
    embedding: list[float]
    checksum: str
    version: str
    chunk_index: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SourceSummary:
    source_url: str
    title: str
    chunk_count: int
    is_manual: bool
    created_at: datetime | None = None


def new_version() -> str:
    return uuid.uuid4().hex


def _single_version(chunks: list[ChunkRecord]) -> str:
    versions = {chunk.version for chunk in chunks}
    if len(versions) != 1:
        raise ValueError("replacement chunks must share exactly one version")
    return versions.pop()


class ChunkStore(ABC):
    def __init__(self, insert_batch_size: int | None = None):
        if insert_batch_size is None:
            from kb_ingest.core.config import settings

            insert_batch_size = settings.STORE_INSERT_BATCH_SIZE
        self.insert_batch_size = max(1, int(insert_batch_size))

    @abstractmethod
    async def find_checksum(self, tenant_id: str, source_url: str) -> str | None:
        ...

    @abstractmethod
    async def delete_chunks(self, tenant_id: str, source_url: str, *, keep_version: str | None = None) -> int:
        ...

    @abstractmethod
    async def delete_all(self, tenant_id: str, *, keep_version: str | None = None) -> int:
        ...

    @abstractmethod
    async def delete_version(self, tenant_id: str, version: str) -> int:
        ...

    @abstractmethod
    async def list_sources(self, tenant_id: str) -> list[SourceSummary]:
        ...

    @abstractmethod
    async def _insert_batch(self, tenant_id: str, batch: list[ChunkRecord]) -> None:
        ...

    async def insert_chunks(self, tenant_id: str, chunks: list[ChunkRecord]) -> int:
        foreign = [chunk.source_url for chunk in chunks if chunk.tenant_id != tenant_id]
        if foreign:
            raise ValueError(f"refusing to write chunks owned by another tenant into {tenant_id}")

        total_batches = (len(chunks) + self.insert_batch_size - 1) // self.insert_batch_size
        for batch_index, start in enumerate(range(0, len(chunks), self.insert_batch_size)):
            batch = chunks[start : start + self.insert_batch_size]
            try:
                await self._insert_batch(tenant_id, batch)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    "store.insert_batch_failed",
                    level=logging.ERROR,
                    tenant_id=tenant_id,
                    payload={"batch_index": batch_index, "total_batches": total_batches, "error": str(exc)},
                )
                raise ChunkInsertError(
                    f"Insert batch {batch_index + 1} of {total_batches} failed: {exc}",
                    batch_index=batch_index,
                    total_batches=total_batches,
                ) from exc
        return len(chunks)

    async def insert_version(self, tenant_id: str, chunks: list[ChunkRecord]) -> int:
        """Append one new version; a failed batch removes whatever of it was written."""
        await self._insert_version(tenant_id, _single_version(chunks), chunks)
        return len(chunks)

    async def _insert_version(self, tenant_id: str, version: str, chunks: list[ChunkRecord]) -> None:
        try:
            await self.insert_chunks(tenant_id, chunks)
        except ChunkInsertError:
            removed = await self.delete_version(tenant_id, version)
            log_event("store.version_discarded", level=logging.WARNING, tenant_id=tenant_id, payload={"chunk_version": version, "rows_removed": removed})
            raise

    async def replace_source(self, tenant_id: str, source_url: str, chunks: list[ChunkRecord]) -> int:
        version = _single_version(chunks)
        if any(chunk.source_url != source_url for chunk in chunks):
            raise ValueError(f"replacement chunks must all belong to {source_url}")
        await self._insert_version(tenant_id, version, chunks)
        await self.delete_chunks(tenant_id, source_url, keep_version=version)
        return len(chunks)

    async def replace_all(self, tenant_id: str, chunks: list[ChunkRecord]) -> int:
        version = _single_version(chunks)
        await self._insert_version(tenant_id, version, chunks)
        await self.delete_all(tenant_id, keep_version=version)
        return len(chunks)


class PostgresChunkStore(ChunkStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], insert_batch_size: int | None = None):
        super().__init__(insert_batch_size)
        self._session_factory = session_factory

    async def _delete(self, statement) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(statement)
        return int(result.rowcount or 0)

    async def find_checksum(self, tenant_id: str, source_url: str) -> str | None:
        statement = (
            select(KnowledgeChunk.checksum)
            .where(KnowledgeChunk.tenant_id == tenant_id, KnowledgeChunk.source_url == source_url)
            .order_by(KnowledgeChunk.created_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement)
            return result.scalar_one_or_none()

    async def delete_chunks(self, tenant_id: str, source_url: str, *, keep_version: str | None = None) -> int:
        statement = delete(KnowledgeChunk).where(KnowledgeChunk.tenant_id == tenant_id, KnowledgeChunk.source_url == source_url)
        if keep_version is not None:
            statement = statement.where(KnowledgeChunk.version != keep_version)
        return await self._delete(statement)

    async def delete_all(self, tenant_id: str, *, keep_version: str | None = None) -> int:
        statement = delete(KnowledgeChunk).where(KnowledgeChunk.tenant_id == tenant_id)
        if keep_version is not None:
            statement = statement.where(KnowledgeChunk.version != keep_version)
        return await self._delete(statement)

    async def delete_version(self, tenant_id: str, version: str) -> int:
        return await self._delete(
            delete(KnowledgeChunk).where(KnowledgeChunk.tenant_id == tenant_id, KnowledgeChunk.version == version)
        )

    async def _insert_batch(self, tenant_id: str, batch: list[ChunkRecord]) -> None:
        rows = [
            {
                "tenant_id": tenant_id,
                "source_url": chunk.source_url,
                "content": chunk.content,
                "embedding": chunk.embedding,
                "checksum": chunk.checksum,
                "version": chunk.version,
                "chunk_index": chunk.chunk_index,
                "metadata_json": chunk.metadata or None,
            }
            for chunk in batch
        ]
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(insert(KnowledgeChunk), rows)

    async def list_sources(self, tenant_id: str) -> list[SourceSummary]:
        title = func.max(KnowledgeChunk.metadata_json["title"].as_string())
        manual = func.bool_or(func.coalesce(KnowledgeChunk.metadata_json["manual"].as_boolean(), False))
        statement = (
            select(
                KnowledgeChunk.source_url,
                title.label("title"),
                func.count().label("chunk_count"),
                manual.label("is_manual"),
                func.min(KnowledgeChunk.created_at).label("created_at"),
            )
            .where(KnowledgeChunk.tenant_id == tenant_id)
            .group_by(KnowledgeChunk.source_url)
            .order_by(func.min(KnowledgeChunk.created_at).desc())
        )
        async with self._session_factory() as session:
            rows = (await session.execute(statement)).mappings().all()
        return [
            SourceSummary(
                source_url=row["source_url"],
                title=row["title"] or row["source_url"],
                chunk_count=int(row["chunk_count"]),
                is_manual=bool(row["is_manual"]) or row["source_url"] == MANUAL_SOURCE,
                created_at=row["created_at"],
            )
            for row in rows
        ]
