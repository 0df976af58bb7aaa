import asyncio

import pytest

from fakes import FakeEmbedder, InMemoryChunkStore
from kb_ingest.core.errors import ChunkInsertError, IngestValidationError
from kb_ingest.services.manual_ingest import ManualIngestService


def _service(store, embedder=None) -> ManualIngestService:
    return ManualIngestService(embedder or FakeEmbedder(), store, max_chars=1000, embed_batch_size=100)


def test_text_without_url_is_appended_under_manual_source():
    store = InMemoryChunkStore()
    service = _service(store)

    first = asyncio.run(service.ingest_text("acme", "Opening hours: 9-17", title="Hours"))
    second = asyncio.run(service.ingest_text("acme", "Support email: help@acme.test"))

    assert (first.status, first.source_url, first.chunks_count) == ("inserted", "manual", 1)
    assert second.status == "inserted"
    rows = store.chunks_for("acme", "manual")
    assert len(rows) == 2
    assert rows[0].metadata == {"title": "Hours", "manual": True}
    assert rows[1].metadata["title"] == "Manual entry"


def test_failed_append_leaves_no_partial_manual_entry():
    store = InMemoryChunkStore(insert_batch_size=1, fail_on_batch=2)
    service = ManualIngestService(FakeEmbedder(), store, max_chars=10, embed_batch_size=100)
    asyncio.run(service.ingest_text("acme", "kept note"))

    with pytest.raises(ChunkInsertError) as excinfo:
        asyncio.run(service.ingest_text("acme", "aaaa.\n\nbbbb.\n\ncccc."))

    assert (excinfo.value.batch_index, excinfo.value.total_batches) == (1, 3)
    assert [row.content for row in store.chunks_for("acme", "manual")] == ["kept note"]


def test_text_with_url_replaces_that_source_and_skips_unchanged():
    store = InMemoryChunkStore()
    service = _service(store)
    url = "https://acme.test/faq"

    assert asyncio.run(service.ingest_text("acme", "v1", url=url)).status == "inserted"
    assert asyncio.run(service.ingest_text("acme", "v1", url=url)).status == "skipped"
    assert asyncio.run(service.ingest_text("acme", "v2", url=url)).status == "replaced"
    assert [row.content for row in store.chunks_for("acme", url)] == ["v2"]


def test_empty_text_or_tenant_is_rejected():
    service = _service(InMemoryChunkStore())
    with pytest.raises(IngestValidationError):
        asyncio.run(service.ingest_text("acme", "   "))
    with pytest.raises(IngestValidationError):
        asyncio.run(service.ingest_text("", "text"))


def test_list_and_delete_sources():
    store = InMemoryChunkStore()
    service = _service(store)
    asyncio.run(service.ingest_text("acme", "manual note"))
    asyncio.run(service.ingest_text("acme", "page text", url="https://acme.test/p", title="Page"))

    sources = {item.source_url: item for item in asyncio.run(service.list_sources("acme"))}
    assert sources["manual"].is_manual is True
    assert sources["https://acme.test/p"].title == "Page"

    assert asyncio.run(service.delete_source("acme", "https://acme.test/p")) == 1
    assert asyncio.run(service.delete_source("acme", "https://acme.test/p")) == 0
    with pytest.raises(IngestValidationError):
        asyncio.run(service.delete_source("acme", ""))
