from __future__ import annotations

from prometheus_client import Counter, Histogram

sync_urls_total = Counter("kb_sync_urls_total", "Per-URL sync results", ["status"])
embedding_batches_total = Counter("kb_embedding_batches_total", "Embedding batches sent", ["result"])
sync_duration_seconds = Histogram("kb_sync_duration_seconds", "Sync run duration (seconds)")
bulk_ingest_total = Counter("kb_bulk_ingest_total", "Bulk ingest runs by final state", ["state"])
