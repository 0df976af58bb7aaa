from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

UrlStatus = Literal["new", "updated", "skipped", "empty", "error"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "kb-ingestion-service"
    version: str
    crawl_service_configured: bool


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    correlation_id: UUID
    retryable: bool
    timestamp: datetime


class ErrorEnvelope(BaseModel):
    error: ErrorInfo


class DiscoverRequest(BaseModel):
    url: str = Field(min_length=1)


class DiscoverResponse(BaseModel):
    urls: list[str]
    total: int


class SyncRequest(BaseModel):
    urls: list[str] = Field(default_factory=list)


class IngestRequest(BaseModel):
    url: str = Field(min_length=1)


class IngestResponse(CamelModel):
    pages_count: int
    chunks_count: int
    empty_pages: int


class ManualIngestRequest(BaseModel):
    text: str
    url: str | None = None
    title: str | None = None


class ManualIngestResponse(CamelModel):
    status: Literal["inserted", "replaced", "skipped"]
    source_url: str
    chunks_count: int


class SourceItem(CamelModel):
    source_url: str
    title: str
    chunk_count: int
    is_manual: bool
    created_at: datetime | None = None


class SourcesResponse(BaseModel):
    sources: list[SourceItem]


class DeleteSourceResponse(BaseModel):
    deleted: int


class SyncStats(CamelModel):
    errors: int = 0
    new_pages: int = 0
    updated_pages: int = 0
    skipped_pages: int = 0
    empty_pages: int = 0

    def record(self, status: UrlStatus) -> None:
        if status == "new":
            self.new_pages += 1
        elif status == "updated":
            self.updated_pages += 1
        elif status == "skipped":
            self.skipped_pages += 1
        elif status == "empty":
            self.empty_pages += 1
        else:
            self.errors += 1


class StartEvent(CamelModel):
    type: Literal["start"] = "start"
    total: int


class ProgressEvent(CamelModel):
    type: Literal["progress"] = "progress"
    current: int
    total: int
    url: str
    status: UrlStatus
    error: str | None = None
    chunks: int | None = None
    stats: SyncStats


class CompleteEvent(CamelModel):
    type: Literal["complete"] = "complete"
    total: int
    processed: int
    stats: SyncStats
    cancelled: bool = False
    timed_out: bool = False


SyncEvent = StartEvent | ProgressEvent | CompleteEvent


def event_payload(event: SyncEvent) -> dict[str, Any]:
    return event.model_dump(mode="json", by_alias=True, exclude_none=True)


def format_sse(event: SyncEvent) -> str:
    return f"data: {event.model_dump_json(by_alias=True, exclude_none=True)}\n\n"
