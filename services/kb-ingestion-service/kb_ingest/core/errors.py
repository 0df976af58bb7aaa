from __future__ import annotations


class IngestionError(Exception):
    error_code = "I-INGESTION-FAILED"
    retryable = False

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class IngestValidationError(IngestionError):
    error_code = "V-VALIDATION-FAILED"


class CrawlServiceNotConfiguredError(IngestionError):
    error_code = "C-CRAWL-NOT-CONFIGURED"


class FetchServiceError(IngestionError):
    error_code = "C-FETCH-SERVICE-ERROR"
    retryable = True


class CrawlFailedError(IngestionError):
    error_code = "C-CRAWL-FAILED"
    retryable = True


class NoPagesFoundError(IngestionError):
    error_code = "C-CRAWL-NO-PAGES"


class AllPagesEmptyError(IngestionError):
    error_code = "C-CRAWL-ALL-EMPTY"


class EmbeddingBatchError(IngestionError):
    error_code = "S-EMB-BATCH-FAILED"
    retryable = True

    def __init__(self, message: str, *, batch_index: int) -> None:
        super().__init__(message)
        self.batch_index = batch_index


class ChunkInsertError(IngestionError):
    error_code = "S-STORE-INSERT-FAILED"
    retryable = True

    def __init__(self, message: str, *, batch_index: int, total_batches: int) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.total_batches = total_batches


class InvalidTransitionError(ValueError):
    pass
