import argparse
import asyncio
import json
import sys
from collections.abc import Sequence
from typing import TextIO


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="kb-ingest", description="Knowledge base ingestion and sync")
    subparsers = parser.add_subparsers(dest="command", required=True)

    discover = subparsers.add_parser("discover", help="List crawlable pages of a site")
    discover.add_argument("--tenant", required=True, help="Tenant id")
    discover.add_argument("url", help="Base URL of the site")

    sync = subparsers.add_parser("sync", help="Re-sync URLs, printing one JSON event per line")
    sync.add_argument("--tenant", required=True, help="Tenant id")
    sync.add_argument("urls", nargs="*", help="URLs to sync")
    sync.add_argument("--from-file", dest="from_file", help="Read URLs from a file, one per line")

    ingest = subparsers.add_parser("ingest", help="Crawl a site and replace the tenant's corpus")
    ingest.add_argument("--tenant", required=True, help="Tenant id")
    ingest.add_argument("url", help="Seed URL")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)

    args = parser.parse_args(argv)
    if args.command == "sync" and not args.urls and not args.from_file:
        parser.error("sync needs URLs or --from-file")
    return args


def _read_urls(args: argparse.Namespace) -> list[str]:
    urls = list(args.urls)
    if args.from_file:
        with open(args.from_file, encoding="utf-8") as handle:
            urls.extend(line.strip() for line in handle if line.strip() and not line.startswith("#"))
    return urls


def _emit(payload: dict, out: TextIO) -> None:
    out.write(json.dumps(payload, ensure_ascii=False) + "\n")
    out.flush()


async def _run_discover(args: argparse.Namespace, out: TextIO) -> int:
    from kb_ingest.api.routes import get_crawl_client
    from kb_ingest.core.config import settings
    from kb_ingest.services.discovery import discover_urls
    from kb_ingest.services.fetcher import PageFetcher

    urls = await discover_urls(
        PageFetcher(get_crawl_client()),
        args.tenant,
        args.url,
        limit=settings.DISCOVER_LIMIT,
        require_https=settings.REQUIRE_HTTPS_URLS,
    )
    _emit({"urls": urls, "total": len(urls)}, out)
    return 0


async def _run_sync(args: argparse.Namespace, out: TextIO) -> int:
    from kb_ingest.api.routes import get_chunk_store, get_crawl_client, get_embeddings_client
    from kb_ingest.schemas.api import event_payload
    from kb_ingest.services.fetcher import PageFetcher
    from kb_ingest.services.sync import SyncOrchestrator

    orchestrator = SyncOrchestrator(PageFetcher(get_crawl_client()), get_embeddings_client(), get_chunk_store())
    errors = 0
    async for event in orchestrator.run(args.tenant, _read_urls(args)):
        payload = event_payload(event)
        _emit(payload, out)
        if payload["type"] == "complete":
            errors = int(payload["stats"]["errors"])
    return 1 if errors else 0


async def _run_ingest(args: argparse.Namespace, out: TextIO) -> int:
    from kb_ingest.api.routes import get_chunk_store, get_crawl_client, get_embeddings_client
    from kb_ingest.services.bulk_ingest import BulkIngestOrchestrator
    from kb_ingest.services.fetcher import PageFetcher

    orchestrator = BulkIngestOrchestrator(PageFetcher(get_crawl_client()), get_embeddings_client(), get_chunk_store())
    summary = await orchestrator.ingest(args.tenant, args.url)
    _emit(
        {"pagesCount": summary.pages_count, "chunksCount": summary.chunks_count, "emptyPages": summary.empty_pages},
        out,
    )
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    from kb_ingest.core.config import settings

    uvicorn.run("kb_ingest.main:app", host=args.host or settings.HOST, port=args.port or settings.SERVICE_PORT)
    return 0


def main(argv: Sequence[str] | None = None, out: TextIO | None = None) -> int:
    from kb_ingest.core.errors import IngestionError
    from kb_ingest.core.logging import configure_logging

    args = parse_args(argv)
    out = out or sys.stdout
    if args.command == "serve":
        return _serve(args)

    configure_logging()
    runners = {"discover": _run_discover, "sync": _run_sync, "ingest": _run_ingest}
    try:
        return asyncio.run(runners[args.command](args, out))
    except IngestionError as exc:
        _emit({"error": {"code": exc.error_code, "message": exc.message, "retryable": exc.retryable}}, out)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
