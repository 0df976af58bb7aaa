import io
import json

import pytest

from fakes import FakeCrawlService, FakeEmbedder, InMemoryChunkStore
from kb_ingest.cli import main as cli


def test_sync_requires_urls():
    with pytest.raises(SystemExit):
        cli.parse_args(["sync", "--tenant", "acme"])


def test_parse_args_for_each_command():
    assert cli.parse_args(["discover", "--tenant", "acme", "https://acme.test"]).command == "discover"
    assert cli.parse_args(["ingest", "--tenant", "acme", "https://acme.test"]).url == "https://acme.test"
    assert cli.parse_args(["serve", "--port", "9000"]).port == 9000


def test_read_urls_merges_arguments_and_file(tmp_path):
    url_file = tmp_path / "urls.txt"
    url_file.write_text("https://acme.test/b\n# comment\n\nhttps://acme.test/c\n", encoding="utf-8")
    args = cli.parse_args(["sync", "--tenant", "acme", "https://acme.test/a", "--from-file", str(url_file)])
    assert cli._read_urls(args) == ["https://acme.test/a", "https://acme.test/b", "https://acme.test/c"]


def _patch_collaborators(monkeypatch, service, store):
    monkeypatch.setattr("kb_ingest.api.routes.get_crawl_client", lambda: service)
    monkeypatch.setattr("kb_ingest.api.routes.get_embeddings_client", lambda: FakeEmbedder())
    monkeypatch.setattr("kb_ingest.api.routes.get_chunk_store", lambda: store)


def test_sync_prints_one_json_event_per_line(monkeypatch):
    pytest.importorskip("fastapi")
    service = FakeCrawlService(fast={"https://acme.test/a": "Hello world"})
    _patch_collaborators(monkeypatch, service, InMemoryChunkStore())
    monkeypatch.setattr("kb_ingest.core.logging.configure_logging", lambda level=None: None)

    out = io.StringIO()
    code = cli.main(["sync", "--tenant", "acme", "https://acme.test/a"], out=out)

    lines = [json.loads(line) for line in out.getvalue().splitlines()]
    assert code == 0
    assert [line["type"] for line in lines] == ["start", "progress", "complete"]
    assert lines[-1]["stats"]["newPages"] == 1


def test_ingestion_errors_are_printed_with_their_code(monkeypatch):
    pytest.importorskip("fastapi")
    _patch_collaborators(monkeypatch, FakeCrawlService(configured=False), InMemoryChunkStore())
    monkeypatch.setattr("kb_ingest.core.logging.configure_logging", lambda level=None: None)

    out = io.StringIO()
    code = cli.main(["ingest", "--tenant", "acme", "https://acme.test"], out=out)

    assert code == 2
    assert json.loads(out.getvalue())["error"]["code"] == "C-CRAWL-NOT-CONFIGURED"
