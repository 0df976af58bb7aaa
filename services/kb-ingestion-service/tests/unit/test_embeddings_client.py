import asyncio
import json

import httpx
import pytest

from kb_ingest.clients.embeddings_client import EmbeddingsClient


def _client(handler, dimensions=2) -> EmbeddingsClient:
    return EmbeddingsClient(
        "https://emb.test",
        "sk-test",
        model="text-embedding-3-small",
        dimensions=dimensions,
        timeout_seconds=5,
        transport=httpx.MockTransport(handler),
    )


def test_embed_texts_sends_batch_and_restores_input_order():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.3, 0.4]}, {"index": 0, "embedding": [0.1, 0.2]}]},
        )

    vectors = asyncio.run(_client(handler).embed_texts(["a", "b"], tenant_id="acme"))

    assert vectors == [[0.1, 0.2], [0.3, 0.4]]
    assert str(calls[0].url) == "https://emb.test/v1/embeddings"
    assert calls[0].headers["Authorization"] == "Bearer sk-test"
    body = json.loads(calls[0].content)
    assert body["model"] == "text-embedding-3-small"
    assert body["input"] == ["a", "b"]
    assert body["dimensions"] == 2
    assert body["user"] == "acme"


def test_embed_texts_with_no_input_makes_no_request():
    def handler(request):
        raise AssertionError("no request expected")

    assert asyncio.run(_client(handler).embed_texts([])) == []


def test_embed_texts_rejects_empty_data():
    with pytest.raises(RuntimeError, match="empty data"):
        asyncio.run(_client(lambda r: httpx.Response(200, json={"data": []})).embed_texts(["a"]))


def test_embed_texts_rejects_count_mismatch():
    handler = lambda r: httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.1, 0.2]}]})
    with pytest.raises(RuntimeError, match="1 vectors for 2 inputs"):
        asyncio.run(_client(handler).embed_texts(["a", "b"]))


def test_embed_texts_rejects_dimension_mismatch():
    handler = lambda r: httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.1, 0.2, 0.3]}]})
    with pytest.raises(RuntimeError, match="dimension mismatch"):
        asyncio.run(_client(handler).embed_texts(["a"]))


def test_embed_texts_raises_on_http_error():
    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(_client(lambda r: httpx.Response(429, json={"error": "slow down"})).embed_texts(["a"]))
