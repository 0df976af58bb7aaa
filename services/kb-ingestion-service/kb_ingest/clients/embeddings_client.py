from __future__ import annotations

import httpx


class EmbeddingsClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        model: str | None = None,
        dimensions: int | None = None,
        timeout_seconds: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if base_url is None or api_key is None or model is None or dimensions is None or timeout_seconds is None:
            from kb_ingest.core.config import settings

            base_url = base_url or settings.EMBEDDINGS_API_URL
            api_key = api_key if api_key is not None else settings.EMBEDDINGS_API_KEY
            model = model or settings.EMBEDDINGS_MODEL
            dimensions = dimensions or settings.EMBEDDING_DIM
            timeout_seconds = timeout_seconds or settings.EMBEDDINGS_TIMEOUT_SECONDS
        self.base_url = str(base_url).rstrip("/")
        self.api_key = str(api_key)
        self.model = str(model)
        self.dimensions = int(dimensions)
        self.timeout_seconds = float(timeout_seconds)
        self._transport = transport

    async def embed_texts(self, texts: list[str], tenant_id: str | None = None) -> list[list[float]]:
        if not texts:
            return []
        payload = {
            "model": self.model,
            "input": texts,
            "dimensions": self.dimensions,
            "encoding_format": "float",
        }
        if tenant_id is not None:
            payload["user"] = tenant_id
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport, headers=headers) as client:
            response = await client.post(f"{self.base_url}/v1/embeddings", json=payload)
            response.raise_for_status()
            body = response.json()
        data = body.get("data")
        if not data:
            raise RuntimeError("Embeddings service returned empty data")
        ordered = sorted(data, key=lambda item: int(item.get("index", 0)))
        vectors = [item["embedding"] for item in ordered]
        if len(vectors) != len(texts):
            raise RuntimeError(f"Embeddings service returned {len(vectors)} vectors for {len(texts)} inputs")
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise RuntimeError(f"Embedding dimension mismatch: expected {self.dimensions}, got {len(vector)}")
        return vectors

