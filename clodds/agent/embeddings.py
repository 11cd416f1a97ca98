"""OpenAI embeddings for semantic dedupe ahead of compaction.

Requests go out in chunks of batch_size inputs, so a long transcript tail
stays under the API's per-request input limit. Callers treat any failure
here as "skip dedupe".
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from clodds.utils import cosine_similarity

logger = logging.getLogger(__name__)

OPENAI_BASE_URL = "https://api.openai.com/v1"


class EmbeddingProvider:
    """Embedder backed by the OpenAI /embeddings endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        batch_size: int = 256,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self._client = http or httpx.AsyncClient(
            base_url=OPENAI_BASE_URL,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(30.0, connect=10.0),
        )

    async def embed(self, text: str) -> list[float]:
        vectors = await self._request([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts in input order, one request per batch_size chunk."""
        vectors: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            vectors.extend(await self._request(texts[start:start + self.batch_size]))
        logger.debug(
            "Embedded %d texts with %s in %d requests",
            len(texts), self.model, -(-len(texts) // self.batch_size),
        )
        return vectors

    async def _request(self, texts: Sequence[str]) -> list[list[float]]:
        # Empty strings are rejected by the API.
        response = await self._client.post(
            "/embeddings",
            json={
                "model": self.model,
                "input": [t or " " for t in texts],
                "dimensions": self.dimensions,
            },
        )
        response.raise_for_status()
        data = sorted(response.json()["data"], key=lambda item: item["index"])
        if len(data) != len(texts):
            raise ValueError(f"Expected {len(texts)} embeddings, got {len(data)}")
        return [item["embedding"] for item in data]

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)

    async def close(self) -> None:
        await self._client.aclose()
