"""Embedding provider clients.

Two interchangeable HTTP providers (Voyage, OpenAI) behind one async
interface. Provider selection follows key precedence in
:func:`get_embedding_client`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

import httpx

from geomigrate.config import EmbeddingConfig

logger = logging.getLogger(__name__)

VOYAGE_URL = "https://api.voyageai.com/v1/embeddings"
OPENAI_URL = "https://api.openai.com/v1/embeddings"


class EmbeddingError(Exception):
    """Raised when an embedding request cannot be completed."""


class EmbeddingClient(ABC):
    """Async ``embed(text) -> vector`` adapter."""

    provider: str = ""

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts in one request, preserving order."""

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def aclose(self) -> None:  # noqa: B027
        """Release any pooled connections."""


class HttpEmbeddingClient(EmbeddingClient):
    """Shared request/response handling for OpenAI-shaped embedding APIs.

    Both providers accept ``{"input": [...], "model": ...}`` and answer
    with ``{"data": [{"embedding": [...], "index": n}, ...]}``.
    """

    url: str = ""

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise EmbeddingError(f"{self.provider} API key is empty")
        self.model = model
        self._api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        # Providers reject empty strings
        inputs = [t if t.strip() else " " for t in texts]
        logger.debug("Embedding %d text(s) via %s/%s", len(inputs), self.provider, self.model)
        try:
            response = await self._client.post(
                self.url,
                json={"input": inputs, "model": self.model},
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise EmbeddingError(
                f"{self.provider} embedding API error: "
                f"{exc.response.status_code} {exc.response.text[:300]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"{self.provider} embedding request failed: {exc}") from exc

        return self._parse(response.json(), expected=len(inputs))

    def _parse(self, payload: dict, *, expected: int) -> list[list[float]]:
        data = payload.get("data")
        if not isinstance(data, list) or len(data) != expected:
            raise EmbeddingError(f"{self.provider} returned malformed embedding payload")
        ordered = sorted(data, key=lambda d: d.get("index", 0))
        return [[float(x) for x in item["embedding"]] for item in ordered]

    async def aclose(self) -> None:
        await self._client.aclose()


class VoyageEmbeddingClient(HttpEmbeddingClient):
    provider = "voyage"
    url = VOYAGE_URL


class OpenAIEmbeddingClient(HttpEmbeddingClient):
    provider = "openai"
    url = OPENAI_URL


def get_embedding_client(config: EmbeddingConfig) -> EmbeddingClient:
    """Pick the configured provider: Voyage first, then OpenAI.

    Raises:
        EmbeddingError: When no provider key is configured.
    """
    if config.voyage_api_key:
        return VoyageEmbeddingClient(
            config.voyage_api_key, config.voyage_model, timeout=config.timeout_seconds
        )
    if config.openai_api_key:
        return OpenAIEmbeddingClient(
            config.openai_api_key, config.openai_model, timeout=config.timeout_seconds
        )
    raise EmbeddingError("No embedding service API key configured")
