"""
Client for an Ollama-compatible embedding endpoint.

The provider may be slow or down. Callers must treat a None embedding as
"no content signal for this book", never as an error.
"""

import logging
from typing import Optional

import httpx

from app.config import get_settings
from app.core.retry import RetryConfig, async_retry
from app.services.catalog import Item
from app.services.vector_index import VectorIndex

logger = logging.getLogger(__name__)
settings = get_settings()

MAX_DESCRIPTION_CHARS = 1000


def item_to_embedding_text(item: Item) -> str:
    """Text sent to the embedding model for a book."""
    parts = [f"Title: {item.title}"]
    if item.author:
        parts.append(f"Author: {item.author}")
    if item.series:
        parts.append(f"Series: {item.series}")
    if item.description:
        description = item.description
        if len(description) > MAX_DESCRIPTION_CHARS:
            description = description[:MAX_DESCRIPTION_CHARS] + "..."
        parts.append(f"Description: {description}")
    return "\n".join(parts)


class EmbeddingClient:
    """Async client for /api/embeddings."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        retry_config: Optional[RetryConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.ollama_url
        self.model = model or settings.embedding_model
        self.timeout = timeout or settings.embedding_timeout
        self.retry_config = retry_config or RetryConfig()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def embed(self, text: str) -> Optional[list[float]]:
        """
        Embed a text.

        Returns:
            The embedding, or None when the provider failed after retries or
            answered with something that is not a vector
        """

        @async_retry(self.retry_config)
        async def do_request() -> dict:
            client = await self._get_client()
            response = await client.post("/api/embeddings", json={"model": self.model, "prompt": text})
            response.raise_for_status()
            return response.json()

        try:
            data = await do_request()
        except (httpx.HTTPError, ValueError) as e:
            # ValueError: body was not JSON
            logger.warning(f"Embedding request failed: {e}")
            return None

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding or not isinstance(embedding, list):
            logger.warning(f"Embedding response without a vector from model {self.model}")
            return None
        return [float(x) for x in embedding]

    async def check_health(self) -> bool:
        """True when the provider answers its tags endpoint."""
        try:
            client = await self._get_client()
            response = await client.get("/api/tags")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Embedding provider health check failed: {e}")
            return False


async def refresh_item_embedding(
    vectors: VectorIndex,
    client: EmbeddingClient,
    item: Item,
) -> Optional[list[float]]:
    """
    Embed a book and upsert the vector into the index.

    Returns the vector (for the caller to persist), or None when the
    provider gave nothing. A vector of the wrong size raises
    InvalidParameterError from the index.
    """
    vector = await client.embed(item_to_embedding_text(item))
    if vector is None:
        logger.warning(f"No embedding for item {item.id}, content signal stays absent")
        return None

    vectors.upsert(item.id, vector)
    logger.debug(f"Refreshed embedding for item {item.id} ({len(vector)} dims)")
    return vector
