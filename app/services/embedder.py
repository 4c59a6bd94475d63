# =============================================================================
# Embedding Service — Mode-Aware Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
# The default provider is Cohere's compatibility endpoint, whose models are
# asymmetric: stored text is embedded as "search_document", queries as
# "search_query". Callers always say which one they want.
#
# The OpenAI SDK is used with a configurable base_url so any compatible
# provider works without code changes. The mode hint travels as
# `input_type` in the request body (`extra_body`); providers that do not
# know the field ignore it.
#
# No retry logic: a failed embedding surfaces as EmbeddingError and the
# caller's operation fails without writing anything. `max_retries=0` also
# disables the SDK's own retries so the configured timeout is a real bound.
# =============================================================================

from __future__ import annotations

import enum
import logging
from collections.abc import Sequence
from functools import lru_cache

import openai
from openai import AsyncOpenAI

from app.config import settings
from app.errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingMode(str, enum.Enum):
    """Which side of an asymmetric retrieval model the text is on."""

    DOCUMENT = "search_document"  # Text being stored
    QUERY = "search_query"        # Text being searched for


class EmbeddingClient:
    """
    Async embedding client.

    Texts are sent in sub-batches of `batch_size`; vectors come back in the
    same order as the input texts and always have `dimensions` entries.
    """

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        dimensions: int | None = None,
        batch_size: int | None = None,
    ):
        self._client = client
        self.model = model or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self.batch_size = batch_size or settings.embedding_batch_size

    # ---------------------------------------------------------------------------
    # Lazy client
    # ---------------------------------------------------------------------------
    # Created on first use so the app can start (and /health can answer)
    # without an embedding key configured.
    # ---------------------------------------------------------------------------

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not settings.embedding_api_key:
                raise EmbeddingError(
                    "No API key configured for embeddings. "
                    "Set EMBEDDING_API_KEY in .env"
                )

            client_kwargs: dict = {
                "api_key": settings.embedding_api_key,
                "timeout": settings.embedding_timeout_seconds,
                "max_retries": 0,
            }
            if settings.embedding_base_url:
                client_kwargs["base_url"] = settings.embedding_base_url

            self._client = AsyncOpenAI(**client_kwargs)

            logger.info(
                "Initialized embedding client (model=%s, base_url=%s)",
                self.model,
                settings.embedding_base_url or "https://api.openai.com/v1",
            )
        return self._client

    # ---------------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------------

    async def embed(
        self,
        texts: Sequence[str],
        mode: EmbeddingMode,
    ) -> list[list[float]]:
        """
        Generate embeddings for a batch of texts.

        Args:
            texts: Text strings to embed.
            mode: DOCUMENT for stored content, QUERY for search input.

        Returns:
            One vector per input text, in input order.

        Raises:
            EmbeddingError: Provider error, timeout, empty response or a
                vector of the wrong length.
        """
        if not texts:
            return []

        client = self._get_client()
        all_embeddings: list[list[float]] = [[] for _ in texts]

        for i in range(0, len(texts), self.batch_size):
            batch = list(texts[i : i + self.batch_size])
            logger.debug(
                "Embedding batch %d-%d of %d texts (model=%s, mode=%s)",
                i + 1,
                min(i + self.batch_size, len(texts)),
                len(texts),
                self.model,
                mode.value,
            )

            create_kwargs: dict = {
                "model": self.model,
                "input": batch,
                "extra_body": {"input_type": mode.value},
            }
            if settings.embedding_send_dimensions:
                create_kwargs["dimensions"] = self.dimensions

            try:
                response = await client.embeddings.create(**create_kwargs)
            except openai.APITimeoutError as e:
                logger.error("Embedding request timed out: %s", e)
                raise EmbeddingError("Embedding request timed out") from e
            except openai.OpenAIError as e:
                logger.error("Embedding provider error: %s", e)
                raise EmbeddingError(f"Failed to generate embedding: {e}") from e

            if not response.data or len(response.data) != len(batch):
                raise EmbeddingError(
                    f"Embedding provider returned {len(response.data or [])} "
                    f"vectors for {len(batch)} texts"
                )

            # Sort by index so output order matches input order
            for item in sorted(response.data, key=lambda x: x.index):
                if len(item.embedding) != self.dimensions:
                    raise EmbeddingError(
                        f"Embedding has {len(item.embedding)} dimensions, "
                        f"expected {self.dimensions}"
                    )
                all_embeddings[i + item.index] = list(item.embedding)

        return all_embeddings

    async def embed_document(self, text: str) -> list[float]:
        """Embed one piece of content that is about to be stored."""
        result = await self.embed([text], EmbeddingMode.DOCUMENT)
        return result[0]

    async def embed_query(self, text: str) -> list[float]:
        """Embed one search query."""
        result = await self.embed([text], EmbeddingMode.QUERY)
        return result[0]


@lru_cache
def get_embedding_client() -> EmbeddingClient:
    """Process-wide client; the SDK keeps its own connection pool."""
    return EmbeddingClient()
