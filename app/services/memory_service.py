# =============================================================================
# Memory Service — The Four Memory Operations
# =============================================================================
#
# store / search / list / delete, shared by the REST routes and the MCP
# dispatcher so both transports have identical semantics.
#
# Order of work in every operation:
#   1. Validate arguments (fail before spending an embedding call)
#   2. Embed, in DOCUMENT mode for store and QUERY mode for search
#   3. Hit the memory store, always scoped to the caller's API key
# =============================================================================

from __future__ import annotations

import logging
import uuid
from typing import Protocol

from app.config import settings
from app.errors import InvalidArgument
from app.services.memory_store import MemoryRecord, MemorySearchResult, MemoryStore

logger = logging.getLogger(__name__)


class Embedder(Protocol):
    async def embed_document(self, text: str) -> list[float]:
        ...

    async def embed_query(self, text: str) -> list[float]:
        ...


def parse_memory_id(value: str | uuid.UUID | None) -> uuid.UUID:
    """Parse a client-supplied memory id, rejecting malformed values."""
    if isinstance(value, uuid.UUID):
        return value
    if not value or not isinstance(value, str):
        raise InvalidArgument("Memory ID is required")
    try:
        return uuid.UUID(value)
    except ValueError:
        raise InvalidArgument(f"Invalid memory ID: {value}") from None


def _check_limit(limit: int | None, default: int, maximum: int) -> int:
    if limit is None:
        return default
    # bool is an int subclass; reject it explicitly
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise InvalidArgument("Limit must be an integer")
    if limit < 1 or limit > maximum:
        raise InvalidArgument(f"Limit must be between 1 and {maximum}")
    return limit


class MemoryService:
    def __init__(self, store: MemoryStore, embedder: Embedder):
        self.store = store
        self.embedder = embedder

    async def store_memory(
        self,
        api_key_id: uuid.UUID,
        content: str,
        metadata: dict | None = None,
    ) -> MemoryRecord:
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgument("Content is required")
        if metadata is not None and not isinstance(metadata, dict):
            raise InvalidArgument("Metadata must be an object")

        embedding = await self.embedder.embed_document(content)
        return await self.store.insert(api_key_id, content, embedding, metadata)

    async def search_memories(
        self,
        api_key_id: uuid.UUID,
        query: str,
        limit: int | None = None,
    ) -> list[MemorySearchResult]:
        if not isinstance(query, str) or not query.strip():
            raise InvalidArgument("Query is required")
        limit = _check_limit(
            limit, settings.search_default_limit, settings.search_max_limit,
        )

        embedding = await self.embedder.embed_query(query)
        results = await self.store.search(
            api_key_id,
            embedding,
            limit=limit,
            threshold=settings.search_similarity_threshold,
        )
        logger.debug(
            "Search for api_key_id=%s returned %d memories", api_key_id, len(results),
        )
        return results

    async def list_memories(
        self,
        api_key_id: uuid.UUID,
        limit: int | None = None,
    ) -> list[MemoryRecord]:
        limit = _check_limit(
            limit, settings.list_default_limit, settings.list_max_limit,
        )
        return await self.store.list_recent(api_key_id, limit)

    async def delete_memory(
        self,
        api_key_id: uuid.UUID,
        memory_id: str | uuid.UUID | None,
    ) -> uuid.UUID:
        """
        Delete a memory owned by the key. Idempotent: deleting a missing or
        foreign memory succeeds without touching anything.
        """
        parsed = parse_memory_id(memory_id)
        await self.store.delete(api_key_id, parsed)
        return parsed
