# =============================================================================
# Memory Store — Pluggable Backend Protocol
# =============================================================================
#
# Persists memories with their embeddings and answers the three read
# queries the API needs: similarity search, newest-first listing and
# owner-checked delete. Every operation is scoped to one API key; no query
# can see another key's rows.
#
# ARCHITECTURE:
#   MemoryStore (Protocol)
#   ├── PgMemoryStore     — PostgreSQL + pgvector (threshold applied in SQL)
#   └── ChromaMemoryStore — ChromaDB (in-process or client/server), tenant
#                           filter through collection metadata
#
# SIMILARITY:
# Both backends use cosine distance, in [0, 2]. Similarity is
# 1 - distance, and a hit must score strictly ABOVE the threshold.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol, TypeVar

import chromadb
from sqlalchemy import delete, literal, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.db.engine import async_session_factory, translate_db_errors
from app.db.models import Memory
from app.errors import DatabaseError, InvalidArgument

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class MemoryRecord:
    """A stored memory as returned to callers (the embedding is never exposed)."""

    id: uuid.UUID
    api_key_id: uuid.UUID
    content: str
    created_at: datetime
    updated_at: datetime
    metadata: dict = field(default_factory=dict)


@dataclass
class MemorySearchResult:
    memory: MemoryRecord
    similarity: float  # 1 - cosine distance, higher = more relevant


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class MemoryStore(Protocol):
    """Interface shared by the pgvector and ChromaDB backends."""

    dimensions: int

    # True when deleting the api_keys row also removes its memories
    cascades_with_api_key: bool

    async def insert(
        self,
        api_key_id: uuid.UUID,
        content: str,
        embedding: list[float],
        metadata: dict | None = None,
    ) -> MemoryRecord:
        """
        Persist one memory.

        Raises:
            InvalidArgument: Empty content or an embedding of the wrong length.
            DatabaseError: The backend failed.
        """
        ...

    async def search(
        self,
        api_key_id: uuid.UUID,
        query_embedding: list[float],
        limit: int,
        threshold: float,
    ) -> list[MemorySearchResult]:
        """
        Most similar memories of one key, highest similarity first.

        Only results with similarity > threshold are returned, at most `limit`.
        """
        ...

    async def list_recent(
        self, api_key_id: uuid.UUID, limit: int,
    ) -> list[MemoryRecord]:
        """Newest memories of one key, `created_at` descending."""
        ...

    async def delete(self, api_key_id: uuid.UUID, memory_id: uuid.UUID) -> bool:
        """
        Delete a memory if this key owns it.

        Returns whether a row was removed. Unknown and foreign ids are a
        no-op, not an error.
        """
        ...

    async def purge(self, api_key_id: uuid.UUID) -> int:
        """Remove every memory of a key. Returns the number removed."""
        ...


# ---------------------------------------------------------------------------
# Shared validation
# ---------------------------------------------------------------------------


def check_embedding(embedding: list[float], dimensions: int) -> None:
    if len(embedding) != dimensions:
        raise InvalidArgument(
            f"Embedding has {len(embedding)} dimensions, expected {dimensions}"
        )


def above_threshold(
    results: Iterable[MemorySearchResult], threshold: float,
) -> list[MemorySearchResult]:
    """Keep results scoring strictly above `threshold`, best first."""
    kept = [r for r in results if r.similarity > threshold]
    kept.sort(key=lambda r: r.similarity, reverse=True)
    return kept


def _check_content(content: str) -> None:
    if not content or not content.strip():
        raise InvalidArgument("Content is required")


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgMemoryStore:
    """
    pgvector-backed memory store.

    Each call opens its own session from `session_factory` and commits
    before returning, so a stored memory is visible to the next request.
    """

    cascades_with_api_key = True

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        dimensions: int | None = None,
    ):
        self._session_factory = session_factory
        self.dimensions = dimensions or settings.embedding_dimensions

    async def insert(
        self,
        api_key_id: uuid.UUID,
        content: str,
        embedding: list[float],
        metadata: dict | None = None,
    ) -> MemoryRecord:
        _check_content(content)
        check_embedding(embedding, self.dimensions)

        with translate_db_errors("insert memory"):
            async with self._session_factory() as session:
                memory = Memory(
                    api_key_id=api_key_id,
                    content=content,
                    embedding=embedding,
                    metadata_=metadata or {},
                )
                session.add(memory)
                await session.commit()
                # Pick up server-side created_at / updated_at
                await session.refresh(memory)

        logger.info("Stored memory %s for api_key_id=%s", memory.id, api_key_id)
        return _record_from_row(memory)

    async def search(
        self,
        api_key_id: uuid.UUID,
        query_embedding: list[float],
        limit: int,
        threshold: float,
    ) -> list[MemorySearchResult]:
        """
        Cosine similarity search using pgvector.

        The threshold is applied in SQL so the LIMIT counts only qualifying
        rows.
        """
        check_embedding(query_embedding, self.dimensions)
        distance = Memory.embedding.cosine_distance(query_embedding)

        stmt = (
            select(Memory, distance.label("distance"))
            .where(Memory.api_key_id == api_key_id)
            .where((literal(1.0) - distance) > threshold)
            .order_by(distance)
            .limit(limit)
        )

        with translate_db_errors("search memories"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.all()

        logger.debug(
            "Memory search returned %d rows (limit=%d, api_key_id=%s)",
            len(rows), limit, api_key_id,
        )

        return above_threshold(
            (
                MemorySearchResult(
                    memory=_record_from_row(memory),
                    similarity=1.0 - float(dist),
                )
                for memory, dist in rows
            ),
            threshold,
        )

    async def list_recent(
        self, api_key_id: uuid.UUID, limit: int,
    ) -> list[MemoryRecord]:
        stmt = (
            select(Memory)
            .where(Memory.api_key_id == api_key_id)
            .order_by(Memory.created_at.desc())
            .limit(limit)
        )
        with translate_db_errors("list memories"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                rows = result.scalars().all()
        return [_record_from_row(m) for m in rows]

    async def delete(self, api_key_id: uuid.UUID, memory_id: uuid.UUID) -> bool:
        stmt = delete(Memory).where(
            Memory.id == memory_id,
            Memory.api_key_id == api_key_id,
        )
        with translate_db_errors("delete memory"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()

        removed = result.rowcount > 0
        if removed:
            logger.info("Deleted memory %s for api_key_id=%s", memory_id, api_key_id)
        return removed

    async def purge(self, api_key_id: uuid.UUID) -> int:
        stmt = delete(Memory).where(Memory.api_key_id == api_key_id)
        with translate_db_errors("purge memories"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        return result.rowcount


def _record_from_row(memory: Memory) -> MemoryRecord:
    return MemoryRecord(
        id=memory.id,
        api_key_id=memory.api_key_id,
        content=memory.content,
        created_at=memory.created_at,
        updated_at=memory.updated_at,
        metadata=memory.metadata_ or {},
    )


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaMemoryStore:
    """
    ChromaDB-backed memory store.

    One collection holds every key's memories; each item carries
    `api_key_id` in its metadata and every read filters on it. Chroma
    metadata values must be scalars, so the caller's metadata dict is kept
    as a JSON string and timestamps as epoch floats.

    The ChromaDB Python client is synchronous; calls run in a worker thread
    via asyncio.to_thread() to keep the event loop free.
    """

    cascades_with_api_key = False

    def __init__(
        self,
        client: Any = None,
        collection_name: str | None = None,
        dimensions: int | None = None,
    ):
        if client is None:
            if settings.chroma_url:
                # Client/server mode (e.g., Docker deployment)
                client = chromadb.HttpClient(host=settings.chroma_url)
            else:
                # In-process mode (local development, testing)
                client = chromadb.Client()
        self._client = client
        self.dimensions = dimensions or settings.embedding_dimensions

        # Cosine space to match pgvector's cosine_distance
        self._collection = self._client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.error("ChromaDB operation '%s' failed: %s", operation, e)
            raise DatabaseError(f"Database operation failed: {operation}") from e

    async def insert(
        self,
        api_key_id: uuid.UUID,
        content: str,
        embedding: list[float],
        metadata: dict | None = None,
    ) -> MemoryRecord:
        _check_content(content)
        check_embedding(embedding, self.dimensions)

        now = datetime.now(timezone.utc)
        record = MemoryRecord(
            id=uuid.uuid4(),
            api_key_id=api_key_id,
            content=content,
            created_at=now,
            updated_at=now,
            metadata=metadata or {},
        )

        await self._call(
            "insert memory",
            lambda: self._collection.add(
                ids=[str(record.id)],
                documents=[content],
                embeddings=[embedding],
                metadatas=[_to_chroma_metadata(record)],
            ),
        )
        logger.info("Stored memory %s for api_key_id=%s", record.id, api_key_id)
        return record

    async def search(
        self,
        api_key_id: uuid.UUID,
        query_embedding: list[float],
        limit: int,
        threshold: float,
    ) -> list[MemorySearchResult]:
        check_embedding(query_embedding, self.dimensions)
        where = {"api_key_id": str(api_key_id)}

        def _sync_search() -> list[MemorySearchResult]:
            # n_results may not exceed the number of matching items
            owned = self._collection.get(where=where, include=[])
            n_results = min(limit, len(owned["ids"]))
            if n_results == 0:
                return []

            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=n_results,
                where=where,
                include=["documents", "metadatas", "distances"],
            )

            found: list[MemorySearchResult] = []
            if results and results["ids"] and results["ids"][0]:
                for i, chroma_id in enumerate(results["ids"][0]):
                    distance = results["distances"][0][i]
                    found.append(MemorySearchResult(
                        memory=_from_chroma(
                            chroma_id,
                            results["documents"][0][i],
                            results["metadatas"][0][i],
                        ),
                        similarity=1.0 - float(distance),
                    ))
            return found

        results = await self._call("search memories", _sync_search)
        return above_threshold(results, threshold)[:limit]

    async def list_recent(
        self, api_key_id: uuid.UUID, limit: int,
    ) -> list[MemoryRecord]:
        results = await self._call(
            "list memories",
            lambda: self._collection.get(
                where={"api_key_id": str(api_key_id)},
                include=["documents", "metadatas"],
            ),
        )
        records = [
            _from_chroma(chroma_id, document, metadata)
            for chroma_id, document, metadata in zip(
                results["ids"], results["documents"], results["metadatas"],
                strict=True,
            )
        ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def delete(self, api_key_id: uuid.UUID, memory_id: uuid.UUID) -> bool:
        def _sync_delete() -> bool:
            owned = self._collection.get(
                ids=[str(memory_id)],
                where={"api_key_id": str(api_key_id)},
                include=[],
            )
            if not owned["ids"]:
                return False
            self._collection.delete(ids=owned["ids"])
            return True

        removed = await self._call("delete memory", _sync_delete)
        if removed:
            logger.info("Deleted memory %s for api_key_id=%s", memory_id, api_key_id)
        return removed

    async def purge(self, api_key_id: uuid.UUID) -> int:
        def _sync_purge() -> int:
            where = {"api_key_id": str(api_key_id)}
            owned = self._collection.get(where=where, include=[])
            if owned["ids"]:
                self._collection.delete(ids=owned["ids"])
            return len(owned["ids"])

        return await self._call("purge memories", _sync_purge)


def _to_chroma_metadata(record: MemoryRecord) -> dict:
    return {
        "api_key_id": str(record.api_key_id),
        "created_at": record.created_at.timestamp(),
        "updated_at": record.updated_at.timestamp(),
        "metadata": json.dumps(record.metadata),
    }


def _from_chroma(chroma_id: str, document: str, metadata: dict) -> MemoryRecord:
    return MemoryRecord(
        id=uuid.UUID(chroma_id),
        api_key_id=uuid.UUID(metadata["api_key_id"]),
        content=document,
        created_at=datetime.fromtimestamp(metadata["created_at"], tz=timezone.utc),
        updated_at=datetime.fromtimestamp(metadata["updated_at"], tz=timezone.utc),
        metadata=json.loads(metadata.get("metadata") or "{}"),
    )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


@lru_cache
def get_memory_store() -> MemoryStore:
    """
    Factory that returns the configured memory store backend.

    Reads `memory_store_type` from settings:
    - "pgvector" → PgMemoryStore (default)
    - "chroma" → ChromaMemoryStore

    Cached so an in-process Chroma client keeps its data between requests.
    """
    store_type = settings.memory_store_type

    if store_type == "chroma":
        logger.info("Using ChromaDB memory store")
        return ChromaMemoryStore()
    elif store_type == "pgvector":
        logger.info("Using pgvector memory store")
        return PgMemoryStore()
    else:
        raise ValueError(
            f"Unknown memory store type: '{store_type}'. "
            f"Supported: 'pgvector', 'chroma'"
        )
