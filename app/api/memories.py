# =============================================================================
# Memories API — Store, Search, List & Delete
# =============================================================================
#
# REST adapter over MemoryService. Every route authenticates with the
# X-API-Key header, checks its scope ("write" to store/delete, "read" to
# search/list) and acts only on the key's own memories.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_current_api_key, get_memory_service
from app.db.models import ApiKey
from app.models.requests import (
    DeleteMemoryRequest,
    RetrieveMemoriesRequest,
    StoreMemoryRequest,
)
from app.models.responses import (
    ListMemoriesResponse,
    MemoryResponse,
    MemorySearchHit,
    MessageResponse,
    RetrieveMemoriesResponse,
    StoreMemoryResponse,
)
from app.services.authenticator import require_scope
from app.services.memory_service import MemoryService
from app.services.memory_store import MemorySearchResult

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Memories"])


def _to_hit(result: MemorySearchResult) -> MemorySearchHit:
    memory = MemoryResponse.model_validate(result.memory)
    return MemorySearchHit(**memory.model_dump(), similarity=result.similarity)


# ---------------------------------------------------------------------------
# POST /store-memory
# ---------------------------------------------------------------------------


@router.post(
    "/store-memory",
    response_model=StoreMemoryResponse,
    summary="Store a memory",
    description="Embed the content and store it under the calling API key.",
)
async def store_memory(
    request: StoreMemoryRequest,
    api_key: ApiKey = Depends(get_current_api_key),
    service: MemoryService = Depends(get_memory_service),
) -> StoreMemoryResponse:
    require_scope(api_key, "write")

    record = await service.store_memory(api_key.id, request.content, request.metadata)
    return StoreMemoryResponse(memory=MemoryResponse.model_validate(record))


# ---------------------------------------------------------------------------
# POST /retrieve-memories
# ---------------------------------------------------------------------------


@router.post(
    "/retrieve-memories",
    response_model=RetrieveMemoriesResponse,
    summary="Semantic search over memories",
    description=(
        "Return the calling key's memories most similar to the query. "
        "Only results with cosine similarity above 0.5 are included."
    ),
)
async def retrieve_memories(
    request: RetrieveMemoriesRequest,
    api_key: ApiKey = Depends(get_current_api_key),
    service: MemoryService = Depends(get_memory_service),
) -> RetrieveMemoriesResponse:
    require_scope(api_key, "read")

    results = await service.search_memories(api_key.id, request.query, request.limit)
    return RetrieveMemoriesResponse(
        query=request.query,
        count=len(results),
        memories=[_to_hit(r) for r in results],
    )


# ---------------------------------------------------------------------------
# GET /list-memories
# ---------------------------------------------------------------------------


@router.get(
    "/list-memories",
    response_model=ListMemoriesResponse,
    summary="List recent memories",
)
async def list_memories(
    limit: int | None = Query(default=None),
    api_key: ApiKey = Depends(get_current_api_key),
    service: MemoryService = Depends(get_memory_service),
) -> ListMemoriesResponse:
    require_scope(api_key, "read")

    records = await service.list_memories(api_key.id, limit)
    return ListMemoriesResponse(
        count=len(records),
        memories=[MemoryResponse.model_validate(r) for r in records],
    )


# ---------------------------------------------------------------------------
# POST /delete-memory  and  DELETE /delete-memory?memoryId=
# ---------------------------------------------------------------------------


async def _delete(
    memory_id: str | None, api_key: ApiKey, service: MemoryService,
) -> MessageResponse:
    require_scope(api_key, "write")
    deleted_id = await service.delete_memory(api_key.id, memory_id)
    return MessageResponse(message=f"Memory {deleted_id} deleted successfully")


@router.post(
    "/delete-memory",
    response_model=MessageResponse,
    summary="Delete a memory",
    description="Idempotent: deleting a missing memory also succeeds.",
)
async def delete_memory(
    request: DeleteMemoryRequest,
    api_key: ApiKey = Depends(get_current_api_key),
    service: MemoryService = Depends(get_memory_service),
) -> MessageResponse:
    return await _delete(request.memory_id, api_key, service)


@router.delete(
    "/delete-memory",
    response_model=MessageResponse,
    summary="Delete a memory (query parameter form)",
)
async def delete_memory_by_query(
    memory_id: str | None = Query(default=None, alias="memoryId"),
    api_key: ApiKey = Depends(get_current_api_key),
    service: MemoryService = Depends(get_memory_service),
) -> MessageResponse:
    return await _delete(memory_id, api_key, service)
