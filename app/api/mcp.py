# =============================================================================
# MCP Endpoints — JSON-RPC over HTTP and a Server-Sent Events stream
# =============================================================================
#
# POST /mcp-server  one JSON-RPC request per HTTP request; replies are
#                   always HTTP 200 (202 with no body for notifications)
# GET  /mcp-stream  SSE stream that announces the server to the client
#
# The API key comes from the X-API-Key header or the `api_key` / `apikey`
# query parameter (some MCP clients cannot set headers). Without a key,
# and only when MCP auto-provisioning is enabled, the shared
# service-account key is used instead.
#
# Authentication is deferred: initialize and tools/list work without a key,
# and a bad key surfaces as a JSON-RPC -32000 error, not an HTTP 401.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from app.api.deps import (
    api_key_header,
    authenticate_api_key,
    get_credential_store,
    get_limiter,
    get_memory_service,
    get_service_account_resolver,
)
from app.config import settings
from app.db.models import ApiKey
from app.errors import Unauthorized
from app.services.authenticator import MISSING_KEY_MESSAGE, enforce_rate_limit
from app.services.credentials import CredentialStore
from app.services.mcp_dispatcher import McpDispatcher
from app.services.memory_service import MemoryService
from app.services.rate_limiter import RateLimiter
from app.services.service_account import ServiceAccountKeyResolver

logger = logging.getLogger(__name__)

router = APIRouter(tags=["MCP"])


def _raw_key(request: Request, header_key: str | None) -> str | None:
    return (
        header_key
        or request.query_params.get("api_key")
        or request.query_params.get("apikey")
    )


async def _authenticate(
    request: Request,
    raw_key: str | None,
    store: CredentialStore,
    limiter: RateLimiter,
    resolver: ServiceAccountKeyResolver,
) -> ApiKey:
    if raw_key:
        return await authenticate_api_key(request, raw_key, store, limiter)

    if not settings.mcp_auto_provision_enabled:
        raise Unauthorized(MISSING_KEY_MESSAGE)

    api_key = await resolver.resolve()
    request.state.api_key_id = api_key.id
    await enforce_rate_limit(limiter, api_key)
    return api_key


# ---------------------------------------------------------------------------
# POST /mcp-server
# ---------------------------------------------------------------------------


@router.post(
    "/mcp-server",
    summary="MCP JSON-RPC endpoint",
    description=(
        "Handles initialize, tools/list, tools/call, resources/list and "
        "resources/read."
    ),
)
async def mcp_server(
    request: Request,
    header_key: str | None = Depends(api_key_header),
    store: CredentialStore = Depends(get_credential_store),
    limiter: RateLimiter = Depends(get_limiter),
    resolver: ServiceAccountKeyResolver = Depends(get_service_account_resolver),
    service: MemoryService = Depends(get_memory_service),
) -> Response:
    raw_key = _raw_key(request, header_key)

    async def authenticate() -> ApiKey:
        return await _authenticate(request, raw_key, store, limiter, resolver)

    body = await request.body()
    reply = await McpDispatcher(service).handle_body(body, authenticate)

    if reply is None:
        return Response(status_code=202)
    return JSONResponse(reply)


# ---------------------------------------------------------------------------
# GET /mcp-stream
# ---------------------------------------------------------------------------


@router.get(
    "/mcp-stream",
    summary="MCP Server-Sent Events stream",
    response_class=StreamingResponse,
)
async def mcp_stream(
    request: Request,
    header_key: str | None = Depends(api_key_header),
    store: CredentialStore = Depends(get_credential_store),
    limiter: RateLimiter = Depends(get_limiter),
    resolver: ServiceAccountKeyResolver = Depends(get_service_account_resolver),
) -> StreamingResponse:
    await _authenticate(request, _raw_key(request, header_key), store, limiter, resolver)

    info = McpDispatcher.server_info()
    announcement = {
        "jsonrpc": "2.0",
        "method": "server/info",
        "params": {
            **info["serverInfo"],
            "capabilities": info["capabilities"],
        },
    }

    async def events() -> AsyncIterator[str]:
        yield f"data: {json.dumps(announcement)}\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
