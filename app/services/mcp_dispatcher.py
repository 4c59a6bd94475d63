# =============================================================================
# MCP Dispatcher — JSON-RPC 2.0 Method Routing
# =============================================================================
#
# Implements the Model Context Protocol methods over plain JSON-RPC:
#
#   initialize      → protocol version, capabilities, server info
#   ping            → {}
#   tools/list      → static schemas of the four memory tools
#   tools/call      → store_memory / search_memory / list_memories /
#                     delete_memory, run through MemoryService
#   resources/list  → memory://recent, memory://all
#   resources/read  → JSON dump of the key's memories
#
# Only tools/call and resources/read touch user data, so only they
# authenticate. `authenticate` is an async callable supplied per request
# by the HTTP layer; it returns the caller's ApiKey or raises.
#
# Error mapping:
#   -32700 body is not JSON           -32601 unknown method / tool
#   -32600 envelope is not a request  -32000 MemoryApiError (domain)
#   -32603 anything unexpected
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from app.config import settings
from app.db.models import ApiKey
from app.errors import (
    JSONRPC_INTERNAL_ERROR,
    JSONRPC_INVALID_PARAMS,
    JSONRPC_INVALID_REQUEST,
    JSONRPC_METHOD_NOT_FOUND,
    JSONRPC_PARSE_ERROR,
    JSONRPC_SERVER_ERROR,
    InvalidArgument,
    MemoryApiError,
)
from app.models.responses import MemoryResponse
from app.services.memory_service import MemoryService

logger = logging.getLogger(__name__)

Authenticate = Callable[[], Awaitable[ApiKey]]

RESOURCE_LIMITS = {
    "memory://recent": 50,
    "memory://all": 1000,
}

TOOLS = [
    {
        "name": "store_memory",
        "description": "Store a new memory with optional metadata. Use this to remember important information.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "content": {"type": "string", "description": "The content to remember"},
                "metadata": {
                    "type": "object",
                    "description": "Optional metadata (tags, category, etc.)",
                },
            },
            "required": ["content"],
        },
    },
    {
        "name": "search_memory",
        "description": "Search memories using semantic similarity",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "What to search for"},
                "limit": {
                    "type": "number",
                    "description": "Max results (default: 5)",
                    "default": 5,
                },
            },
            "required": ["query"],
        },
    },
    {
        "name": "list_memories",
        "description": "List recent memories in chronological order",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {
                    "type": "number",
                    "description": "Number of memories (default: 20)",
                    "default": 20,
                },
            },
        },
    },
    {
        "name": "delete_memory",
        "description": "Delete a specific memory by ID",
        "inputSchema": {
            "type": "object",
            "properties": {
                "memoryId": {
                    "type": "string",
                    "description": "The ID of the memory to delete",
                },
            },
            "required": ["memoryId"],
        },
    },
]

RESOURCES = [
    {
        "uri": "memory://recent",
        "name": "Recent Memories",
        "description": "Recently stored memories (last 50)",
        "mimeType": "application/json",
    },
    {
        "uri": "memory://all",
        "name": "All Memories",
        "description": "All stored memories",
        "mimeType": "application/json",
    },
]


class JsonRpcError(Exception):
    """Protocol-level failure with an explicit JSON-RPC code."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


def error_response(request_id: Any, code: int, message: str) -> dict:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def _text_result(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


def _coerce_limit(value: Any) -> int | None:
    """JSON numbers may arrive as 5.0; a missing limit means "use the default"."""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise InvalidArgument("Limit must be an integer")


def _memory_json(record) -> dict:
    return MemoryResponse.model_validate(record).model_dump(mode="json")


class McpDispatcher:
    def __init__(self, service: MemoryService):
        self.service = service

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def handle_body(self, body: bytes, authenticate: Authenticate) -> dict | None:
        """Parse a raw HTTP body and dispatch it. None means "notification"."""
        try:
            message = json.loads(body)
        except (ValueError, UnicodeDecodeError):
            return error_response(None, JSONRPC_PARSE_ERROR, "Parse error")
        return await self.handle(message, authenticate)

    async def handle(self, message: Any, authenticate: Authenticate) -> dict | None:
        if not isinstance(message, dict) or not isinstance(message.get("method"), str):
            request_id = message.get("id") if isinstance(message, dict) else None
            return error_response(request_id, JSONRPC_INVALID_REQUEST, "Invalid Request")

        method = message["method"]
        request_id = message.get("id")
        params = message.get("params") or {}

        # Notifications get no reply
        if "id" not in message:
            logger.debug("MCP notification: %s", method)
            return None

        try:
            if not isinstance(params, dict):
                raise JsonRpcError(JSONRPC_INVALID_PARAMS, "params must be an object")
            result = await self._dispatch(method, params, authenticate)
        except JsonRpcError as e:
            return error_response(request_id, e.code, e.message)
        except MemoryApiError as e:
            return error_response(request_id, e.jsonrpc_code, e.message)
        except Exception:
            logger.exception("Unhandled error in MCP method %s", method)
            return error_response(request_id, JSONRPC_INTERNAL_ERROR, "Internal error")

        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    # -------------------------------------------------------------------------
    # Methods
    # -------------------------------------------------------------------------

    async def _dispatch(
        self, method: str, params: dict, authenticate: Authenticate,
    ) -> dict:
        if method == "initialize":
            return self.server_info()
        elif method == "ping":
            return {}
        elif method == "tools/list":
            return {"tools": TOOLS}
        elif method == "tools/call":
            return await self._call_tool(params, authenticate)
        elif method == "resources/list":
            return {"resources": RESOURCES}
        elif method == "resources/read":
            return await self._read_resource(params, authenticate)
        raise JsonRpcError(JSONRPC_METHOD_NOT_FOUND, f"Method not found: {method}")

    @staticmethod
    def server_info() -> dict:
        return {
            "protocolVersion": settings.mcp_protocol_version,
            "capabilities": {"tools": {}, "resources": {}},
            "serverInfo": {
                "name": settings.mcp_server_name,
                "version": settings.app_version,
            },
        }

    async def _call_tool(self, params: dict, authenticate: Authenticate) -> dict:
        name = params.get("name")
        args = params.get("arguments") or {}
        if not isinstance(args, dict):
            raise JsonRpcError(JSONRPC_INVALID_PARAMS, "Tool arguments must be an object")

        if name not in {tool["name"] for tool in TOOLS}:
            raise JsonRpcError(JSONRPC_METHOD_NOT_FOUND, f"Unknown tool: {name}")

        api_key = await authenticate()

        if name == "store_memory":
            record = await self.service.store_memory(
                api_key.id, args.get("content"), args.get("metadata"),
            )
            return _text_result(
                f"✓ Memory stored successfully\nID: {record.id}\nContent: {record.content}"
            )

        if name == "search_memory":
            results = await self.service.search_memories(
                api_key.id, args.get("query"), _coerce_limit(args.get("limit")),
            )
            lines = "\n".join(
                f"{i}. [Similarity: {r.similarity * 100:.1f}%]\n{r.memory.content}\n"
                for i, r in enumerate(results, start=1)
            )
            return _text_result(f"Found {len(results)} relevant memories:\n\n{lines}")

        if name == "list_memories":
            records = await self.service.list_memories(
                api_key.id, _coerce_limit(args.get("limit")),
            )
            lines = "\n".join(
                f"{i}. [{r.created_at.date().isoformat()}] {r.content[:100]}..."
                for i, r in enumerate(records, start=1)
            )
            return _text_result(f"Recent memories ({len(records)}):\n\n{lines}")

        # delete_memory
        memory_id = await self.service.delete_memory(api_key.id, args.get("memoryId"))
        return _text_result(f"✓ Memory {memory_id} deleted successfully")

    async def _read_resource(self, params: dict, authenticate: Authenticate) -> dict:
        uri = params.get("uri")
        if uri not in RESOURCE_LIMITS:
            raise InvalidArgument(f"Unknown resource: {uri}")

        api_key = await authenticate()
        records = await self.service.list_memories(api_key.id, RESOURCE_LIMITS[uri])
        return {
            "contents": [
                {
                    "uri": uri,
                    "mimeType": "application/json",
                    "text": json.dumps([_memory_json(r) for r in records], indent=2),
                }
            ]
        }
