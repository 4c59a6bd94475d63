# =============================================================================
# Unit Tests — MCP JSON-RPC Dispatcher
# =============================================================================
#
# Drives McpDispatcher directly with parsed messages. Memory operations run
# on an in-process ChromaDB store with a keyword embedder; authentication is
# a plain async callable so tests can count calls or make it fail.
#
# Test groups:
#   1. Envelope handling (parse error, invalid request, notifications)
#   2. Discovery methods (initialize, tools/list, resources/list)
#   3. Tool calls and their text output
#   4. Resources
#   5. Error mapping
# =============================================================================

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from unittest.mock import AsyncMock, MagicMock

import chromadb
import pytest
from sqlalchemy.exc import OperationalError

from app.errors import Unauthorized
from app.services.authenticator import lookup_api_key
from app.services.credentials import CredentialStore
from app.services.mcp_dispatcher import McpDispatcher
from app.services.memory_service import MemoryService
from app.services.memory_store import ChromaMemoryStore


def _run(coro):
    return asyncio.run(coro)


@dataclass
class FakeApiKey:
    id: uuid.UUID = field(default_factory=uuid.uuid4)


class KeywordEmbedder:
    async def embed_document(self, text: str) -> list[float]:
        return self._vector(text)

    async def embed_query(self, text: str) -> list[float]:
        return self._vector(text)

    @staticmethod
    def _vector(text: str) -> list[float]:
        if "rust" in text.lower():
            return [1.0, 0.0, 0.0]
        return [0.0, 1.0, 0.0]


class CountingAuth:
    """Async authenticate callable that returns a fixed key."""

    def __init__(self, api_key=None, error: Exception | None = None):
        self.api_key = api_key or FakeApiKey()
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.api_key


_collection_counter = 0


def _make_dispatcher() -> McpDispatcher:
    global _collection_counter
    _collection_counter += 1
    store = ChromaMemoryStore(
        client=chromadb.Client(),
        collection_name=f"test_mcp_{_collection_counter}",
        dimensions=3,
    )
    return McpDispatcher(MemoryService(store, KeywordEmbedder()))


def _request(method: str, params: dict | None = None, request_id=1) -> dict:
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return message


def _call_tool(name: str, arguments: dict, request_id=1) -> dict:
    return _request("tools/call", {"name": name, "arguments": arguments}, request_id)


def _text(reply: dict) -> str:
    return reply["result"]["content"][0]["text"]


# ---------------------------------------------------------------------------
# 1. Envelope handling
# ---------------------------------------------------------------------------


class TestEnvelope:
    def test_malformed_json_is_parse_error(self):
        reply = _run(_make_dispatcher().handle_body(b"{not json", CountingAuth()))
        assert reply == {
            "jsonrpc": "2.0",
            "id": None,
            "error": {"code": -32700, "message": "Parse error"},
        }

    def test_missing_method_is_invalid_request(self):
        reply = _run(_make_dispatcher().handle({"jsonrpc": "2.0", "id": 7}, CountingAuth()))
        assert reply["id"] == 7
        assert reply["error"]["code"] == -32600

    def test_non_object_message_is_invalid_request(self):
        reply = _run(_make_dispatcher().handle([1, 2, 3], CountingAuth()))
        assert reply["error"]["code"] == -32600

    def test_notification_gets_no_reply(self):
        message = {"jsonrpc": "2.0", "method": "notifications/initialized"}
        assert _run(_make_dispatcher().handle(message, CountingAuth())) is None

    def test_unknown_method(self):
        reply = _run(_make_dispatcher().handle(_request("foo/bar"), CountingAuth()))
        assert reply["error"] == {"code": -32601, "message": "Method not found: foo/bar"}

    def test_request_id_is_echoed(self):
        reply = _run(_make_dispatcher().handle(_request("ping", request_id="abc"), CountingAuth()))
        assert reply == {"jsonrpc": "2.0", "id": "abc", "result": {}}


# ---------------------------------------------------------------------------
# 2. Discovery methods
# ---------------------------------------------------------------------------


class TestDiscovery:
    def test_initialize_does_not_authenticate(self):
        auth = CountingAuth()
        reply = _run(_make_dispatcher().handle(_request("initialize", {}), auth))

        result = reply["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert result["capabilities"] == {"tools": {}, "resources": {}}
        assert result["serverInfo"]["name"] == "memory-api"
        assert auth.calls == 0

    def test_tools_list_names(self):
        reply = _run(_make_dispatcher().handle(_request("tools/list"), CountingAuth()))
        names = [tool["name"] for tool in reply["result"]["tools"]]
        assert names == ["store_memory", "search_memory", "list_memories", "delete_memory"]

    def test_resources_list_uris(self):
        reply = _run(_make_dispatcher().handle(_request("resources/list"), CountingAuth()))
        uris = [r["uri"] for r in reply["result"]["resources"]]
        assert uris == ["memory://recent", "memory://all"]


# ---------------------------------------------------------------------------
# 3. Tool calls
# ---------------------------------------------------------------------------


class TestToolCalls:
    def test_store_memory_text(self):
        dispatcher = _make_dispatcher()
        auth = CountingAuth()

        reply = _run(dispatcher.handle(_call_tool("store_memory", {"content": "User prefers Rust"}), auth))

        text = _text(reply)
        assert text.startswith("✓ Memory stored successfully\nID: ")
        assert text.endswith("\nContent: User prefers Rust")
        assert auth.calls == 1

    def test_search_memory_text(self):
        dispatcher = _make_dispatcher()
        auth = CountingAuth()

        async def scenario():
            await dispatcher.handle(_call_tool("store_memory", {"content": "User prefers Rust"}), auth)
            await dispatcher.handle(_call_tool("store_memory", {"content": "Lunch was soup"}), auth)
            return await dispatcher.handle(
                _call_tool("search_memory", {"query": "rust?", "limit": 5.0}), auth,
            )

        text = _text(_run(scenario()))
        assert text == "Found 1 relevant memories:\n\n1. [Similarity: 100.0%]\nUser prefers Rust\n"

    def test_search_with_no_hits(self):
        dispatcher = _make_dispatcher()
        reply = _run(dispatcher.handle(_call_tool("search_memory", {"query": "anything"}), CountingAuth()))
        assert _text(reply) == "Found 0 relevant memories:\n\n"

    def test_list_memories_text(self):
        dispatcher = _make_dispatcher()
        auth = CountingAuth()

        async def scenario():
            await dispatcher.handle(_call_tool("store_memory", {"content": "x" * 150}), auth)
            return await dispatcher.handle(_call_tool("list_memories", {}), auth)

        text = _text(_run(scenario()))
        assert text.startswith("Recent memories (1):\n\n1. [")
        assert text.endswith("] " + "x" * 100 + "...")

    def test_delete_memory_text(self):
        dispatcher = _make_dispatcher()
        memory_id = str(uuid.uuid4())

        reply = _run(dispatcher.handle(_call_tool("delete_memory", {"memoryId": memory_id}), CountingAuth()))
        assert _text(reply) == f"✓ Memory {memory_id} deleted successfully"

    def test_unknown_tool(self):
        auth = CountingAuth()
        reply = _run(_make_dispatcher().handle(_call_tool("forget_everything", {}), auth))
        assert reply["error"] == {"code": -32601, "message": "Unknown tool: forget_everything"}
        assert auth.calls == 0


# ---------------------------------------------------------------------------
# 4. Resources
# ---------------------------------------------------------------------------


class TestResources:
    def test_read_recent_returns_json_array(self):
        dispatcher = _make_dispatcher()
        auth = CountingAuth()

        async def scenario():
            await dispatcher.handle(_call_tool("store_memory", {"content": "User prefers Rust"}), auth)
            return await dispatcher.handle(
                _request("resources/read", {"uri": "memory://recent"}), auth,
            )

        content = _run(scenario())["result"]["contents"][0]
        assert content["uri"] == "memory://recent"
        assert content["mimeType"] == "application/json"
        memories = json.loads(content["text"])
        assert [m["content"] for m in memories] == ["User prefers Rust"]
        assert "embedding" not in memories[0]

    def test_read_all_uses_large_limit(self):
        service = MagicMock()
        service.list_memories = AsyncMock(return_value=[])
        auth = CountingAuth()

        _run(McpDispatcher(service).handle(_request("resources/read", {"uri": "memory://all"}), auth))
        service.list_memories.assert_awaited_once_with(auth.api_key.id, 1000)

    def test_unknown_resource_is_server_error(self):
        reply = _run(_make_dispatcher().handle(
            _request("resources/read", {"uri": "memory://nope"}), CountingAuth(),
        ))
        assert reply["error"]["code"] == -32000


# ---------------------------------------------------------------------------
# 5. Error mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    def test_auth_failure_is_server_error(self):
        auth = CountingAuth(error=Unauthorized())
        reply = _run(_make_dispatcher().handle(_call_tool("list_memories", {}), auth))
        assert reply["error"] == {"code": -32000, "message": "Invalid or inactive API key"}

    def test_validation_failure_is_server_error(self):
        reply = _run(_make_dispatcher().handle(_call_tool("store_memory", {}), CountingAuth()))
        assert reply["error"] == {"code": -32000, "message": "Content is required"}

    @pytest.mark.parametrize("limit", ["ten", 2.5, True, False])
    def test_bad_limit_is_server_error(self, limit):
        reply = _run(_make_dispatcher().handle(
            _call_tool("list_memories", {"limit": limit}), CountingAuth(),
        ))
        assert reply["error"]["code"] == -32000

    def test_zero_limit_is_rejected_not_defaulted(self):
        reply = _run(_make_dispatcher().handle(
            _call_tool("list_memories", {"limit": 0}), CountingAuth(),
        ))
        assert reply["error"] == {"code": -32000, "message": "Limit must be between 1 and 1000"}

    def test_non_object_params_is_invalid_params(self):
        reply = _run(_make_dispatcher().handle(
            {"jsonrpc": "2.0", "id": 1, "method": "tools/call", "params": ["list_memories"]},
            CountingAuth(),
        ))
        assert reply["error"] == {"code": -32602, "message": "params must be an object"}

    def test_non_object_arguments_is_invalid_params(self):
        auth = CountingAuth()
        reply = _run(_make_dispatcher().handle(
            _request("tools/call", {"name": "list_memories", "arguments": "limit=5"}), auth,
        ))
        assert reply["error"] == {"code": -32602, "message": "Tool arguments must be an object"}
        assert auth.calls == 0

    def test_database_failure_during_auth_is_server_error(self):
        session = AsyncMock()
        session.execute.side_effect = OperationalError("SELECT", {}, Exception("down"))

        async def authenticate():
            return await lookup_api_key(CredentialStore(session), "sk_mem_unreachable")

        reply = _run(_make_dispatcher().handle(_call_tool("list_memories", {}), authenticate))
        assert reply["error"]["code"] == -32000
        assert reply["error"]["message"].startswith("Database operation failed")

    def test_unexpected_exception_is_internal_error(self):
        service = MagicMock()
        service.list_memories = AsyncMock(side_effect=RuntimeError("boom"))

        reply = _run(McpDispatcher(service).handle(_call_tool("list_memories", {}), CountingAuth()))
        assert reply["error"] == {"code": -32603, "message": "Internal error"}
