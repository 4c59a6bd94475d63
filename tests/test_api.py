# =============================================================================
# API Tests — FastAPI routes through TestClient
# =============================================================================
#
# Builds a fresh app per test with create_app() and swaps the database-bound
# dependencies for fakes via app.dependency_overrides. The lifespan is not
# entered (no `with TestClient(...)`), so no database is touched.
#
# Test groups:
#   1. Memory routes (auth, scopes, error shape, rate limiting, usage logging)
#   2. Key management routes (session auth, masking, purge on delete)
#   3. Dashboard auth routes (cookies)
#   4. MCP endpoints (JSON-RPC over HTTP, SSE)
# =============================================================================

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import chromadb
import pytest
from fastapi.testclient import TestClient

from app.api.deps import (
    get_credential_store,
    get_current_api_key,
    get_limiter,
    get_memory_service,
    get_required_session,
)
from app.main import create_app
from app.services.credentials import CredentialStore
from app.services.authenticator import MISSING_KEY_MESSAGE
from app.services.memory_service import MemoryService
from app.services.memory_store import ChromaMemoryStore
from app.services.rate_limiter import InMemoryRateLimiter


@dataclass
class FakeApiKey:
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = "test-key"
    key_suffix: str = "abcd1234"
    scopes: list[str] = field(default_factory=lambda: ["read", "write"])
    rate_limit: int = 100
    usage_count: int = 0
    is_active: bool = True
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class FakeEmbedder:
    async def embed_document(self, text: str) -> list[float]:
        return self._vector(text)

    async def embed_query(self, text: str) -> list[float]:
        return self._vector(text)

    @staticmethod
    def _vector(text: str) -> list[float]:
        if "rust" in text.lower() or "language" in text.lower():
            return [1.0, 0.0, 0.0]
        return [0.0, 1.0, 0.0]


class FakeUsageRecorder:
    def __init__(self):
        self.records: list[dict] = []

    async def record(self, **kwargs) -> None:
        self.records.append(kwargs)


_collection_counter = 0


def _memory_service() -> MemoryService:
    global _collection_counter
    _collection_counter += 1
    store = ChromaMemoryStore(
        client=chromadb.Client(),
        collection_name=f"test_api_{_collection_counter}",
        dimensions=3,
    )
    return MemoryService(store, FakeEmbedder())


def _fake_store(api_key=None) -> MagicMock:
    store = MagicMock()
    store.find_api_key_by_value = AsyncMock(return_value=api_key)
    store.resolve_session = AsyncMock(return_value=None)
    return store


@pytest.fixture
def app():
    application = create_app()
    application.state.usage_recorder = FakeUsageRecorder()
    service = _memory_service()
    application.dependency_overrides[get_memory_service] = lambda: service
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


def _authenticate_as(app, api_key: FakeApiKey) -> None:
    """Skip key lookup: every request authenticates as `api_key`."""
    from fastapi import Request

    async def _current_key(request: Request):
        request.state.api_key_id = api_key.id
        return api_key

    app.dependency_overrides[get_current_api_key] = _current_key


# ---------------------------------------------------------------------------
# 1. Memory routes
# ---------------------------------------------------------------------------


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestMemoryRoutes:
    def test_missing_key_is_401_error_shape(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store()

        response = client.get("/list-memories")

        assert response.status_code == 401
        assert response.json() == {"error": MISSING_KEY_MESSAGE}
        assert app.state.usage_recorder.records == []

    def test_store_then_retrieve(self, app, client):
        _authenticate_as(app, FakeApiKey())

        stored = client.post(
            "/store-memory",
            json={"content": "User prefers Rust", "metadata": {"tag": "lang"}},
        )
        assert stored.status_code == 200
        memory = stored.json()["memory"]
        assert memory["content"] == "User prefers Rust"
        assert memory["metadata"] == {"tag": "lang"}
        assert "embedding" not in memory

        client.post("/store-memory", json={"content": "Lunch was soup"})

        found = client.post("/retrieve-memories", json={"query": "favourite language?"})
        body = found.json()
        assert body["count"] == 1
        assert body["memories"][0]["content"] == "User prefers Rust"
        assert body["memories"][0]["similarity"] > 0.5

    def test_blank_content_is_400(self, app, client):
        _authenticate_as(app, FakeApiKey())
        response = client.post("/store-memory", json={"content": "   "})
        assert response.status_code == 400
        assert response.json() == {"error": "Content is required"}

    def test_malformed_body_is_400(self, app, client):
        _authenticate_as(app, FakeApiKey())
        response = client.post("/retrieve-memories", json={"query": "x", "limit": "many"})
        assert response.status_code == 400
        assert "limit" in response.json()["error"]

    def test_read_only_key_cannot_store(self, app, client):
        _authenticate_as(app, FakeApiKey(scopes=["read"]))
        response = client.post("/store-memory", json={"content": "hello"})
        assert response.status_code == 403
        assert response.json() == {"error": "API key does not have 'write' scope"}

    def test_list_and_delete_both_forms(self, app, client):
        _authenticate_as(app, FakeApiKey())
        first = client.post("/store-memory", json={"content": "one"}).json()["memory"]["id"]
        second = client.post("/store-memory", json={"content": "two"}).json()["memory"]["id"]

        deleted = client.post("/delete-memory", json={"memoryId": first})
        assert deleted.json() == {"success": True, "message": f"Memory {first} deleted successfully"}

        deleted = client.delete("/delete-memory", params={"memoryId": second})
        assert deleted.status_code == 200

        listed = client.get("/list-memories").json()
        assert listed["count"] == 0

    def test_delete_malformed_id_is_400(self, app, client):
        _authenticate_as(app, FakeApiKey())
        response = client.delete("/delete-memory", params={"memoryId": "not-a-uuid"})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid memory ID: not-a-uuid"}

    def test_rate_limit_returns_429_and_logs_usage(self, app, client):
        api_key = FakeApiKey(rate_limit=1)
        limiter = InMemoryRateLimiter()
        app.dependency_overrides[get_credential_store] = lambda: _fake_store(api_key)
        app.dependency_overrides[get_limiter] = lambda: limiter

        headers = {"X-API-Key": "sk_mem_test"}
        assert client.get("/list-memories", headers=headers).status_code == 200

        limited = client.get("/list-memories", headers=headers)
        assert limited.status_code == 429
        assert limited.json() == {"error": "Rate limit exceeded. Maximum 1 requests per hour"}
        assert int(limited.headers["Retry-After"]) > 0

        records = app.state.usage_recorder.records
        assert [r["status_code"] for r in records] == [200, 429]
        assert all(r["api_key_id"] == api_key.id for r in records)
        assert records[0]["endpoint"] == "/list-memories"
        assert records[0]["method"] == "GET"


# ---------------------------------------------------------------------------
# 2. Key management routes
# ---------------------------------------------------------------------------


class TestKeyRoutes:
    def _login(self, app, store) -> uuid.UUID:
        user_id = uuid.uuid4()
        app.dependency_overrides[get_required_session] = lambda: SimpleNamespace(user_id=user_id)
        app.dependency_overrides[get_credential_store] = lambda: store
        return user_id

    def test_requires_session(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store()
        response = client.post("/generate-api-key", json={"name": "laptop"})
        assert response.status_code == 401
        assert response.json() == {"error": "Authentication required"}

    def test_generate_returns_raw_key_once(self, app, client):
        store = _fake_store()
        user_id = self._login(app, store)
        created = FakeApiKey(user_id=user_id, name="laptop", rate_limit=500)
        store.create_api_key = AsyncMock(return_value=(created, "sk_mem_" + "f" * 64))

        response = client.post("/generate-api-key", json={"name": "laptop", "rateLimit": 500})

        body = response.json()
        assert response.status_code == 200
        assert body["apiKey"] == "sk_mem_" + "f" * 64
        assert body["rateLimit"] == 500
        assert body["userId"] == str(user_id)
        store.create_api_key.assert_awaited_once_with(
            user_id=user_id, name="laptop", expires_in_days=None, rate_limit=500, scopes=None,
        )

    @pytest.mark.parametrize("days", [1e9, 0, -3])
    def test_out_of_range_expiry_is_rejected(self, app, client, days):
        store = _fake_store()
        self._login(app, store)
        store.create_api_key = AsyncMock()

        response = client.post("/generate-api-key", json={"name": "laptop", "expiresInDays": days})

        assert response.status_code == 400
        assert "expiresInDays" in response.json()["error"]
        store.create_api_key.assert_not_awaited()

    def test_list_is_masked(self, app, client):
        store = _fake_store()
        self._login(app, store)
        store.list_api_keys = AsyncMock(return_value=[FakeApiKey(key_suffix="1a2b3c4d")])

        body = client.get("/manage-api-keys", params={"action": "list"}).json()

        assert body["count"] == 1
        assert body["keys"][0]["key"] == "****1a2b3c4d"
        assert "sk_mem_" not in json.dumps(body)

    def test_stats_requires_key_id(self, app, client):
        self._login(app, _fake_store())
        response = client.get("/manage-api-keys", params={"action": "stats"})
        assert response.status_code == 400

    def test_rotate(self, app, client):
        store = _fake_store()
        self._login(app, store)
        new_key = FakeApiKey(name="laptop (Rotated)")
        store.rotate_api_key = AsyncMock(return_value=(new_key, "sk_mem_new"))

        response = client.post(
            "/manage-api-keys", json={"action": "rotate", "keyId": str(uuid.uuid4())},
        )

        body = response.json()
        assert body["newKey"]["key"] == "sk_mem_new"
        assert body["newKey"]["name"] == "laptop (Rotated)"

    def test_delete_purges_non_cascading_store(self, app, client):
        store = _fake_store()
        user_id = self._login(app, store)
        store.delete_api_key = AsyncMock()
        memory_store = MagicMock(cascades_with_api_key=False)
        memory_store.purge = AsyncMock(return_value=3)
        key_id = uuid.uuid4()

        with patch("app.api.keys.get_memory_store", return_value=memory_store):
            response = client.delete("/manage-api-keys", params={"keyId": str(key_id)})

        assert response.status_code == 200
        store.delete_api_key.assert_awaited_once_with(key_id, user_id)
        memory_store.purge.assert_awaited_once_with(key_id)


# ---------------------------------------------------------------------------
# 3. Dashboard auth routes
# ---------------------------------------------------------------------------


class TestAuthRoutes:
    def test_signup_sets_session_cookie(self, app, client):
        store = _fake_store()
        user = SimpleNamespace(id=uuid.uuid4(), email="a@b.c", created_at=datetime.now(UTC))
        store.create_user = AsyncMock(return_value=user)
        store.create_session = AsyncMock(return_value=SimpleNamespace(token="tok123"))
        app.dependency_overrides[get_credential_store] = lambda: store

        response = client.post("/auth/signup", json={"email": "a@b.c", "password": "pw"})

        assert response.status_code == 200
        assert response.json()["user"]["email"] == "a@b.c"
        cookie = response.headers["set-cookie"]
        assert "session=tok123" in cookie
        assert "HttpOnly" in cookie

    def test_signup_with_service_account_email_is_rejected(self, app, client):
        session = AsyncMock()
        session.add = MagicMock()
        app.dependency_overrides[get_credential_store] = lambda: CredentialStore(session)

        response = client.post(
            "/auth/signup", json={"email": "mcp-auto@example.com", "password": "pw"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Email address is reserved"}
        session.add.assert_not_called()

    def test_me_without_session(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store()
        assert client.get("/auth/me").json() == {
            "authenticated": False, "user": None, "expiresAt": None,
        }


# ---------------------------------------------------------------------------
# 4. MCP endpoints
# ---------------------------------------------------------------------------


class TestMcpEndpoints:
    def test_initialize_needs_no_key(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store()
        response = client.post(
            "/mcp-server", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"},
        )
        assert response.status_code == 200
        assert response.json()["result"]["serverInfo"]["name"] == "memory-api"

    def test_notification_is_202(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store()
        response = client.post(
            "/mcp-server", json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        )
        assert response.status_code == 202
        assert response.content == b""

    def test_tool_call_without_key_is_jsonrpc_error(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store()
        response = client.post("/mcp-server", json={
            "jsonrpc": "2.0", "id": 2, "method": "tools/call",
            "params": {"name": "list_memories", "arguments": {}},
        })
        assert response.status_code == 200
        assert response.json()["error"] == {"code": -32000, "message": MISSING_KEY_MESSAGE}

    def test_key_from_query_parameter(self, app, client):
        api_key = FakeApiKey()
        store = _fake_store(api_key)
        app.dependency_overrides[get_credential_store] = lambda: store
        app.dependency_overrides[get_limiter] = lambda: InMemoryRateLimiter()

        response = client.post(
            "/mcp-server",
            params={"api_key": "sk_mem_query"},
            json={
                "jsonrpc": "2.0", "id": 3, "method": "tools/call",
                "params": {"name": "store_memory", "arguments": {"content": "User prefers Rust"}},
            },
        )

        text = response.json()["result"]["content"][0]["text"]
        assert text.startswith("✓ Memory stored successfully")
        store.find_api_key_by_value.assert_awaited_once_with("sk_mem_query")
        assert app.state.usage_recorder.records[0]["api_key_id"] == api_key.id

    def test_parse_error(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store()
        response = client.post(
            "/mcp-server", content=b"{oops", headers={"Content-Type": "application/json"},
        )
        assert response.json()["error"]["code"] == -32700

    def test_stream_announces_server(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store(FakeApiKey())
        app.dependency_overrides[get_limiter] = lambda: InMemoryRateLimiter()

        response = client.get("/mcp-stream", headers={"X-API-Key": "sk_mem_x"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        event = json.loads(response.text.strip().removeprefix("data: "))
        assert event["method"] == "server/info"
        assert event["params"]["name"] == "memory-api"

    def test_stream_rejects_bad_key(self, app, client):
        app.dependency_overrides[get_credential_store] = lambda: _fake_store(None)
        response = client.get("/mcp-stream", headers={"X-API-Key": "sk_mem_bad"})
        assert response.status_code == 401
        assert response.json() == {"error": "Invalid or inactive API key"}
