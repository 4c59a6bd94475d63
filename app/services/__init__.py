# =============================================================================
# Services Package — Business Logic
# =============================================================================
# Contains the core business logic, separated from API handlers:
#   - auth.py: key / session token / password primitives
#   - credentials.py: users, sessions and API keys in PostgreSQL
#   - authenticator.py: key lookup, rate-limit and scope checks
#   - rate_limiter.py: fixed-window limiter (in-memory or Redis)
#   - embedder.py: mode-aware embeddings via an OpenAI-compatible API
#   - memory_store.py: pluggable memory store (pgvector, Chroma)
#   - memory_service.py: store / search / list / delete
#   - mcp_dispatcher.py: MCP JSON-RPC method routing
#   - service_account.py: shared key for keyless MCP access (demo mode)
#   - usage.py: per-key usage accounting
# =============================================================================
