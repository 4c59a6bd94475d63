# =============================================================================
# Memory API
# =============================================================================
# Stores free-text memories with vector embeddings, scoped per API key, and
# retrieves them by recency or semantic similarity. Exposed as a REST API
# and as a Model Context Protocol (JSON-RPC) server for AI assistants.
#
# Package structure:
#   app/
#   ├── api/          → FastAPI route handlers (memories, keys, auth, MCP)
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   └── services/     → Business logic (credentials, embeddings, memory
#                        store, rate limiting, MCP dispatch)
# =============================================================================
