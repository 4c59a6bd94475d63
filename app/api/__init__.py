# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Each module defines a FastAPI APIRouter for a specific feature:
#   - memories.py: store / retrieve / list / delete memories (X-API-Key)
#   - keys.py: API key generation, listing, stats, rotation, deletion
#   - auth.py: dashboard signup / login / me / logout (session cookie)
#   - mcp.py: MCP JSON-RPC endpoint and SSE stream
#   - deps.py: shared authentication and service dependencies
#   - usage.py: per-key usage logging middleware
# =============================================================================
