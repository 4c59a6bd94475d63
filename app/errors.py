# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Services raise these exceptions; the transports translate them:
#   - REST: an exception handler in app/main.py renders {"error": message}
#     with `http_status` (plus Retry-After for TooManyRequests).
#   - JSON-RPC: the MCP dispatcher renders {"code": jsonrpc_code, "message"}.
#
# Every domain error maps to JSON-RPC -32000 except Internal (-32603).
# =============================================================================

from http import HTTPStatus

JSONRPC_PARSE_ERROR = -32700
JSONRPC_INVALID_REQUEST = -32600
JSONRPC_METHOD_NOT_FOUND = -32601
JSONRPC_INVALID_PARAMS = -32602
JSONRPC_INTERNAL_ERROR = -32603
JSONRPC_SERVER_ERROR = -32000


class MemoryApiError(Exception):
    """Base class for errors that carry their own wire representation."""

    http_status: int = HTTPStatus.INTERNAL_SERVER_ERROR
    jsonrpc_code: int = JSONRPC_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def headers(self) -> dict[str, str]:
        """Extra HTTP headers to send with the error response."""
        return {}


class InvalidArgument(MemoryApiError):
    http_status = HTTPStatus.BAD_REQUEST
    default_message = "Invalid request"


class Unauthorized(MemoryApiError):
    http_status = HTTPStatus.UNAUTHORIZED
    default_message = "Invalid or inactive API key"


class Forbidden(MemoryApiError):
    http_status = HTTPStatus.FORBIDDEN
    default_message = "Insufficient permissions"


class NotFound(MemoryApiError):
    http_status = HTTPStatus.NOT_FOUND
    default_message = "Not found"


class Conflict(MemoryApiError):
    http_status = HTTPStatus.CONFLICT
    default_message = "Resource already exists"


class TooManyRequests(MemoryApiError):
    http_status = HTTPStatus.TOO_MANY_REQUESTS
    default_message = "Rate limit exceeded"

    def __init__(self, message: str | None = None, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after

    def headers(self) -> dict[str, str]:
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(self.retry_after)}


class EmbeddingError(MemoryApiError):
    """The embedding provider failed, timed out or returned a bad vector."""

    default_message = "Failed to generate embedding"


class DatabaseError(MemoryApiError):
    """A storage round trip failed or timed out."""

    default_message = "Database operation failed"


class Internal(MemoryApiError):
    jsonrpc_code = JSONRPC_INTERNAL_ERROR
