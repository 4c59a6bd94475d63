# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
# Embeddings are never part of a response, and stored API keys are only
# ever shown masked ("****" + last 8 characters).
# =============================================================================

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


# ---------------------------------------------------------------------------
# Memories
# ---------------------------------------------------------------------------


class MemoryResponse(BaseModel):
    """A stored memory. Built from MemoryRecord."""

    id: UUID
    content: str
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MemorySearchHit(MemoryResponse):
    similarity: float = Field(description="Cosine similarity, higher is closer")


class StoreMemoryResponse(BaseModel):
    success: bool = True
    memory: MemoryResponse


class RetrieveMemoriesResponse(BaseModel):
    success: bool = True
    query: str
    count: int
    memories: list[MemorySearchHit]


class ListMemoriesResponse(BaseModel):
    success: bool = True
    count: int
    memories: list[MemoryResponse]


class MessageResponse(BaseModel):
    success: bool = True
    message: str


# ---------------------------------------------------------------------------
# API Keys (camelCase on the wire)
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiKeyCreatedResponse(_CamelModel):
    """
    Response for POST /generate-api-key.

    `api_key` is the raw key. It is returned here once and never again.
    """

    success: bool = True
    api_key: str
    id: UUID
    name: str
    user_id: UUID
    expires_at: datetime | None
    rate_limit: int
    scopes: list[str]
    created_at: datetime
    message: str = "API key generated successfully. Store it securely; it will not be shown again."


class ApiKeySummary(_CamelModel):
    id: UUID
    name: str
    key: str = Field(description="Masked key, e.g. ****1a2b3c4d")
    is_active: bool
    created_at: datetime
    last_used_at: datetime | None
    expires_at: datetime | None
    rate_limit: int
    usage_count: int
    scopes: list[str]


class ApiKeyListResponse(_CamelModel):
    success: bool = True
    count: int
    keys: list[ApiKeySummary]


class ApiKeyStats(_CamelModel):
    total_requests: int
    last_24h_requests: int = Field(alias="last24hRequests")
    error_rate: str
    last_used: datetime | None
    is_active: bool
    rate_limit: int
    expires_at: datetime | None


class ApiKeyStatsResponse(_CamelModel):
    success: bool = True
    stats: ApiKeyStats


class RotatedKey(_CamelModel):
    id: UUID
    key: str = Field(description="The new raw key, shown once")
    name: str
    expires_at: datetime | None
    rate_limit: int
    scopes: list[str]


class ApiKeyRotatedResponse(_CamelModel):
    success: bool = True
    message: str = "API key rotated successfully"
    new_key: RotatedKey


# ---------------------------------------------------------------------------
# Dashboard auth
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    id: UUID
    email: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuthResultResponse(BaseModel):
    success: bool = True
    user: UserResponse | None = None


class MeResponse(_CamelModel):
    authenticated: bool
    user: UserResponse | None = None
    expires_at: datetime | None = None
