# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# FastAPI uses them for:
# 1. Request body validation (invalid bodies become 400 {"error": ...})
# 2. OpenAPI documentation generation (visible at /docs)
#
# Memory fields are optional at this layer on purpose: MemoryService owns
# the "required / non-blank" checks so REST and MCP report identical
# messages. Key-management bodies use the dashboard's camelCase names.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class StoreMemoryRequest(BaseModel):
    """
    Request body for POST /store-memory.

    Example:
        {"content": "User prefers Rust", "metadata": {"tags": ["prefs"]}}
    """

    content: str | None = Field(
        default=None,
        description="The text to remember",
        examples=["User prefers Rust for systems work"],
    )
    metadata: dict | None = Field(
        default=None,
        description="Optional free-form metadata (tags, category, etc.)",
    )


class RetrieveMemoriesRequest(BaseModel):
    """Request body for POST /retrieve-memories — semantic search."""

    query: str | None = Field(
        default=None,
        description="What to search for",
        examples=["what language does the user like?"],
    )
    limit: int | None = Field(
        default=None,
        description="Max results (default: 5)",
    )


class DeleteMemoryRequest(BaseModel):
    memory_id: str | None = Field(default=None, alias="memoryId")

    model_config = ConfigDict(populate_by_name=True)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateApiKeyRequest(_CamelModel):
    """
    Request body for POST /generate-api-key.

    Example:
        {"name": "laptop", "expiresInDays": 30, "rateLimit": 500}
    """

    name: str | None = Field(default=None, max_length=200)
    expires_in_days: float | None = Field(
        default=None,
        gt=0,
        le=36500,
        description="Key lifetime in days; omit for a non-expiring key",
    )
    rate_limit: int | None = Field(
        default=None,
        description="Requests per hour (default: 100)",
    )
    scopes: list[str] | None = Field(
        default=None,
        description="Capability tags: 'read', 'write' or '*'",
    )


class ManageApiKeyRequest(_CamelModel):
    """Request body for POST /manage-api-keys."""

    action: Literal["rotate"]
    key_id: str | None = None


class CredentialsRequest(BaseModel):
    """Request body for POST /auth/signup and POST /auth/login."""

    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1, max_length=1024)
