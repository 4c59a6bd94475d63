# =============================================================================
# API Key Management — Dashboard Endpoints
# =============================================================================
#
# Session-authenticated (cookie) endpoints for a user's own keys:
#
#   POST   /generate-api-key                      mint a key (raw key shown once)
#   GET    /manage-api-keys?action=list           masked listing
#   GET    /manage-api-keys?action=stats&keyId=   usage statistics
#   POST   /manage-api-keys {action: "rotate"}    new secret, old key deactivated
#   DELETE /manage-api-keys?keyId=                hard delete with memories
#
# Listings never contain a full key. A user asking about someone else's
# key gets the same 404 as for a key that does not exist.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from typing import Literal

from fastapi import APIRouter, Depends, Query

from app.api.deps import get_credential_store, get_required_session
from app.db.models import ApiKey, Session
from app.errors import InvalidArgument
from app.models.requests import GenerateApiKeyRequest, ManageApiKeyRequest
from app.models.responses import (
    ApiKeyCreatedResponse,
    ApiKeyListResponse,
    ApiKeyRotatedResponse,
    ApiKeyStats,
    ApiKeyStatsResponse,
    ApiKeySummary,
    MessageResponse,
    RotatedKey,
)
from app.services.auth import mask_api_key
from app.services.credentials import CredentialStore
from app.services.memory_store import get_memory_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["API Keys"])


def _parse_key_id(value: str | None) -> uuid.UUID:
    if not value:
        raise InvalidArgument("Key ID is required")
    try:
        return uuid.UUID(value)
    except ValueError:
        raise InvalidArgument(f"Invalid key ID: {value}") from None


def _to_summary(key: ApiKey) -> ApiKeySummary:
    """Convert an ApiKey ORM model to a masked listing entry."""
    return ApiKeySummary(
        id=key.id,
        name=key.name,
        key=mask_api_key(key.key_suffix),
        is_active=key.is_active,
        created_at=key.created_at,
        last_used_at=key.last_used_at,
        expires_at=key.expires_at,
        rate_limit=key.rate_limit,
        usage_count=key.usage_count,
        scopes=list(key.scopes or []),
    )


# ---------------------------------------------------------------------------
# POST /generate-api-key
# ---------------------------------------------------------------------------


@router.post(
    "/generate-api-key",
    response_model=ApiKeyCreatedResponse,
    summary="Create a new API key",
    description=(
        "Generate a new API key for the logged-in user. The raw key is only "
        "returned in this response — store it securely."
    ),
)
async def generate_api_key(
    request: GenerateApiKeyRequest,
    login_session: Session = Depends(get_required_session),
    store: CredentialStore = Depends(get_credential_store),
) -> ApiKeyCreatedResponse:
    api_key, raw_key = await store.create_api_key(
        user_id=login_session.user_id,
        name=request.name,
        expires_in_days=request.expires_in_days,
        rate_limit=request.rate_limit,
        scopes=request.scopes,
    )

    return ApiKeyCreatedResponse(
        api_key=raw_key,
        id=api_key.id,
        name=api_key.name,
        user_id=api_key.user_id,
        expires_at=api_key.expires_at,
        rate_limit=api_key.rate_limit,
        scopes=list(api_key.scopes),
        created_at=api_key.created_at,
    )


# ---------------------------------------------------------------------------
# GET /manage-api-keys — list / stats
# ---------------------------------------------------------------------------


@router.get(
    "/manage-api-keys",
    response_model=ApiKeyListResponse | ApiKeyStatsResponse,
    summary="List keys or show one key's usage statistics",
)
async def manage_api_keys(
    action: Literal["list", "stats"] = Query(default="list"),
    key_id: str | None = Query(default=None, alias="keyId"),
    login_session: Session = Depends(get_required_session),
    store: CredentialStore = Depends(get_credential_store),
) -> ApiKeyListResponse | ApiKeyStatsResponse:
    if action == "stats":
        stats = await store.get_api_key_stats(_parse_key_id(key_id), login_session.user_id)
        return ApiKeyStatsResponse(
            stats=ApiKeyStats(
                total_requests=stats.total_requests,
                last_24h_requests=stats.last_24h_requests,
                error_rate=stats.error_rate,
                last_used=stats.last_used,
                is_active=stats.is_active,
                rate_limit=stats.rate_limit,
                expires_at=stats.expires_at,
            )
        )

    keys = await store.list_api_keys(login_session.user_id)
    return ApiKeyListResponse(
        count=len(keys),
        keys=[_to_summary(k) for k in keys],
    )


# ---------------------------------------------------------------------------
# POST /manage-api-keys — rotate
# ---------------------------------------------------------------------------


@router.post(
    "/manage-api-keys",
    response_model=ApiKeyRotatedResponse,
    summary="Rotate an API key",
)
async def rotate_api_key(
    request: ManageApiKeyRequest,
    login_session: Session = Depends(get_required_session),
    store: CredentialStore = Depends(get_credential_store),
) -> ApiKeyRotatedResponse:
    new_key, raw_key = await store.rotate_api_key(
        _parse_key_id(request.key_id), login_session.user_id,
    )
    return ApiKeyRotatedResponse(
        new_key=RotatedKey(
            id=new_key.id,
            key=raw_key,
            name=new_key.name,
            expires_at=new_key.expires_at,
            rate_limit=new_key.rate_limit,
            scopes=list(new_key.scopes),
        )
    )


# ---------------------------------------------------------------------------
# DELETE /manage-api-keys?keyId=
# ---------------------------------------------------------------------------


@router.delete(
    "/manage-api-keys",
    response_model=MessageResponse,
    summary="Delete an API key and all of its memories",
)
async def delete_api_key(
    key_id: str | None = Query(default=None, alias="keyId"),
    login_session: Session = Depends(get_required_session),
    store: CredentialStore = Depends(get_credential_store),
) -> MessageResponse:
    parsed = _parse_key_id(key_id)
    await store.delete_api_key(parsed, login_session.user_id)

    memory_store = get_memory_store()
    if not memory_store.cascades_with_api_key:
        removed = await memory_store.purge(parsed)
        logger.info("Purged %d memories of deleted API key %s", removed, parsed)

    return MessageResponse(message="API key deleted successfully")
