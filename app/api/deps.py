# =============================================================================
# Auth Dependencies — FastAPI Dependency Injection
# =============================================================================
#
# Provides the dependencies that protect API endpoints and wire services:
#
# 1. get_current_api_key()  — X-API-Key lookup + rate limit
# 2. get_optional_session() — dashboard session cookie, if any
# 3. get_required_session() — dashboard session cookie, or 401
# 4. get_memory_service() / get_credential_store() — service wiring
#
# Scope checks stay in the handlers (require_scope(api_key, "write")) so
# each route states its own permission next to its logic.
#
# APIKeyHeader(auto_error=False) so a missing header reaches our own
# Unauthorized error (and its {"error": ...} shape) instead of FastAPI's.
# =============================================================================

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import Depends, Request
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.engine import get_async_session
from app.db.models import ApiKey, Session
from app.errors import Unauthorized
from app.services.authenticator import enforce_rate_limit, lookup_api_key
from app.services.credentials import CredentialStore
from app.services.embedder import get_embedding_client
from app.services.memory_service import MemoryService
from app.services.memory_store import get_memory_store
from app.services.rate_limiter import RateLimiter, get_rate_limiter
from app.services.service_account import ServiceAccountKeyResolver

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI docs (shows "Authorize" button in Swagger UI)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


async def get_credential_store(
    session: AsyncSession = Depends(get_async_session),
) -> CredentialStore:
    return CredentialStore(session)


def get_memory_service() -> MemoryService:
    return MemoryService(get_memory_store(), get_embedding_client())


def get_limiter() -> RateLimiter:
    return get_rate_limiter()


@lru_cache
def get_service_account_resolver() -> ServiceAccountKeyResolver:
    """One resolver per process so its single-flight lock is shared."""
    return ServiceAccountKeyResolver()


# ---------------------------------------------------------------------------
# API key
# ---------------------------------------------------------------------------


async def authenticate_api_key(
    request: Request,
    raw_key: str | None,
    store: CredentialStore,
    limiter: RateLimiter,
) -> ApiKey:
    """
    Look up the key, record it for usage accounting, then rate-limit it.

    The key id is put on request.state BEFORE the rate check so that
    rejected (429) requests are still logged against the key.
    """
    api_key = await lookup_api_key(store, raw_key)
    request.state.api_key_id = api_key.id
    await enforce_rate_limit(limiter, api_key)
    return api_key


async def get_current_api_key(
    request: Request,
    raw_key: str | None = Depends(api_key_header),
    store: CredentialStore = Depends(get_credential_store),
    limiter: RateLimiter = Depends(get_limiter),
) -> ApiKey:
    """
    FastAPI dependency that validates the X-API-Key header.

    Raises:
        Unauthorized: Missing, unknown, inactive or expired key (401).
        TooManyRequests: The key's hourly window is used up (429).
    """
    api_key = await authenticate_api_key(request, raw_key, store, limiter)

    if settings.require_session_for_memory_routes:
        login_session = await store.resolve_session(
            request.cookies.get(settings.session_cookie_name),
        )
        if login_session is None or login_session.user_id != api_key.user_id:
            logger.info("API key id=%s used without its owner's session", api_key.id)
            raise Unauthorized("Authentication required")

    return api_key


# ---------------------------------------------------------------------------
# Dashboard session
# ---------------------------------------------------------------------------


async def get_optional_session(
    request: Request,
    store: CredentialStore = Depends(get_credential_store),
) -> Session | None:
    return await store.resolve_session(
        request.cookies.get(settings.session_cookie_name),
    )


async def get_required_session(
    login_session: Session | None = Depends(get_optional_session),
) -> Session:
    if login_session is None:
        raise Unauthorized("Authentication required")
    return login_session
