# =============================================================================
# Authenticator — API Key Lookup, Rate Limit & Scope Checks
# =============================================================================
#
# Transport-agnostic checks shared by the REST dependencies and the MCP
# endpoint. Order for every authenticated request:
#
#   1. lookup_api_key()     — key exists, is active, has not expired
#   2. enforce_rate_limit() — one request counted against the key's window
#   3. require_scope()      — REST only: "read" / "write" / "*"
#
# Clients always see the same "Invalid or inactive API key" message for a
# missing, deactivated or expired key; the precise reason is only logged.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime

from app.db.models import ApiKey
from app.errors import Forbidden, TooManyRequests, Unauthorized
from app.services.credentials import CredentialStore
from app.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

MISSING_KEY_MESSAGE = (
    "API key is required. Provide it in the X-API-Key header."
)
INVALID_KEY_MESSAGE = "Invalid or inactive API key"

WILDCARD_SCOPE = "*"


def is_key_usable(api_key: ApiKey, now: datetime | None = None) -> bool:
    """Active and either non-expiring or not yet expired."""
    if not api_key.is_active:
        return False
    if api_key.expires_at is None:
        return True
    return api_key.expires_at > (now or datetime.now(UTC))


async def lookup_api_key(store: CredentialStore, raw_key: str | None) -> ApiKey:
    """
    Resolve a raw key to a usable ApiKey row.

    Raises:
        Unauthorized: Missing, unknown, inactive or expired key.
    """
    if not raw_key:
        raise Unauthorized(MISSING_KEY_MESSAGE)

    api_key = await store.find_api_key_by_value(raw_key)

    if api_key is None:
        logger.info("Rejected API key ****%s: unknown", raw_key[-8:])
        raise Unauthorized(INVALID_KEY_MESSAGE)

    if not api_key.is_active:
        logger.info("Rejected API key id=%s: deactivated", api_key.id)
        raise Unauthorized(INVALID_KEY_MESSAGE)

    if not is_key_usable(api_key):
        logger.info("Rejected API key id=%s: expired at %s", api_key.id, api_key.expires_at)
        raise Unauthorized(INVALID_KEY_MESSAGE)

    return api_key


async def enforce_rate_limit(limiter: RateLimiter, api_key: ApiKey) -> None:
    """
    Count this request against the key's window.

    Raises:
        TooManyRequests: The window is exhausted (carries Retry-After).
    """
    decision = await limiter.check_and_increment(api_key.id, api_key.rate_limit)
    if not decision.allowed:
        logger.info(
            "Rate limit exceeded for api_key_id=%s (limit=%d/hour)",
            api_key.id, api_key.rate_limit,
        )
        raise TooManyRequests(
            f"Rate limit exceeded. Maximum {api_key.rate_limit} requests per hour",
            retry_after=decision.retry_after,
        )


def has_scope(api_key: ApiKey, required_scope: str) -> bool:
    """An empty scope list grants nothing; "*" grants everything."""
    scopes = api_key.scopes or []
    return WILDCARD_SCOPE in scopes or required_scope in scopes


def require_scope(api_key: ApiKey, required_scope: str) -> None:
    if not has_scope(api_key, required_scope):
        raise Forbidden(f"API key does not have '{required_scope}' scope")
