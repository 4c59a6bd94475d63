# =============================================================================
# Service-Account Key Resolver — MCP Demo Mode
# =============================================================================
#
# When MCP auto-provisioning is enabled, MCP requests without an API key act
# on one shared key owned by a service-account user. This resolver finds or
# creates that key.
#
# Concurrency: the first burst of keyless requests must not mint one key
# each. Provisioning runs under an asyncio.Lock (single flight) and the key
# id is cached; later requests only re-read the row to confirm it is still
# usable. If the cached key was deactivated or expired, the next request
# provisions a replacement under the lock.
#
# The lock is per process. Two worker processes starting cold may each
# create a key; both are valid and later lookups pick the newest.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.db.models import ApiKey
from app.services.authenticator import is_key_usable
from app.services.credentials import CredentialStore, credential_store_scope

logger = logging.getLogger(__name__)


class ServiceAccountKeyResolver:
    def __init__(
        self,
        scope: Callable[[], AbstractAsyncContextManager[CredentialStore]] = credential_store_scope,
    ):
        self._scope = scope
        self._lock = asyncio.Lock()
        self._key_id: uuid.UUID | None = None

    async def _cached_key(self, store: CredentialStore) -> ApiKey | None:
        if self._key_id is None:
            return None
        api_key = await store.get_api_key(self._key_id)
        if api_key is not None and is_key_usable(api_key):
            return api_key
        logger.info("Cached service-account key %s is no longer usable", self._key_id)
        self._key_id = None
        return None

    async def resolve(self) -> ApiKey:
        """Return the usable service-account key, provisioning it at most once."""
        async with self._scope() as store:
            api_key = await self._cached_key(store)
            if api_key is not None:
                return api_key

        async with self._lock:
            async with self._scope() as store:
                # Another request may have provisioned while we waited
                api_key = await self._cached_key(store)
                if api_key is not None:
                    return api_key

                api_key = await self._provision(store)
                self._key_id = api_key.id
                return api_key

    async def _provision(self, store: CredentialStore) -> ApiKey:
        user = await store.get_or_create_service_user(settings.mcp_service_account_email)

        existing = await store.find_active_key_by_name(
            user.id, settings.mcp_service_account_key_name,
        )
        if existing is not None and is_key_usable(existing):
            return existing

        api_key, _raw_key = await store.create_api_key(
            user_id=user.id,
            name=settings.mcp_service_account_key_name,
            rate_limit=settings.mcp_service_account_rate_limit,
            scopes=["read", "write"],
            expires_at=datetime.now(UTC)
            + timedelta(days=settings.mcp_service_account_key_ttl_days),
        )
        logger.warning(
            "Provisioned service-account API key id=%s for keyless MCP access",
            api_key.id,
        )
        return api_key
