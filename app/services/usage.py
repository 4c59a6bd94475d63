# =============================================================================
# Usage Recorder — Per-Key Request Accounting
# =============================================================================
#
# Appends one api_key_usage row per authenticated request and bumps the
# key's usage_count / last_used_at. Runs after the response has been sent,
# on its own session; a failure is logged and never reaches the client.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.engine import async_session_factory
from app.db.models import ApiKey, ApiKeyUsage

logger = logging.getLogger(__name__)


class UsageRecorder:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    ):
        self._session_factory = session_factory

    async def record(
        self,
        api_key_id: uuid.UUID,
        endpoint: str,
        method: str,
        status_code: int,
    ) -> None:
        now = datetime.now(UTC)
        try:
            async with self._session_factory() as session:
                session.add(ApiKeyUsage(
                    api_key_id=api_key_id,
                    endpoint=endpoint[:200],
                    method=method,
                    status_code=status_code,
                    timestamp=now,
                ))
                await session.execute(
                    update(ApiKey)
                    .where(ApiKey.id == api_key_id)
                    .values(
                        usage_count=ApiKey.usage_count + 1,
                        last_used_at=now,
                    )
                )
                await session.commit()
        except Exception as e:
            logger.warning(
                "Failed to record usage for api_key_id=%s: %s", api_key_id, e,
            )
