# =============================================================================
# Credential Store — Users, Sessions & API Keys
# =============================================================================
#
# All credential persistence goes through CredentialStore, which wraps one
# AsyncSession. Route handlers get a store bound to the per-request session
# (committed by get_async_session); background components use
# credential_store_scope(), which owns and commits its own session.
#
# Lookups that fail for "not yours" and "does not exist" raise the same
# NotFound, so one user cannot discover another user's key ids.
#
# Every statement runs through translate_db_errors, so storage failures leave
# the store as DatabaseError whichever transport called it.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.engine import async_session_factory, translate_db_errors
from app.db.models import ApiKey, ApiKeyUsage, Session, User
from app.errors import Conflict, InvalidArgument, NotFound, Unauthorized
from app.services.auth import (
    generate_api_key,
    generate_session_token,
    generate_unusable_password_hash,
    hash_api_key,
    hash_password,
    is_password_usable,
    verify_password,
)

logger = logging.getLogger(__name__)


@dataclass
class KeyUsageStats:
    total_requests: int
    last_24h_requests: int
    error_rate: str  # e.g. "12.50%"
    last_used: datetime | None
    is_active: bool
    rate_limit: int
    expires_at: datetime | None


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _execute(self, stmt, operation: str = "credential query"):
        with translate_db_errors(operation):
            return await self.session.execute(stmt)

    async def _get(self, model, ident, operation: str = "credential lookup"):
        with translate_db_errors(operation):
            return await self.session.get(model, ident)

    async def _flush(self, operation: str = "credential write") -> None:
        with translate_db_errors(operation):
            await self.session.flush()

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        return await self._get(User, user_id)

    async def get_user_by_email(self, email: str) -> User | None:
        stmt = select(User).where(User.email == _normalize_email(email))
        result = await self._execute(stmt)
        return result.scalar_one_or_none()

    async def create_user(self, email: str, password: str) -> User:
        """
        Register a dashboard account.

        Raises:
            Conflict: The email is already registered.
            InvalidArgument: The email belongs to the MCP service account.
        """
        email = _normalize_email(email)
        if email == _normalize_email(settings.mcp_service_account_email):
            raise InvalidArgument("Email address is reserved")
        if await self.get_user_by_email(email) is not None:
            raise Conflict("User already exists")

        user = User(
            id=uuid.uuid4(),
            email=email,
            password_hash=hash_password(password),
            created_at=datetime.now(UTC),
        )
        self.session.add(user)
        with translate_db_errors("create user"):
            try:
                await self.session.flush()
            except IntegrityError:
                # Lost a race with a concurrent signup for the same email
                raise Conflict("User already exists") from None

        logger.info("User created: id=%s", user.id)
        return user

    async def verify_password(self, email: str, password: str) -> User:
        """
        Check a login attempt.

        Unknown email and wrong password raise the same Unauthorized.
        """
        user = await self.get_user_by_email(email)
        if user is None or not verify_password(user.password_hash, password):
            raise Unauthorized("Invalid credentials")
        return user

    async def get_or_create_service_user(self, email: str) -> User:
        """
        Look up an account that never logs in interactively, creating it once.

        Raises:
            Conflict: A dashboard account (one with a real password) already
                uses the email. Its keys are never handed out.
        """
        user = await self.get_user_by_email(email)
        if user is not None:
            if is_password_usable(user.password_hash):
                logger.error(
                    "Service account email is held by an interactive account: id=%s",
                    user.id,
                )
                raise Conflict("Service account email is already registered")
            return user

        user = User(
            id=uuid.uuid4(),
            email=_normalize_email(email),
            password_hash=generate_unusable_password_hash(),
            created_at=datetime.now(UTC),
        )
        self.session.add(user)
        await self._flush("create service user")
        logger.info("Service account user created: id=%s", user.id)
        return user

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def create_session(self, user_id: uuid.UUID) -> Session:
        now = datetime.now(UTC)
        login_session = Session(
            id=uuid.uuid4(),
            user_id=user_id,
            token=generate_session_token(),
            created_at=now,
            expires_at=now + timedelta(seconds=settings.session_ttl_seconds),
        )
        self.session.add(login_session)
        await self._flush()
        return login_session

    async def resolve_session(self, token: str | None) -> Session | None:
        """Return the live session for `token`, or None if missing or expired."""
        if not token:
            return None

        stmt = select(Session).where(Session.token == token)
        result = await self._execute(stmt)
        login_session = result.scalar_one_or_none()

        if login_session is None:
            return None
        if login_session.expires_at <= datetime.now(UTC):
            return None
        return login_session

    async def delete_session(self, token: str | None) -> None:
        """Log out. Unknown tokens are ignored."""
        if not token:
            return
        await self._execute(delete(Session).where(Session.token == token))

    # -------------------------------------------------------------------------
    # API Keys
    # -------------------------------------------------------------------------

    async def create_api_key(
        self,
        user_id: uuid.UUID,
        name: str | None = None,
        expires_in_days: float | None = None,
        rate_limit: int | None = None,
        scopes: list[str] | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[ApiKey, str]:
        """
        Mint a new key for a user.

        Returns:
            (api_key, raw_key). The raw key is not recoverable afterwards.
        """
        now = datetime.now(UTC)
        if expires_in_days is not None:
            if expires_in_days <= 0:
                raise InvalidArgument("expiresInDays must be a positive number")
            try:
                expires_at = now + timedelta(days=expires_in_days)
            except OverflowError:
                raise InvalidArgument("expiresInDays is too large") from None
        if rate_limit is not None and rate_limit < 1:
            raise InvalidArgument("rateLimit must be a positive integer")

        raw_key, key_suffix, key_hash = generate_api_key()

        api_key = ApiKey(
            id=uuid.uuid4(),
            user_id=user_id,
            name=name or settings.default_api_key_name,
            key_hash=key_hash,
            key_suffix=key_suffix,
            is_active=True,
            rate_limit=rate_limit or settings.default_rate_limit,
            usage_count=0,
            scopes=list(scopes) if scopes is not None else list(settings.default_api_key_scopes),
            created_at=now,
            expires_at=expires_at,
        )
        self.session.add(api_key)
        await self._flush()

        logger.info(
            "API key created: id=%s, name='%s', suffix='%s'",
            api_key.id, api_key.name, api_key.key_suffix,
        )
        return api_key, raw_key

    async def find_api_key_by_value(self, raw_key: str) -> ApiKey | None:
        stmt = select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key))
        result = await self._execute(stmt)
        return result.scalar_one_or_none()

    async def get_api_key(self, key_id: uuid.UUID) -> ApiKey | None:
        return await self._get(ApiKey, key_id)

    async def find_active_key_by_name(
        self, user_id: uuid.UUID, name: str,
    ) -> ApiKey | None:
        stmt = (
            select(ApiKey)
            .where(
                ApiKey.user_id == user_id,
                ApiKey.name == name,
                ApiKey.is_active.is_(True),
            )
            .order_by(ApiKey.created_at.desc())
            .limit(1)
        )
        result = await self._execute(stmt)
        return result.scalar_one_or_none()

    async def list_api_keys(self, user_id: uuid.UUID) -> list[ApiKey]:
        stmt = (
            select(ApiKey)
            .where(ApiKey.user_id == user_id)
            .order_by(ApiKey.created_at.desc())
        )
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def _get_owned_key_or_404(
        self, key_id: uuid.UUID, user_id: uuid.UUID,
    ) -> ApiKey:
        stmt = select(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == user_id)
        result = await self._execute(stmt)
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise NotFound("API key not found")
        return api_key

    async def rotate_api_key(
        self, key_id: uuid.UUID, user_id: uuid.UUID,
    ) -> tuple[ApiKey, str]:
        """
        Replace a key with a fresh secret.

        The new key inherits expiry, rate limit and scopes; the old key is
        deactivated and stays deactivated.
        """
        old_key = await self._get_owned_key_or_404(key_id, user_id)

        new_key, raw_key = await self.create_api_key(
            user_id=user_id,
            name=f"{old_key.name} (Rotated)",
            rate_limit=old_key.rate_limit,
            scopes=list(old_key.scopes or []),
            expires_at=old_key.expires_at,
        )
        old_key.is_active = False
        await self._flush()

        logger.info("API key rotated: old_id=%s, new_id=%s", old_key.id, new_key.id)
        return new_key, raw_key

    async def delete_api_key(self, key_id: uuid.UUID, user_id: uuid.UUID) -> None:
        """Hard delete; memories and usage rows go with it (ON DELETE CASCADE)."""
        stmt = delete(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == user_id)
        result = await self._execute(stmt)
        if result.rowcount == 0:
            raise NotFound("API key not found")
        logger.info("API key deleted: id=%s", key_id)

    async def get_api_key_stats(
        self, key_id: uuid.UUID, user_id: uuid.UUID,
    ) -> KeyUsageStats:
        api_key = await self._get_owned_key_or_404(key_id, user_id)
        since = datetime.now(UTC) - timedelta(hours=24)

        stmt = select(
            func.count(ApiKeyUsage.id),
            func.count(ApiKeyUsage.id).filter(ApiKeyUsage.status_code >= 400),
        ).where(
            ApiKeyUsage.api_key_id == api_key.id,
            ApiKeyUsage.timestamp >= since,
        )
        result = await self._execute(stmt)
        recent, errors = result.one()
        recent = recent or 0
        errors = errors or 0

        error_rate = (errors / recent * 100) if recent else 0.0

        return KeyUsageStats(
            total_requests=api_key.usage_count,
            last_24h_requests=recent,
            error_rate=f"{error_rate:.2f}%",
            last_used=api_key.last_used_at,
            is_active=api_key.is_active,
            rate_limit=api_key.rate_limit,
            expires_at=api_key.expires_at,
        )


@asynccontextmanager
async def credential_store_scope() -> AsyncIterator[CredentialStore]:
    """
    A CredentialStore on its own session, committed on clean exit.

    For callers outside the request dependency lifecycle.
    """
    async with async_session_factory() as session:
        try:
            yield CredentialStore(session)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
