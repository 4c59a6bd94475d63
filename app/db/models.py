# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐      ┌──────────────────────┐      ┌──────────────────────────┐
# │  users       │      │  api_keys            │      │  memories                │
# ├──────────────┤      ├──────────────────────┤      ├──────────────────────────┤
# │ id (PK)      │─1:N─▶│ id (PK)              │─1:N─▶│ id (PK)                  │
# │ email        │      │ user_id (FK)         │      │ api_key_id (FK)          │
# │ password_hash│      │ key_hash (sha256)    │      │ content (text)           │
# │ created_at   │      │ key_suffix           │      │ embedding (vector(1024)) │
# └──────────────┘      │ name, scopes         │      │ metadata_ (jsonb)        │
#        │              │ is_active            │      │ created_at, updated_at   │
#        │1:N           │ rate_limit           │      └──────────────────────────┘
#        ▼              │ usage_count          │
# ┌──────────────┐      │ expires_at           │      ┌──────────────────────────┐
# │  sessions    │      │ last_used_at         │─1:N─▶│  api_key_usage           │
# ├──────────────┤      └──────────────────────┘      ├──────────────────────────┤
# │ token        │                                    │ endpoint, method         │
# │ expires_at   │                                    │ status_code, timestamp   │
# └──────────────┘                                    └──────────────────────────┘
#
# Ownership: a memory belongs to exactly one API key and is never visible
# through any other key. Deleting a user removes their sessions and keys;
# deleting a key removes its memories and usage rows (ON DELETE CASCADE).
#
# Raw API keys are never stored. `key_hash` is the SHA-256 hex digest of the
# raw key; `key_suffix` keeps the last 8 characters for masked display.
# =============================================================================

import uuid
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from app.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class shared by every model."""

    pass


class User(Base):
    """A dashboard account. Owns sessions and API keys."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)

    # Argon2id encoded hash; carries its own salt and cost parameters
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    sessions: Mapped[list["Session"]] = relationship(
        "Session",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    api_keys: Mapped[list["ApiKey"]] = relationship(
        "ApiKey",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"


class Session(Base):
    """
    A dashboard login session.

    Expiry is lazy: rows past `expires_at` are treated as absent by lookups
    and are never purged by the service.
    """

    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    user: Mapped["User"] = relationship("User", back_populates="sessions")

    def __repr__(self) -> str:
        return f"<Session(id={self.id}, user_id={self.user_id})>"


class ApiKey(Base):
    """
    An API key for authenticating memory operations.

    A key is usable only while `is_active` is set and `expires_at` is either
    null or in the future. Rotation never reactivates a key.
    """

    __tablename__ = "api_keys"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Human-readable label (e.g., "Default Key", "laptop")
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    # SHA-256 hex digest of the full key; the plaintext is never stored
    key_hash: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True,
    )

    # Last 8 chars of the key, shown as "****xxxxxxxx"
    key_suffix: Mapped[str] = mapped_column(String(8), nullable=False)

    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False,
    )

    # Requests allowed per one-hour window
    rate_limit: Mapped[int] = mapped_column(
        Integer, default=settings.default_rate_limit, nullable=False,
    )

    # Monotonic request counter, bumped by the usage recorder
    usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Capability tags: "read", "write" or "*"
    scopes: Mapped[list] = mapped_column(
        JSONB, nullable=False, default=lambda: list(settings.default_api_key_scopes),
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    user: Mapped["User"] = relationship("User", back_populates="api_keys")

    def __repr__(self) -> str:
        return (
            f"<ApiKey(id={self.id}, name='{self.name}', "
            f"suffix='{self.key_suffix}', active={self.is_active})>"
        )


class Memory(Base):
    """
    A stored note with its embedding.

    Write-once: memories are created and deleted, never updated.
    """

    __tablename__ = "memories"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    api_key_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # ---------------------------------------------------------------------------
    # Vector Embedding
    # ---------------------------------------------------------------------------
    # Document-mode embedding of `content`. Search embeds the query in
    # query mode and ranks rows by 1 - cosine_distance.
    # ---------------------------------------------------------------------------
    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions),
        nullable=False,
    )

    # Named `metadata_` (with underscore) to avoid collision with
    # SQLAlchemy's built-in `.metadata` attribute on declarative base.
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONB,
        nullable=True,
        default=dict,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Memory(id={self.id}, api_key_id={self.api_key_id})>"


class ApiKeyUsage(Base):
    """Append-only log of requests made with an API key."""

    __tablename__ = "api_key_usage"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    api_key_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("api_keys.id", ondelete="CASCADE"),
        nullable=False,
    )
    endpoint: Mapped[str] = mapped_column(String(200), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# =============================================================================
# Database Indexes
# =============================================================================
#
# HNSW on memories.embedding with `vector_cosine_ops` so the `<=>` operator
# used by search can be served from the index.
# =============================================================================

memory_embedding_idx = Index(
    "idx_memory_embedding_hnsw",
    Memory.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

# Listing is always "newest first within one key"
memory_api_key_created_idx = Index(
    "idx_memory_api_key_created",
    Memory.api_key_id,
    Memory.created_at.desc(),
)

api_key_user_idx = Index(
    "idx_api_key_user",
    ApiKey.user_id,
)

session_user_idx = Index(
    "idx_session_user",
    Session.user_id,
)

api_key_usage_key_ts_idx = Index(
    "idx_api_key_usage_key_timestamp",
    ApiKeyUsage.api_key_id,
    ApiKeyUsage.timestamp.desc(),
)
