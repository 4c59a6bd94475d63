# =============================================================================
# Auth Service — Key, Token & Password Primitives
# =============================================================================
#
# Pure functions for credential material. No FastAPI or database
# dependency, so the credential store, the routes and the tests share them.
#
# API keys: `sk_mem_` + 64 hex chars (256 bits). They are stored as a
# SHA-256 hex digest, which is deterministic (needed for lookup) and safe
# for high-entropy secrets.
#
# Passwords: Argon2id via argon2-cffi. Low-entropy human secrets need a
# slow, salted, memory-hard hash; the encoded string carries its own salt
# and cost parameters so they can be raised without a migration.
# =============================================================================

from __future__ import annotations

import hashlib
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

from app.config import settings

_password_hasher = PasswordHasher()

MASK = "****"

# Marks the password hash of a service account (no interactive login)
UNUSABLE_PASSWORD_PREFIX = "!"


def generate_api_key() -> tuple[str, str, str]:
    """
    Generate a new API key.

    Returns:
        (raw_key, key_suffix, key_hash):
        - raw_key: Full key to return to the user (only visible once)
        - key_suffix: Last 8 chars for masked display and logs
        - key_hash: SHA-256 hex digest for storage in the database
    """
    raw_key = f"{settings.api_key_prefix}{secrets.token_hex(32)}"
    key_suffix = raw_key[-8:]
    key_hash = hash_api_key(raw_key)
    return raw_key, key_suffix, key_hash


def hash_api_key(raw_key: str) -> str:
    """Hash an API key using SHA-256. Returns 64-char hex digest."""
    return hashlib.sha256(raw_key.encode()).hexdigest()


def mask_api_key(key_suffix: str) -> str:
    return f"{MASK}{key_suffix}"


def generate_session_token() -> str:
    """256-bit URL-safe session token."""
    return secrets.token_urlsafe(32)


def hash_password(password: str) -> str:
    return _password_hasher.hash(password)


def verify_password(password_hash: str, password: str) -> bool:
    """
    Check a password against its Argon2 encoded hash.

    Returns False for a mismatch or a malformed stored hash; never raises
    for bad input.
    """
    try:
        return _password_hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def generate_unusable_password_hash() -> str:
    """
    Password hash for accounts that never log in.

    The "!" prefix is not a valid Argon2 encoding, so verify_password()
    always fails for it and is_password_usable() can recognise it.
    """
    return f"{UNUSABLE_PASSWORD_PREFIX}{secrets.token_urlsafe(32)}"


def is_password_usable(password_hash: str) -> bool:
    return not password_hash.startswith(UNUSABLE_PASSWORD_PREFIX)
