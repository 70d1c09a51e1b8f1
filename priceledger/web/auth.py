"""Session authentication for the priceledger admin API.

Uses environment variables for the administrator credentials and Redis-backed
session tokens (with an in-process fallback when Redis is unreachable).
For production, put an identity provider in front of this.
"""

from __future__ import annotations

import json
import os
import secrets
from datetime import datetime, timedelta

import bcrypt
import redis
import structlog
from fastapi import Cookie, HTTPException

from priceledger.utils.clock import utcnow

logger = structlog.get_logger(__name__)

SESSION_COOKIE = "session"
SESSION_EXPIRY_HOURS = 24
SESSION_EXPIRY_SECONDS = SESSION_EXPIRY_HOURS * 3600

# In-memory fallback for development when Redis is missing
_memory_sessions: dict[str, dict] = {}

# Hash of the configured password, computed once
_password_hash_cache: bytes | None = None


def get_redis_client() -> redis.Redis:
    """Get Redis client for session storage."""
    redis_url = os.environ.get("REDIS_URL", "redis://redis:6379/0")
    return redis.from_url(redis_url, decode_responses=True)


def auth_disabled() -> bool:
    return os.environ.get("PRICELEDGER_AUTH_DISABLED", "false").lower() == "true"


def _get_password_hash() -> bytes:
    global _password_hash_cache

    if _password_hash_cache is not None:
        return _password_hash_cache

    password = os.environ.get("PRICELEDGER_PASSWORD")
    if not password:
        # Development only; production deployments must set it
        password = "changeme"
        logger.warning("default_admin_password_in_use", hint="set PRICELEDGER_PASSWORD")

    _password_hash_cache = bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=12))
    return _password_hash_cache


def get_credentials() -> tuple[str, bytes]:
    """Return (username, bcrypt password hash) of the configured administrator."""
    return os.environ.get("PRICELEDGER_USERNAME", "admin"), _get_password_hash()


def verify_credentials(username: str, password: str) -> bool:
    """Check a username/password pair against the configured administrator."""
    valid_username, valid_password_hash = get_credentials()

    # bcrypt runs even when the username is wrong
    password_matches = bcrypt.checkpw(password.encode(), valid_password_hash)
    return secrets.compare_digest(username.encode(), valid_username.encode()) and password_matches


def create_session(username: str, role: str = "admin") -> str:
    """Create a session and return its token."""
    session_token = secrets.token_urlsafe(32)
    now = utcnow()
    session_data = {
        "username": username,
        "role": role,
        "created_at": now.isoformat(),
        "expires_at": (now + timedelta(hours=SESSION_EXPIRY_HOURS)).isoformat(),
    }

    try:
        get_redis_client().setex(
            f"session:{session_token}", SESSION_EXPIRY_SECONDS, json.dumps(session_data)
        )
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
        logger.warning("redis_unavailable", fallback="memory_sessions")
        _memory_sessions[session_token] = session_data

    return session_token


def validate_session(session_token: str | None) -> dict | None:
    """Return the session data for a live token, or None."""
    if not session_token:
        return None

    try:
        redis_client = get_redis_client()
        raw = redis_client.get(f"session:{session_token}")
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
        session_data = _memory_sessions.get(session_token)
        if session_data and _expired(session_data):
            del _memory_sessions[session_token]
            return None
        return session_data

    if not raw:
        return None

    try:
        session_data = json.loads(raw)
        # Redis TTL should already have dropped it
        if _expired(session_data):
            redis_client.delete(f"session:{session_token}")
            return None
        return session_data
    except (json.JSONDecodeError, KeyError, ValueError):
        redis_client.delete(f"session:{session_token}")
        return None


def logout(session_token: str | None) -> None:
    """Invalidate a session token."""
    if not session_token:
        return
    try:
        get_redis_client().delete(f"session:{session_token}")
    except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError):
        _memory_sessions.pop(session_token, None)


def require_admin(session: str | None = Cookie(default=None)) -> str:
    """FastAPI dependency guarding write and audit endpoints.

    Returns:
        str: Username of the authenticated administrator (used as changed_by)

    Raises:
        HTTPException: 401 if not authenticated, 403 if not an administrator
    """
    if auth_disabled():
        return "default_admin"

    session_data = validate_session(session)
    if not session_data:
        raise HTTPException(status_code=401, detail="Authentication required")

    if session_data.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")

    return session_data["username"]


def _expired(session_data: dict) -> bool:
    expires_at = datetime.fromisoformat(session_data["expires_at"])
    return utcnow() > expires_at
