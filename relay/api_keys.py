"""API keys for programmatic senders."""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from relay.db import Database, from_iso, to_iso, utc_now
from relay.models import ApiKey
from relay.ratelimit import RateLimiter

LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "ak_"
KEY_LENGTH = len(KEY_PREFIX) + 32


def hash_key(plain_key: str) -> str:
    return hashlib.sha256(plain_key.encode("utf-8")).hexdigest()


def requested_by(api_key: ApiKey) -> str:
    """Attribution recorded on messages sent with this key."""

    return f"apiKey:{api_key.id}"


class ApiKeyStore:
    """Repository over ``api_keys``. Only the SHA-256 hash of a key is stored."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def create_key(
        self,
        name: str,
        permissions: Iterable[str],
        rate_limit: int | None = None,
        expires_at: datetime | None = None,
    ) -> tuple[ApiKey, str]:
        """Create a key and return it with the plaintext secret, which is not kept."""

        plain_key = KEY_PREFIX + secrets.token_hex(16)
        key_id = uuid.uuid4().hex
        with self._db.connect() as conn:
            conn.execute(
                """
                INSERT INTO api_keys(id, name, key_hash, permissions_json, rate_limit, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    key_id,
                    name,
                    hash_key(plain_key),
                    json.dumps(sorted(set(permissions))),
                    rate_limit,
                    to_iso(expires_at) if expires_at else None,
                    to_iso(utc_now()),
                ),
            )
            row = _fetch(conn, key_id)
        LOGGER.info("Created API key %s (%s)", key_id, name)
        return _to_api_key(row), plain_key

    def verify(self, plain_key: str) -> ApiKey | None:
        """Return the active, unexpired key matching ``plain_key`` and record the use."""

        if not plain_key:
            return None
        now = utc_now()
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1", (hash_key(plain_key),)
            ).fetchone()
            if row is None:
                return None
            if row["expires_at"] and from_iso(row["expires_at"]) <= now:
                LOGGER.info("Rejected expired API key %s", row["id"])
                return None
            conn.execute(
                "UPDATE api_keys SET usage_count = usage_count + 1, last_used_at = ? WHERE id = ?",
                (to_iso(now), row["id"]),
            )
            row = _fetch(conn, row["id"])
        return _to_api_key(row)

    def get(self, key_id: str) -> ApiKey | None:
        with self._db.connect() as conn:
            row = _fetch(conn, key_id)
        return _to_api_key(row) if row else None

    def deactivate(self, key_id: str) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
        if cur.rowcount:
            LOGGER.info("Deactivated API key %s", key_id)
        return bool(cur.rowcount)

    def list_keys(self, active_only: bool = False) -> list[ApiKey]:
        query = "SELECT * FROM api_keys"
        if active_only:
            query += " WHERE is_active = 1"
        with self._db.connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at DESC").fetchall()
        keys = [_to_api_key(row) for row in rows]
        if active_only:
            now = utc_now()
            keys = [key for key in keys if key.expires_at is None or key.expires_at > now]
        return keys


def _fetch(conn: sqlite3.Connection, key_id: str) -> sqlite3.Row | None:
    return conn.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()


def _to_api_key(row: sqlite3.Row) -> ApiKey:
    return ApiKey(
        id=row["id"],
        name=row["name"],
        permissions=frozenset(json.loads(row["permissions_json"] or "[]")),
        is_active=bool(row["is_active"]),
        created_at=from_iso(row["created_at"]),
        rate_limit=row["rate_limit"],
        expires_at=from_iso(row["expires_at"]),
        usage_count=int(row["usage_count"]),
        last_used_at=from_iso(row["last_used_at"]),
    )


@dataclass(slots=True)
class AuthDecision:
    """Outcome of an API key check, with an error code when rejected."""

    api_key: ApiKey | None = None
    error_code: str | None = None
    message: str | None = None
    retry_after_seconds: float = 0.0

    @property
    def allowed(self) -> bool:
        return self.api_key is not None and self.error_code is None


class Authorizer:
    """Key format, validity, permission and per-key rate limit checks."""

    def __init__(self, store: ApiKeyStore, limiter: RateLimiter) -> None:
        self._store = store
        self._limiter = limiter

    def authorize(self, plain_key: str | None, permission: str | None = None) -> AuthDecision:
        if not plain_key:
            return AuthDecision(error_code="missing_api_key", message="API key is required.")
        if not plain_key.startswith(KEY_PREFIX) or len(plain_key) != KEY_LENGTH:
            return AuthDecision(error_code="invalid_api_key_format", message="Invalid API key format.")
        api_key = self._store.verify(plain_key)
        if api_key is None:
            LOGGER.warning("Invalid API key attempt: %s...", plain_key[:8])
            return AuthDecision(error_code="invalid_api_key", message="Invalid or expired API key.")
        if permission is not None and not api_key.has_permission(permission):
            return AuthDecision(
                error_code="insufficient_permissions",
                message=f"API key lacks the {permission} permission.",
            )
        decision = self._limiter.check(requested_by(api_key), api_key.rate_limit)
        if not decision.allowed:
            return AuthDecision(
                error_code="rate_limit_exceeded",
                message="Too many requests, please try again later.",
                retry_after_seconds=decision.retry_after_seconds,
            )
        return AuthDecision(api_key=api_key)
