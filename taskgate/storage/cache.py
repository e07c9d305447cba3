from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol


class RefreshConsumeResult(str, Enum):
    """Outcome of an atomic compare-and-delete on a refresh token record."""

    CONSUMED = "consumed"
    MISSING = "missing"
    MISMATCH = "mismatch"


@dataclass
class LockoutState:
    attempts: int
    locked_until_ms: int

    def is_locked(self, now_ms: int, max_attempts: int) -> bool:
        return self.attempts >= max_attempts and now_ms < self.locked_until_ms


class Cache(Protocol):
    """Atomic key-value store with per-key TTL.

    Implementations namespace every key under their prefix and raise
    ``CacheUnavailableError`` when the backend cannot answer.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def increment(
        self, key: str, by: int = 1, ttl_seconds: Optional[int] = None
    ) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def record_failed_login(
        self, key: str, *, max_attempts: int, lockout_seconds: int, now_ms: int
    ) -> LockoutState: ...

    async def consume_refresh_token(
        self, flag_key: str, hash_key: str, token_hash: str
    ) -> RefreshConsumeResult: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


def lockout_key(email: str) -> str:
    return f"lockout:{email}"


def session_key(user_id: str, session_id: str) -> str:
    return f"session:{user_id}:{session_id}"


def refresh_flag_key(user_id: str) -> str:
    return f"refresh_token:{user_id}"


def refresh_hash_key(user_id: str) -> str:
    return f"refresh_token_hash:{user_id}"


def blacklist_key(token: str) -> str:
    # Stored by digest so raw bearer tokens never sit in the cache
    return f"blacklist:{sha256_hex(token)}"


def permissions_key(user_id: str) -> str:
    return f"permissions:{user_id}"


def ownership_key(resource_id: str) -> str:
    return f"ownership:{resource_id}"


def endpoint_rate_key(user_id: str, method: str, path: str) -> str:
    return f"rate_limit:{user_id}:{method.upper()}:{path}"


def client_rate_key(fingerprint: str) -> str:
    return f"rate_limit:{sha256_hex(fingerprint)}"


def decode_lockout(raw: Optional[str]) -> Optional[LockoutState]:
    """Parse a stored ``{"attempts", "lockedUntil"}`` record."""
    if not raw:
        return None
    try:
        record = json.loads(raw)
        return LockoutState(
            attempts=int(record.get("attempts", 0)),
            locked_until_ms=int(record.get("lockedUntil", 0)),
        )
    except (ValueError, TypeError, AttributeError):
        return None


def encode_lockout(state: LockoutState) -> str:
    return json.dumps(
        {"attempts": state.attempts, "lockedUntil": state.locked_until_ms},
        separators=(",", ":"),
    )
