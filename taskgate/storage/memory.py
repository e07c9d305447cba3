from __future__ import annotations

import math
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from taskgate.logging import get_logger
from taskgate.storage.cache import (
    LockoutState,
    RefreshConsumeResult,
    decode_lockout,
    encode_lockout,
)
from taskgate.storage.errors import ConstraintViolation
from taskgate.storage.models import Role, User


class MemoryStore:
    """In-memory user directory for tests and single-process development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # resource id -> owning user id
        self.resource_owners: Dict[str, str] = {}
        # RLock allows nested acquisitions within the same thread
        self._data_lock = threading.RLock()

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = Role.USER.value,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                self.logger.warning("user_create_conflict", email=email)
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                name=name,
                role=role,
            )
            self.users[user.id] = user
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return user

    def set_resource_owner(self, resource_id: str, owner_id: str) -> None:
        with self._data_lock:
            self.resource_owners[resource_id] = owner_id

    def get_resource_owner(self, resource_id: str) -> Optional[str]:
        with self._data_lock:
            owner = self.resource_owners.get(resource_id)
            if owner:
                return owner
            # A user record is owned by that user
            if resource_id in self.users:
                return resource_id
            return None


class MemoryCache:
    """Single-process cache with the same semantics as ``RedisCache``.

    ``clock`` returns epoch seconds and can be replaced in tests to move
    time forward without sleeping.
    """

    def __init__(
        self, *, prefix: str = "app", clock: Callable[[], float] = time.time
    ) -> None:
        self.prefix = prefix
        self.clock = clock
        # key -> (value, expires_at or None)
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.RLock()

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    def _live(self, full_key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(full_key)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self.clock():
            self._entries.pop(full_key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self.clock() + max(1, int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(self._key(key))
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._entries[self._key(key)] = (value, self._expiry(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                full_key = self._key(key)
                if self._live(full_key) is not None:
                    removed += 1
                self._entries.pop(full_key, None)
        return removed

    async def increment(
        self, key: str, by: int = 1, ttl_seconds: Optional[int] = None
    ) -> int:
        full_key = self._key(key)
        with self._lock:
            entry = self._live(full_key)
            if entry is None:
                value = by
                expires_at = self._expiry(ttl_seconds)
            else:
                value = int(entry[0]) + by
                expires_at = entry[1]
                if expires_at is None and ttl_seconds:
                    expires_at = self._expiry(ttl_seconds)
            self._entries[full_key] = (str(value), expires_at)
            return value

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(self._key(key)) is not None

    async def ttl(self, key: str) -> int:
        """Seconds left on ``key``; -2 when missing and -1 when it never expires."""
        with self._lock:
            entry = self._live(self._key(key))
            if entry is None:
                return -2
            if entry[1] is None:
                return -1
            return max(0, math.ceil(entry[1] - self.clock()))

    async def record_failed_login(
        self, key: str, *, max_attempts: int, lockout_seconds: int, now_ms: int
    ) -> LockoutState:
        full_key = self._key(key)
        with self._lock:
            entry = self._live(full_key)
            state = decode_lockout(entry[0] if entry else None) or LockoutState(0, 0)
            if state.locked_until_ms and now_ms >= state.locked_until_ms:
                state = LockoutState(0, 0)
            state.attempts += 1
            if state.attempts >= max_attempts and not state.locked_until_ms:
                state.locked_until_ms = now_ms + lockout_seconds * 1000
            self._entries[full_key] = (encode_lockout(state), self._expiry(lockout_seconds))
            return state

    async def consume_refresh_token(
        self, flag_key: str, hash_key: str, token_hash: str
    ) -> RefreshConsumeResult:
        flag_full, hash_full = self._key(flag_key), self._key(hash_key)
        with self._lock:
            if self._live(flag_full) is None:
                return RefreshConsumeResult.MISSING
            stored = self._live(hash_full)
            if stored is None or stored[0] != token_hash:
                return RefreshConsumeResult.MISMATCH
            self._entries.pop(flag_full, None)
            self._entries.pop(hash_full, None)
            return RefreshConsumeResult.CONSUMED

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
