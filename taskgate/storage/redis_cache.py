from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from taskgate.logging import get_logger
from taskgate.storage.cache import LockoutState, RefreshConsumeResult
from taskgate.storage.errors import CacheUnavailableError

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed cache for sessions, lockouts, refresh records and counters."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # Fixed-window counter: TTL is set only when the window opens. A key that
    # somehow lost its TTL is re-armed so it cannot pin a client forever.
    _INCREMENT_SCRIPT = """
local value = redis.call('INCRBY', KEYS[1], ARGV[1])
local ttl = tonumber(ARGV[2])
if ttl > 0 then
  if value == tonumber(ARGV[1]) or redis.call('TTL', KEYS[1]) == -1 then
    redis.call('EXPIRE', KEYS[1], ttl)
  end
end
return value
"""

    # Failed login bookkeeping in one step. An expired lock starts a fresh budget.
    _FAILED_LOGIN_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
local max_attempts = tonumber(ARGV[1])
local lockout_seconds = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local attempts = 0
local locked_until = 0
if raw then
  local ok, record = pcall(cjson.decode, raw)
  if ok and type(record) == 'table' then
    attempts = tonumber(record['attempts']) or 0
    locked_until = tonumber(record['lockedUntil']) or 0
  end
end
if locked_until > 0 and now >= locked_until then
  attempts = 0
  locked_until = 0
end
attempts = attempts + 1
if attempts >= max_attempts and locked_until == 0 then
  locked_until = now + lockout_seconds * 1000
end
redis.call('SET', KEYS[1], cjson.encode({attempts = attempts, lockedUntil = locked_until}), 'EX', lockout_seconds)
return {attempts, tostring(locked_until)}
"""

    # Compare-and-delete so a refresh token can be consumed exactly once
    _CONSUME_REFRESH_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return 'missing'
end
local stored = redis.call('GET', KEYS[2])
if (not stored) or stored ~= ARGV[1] then
  return 'mismatch'
end
redis.call('DEL', KEYS[1], KEYS[2])
return 'consumed'
"""

    def __init__(
        self,
        redis_url: str,
        *,
        prefix: str = "app",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._failed_login = self.client.register_script(self._FAILED_LOGIN_SCRIPT)
        self._consume_refresh = self.client.register_script(self._CONSUME_REFRESH_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.socket_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "cache_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CacheUnavailableError(operation, exc) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(self._key(key)))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ex = max(1, int(ttl_seconds)) if ttl_seconds is not None else None
        await self._call("set", self.client.set(self._key(key), value, ex=ex))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        removed = await self._call(
            "delete", self.client.delete(*(self._key(k) for k in keys))
        )
        return int(removed or 0)

    async def increment(
        self, key: str, by: int = 1, ttl_seconds: Optional[int] = None
    ) -> int:
        value = await self._call(
            "increment",
            self._increment(keys=[self._key(key)], args=[by, int(ttl_seconds or 0)]),
        )
        return int(value)

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(self._key(key))))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", self.client.ttl(self._key(key))))

    async def record_failed_login(
        self, key: str, *, max_attempts: int, lockout_seconds: int, now_ms: int
    ) -> LockoutState:
        attempts, locked_until = await self._call(
            "record_failed_login",
            self._failed_login(
                keys=[self._key(key)], args=[max_attempts, lockout_seconds, now_ms]
            ),
        )
        return LockoutState(attempts=int(attempts), locked_until_ms=int(float(locked_until)))

    async def consume_refresh_token(
        self, flag_key: str, hash_key: str, token_hash: str
    ) -> RefreshConsumeResult:
        outcome = await self._call(
            "consume_refresh_token",
            self._consume_refresh(
                keys=[self._key(flag_key), self._key(hash_key)], args=[token_hash]
            ),
        )
        return RefreshConsumeResult(outcome)

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping()))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()

