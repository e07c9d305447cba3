from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from taskgate.config import get_settings, reset_settings_cache
from taskgate.logging import get_logger
from taskgate.service.auth import AuthService
from taskgate.service.authorization import AuthorizationPipeline
from taskgate.service.permissions import PermissionResolver
from taskgate.service.rate_limit import FixedWindowRateLimiter, RequestRateGuard
from taskgate.service.tokens import TokenCodec
from taskgate.storage.memory import MemoryCache, MemoryStore
from taskgate.storage.postgres import PostgresStore
from taskgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._init_cache()

        self.tokens = TokenCodec(self.settings)
        self.permissions = PermissionResolver(
            self.cache, ttl_seconds=self.settings.permission_cache_ttl_seconds
        )
        self.limiter = FixedWindowRateLimiter(self.cache)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            permissions=self.permissions,
        )
        self.pipeline = AuthorizationPipeline(
            self.store,
            self.cache,
            self.settings,
            tokens=self.tokens,
            permissions=self.permissions,
            limiter=self.limiter,
        )
        self.request_guard = RequestRateGuard(
            self.limiter,
            max_requests=self.settings.request_rate_limit_max_requests,
            window_ms=self.settings.request_rate_limit_window_ms,
        )

        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__,
            store_type=type(self.store).__name__,
        )

    def _init_cache(self) -> Union[RedisCache, MemoryCache]:
        prefix = self.settings.cache_prefix
        if self.settings.use_memory_cache:
            return MemoryCache(prefix=prefix)

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    prefix=prefix,
                    socket_timeout=self.settings.cache_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_cache_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, lockouts, refresh records and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_CACHE_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; auth state is "
                "process-local and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(prefix=prefix)

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.pool.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
# Close tasks scheduled from inside a running loop; held until they finish
_pending_closes: set[asyncio.Task] = set()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            if loop is None:
                asyncio.run(runtime.cache.close())
            else:
                task = loop.create_task(runtime.cache.close())
                _pending_closes.add(task)
                task.add_done_callback(_pending_closes.discard)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
