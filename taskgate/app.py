from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskgate.api.error_handling import register_exception_handlers
from taskgate.api.routes import router
from taskgate.config import get_settings
from taskgate.logging import get_logger, set_correlation_id
from taskgate.storage.errors import CacheUnavailableError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so a missing Redis fails the boot, not a request."""
    from taskgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except (CacheUnavailableError, OSError) as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # Local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


def create_app() -> FastAPI:
    application = FastAPI(title="TaskGate", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with one id and echo it as X-Request-ID."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @application.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if request.url.path.startswith("/v1/"):
            # Tokens and profiles must not land in shared caches
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(application)
    application.include_router(router)

    @application.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report cache and database reachability."""
        from taskgate.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        try:
            cache_ok = await asyncio.wait_for(
                runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except (CacheUnavailableError, asyncio.TimeoutError) as exc:
            logger.error("health_check_cache_failed", error=str(exc))
            cache_ok = False
        checks["cache"] = {
            "status": "healthy" if cache_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        }

        if hasattr(runtime.store, "_connect"):
            def _db_probe() -> None:
                with runtime.store._connect() as conn:
                    conn.execute("SELECT 1").fetchone()

            try:
                await asyncio.wait_for(
                    asyncio.to_thread(_db_probe), HEALTH_CHECK_TIMEOUT_SECONDS
                )
                db_ok = True
            except Exception as exc:
                logger.error("health_check_database_failed", error=str(exc))
                db_ok = False
            checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        else:
            db_ok = True
            checks["database"] = {"status": "healthy", "type": "memory"}

        return {
            "status": "healthy" if cache_ok and db_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return application


app = create_app()
