import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use")
# Integration tests drive many auth calls from one TestClient address
os.environ.setdefault("REQUEST_RATE_LIMIT_MAX_REQUESTS", "1000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from taskgate.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Settings built directly so unit tests ignore the process environment."""
    from taskgate.config import Settings

    return Settings(
        jwt_secret="unit-access-secret-0123456789abcdef-0123456789",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdef-012345678",
        test_mode=True,
        use_memory_store=True,
        use_memory_cache=True,
    )


@pytest.fixture
def store():
    from taskgate.storage.memory import MemoryStore

    return MemoryStore()


@pytest.fixture
def cache(clock):
    from taskgate.storage.memory import MemoryCache

    return MemoryCache(clock=clock)


@pytest.fixture
def tokens(settings, clock):
    from taskgate.service.tokens import TokenCodec

    return TokenCodec(settings, clock=clock)


@pytest.fixture
def permissions(cache, settings):
    from taskgate.service.permissions import PermissionResolver

    return PermissionResolver(cache, ttl_seconds=settings.permission_cache_ttl_seconds)


@pytest.fixture
def limiter(cache, clock):
    from taskgate.service.rate_limit import FixedWindowRateLimiter

    return FixedWindowRateLimiter(cache, clock=clock)


@pytest.fixture
def auth(store, cache, settings, tokens, permissions, clock):
    from taskgate.service.auth import AuthService

    return AuthService(
        store, cache, settings, tokens=tokens, permissions=permissions, clock=clock
    )


@pytest.fixture
def pipeline(store, cache, settings, tokens, permissions, limiter):
    from taskgate.service.authorization import AuthorizationPipeline

    return AuthorizationPipeline(
        store,
        cache,
        settings,
        tokens=tokens,
        permissions=permissions,
        limiter=limiter,
    )


@pytest.fixture
def fingerprint():
    from taskgate.service.fingerprint import ClientFingerprint

    return ClientFingerprint(user_agent="pytest-agent/1.0", ip="10.0.0.7")


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
