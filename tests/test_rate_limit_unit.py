"""Tests for the fixed-window limiter and the per-client request guard."""

import pytest

from taskgate.service.errors import RateLimitExceededError
from taskgate.service.fingerprint import ClientFingerprint
from taskgate.service.rate_limit import (
    ENDPOINT_RATE_LIMITS,
    RateLimitInfo,
    RequestRateGuard,
    endpoint_limit,
)


class TestFixedWindow:
    async def test_counts_within_window(self, limiter):
        infos = [await limiter.hit("rl:test", 3, 10) for _ in range(4)]
        assert [i.count for i in infos] == [1, 2, 3, 4]
        assert [i.allowed for i in infos] == [True, True, True, False]
        assert infos[0].remaining == 2
        assert infos[-1].remaining == 0

    async def test_later_hits_do_not_extend_window(self, limiter, clock):
        first = await limiter.hit("rl:window", 5, 10)
        clock.advance(4)
        second = await limiter.hit("rl:window", 5, 10)
        assert second.reset_at == pytest.approx(first.reset_at)

    async def test_new_window_after_expiry(self, limiter, clock):
        await limiter.hit("rl:expire", 1, 10)
        clock.advance(10)
        info = await limiter.hit("rl:expire", 1, 10)
        assert info.count == 1

    async def test_invalid_window_defaults_to_sixty_seconds(self, limiter, cache):
        info = await limiter.hit("rl:invalid", 1, 0)
        assert info.retry_after == 60
        assert await cache.ttl("rl:invalid") == 60


class TestRateLimitInfo:
    def test_headers_when_allowed(self):
        info = RateLimitInfo(limit=10, count=3, reset_at=0, retry_after=42)
        headers = info.headers()
        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "7"
        assert headers["X-RateLimit-Reset"] == "1970-01-01T00:00:00+00:00"
        assert "Retry-After" not in headers

    def test_headers_when_blocked(self):
        info = RateLimitInfo(limit=10, count=11, reset_at=0, retry_after=42)
        assert info.headers()["Retry-After"] == "42"
        assert info.remaining == 0


class TestEndpointTable:
    def test_known_route(self):
        assert endpoint_limit("patch", "/v1/admin/users/{user_id}/role", default=50) == 10

    def test_unknown_route_uses_default(self):
        assert endpoint_limit("GET", "/v1/unlisted", default=50) == 50

    def test_table_is_keyed_by_template(self):
        assert all(":" in key and key.split(":", 1)[1].startswith("/v1/") for key in ENDPOINT_RATE_LIMITS)


class TestRequestRateGuard:
    async def test_third_request_blocked(self, limiter):
        guard = RequestRateGuard(limiter, max_requests=2, window_ms=10_000)
        client = ClientFingerprint("curl/8.0", "192.0.2.1")

        await guard.check(client)
        second = await guard.check(client)
        assert second.remaining == 0

        with pytest.raises(RateLimitExceededError) as exc_info:
            await guard.check(client)
        err = exc_info.value
        assert err.detail["remaining"] == 0
        assert err.detail["limit"] == 2
        assert err.headers["Retry-After"] == "10"

    async def test_window_elapses(self, limiter, clock):
        guard = RequestRateGuard(limiter, max_requests=2, window_ms=10_000)
        client = ClientFingerprint("curl/8.0", "192.0.2.1")
        for _ in range(2):
            await guard.check(client)
        clock.advance(10)
        info = await guard.check(client)
        assert info.count == 1

    async def test_clients_counted_separately(self, limiter):
        guard = RequestRateGuard(limiter, max_requests=1, window_ms=10_000)
        await guard.check(ClientFingerprint("curl/8.0", "192.0.2.1"))
        await guard.check(ClientFingerprint("curl/8.0", "192.0.2.2"))
        await guard.check(ClientFingerprint("curl/8.0", "192.0.2.1"), user_id="u1")

    async def test_per_call_override(self, limiter):
        guard = RequestRateGuard(limiter, max_requests=100, window_ms=60_000)
        client = ClientFingerprint("curl/8.0", "192.0.2.9")
        await guard.check(client, max_requests=1, window_ms=1_500)
        with pytest.raises(RateLimitExceededError) as exc_info:
            await guard.check(client, max_requests=1, window_ms=1_500)
        assert exc_info.value.headers["Retry-After"] == "2"
