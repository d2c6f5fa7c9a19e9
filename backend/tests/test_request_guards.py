"""
Tests for the rate limiter and request guards.
"""
import pytest
from fastapi import HTTPException
from starlette.requests import Request

from reviseflow.middleware.request_guards import (
    ai_rate_limiter,
    allowed_origins,
    content_length_ok,
    get_client_ip,
    get_origin,
    guard_ai_request,
    guard_webhook_request,
    has_sane_user_agent,
    is_allowed_browser_origin,
)
from reviseflow.utils.rate_limiter import SlidingWindowRateLimiter


BROWSER_UA = "Mozilla/5.0 (X11; Linux x86_64) ReviseFlowTest/1.0"


def make_request(headers: dict, client=("203.0.113.7", 50000)) -> Request:
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/ai/chat",
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in headers.items()],
        "client": client,
    }
    return Request(scope)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSlidingWindowRateLimiter:
    """Tests for SlidingWindowRateLimiter."""

    def test_allows_up_to_limit(self):
        limiter = SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=FakeClock())
        assert all(limiter.hit("ip").allowed for _ in range(3))

        decision = limiter.hit("ip")
        assert decision.allowed is False
        assert decision.retry_after_seconds == 60

    def test_window_slides(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=2, window_seconds=60, clock=clock)
        limiter.hit("ip")
        clock.now += 30
        limiter.hit("ip")

        clock.now += 20
        decision = limiter.hit("ip")
        assert decision.allowed is False
        assert decision.retry_after_seconds == 10

        clock.now += 11
        assert limiter.hit("ip").allowed is True

    def test_retry_after_at_least_one_second(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=clock)
        limiter.hit("ip")
        clock.now += 59.9
        assert limiter.hit("ip").retry_after_seconds == 1

    def test_keys_are_independent(self):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=FakeClock())
        assert limiter.hit("a").allowed is True
        assert limiter.hit("b").allowed is True
        assert limiter.hit("a").allowed is False

    def test_idle_keys_are_dropped(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=5, window_seconds=60, clock=clock)
        for n in range(100):
            limiter.hit(f"203.0.113.{n}")

        clock.now += 61
        limiter.hit("fresh")

        assert set(limiter._hits) == {"fresh"}

    def test_sweep_keeps_keys_inside_window(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(limit=5, window_seconds=60, clock=clock)
        limiter.hit("old")
        clock.now += 40
        limiter.hit("recent")

        clock.now += 20
        limiter.hit("new")

        assert set(limiter._hits) == {"recent", "new"}
        assert len(limiter._hits["recent"]) == 1

    def test_reset(self):
        limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=FakeClock())
        limiter.hit("ip")
        limiter.reset()
        assert limiter.hit("ip").allowed is True

    def test_invalid_configuration(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(limit=0, window_seconds=60)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(limit=1, window_seconds=0)


class TestRequestHelpers:
    """Tests for header inspection helpers."""

    def test_client_ip_prefers_forwarded_for(self):
        request = make_request({"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})
        assert get_client_ip(request) == "198.51.100.1"
        assert get_client_ip(make_request({})) == "203.0.113.7"

    def test_origin_falls_back_to_referer(self):
        assert get_origin(make_request({"Origin": "https://a.test"})) == "https://a.test"
        assert get_origin(make_request({"Referer": "https://b.test/study?x=1"})) == "https://b.test"
        assert get_origin(make_request({"Referer": "not a url"})) == ""
        assert get_origin(make_request({})) == ""

    def test_allowed_origins(self):
        request = make_request({"Host": "api.reviseflow.test"})
        allowed = allowed_origins(request, app_base_url="https://reviseflow.test/app")
        assert allowed == {"https://reviseflow.test", "https://api.reviseflow.test"}

    def test_localhost_allows_plain_http(self):
        request = make_request({"Host": "localhost:3000", "Origin": "http://localhost:3000"})
        assert is_allowed_browser_origin(request, app_base_url="") is True

    def test_forwarded_proto(self):
        request = make_request({
            "Host": "api.reviseflow.test",
            "X-Forwarded-Proto": "http",
            "Origin": "http://api.reviseflow.test",
        })
        assert is_allowed_browser_origin(request, app_base_url="") is True

    def test_foreign_or_missing_origin_rejected(self):
        request = make_request({"Host": "api.reviseflow.test", "Origin": "https://evil.test"})
        assert is_allowed_browser_origin(request, app_base_url="https://reviseflow.test") is False
        assert is_allowed_browser_origin(make_request({"Host": "api.reviseflow.test"})) is False

    def test_user_agent_bounds(self):
        assert has_sane_user_agent(make_request({"User-Agent": BROWSER_UA})) is True
        assert has_sane_user_agent(make_request({"User-Agent": "curl/1"})) is False
        assert has_sane_user_agent(make_request({"User-Agent": "x" * 513})) is False
        assert has_sane_user_agent(make_request({})) is False

    def test_content_length(self):
        assert content_length_ok(make_request({"Content-Length": "100"}), 100) is True
        assert content_length_ok(make_request({"Content-Length": "101"}), 100) is False
        assert content_length_ok(make_request({"Content-Length": "garbage"}), 100) is True
        assert content_length_ok(make_request({}), 100) is True


class TestGuards:
    """Tests for the guard dependencies."""

    def _browser_headers(self, **extra):
        headers = {
            "Host": "api.reviseflow.test",
            "Origin": "https://reviseflow.test",
            "User-Agent": BROWSER_UA,
        }
        headers.update(extra)
        return headers

    @pytest.mark.asyncio
    async def test_accepts_browser_request(self):
        await guard_ai_request(make_request(self._browser_headers()))

    @pytest.mark.asyncio
    async def test_payload_too_large(self):
        request = make_request(self._browser_headers(**{"Content-Length": str(10 ** 9)}))
        with pytest.raises(HTTPException) as exc_info:
            await guard_ai_request(request)
        assert exc_info.value.status_code == 413

    @pytest.mark.asyncio
    async def test_bad_user_agent(self):
        with pytest.raises(HTTPException) as exc_info:
            await guard_ai_request(make_request(self._browser_headers(**{"User-Agent": "bot"})))
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_bad_origin(self):
        with pytest.raises(HTTPException) as exc_info:
            await guard_ai_request(make_request(self._browser_headers(Origin="https://evil.test")))
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_rate_limited_with_retry_after(self, monkeypatch):
        monkeypatch.setattr(ai_rate_limiter, "limit", 2)
        request = make_request(self._browser_headers())
        await guard_ai_request(request)
        await guard_ai_request(request)

        with pytest.raises(HTTPException) as exc_info:
            await guard_ai_request(request)
        assert exc_info.value.status_code == 429
        assert int(exc_info.value.headers["Retry-After"]) >= 1

    @pytest.mark.asyncio
    async def test_webhook_guard_checks_size_only(self):
        await guard_webhook_request(make_request({"Content-Length": "512"}))
        with pytest.raises(HTTPException) as exc_info:
            await guard_webhook_request(make_request({"Content-Length": str(10 ** 8)}))
        assert exc_info.value.status_code == 413
