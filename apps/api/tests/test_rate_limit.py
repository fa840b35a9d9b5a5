"""
Tests for the Redis fixed-window rate limiter.
"""
from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from core.config import settings
from core.rate_limit import RateLimitMiddleware


def _app():
    app = FastAPI()
    app.add_middleware(
        RateLimitMiddleware,
        default_limit=5,
        window=60,
        endpoint_limits={"/v1/insights": 2},
    )

    @app.post("/v1/insights")
    def insights():
        return {"ok": True}

    @app.post("/v1/nudges")
    def nudges():
        return {"ok": True}

    @app.get("/ping")
    def ping():
        return {"pong": True}

    return app


@pytest.fixture
def enabled():
    with patch.object(settings, "RATE_LIMIT_ENABLED", True):
        yield


@pytest.fixture
def redis_backend(fake_redis):
    with patch("core.rate_limit.get_redis_client", return_value=fake_redis):
        yield fake_redis


class TestRateLimit:
    def test_insight_endpoint_has_tighter_limit(self, enabled, redis_backend):
        client = TestClient(_app())
        codes = [client.post("/v1/insights").status_code for _ in range(3)]
        assert codes == [200, 200, 429]

    def test_blocked_response_headers(self, enabled, redis_backend):
        client = TestClient(_app())
        for _ in range(2):
            client.post("/v1/insights")
        response = client.post("/v1/insights")
        assert response.json()["detail"] == "Rate limit exceeded"
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in response.headers

    def test_default_limit_for_other_paths(self, enabled, redis_backend):
        client = TestClient(_app())
        response = client.post("/v1/nudges")
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_exempt_paths(self, enabled, redis_backend):
        client = TestClient(_app())
        for _ in range(10):
            assert client.get("/ping").status_code == 200

    def test_fails_open_without_redis(self, enabled):
        with patch("core.rate_limit.get_redis_client", return_value=None):
            client = TestClient(_app())
            codes = {client.post("/v1/insights").status_code for _ in range(5)}
        assert codes == {200}

    def test_fails_open_on_redis_error(self, enabled):
        broken = MagicMock()
        broken.get.side_effect = RedisConnectionError("down")
        with patch("core.rate_limit.get_redis_client", return_value=broken):
            response = TestClient(_app()).post("/v1/insights")
        assert response.status_code == 200

    def test_disabled_skips_redis(self, redis_backend):
        client = TestClient(_app())
        for _ in range(5):
            assert client.post("/v1/insights").status_code == 200
        assert redis_backend._store == {}
