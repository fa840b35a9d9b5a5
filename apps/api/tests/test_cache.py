"""
Tests for the Redis client singleton: a failed connect is remembered so
callers do not pay the connect timeout again on every cache call.
"""
import time
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError

import core.cache as cache_module
# Bound at import, before the autouse fixture swaps the module attribute.
from core.cache import get_redis_client


@pytest.fixture
def fresh_singleton():
    with patch.object(cache_module, "_redis_client", None), patch.object(cache_module, "_last_failure", None):
        yield


class TestGetRedisClient:
    def test_failed_connect_is_not_retried_inside_backoff(self, fresh_singleton):
        with patch("core.cache.redis.from_url", side_effect=ConnectionError("down")) as from_url:
            assert get_redis_client() is None
            assert get_redis_client() is None
        assert from_url.call_count == 1

    def test_reconnects_after_backoff(self, fresh_singleton):
        with patch("core.cache.redis.from_url", side_effect=ConnectionError("down")):
            get_redis_client()

        cache_module._last_failure = time.monotonic() - cache_module.RECONNECT_BACKOFF_S - 1
        client = MagicMock()
        with patch("core.cache.redis.from_url", return_value=client) as from_url:
            assert get_redis_client() is client
            assert get_redis_client() is client
        assert from_url.call_count == 1
        assert cache_module._last_failure is None

    def test_failed_ping_leaves_no_client(self, fresh_singleton):
        client = MagicMock()
        client.ping.side_effect = ConnectionError("refused")
        with patch("core.cache.redis.from_url", return_value=client):
            assert get_redis_client() is None
        assert cache_module._redis_client is None
