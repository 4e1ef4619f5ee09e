"""Tests for check_rate_limit in runtime.py.

Without Redis the limiter falls back to a per-process token bucket.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tessera.service.runtime import Runtime, check_rate_limit
from tessera.storage.redis_cache import RedisCache


class TestCheckRateLimit:
    @pytest.fixture
    def local_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def redis_runtime(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, local_runtime):
        assert await check_rate_limit(local_runtime, "login:a", 0, 60) is True
        assert await check_rate_limit(local_runtime, "login:a", -1, 60) is True

    async def test_local_bucket_blocks_after_limit(self, local_runtime):
        results = [await check_rate_limit(local_runtime, "login:a", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_keys_are_independent(self, local_runtime):
        for _ in range(2):
            await check_rate_limit(local_runtime, "login:a", 2, 60)
        assert await check_rate_limit(local_runtime, "login:a", 2, 60) is False
        assert await check_rate_limit(local_runtime, "login:b", 2, 60) is True

    async def test_return_remaining(self, local_runtime):
        allowed, remaining, reset = await check_rate_limit(
            local_runtime, "login:a", 5, 60, return_remaining=True
        )
        assert allowed is True
        assert remaining == 4
        assert reset == 0

    async def test_invalid_window_logs_warning(self, local_runtime):
        with patch("tessera.service.runtime.logger") as mock_logger:
            assert await check_rate_limit(local_runtime, "login:a", 10, 0)
            mock_logger.warning.assert_called_once()
            assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"

    async def test_redis_is_used_when_configured(self, redis_runtime):
        assert await check_rate_limit(redis_runtime, "login:a", 10, 60) is True
        redis_runtime.cache.check_rate_limit.assert_awaited_once_with(
            "login:a", 10, 60, return_remaining=False, cost=1
        )


def test_redis_keys_never_contain_the_subject():
    key = RedisCache.normalize_rate_key("login:alice@example.com", scope="login")
    assert key.startswith("rate:login:")
    assert "alice" not in key
    assert key == RedisCache.normalize_rate_key("login:alice@example.com", scope="login")
