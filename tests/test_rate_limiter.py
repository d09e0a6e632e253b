"""
Tests for the per-user action rate limiter.

Tests verify:
- The action after the budget is rejected
- A new window opens once the counter expires
- Budgets are per user and shared by all of a user's connections
- A store outage fails open
"""

from unittest.mock import AsyncMock, patch

import pytest

from shared.infrastructure.redis.constants import rate_limit_key
from ws_gateway.components.connection.rate_limiter import UserRateLimiter
from ws_gateway.components.core.exceptions import (
    RateLimitExceededError,
    StoreUnavailableError,
)


@pytest.fixture
def limiter(kvs):
    return UserRateLimiter(kvs, max_actions=60, window_seconds=60)


class TestUserRateLimiter:
    """Fixed-window counting."""

    @pytest.mark.asyncio
    async def test_sixty_first_action_rejected(self, limiter):
        for _ in range(60):
            await limiter.check("u1", action="send_message")

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.check("u1", action="send_message")

        error = exc_info.value
        assert error.code == "rate_limited"
        assert (error.limit, error.window) == (60, 60)
        assert limiter.get_stats()["total_rejected"] == 1

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter, clock):
        for _ in range(60):
            await limiter.check("u1")
        with pytest.raises(RateLimitExceededError):
            await limiter.check("u1")

        clock.advance(61)

        await limiter.check("u1")
        assert await limiter.hit("u1") == 2

    @pytest.mark.asyncio
    async def test_budgets_are_per_user(self, limiter):
        for _ in range(60):
            await limiter.check("u1")
        await limiter.check("u2")

    @pytest.mark.asyncio
    async def test_shared_across_limiters(self, kvs):
        first = UserRateLimiter(kvs, max_actions=3, window_seconds=60)
        second = UserRateLimiter(kvs, max_actions=3, window_seconds=60)
        await first.check("u1")
        await second.check("u1")
        await first.check("u1")
        with pytest.raises(RateLimitExceededError):
            await second.check("u1")

    @pytest.mark.asyncio
    async def test_window_opens_even_if_expire_command_fails(self, kvs, fake_redis, clock):
        limiter = UserRateLimiter(kvs, max_actions=3, window_seconds=60)
        with patch.object(kvs, "expire", AsyncMock(side_effect=StoreUnavailableError())):
            for _ in range(3):
                await limiter.check("u1")
            with pytest.raises(RateLimitExceededError):
                await limiter.check("u1")

        assert fake_redis.has_ttl(rate_limit_key("u1"))
        clock.advance(3600)
        await limiter.check("u1")

    @pytest.mark.asyncio
    async def test_counter_without_ttl_is_repaired(self, kvs, fake_redis, clock):
        limiter = UserRateLimiter(kvs, max_actions=3, window_seconds=60)
        await fake_redis.incrby(rate_limit_key("u1"), 10)

        with pytest.raises(RateLimitExceededError):
            await limiter.check("u1")

        clock.advance(61)
        await limiter.check("u1")
        assert await limiter.hit("u1") == 2

    @pytest.mark.asyncio
    async def test_store_outage_fails_open(self, limiter, fake_redis):
        fake_redis.down = True
        for _ in range(100):
            await limiter.check("u1")
        stats = limiter.get_stats()
        assert stats["store_failures"] == 100
        assert stats["total_rejected"] == 0
