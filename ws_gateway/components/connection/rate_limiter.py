"""
Per-user action rate limiter.

Fixed-window counter kept in the shared store, so a user's budget is shared
by all of their connections on every gateway instance.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from shared.config.logging import audit_rate_limit_event, get_logger
from shared.infrastructure.redis.constants import rate_limit_key
from ws_gateway.components.core.exceptions import (
    RateLimitExceededError,
    StoreUnavailableError,
)

if TYPE_CHECKING:
    from ws_gateway.components.store.kvs import KVSClient

logger = get_logger(__name__)


class UserRateLimiter:
    """
    Counts client actions per user in `rate_limit:{user_id}`.

    The first action of a window creates the counter together with its
    expiry; the counter disappearing is what opens the next window.

    Usage:
        limiter = UserRateLimiter(kvs, max_actions=60, window_seconds=60)
        await limiter.check(identity.user_id, action="send_message")
    """

    def __init__(self, kvs: "KVSClient", max_actions: int, window_seconds: int):
        self._kvs = kvs
        self._max_actions = max_actions
        self._window_seconds = window_seconds

        self._total_allowed = 0
        self._total_rejected = 0
        self._store_failures = 0

    @property
    def max_actions(self) -> int:
        return self._max_actions

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    async def hit(self, user_id: str) -> int:
        """
        Count one action and return the count for the current window.

        Raises:
            StoreUnavailableError: If the store cannot be reached.
        """
        return await self._kvs.increment_in_window(
            rate_limit_key(user_id), self._window_seconds
        )

    async def check(self, user_id: str, action: str = "action") -> None:
        """
        Consume one unit of the user's budget.

        A store outage fails open: the action is allowed and the failure logged.

        Raises:
            RateLimitExceededError: If the budget for this window is spent.
        """
        try:
            count = await self.hit(user_id)
        except StoreUnavailableError:
            self._store_failures += 1
            logger.warning(
                "Rate limit check skipped, store unavailable",
                user_id=user_id,
                action=action,
            )
            return

        if count > self._max_actions:
            self._total_rejected += 1
            audit_rate_limit_event(
                action=action,
                user_id=user_id,
                limit=self._max_actions,
                window=self._window_seconds,
                count=count,
            )
            raise RateLimitExceededError(
                self._max_actions, self._window_seconds, user_id=user_id
            )

        self._total_allowed += 1

    def get_stats(self) -> dict[str, int]:
        return {
            "max_actions_per_window": self._max_actions,
            "window_seconds": self._window_seconds,
            "total_allowed": self._total_allowed,
            "total_rejected": self._total_rejected,
            "store_failures": self._store_failures,
        }
