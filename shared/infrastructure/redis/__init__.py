"""
Redis connectivity: pool singleton and key namespace.
"""

from shared.infrastructure.redis import constants as keys
from shared.infrastructure.redis.pool import close_redis_pool, get_redis_pool

__all__ = ["keys", "get_redis_pool", "close_redis_pool"]
