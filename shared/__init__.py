"""
Shared module for process-wide plumbing used by the WS Gateway.

STRUCTURE:
- shared.config: Configuration
  - settings.py: Environment config (pydantic-settings)
  - logging.py: Structured logging and security audit helpers

- shared.infrastructure: Store connectivity and log correlation
  - redis/pool.py: Async Redis pool singleton
  - redis/constants.py: Key namespace and TTLs
  - correlation.py: Connection-id context for log records

- shared.security: Authentication
  - auth.py: JWT verification for WebSocket clients

IMPORT EXAMPLES:
    from shared.config.settings import settings
    from shared.config.logging import get_logger
    from shared.infrastructure.redis import get_redis_pool, keys
    from shared.security.auth import verify_jwt
"""
