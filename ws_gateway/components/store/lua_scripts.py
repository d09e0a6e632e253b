"""
Redis Lua scripts for multi-step counter updates.

A script runs atomically on Redis, so a counter and its expiry are written in
the same round-trip and a key can never be left behind without a TTL.
"""

from __future__ import annotations

# =============================================================================
# Windowed counter
# =============================================================================

# KEYS[1] = counter key
# ARGV[1] = window length in seconds
# Returns: {count, ttl_remaining}
#
# A counter that somehow lost its TTL gets one again on the next increment.
INCR_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])

local count = redis.call('INCR', key)
if count == 1 then
    redis.call('EXPIRE', key, window)
end

local ttl = redis.call('TTL', key)
if ttl == -1 then
    redis.call('EXPIRE', key, window)
    ttl = window
end

return {count, ttl}
"""
