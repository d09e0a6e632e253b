"""
Redis constants and configuration.
Centralizes TTLs and key names shared by every gateway instance.
"""

# =============================================================================
# TTL (Time To Live) Constants (in seconds)
# =============================================================================

# Per-minute counters live long enough to be read for the previous minute
METRICS_MINUTE_TTL = 120
METRICS_HOUR_TTL = 7200


# =============================================================================
# Hashes and Sets
# =============================================================================

# hash: connection_id -> JSON mirror of the Connection record
SOCKET_CONNECTIONS = "socket_connections"

# hash: user_id -> JSON UserPresence
USER_PRESENCE = "user_presence"

# set: user ids with at least one open connection
ONLINE_USERS = "online_users"

# set: instance ids that have ever registered (liveness is the alive key)
GATEWAY_INSTANCES = "gateway:instances"


# =============================================================================
# Key Templates
# =============================================================================

PREFIX_ROOM_USERS_TEMPLATE = "room:{room_id}:users"
PREFIX_USER_ROOMS_TEMPLATE = "user:{user_id}:rooms"
PREFIX_TYPING_TEMPLATE = "typing:{room_id}:{user_id}"
PREFIX_INSTANCE_ALIVE_TEMPLATE = "instance:{instance_id}:alive"
PREFIX_RATE_LIMIT = "rate_limit:"

METRICS_CONNECTIONS_TOTAL = "metrics:connections:total"
METRICS_CONNECTIONS_PEAK = "metrics:connections:peak"
METRICS_CONNECTIONS_MINUTE_PREFIX = "metrics:connections:minute:"
METRICS_MESSAGES_TOTAL = "metrics:messages:total"
METRICS_MESSAGES_BYTES = "metrics:messages:bytes"
METRICS_MESSAGES_MINUTE_PREFIX = "metrics:messages:minute:"
METRICS_MESSAGES_HOUR_PREFIX = "metrics:messages:hour:"
METRICS_CHAT_MESSAGES_TEMPLATE = "metrics:chat:{room_id}:messages"
METRICS_ERRORS_PREFIX = "metrics:errors:"


def room_users_key(room_id: str) -> str:
    """Set of user ids joined to a room."""
    return PREFIX_ROOM_USERS_TEMPLATE.format(room_id=room_id)


def user_rooms_key(user_id: str) -> str:
    """Set of room ids a user is joined to."""
    return PREFIX_USER_ROOMS_TEMPLATE.format(user_id=user_id)


def typing_key(room_id: str, user_id: str) -> str:
    return PREFIX_TYPING_TEMPLATE.format(room_id=room_id, user_id=user_id)


def instance_alive_key(instance_id: str) -> str:
    return PREFIX_INSTANCE_ALIVE_TEMPLATE.format(instance_id=instance_id)


def rate_limit_key(user_id: str) -> str:
    return f"{PREFIX_RATE_LIMIT}{user_id}"


def chat_messages_key(room_id: str) -> str:
    return METRICS_CHAT_MESSAGES_TEMPLATE.format(room_id=room_id)
