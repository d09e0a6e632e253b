"""
Authentication utilities for the WS Gateway.

Tokens are issued by the auth service; this module only verifies them.
sign_jwt exists for local tooling and tests that need a valid token.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

import jwt
from fastapi import HTTPException, status

from shared.config.settings import JWT_SECRET, JWT_ISSUER, JWT_AUDIENCE
from shared.config.logging import get_logger

logger = get_logger(__name__)

# Claims a WebSocket identity cannot be built without
REQUIRED_CLAIMS = ("sub", "username")


# =============================================================================
# JWT Functions
# =============================================================================


def sign_jwt(
    payload: dict[str, Any],
    ttl_seconds: int = 15 * 60,
    token_type: str = "access",
) -> str:
    """
    Sign a JWT token with the given payload.

    Args:
        payload: Claims to include in the token (sub, username, email).
        ttl_seconds: Token lifetime in seconds.
        token_type: Type of token ("access" or "refresh").

    Returns:
        Signed JWT token string.
    """
    now = int(time.time())
    data = {
        **payload,
        "iss": JWT_ISSUER,
        "aud": JWT_AUDIENCE,
        "iat": now,
        "exp": now + ttl_seconds,
        "type": token_type,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(data, JWT_SECRET, algorithm="HS256")


def verify_jwt(token: str) -> dict[str, Any]:
    """
    Verify and decode a JWT token.

    Args:
        token: The JWT token string.

    Returns:
        Decoded token claims.

    Raises:
        HTTPException: If token is invalid, expired, a refresh token,
            or missing the identity claims.
    """
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=["HS256"],
            audience=JWT_AUDIENCE,
            issuer=JWT_ISSUER,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        # Log the actual error, return a generic message to the client
        logger.warning("JWT validation failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )

    for claim in REQUIRED_CLAIMS:
        value = payload.get(claim)
        if not isinstance(value, str) or not value:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token: missing {claim} claim",
            )

    if payload.get("type") == "refresh":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type. Expected access token.",
        )

    return payload


def extract_bearer_token(authorization: str | None) -> str | None:
    """
    Extract the token from an `Authorization: Bearer <token>` header value.

    Returns None when the header is absent or not a bearer credential.
    """
    if not authorization:
        return None
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()
