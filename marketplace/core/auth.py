"""
Caller identity for the HTTP surface.

Validates HS256 JWTs signed with JWT_SECRET and extracts the user id.
Falls back to the X-User-Id header (development, tests).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
import logging

import jwt

from marketplace.core.config import settings

logger = logging.getLogger("marketplace.auth")


def verify_jwt(token: str) -> Optional[str]:
    """
    Verify a bearer JWT and extract the user id.

    The id is read from the standard 'sub' claim, or 'userId' for tokens
    issued by the wallet login flow.

    Returns:
        user_id, or None when JWT_SECRET is not configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.JWT_SECRET:
        logger.debug("No JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub") or payload.get("userId")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development: caller user ID"),
) -> str:
    """
    Extract the current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header
    3. 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:].strip())
        if user_id:
            return user_id

    if x_user_id:
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )
