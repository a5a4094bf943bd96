"""
Admin authentication for internal operations (entitlement creation after
payment verification, quota adjustments).

Uses the shared X-Admin-Key secret. Every admin action is attributed to a
stable actor id derived from the key hash so audit rows never carry the key.
"""
import hashlib
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from marketplace.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin:<hash>"
    actor_role: str = "admin"


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return an AdminActor if X-Admin-Key matches ADMIN_KEY, else None."""
    expected_key = settings.ADMIN_KEY
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or header_key != expected_key:
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require admin authentication.

    Raises:
        HTTPException 503: ADMIN_KEY not configured
        HTTPException 401: missing or wrong X-Admin-Key
    """
    actor = verify_admin_key(request)
    if actor:
        return actor

    if not settings.ADMIN_KEY:
        raise HTTPException(status_code=503, detail="Admin authentication not configured")

    raise HTTPException(status_code=401, detail="Unauthorized: invalid or missing admin credentials")
