"""
Casa Agent Core - Security Module
Caller identity for the agent API.

Identity is established upstream (the mobile app's auth provider); requests
reach this service carrying the owner's id. The core only needs to know
*who* is calling so every read and write is scoped to that owner.

Authentication sources (priority order):
1. Authorization: Bearer <user_id>   (service-to-service calls)
2. X-User-Id header                  (gateway-injected)
3. casa_uid cookie                   (mobile web view)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer


logger = logging.getLogger("casa.security")

security_bearer = HTTPBearer(auto_error=False)

MAX_USER_ID_LENGTH = 64


@dataclass
class OwnerContext:
    """The authenticated property owner for this request."""
    user_id: str
    source: str = "header"


def _clean_user_id(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    user_id = raw.strip()
    if not user_id or len(user_id) > MAX_USER_ID_LENGTH:
        return None
    return user_id


async def get_current_user(
    request: Request,
    casa_uid: Optional[str] = Cookie(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_bearer),
) -> Optional[OwnerContext]:
    """Resolve the calling owner, or None when no identity was supplied."""
    if credentials:
        user_id = _clean_user_id(credentials.credentials)
        if user_id:
            return OwnerContext(user_id=user_id, source="bearer")

    user_id = _clean_user_id(request.headers.get("X-User-Id"))
    if user_id:
        return OwnerContext(user_id=user_id, source="header")

    user_id = _clean_user_id(casa_uid)
    if user_id:
        return OwnerContext(user_id=user_id, source="cookie")

    return None


async def require_user(
    user: Optional[OwnerContext] = Depends(get_current_user),
) -> OwnerContext:
    """
    Require an authenticated owner.
    Rejects the request before any store access is attempted.
    """
    if user:
        return user

    logger.info("Rejected unauthenticated request")
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": "auth_required",
            "message": "Authentication required.",
        },
        headers={"WWW-Authenticate": "Bearer"},
    )
