"""Request identity: user JWTs for device endpoints, an admin key for campaign endpoints.

Tokens are issued by the auth service; this module only verifies them.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt

from .config import settings

logger = logging.getLogger(__name__)


def decode_user_id(token: str) -> str:
    """Return the user id carried by a bearer JWT.

    Raises:
        HTTPException: 401 if the token is invalid or has no user claim
    """
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.warning(f"Rejected bearer token: {e}")
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id = claims.get("userId") or claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no user id")
    return str(user_id)


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> str:
    """Dependency: the authenticated user's id."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header missing")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid Authorization header format")

    return decode_user_id(token.strip())


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> str:
    """Dependency: guard admin endpoints when ADMIN_API_KEY is configured.

    Returns the sender identity recorded on campaigns.
    """
    expected = settings.admin_api_key
    if not expected:
        return "admin"
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        raise HTTPException(status_code=403, detail="Invalid admin key")
    return "admin"
