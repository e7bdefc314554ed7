"""Payer authentication.

Accounts live in the external account service, which issues HS256 JWTs
(``sub`` = user id, ``exp``) signed with AUTH_TOKEN_SECRET. This service
only verifies them.
"""
import time
from typing import Optional

from fastapi import Header, HTTPException
from jose import JWTError, jwt
from pydantic import BaseModel

from checkout.config import get_secret
from checkout.errors import ERROR_UNAUTHORIZED
from checkout.logging import get_logger

logger = get_logger(__name__)

JWT_ALGORITHM = "HS256"


class AuthenticatedUser(BaseModel):
    """Caller identity extracted from a verified bearer token."""
    id: str


def _get_secret() -> str:
    secret = get_secret("AUTH_TOKEN_SECRET")
    if not secret:
        raise HTTPException(status_code=500, detail="AUTH_TOKEN_SECRET not configured")
    return secret


def create_user_token(user_id: str, ttl_seconds: int = 7 * 24 * 3600, secret: str | None = None) -> str:
    """Issue a signed token (used by the account service and by tests)."""
    secret = secret or _get_secret()
    claims = {"sub": str(user_id), "exp": int(time.time()) + ttl_seconds}
    return jwt.encode(claims, secret, algorithm=JWT_ALGORITHM)


def decode_user_token(token: str, secret: str) -> Optional[str]:
    """Return the user id of a valid, unexpired token, else None."""
    try:
        claims = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except JWTError:
        return None
    return str(claims["sub"]) if claims.get("sub") else None


async def verify_user(
    authorization: str = Header(None, alias="Authorization")
) -> AuthenticatedUser:
    """
    Verify a payer bearer token.

    Usage:
        @router.get("/sessions/{session_id}/status")
        async def status(session_id: str, user: AuthenticatedUser = Depends(verify_user)):
            ...
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="No authorization header")

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail=ERROR_UNAUTHORIZED)

    user_id = decode_user_token(parts[1], _get_secret())
    if not user_id:
        logger.warning("Rejected invalid or expired payer token")
        raise HTTPException(status_code=401, detail="Invalid session token")

    return AuthenticatedUser(id=user_id)
