"""FastAPI dependencies for authentication.

Usage:
    @router.get("/integrations")
    def list_integrations(user_id: UUID = Depends(get_current_user_id)):
        ...
"""

import logging
from typing import Optional
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .jwt import decode_token

logger = logging.getLogger(__name__)

# auto_error=False so a missing header is a 401 like any other bad token
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> UUID:
    """Validate the bearer token and return the caller's user id.

    Raises:
        HTTPException 401: If the token is missing, invalid, expired, or
            its subject is not a UUID
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        raise _unauthorized("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise _unauthorized("Invalid token")

    try:
        return UUID(str(payload["sub"]))
    except (KeyError, ValueError):
        raise _unauthorized("Invalid token: subject is not a user ID")
