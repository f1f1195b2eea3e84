"""JWT access token validation.

Identities are issued by the hosted auth platform. This service only
verifies tokens; it never stores users.

Claims:
- sub (Subject): user ID as UUID string, the owner of integrations
- iat (Issued At): Unix timestamp when the token was created
- exp (Expiration): Unix timestamp when the token expires

Security Properties:
- Algorithm: HS256 by default (JWT_ALGORITHM)
- Secret: JWT_SECRET setting
- Stateless validation (no database lookup required for auth)
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict
from uuid import UUID

import jwt

from ..config import get_settings


def create_access_token(user_id: UUID, expires_in: timedelta = timedelta(minutes=60)) -> str:
    """Sign a token for user_id.

    Used by local tooling and tests; production tokens come from the auth platform.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)

    payload = {
        'sub': str(user_id),
        'iat': int(now.timestamp()),
        'exp': int((now + expires_in).timestamp()),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT token.

    Raises:
        jwt.ExpiredSignatureError: If token has expired
        jwt.InvalidTokenError: If token is invalid or tampered
    """
    settings = get_settings()
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=[settings.JWT_ALGORITHM],
        options={"require": ["sub", "exp"]},
    )
