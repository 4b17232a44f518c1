"""
Session token verification.

WHY: Users sign in through the external identity provider, which issues
an HS256 JWT and stores it in a cookie. This service never issues
sessions of its own; it only has to prove a token is genuine and read
who it belongs to:
1. Signature is valid (token not tampered with)
2. Token hasn't expired
3. Audience matches, when one is configured
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional
from jose import jwt, JWTError

from scribe.core.config import settings
from scribe.core.exceptions import (
    TokenExpiredError,
    TokenInvalidError,
)


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    organization_id: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a session JWT in the identity provider's format.

    WHY: Used by tests and local tooling to act as a signed-in user.
    Production tokens come from the identity provider.

    Args:
        user_id: Subject of the token
        email: User email claim
        organization_id: Optional organization claim
        expires_delta: Token lifetime (default 1 hour)

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": user_id,
        "iat": now,
        "exp": now + (expires_delta or timedelta(hours=1)),
    }
    if email:
        claims["email"] = email
    if organization_id:
        claims["organization_id"] = organization_id
    if settings.SESSION_JWT_AUDIENCE:
        claims["aud"] = settings.SESSION_JWT_AUDIENCE

    return jwt.encode(
        claims,
        settings.SESSION_JWT_SECRET,
        algorithm=settings.SESSION_JWT_ALGORITHM,
    )


def verify_session_token(token: str) -> Dict[str, Any]:
    """
    Verify and decode a session JWT.

    Args:
        token: JWT token string

    Returns:
        Decoded token payload

    Raises:
        TokenExpiredError: If token has expired
        TokenInvalidError: If token is malformed or signature invalid
    """
    options = {"verify_aud": settings.SESSION_JWT_AUDIENCE is not None}

    try:
        payload = jwt.decode(
            token,
            settings.SESSION_JWT_SECRET,
            algorithms=[settings.SESSION_JWT_ALGORITHM],
            audience=settings.SESSION_JWT_AUDIENCE,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError(message="Token has expired")
    except JWTError as e:
        raise TokenInvalidError(
            message="Invalid token",
            error=str(e),
        )

    if not payload.get("sub"):
        raise TokenInvalidError(message="Invalid token: missing subject")

    return payload
