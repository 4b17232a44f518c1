"""
FastAPI dependencies for authentication.

WHY: Dependencies provide reusable authentication logic that can be
injected into route handlers, so every user-facing billing route resolves
the caller the same way.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from scribe.core.auth import verify_session_token
from scribe.core.config import settings
from scribe.core.exceptions import (
    AuthenticationError,
    TokenExpiredError,
    TokenInvalidError,
)


# WHY: auto_error=False because the browser sends the session as a cookie;
# the Authorization header is only a fallback for scripts.
security = HTTPBearer(auto_error=False)


@dataclass
class SessionUser:
    """
    The authenticated caller, as described by the session token.

    WHY: User records live with the identity provider, so the claims are
    all this service knows about the caller.
    """

    id: str
    email: Optional[str] = None
    organization_id: Optional[str] = None


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> SessionUser:
    """
    Get the current authenticated user from the session cookie.

    HOW:
    1. Read the session cookie, falling back to "Authorization: Bearer"
    2. Verify signature, expiry and audience
    3. Build a SessionUser from the claims

    Raises:
        AuthenticationError: If no session is present or it is invalid
    """
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if not token and credentials is not None:
        token = credentials.credentials

    if not token:
        raise AuthenticationError(message="Authentication required")

    try:
        payload = verify_session_token(token)
    except (TokenExpiredError, TokenInvalidError) as e:
        # WHY: Re-raise as AuthenticationError for consistent API responses
        raise AuthenticationError(
            message=e.message,
            status_code=e.status_code,
        )

    return SessionUser(
        id=str(payload["sub"]),
        email=payload.get("email"),
        organization_id=payload.get("organization_id"),
    )
