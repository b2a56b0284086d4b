"""
Authentication dependency for FastAPI endpoints.

Verifies the dashboard's Supabase access token via auth.get_user() and
exposes the seller as a FastAPI dependency.
"""

from typing import Annotated

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from seller_billing.errors import AuthError, ServiceUnavailableError

logger = structlog.get_logger(__name__)

# auto_error=False so a missing header is rendered like every other billing error
_bearer_scheme = HTTPBearer(auto_error=False)


class AuthenticatedUser(BaseModel):
    """Represents a verified authenticated user."""

    id: str
    email: str | None = None


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    FastAPI dependency that verifies a JWT Bearer token via Supabase.

    Raises:
        ServiceUnavailableError: Supabase client not configured (503).
        AuthError: Token missing, invalid, expired, or user not found (401).
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise ServiceUnavailableError("Authentication service unavailable")

    if credentials is None or not credentials.credentials:
        raise AuthError("Unauthorized")

    try:
        response = await supabase.auth.get_user(credentials.credentials)
    except Exception as e:
        logger.warning("auth_token_verification_failed", error=str(e))
        raise AuthError("Unauthorized") from e

    user = response.user if response else None
    if user is None:
        raise AuthError("Unauthorized")

    structlog.contextvars.bind_contextvars(seller_id=str(user.id))
    return AuthenticatedUser(id=str(user.id), email=user.email)


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
