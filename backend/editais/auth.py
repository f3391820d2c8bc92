"""
Caller identity for the entitlement endpoints.

Bearer tokens are Supabase access tokens; entitlement records are keyed by the
Supabase user id. Administrator rights are not decided here but by the
lifecycle service, through its ``AdminAuthorizer``.
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

_bearer_scheme = HTTPBearer()

INVALID_TOKEN_DETAIL = "Sessão inválida ou expirada"


class AuthenticatedUser(BaseModel):
    """The account behind a verified access token."""

    id: str
    email: str | None = None


async def verify_access_token(supabase, token: str) -> AuthenticatedUser:
    """Resolve an access token to its account, or raise 401."""
    try:
        response = await supabase.auth.get_user(token)
    except Exception as e:
        logger.warning("access_token_rejected", error=str(e))
        raise HTTPException(status_code=401, detail=INVALID_TOKEN_DETAIL) from e

    account = response.user if response else None
    if account is None:
        logger.warning("access_token_without_account")
        raise HTTPException(status_code=401, detail=INVALID_TOKEN_DETAIL)
    return AuthenticatedUser(id=str(account.id), email=account.email)


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> AuthenticatedUser:
    """
    Verify the Bearer token and tag the request's log context with the user id.

    Raises:
        HTTPException 503: Supabase client not configured.
        HTTPException 401: Token is invalid, expired, or has no account.
    """
    supabase = getattr(request.app.state, "supabase", None)
    if supabase is None:
        raise HTTPException(status_code=503, detail="Serviço de autenticação indisponível")

    user = await verify_access_token(supabase, credentials.credentials)
    structlog.contextvars.bind_contextvars(user_id=user.id)
    return user


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
