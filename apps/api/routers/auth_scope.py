"""Bearer-session authentication and caller identity dependencies."""

from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from services.identity import Identity, client_address, is_privileged
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


def _identity_from_credentials(credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[Identity]:
    if not credentials or credentials.scheme.lower() != "bearer":
        return None
    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return Identity.for_account(claims.account_id, claims.email)


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Identity:
    """Require a valid session token."""
    identity = _identity_from_credentials(credentials)
    if identity is None:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")
    return identity


async def get_caller_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Identity:
    """Account identity when a session token is sent, network address otherwise."""
    identity = _identity_from_credentials(credentials)
    if identity is not None:
        return identity
    return Identity.for_address(client_address(request, settings.TRUSTED_PROXY_HOSTS))


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not is_privileged(identity, settings.ADMIN_EMAILS):
        raise HTTPException(status_code=403, detail="Admin access required.")
    return identity
