"""Authentication dependencies: session user and device scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.identity import normalize_device_id
from services.session_token import decode_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    device_id: Optional[str] = None


def ensure_user_scope(auth_user_id: str, supplied_user_id: Optional[str]) -> str:
    """Return authenticated user_id and reject cross-user attempts."""
    if supplied_user_id and supplied_user_id != auth_user_id:
        raise HTTPException(status_code=403, detail="user_id does not match authenticated session.")
    return auth_user_id


def scoped_device_id(auth: AuthContext, supplied_device_id: Optional[str]) -> Optional[str]:
    """
    Device the request acts on: the explicit one, else the token's.

    A token bound to a device may not act on another device's plumes.
    """
    supplied = normalize_device_id(supplied_device_id)
    if supplied and auth.device_id and supplied != auth.device_id:
        raise HTTPException(status_code=403, detail="device_id does not match authenticated session.")
    return supplied or auth.device_id


def require_device(auth: AuthContext, supplied_device_id: Optional[str]) -> str:
    device_id = scoped_device_id(auth, supplied_device_id)
    if not device_id:
        raise HTTPException(status_code=422, detail="device_id is required.")
    return device_id


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, device_id=claims.device_id)
