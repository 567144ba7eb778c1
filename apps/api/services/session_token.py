"""Signed session tokens binding an app user to the device that opened the session."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config import settings
from services.identity import normalize_device_id


SESSION_TOKEN_TYPE = "mogogo_session"


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: int


@dataclass(frozen=True)
class SessionClaims:
    user_id: str
    device_id: Optional[str] = None


def create_session_token(
    user_id: str,
    device_id: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> IssuedSession:
    now = datetime.now(timezone.utc)
    ttl_hours = int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24)
    expires_at = int((now + timedelta(hours=max(ttl_hours, 1))).timestamp())
    claims = {"sub": user_id, "type": SESSION_TOKEN_TYPE, "iat": int(now.timestamp()), "exp": expires_at}
    device_id = normalize_device_id(device_id)
    if device_id:
        claims["device_id"] = device_id
    return IssuedSession(jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM), expires_at)


def decode_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry and token type. Raises ValueError when any check fails."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(payload.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    user_id = str(payload.get("sub", "")).strip()
    if not user_id:
        raise ValueError("Session token missing subject.")
    return SessionClaims(user_id=user_id, device_id=normalize_device_id(payload.get("device_id")))
