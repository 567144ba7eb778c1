"""
Authentication router: device sessions and current user profile.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.identity import normalize_device_id
from services.plumes import get_device_plumes_info
from services.session_token import create_session_token

router = APIRouter()


class CreateSessionRequest(BaseModel):
    device_id: Optional[str] = None
    email: Optional[str] = Field(default=None, max_length=320)


class SessionResponse(BaseModel):
    user_id: str
    device_id: Optional[str] = None
    session_token: str
    session_expires_at: int


class CurrentUserResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    plan: str
    device_id: Optional[str] = None
    plumes: Optional[int] = None
    is_premium: bool = False


@router.post("/session", response_model=SessionResponse)
async def create_session(
    request: CreateSessionRequest,
    _rate_limit: None = Depends(rate_limit("auth_session", limit=20, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """Register a new app user, optionally bound to a device."""
    device_id = normalize_device_id(request.device_id)
    user = User(email=request.email, plan="free")
    db.add(user)
    await db.commit()
    await db.refresh(user)

    session = create_session_token(user.id, device_id=device_id)
    return SessionResponse(
        user_id=user.id,
        device_id=device_id,
        session_token=session.token,
        session_expires_at=session.expires_at,
    )


@router.post("/refresh", response_model=SessionResponse)
async def refresh_session(auth: AuthContext = Depends(get_auth_context)):
    session = create_session_token(auth.user_id, device_id=auth.device_id)
    return SessionResponse(
        user_id=auth.user_id,
        device_id=auth.device_id,
        session_token=session.token,
        session_expires_at=session.expires_at,
    )


@router.get("/me", response_model=CurrentUserResponse)
async def get_current_user(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Current user with the bound device's balance."""
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    plan = user.plan or "free"
    info = await get_device_plumes_info(db, auth.device_id) if auth.device_id else None
    return CurrentUserResponse(
        user_id=user.id,
        email=user.email,
        plan=plan,
        device_id=auth.device_id,
        plumes=info.balance if info else None,
        is_premium=plan == "premium" or bool(info and info.is_premium),
    )


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"message": "Logged out successfully"}
