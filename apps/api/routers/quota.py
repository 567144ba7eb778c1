"""Resolution-mode quota router. The identity is always derived server-side."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.quota import check_and_increment_quota, get_quota_info
from services.identity import resolve_quota_identity

router = APIRouter()


class QuotaCheckRequest(BaseModel):
    user_id: Optional[str] = None


@router.post("/check")
async def check_quota(
    request: QuotaCheckRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    user_id = ensure_user_scope(auth.user_id, request.user_id)
    identity = await resolve_quota_identity(db, user_id)
    result = await check_and_increment_quota(db, identity, settings.RESOLUTION_MONTHLY_LIMIT)
    return result.as_dict()


@router.get("/usage")
async def quota_usage(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    identity = await resolve_quota_identity(db, scoped_user_id)
    info = await get_quota_info(db, identity, settings.RESOLUTION_MONTHLY_LIMIT)
    return info.as_dict()
