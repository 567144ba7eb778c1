"""Promo code redemption router."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_device
from routers.rate_limit import rate_limit
from services.plumes import get_device_plumes_info
from services.promo import RedeemStatus, redeem_promo_code

router = APIRouter()


class RedeemRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    device_id: Optional[str] = None


@router.post("/redeem")
async def redeem(
    request: RedeemRequest,
    _rate_limit: None = Depends(rate_limit("promo_redeem", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    device_id = require_device(auth, request.device_id)
    status = await redeem_promo_code(db, device_id, request.code)
    payload = {"status": status.value}
    if status == RedeemStatus.OK:
        payload.update((await get_device_plumes_info(db, device_id)).as_dict())
    return payload
