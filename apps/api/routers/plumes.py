"""Plumes ledger router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, require_device
from routers.rate_limit import rate_limit
from services.errors import CooldownError
from services.gating import session_cost
from services.identity import get_or_create_user
from services.plumes import (
    CREDIT_SOURCES,
    claim_daily_reward,
    consume_plumes,
    credit_plumes,
    get_device_plumes_info,
    set_device_premium,
    source_amount,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class DeviceRequest(BaseModel):
    device_id: Optional[str] = None


class ConsumeRequest(DeviceRequest):
    amount: Optional[int] = Field(default=None, ge=1, le=10000)


class CreditRequest(DeviceRequest):
    amount: Optional[int] = Field(default=None, ge=1, le=10000)
    source: Optional[str] = None


class PremiumRequest(DeviceRequest):
    is_premium: bool


@router.get("/info")
async def plumes_info(
    device_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    info = await get_device_plumes_info(db, require_device(auth, device_id))
    return info.as_dict()


@router.post("/consume")
async def consume(
    request: ConsumeRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    outcome = await consume_plumes(db, require_device(auth, request.device_id), request.amount or session_cost())
    return {"status": outcome.status.value, "balance": outcome.balance}


@router.post("/credit")
async def credit(
    request: CreditRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    device_id = require_device(auth, request.device_id)
    if request.amount is not None:
        amount = request.amount
    elif request.source:
        if request.source not in CREDIT_SOURCES:
            raise HTTPException(status_code=422, detail=f"source must be one of {', '.join(CREDIT_SOURCES)}.")
        amount = source_amount(request.source)
    else:
        raise HTTPException(status_code=422, detail="Provide an amount or a source.")

    balance = await credit_plumes(db, device_id, amount)
    return {"balance": balance, "credited": amount}


@router.post("/daily")
async def daily_reward(
    request: DeviceRequest,
    _rate_limit: None = Depends(rate_limit("plumes_daily", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    result = await claim_daily_reward(db, require_device(auth, request.device_id))
    if not result.claimed:
        raise CooldownError(
            "Daily reward already claimed.",
            claimed=False,
            available_at=result.available_at,
        )
    return {"claimed": True, "balance": result.balance}


@router.post("/premium")
async def premium(
    request: PremiumRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    device_id = require_device(auth, request.device_id)
    user = await get_or_create_user(db, auth.user_id)
    user.plan = "premium" if request.is_premium else "free"
    # Commits the plan change along with the device flag.
    await set_device_premium(db, device_id, request.is_premium)
    info = await get_device_plumes_info(db, device_id)
    return {"plan": user.plan, **info.as_dict()}
