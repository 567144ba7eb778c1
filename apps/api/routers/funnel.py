"""Recommendation funnel gateway: gating, quota and the oracle call."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, scoped_device_id
from services.errors import InsufficientCreditsError, QuotaExceededError, ValidationError
from services.funnel import CHOICES
from services.gating import (
    FINALIZED,
    GateDecision,
    consume_after_finalize_in_background,
    follows_finalized_step,
    post_finalize_consume,
    pre_check_gate,
    predict_will_finalize,
    require_finalized_before_undo,
    session_already_paid,
    session_cost,
    session_fingerprint,
)
from services.identity import get_or_create_user, resolve_quota_identity
from services.oracle import request_funnel_step
from services.preferences import boost_tags_in_background, format_preferences_for_oracle, get_tag_scores
from services.quota import check_and_increment_quota, check_and_increment_requests, next_period_start

router = APIRouter()
logger = logging.getLogger(__name__)


class FunnelStepRequest(BaseModel):
    context: Dict[str, Any] = Field(default_factory=dict)
    history: List[Dict[str, Any]] = Field(default_factory=list, max_length=40)
    choice: Optional[str] = None
    session_id: Optional[str] = Field(default=None, max_length=64)
    device_id: Optional[str] = None
    resolution_mode: bool = False


def _no_plumes() -> InsufficientCreditsError:
    return InsufficientCreditsError(
        "Not enough plumes to finish this session.",
        session_cost=session_cost(),
        replenish=["watch_ad", "go_premium"],
    )


@router.post("/step")
async def funnel_step(
    request: FunnelStepRequest,
    background_tasks: BackgroundTasks,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if request.choice is not None and request.choice not in CHOICES:
        raise ValidationError(f"Unknown funnel choice: {request.choice}")
    require_finalized_before_undo(request.history, request.choice)

    device_id = scoped_device_id(auth, request.device_id)
    user = await get_or_create_user(db, auth.user_id)
    is_premium_profile = user.is_premium
    plan = user.plan or "free"
    await db.commit()
    if request.resolution_mode and not is_premium_profile:
        raise HTTPException(status_code=403, detail="Resolution mode requires a premium plan.")

    fingerprint = session_fingerprint(request.context, request.history)
    session_paid = await session_already_paid(db, device_id, request.session_id, fingerprint)
    if not session_paid and follows_finalized_step(request.history, request.choice):
        # Nothing is ever charged to these callers, so their refine/reroll is free.
        session_paid = is_premium_profile or not device_id
    will_finalize = predict_will_finalize(len(request.history), request.choice, session_paid)

    decision = await pre_check_gate(db, device_id, will_finalize, is_premium_profile=is_premium_profile)
    if decision == GateDecision.NO_CREDITS:
        raise _no_plumes()

    request_quota = await check_and_increment_requests(db, auth.user_id, plan)
    if not request_quota.allowed:
        raise QuotaExceededError(
            "Monthly request limit reached.",
            resets_at=next_period_start(),
            plan=request_quota.plan,
            limit=request_quota.limit,
        )

    if request.resolution_mode:
        identity = await resolve_quota_identity(db, auth.user_id)
        quota = await check_and_increment_quota(db, identity, settings.RESOLUTION_MONTHLY_LIMIT)
        if not quota.allowed:
            raise QuotaExceededError(
                "Monthly resolution quota reached.",
                resets_at=next_period_start(),
                scans_used=quota.scans_used,
                scans_limit=quota.scans_limit,
            )

    preferences = format_preferences_for_oracle(await get_tag_scores(db, auth.user_id))
    response = await request_funnel_step(request.context, request.history, request.choice, preferences)

    if response.get("status") == FINALIZED:
        if will_finalize:
            background_tasks.add_task(
                consume_after_finalize_in_background,
                device_id,
                FINALIZED,
                False,
                is_premium_profile=is_premium_profile,
                session_id=request.session_id,
                fingerprint=fingerprint,
            )
        elif not session_paid:
            # The oracle finalized before the pre-check expected it; charge before answering.
            charge = await post_finalize_consume(
                db,
                device_id,
                FINALIZED,
                False,
                is_premium_profile=is_premium_profile,
                session_id=request.session_id,
                fingerprint=fingerprint,
            )
            if charge.insufficient:
                raise _no_plumes()

        tags = (response.get("recommendation") or {}).get("tags") or []
        if tags:
            background_tasks.add_task(boost_tags_in_background, auth.user_id, list(tags))
        logger.info(
            "funnel_finalized user=%s device=%s session=%s paid_session=%s predicted=%s",
            auth.user_id,
            device_id,
            request.session_id,
            session_paid,
            will_finalize,
        )
    return response
