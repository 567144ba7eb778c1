"""Purchase provider webhooks (server to server, no CORS, no user session)."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.identity import upsert_identity_mapping

router = APIRouter()
logger = logging.getLogger(__name__)

# Events that carry a meaningful app_user_id -> original_app_user_id mapping.
MAPPED_EVENTS = frozenset(
    {
        "INITIAL_PURCHASE",
        "RENEWAL",
        "PRODUCT_CHANGE",
        "CANCELLATION",
        "EXPIRATION",
        "SUBSCRIBER_ALIAS",
    }
)


class RevenueCatWebhook(BaseModel):
    event: Dict[str, Any]


def require_webhook_secret(authorization: Optional[str] = Header(default=None)) -> None:
    secret = settings.REVENUECAT_WEBHOOK_SECRET
    if not secret or not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")
    token = authorization[7:] if authorization.lower().startswith("bearer ") else authorization
    if not hmac.compare_digest(token.strip(), secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/revenuecat")
async def revenuecat_webhook(
    payload: RevenueCatWebhook,
    _auth: None = Depends(require_webhook_secret),
    db: AsyncSession = Depends(get_db),
):
    event_type = payload.event.get("type")
    if not isinstance(event_type, str):
        raise HTTPException(status_code=400, detail="Missing event.type")

    app_user_id = payload.event.get("app_user_id")
    original_app_user_id = payload.event.get("original_app_user_id")
    logger.info(
        "revenuecat_event type=%s app=%s orig=%s",
        event_type,
        str(app_user_id or "?")[:12],
        str(original_app_user_id or "?")[:16],
    )

    # Unmapped events are acknowledged so the provider does not retry them.
    if event_type not in MAPPED_EVENTS:
        return {"ok": True, "skipped": True}

    if not app_user_id or not original_app_user_id:
        raise HTTPException(status_code=400, detail="Missing app_user_id or original_app_user_id")

    await upsert_identity_mapping(db, str(app_user_id), str(original_app_user_id))
    return {"ok": True}
