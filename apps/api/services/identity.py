"""Device and purchase identity helpers."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import insert_ignoring_conflicts
from models.identity_mapping import IdentityMapping
from models.user import User
from services.errors import ValidationError

logger = logging.getLogger(__name__)

_DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{4,128}$")


def normalize_device_id(value: Any) -> Optional[str]:
    """
    Normalize a client device id. Empty input means "no device" (web client).

    Malformed ids are rejected instead of being coerced.
    """
    text = str(value or "").strip()
    if not text:
        return None
    if not _DEVICE_ID_PATTERN.match(text):
        raise ValidationError("device_id must be 4-128 characters of letters, digits, '.', '_', ':' or '-'.")
    return text


async def upsert_identity_mapping(db: AsyncSession, app_user_id: str, original_app_user_id: str) -> None:
    """Record the purchase provider's stable id for an app user."""
    app_user_id = (app_user_id or "").strip()
    original_app_user_id = (original_app_user_id or "").strip()
    if not app_user_id or not original_app_user_id:
        raise ValidationError("app_user_id and original_app_user_id are required")

    await db.execute(
        insert_ignoring_conflicts(
            db,
            IdentityMapping,
            {"app_user_id": app_user_id, "original_app_user_id": original_app_user_id},
        )
    )
    await db.execute(
        update(IdentityMapping)
        .where(IdentityMapping.app_user_id == app_user_id)
        .values(original_app_user_id=original_app_user_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("identity_mapping app=%s original=%s", app_user_id[:12], original_app_user_id[:16])


async def resolve_quota_identity(db: AsyncSession, app_user_id: str) -> str:
    """
    Stable identity that quota usage is bound to.

    Falls back to the app user id until the purchase provider has reported a
    mapping for it.
    """
    result = await db.execute(
        select(IdentityMapping.original_app_user_id).where(IdentityMapping.app_user_id == app_user_id)
    )
    return result.scalar_one_or_none() or app_user_id


async def get_or_create_user(db: AsyncSession, user_id: str) -> User:
    """Load the session's user, creating a free-plan row on first sight. Flushes only."""
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    user = User(id=user_id, plan="free")
    db.add(user)
    await db.flush()
    return user
