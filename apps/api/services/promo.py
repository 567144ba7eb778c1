"""Promo code registry: one-time bonuses per device."""

from __future__ import annotations

from enum import Enum
import logging
import re
from typing import Any, Dict, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.promo_code import PromoCode, PromoRedemption
from services.errors import ValidationError
from services.plumes import credit_in_transaction, require_device_id, set_premium_in_transaction

logger = logging.getLogger(__name__)

PROMO_CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,32}$")


class RedeemStatus(str, Enum):
    OK = "ok"
    ALREADY_REDEEMED = "already_redeemed"
    INVALID_CODE = "invalid_code"


def normalize_promo_code(code: Any) -> str:
    """Uppercase and validate a user-entered code; malformed input is rejected."""
    normalized = str(code or "").strip().upper()
    if not PROMO_CODE_PATTERN.match(normalized):
        raise ValidationError("Promo code must be 3-32 characters of A-Z, 0-9, '_' or '-'.")
    return normalized


async def register_promo_code(
    db: AsyncSession,
    code: str,
    bonus: int,
    grants_premium: bool = False,
) -> PromoCode:
    normalized = normalize_promo_code(code)
    if int(bonus) < 0:
        raise ValidationError("Promo bonus must not be negative.")

    promo = (await db.execute(select(PromoCode).where(PromoCode.code == normalized))).scalar_one_or_none()
    if promo is None:
        promo = PromoCode(code=normalized)
        db.add(promo)
    promo.bonus = int(bonus)
    promo.grants_premium = bool(grants_premium)
    promo.active = True
    await db.commit()
    return promo


async def seed_promo_codes(db: AsyncSession, codes: Mapping[str, Dict[str, Any]]) -> int:
    """Register every configured code; returns how many were seeded."""
    seeded = 0
    for code, config in (codes or {}).items():
        await register_promo_code(
            db,
            code,
            bonus=int(config.get("bonus", 0) or 0),
            grants_premium=bool(config.get("grants_premium", False)),
        )
        seeded += 1
    return seeded


async def redeem_promo_code(db: AsyncSession, device_id: str, code: str) -> RedeemStatus:
    """
    Redeem `code` for `device_id`.

    The redemption row, the bonus credit and the optional premium grant are
    committed together. The (device_id, code) primary key rejects a
    concurrent second redemption, which is then reported as already redeemed.
    """
    device_id = require_device_id(device_id)
    normalized = normalize_promo_code(code)

    promo = (
        await db.execute(select(PromoCode).where(PromoCode.code == normalized, PromoCode.active.is_(True)))
    ).scalar_one_or_none()
    if promo is None:
        logger.info("promo_redeem_invalid device=%s code=%s", device_id, normalized)
        return RedeemStatus.INVALID_CODE

    already = (
        await db.execute(
            select(PromoRedemption.code).where(
                PromoRedemption.device_id == device_id,
                PromoRedemption.code == normalized,
            )
        )
    ).scalar_one_or_none()
    if already:
        return RedeemStatus.ALREADY_REDEEMED

    bonus = int(promo.bonus or 0)
    grants_premium = bool(promo.grants_premium)
    try:
        db.add(PromoRedemption(device_id=device_id, code=normalized))
        await db.flush()
        if bonus > 0:
            await credit_in_transaction(db, device_id, bonus)
        if grants_premium:
            await set_premium_in_transaction(db, device_id, True)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info("promo_redeem_race device=%s code=%s", device_id, normalized)
        return RedeemStatus.ALREADY_REDEEMED

    logger.info(
        "promo_redeem device=%s code=%s bonus=%s premium=%s",
        device_id,
        normalized,
        bonus,
        grants_premium,
    )
    return RedeemStatus.OK
