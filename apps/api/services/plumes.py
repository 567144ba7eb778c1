"""Plumes ledger: per-device consumable credits with premium override."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import insert_ignoring_conflicts
from models.device_plumes import DevicePlumes
from services.errors import ValidationError

logger = logging.getLogger(__name__)


class ConsumeStatus(str, Enum):
    CHARGED = "charged"
    INSUFFICIENT = "insufficient"
    UNLIMITED = "unlimited"


@dataclass(frozen=True)
class ConsumeResult:
    status: ConsumeStatus
    balance: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.status != ConsumeStatus.INSUFFICIENT


@dataclass(frozen=True)
class DailyRewardResult:
    claimed: bool
    balance: Optional[int] = None
    available_at: Optional[datetime] = None


@dataclass(frozen=True)
class PlumesInfo:
    balance: int
    is_premium: bool
    last_daily_reward_at: Optional[datetime]
    daily_reward_available: bool
    daily_reward_available_at: Optional[datetime]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "plumes": self.balance,
            "is_premium": self.is_premium,
            "last_daily_reward_at": _isoformat(self.last_daily_reward_at),
            "daily_reward_available": self.daily_reward_available,
            "daily_reward_available_at": _isoformat(self.daily_reward_available_at),
        }


CREDIT_SOURCES = ("ad", "ad_gate", "pack_small", "pack_large")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _daily_cooldown() -> timedelta:
    return timedelta(hours=max(int(settings.PLUMES_DAILY_COOLDOWN_HOURS), 0))


def next_daily_reward_at(last_daily_reward_at: Optional[datetime]) -> Optional[datetime]:
    """Rolling window anchored to the last claim; None when never claimed."""
    last = _as_utc(last_daily_reward_at)
    if last is None:
        return None
    return last + _daily_cooldown()


def source_amount(source: str) -> int:
    """Configured plumes amount for a replenishment channel."""
    amounts = {
        "ad": settings.PLUMES_AD_REWARD,
        "ad_gate": settings.PLUMES_AD_REWARD_GATE,
        "pack_small": settings.PLUMES_PACK_SMALL,
        "pack_large": settings.PLUMES_PACK_LARGE,
    }
    if source not in amounts:
        raise ValidationError(f"Unknown credit source: {source}")
    return max(int(amounts[source]), 0)


def require_device_id(device_id: str) -> str:
    normalized = (device_id or "").strip()
    if not normalized:
        raise ValidationError("device_id is required")
    return normalized


async def _ensure_device(db: AsyncSession, device_id: str) -> None:
    """Create the device row at the default balance if it does not exist yet."""
    await db.execute(
        insert_ignoring_conflicts(
            db,
            DevicePlumes,
            {
                "device_id": device_id,
                "plumes_count": max(int(settings.PLUMES_DEFAULT), 0),
                "is_premium": False,
            },
        )
    )


async def credit_in_transaction(db: AsyncSession, device_id: str, amount: int) -> int:
    """Increment without committing; callers own the transaction."""
    await _ensure_device(db, device_id)
    result = await db.execute(
        update(DevicePlumes)
        .where(DevicePlumes.device_id == device_id)
        .values(plumes_count=DevicePlumes.plumes_count + amount)
        .returning(DevicePlumes.plumes_count)
        .execution_options(synchronize_session=False)
    )
    return int(result.scalar_one())


async def set_premium_in_transaction(db: AsyncSession, device_id: str, is_premium: bool) -> None:
    await _ensure_device(db, device_id)
    await db.execute(
        update(DevicePlumes)
        .where(DevicePlumes.device_id == device_id)
        .values(is_premium=bool(is_premium))
        .execution_options(synchronize_session=False)
    )


async def consume_in_transaction(db: AsyncSession, device_id: str, amount: int) -> ConsumeResult:
    """Conditional decrement without committing."""
    await _ensure_device(db, device_id)
    result = await db.execute(
        update(DevicePlumes)
        .where(
            DevicePlumes.device_id == device_id,
            DevicePlumes.is_premium.is_(False),
            DevicePlumes.plumes_count >= amount,
        )
        .values(plumes_count=DevicePlumes.plumes_count - amount)
        .returning(DevicePlumes.plumes_count)
        .execution_options(synchronize_session=False)
    )
    remaining = result.scalar_one_or_none()
    if remaining is not None:
        return ConsumeResult(ConsumeStatus.CHARGED, int(remaining))

    row = (
        await db.execute(
            select(DevicePlumes.plumes_count, DevicePlumes.is_premium).where(DevicePlumes.device_id == device_id)
        )
    ).one()
    if row.is_premium:
        return ConsumeResult(ConsumeStatus.UNLIMITED)
    return ConsumeResult(ConsumeStatus.INSUFFICIENT, int(row.plumes_count))


async def get_device_plumes_info(
    db: AsyncSession,
    device_id: str,
    now: Optional[datetime] = None,
) -> PlumesInfo:
    device_id = require_device_id(device_id)
    await _ensure_device(db, device_id)
    await db.commit()

    row = (
        await db.execute(
            select(
                DevicePlumes.plumes_count,
                DevicePlumes.is_premium,
                DevicePlumes.last_daily_reward_at,
            ).where(DevicePlumes.device_id == device_id)
        )
    ).one()
    current = _as_utc(now) or _utcnow()
    available_at = next_daily_reward_at(row.last_daily_reward_at)
    available = available_at is None or current >= available_at
    return PlumesInfo(
        balance=int(row.plumes_count),
        is_premium=bool(row.is_premium),
        last_daily_reward_at=_as_utc(row.last_daily_reward_at),
        daily_reward_available=available,
        daily_reward_available_at=None if available else available_at,
    )


async def consume_plumes(db: AsyncSession, device_id: str, amount: int) -> ConsumeResult:
    """
    Atomically debit `amount` plumes.

    Premium devices are never debited (UNLIMITED). A balance below `amount`
    yields INSUFFICIENT and leaves the row untouched.
    """
    device_id = require_device_id(device_id)
    debit = int(amount)
    if debit <= 0:
        raise ValidationError("amount must be greater than 0")

    outcome = await consume_in_transaction(db, device_id, debit)
    await db.commit()
    if outcome.status == ConsumeStatus.CHARGED:
        logger.info("plumes_consume device=%s amount=%s balance=%s", device_id, debit, outcome.balance)
    elif outcome.status == ConsumeStatus.INSUFFICIENT:
        logger.info("plumes_consume_denied device=%s amount=%s balance=%s", device_id, debit, outcome.balance)
    return outcome


async def credit_plumes(db: AsyncSession, device_id: str, amount: int) -> int:
    """Atomically add plumes; a never-seen device starts from the default balance."""
    device_id = require_device_id(device_id)
    grant = int(amount)
    if grant <= 0:
        raise ValidationError("amount must be greater than 0")

    balance = await credit_in_transaction(db, device_id, grant)
    await db.commit()
    logger.info("plumes_credit device=%s amount=%s balance=%s", device_id, grant, balance)
    return balance


async def credit_for_source(db: AsyncSession, device_id: str, source: str) -> int:
    return await credit_plumes(db, device_id, source_amount(source))


async def claim_daily_reward(
    db: AsyncSession,
    device_id: str,
    now: Optional[datetime] = None,
) -> DailyRewardResult:
    """Grant the daily reward at most once per rolling cooldown window."""
    device_id = require_device_id(device_id)
    current = _as_utc(now) or _utcnow()
    cutoff = current - _daily_cooldown()

    await _ensure_device(db, device_id)
    result = await db.execute(
        update(DevicePlumes)
        .where(
            DevicePlumes.device_id == device_id,
            or_(
                DevicePlumes.last_daily_reward_at.is_(None),
                DevicePlumes.last_daily_reward_at <= cutoff,
            ),
        )
        .values(
            plumes_count=DevicePlumes.plumes_count + max(int(settings.PLUMES_DAILY_REWARD), 0),
            last_daily_reward_at=current,
        )
        .returning(DevicePlumes.plumes_count)
        .execution_options(synchronize_session=False)
    )
    balance = result.scalar_one_or_none()
    if balance is not None:
        await db.commit()
        logger.info("plumes_daily_reward device=%s balance=%s", device_id, balance)
        return DailyRewardResult(claimed=True, balance=int(balance))

    last_claim = (
        await db.execute(select(DevicePlumes.last_daily_reward_at).where(DevicePlumes.device_id == device_id))
    ).scalar_one()
    await db.commit()
    return DailyRewardResult(claimed=False, available_at=next_daily_reward_at(last_claim))


async def set_device_premium(db: AsyncSession, device_id: str, is_premium: bool) -> None:
    device_id = require_device_id(device_id)
    await set_premium_in_transaction(db, device_id, is_premium)
    await db.commit()
    logger.info("plumes_premium device=%s is_premium=%s", device_id, bool(is_premium))
