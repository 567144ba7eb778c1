"""Monthly quotas: resolution-mode scans per purchase identity and the per-plan request cap."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import insert_ignoring_conflicts
from models.subscription_quota import SubscriptionQuota
from models.user import User
from services.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    scans_used: int
    scans_limit: int

    def as_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "scans_used": self.scans_used, "scans_limit": self.scans_limit}


@dataclass(frozen=True)
class RequestQuotaCheck:
    allowed: bool
    requests_count: int
    limit: int
    plan: str


@dataclass(frozen=True)
class QuotaInfo:
    scans_used: int
    scans_limit: int
    resets_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "scans_used": self.scans_used,
            "scans_limit": self.scans_limit,
            "resets_at": self.resets_at.isoformat(),
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def period_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the UTC calendar month containing `now`."""
    current = _as_utc(now) if now else datetime.now(timezone.utc)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_period_start(now: Optional[datetime] = None) -> datetime:
    start = period_start(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def _require_identity(identity: str) -> str:
    normalized = (identity or "").strip()
    if not normalized:
        raise ValidationError("quota identity is required")
    return normalized


async def check_and_increment_quota(
    db: AsyncSession,
    identity: str,
    limit: int,
    now: Optional[datetime] = None,
) -> QuotaCheck:
    """
    Consume one scan from the current month's quota.

    A missing or stale row is (re)initialized at the current month boundary
    before the limit is evaluated. A denied check never increments, so
    repeated denials in the same month report the same count.
    """
    identity = _require_identity(identity)
    scans_limit = int(limit)
    boundary = period_start(now)

    await db.execute(
        insert_ignoring_conflicts(
            db,
            SubscriptionQuota,
            {"original_app_user_id": identity, "monthly_scans_used": 0, "period_start": boundary},
        )
    )
    await db.execute(
        update(SubscriptionQuota)
        .where(
            SubscriptionQuota.original_app_user_id == identity,
            SubscriptionQuota.period_start < boundary,
        )
        .values(monthly_scans_used=0, period_start=boundary)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        update(SubscriptionQuota)
        .where(
            SubscriptionQuota.original_app_user_id == identity,
            SubscriptionQuota.monthly_scans_used < scans_limit,
        )
        .values(monthly_scans_used=SubscriptionQuota.monthly_scans_used + 1)
        .returning(SubscriptionQuota.monthly_scans_used)
        .execution_options(synchronize_session=False)
    )
    used = result.scalar_one_or_none()
    if used is not None:
        await db.commit()
        return QuotaCheck(allowed=True, scans_used=int(used), scans_limit=scans_limit)

    current = (
        await db.execute(
            select(SubscriptionQuota.monthly_scans_used).where(SubscriptionQuota.original_app_user_id == identity)
        )
    ).scalar_one()
    await db.commit()
    logger.info("quota_denied identity=%s used=%s limit=%s", identity, current, scans_limit)
    return QuotaCheck(allowed=False, scans_used=int(current), scans_limit=scans_limit)


async def _current_usage(db: AsyncSession, identity: str, boundary: datetime) -> int:
    row = (
        await db.execute(
            select(SubscriptionQuota.monthly_scans_used, SubscriptionQuota.period_start).where(
                SubscriptionQuota.original_app_user_id == identity
            )
        )
    ).one_or_none()
    if row is None or _as_utc(row.period_start) < boundary:
        return 0
    return int(row.monthly_scans_used)


async def get_quota_usage(db: AsyncSession, identity: str, now: Optional[datetime] = None) -> int:
    """Current-month scan count; 0 when absent or stale. Never writes."""
    return await _current_usage(db, _require_identity(identity), period_start(now))


async def get_quota_info(
    db: AsyncSession,
    identity: str,
    limit: int,
    now: Optional[datetime] = None,
) -> QuotaInfo:
    identity = _require_identity(identity)
    used = await _current_usage(db, identity, period_start(now))
    return QuotaInfo(scans_used=used, scans_limit=int(limit), resets_at=next_period_start(now))


def request_limit_for(plan: Optional[str]) -> int:
    limits = settings.REQUEST_MONTHLY_LIMITS
    return int(limits.get(plan or "free", limits.get("free", 0)))


async def check_and_increment_requests(
    db: AsyncSession,
    user_id: str,
    plan: Optional[str],
    now: Optional[datetime] = None,
) -> RequestQuotaCheck:
    """
    Count one funnel request against the user's monthly plan cap.

    The counter restarts at each UTC month boundary. A denied request is not
    counted.
    """
    plan = plan or "free"
    limit = request_limit_for(plan)
    boundary = period_start(now)

    await db.execute(
        update(User)
        .where(
            User.id == user_id,
            or_(User.requests_period_start.is_(None), User.requests_period_start < boundary),
        )
        .values(requests_count=0, requests_period_start=boundary)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.requests_count < limit)
        .values(requests_count=User.requests_count + 1)
        .returning(User.requests_count)
        .execution_options(synchronize_session=False)
    )
    used = result.scalar_one_or_none()
    if used is not None:
        await db.commit()
        return RequestQuotaCheck(allowed=True, requests_count=int(used), limit=limit, plan=plan)

    current = (await db.execute(select(User.requests_count).where(User.id == user_id))).scalar_one()
    await db.commit()
    logger.info("request_quota_denied user=%s plan=%s used=%s limit=%s", user_id, plan, current, limit)
    return RequestQuotaCheck(allowed=False, requests_count=int(current), limit=limit, plan=plan)
