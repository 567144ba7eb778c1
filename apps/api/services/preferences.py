"""Tag preference scores (the user's thematic affinities)."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.tag_preference import TagPreference
from services.errors import ValidationError
from services.oracle import KNOWN_TAGS

logger = logging.getLogger(__name__)

SCORE_MIN = -10
SCORE_MAX = 10


def normalize_tags(tags: Iterable[str]) -> List[str]:
    normalized: List[str] = []
    for tag in tags or []:
        slug = str(tag or "").strip().lower()
        if slug not in KNOWN_TAGS:
            raise ValidationError(f"Unknown tag category: {tag}")
        if slug not in normalized:
            normalized.append(slug)
    return normalized


async def adjust_tag_scores(db: AsyncSession, user_id: str, tags: Iterable[str], delta: int) -> Dict[str, int]:
    slugs = normalize_tags(tags)
    if not slugs:
        return {}

    result = await db.execute(
        select(TagPreference).where(TagPreference.user_id == user_id, TagPreference.tag_slug.in_(slugs))
    )
    existing = {row.tag_slug: row for row in result.scalars().all()}
    scores: Dict[str, int] = {}
    for slug in slugs:
        preference = existing.get(slug)
        if preference is None:
            preference = TagPreference(user_id=user_id, tag_slug=slug, score=0)
            db.add(preference)
        preference.score = min(max(int(preference.score or 0) + int(delta), SCORE_MIN), SCORE_MAX)
        scores[slug] = preference.score
    await db.commit()
    return scores


async def get_tag_scores(db: AsyncSession, user_id: str) -> Dict[str, int]:
    result = await db.execute(select(TagPreference).where(TagPreference.user_id == user_id))
    return {row.tag_slug: int(row.score) for row in result.scalars().all()}


def format_preferences_for_oracle(scores: Dict[str, int]) -> str:
    liked = [slug for slug, score in sorted(scores.items(), key=lambda item: -item[1]) if score > 0][:5]
    disliked = [slug for slug, score in sorted(scores.items(), key=lambda item: item[1]) if score < 0][:3]
    if not liked and not disliked:
        return ""
    parts = []
    if liked:
        parts.append(f"The user tends to enjoy: {', '.join(liked)}.")
    if disliked:
        parts.append(f"The user usually avoids: {', '.join(disliked)}.")
    return " ".join(parts)


async def boost_tags_in_background(user_id: str, tags: List[str], delta: int = 1) -> None:
    """Best-effort preference update; a failure must never reach the user."""
    try:
        async with async_session_maker() as db:
            await adjust_tag_scores(db, user_id, tags, delta)
    except Exception as exc:
        logger.warning("Tag boost failed for user %s: %s", user_id, exc)
