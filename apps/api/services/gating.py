"""
Gating policy between the funnel and the plumes ledger.

Two decision points surround every funnel call:

* pre-check: before the oracle is called, deny a call that may finalize
  when the device cannot pay for the session;
* post-finalize consumption: after the first finalization, charge the
  session once. Refine and reroll reuse the already-paid session.

A session counts as paid only when a charge for it is on record for the
device. History sent by the client is never trusted on its own.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker, insert_ignoring_conflicts
from models.session_charge import SessionCharge
from services.errors import ValidationError
from services.plumes import ConsumeStatus, PlumesInfo, consume_in_transaction, get_device_plumes_info

logger = logging.getLogger(__name__)

FINALIZED = "finalized"
IN_PROGRESS = "in_progress"
UNDO_CHOICES = frozenset({"refine", "reroll"})


class GateDecision(str, Enum):
    OK = "ok"
    NO_CREDITS = "no_credits"


@dataclass(frozen=True)
class ConsumptionResult:
    consumed: bool
    remaining: Optional[int] = None
    unlimited: bool = False
    insufficient: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {"consumed": self.consumed, "remaining": self.remaining, "unlimited": self.unlimited}


def session_cost() -> int:
    return max(int(settings.PLUMES_SESSION_COST), 0)


def follows_finalized_step(history: List[Dict[str, Any]], choice: Optional[str]) -> bool:
    """
    Whether a refine or reroll in this call's history came after a finalized step.

    Each history entry pairs a response with the choice made on it; the
    pending `choice` answers the last entry.
    """
    finalized_seen = False
    for index, entry in enumerate(history):
        response = entry.get("response") or {}
        if response.get("status") == FINALIZED:
            finalized_seen = True
        answered = choice if index == len(history) - 1 else entry.get("choice")
        if finalized_seen and answered in UNDO_CHOICES:
            return True
    return False


def require_finalized_before_undo(history: List[Dict[str, Any]], choice: Optional[str]) -> None:
    if choice not in UNDO_CHOICES:
        return
    if not any((entry.get("response") or {}).get("status") == FINALIZED for entry in history):
        raise ValidationError(f"'{choice}' is only available after a finalized recommendation.")


def session_fingerprint(context: Dict[str, Any], history: List[Dict[str, Any]]) -> str:
    """Digest of what identifies a session: its context and opening response."""
    opening = history[0].get("response") if history else None
    payload = json.dumps({"context": context, "opening": opening}, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def predict_will_finalize(
    history_length: int,
    choice: Optional[str],
    session_paid: bool,
    min_depth: Optional[int] = None,
) -> bool:
    """
    Whether the oracle may return the final recommendation for this call.

    The oracle is free to finalize any answered step once the minimum depth
    is reached, so all of those are gated. `neither` always pivots, and calls
    inside an already-paid session never count.
    """
    if session_paid:
        return False
    if choice == "finalize" or choice in UNDO_CHOICES:
        return True
    if choice is None or choice == "neither":
        return False
    minimum = settings.FUNNEL_MIN_DEPTH if min_depth is None else min_depth
    return int(history_length) + 1 >= max(int(minimum), 1)


def evaluate_pre_check(
    info: Optional[PlumesInfo],
    will_finalize: bool,
    is_premium_profile: bool,
    cost: int,
) -> GateDecision:
    """Pure pre-check decision. `info` is None when no device identity is known."""
    if is_premium_profile:
        return GateDecision.OK
    # Fail-open: without a device id credits cannot be evaluated (ads unavailable).
    if info is None:
        return GateDecision.OK
    if info.is_premium:
        return GateDecision.OK
    if will_finalize and info.balance < cost:
        return GateDecision.NO_CREDITS
    return GateDecision.OK


def should_consume(status: str, session_paid: bool) -> bool:
    return status == FINALIZED and not session_paid


async def session_already_paid(
    db: AsyncSession,
    device_id: Optional[str],
    session_id: Optional[str],
    fingerprint: Optional[str] = None,
) -> bool:
    """
    Whether this device was already charged for `session_id`.

    A recorded charge with a different fingerprint means the id is being
    reused for another session, which is rejected.
    """
    if not device_id or not session_id:
        return False
    recorded = (
        await db.execute(
            select(SessionCharge.fingerprint).where(
                SessionCharge.device_id == device_id,
                SessionCharge.session_id == session_id,
            )
        )
    ).one_or_none()
    if recorded is None:
        return False
    if fingerprint and recorded.fingerprint and recorded.fingerprint != fingerprint:
        logger.info("gate_session_reused device=%s session=%s", device_id, session_id)
        raise ValidationError("session_id already belongs to another funnel session.")
    return True


async def pre_check_gate(
    db: AsyncSession,
    device_id: Optional[str],
    will_finalize: bool,
    is_premium_profile: bool = False,
) -> GateDecision:
    if is_premium_profile:
        return GateDecision.OK
    if not device_id:
        logger.info("gate_pre_check_fail_open reason=missing_device_id")
        return GateDecision.OK
    if not will_finalize:
        return GateDecision.OK

    info = await get_device_plumes_info(db, device_id)
    decision = evaluate_pre_check(info, will_finalize, is_premium_profile, session_cost())
    if decision == GateDecision.NO_CREDITS:
        logger.info("gate_no_credits device=%s balance=%s cost=%s", device_id, info.balance, session_cost())
    return decision


async def post_finalize_consume(
    db: AsyncSession,
    device_id: Optional[str],
    status: str,
    session_paid: bool,
    is_premium_profile: bool = False,
    session_id: Optional[str] = None,
    fingerprint: Optional[str] = None,
) -> ConsumptionResult:
    """
    Charge the session cost once, after the first finalization.

    With a `session_id`, the charge is recorded in the same transaction as
    the debit; a second call for the same device and session is a no-op.
    """
    if is_premium_profile:
        return ConsumptionResult(consumed=False, unlimited=True)
    if not device_id:
        return ConsumptionResult(consumed=False)
    if not should_consume(status, session_paid):
        info = await get_device_plumes_info(db, device_id)
        return ConsumptionResult(consumed=False, remaining=info.balance, unlimited=info.is_premium)

    cost = session_cost()
    if session_id:
        recorded = await db.execute(
            insert_ignoring_conflicts(
                db,
                SessionCharge,
                {"device_id": device_id, "session_id": session_id, "amount": cost, "fingerprint": fingerprint},
            ).returning(SessionCharge.session_id)
        )
        if recorded.scalar_one_or_none() is None:
            await db.rollback()
            info = await get_device_plumes_info(db, device_id)
            logger.info("gate_consume_duplicate session=%s device=%s", session_id, device_id)
            return ConsumptionResult(consumed=False, remaining=info.balance, unlimited=info.is_premium)

    outcome = await consume_in_transaction(db, device_id, cost)
    if outcome.status == ConsumeStatus.CHARGED:
        await db.commit()
        logger.info("gate_consumed device=%s session=%s remaining=%s", device_id, session_id, outcome.balance)
        return ConsumptionResult(consumed=True, remaining=outcome.balance)

    # Nothing was debited: drop the session charge marker too.
    await db.rollback()
    if outcome.status == ConsumeStatus.UNLIMITED:
        return ConsumptionResult(consumed=False, unlimited=True)
    logger.warning("gate_consume_insufficient device=%s balance=%s cost=%s", device_id, outcome.balance, cost)
    return ConsumptionResult(consumed=False, remaining=outcome.balance, insufficient=True)


async def consume_after_finalize_in_background(
    device_id: Optional[str],
    status: str,
    session_paid: bool,
    is_premium_profile: bool = False,
    session_id: Optional[str] = None,
    fingerprint: Optional[str] = None,
) -> Optional[ConsumptionResult]:
    """
    Best-effort, non-blocking consumption scheduled after the response is sent.

    Failures are logged and discarded; the user has already moved on.
    """
    try:
        async with async_session_maker() as db:
            return await post_finalize_consume(
                db,
                device_id,
                status,
                session_paid,
                is_premium_profile=is_premium_profile,
                session_id=session_id,
                fingerprint=fingerprint,
            )
    except Exception as exc:
        logger.warning("Post-finalize consumption failed for device %s: %s", device_id, exc)
        return None
