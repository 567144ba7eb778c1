from unittest.mock import patch

import pytest

from services.errors import ValidationError
from services.gating import (
    GateDecision,
    consume_after_finalize_in_background,
    evaluate_pre_check,
    follows_finalized_step,
    post_finalize_consume,
    pre_check_gate,
    predict_will_finalize,
    require_finalized_before_undo,
    session_already_paid,
    session_fingerprint,
    should_consume,
)
from services.plumes import PlumesInfo, credit_plumes, get_device_plumes_info, set_device_premium


DEVICE = "device-gate-1"


def _info(balance, is_premium=False):
    return PlumesInfo(
        balance=balance,
        is_premium=is_premium,
        last_daily_reward_at=None,
        daily_reward_available=True,
        daily_reward_available_at=None,
    )


def test_predict_will_finalize():
    assert predict_will_finalize(1, "finalize", False) is True
    # The oracle may finalize any answered step from the minimum depth on.
    assert predict_will_finalize(2, "A", False, min_depth=3) is True
    assert predict_will_finalize(1, "A", False, min_depth=3) is False
    assert predict_will_finalize(0, None, False, min_depth=3) is False
    assert predict_will_finalize(6, "neither", False, min_depth=3) is False
    # An unpaid reroll is a finalization like any other.
    assert predict_will_finalize(0, "reroll", False) is True
    assert predict_will_finalize(4, "reroll", True) is False
    assert predict_will_finalize(6, "finalize", True) is False


def test_evaluate_pre_check_only_blocks_an_unaffordable_finalize():
    assert evaluate_pre_check(_info(5), will_finalize=True, is_premium_profile=False, cost=10) == GateDecision.NO_CREDITS
    assert evaluate_pre_check(_info(5), will_finalize=False, is_premium_profile=False, cost=10) == GateDecision.OK
    assert evaluate_pre_check(_info(10), will_finalize=True, is_premium_profile=False, cost=10) == GateDecision.OK
    assert evaluate_pre_check(_info(0, is_premium=True), True, False, 10) == GateDecision.OK
    assert evaluate_pre_check(_info(0), True, True, 10) == GateDecision.OK
    assert evaluate_pre_check(None, True, False, 10) == GateDecision.OK


def test_should_consume_and_undo_detection():
    assert should_consume("finalized", False) is True
    assert should_consume("finalized", True) is False
    assert should_consume("in_progress", False) is False

    question = {"response": {"status": "in_progress"}, "choice": "A"}
    final = {"response": {"status": "finalized"}, "choice": None}
    assert follows_finalized_step([question, final], "reroll") is True
    assert follows_finalized_step([question, {**final, "choice": "refine"}, question], "B") is True
    assert follows_finalized_step([question], "reroll") is False
    assert follows_finalized_step([], "reroll") is False
    assert follows_finalized_step([question, final], None) is False


def test_refine_and_reroll_require_a_finalized_step():
    with pytest.raises(ValidationError):
        require_finalized_before_undo([], "reroll")
    with pytest.raises(ValidationError):
        require_finalized_before_undo([{"response": {"status": "in_progress"}, "choice": None}], "refine")
    require_finalized_before_undo([{"response": {"status": "finalized"}, "choice": None}], "reroll")
    require_finalized_before_undo([], "A")


@pytest.mark.asyncio
async def test_three_finalizations_exhaust_default_balance(db):
    remaining = []
    for index in range(3):
        assert await pre_check_gate(db, DEVICE, will_finalize=True) == GateDecision.OK
        result = await post_finalize_consume(db, DEVICE, "finalized", False, session_id=f"session-{index}")
        assert result.consumed is True
        remaining.append(result.remaining)

    assert remaining == [20, 10, 0]
    assert await pre_check_gate(db, DEVICE, will_finalize=True) == GateDecision.NO_CREDITS
    # Question steps are never gated.
    assert await pre_check_gate(db, DEVICE, will_finalize=False) == GateDecision.OK


@pytest.mark.asyncio
async def test_consumption_is_at_most_once_per_session(db):
    first = await post_finalize_consume(db, DEVICE, "finalized", False, session_id="session-dup")
    second = await post_finalize_consume(db, DEVICE, "finalized", False, session_id="session-dup")

    assert first.consumed is True
    assert second.consumed is False
    assert second.remaining == 20
    assert (await get_device_plumes_info(db, DEVICE)).balance == 20


@pytest.mark.asyncio
async def test_insufficient_consume_does_not_burn_the_session_marker(db):
    for index in range(3):
        await post_finalize_consume(db, DEVICE, "finalized", False, session_id=f"spent-{index}")

    denied = await post_finalize_consume(db, DEVICE, "finalized", False, session_id="late-session")
    assert denied.consumed is False
    assert denied.remaining == 0

    # Once credited, the same session can still be charged.
    await credit_plumes(db, DEVICE, 30)
    charged = await post_finalize_consume(db, DEVICE, "finalized", False, session_id="late-session")
    assert charged.consumed is True
    assert charged.remaining == 20


@pytest.mark.asyncio
async def test_refine_reroll_and_questions_never_consume(db):
    refined = await post_finalize_consume(db, DEVICE, "finalized", True)
    question = await post_finalize_consume(db, DEVICE, "in_progress", False)

    assert refined.consumed is False
    assert question.consumed is False
    assert (await get_device_plumes_info(db, DEVICE)).balance == 30


@pytest.mark.asyncio
async def test_premium_profiles_and_devices_are_never_charged(db):
    profile = await post_finalize_consume(db, DEVICE, "finalized", False, is_premium_profile=True)
    assert profile.unlimited is True
    assert profile.consumed is False

    await set_device_premium(db, DEVICE, True)
    device = await post_finalize_consume(db, DEVICE, "finalized", False, session_id="premium-session")
    assert device.unlimited is True
    assert device.consumed is False
    assert (await get_device_plumes_info(db, DEVICE)).balance == 30


@pytest.mark.asyncio
async def test_missing_device_fails_open(db):
    assert await pre_check_gate(db, None, will_finalize=True) == GateDecision.OK
    result = await post_finalize_consume(db, None, "finalized", False)
    assert result.consumed is False


@pytest.mark.asyncio
async def test_background_consumption_uses_its_own_session(session_maker, db):
    with patch("services.gating.async_session_maker", session_maker):
        result = await consume_after_finalize_in_background(DEVICE, "finalized", False, session_id="bg-session")

    assert result.consumed is True
    assert (await get_device_plumes_info(db, DEVICE)).balance == 20


@pytest.mark.asyncio
async def test_background_consumption_swallows_failures():
    def _broken_session_maker():
        raise RuntimeError("database offline")

    with patch("services.gating.async_session_maker", _broken_session_maker):
        result = await consume_after_finalize_in_background(DEVICE, "finalized", False)

    assert result is None


@pytest.mark.asyncio
async def test_session_charges_are_scoped_to_the_device(db):
    first = await post_finalize_consume(db, DEVICE, "finalized", False, session_id="shared-session")
    other = await post_finalize_consume(db, "device-gate-2", "finalized", False, session_id="shared-session")

    assert first.consumed is True
    assert other.consumed is True
    assert (await get_device_plumes_info(db, "device-gate-2")).balance == 20


@pytest.mark.asyncio
async def test_paid_session_is_recognized_only_for_its_fingerprint(db):
    opening = [{"response": {"status": "in_progress", "question": "Indoors?"}, "choice": "finalize"}]
    fingerprint = session_fingerprint({"social": "solo"}, opening)
    assert await session_already_paid(db, DEVICE, "paid-session", fingerprint) is False

    await post_finalize_consume(db, DEVICE, "finalized", False, session_id="paid-session", fingerprint=fingerprint)

    assert await session_already_paid(db, DEVICE, "paid-session", fingerprint) is True
    assert await session_already_paid(db, "device-gate-2", "paid-session", fingerprint) is False
    assert await session_already_paid(db, DEVICE, None, fingerprint) is False

    reused = session_fingerprint({"social": "friends"}, opening)
    with pytest.raises(ValidationError):
        await session_already_paid(db, DEVICE, "paid-session", reused)


@pytest.mark.asyncio
async def test_insufficient_consume_is_flagged(db):
    for index in range(3):
        await post_finalize_consume(db, DEVICE, "finalized", False, session_id=f"drain-{index}")

    denied = await post_finalize_consume(db, DEVICE, "finalized", False, session_id="one-too-many")
    assert denied.insufficient is True
    assert denied.consumed is False
