from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from config import settings
from database import get_db
from main import app
from models.identity_mapping import IdentityMapping
from models.subscription_quota import SubscriptionQuota
from models.tag_preference import TagPreference
from models.user import User
from services.promo import register_promo_code
from services.session_token import create_session_token


USER_ID = "flow-user"
DEVICE_ID = "device-flow-1"
FINALIZED_STEP = {
    "status": "finalized",
    "phase": "result",
    "message": "Here is my pick for you!",
    "recommendation": {"title": "Picnic", "explanation": "Sunny.", "actions": [], "tags": ["nature"]},
}
QUESTION_STEP = {
    "status": "in_progress",
    "phase": "questioning",
    "message": "Let's narrow it down.",
    "question": "Indoors or outdoors?",
    "options": {"A": "Indoors", "B": "Outdoors"},
}
AUTH_HEADER = {
    "Authorization": f"Bearer {create_session_token(USER_ID, device_id=DEVICE_ID).token}"
}


@pytest_asyncio.fixture
async def api_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    with patch("services.gating.async_session_maker", session_maker), \
         patch("services.preferences.async_session_maker", session_maker), \
         patch.object(settings, "ORACLE_API_KEY", ""):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client, session_maker

    app.dependency_overrides.pop(get_db, None)


async def _play_to_finalize(client, session_id):
    """One question, then an explicit finalize."""
    first = await client.post("/funnel/step", json={"context": {"social": "solo"}, "session_id": session_id}, headers=AUTH_HEADER)
    assert first.status_code == 200
    assert first.json()["status"] == "in_progress"

    history = [{"response": first.json(), "choice": None}]
    return await client.post(
        "/funnel/step",
        json={"context": {"social": "solo"}, "history": history, "choice": "finalize", "session_id": session_id},
        headers=AUTH_HEADER,
    ), history


async def _balance(client):
    response = await client.get("/plumes/info", headers=AUTH_HEADER)
    assert response.status_code == 200
    return response.json()["plumes"]


async def _drain(client):
    for _ in range(3):
        await client.post("/plumes/consume", json={}, headers=AUTH_HEADER)
    assert await _balance(client) == 0


@pytest.mark.asyncio
async def test_routes_require_a_session_token(api_client):
    client, _ = api_client
    response = await client.get("/plumes/info", params={"device_id": DEVICE_ID})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_three_sessions_exhaust_then_ad_credit_unblocks(api_client):
    client, _ = api_client
    assert await _balance(client) == 30

    for index in range(3):
        final, _ = await _play_to_finalize(client, f"flow-session-{index}")
        assert final.status_code == 200
        assert final.json()["status"] == "finalized"
    assert await _balance(client) == 0

    gated, history = await _play_to_finalize(client, "flow-session-3")
    assert gated.status_code == 402
    assert gated.json()["error"] == "no_plumes"
    assert gated.json()["replenish"] == ["watch_ad", "go_premium"]

    credited = await client.post("/plumes/credit", json={"source": "ad_gate"}, headers=AUTH_HEADER)
    assert credited.status_code == 200
    assert credited.json()["balance"] == settings.PLUMES_AD_REWARD_GATE

    retried = await client.post(
        "/funnel/step",
        json={"context": {"social": "solo"}, "history": history, "choice": "finalize", "session_id": "flow-session-3"},
        headers=AUTH_HEADER,
    )
    assert retried.status_code == 200
    assert retried.json()["status"] == "finalized"
    assert await _balance(client) == settings.PLUMES_AD_REWARD_GATE - settings.PLUMES_SESSION_COST


@pytest.mark.asyncio
async def test_reroll_after_finalize_is_free_and_boosts_tags(api_client):
    client, session_maker = api_client
    final, history = await _play_to_finalize(client, "flow-reroll")
    assert final.status_code == 200
    assert await _balance(client) == 20

    history = [{"response": history[0]["response"], "choice": "finalize"}, {"response": final.json(), "choice": None}]
    reroll = await client.post(
        "/funnel/step",
        json={"context": {"social": "solo"}, "history": history, "choice": "reroll", "session_id": "flow-reroll"},
        headers=AUTH_HEADER,
    )
    assert reroll.status_code == 200
    assert reroll.json()["status"] == "finalized"
    assert await _balance(client) == 20

    async with session_maker() as session:
        rows = (await session.execute(select(TagPreference).where(TagPreference.user_id == USER_ID))).scalars().all()
    assert {row.tag_slug for row in rows} >= {"nature", "social", "games"}


@pytest.mark.asyncio
async def test_consume_route_reports_tagged_status(api_client):
    client, _ = api_client
    for expected in (20, 10, 0):
        response = await client.post("/plumes/consume", json={}, headers=AUTH_HEADER)
        assert response.json() == {"status": "charged", "balance": expected}

    denied = await client.post("/plumes/consume", json={"amount": 10}, headers=AUTH_HEADER)
    assert denied.json() == {"status": "insufficient", "balance": 0}

    premium = await client.post("/plumes/premium", json={"is_premium": True}, headers=AUTH_HEADER)
    assert premium.status_code == 200
    assert premium.json()["plan"] == "premium"

    unlimited = await client.post("/plumes/consume", json={"amount": 10}, headers=AUTH_HEADER)
    assert unlimited.json() == {"status": "unlimited", "balance": None}


@pytest.mark.asyncio
async def test_daily_reward_reports_cooldown(api_client):
    client, _ = api_client
    first = await client.post("/plumes/daily", json={}, headers=AUTH_HEADER)
    assert first.status_code == 200
    assert first.json() == {"claimed": True, "balance": 30 + settings.PLUMES_DAILY_REWARD}

    second = await client.post("/plumes/daily", json={}, headers=AUTH_HEADER)
    assert second.status_code == 409
    payload = second.json()
    assert payload["error"] == "daily_reward_cooldown"
    assert payload["claimed"] is False
    assert payload["available_at"]


@pytest.mark.asyncio
async def test_promo_redeem_route(api_client):
    client, session_maker = api_client
    async with session_maker() as session:
        await register_promo_code(session, "LAUNCH", bonus=20)

    ok = await client.post("/promo/redeem", json={"code": "launch"}, headers=AUTH_HEADER)
    assert ok.status_code == 200
    assert ok.json()["status"] == "ok"
    assert ok.json()["plumes"] == 50

    again = await client.post("/promo/redeem", json={"code": "LAUNCH"}, headers=AUTH_HEADER)
    assert again.json() == {"status": "already_redeemed"}

    unknown = await client.post("/promo/redeem", json={"code": "MISSING"}, headers=AUTH_HEADER)
    assert unknown.json() == {"status": "invalid_code"}

    malformed = await client.post("/promo/redeem", json={"code": "no way!"}, headers=AUTH_HEADER)
    assert malformed.status_code == 422
    assert malformed.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_device_scope_is_enforced(api_client):
    client, _ = api_client
    response = await client.get("/plumes/info", params={"device_id": "someone-else"}, headers=AUTH_HEADER)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_resolution_mode_is_premium_only_and_quota_limited(api_client):
    client, _ = api_client
    body = {"context": {}, "resolution_mode": True}

    free = await client.post("/funnel/step", json=body, headers=AUTH_HEADER)
    assert free.status_code == 403

    await client.post("/plumes/premium", json={"is_premium": True}, headers=AUTH_HEADER)
    with patch.object(settings, "RESOLUTION_MONTHLY_LIMIT", 2):
        for _ in range(2):
            allowed = await client.post("/funnel/step", json=body, headers=AUTH_HEADER)
            assert allowed.status_code == 200

        denied = await client.post("/funnel/step", json=body, headers=AUTH_HEADER)
        assert denied.status_code == 429
        assert denied.json()["error"] == "quota_exceeded"
        assert denied.json()["scans_used"] == 2
        assert denied.json()["resets_at"]

        usage = await client.get("/quota/usage", headers=AUTH_HEADER)
        assert usage.json()["scans_used"] == 2
        assert usage.json()["scans_limit"] == 2


@pytest.mark.asyncio
async def test_quota_check_route_counts_per_identity(api_client):
    client, _ = api_client
    first = await client.post("/quota/check", json={}, headers=AUTH_HEADER)
    assert first.json() == {"allowed": True, "scans_used": 1, "scans_limit": settings.RESOLUTION_MONTHLY_LIMIT}

    other_user = await client.post("/quota/check", json={"user_id": "someone-else"}, headers=AUTH_HEADER)
    assert other_user.status_code == 403


@pytest.mark.asyncio
async def test_revenuecat_webhook_maps_identities(api_client):
    client, session_maker = api_client
    event = {"event": {"type": "INITIAL_PURCHASE", "app_user_id": USER_ID, "original_app_user_id": "$RCAnonymousID:abc"}}

    with patch.object(settings, "REVENUECAT_WEBHOOK_SECRET", "rc-shared-secret"):
        rejected = await client.post("/webhooks/revenuecat", json=event, headers={"Authorization": "Bearer wrong"})
        assert rejected.status_code == 401

        accepted = await client.post(
            "/webhooks/revenuecat",
            json=event,
            headers={"Authorization": "Bearer rc-shared-secret"},
        )
        assert accepted.json() == {"ok": True}

        skipped = await client.post(
            "/webhooks/revenuecat",
            json={"event": {"type": "TEST"}},
            headers={"Authorization": "Bearer rc-shared-secret"},
        )
        assert skipped.json() == {"ok": True, "skipped": True}

    async with session_maker() as session:
        mapping = (
            await session.execute(select(IdentityMapping).where(IdentityMapping.app_user_id == USER_ID))
        ).scalar_one()
    assert mapping.original_app_user_id == "$RCAnonymousID:abc"

    await client.post("/quota/check", json={}, headers=AUTH_HEADER)
    async with session_maker() as session:
        quota = await session.get(SubscriptionQuota, "$RCAnonymousID:abc")
    assert quota.monthly_scans_used == 1


@pytest.mark.asyncio
async def test_session_creation_and_health(api_client):
    client, _ = api_client
    created = await client.post("/auth/session", json={"device_id": "device-new-1"})
    assert created.status_code == 200
    token = created.json()["session_token"]

    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["plumes"] == 30
    assert me.json()["plan"] == "free"

    live = await client.get("/health/live")
    assert live.json() == {"alive": True}


@pytest.mark.asyncio
async def test_reroll_without_a_finalized_step_is_rejected(api_client):
    client, _ = api_client
    await _drain(client)

    response = await client.post(
        "/funnel/step",
        json={"context": {}, "choice": "reroll", "session_id": "no-history"},
        headers=AUTH_HEADER,
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"
    assert await _balance(client) == 0


@pytest.mark.asyncio
async def test_reroll_on_an_unpaid_session_is_gated(api_client):
    client, _ = api_client
    await _drain(client)

    history = [{"response": QUESTION_STEP, "choice": "finalize"}, {"response": FINALIZED_STEP, "choice": None}]
    response = await client.post(
        "/funnel/step",
        json={"context": {}, "history": history, "choice": "reroll", "session_id": "never-charged"},
        headers=AUTH_HEADER,
    )
    assert response.status_code == 402
    assert response.json()["error"] == "no_plumes"


@pytest.mark.asyncio
async def test_early_oracle_finalize_is_charged_before_answering(api_client):
    client, _ = api_client
    history = [{"response": QUESTION_STEP, "choice": None}]

    with patch("routers.funnel.request_funnel_step", AsyncMock(return_value=FINALIZED_STEP)):
        paid = await client.post(
            "/funnel/step",
            json={"context": {}, "history": history, "choice": "A", "session_id": "early-1"},
            headers=AUTH_HEADER,
        )
        assert paid.status_code == 200
        assert paid.json()["status"] == "finalized"
        assert await _balance(client) == 20

        for _ in range(2):
            await client.post("/plumes/consume", json={}, headers=AUTH_HEADER)
        denied = await client.post(
            "/funnel/step",
            json={"context": {}, "history": history, "choice": "A", "session_id": "early-2"},
            headers=AUTH_HEADER,
        )

    assert denied.status_code == 402
    assert denied.json()["error"] == "no_plumes"
    assert await _balance(client) == 0


@pytest.mark.asyncio
async def test_charged_session_id_cannot_start_a_new_session(api_client):
    client, _ = api_client
    final, _ = await _play_to_finalize(client, "reused-session")
    assert final.status_code == 200

    reused = await client.post(
        "/funnel/step",
        json={"context": {"social": "friends"}, "session_id": "reused-session"},
        headers=AUTH_HEADER,
    )
    assert reused.status_code == 422
    assert await _balance(client) == 20


@pytest.mark.asyncio
async def test_monthly_request_cap_per_plan(api_client):
    client, session_maker = api_client
    body = {"context": {}}

    with patch.object(settings, "REQUEST_MONTHLY_LIMITS", {"free": 2, "premium": 5000}):
        for _ in range(2):
            allowed = await client.post("/funnel/step", json=body, headers=AUTH_HEADER)
            assert allowed.status_code == 200

        denied = await client.post("/funnel/step", json=body, headers=AUTH_HEADER)
        assert denied.status_code == 429
        payload = denied.json()
        assert payload["error"] == "quota_exceeded"
        assert payload["plan"] == "free"
        assert payload["limit"] == 2
        assert payload["resets_at"]

        await client.post("/plumes/premium", json={"is_premium": True}, headers=AUTH_HEADER)
        premium = await client.post("/funnel/step", json=body, headers=AUTH_HEADER)
        assert premium.status_code == 200

    async with session_maker() as session:
        user = await session.get(User, USER_ID)
    assert user.requests_count == 3
