"""Recommendation oracle client (OpenAI-compatible chat completions)."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from config import settings
from services.errors import OracleNetworkError, OracleServerError

logger = logging.getLogger(__name__)

STATUSES = ("in_progress", "finalized")
PHASES = ("questioning", "pivot", "breakout", "result")
ACTION_TYPES = ("maps", "web", "steam", "app_store", "play_store", "youtube", "streaming", "spotify")
KNOWN_TAGS = frozenset(
    {
        "sport",
        "culture",
        "gastronomy",
        "nature",
        "relaxation",
        "party",
        "creative",
        "games",
        "music",
        "cinema",
        "travel",
        "tech",
        "social",
        "unusual",
    }
)

SYSTEM_PROMPT = f"""
You are Mogogo, a playful guide who helps the user pick ONE concrete activity.
Ask binary questions (option A vs option B) and converge within 3-5 questions.

Always answer with a strict JSON object:
{{
  "status": "in_progress" | "finalized",
  "phase": "questioning" | "pivot" | "breakout" | "result",
  "message": "short friendly line",
  "question": "required when in_progress",
  "options": {{"A": "label", "B": "label"}},
  "recommendation": {{
    "title": "precise name",
    "explanation": "2-3 sentences",
    "actions": [{{"type": "maps|web|steam|app_store|play_store|youtube|streaming|spotify", "label": "...", "query": "..."}}],
    "tags": ["1-3 of: {', '.join(sorted(KNOWN_TAGS))}"]
  }}
}}

Choices: "A"/"B" pick an option, "any" means both are fine, "neither" means
pivot, "finalize" means give the final recommendation now, "reroll" means a
radically different recommendation, "refine" means ask 3 targeted questions
then give a refined final recommendation.
"""


def get_oracle_client(api_key: str) -> Optional[AsyncOpenAI]:
    """Get oracle client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return AsyncOpenAI(
        api_key=api_key,
        base_url=settings.ORACLE_API_URL,
        timeout=settings.ORACLE_TIMEOUT_SECONDS,
        max_retries=0,
    )


def _parse_json_payload(content: str) -> Dict[str, Any]:
    try:
        return json.loads(content)
    except json.JSONDecodeError:
        start, end = content.find("{"), content.rfind("}")
        if start == -1 or end <= start:
            raise
        return json.loads(content[start : end + 1])


def validate_oracle_response(data: Any) -> Dict[str, Any]:
    """Check the fields the funnel relies on and normalize actions/tags."""
    if not isinstance(data, dict):
        raise OracleServerError("Invalid oracle response: not an object")
    if data.get("status") not in STATUSES:
        raise OracleServerError("Invalid oracle response: bad status")
    if data.get("phase") not in PHASES:
        raise OracleServerError("Invalid oracle response: bad phase")
    if not isinstance(data.get("message"), str):
        raise OracleServerError("Invalid oracle response: missing message")
    if data["status"] == "in_progress":
        options = data.get("options")
        if not data.get("question") or not isinstance(options, dict) or not {"A", "B"} <= set(options):
            raise OracleServerError("Invalid oracle response: missing question")
    if data["status"] == "finalized" and not isinstance(data.get("recommendation"), dict):
        raise OracleServerError("Invalid oracle response: missing recommendation")

    recommendation = data.get("recommendation")
    if isinstance(recommendation, dict):
        actions = recommendation.get("actions")
        if not isinstance(actions, list):
            actions = []
        recommendation["actions"] = [
            action
            for action in actions
            if isinstance(action, dict) and action.get("type") in ACTION_TYPES and action.get("query")
        ]
        tags = recommendation.get("tags")
        if not isinstance(tags, list):
            tags = []
        recommendation["tags"] = [tag for tag in tags if isinstance(tag, str) and tag in KNOWN_TAGS][:3]
    return data


def build_messages(
    context: Dict[str, Any],
    history: List[Dict[str, Any]],
    choice: Optional[str],
    preferences: Optional[str] = None,
) -> List[Dict[str, str]]:
    messages = [{"role": "system", "content": SYSTEM_PROMPT}]
    language = str(context.get("language") or "en")
    if language != "en":
        messages.append(
            {
                "role": "system",
                "content": f"Respond entirely in language '{language}'. Keep the JSON keys in English.",
            }
        )
    messages.append({"role": "user", "content": f"User context: {json.dumps(context, ensure_ascii=False)}"})
    if preferences:
        messages.append({"role": "system", "content": preferences})
    for entry in history:
        messages.append({"role": "assistant", "content": json.dumps(entry.get("response") or {}, ensure_ascii=False)})
        if entry.get("choice"):
            messages.append({"role": "user", "content": f"Choice: {entry['choice']}"})
    if choice:
        messages.append({"role": "user", "content": f"Choice: {choice}"})
    return messages


def _fallback_step(history: List[Dict[str, Any]], choice: Optional[str]) -> Dict[str, Any]:
    """Deterministic local oracle used when no API key is configured."""
    questions_asked = len(history) + (1 if choice else 0)
    if choice in ("finalize", "reroll") or questions_asked >= max(int(settings.FUNNEL_MAX_QUESTIONS), 1):
        title = "Sunset picnic in the nearest park" if choice != "reroll" else "Board game night at home"
        return {
            "status": "finalized",
            "phase": "result",
            "message": "Here is my pick for you!",
            "recommendation": {
                "title": title,
                "explanation": "Easy to set up, fits most budgets and leaves room for good company.",
                "actions": [{"type": "maps", "label": "Open in Maps", "query": "park near me"}],
                "tags": ["nature", "social"] if choice != "reroll" else ["games", "social"],
            },
            "metadata": {"pivot_count": 0, "current_branch": "fallback"},
        }
    return {
        "status": "in_progress",
        "phase": "pivot" if choice == "neither" else "questioning",
        "message": "Let's narrow it down.",
        "question": f"Question {questions_asked + 1}: indoors or outdoors?",
        "options": {"A": "Indoors", "B": "Outdoors"},
        "metadata": {"pivot_count": 1 if choice == "neither" else 0, "current_branch": "fallback"},
    }


async def request_funnel_step(
    context: Dict[str, Any],
    history: List[Dict[str, Any]],
    choice: Optional[str],
    preferences: Optional[str] = None,
) -> Dict[str, Any]:
    """Ask the oracle for the next question or the final recommendation."""
    client = get_oracle_client(settings.ORACLE_API_KEY)
    if client is None:
        logger.warning("Using fallback oracle (ORACLE_API_KEY not configured).")
        return validate_oracle_response(_fallback_step(history, choice))

    try:
        completion = await client.chat.completions.create(
            model=settings.ORACLE_MODEL,
            messages=build_messages(context, history, choice, preferences),
            temperature=settings.ORACLE_TEMPERATURE,
            max_tokens=settings.ORACLE_MAX_TOKENS,
            response_format={"type": "json_object"},
        )
    except (APIConnectionError, APITimeoutError) as exc:
        raise OracleNetworkError(f"Oracle unreachable: {exc}") from exc
    except APIStatusError as exc:
        raise OracleServerError(f"Oracle request failed: {exc.status_code}", retryable=exc.status_code >= 500) from exc

    content = completion.choices[0].message.content if completion.choices else None
    if not content:
        raise OracleServerError("Empty oracle response", retryable=True)
    try:
        parsed = _parse_json_payload(content)
    except json.JSONDecodeError as exc:
        logger.error("Oracle returned invalid JSON: %s", content[:500])
        raise OracleServerError("Oracle returned invalid JSON", retryable=True) from exc
    return validate_oracle_response(parsed)
