"""
Play a complete funnel session against a running API.

    python scripts/cli_session.py --base-url http://localhost:8000 \
        --context '{"social": "friends", "energy": 4, "budget": "standard"}' \
        --choices A,B,A --json
"""

import argparse
import asyncio
import json
import os
import sys
import uuid

import httpx

# Add parent dir to path to find the api modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.ad_rewards import AdCreditRetryPolicy
from services.funnel import FunnelOrchestrator, FunnelState, HttpFunnelGateway


def _parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a Mogogo funnel session from the terminal.")
    parser.add_argument("--base-url", default=os.getenv("MOGOGO_API_URL", "http://localhost:8000"))
    parser.add_argument("--context", default='{"social": "friends", "energy": 3, "budget": "standard"}')
    parser.add_argument("--choices", default="A,B,A,B,A", help="Comma-separated choices played in order.")
    parser.add_argument("--device-id", default=None)
    parser.add_argument("--watch-ads", action="store_true", help="Recover from a gate with a simulated ad.")
    parser.add_argument("--json", action="store_true", help="Print the session log as JSON.")
    return parser.parse_args(argv)


async def _open_session(base_url: str, device_id: str) -> str:
    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as client:
        response = await client.post("/auth/session", json={"device_id": device_id})
        response.raise_for_status()
        return response.json()["session_token"]


async def run_session(args) -> int:
    device_id = args.device_id or f"cli-{uuid.uuid4().hex[:12]}"
    token = await _open_session(args.base_url, device_id)
    gateway = HttpFunnelGateway(args.base_url, token)
    orchestrator = FunnelOrchestrator(gateway, device_id=device_id)
    policy = AdCreditRetryPolicy(gateway.credit_plumes)

    orchestrator.start(json.loads(args.context))
    choices = [choice.strip() for choice in args.choices.split(",") if choice.strip()]
    try:
        state = await orchestrator.choose(None)
        for choice in choices:
            if state != FunnelState.PRESENTING:
                break
            response = orchestrator.session.current_response or {}
            if not args.json:
                print(f"❓ {response.get('question')}  A) {response.get('options', {}).get('A')}  B) {response.get('options', {}).get('B')}")
                print(f"👉 {choice}")
            state = await orchestrator.choose(choice, response.get("options", {}).get(choice))

        if state == FunnelState.GATED and args.watch_ads:
            result = await orchestrator.recover_with_ad(policy)
            if not args.json:
                print(f"📺 Ad reward: {result.outcome.value} (balance={result.balance})")
            state = orchestrator.state

        if state == FunnelState.PRESENTING:
            state = await orchestrator.choose("finalize")
    finally:
        await gateway.aclose()

    session = orchestrator.session
    if args.json:
        print(
            json.dumps(
                {
                    "device_id": device_id,
                    "session_id": session.session_id,
                    "state": state.value,
                    "error": orchestrator.error.to_payload() if orchestrator.error else None,
                    "steps": [{"choice": step.choice, "response": step.response} for step in session.steps],
                },
                ensure_ascii=False,
                indent=2,
            )
        )
    elif state == FunnelState.FINALIZED:
        recommendation = session.current_response.get("recommendation") or {}
        print(f"✅ {recommendation.get('title')}: {recommendation.get('explanation')}")
    else:
        print(f"⚠️ Session ended in state {state.value}: {orchestrator.error.message if orchestrator.error else ''}")
    return 0 if state == FunnelState.FINALIZED else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(run_session(_parse_args())))
