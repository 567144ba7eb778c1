"""
Funnel session client: drives the choice dialogue against the gateway.

The session is an append-only log of decision steps. Jumping back to step k
truncates the log and restores the response snapshot recorded at that step.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
import uuid

import httpx

from config import settings
from services.ad_rewards import AdCreditResult, AdCreditRetryPolicy
from services.errors import (
    EconomyError,
    FunnelBusyError,
    InsufficientCreditsError,
    OracleNetworkError,
    OracleServerError,
    QuotaExceededError,
    ValidationError,
)
from services.gating import FINALIZED, UNDO_CHOICES

logger = logging.getLogger(__name__)

CHOICES = ("A", "B", "any", "neither", "refine", "reroll", "finalize")


class FunnelState(str, Enum):
    IDLE = "idle"
    AWAITING = "awaiting"
    PRESENTING = "presenting"
    GATED = "gated"
    FINALIZED = "finalized"
    ERRORED = "errored"


@dataclass
class DecisionStep:
    choice: Optional[str]
    response: Dict[str, Any]
    choice_label: Optional[str] = None


@dataclass
class FunnelRequest:
    context: Dict[str, Any]
    history: List[Dict[str, Any]]
    choice: Optional[str]
    session_id: str
    device_id: Optional[str] = None
    resolution_mode: bool = False

    def as_payload(self) -> Dict[str, Any]:
        return {
            "context": self.context,
            "history": self.history,
            "choice": self.choice,
            "session_id": self.session_id,
            "device_id": self.device_id,
            "resolution_mode": self.resolution_mode,
        }


@dataclass
class FunnelSession:
    context: Dict[str, Any]
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    steps: List[DecisionStep] = field(default_factory=list)
    last_choice: Optional[str] = None

    @property
    def current_response(self) -> Optional[Dict[str, Any]]:
        return self.steps[-1].response if self.steps else None

    @property
    def had_refine_or_reroll(self) -> bool:
        return any(step.choice in UNDO_CHOICES for step in self.steps)

    def append(self, step: DecisionStep) -> None:
        self.steps.append(step)
        self.last_choice = step.choice

    def jump_to(self, step_count: int) -> Dict[str, Any]:
        if step_count < 1 or step_count > len(self.steps):
            raise ValidationError(f"Cannot jump to step {step_count} of {len(self.steps)}")
        del self.steps[step_count:]
        self.last_choice = self.steps[-1].choice
        return self.steps[-1].response

    def history_payload(self) -> List[Dict[str, Any]]:
        """
        Each recorded response paired with the choice the user made on it.

        The latest response has no choice yet; the pending one travels
        separately in the request.
        """
        history: List[Dict[str, Any]] = []
        for index, step in enumerate(self.steps):
            next_choice = self.steps[index + 1].choice if index + 1 < len(self.steps) else None
            history.append({"response": step.response, "choice": next_choice})
        return history


Gateway = Callable[[FunnelRequest], Awaitable[Dict[str, Any]]]


class FunnelOrchestrator:
    """
    State machine: idle -> awaiting -> presenting | gated | finalized | errored.

    Only one call may be in flight. `reset()` cancels it logically: the
    result of a call issued before the reset is discarded on arrival.
    """

    def __init__(self, gateway: Gateway, device_id: Optional[str] = None, resolution_mode: bool = False):
        self._gateway = gateway
        self.device_id = device_id
        self.resolution_mode = resolution_mode
        self.state = FunnelState.IDLE
        self.session: Optional[FunnelSession] = None
        self.pending_choice: Optional[str] = None
        self.pending_label: Optional[str] = None
        self.error: Optional[EconomyError] = None
        self._generation = 0

    def start(self, context: Dict[str, Any]) -> FunnelSession:
        self.reset()
        self.session = FunnelSession(context=dict(context))
        return self.session

    def reset(self) -> None:
        self._generation += 1
        self.state = FunnelState.IDLE
        self.session = None
        self.pending_choice = None
        self.pending_label = None
        self.error = None

    async def choose(self, choice: Optional[str] = None, label: Optional[str] = None) -> FunnelState:
        if self.session is None:
            raise ValidationError("Start a funnel session before choosing.")
        if choice is not None and choice not in CHOICES:
            raise ValidationError(f"Unknown funnel choice: {choice}")
        return await self._issue(choice, label)

    async def retry(self) -> FunnelState:
        """Re-issue the last choice after an oracle or network failure."""
        if self.state != FunnelState.ERRORED:
            raise ValidationError("Nothing to retry.")
        return await self._issue(self.pending_choice, self.pending_label)

    async def retry_after_credit(self) -> FunnelState:
        """Re-issue the gated choice once the ledger has been credited."""
        if self.state != FunnelState.GATED:
            raise ValidationError("The funnel is not waiting for plumes.")
        return await self._issue(self.pending_choice, self.pending_label)

    async def recover_with_ad(self, policy: AdCreditRetryPolicy, amount: Optional[int] = None) -> AdCreditResult:
        if self.state != FunnelState.GATED:
            raise ValidationError("The funnel is not waiting for plumes.")
        if not self.device_id:
            raise ValidationError("Rewarded ads need a device id.")
        result = await policy.run(self.device_id, amount or settings.PLUMES_AD_REWARD_GATE)
        await self.retry_after_credit()
        return result

    def jump_to(self, step_count: int) -> Dict[str, Any]:
        if self.state == FunnelState.AWAITING:
            raise FunnelBusyError("A choice is already in flight.")
        if self.session is None:
            raise ValidationError("No funnel session to rewind.")
        snapshot = self.session.jump_to(step_count)
        self.state = FunnelState.FINALIZED if snapshot.get("status") == FINALIZED else FunnelState.PRESENTING
        self.pending_choice = None
        self.pending_label = None
        self.error = None
        return snapshot

    async def _issue(self, choice: Optional[str], label: Optional[str]) -> FunnelState:
        if self.state == FunnelState.AWAITING:
            raise FunnelBusyError("A choice is already in flight.")
        session = self.session
        generation = self._generation
        self.pending_choice = choice
        self.pending_label = label
        self.error = None
        self.state = FunnelState.AWAITING

        request = FunnelRequest(
            context=session.context,
            history=session.history_payload(),
            choice=choice,
            session_id=session.session_id,
            device_id=self.device_id,
            resolution_mode=self.resolution_mode,
        )
        try:
            response = await self._gateway(request)
        except InsufficientCreditsError as exc:
            return self._settle(generation, FunnelState.GATED, error=exc)
        except EconomyError as exc:
            return self._settle(generation, FunnelState.ERRORED, error=exc)
        except Exception:
            if generation == self._generation:
                self.state = FunnelState.ERRORED
            raise

        if generation != self._generation:
            logger.info("Discarding stale funnel response for session %s", session.session_id)
            return self.state
        session.append(DecisionStep(choice=choice, response=response, choice_label=label))
        next_state = FunnelState.FINALIZED if response.get("status") == FINALIZED else FunnelState.PRESENTING
        self.pending_choice = None
        self.pending_label = None
        self.state = next_state
        return next_state

    def _settle(self, generation: int, state: FunnelState, error: EconomyError) -> FunnelState:
        if generation != self._generation:
            return self.state
        self.state = state
        self.error = error
        return state


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


class HttpFunnelGateway:
    """httpx client for the funnel step and plumes endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=settings.ORACLE_TIMEOUT_SECONDS)
        self._headers = {"Authorization": f"Bearer {token}"}
        self._max_retries = settings.GATEWAY_MAX_RETRIES if max_retries is None else max_retries
        self._retry_delay = settings.GATEWAY_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __call__(self, request: FunnelRequest) -> Dict[str, Any]:
        last_error: Optional[EconomyError] = None
        for attempt in range(max(int(self._max_retries), 0) + 1):
            if attempt:
                await self._sleep(self._retry_delay)
            try:
                return await self._post_json("/funnel/step", request.as_payload())
            except (OracleNetworkError, OracleServerError) as exc:
                last_error = exc
                if not exc.retryable:
                    raise
                logger.warning("Funnel step attempt %s failed: %s", attempt + 1, exc.message)
        raise last_error

    async def credit_plumes(self, device_id: str, amount: int) -> Optional[int]:
        payload = await self._post_json("/plumes/credit", {"device_id": device_id, "amount": amount})
        return payload.get("balance")

    async def get_plumes_info(self, device_id: str) -> Dict[str, Any]:
        try:
            response = await self._client.get("/plumes/info", params={"device_id": device_id}, headers=self._headers)
        except httpx.TransportError as exc:
            raise OracleNetworkError(f"Network error: {exc}") from exc
        return self._raise_for_status(response)

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload, headers=self._headers)
        except httpx.TimeoutException as exc:
            raise OracleNetworkError("Gateway timeout") from exc
        except httpx.TransportError as exc:
            raise OracleNetworkError(f"Network error: {exc}") from exc
        return self._raise_for_status(response)

    def _raise_for_status(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"detail": payload}
        message = str(payload.get("message") or payload.get("detail") or response.reason_phrase)

        if response.status_code == 402:
            raise InsufficientCreditsError(message)
        if response.status_code == 429:
            raise QuotaExceededError(message, resets_at=_parse_datetime(payload.get("resets_at")))
        if response.status_code >= 500:
            raise OracleServerError(message, retryable=response.status_code in (502, 503, 504))
        if response.status_code >= 400:
            raise ValidationError(message)
        return payload
