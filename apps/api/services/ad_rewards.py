"""Two-stage credit retry after a rewarded ad view."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
from typing import Awaitable, Callable, Optional

from config import settings

logger = logging.getLogger(__name__)

CreditCallable = Callable[[str, int], Awaitable[Optional[int]]]
SleepCallable = Callable[[float], Awaitable[None]]


class AdCreditOutcome(str, Enum):
    CREDITED = "credited"
    CREDITED_AFTER_RETRY = "credited_after_retry"
    PROCEED_OPTIMISTIC = "proceed_optimistic"


@dataclass(frozen=True)
class AdCreditResult:
    outcome: AdCreditOutcome
    balance: Optional[int]
    attempts: int

    @property
    def confirmed(self) -> bool:
        return self.outcome != AdCreditOutcome.PROCEED_OPTIMISTIC


class AdCreditRetryPolicy:
    """
    Credit once after the reward event; on failure wait and retry once.

    When the retry fails too, the policy escalates to PROCEED_OPTIMISTIC: the
    user did watch the ad and the server-side credit may well have landed
    even though this client could not confirm it.
    """

    def __init__(
        self,
        credit: CreditCallable,
        retry_delay_seconds: Optional[float] = None,
        sleep: SleepCallable = asyncio.sleep,
    ):
        self._credit = credit
        self._retry_delay = (
            settings.AD_CREDIT_RETRY_DELAY_SECONDS if retry_delay_seconds is None else retry_delay_seconds
        )
        self._sleep = sleep

    async def _attempt(self, device_id: str, amount: int) -> Optional[int]:
        try:
            balance = await self._credit(device_id, amount)
        except Exception as exc:
            logger.warning("Ad credit attempt failed for device %s: %s", device_id, exc)
            return None
        if balance is None or balance < 0:
            logger.warning("Ad credit attempt rejected for device %s: balance=%s", device_id, balance)
            return None
        return balance

    async def run(self, device_id: str, amount: int) -> AdCreditResult:
        balance = await self._attempt(device_id, amount)
        if balance is not None:
            return AdCreditResult(AdCreditOutcome.CREDITED, balance, attempts=1)

        await self._sleep(max(float(self._retry_delay), 0.0))
        balance = await self._attempt(device_id, amount)
        if balance is not None:
            return AdCreditResult(AdCreditOutcome.CREDITED_AFTER_RETRY, balance, attempts=2)

        logger.warning("Ad credit unconfirmed after retry for device %s; proceeding optimistically", device_id)
        return AdCreditResult(AdCreditOutcome.PROCEED_OPTIMISTIC, None, attempts=2)
