"""Typed errors for the plumes economy and the funnel gateway."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional


class EconomyError(Exception):
    """Base class; `status_code` and `code` drive the JSON error response."""

    status_code = 400
    code = "error"

    def __init__(self, message: str = "", **extra: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        for key, value in self.extra.items():
            payload[key] = value.isoformat() if isinstance(value, datetime) else value
        return payload


class InsufficientCreditsError(EconomyError):
    """Recoverable: the client should offer a replenishment channel."""

    status_code = 402
    code = "no_plumes"


class QuotaExceededError(EconomyError):
    status_code = 429
    code = "quota_exceeded"

    def __init__(self, message: str = "", resets_at: Optional[datetime] = None, **extra: Any):
        super().__init__(message, resets_at=resets_at, **extra)
        self.resets_at = resets_at


class ValidationError(EconomyError):
    """Caller mistake (malformed promo code, unknown tag, bad amount)."""

    status_code = 422
    code = "validation_error"


class CooldownError(EconomyError):
    """Informational: the daily reward is not available yet."""

    status_code = 409
    code = "daily_reward_cooldown"


class OracleNetworkError(EconomyError):
    status_code = 502
    code = "oracle_unreachable"
    retryable = True


class OracleServerError(EconomyError):
    status_code = 502
    code = "oracle_failed"

    def __init__(self, message: str = "", retryable: bool = False, **extra: Any):
        super().__init__(message, **extra)
        self.retryable = retryable


class FunnelBusyError(EconomyError):
    """A choice was submitted while another call is still in flight."""

    status_code = 409
    code = "funnel_busy"
