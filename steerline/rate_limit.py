"""Provider error classification and rate-limit model fallback."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from pydantic import BaseModel

from steerline.exceptions import QueryAbortedError
from steerline.logging import get_logger

log = get_logger(__name__)

RATE_LIMIT_PATTERNS = (
    "429",
    "rate_limit",
    "rate limit",
    "too many requests",
    "overloaded",
    "capacity",
    "credit",
    "quota",
    "exceeded",
    "usage limit",
    "token limit",
)

ABORT_MESSAGES = {
    "aborted",
    "cancelled",
    "canceled",
    "the operation was aborted",
    "this operation was aborted",
}

CRASH_MARKER = "exited with code"


# ---------------------------------------------------------------------------
# Usage snapshot
# ---------------------------------------------------------------------------


class UsageWindow(BaseModel):
    utilization: float = 0.0
    resets_at: datetime | None = None

    def resets_at_epoch(self) -> float | None:
        return self.resets_at.timestamp() if self.resets_at else None


class TierUsage(BaseModel):
    """Utilization of the primary model tier and the lower fallback tier."""

    five_hour: UsageWindow | None = None
    seven_day: UsageWindow | None = None
    seven_day_sonnet: UsageWindow | None = None


class UsageSource(Protocol):
    async def fetch_usage(self) -> TierUsage | None: ...


def lower_tier_available(usage: TierUsage | None, threshold: float = 0.8) -> bool:
    if usage is None or usage.seven_day_sonnet is None:
        return False
    return usage.seven_day_sonnet.utilization < threshold


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def _error_text(error: BaseException) -> str:
    return f"{error} {type(error).__name__}".lower()


def is_rate_limit_error(error: BaseException) -> bool:
    status = getattr(error, "status_code", None)
    if status == 429:
        return True
    lowered = _error_text(error)
    return any(pattern in lowered for pattern in RATE_LIMIT_PATTERNS)


def rate_limit_bucket(error: BaseException) -> str:
    lowered = _error_text(error)
    if "opus" in lowered:
        return "opus"
    if "sonnet" in lowered:
        return "sonnet"
    return "unknown"


def is_crash_error(error: BaseException) -> bool:
    return CRASH_MARKER in str(error)


def is_abort_error(error: BaseException) -> bool:
    if isinstance(error, (asyncio.CancelledError, QueryAbortedError)):
        return True
    if type(error).__name__ == "AbortError":
        return True
    return str(error).strip().lower() in ABORT_MESSAGES


def _time_remaining(resets_at: float | None, now: float) -> str:
    if resets_at is None:
        return "unknown"
    diff = resets_at - now
    if diff <= 0:
        return "resetting soon"
    hours, rem = divmod(int(diff), 3600)
    minutes = rem // 60
    if hours > 24:
        return f"{hours // 24}d {hours % 24}h"
    return f"{hours}h {minutes}m" if hours else f"{minutes}m"


def format_rate_limit_notice(error: BaseException, usage: TierUsage | None, now: float | None = None) -> str:
    current = time.time() if now is None else now
    lines = ["Rate limit reached."]
    if usage is None:
        lines.append(f"Usage unavailable. Raw: {str(error)[:150]}")
        return "\n".join(lines)
    for label, window in (
        ("5h", usage.five_hour),
        ("7d", usage.seven_day),
        ("7d lower tier", usage.seven_day_sonnet),
    ):
        if window is None:
            continue
        lines.append(
            f"  {label}: {round(window.utilization * 100)}% (resets in {_time_remaining(window.resets_at_epoch(), current)})"
        )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Fallback state machine
# ---------------------------------------------------------------------------


class FallbackAction(str, Enum):
    COOLDOWN_ACTIVE = "cooldown_active"
    COOLDOWN_STARTED = "cooldown_started"
    RETRY_WITH_FALLBACK = "retry_with_fallback"
    REPORT = "report"


@dataclass
class RateLimitState:
    consecutive_failures: int = 0
    cooldown_until: float | None = None
    last_known_reset_time: float | None = None
    model_override: str | None = None


class RateLimitFallback:
    """Escalates repeated rate limits: fallback retry, then cooldown.

    The override, once set, survives until the session is reset or a usage
    observation shows the primary tier's window has reset.
    """

    def __init__(
        self,
        fallback_model: str,
        *,
        failure_threshold: int = 3,
        cooldown_seconds: float = 300.0,
        utilization_threshold: float = 0.8,
    ):
        self.fallback_model = fallback_model
        self.failure_threshold = max(1, int(failure_threshold))
        self.cooldown_seconds = float(cooldown_seconds)
        self.utilization_threshold = float(utilization_threshold)
        self.state = RateLimitState()

    @property
    def model_override(self) -> str | None:
        return self.state.model_override

    def cooldown_active(self, now: float) -> bool:
        return self.state.cooldown_until is not None and now < self.state.cooldown_until

    def on_rate_limit(self, now: float, usage: TierUsage | None = None) -> FallbackAction:
        state = self.state
        state.consecutive_failures += 1

        if self.cooldown_active(now):
            return FallbackAction.COOLDOWN_ACTIVE

        if state.consecutive_failures >= self.failure_threshold:
            state.cooldown_until = now + self.cooldown_seconds
            log.warning(
                "Rate limit cooldown started",
                failures=state.consecutive_failures,
                cooldown_seconds=self.cooldown_seconds,
            )
            return FallbackAction.COOLDOWN_STARTED

        if state.model_override is None and lower_tier_available(usage, self.utilization_threshold):
            state.model_override = self.fallback_model
            if usage is not None and usage.five_hour is not None:
                state.last_known_reset_time = usage.five_hour.resets_at_epoch()
            log.info("Switching to fallback model", model=self.fallback_model)
            return FallbackAction.RETRY_WITH_FALLBACK

        return FallbackAction.REPORT

    def on_retry_failed(self) -> None:
        self.state.consecutive_failures += 1

    def on_success(self) -> None:
        self.state.consecutive_failures = 0

    def clear_override(self) -> None:
        if self.state.model_override is not None:
            log.info("Fallback model override cleared", model=self.state.model_override)
        self.state.model_override = None
        self.state.last_known_reset_time = None

    def observe_usage(self, now: float, usage: TierUsage | None = None) -> bool:
        """Clear the override once the primary tier has recovered."""
        if self.state.model_override is None:
            return False
        reset_at = self.state.last_known_reset_time
        if usage is not None and usage.five_hour is not None:
            fresh = usage.five_hour.resets_at_epoch()
            if usage.five_hour.utilization < self.utilization_threshold:
                self.clear_override()
                return True
            if fresh is not None:
                self.state.last_known_reset_time = reset_at = fresh
        if reset_at is not None and now >= reset_at:
            self.clear_override()
            return True
        return False

    def reset(self) -> None:
        self.state = RateLimitState()
