"""
imports/rate_limiter.py

Adaptive pacing for the CV extraction call.

One delay value, applied before every request and adjusted by outcome:
  success      → after 3 in a row, delay × recovery_factor (floor min_delay_ms)
  rate limit   → delay × backoff_factor (cap max_delay_ms)
  other error  → delay × 1.2 (cap max_delay_ms)

Like the circuit breaker, a limiter lives for one invocation; every
continuation starts again from initial_delay_ms.
"""

import logging
import random
import time
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

# Consecutive successes before the delay starts to recover.
RECOVERY_STREAK = 3

# Multiplier applied on non-rate-limit failures.
ERROR_BACKOFF_FACTOR = 1.2


@dataclass(frozen=True)
class RateLimiterConfig:
    initial_delay_ms: int = 1500
    min_delay_ms: int = 500
    max_delay_ms: int = 10000
    backoff_factor: float = 2
    recovery_factor: float = 0.9


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class AdaptiveRateLimiter:
    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        clock=_monotonic_ms,
        sleep=time.sleep,
        **overrides,
    ):
        self.config = replace(config or RateLimiterConfig(), **overrides)
        self._clock = clock
        self._sleep = sleep
        self._current_delay_ms = self.config.initial_delay_ms
        self.consecutive_successes = 0
        self.consecutive_failures = 0
        self._last_request_time: float | None = None

    @property
    def current_delay_ms(self) -> int:
        return self._current_delay_ms

    def wait_for_next_request(self) -> None:
        """Block until current_delay_ms has passed since the previous request."""
        if self._last_request_time is not None:
            elapsed = self._clock() - self._last_request_time
            remaining = self._current_delay_ms - elapsed
            if remaining > 0:
                self._sleep(remaining / 1000)
        self._last_request_time = self._clock()

    def on_success(self) -> None:
        self.consecutive_successes += 1
        self.consecutive_failures = 0

        if self.consecutive_successes >= RECOVERY_STREAK:
            self._current_delay_ms = max(
                self.config.min_delay_ms,
                round(self._current_delay_ms * self.config.recovery_factor),
            )
            logger.debug(
                "Rate limiter: delay reduced to %sms after %s successes",
                self._current_delay_ms, self.consecutive_successes,
            )

    def on_rate_limit(self) -> None:
        self.consecutive_failures += 1
        self.consecutive_successes = 0
        self._current_delay_ms = min(
            self.config.max_delay_ms,
            round(self._current_delay_ms * self.config.backoff_factor),
        )
        logger.info("Rate limiter: delay increased to %sms after rate limit", self._current_delay_ms)

    def on_error(self) -> None:
        self.consecutive_failures += 1
        self.consecutive_successes = 0
        self._current_delay_ms = min(
            self.config.max_delay_ms,
            round(self._current_delay_ms * ERROR_BACKOFF_FACTOR),
        )

    def reset(self) -> None:
        self._current_delay_ms = self.config.initial_delay_ms
        self.consecutive_successes = 0
        self.consecutive_failures = 0
        self._last_request_time = None

    def get_stats(self) -> dict:
        return {
            "current_delay_ms": self._current_delay_ms,
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
        }


def calculate_backoff_delay(
    attempt: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 30000,
    jitter_factor: float = 0.1,
) -> int:
    """
    Exponential backoff (base, 2×base, 4×base, …) capped at max_delay_ms, with
    ±jitter_factor multiplicative jitter so parallel retries spread out.
    """
    capped = min(base_delay_ms * (2 ** attempt), max_delay_ms)
    jitter = capped * jitter_factor * (random.random() - 0.5) * 2
    return round(capped + jitter)
