"""
imports/circuit_breaker.py

Three-state circuit breaker guarding the CV extraction call.

  closed    ──failure_threshold consecutive failures──▶ open
  open      ──reset_timeout_ms elapsed (checked lazily)─▶ half-open
  half-open ──success_threshold consecutive successes──▶ closed
  half-open ──any failure──────────────────────────────▶ open

A breaker lives for one processing invocation only. Its job is to stop the
current invocation from spending its time budget on a service that keeps
failing; it carries nothing across continuations.
"""

import logging
import time
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 3
    reset_timeout_ms: int = 30000
    success_threshold: int = 2


@dataclass
class CircuitBreakerState:
    state: str = CLOSED
    failures: int = 0
    successes: int = 0
    last_failure_time: float | None = None
    last_error_category: str | None = None


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class CircuitBreaker:
    def __init__(self, config: CircuitBreakerConfig | None = None, clock=_monotonic_ms, **overrides):
        self.config = replace(config or CircuitBreakerConfig(), **overrides)
        self._clock = clock
        self._state = CircuitBreakerState()

    @property
    def state(self) -> str:
        return self._state.state

    def can_execute(self) -> bool:
        """
        False only while open and still cooling down. The call that finds the
        cooldown elapsed moves the breaker to half-open and returns True.
        """
        if self._state.state == CLOSED:
            return True

        if self._state.state == OPEN:
            if self._cooldown_elapsed():
                self._state.state = HALF_OPEN
                self._state.successes = 0
                logger.info("Circuit breaker half-open — allowing trial requests")
                return True
            return False

        return True

    def on_success(self) -> None:
        if self._state.state == HALF_OPEN:
            self._state.successes += 1
            if self._state.successes >= self.config.success_threshold:
                self._close()
        elif self._state.state == CLOSED:
            self._state.failures = 0

    def on_failure(self, category: str | None = None) -> None:
        self._state.failures += 1
        self._state.last_failure_time = self._clock()
        self._state.last_error_category = category

        if self._state.state == HALF_OPEN:
            self._open()
        elif self._state.failures >= self.config.failure_threshold:
            self._open()

    def is_open(self) -> bool:
        return self._state.state == OPEN

    def get_state(self) -> CircuitBreakerState:
        """Snapshot for logging; mutating it does not affect the breaker."""
        return replace(self._state)

    def get_remaining_cooldown_ms(self) -> float:
        if self._state.state != OPEN or self._state.last_failure_time is None:
            return 0
        elapsed = self._clock() - self._state.last_failure_time
        return max(0, self.config.reset_timeout_ms - elapsed)

    def force_close(self) -> None:
        self._close()

    # ── Transitions ────────────────────────────────────────────────────────────

    def _open(self) -> None:
        logger.warning(
            "Circuit breaker opened after %s failure(s) (last error: %s)",
            self._state.failures, self._state.last_error_category,
        )
        self._state.state = OPEN

    def _close(self) -> None:
        logger.info("Circuit breaker closed — extraction service recovered")
        self._state = CircuitBreakerState()

    def _cooldown_elapsed(self) -> bool:
        if self._state.last_failure_time is None:
            return True
        return self._clock() - self._state.last_failure_time >= self.config.reset_timeout_ms
