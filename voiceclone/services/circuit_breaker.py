"""
Circuit breaker guarding the remote training service.

After `failure_threshold` consecutive failed calls the breaker opens and
training jobs fail fast with CIRCUIT_BREAKER_OPEN instead of each waiting
out its own retries. Once `recovery_timeout` has passed one job is let
through as a probe; `success_threshold` good calls close the breaker again,
any failure while probing reopens it.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from voiceclone.core.errors import CircuitBreakerOpenError
from voiceclone.core.logging import get_logger
from voiceclone.core.metrics import get_metrics

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Usage:
        breaker = CircuitBreaker("training", failure_threshold=3)

        breaker.check()          # raises CircuitBreakerOpenError while open
        try:
            profile_id = await post_training_request()
        except httpx.TransportError:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    service: str
    failure_threshold: int = 5
    success_threshold: int = 2
    recovery_timeout: float = 30.0
    clock: Callable[[], float] = time.monotonic

    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    consecutive_failures: int = field(default=0, init=False)
    probe_successes: int = field(default=0, init=False)
    opened_at: Optional[float] = field(default=None, init=False)

    def retry_after(self) -> float:
        """Seconds until an open breaker lets a probe through (0 otherwise)."""
        if self.state != CircuitState.OPEN or self.opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (self.clock() - self.opened_at))

    def check(self) -> None:
        """Raise CircuitBreakerOpenError unless a call may go out now."""
        if self.state == CircuitState.OPEN:
            wait = self.retry_after()
            if wait > 0:
                logger.warning(
                    f"Skipping {self.service} call, circuit open",
                    extra={"service": self.service, "retry_after_seconds": round(wait, 1)},
                )
                raise CircuitBreakerOpenError(self.service, retry_after=wait)
            self._move_to(CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.probe_successes += 1
            if self.probe_successes >= self.success_threshold:
                self._move_to(CircuitState.CLOSED)
        else:
            self.consecutive_failures = 0

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.state == CircuitState.HALF_OPEN or (
            self.state == CircuitState.CLOSED
            and self.consecutive_failures >= self.failure_threshold
        ):
            self._move_to(CircuitState.OPEN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "retry_after_seconds": round(self.retry_after(), 1),
        }

    def _move_to(self, state: CircuitState) -> None:
        previous = self.state
        self.state = state
        if state == CircuitState.OPEN:
            self.opened_at = self.clock()
        elif state == CircuitState.HALF_OPEN:
            self.probe_successes = 0
        else:
            self.consecutive_failures = 0
            self.probe_successes = 0
            self.opened_at = None

        get_metrics().set_circuit_state(self.service, state.value)
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(
            f"Circuit for {self.service}: {previous.value} -> {state.value}",
            extra={
                "service": self.service,
                "from_state": previous.value,
                "to_state": state.value,
                "consecutive_failures": self.consecutive_failures,
            },
        )
