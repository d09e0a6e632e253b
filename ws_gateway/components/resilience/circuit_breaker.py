"""
Circuit breaker guarding the Redis subscriber's reconnect loop.

The subscriber reports each attempt. After failure_threshold consecutive
failures the circuit opens and attempts are refused until recovery_timeout
has passed; then a limited number of trial attempts decide whether it
closes again or reopens.
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable

from shared.config.logging import get_logger
from ws_gateway.components.core.constants import WSConstants

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Usage:
        breaker = CircuitBreaker("redis_subscriber")

        if not breaker.allow_request():
            await asyncio.sleep(...)
            continue
        try:
            msg = await pubsub.get_message(...)
            breaker.record_success()
        except redis.exceptions.ConnectionError as e:
            breaker.record_failure(e)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = WSConstants.CIRCUIT_FAILURE_THRESHOLD,
        recovery_timeout: float = WSConstants.CIRCUIT_RECOVERY_TIMEOUT,
        half_open_max_calls: int = WSConstants.CIRCUIT_HALF_OPEN_MAX_CALLS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._name = name
        self._failure_threshold = failure_threshold
        self._recovery_timeout = recovery_timeout
        self._half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_calls = 0
        self._rejected = 0
        self._transitions = 0

        # The health endpoint reads stats from outside the event loop
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._clock() - self._opened_at < self._recovery_timeout:
                    self._rejected += 1
                    return False
                self._move(CircuitState.HALF_OPEN)

            if self._state == CircuitState.CLOSED:
                return True

            if self._trial_calls >= self._half_open_max_calls:
                self._rejected += 1
                return False
            self._trial_calls += 1
            return True

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._consecutive_failures += 1
            tripped = (
                self._state == CircuitState.HALF_OPEN
                or self._consecutive_failures >= self._failure_threshold
            )
            if tripped and self._state != CircuitState.OPEN:
                self._opened_at = self._clock()
                self._move(CircuitState.OPEN)
        if error is not None:
            logger.debug("Subscriber attempt failed", breaker=self._name, error=repr(error))

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            if self._state == CircuitState.HALF_OPEN:
                self._move(CircuitState.CLOSED)

    def _move(self, new_state: CircuitState) -> None:
        old_state, self._state = self._state, new_state
        self._transitions += 1
        self._trial_calls = 0
        report = logger.error if new_state == CircuitState.OPEN else logger.info
        report(
            "Circuit breaker state change",
            breaker=self._name,
            from_state=old_state.value,
            to_state=new_state.value,
        )

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "rejected_calls": self._rejected,
                "state_changes": self._transitions,
            }
