from __future__ import annotations

import math
import time
from dataclasses import replace
from typing import Callable

from apigateway.models.service import BreakerState, ServiceState


class CircuitBreaker:
    """Per-service breaker transitions over immutable ``ServiceState`` values.

    closed -> open after ``failure_threshold`` consecutive failures,
    open -> half_open once ``cooldown_seconds`` have passed (one trial admitted),
    half_open -> closed on success, back to open on failure.

    When disabled every request is admitted and the state stays closed, but
    consecutive failures are still counted.
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.enabled = enabled
        self.failure_threshold = max(1, failure_threshold)
        self.cooldown_seconds = max(0.0, cooldown_seconds)
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _cooled(self, state: ServiceState, now: float) -> bool:
        if state.opened_at is None:
            return True
        return now - state.opened_at >= self.cooldown_seconds

    def on_success(self, state: ServiceState, now: float) -> ServiceState:
        if self.enabled and state.breaker is BreakerState.OPEN and not self._cooled(state, now):
            return replace(state, consecutive_failures=0, trial_in_flight=False)
        return replace(
            state,
            consecutive_failures=0,
            breaker=BreakerState.CLOSED,
            opened_at=None,
            trial_in_flight=False,
        )

    def on_failure(self, state: ServiceState, now: float) -> ServiceState:
        failures = state.consecutive_failures + 1
        if not self.enabled:
            return replace(
                state,
                consecutive_failures=failures,
                breaker=BreakerState.CLOSED,
                opened_at=None,
                trial_in_flight=False,
            )
        trip = state.breaker is not BreakerState.CLOSED or failures >= self.failure_threshold
        if trip:
            return replace(
                state,
                consecutive_failures=failures,
                breaker=BreakerState.OPEN,
                opened_at=now,
                trial_in_flight=False,
            )
        return replace(state, consecutive_failures=failures, trial_in_flight=False)

    def admit(self, state: ServiceState, now: float) -> tuple[bool, ServiceState]:
        if not self.enabled or state.breaker is BreakerState.CLOSED:
            return True, state
        if state.breaker is BreakerState.OPEN:
            if not self._cooled(state, now):
                return False, state
            return True, replace(state, breaker=BreakerState.HALF_OPEN, trial_in_flight=True)
        if state.trial_in_flight:
            return False, state
        return True, replace(state, trial_in_flight=True)

    def release(self, state: ServiceState) -> ServiceState:
        if not state.trial_in_flight:
            return state
        return replace(state, trial_in_flight=False)

    def retry_after(self, state: ServiceState, now: float) -> int:
        if state.breaker is not BreakerState.OPEN or state.opened_at is None:
            return 1
        remaining = self.cooldown_seconds - (now - state.opened_at)
        return max(1, int(math.ceil(remaining)))
