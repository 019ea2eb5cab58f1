"""Per-workflow circuit breaker."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from pydantic import BaseModel

from .utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


class BreakerState(BaseModel):
    workflow_id: str
    state: str
    consecutive_failures: int
    opened_at: Optional[datetime] = None
    retry_at: Optional[datetime] = None


class CircuitBreaker:
    """
    States:
      closed    - runs start normally; each failed run increments the streak
      open      - starts are refused until the cool-down elapses
      half_open - one trial run may start; success closes, failure re-opens

    A success recorded while open (a run that was already in flight) does not
    close the breaker; only the cool-down or :meth:`reset` does.
    """

    def __init__(
        self,
        workflow_id: str,
        threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.workflow_id = workflow_id
        self.threshold = threshold
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock or SystemClock()
        self._failures = 0
        self._opened_at: Optional[datetime] = None
        self._state = "closed"
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        if self._state == "open" and self._opened_at is not None:
            if self._clock.now() - self._opened_at >= self.cooldown:
                self._state = "half_open"
                self._trial_in_flight = False
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def allow(self) -> bool:
        """Return ``True`` if a new run may start, claiming the trial slot if half-open."""
        state = self.state
        if state == "closed":
            return True
        if state == "half_open" and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def describe_rejection(self) -> str:
        retry_at = self._opened_at + self.cooldown if self._opened_at else None
        when = f"; retry after {retry_at.isoformat()}" if retry_at else ""
        return f"{self._failures} consecutive failed runs{when}"

    def record_success(self) -> None:
        state = self.state
        if state == "open":
            return
        if state == "half_open":
            logger.info(f"Circuit breaker for workflow {self.workflow_id} closed after a trial run")
        self._failures = 0
        self._state = "closed"
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        state = self.state
        self._failures += 1
        if state == "half_open" or (state == "closed" and self._failures >= self.threshold):
            self._state = "open"
            self._opened_at = self._clock.now()
            self._trial_in_flight = False
            logger.warning(
                f"Circuit breaker for workflow {self.workflow_id} opened after "
                f"{self._failures} consecutive failures"
            )

    def reset(self) -> None:
        self._failures = 0
        self._state = "closed"
        self._opened_at = None
        self._trial_in_flight = False

    def snapshot(self) -> BreakerState:
        state = self.state
        return BreakerState(
            workflow_id=self.workflow_id,
            state=state,
            consecutive_failures=self._failures,
            opened_at=self._opened_at,
            retry_at=self._opened_at + self.cooldown if self._opened_at else None,
        )


class BreakerRegistry:
    """Process-wide breakers keyed by workflow id; empty on process start."""

    def __init__(
        self,
        threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or SystemClock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, workflow_id: str) -> CircuitBreaker:
        if workflow_id not in self._breakers:
            self._breakers[workflow_id] = CircuitBreaker(
                workflow_id,
                threshold=self.threshold,
                cooldown_seconds=self.cooldown_seconds,
                clock=self._clock,
            )
        return self._breakers[workflow_id]

    def reset(self, workflow_id: str) -> None:
        self.get(workflow_id).reset()

    def snapshot(self) -> Dict[str, BreakerState]:
        return {wid: b.snapshot() for wid, b in self._breakers.items()}
