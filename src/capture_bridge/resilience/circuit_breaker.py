"""Per-dependency circuit breakers.

    closed ──(failures >= threshold)──> open ──(cooldown elapsed)──> half_open
      ^                                  ^                              │
      └──────────(probe succeeds)────────┼──────────────────────────────┤
                                         └───────(probe fails)──────────┘

Breaker state lives in memory only and starts closed on every process start.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..errors import CircuitOpenError
from ..events import EventWriter
from ..models.resilience import CircuitState

logger = logging.getLogger(__name__)

StateChangeCallback = Callable[[str, CircuitState, CircuitState, str], None]


@dataclass(frozen=True)
class BreakerSnapshot:
    key: str
    state: CircuitState
    consecutive_failures: int
    opened_at: Optional[float]


class CircuitBreaker:
    """Tracks consecutive failures for one dependency.

    Args:
        key: Dependency name (e.g. "gmail", "whisper", "icloud")
        failure_threshold: Default consecutive failures that open the circuit
        cooldown_seconds: Time spent open before a probe is admitted
        clock: Monotonic clock, injectable for tests
        on_state_change: Called with (key, old, new, reason) on every change
    """

    def __init__(
        self,
        key: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateChangeCallback] = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.key = key
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def allow(self) -> None:
        """Admit a call or raise CircuitOpenError.

        In half_open only a single probe is admitted until it reports back.
        """
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return
            raise CircuitOpenError(self.key, retry_after=self._retry_after())

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._probe_in_flight = False
            if self._state != CircuitState.CLOSED:
                self._opened_at = None
                self._set_state(CircuitState.CLOSED, "probe succeeded")

    def record_failure(self, threshold: Optional[int] = None) -> None:
        """Count a failure toward opening the circuit.

        `threshold` overrides the breaker default for this failure's kind.
        """
        with self._lock:
            self._failures += 1
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._open("probe failed")
                return
            limit = threshold if threshold is not None else self.failure_threshold
            if self._state == CircuitState.CLOSED and self._failures >= limit:
                self._open(f"{self._failures} consecutive failures")

    def release_probe(self) -> None:
        """End a half-open probe whose failure does not count against the breaker."""
        with self._lock:
            self._probe_in_flight = False

    def force_open(self, reason: str) -> None:
        with self._lock:
            self._probe_in_flight = False
            self._open(reason)

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            self._maybe_half_open()
            return BreakerSnapshot(
                key=self.key,
                state=self._state,
                consecutive_failures=self._failures,
                opened_at=self._opened_at,
            )

    # Callers hold self._lock.

    def _open(self, reason: str) -> None:
        self._opened_at = self._clock()
        if self._state != CircuitState.OPEN:
            self._set_state(CircuitState.OPEN, reason)

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            self._set_state(CircuitState.HALF_OPEN, "cooldown elapsed")

    def _retry_after(self) -> float:
        if self._opened_at is None:
            return 0.0
        return max(0.0, self.cooldown_seconds - (self._clock() - self._opened_at))

    def _set_state(self, new: CircuitState, reason: str) -> None:
        old = self._state
        self._state = new
        logger.info("circuit %s: %s -> %s (%s)", self.key, old.value, new.value, reason)
        if self._on_state_change is not None:
            self._on_state_change(self.key, old, new, reason)


class CircuitBreakerRegistry:
    """Owns one breaker per dependency key.

    Passed explicitly to the components that need it; `reset()` discards all
    state.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        events: Optional[EventWriter] = None,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._events = events
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    key,
                    failure_threshold=self.failure_threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                    on_state_change=self._emit_state_change,
                )
                self._breakers[key] = breaker
            return breaker

    def reset(self) -> None:
        with self._lock:
            self._breakers.clear()

    def snapshot(self) -> dict[str, BreakerSnapshot]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.key: b.snapshot() for b in breakers}

    def _emit_state_change(self, key: str, old: CircuitState, new: CircuitState, reason: str) -> None:
        if self._events is None:
            return
        self._events.emit(
            "circuit_state_change",
            {"dependency": key, "from": old.value, "to": new.value, "reason": reason},
        )
