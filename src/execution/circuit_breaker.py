"""Per-credential circuit breaker."""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

import structlog

from src.config.settings import CircuitBreakerConfig
from src.ledger.events import format_timestamp, utc_now


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class Admission(str, Enum):
    DENIED = "denied"
    ALLOWED = "allowed"
    # Holds the single half-open trial until settled or released.
    TRIAL = "trial"


@dataclass
class CircuitBreakerState:
    """Mutable breaker bookkeeping for one credential. Only touched under the breaker lock."""

    key: str
    state: BreakerState = BreakerState.CLOSED
    failure_times: deque[datetime] = field(default_factory=deque)
    last_failure_time: datetime | None = None
    last_error: str | None = None
    opened_at: datetime | None = None
    last_success_time: datetime | None = None
    trial_in_flight: bool = False

    @property
    def failure_count(self) -> int:
        return len(self.failure_times)

    def to_dict(self) -> dict[str, Any]:
        def _ts(value: datetime | None) -> str | None:
            return format_timestamp(value) if value else None

        return {
            "key": self.key,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": _ts(self.last_failure_time),
            "last_error": self.last_error,
            "opened_at": _ts(self.opened_at),
            "last_success_time": _ts(self.last_success_time),
            "trial_in_flight": self.trial_in_flight,
        }


@dataclass(frozen=True)
class BreakerTransition:
    key: str
    previous: BreakerState
    current: BreakerState
    reason: str


class CircuitBreaker:
    """Track failures per credential and exclude credentials that keep failing.

    CLOSED opens once ``failure_threshold`` failures fall inside
    ``failure_window_sec``. OPEN becomes HALF_OPEN on the first check after
    ``reset_timeout_sec``; HALF_OPEN lets exactly one trial through, reserved by
    ``admit`` and settled by ``record_success``, ``record_failure`` or
    ``release``.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        clock: Callable[[], datetime] = utc_now,
        on_transition: Callable[[BreakerTransition], None] | None = None,
    ) -> None:
        self.config = config
        self._clock = clock
        self._on_transition = on_transition
        self._states: dict[str, CircuitBreakerState] = {}
        self._lock = threading.Lock()
        self.log = structlog.get_logger(__name__)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def is_available(self, key: str) -> bool:
        """True if a request for ``key`` would currently be allowed. Reserves nothing."""
        if not self.enabled:
            return True
        with self._lock:
            entry = self._entry(key)
            transition = self._maybe_half_open(entry, self._clock())
            available = entry.state == BreakerState.CLOSED or (
                entry.state == BreakerState.HALF_OPEN and not entry.trial_in_flight
            )
        self._emit(transition)
        return available

    def allow_request(self, key: str) -> bool:
        return self.admit(key) != Admission.DENIED

    def admit(self, key: str) -> Admission:
        """Check and, in HALF_OPEN, reserve the single trial request."""
        if not self.enabled:
            return Admission.ALLOWED
        with self._lock:
            entry = self._entry(key)
            transition = self._maybe_half_open(entry, self._clock())
            if entry.state == BreakerState.CLOSED:
                admission = Admission.ALLOWED
            elif entry.state == BreakerState.HALF_OPEN and not entry.trial_in_flight:
                entry.trial_in_flight = True
                admission = Admission.TRIAL
            else:
                admission = Admission.DENIED
        self._emit(transition)
        return admission

    def release(self, key: str) -> None:
        """Give back a trial reservation that was never used.

        Only the holder of an ``Admission.TRIAL`` may call this.
        """
        with self._lock:
            entry = self._states.get(key)
            if entry is not None:
                entry.trial_in_flight = False

    def record_success(self, key: str) -> BreakerTransition | None:
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entry(key)
            previous = entry.state
            entry.last_success_time = self._clock()
            entry.failure_times.clear()
            entry.trial_in_flight = False
            entry.opened_at = None
            entry.state = BreakerState.CLOSED
            transition = None
            if previous != BreakerState.CLOSED:
                transition = BreakerTransition(key, previous, BreakerState.CLOSED, "success")
        self._emit(transition)
        return transition

    def record_failure(
        self, key: str, error: str | None = None, weight: int = 1
    ) -> BreakerTransition | None:
        """Register a failed request. ``weight=0`` only clears a pending trial."""
        if not self.enabled:
            return None
        with self._lock:
            entry = self._entry(key)
            now = self._clock()
            previous = entry.state
            entry.trial_in_flight = False
            if weight <= 0:
                return None
            entry.last_failure_time = now
            entry.last_error = error
            transition = None
            if entry.state == BreakerState.HALF_OPEN:
                entry.state = BreakerState.OPEN
                entry.opened_at = now
                transition = BreakerTransition(key, previous, BreakerState.OPEN, "trial_failed")
            elif entry.state == BreakerState.CLOSED:
                entry.failure_times.extend([now] * weight)
                self._prune(entry, now)
                if entry.failure_count >= self.config.failure_threshold:
                    entry.state = BreakerState.OPEN
                    entry.opened_at = now
                    transition = BreakerTransition(
                        key, previous, BreakerState.OPEN, "failure_threshold_reached"
                    )
        self._emit(transition)
        return transition

    def get_state(self, key: str) -> dict[str, Any]:
        with self._lock:
            entry = self._entry(key)
            transition = self._maybe_half_open(entry, self._clock())
            self._prune(entry, self._clock())
            data = entry.to_dict()
        self._emit(transition)
        return data

    def state_of(self, key: str) -> BreakerState:
        return BreakerState(self.get_state(key)["state"])

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            keys = list(self._states)
        return {key: self.get_state(key) for key in keys}

    def reset(self, key: str) -> bool:
        """Admin: forget everything about ``key``. Returns False if it was unknown."""
        with self._lock:
            removed = self._states.pop(key, None)
        if removed is not None:
            self.log.info("circuit_reset", key=key, previous_state=removed.state.value)
        return removed is not None

    def clear_all(self) -> int:
        with self._lock:
            count = len(self._states)
            self._states.clear()
        self.log.info("circuit_breakers_cleared", count=count)
        return count

    def _entry(self, key: str) -> CircuitBreakerState:
        entry = self._states.get(key)
        if entry is None:
            entry = CircuitBreakerState(key=key)
            self._states[key] = entry
        return entry

    def _prune(self, entry: CircuitBreakerState, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.config.failure_window_sec)
        while entry.failure_times and entry.failure_times[0] < cutoff:
            entry.failure_times.popleft()

    def _maybe_half_open(
        self, entry: CircuitBreakerState, now: datetime
    ) -> BreakerTransition | None:
        if entry.state != BreakerState.OPEN or entry.opened_at is None:
            return None
        if now - entry.opened_at < timedelta(seconds=self.config.reset_timeout_sec):
            return None
        entry.state = BreakerState.HALF_OPEN
        entry.trial_in_flight = False
        return BreakerTransition(entry.key, BreakerState.OPEN, BreakerState.HALF_OPEN, "reset_timeout")

    def _emit(self, transition: BreakerTransition | None) -> None:
        if transition is None:
            return
        event = {
            BreakerState.OPEN: "circuit_opened",
            BreakerState.HALF_OPEN: "circuit_half_open",
            BreakerState.CLOSED: "circuit_closed",
        }[transition.current]
        log = self.log.warning if transition.current == BreakerState.OPEN else self.log.info
        log(
            event,
            key=transition.key,
            previous_state=transition.previous.value,
            reason=transition.reason,
        )
        if self._on_transition is not None:
            self._on_transition(transition)
