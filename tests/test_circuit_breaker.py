from __future__ import annotations

from conftest import FakeClock
from src.config.settings import CircuitBreakerConfig
from src.execution.circuit_breaker import (
    Admission,
    BreakerState,
    BreakerTransition,
    CircuitBreaker,
)


def _breaker(clock: FakeClock, transitions: list | None = None, **overrides) -> CircuitBreaker:
    config = CircuitBreakerConfig(**overrides)
    on_transition = transitions.append if transitions is not None else None
    return CircuitBreaker(config, clock=clock, on_transition=on_transition)


def test_opens_after_threshold_failures_in_window(clock: FakeClock) -> None:
    transitions: list[BreakerTransition] = []
    breaker = _breaker(clock, transitions)

    assert breaker.record_failure("k1", "boom") is None
    assert breaker.record_failure("k1", "boom") is None
    assert breaker.allow_request("k1")
    opened = breaker.record_failure("k1", "boom")

    assert opened is not None
    assert opened.current == BreakerState.OPEN
    assert not breaker.allow_request("k1")
    assert not breaker.is_available("k1")
    assert transitions == [opened]
    assert breaker.get_state("k1")["last_error"] == "boom"


def test_failures_outside_window_do_not_count(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_window_sec=60)
    breaker.record_failure("k1")
    breaker.record_failure("k1")
    clock.advance(61)
    breaker.record_failure("k1")
    assert breaker.state_of("k1") == BreakerState.CLOSED
    assert breaker.get_state("k1")["failure_count"] == 1


def test_keys_are_independent(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_threshold=1)
    breaker.record_failure("k1")
    assert not breaker.allow_request("k1")
    assert breaker.allow_request("k2")


def test_half_open_allows_exactly_one_trial(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_threshold=1, reset_timeout_sec=300)
    breaker.record_failure("k1")
    clock.advance(299)
    assert not breaker.allow_request("k1")

    clock.advance(1)
    assert breaker.is_available("k1")
    assert breaker.state_of("k1") == BreakerState.HALF_OPEN
    assert breaker.allow_request("k1")
    assert not breaker.allow_request("k1")
    assert not breaker.is_available("k1")


def test_trial_success_closes(clock: FakeClock) -> None:
    transitions: list[BreakerTransition] = []
    breaker = _breaker(clock, transitions, failure_threshold=1, reset_timeout_sec=10)
    breaker.record_failure("k1")
    clock.advance(10)
    assert breaker.allow_request("k1")

    closed = breaker.record_success("k1")
    assert closed is not None
    assert closed.previous == BreakerState.HALF_OPEN
    assert breaker.state_of("k1") == BreakerState.CLOSED
    assert breaker.get_state("k1")["failure_count"] == 0
    assert [t.current for t in transitions] == [
        BreakerState.OPEN,
        BreakerState.HALF_OPEN,
        BreakerState.CLOSED,
    ]


def test_trial_failure_reopens_with_fresh_timeout(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_threshold=1, reset_timeout_sec=10)
    breaker.record_failure("k1")
    clock.advance(10)
    assert breaker.allow_request("k1")

    reopened = breaker.record_failure("k1", "still broken")
    assert reopened is not None
    assert reopened.reason == "trial_failed"
    clock.advance(9)
    assert not breaker.allow_request("k1")
    clock.advance(1)
    assert breaker.allow_request("k1")


def test_release_returns_unused_trial(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_threshold=1, reset_timeout_sec=10)
    breaker.record_failure("k1")
    clock.advance(10)
    assert breaker.allow_request("k1")
    breaker.release("k1")
    assert breaker.allow_request("k1")


def test_admit_reports_whether_trial_was_reserved(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_threshold=1, reset_timeout_sec=10)
    assert breaker.admit("k1") == Admission.ALLOWED
    breaker.record_failure("k1")
    assert breaker.admit("k1") == Admission.DENIED

    clock.advance(10)
    assert breaker.admit("k1") == Admission.TRIAL
    assert breaker.admit("k1") == Admission.DENIED


def test_zero_weight_failure_only_clears_trial(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_threshold=1, reset_timeout_sec=10)
    assert breaker.record_failure("k1", "rate limited", weight=0) is None
    assert breaker.state_of("k1") == BreakerState.CLOSED

    breaker.record_failure("k1")
    clock.advance(10)
    assert breaker.allow_request("k1")
    assert breaker.record_failure("k1", "rate limited", weight=0) is None
    assert breaker.state_of("k1") == BreakerState.HALF_OPEN
    assert breaker.allow_request("k1")


def test_disabled_breaker_always_allows(clock: FakeClock) -> None:
    breaker = _breaker(clock, enabled=False, failure_threshold=1)
    breaker.record_failure("k1")
    breaker.record_failure("k1")
    assert breaker.allow_request("k1")
    assert breaker.admit("k1") == Admission.ALLOWED
    assert breaker.snapshot() == {}


def test_admin_reset_and_clear(clock: FakeClock) -> None:
    breaker = _breaker(clock, failure_threshold=1)
    breaker.record_failure("k1")
    breaker.record_failure("k2")
    assert set(breaker.snapshot()) == {"k1", "k2"}

    assert breaker.reset("k1")
    assert not breaker.reset("k1")
    assert breaker.allow_request("k1")
    assert breaker.clear_all() == 2
    assert breaker.allow_request("k2")
