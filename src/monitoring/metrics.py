"""Prometheus metrics definitions."""

from __future__ import annotations

import time

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

from src.execution.circuit_breaker import BreakerState, BreakerTransition

_BREAKER_STATE_VALUE = {
    BreakerState.CLOSED: 0,
    BreakerState.HALF_OPEN: 1,
    BreakerState.OPEN: 2,
}


class Metrics:
    """Expose order execution metrics for monitoring."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or REGISTRY
        reg = self.registry

        self.orders_queued_total = Counter(
            "orders_queued_total", "Orders accepted into the queue", registry=reg
        )
        self.order_outcomes_total = Counter(
            "order_outcomes_total",
            "Per-order tick outcomes",
            ["outcome"],
            registry=reg,
        )
        self.order_errors_total = Counter(
            "order_errors_total", "Submission failures by error kind", ["kind"], registry=reg
        )
        self.order_submit_latency_ms = Histogram(
            "order_submit_latency_ms", "Exchange submission latency (ms)", registry=reg
        )
        self.orders_by_status = Gauge(
            "orders_by_status", "Orders in the store by status", ["status"], registry=reg
        )

        self.tick_duration_sec = Histogram(
            "tick_duration_sec", "Execution tick duration (s)", registry=reg
        )
        self.ticks_skipped_total = Counter(
            "ticks_skipped_total", "Ticks skipped because one was still running", registry=reg
        )
        self.loop_last_tick_age_sec = Gauge(
            "loop_last_tick_age_sec",
            "Seconds since the loop last ticked",
            ["loop"],
            registry=reg,
        )
        self.stuck_orders_reset_total = Counter(
            "stuck_orders_reset_total", "Processing orders reset after timeout", registry=reg
        )
        self.bot_exits_recovered_total = Counter(
            "bot_exits_recovered_total", "Bots returned to active after abandoned exits", registry=reg
        )

        self.circuit_breaker_state = Gauge(
            "circuit_breaker_state",
            "Breaker state per credential (0 closed, 1 half-open, 2 open)",
            ["key"],
            registry=reg,
        )
        self.circuit_breaker_transitions_total = Counter(
            "circuit_breaker_transitions_total",
            "Breaker transitions by target state",
            ["state"],
            registry=reg,
        )
        self.rate_limiter_in_flight = Gauge(
            "rate_limiter_in_flight", "Submissions currently holding a slot", registry=reg
        )

        self._last_tick: dict[str, float] = {}

    def start(self, port: int) -> None:
        start_http_server(port, registry=self.registry)

    def record_breaker_transition(self, transition: BreakerTransition) -> None:
        self.circuit_breaker_state.labels(transition.key).set(
            _BREAKER_STATE_VALUE[transition.current]
        )
        self.circuit_breaker_transitions_total.labels(transition.current.value).inc()

    def update_queue_counts(self, counts: dict[str, int]) -> None:
        for status, count in counts.items():
            if status != "active":
                self.orders_by_status.labels(status).set(count)

    def mark_loop_tick(self, loop: str) -> None:
        now = time.time()
        self._last_tick[loop] = now
        self.loop_last_tick_age_sec.labels(loop).set(0)

    def refresh_loop_ages(self) -> None:
        now = time.time()
        for loop, last in self._last_tick.items():
            self.loop_last_tick_age_sec.labels(loop).set(now - last)
