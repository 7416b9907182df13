"""Order executor: drives queued orders to a terminal outcome, one tick at a time."""

from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

import structlog

from src.config.settings import CircuitBreakerConfig, QueueConfig
from src.connectors.credentials import Credential, CredentialProvider
from src.connectors.exchange import ExchangeClient, OrderFill
from src.execution.circuit_breaker import Admission, BreakerTransition, CircuitBreaker
from src.execution.errors import ErrorKind, classify_error, describe_error, policy_for
from src.execution.rate_limiter import RateLimiter, RateLimitTimeout
from src.execution.recovery import RecoveryCoordinator
from src.ledger.bus import EventBus
from src.ledger.events import EventType, format_timestamp, utc_now
from src.monitoring.logging import bind_order_context
from src.orders.models import Order, OrderResult, OrderStatus
from src.orders.queue import OrderQueue

if TYPE_CHECKING:
    from src.monitoring.metrics import Metrics

COMPLETED = "completed"
RETRIED = "retried"
FAILED = "failed"
DEFERRED = "deferred"
SKIPPED = "skipped"


@dataclass
class TickResult:
    started_at: datetime
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    stuck_reset: int = 0
    exits_recovered: int = 0
    duration_sec: float = 0.0
    tick_skipped: bool = False
    outcomes: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["started_at"] = format_timestamp(self.started_at)
        return data


class OrderExecutor:
    """Process eligible orders.

    ``run`` never raises: every per-order failure is recorded on the order and
    the rest of the batch continues. Only one ``run`` executes at a time; an
    overlapping call returns immediately with ``tick_skipped`` set.
    """

    def __init__(
        self,
        queue: OrderQueue,
        exchange: ExchangeClient,
        credentials: CredentialProvider,
        breaker: CircuitBreaker,
        limiter: RateLimiter,
        recovery: RecoveryCoordinator,
        config: QueueConfig,
        breaker_config: CircuitBreakerConfig | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue = queue
        self.exchange = exchange
        self.credentials = credentials
        self.breaker = breaker
        self.limiter = limiter
        self.recovery = recovery
        self.config = config
        self.breaker_config = breaker_config or breaker.config
        self.event_bus = event_bus
        self._clock = clock
        self._running = False
        self._executing: set[str] = set()
        self._last_tick: TickResult | None = None
        self._ticks = 0
        self._ticks_skipped = 0
        self._metrics: Metrics | None = None
        self.log = structlog.get_logger(__name__)

    def set_metrics(self, metrics: Metrics) -> None:
        self._metrics = metrics

    @property
    def running(self) -> bool:
        return self._running

    async def run(self) -> TickResult:
        if self._running:
            self._ticks_skipped += 1
            self.log.warning("order_tick_skipped", reason="previous tick still running")
            if self._metrics:
                self._metrics.ticks_skipped_total.inc()
            await self._publish(EventType.TICK_SKIPPED, {"reason": "previous tick still running"})
            return TickResult(started_at=self._clock(), tick_skipped=True)

        self._running = True
        started = time.perf_counter()
        result = TickResult(started_at=self._clock())
        try:
            await self._tick(result)
        except Exception:
            self.log.exception("order_tick_failed")
        finally:
            result.duration_sec = round(time.perf_counter() - started, 4)
            self._running = False
            self._ticks += 1
            self._last_tick = result
            self._record_tick_metrics(result)

        if result.processed or result.stuck_reset or result.exits_recovered:
            self.log.info(
                "order_tick_completed",
                processed=result.processed,
                completed=result.completed,
                retried=result.retried,
                failed=result.failed,
                deferred=result.deferred,
                skipped=result.skipped,
                stuck_reset=result.stuck_reset,
                duration_sec=result.duration_sec,
            )
            summary = result.to_dict()
            summary.pop("outcomes")
            await self._publish(EventType.TICK_COMPLETED, summary)
        return result

    async def _tick(self, result: TickResult) -> None:
        try:
            recovered = await self.recovery.recover()
            result.stuck_reset = recovered.stuck_reset
            result.exits_recovered = recovered.exits_recovered
        except Exception:
            self.log.exception("order_recovery_failed")

        orders = self.queue.get_orders_eligible_for_execution(
            now=self._clock(), limit=self.limiter.config.max_concurrent_orders
        )
        if not orders:
            return
        outcomes = await asyncio.gather(*(self._process_safely(order) for order in orders))
        for order, outcome in zip(orders, outcomes):
            result.outcomes[order.id] = outcome
            setattr(result, outcome, getattr(result, outcome) + 1)
            if outcome != SKIPPED:
                result.processed += 1

    async def _process_safely(self, order: Order) -> str:
        self._executing.add(order.id)
        try:
            with bind_order_context(order.id, order.execution_id, bot_id=order.bot_id):
                return await self._process(order)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.exception("order_processing_crashed", order_id=order.id)
            return await self._recover_crashed(order, exc)
        finally:
            self._executing.discard(order.id)

    async def _recover_crashed(self, order: Order, exc: Exception) -> str:
        # Nothing may stay in processing because of a bug on this side.
        current = self.queue.get_order(order.id)
        if current is None or current.status != OrderStatus.PROCESSING:
            return SKIPPED
        try:
            updated = await self.queue.mark_failed(
                current.id,
                f"internal error: {describe_error(exc)}",
                current.credential_used,
                terminal=current.attempts + 1 >= current.max_attempts,
                error_kind=ErrorKind.UNKNOWN.value,
            )
        except Exception:
            self.log.exception("order_safety_net_failed", order_id=order.id)
            return SKIPPED
        return FAILED if updated.status == OrderStatus.FAILED else RETRIED

    async def _process(self, order: Order) -> str:
        if len(order.errors) > self.config.abandon_threshold:
            await self._abandon(
                order,
                f"abandoned: {len(order.errors)} failures exceed threshold "
                f"{self.config.abandon_threshold}",
            )
            return FAILED

        credential, trial = self._select_credential(order)
        if credential is None:
            deferred = await self.queue.defer(
                order.id,
                self.config.no_credential_retry_delay_sec,
                "no usable credential: all excluded or circuit open",
            )
            if self._metrics and deferred is not None:
                self._metrics.order_outcomes_total.labels(DEFERRED).inc()
            return DEFERRED if deferred is not None else SKIPPED

        try:
            async with self.limiter.acquire(credential.id):
                return await self._submit(order, credential, trial)
        except RateLimitTimeout as exc:
            if trial:
                self.breaker.release(credential.id)
            self.log.info(
                "order_rate_limit_wait_elapsed",
                order_id=order.id,
                credential_id=credential.id,
                waited_for=exc.waited_for,
            )
            return SKIPPED
        except BaseException:
            # A half-open trial reserved for this order must not outlive it.
            if trial:
                self.breaker.release(credential.id)
            raise

    def _select_credential(self, order: Order) -> tuple[Credential | None, bool]:
        """First usable credential, and whether it holds the half-open trial."""
        for credential in self.credentials.get_credentials(order.user_id):
            if credential.id in order.failed_credentials:
                continue
            admission = self.breaker.admit(credential.id)
            if admission == Admission.DENIED:
                continue
            return credential, admission == Admission.TRIAL
        return None, False

    async def _submit(self, order: Order, credential: Credential, trial: bool = False) -> str:
        claimed = await self.queue.mark_processing(order.id, credential.id)
        if claimed is None:
            if trial:
                self.breaker.release(credential.id)
            self.log.info("order_claim_lost", order_id=order.id)
            return SKIPPED

        self.log.info(
            "order_submitting",
            order_id=claimed.id,
            execution_id=claimed.execution_id,
            credential_id=credential.id,
            attempt=claimed.attempts + 1,
            max_attempts=claimed.max_attempts,
            pair=claimed.pair,
            side=claimed.side,
            volume=claimed.volume,
        )
        await self._publish(
            EventType.ORDER_SUBMITTED,
            {
                "order_id": claimed.id,
                "client_order_id": claimed.client_order_id,
                "bot_id": claimed.bot_id,
                "pair": claimed.pair,
                "side": claimed.side,
                "order_type": claimed.type.value,
                "volume": claimed.volume,
                "price": claimed.price,
                "credential_used": credential.id,
                "attempt": claimed.attempts + 1,
            },
            claimed.execution_id,
        )

        started = time.perf_counter()
        try:
            fill = await asyncio.wait_for(
                self.exchange.submit(
                    pair=claimed.pair,
                    side=claimed.side,
                    order_type=claimed.type.value,
                    volume=claimed.volume,
                    price=claimed.price,
                    credential=credential,
                    userref=claimed.userref,
                ),
                timeout=self.config.submit_timeout_sec,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return await self._handle_failure(claimed, credential, exc)
        finally:
            if self._metrics:
                self._metrics.order_submit_latency_ms.observe(
                    (time.perf_counter() - started) * 1000
                )

        # Accepted by the exchange from here on: nothing below may fail the order.
        fill = await self._fill_details(claimed, credential, fill)
        await self.queue.mark_completed(
            claimed.id,
            OrderResult(
                exchange_order_id=fill.exchange_order_id,
                executed_price=fill.executed_price,
                executed_volume=fill.executed_volume,
            ),
        )
        await self._publish_transition(self.breaker.record_success(credential.id))
        if self._metrics:
            self._metrics.order_outcomes_total.labels(COMPLETED).inc()
        return COMPLETED

    async def _fill_details(
        self, order: Order, credential: Credential, fill: OrderFill
    ) -> OrderFill:
        try:
            return await asyncio.wait_for(
                self.exchange.fill_details(credential, fill),
                timeout=self.config.fill_lookup_timeout_sec,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if isinstance(exc, asyncio.TimeoutError):
                error = f"fill lookup exceeded {self.config.fill_lookup_timeout_sec}s"
            else:
                error = describe_error(exc)
            self.log.warning(
                "order_fill_details_unavailable",
                order_id=order.id,
                exchange_order_id=fill.exchange_order_id,
                error=error,
            )
            return fill

    async def _handle_failure(self, order: Order, credential: Credential, exc: Exception) -> str:
        kind = classify_error(exc)
        policy = policy_for(kind, self.breaker_config.rate_limit_counts_as_failure)
        reason = describe_error(exc)
        self.log.warning(
            "order_submit_failed",
            order_id=order.id,
            execution_id=order.execution_id,
            credential_id=credential.id,
            error_kind=kind.value,
            error=reason,
        )
        if self._metrics:
            self._metrics.order_errors_total.labels(kind.value).inc()

        await self._publish_transition(
            self.breaker.record_failure(credential.id, reason, weight=policy.breaker_weight)
        )

        abandon = len(order.errors) + 1 > self.config.abandon_threshold
        terminal = abandon or order.attempts + 1 >= order.max_attempts
        updated = await self.queue.mark_failed(
            order.id,
            reason,
            credential.id,
            terminal=terminal,
            error_kind=kind.value,
            exclude_credential=policy.exclude_credential,
            abandoned=abandon,
        )
        if abandon:
            await self._after_abandon(updated)
        outcome = FAILED if terminal else RETRIED
        if self._metrics:
            self._metrics.order_outcomes_total.labels(outcome).inc()
        return outcome

    async def _abandon(self, order: Order, reason: str) -> None:
        updated = await self.queue.mark_failed(
            order.id,
            reason,
            terminal=True,
            abandoned=True,
            count_attempt=False,
        )
        if self._metrics:
            self._metrics.order_outcomes_total.labels(FAILED).inc()
        await self._after_abandon(updated)

    async def _after_abandon(self, order: Order) -> None:
        if order.side != "sell":
            return
        if await self.recovery.handle_abandoned_exit(order) and self._metrics:
            self._metrics.bot_exits_recovered_total.inc()

    async def _publish_transition(self, transition: BreakerTransition | None) -> None:
        if transition is None:
            return
        await self._publish(
            EventType.CIRCUIT_STATE_CHANGED,
            {
                "key": transition.key,
                "previous_state": transition.previous.value,
                "state": transition.current.value,
                "reason": transition.reason,
            },
        )

    async def _publish(
        self, event_type: EventType, payload: dict[str, Any], execution_id: str | None = None
    ) -> None:
        if self.event_bus is None:
            return
        metadata: dict[str, Any] = {"source": "order_executor"}
        if execution_id:
            metadata["execution_id"] = execution_id
        await self.event_bus.publish(event_type, payload, metadata)

    def _record_tick_metrics(self, result: TickResult) -> None:
        if not self._metrics:
            return
        self._metrics.tick_duration_sec.observe(result.duration_sec)
        self._metrics.mark_loop_tick("order_executor")
        if result.stuck_reset:
            self._metrics.stuck_orders_reset_total.inc(result.stuck_reset)
        if result.exits_recovered:
            self._metrics.bot_exits_recovered_total.inc(result.exits_recovered)
        self._metrics.update_queue_counts(self.queue.get_queue_counts())
        self._metrics.rate_limiter_in_flight.set(self.limiter.in_flight()["total"])

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "in_flight_orders": sorted(self._executing),
            "limits": self.limiter.in_flight(),
            "ticks": self._ticks,
            "ticks_skipped": self._ticks_skipped,
            "last_tick": self._last_tick.to_dict() if self._last_tick else None,
        }
