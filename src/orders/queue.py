"""Order queue: creation, idempotency, retry scheduling and admin bulk operations."""

from __future__ import annotations

import asyncio
import hashlib
import secrets
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from random import Random
from typing import Any, Callable

import structlog

from src.config.settings import QueueConfig
from src.ledger.bus import EventBus
from src.ledger.events import EventType, utc_now
from src.orders.models import (
    ACTIVE_STATUSES,
    CLAIMABLE_STATUSES,
    TERMINAL_STATUSES,
    FailureEntry,
    Order,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderType,
)
from src.orders.store import OrderNotFoundError, OrderStore

STUCK_ORDER_REASON = "stuck order timeout"
MANUAL_RESET_REASON = "manually reset from processing"
CREDENTIALS_CLEARED_REASON = "failed credentials cleared for manual retry"

# Kraken userref is a signed 32-bit int; keep it positive.
_USERREF_MODULUS = 2_147_483_647


def generate_client_order_id(
    user_id: str, bot_id: str, pair: str, side: str, cycle: int | str
) -> str:
    """Deterministic idempotency key for one producer decision."""
    data = f"{user_id}|{bot_id}|{pair}|{side}|{cycle}"
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:32]


def generate_userref(client_order_id: str) -> int:
    return int(client_order_id[:8], 16) % _USERREF_MODULUS


def generate_execution_id() -> str:
    return f"exec_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def compute_retry_delay(
    attempt: int,
    initial_delay: float,
    multiplier: float,
    max_delay: float,
    jitter_pct: float = 0.0,
    rng: Random | None = None,
) -> float:
    """Exponential backoff: ``min(initial * multiplier**attempt, max_delay)`` seconds.

    ``attempt`` is the number of attempts made before the failure being scheduled,
    so the first retry waits ``initial_delay``.
    """
    delay = min(initial_delay * multiplier ** max(attempt, 0), max_delay)
    if jitter_pct > 0:
        rng = rng or Random()
        delay += delay * jitter_pct * (rng.random() * 2 - 1)
    return max(0.0, delay)


class OrderQueue:
    """Create, query and transition orders.

    Every read-modify-write against the store happens under one asyncio lock so
    that two workers can never transition the same order concurrently.
    """

    def __init__(
        self,
        store: OrderStore,
        config: QueueConfig,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Random | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self._event_bus = event_bus
        self._clock = clock
        self._rng = rng or Random()
        self._lock = asyncio.Lock()
        self.log = structlog.get_logger(__name__)

    def retry_delay(self, attempt: int) -> float:
        return compute_retry_delay(
            attempt,
            self.config.initial_retry_delay_sec,
            self.config.backoff_multiplier,
            self.config.max_retry_delay_sec,
            self.config.retry_jitter_pct,
            self._rng,
        )

    async def create_order(self, request: OrderRequest) -> Order:
        """Queue an order, or return the existing one for the same decision or bot."""
        self._validate_request(request)
        client_order_id = request.client_order_id or generate_client_order_id(
            request.user_id, request.bot_id, request.pair, request.side, request.cycle
        )
        async with self._lock:
            existing = self.store.get_by_client_order_id(client_order_id)
            if existing is None:
                active = self.store.find(statuses=ACTIVE_STATUSES, bot_id=request.bot_id)
                existing = active[0] if active else None
                duplicate_reason = "BOT_HAS_ACTIVE_ORDER"
            else:
                duplicate_reason = "CLIENT_ORDER_ID_EXISTS"
            if existing is None:
                now = self._clock()
                order = Order(
                    id=self.store.new_id(),
                    user_id=request.user_id,
                    bot_id=request.bot_id,
                    pair=request.pair,
                    side=request.side,
                    type=request.type,
                    volume=request.volume,
                    price=request.price,
                    amount=request.amount,
                    reason=request.reason,
                    client_order_id=client_order_id,
                    execution_id=generate_execution_id(),
                    userref=generate_userref(client_order_id),
                    status=OrderStatus.PENDING,
                    attempts=0,
                    max_attempts=self.config.max_attempts,
                    created_at=now,
                    updated_at=now,
                )
                self.store.create(order)

        if existing is not None:
            self.log.info(
                "order_duplicate_skipped",
                order_id=existing.id,
                bot_id=request.bot_id,
                client_order_id=client_order_id,
                existing_status=existing.status.value,
                reason=duplicate_reason,
            )
            await self._publish(
                EventType.ORDER_DUPLICATE_SKIPPED,
                existing,
                reason=duplicate_reason,
                requested_client_order_id=client_order_id,
            )
            return existing

        self.log.info(
            "order_queued",
            order_id=order.id,
            execution_id=order.execution_id,
            client_order_id=order.client_order_id,
            bot_id=order.bot_id,
            side=order.side,
            pair=order.pair,
            volume=order.volume,
        )
        await self._publish(EventType.ORDER_QUEUED, order)
        return order

    def get_order(self, order_id: str) -> Order | None:
        return self.store.get(order_id)

    def get_orders_by_user(self, user_id: str, limit: int | None = None) -> list[Order]:
        orders = sorted(self.store.find(user_id=user_id), key=lambda o: o.created_at, reverse=True)
        return orders[:limit] if limit else orders

    def get_orders_by_bot(self, bot_id: str, limit: int | None = None) -> list[Order]:
        orders = sorted(self.store.find(bot_id=bot_id), key=lambda o: o.created_at, reverse=True)
        return orders[:limit] if limit else orders

    def get_orders_eligible_for_execution(
        self, now: datetime | None = None, limit: int | None = None
    ) -> list[Order]:
        """Pending orders and retries that are due, oldest first."""
        now = now or self._clock()
        eligible = [
            order
            for order in self.store.find(statuses=CLAIMABLE_STATUSES)
            if order.next_retry_at is None or order.next_retry_at <= now
        ]
        eligible.sort(key=lambda o: o.created_at)
        return eligible[:limit] if limit else eligible

    def get_queue_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in OrderStatus}
        for order in self.store.find():
            counts[order.status.value] += 1
        counts["active"] = sum(counts[s.value] for s in ACTIVE_STATUSES)
        return counts

    async def mark_processing(self, order_id: str, credential_id: str) -> Order | None:
        """Claim an order for submission. Returns None if it is no longer claimable."""
        async with self._lock:
            now = self._clock()
            return self.store.compare_and_update(
                order_id,
                CLAIMABLE_STATUSES,
                status=OrderStatus.PROCESSING,
                last_attempt_at=now,
                credential_used=credential_id,
                updated_at=now,
            )

    async def mark_completed(self, order_id: str, result: OrderResult) -> Order:
        async with self._lock:
            order = self._require(order_id)
            if order.status == OrderStatus.COMPLETED:
                return order
            if order.status == OrderStatus.FAILED:
                self.log.warning(
                    "order_completed_after_failure",
                    order_id=order_id,
                    exchange_order_id=result.exchange_order_id,
                )
                return order
            now = self._clock()
            order = self.store.update(
                order_id,
                status=OrderStatus.COMPLETED,
                attempts=order.attempts + 1,
                exchange_order_id=result.exchange_order_id,
                executed_price=result.executed_price,
                executed_volume=result.executed_volume,
                next_retry_at=None,
                completed_at=now,
                updated_at=now,
            )
        self.log.info(
            "order_completed",
            order_id=order.id,
            execution_id=order.execution_id,
            exchange_order_id=order.exchange_order_id,
            executed_price=order.executed_price,
            attempts=order.attempts,
        )
        await self._publish(
            EventType.ORDER_COMPLETED,
            order,
            exchange_order_id=order.exchange_order_id,
            executed_price=order.executed_price,
            executed_volume=order.executed_volume,
        )
        return order

    async def mark_failed(
        self,
        order_id: str,
        reason: str,
        credential: str | None = None,
        terminal: bool = False,
        *,
        error_kind: str | None = None,
        exclude_credential: bool = False,
        abandoned: bool = False,
        count_attempt: bool = True,
    ) -> Order:
        """Record a failure; either schedule a retry or fail the order for good."""
        async with self._lock:
            order = self._require(order_id)
            if order.is_terminal:
                self.log.warning(
                    "order_failure_after_terminal",
                    order_id=order_id,
                    status=order.status.value,
                    error=reason,
                )
                return order
            now = self._clock()
            errors = order.errors + (
                FailureEntry(
                    timestamp=now,
                    error=reason,
                    credential_used=credential,
                    error_kind=error_kind,
                    execution_id=order.execution_id,
                ),
            )
            failed_credentials = order.failed_credentials
            if exclude_credential and credential and credential not in failed_credentials:
                failed_credentials = failed_credentials + (credential,)
            changes: dict[str, Any] = {
                "attempts": order.attempts + 1 if count_attempt else order.attempts,
                "errors": errors,
                "last_error": reason,
                "failed_credentials": failed_credentials,
                "updated_at": now,
            }
            if credential is not None:
                changes["credential_used"] = credential
            delay: float | None = None
            if terminal:
                changes.update(status=OrderStatus.FAILED, next_retry_at=None, abandoned=abandoned)
            else:
                delay = self.retry_delay(order.attempts)
                changes.update(
                    status=OrderStatus.RETRY,
                    next_retry_at=now + timedelta(seconds=delay),
                )
            order = self.store.update(order_id, **changes)

        if delay is not None:
            self.log.info(
                "order_retry_scheduled",
                order_id=order.id,
                execution_id=order.execution_id,
                attempts=order.attempts,
                max_attempts=order.max_attempts,
                retry_in_sec=round(delay, 3),
                error=reason,
                error_kind=error_kind,
            )
            await self._publish(
                EventType.ORDER_RETRY_SCHEDULED,
                order,
                error=reason,
                error_kind=error_kind,
                retry_in_sec=delay,
            )
        elif abandoned:
            self.log.error(
                "order_abandoned",
                order_id=order.id,
                execution_id=order.execution_id,
                failure_count=len(order.errors),
                attempts=order.attempts,
                error=reason,
            )
            await self._publish(
                EventType.ORDER_ABANDONED, order, error=reason, failure_count=len(order.errors)
            )
        else:
            self.log.error(
                "order_failed",
                order_id=order.id,
                execution_id=order.execution_id,
                attempts=order.attempts,
                error=reason,
                error_kind=error_kind,
            )
            await self._publish(EventType.ORDER_FAILED, order, error=reason, error_kind=error_kind)
        return order

    async def defer(self, order_id: str, delay_sec: float, reason: str) -> Order | None:
        """Push an order back without consuming an attempt (e.g. no usable credential)."""
        async with self._lock:
            now = self._clock()
            order = self.store.compare_and_update(
                order_id,
                CLAIMABLE_STATUSES,
                status=OrderStatus.RETRY,
                next_retry_at=now + timedelta(seconds=delay_sec),
                reason=reason,
                updated_at=now,
            )
        if order is not None:
            self.log.info("order_deferred", order_id=order_id, reason=reason, delay_sec=delay_sec)
            await self._publish(EventType.ORDER_DEFERRED, order, reason=reason, delay_sec=delay_sec)
        return order

    async def mark_recovery_handled(self, order_id: str) -> Order:
        async with self._lock:
            self._require(order_id)
            return self.store.update(order_id, recovery_handled_at=self._clock())

    async def reset_stuck_orders(self, timeout_sec: float | None = None) -> int:
        """Move orders stuck in processing longer than ``timeout_sec`` back to retry."""
        timeout = self.config.stuck_order_timeout_sec if timeout_sec is None else timeout_sec
        reset = await self._reset_processing(
            STUCK_ORDER_REASON, older_than=timedelta(seconds=timeout)
        )
        for order in reset:
            self.log.warning(
                "stuck_order_reset",
                order_id=order.id,
                execution_id=order.execution_id,
                attempts=order.attempts,
                credential_used=order.credential_used,
            )
            await self._publish(EventType.STUCK_ORDER_RESET, order, reason=STUCK_ORDER_REASON)
        return len(reset)

    async def reset_all_processing_orders(self) -> int:
        """Admin: force every processing order back to retry regardless of age."""
        reset = await self._reset_processing(MANUAL_RESET_REASON, older_than=None)
        for order in reset:
            await self._publish(EventType.STUCK_ORDER_RESET, order, reason=MANUAL_RESET_REASON)
        if reset:
            self.log.warning("processing_orders_force_reset", count=len(reset))
        return len(reset)

    async def _reset_processing(self, reason: str, older_than: timedelta | None) -> list[Order]:
        reset: list[Order] = []
        async with self._lock:
            now = self._clock()
            for order in self.store.find(statuses=[OrderStatus.PROCESSING]):
                started = order.last_attempt_at or order.updated_at
                if older_than is not None and now - started <= older_than:
                    continue
                updated = self.store.compare_and_update(
                    order.id,
                    [OrderStatus.PROCESSING],
                    status=OrderStatus.RETRY,
                    next_retry_at=now + timedelta(seconds=self.retry_delay(order.attempts)),
                    last_error=reason,
                    errors=order.errors
                    + (
                        FailureEntry(
                            timestamp=now,
                            error=reason,
                            credential_used=order.credential_used,
                            execution_id=order.execution_id,
                        ),
                    ),
                    updated_at=now,
                )
                if updated is not None:
                    reset.append(updated)
        return reset

    async def clear_failed_credentials(self, order_id: str | None = None) -> int:
        """Admin: allow excluded credentials to be retried for one or all open orders."""
        cleared = 0
        async with self._lock:
            now = self._clock()
            if order_id is not None:
                candidates = [self._require(order_id)]
            else:
                candidates = self.store.find(statuses=CLAIMABLE_STATUSES)
            for order in candidates:
                if not order.failed_credentials or order.is_terminal:
                    continue
                self.store.update(
                    order.id,
                    failed_credentials=(),
                    last_error=CREDENTIALS_CLEARED_REASON,
                    errors=order.errors
                    + (
                        FailureEntry(
                            timestamp=now,
                            error=CREDENTIALS_CLEARED_REASON,
                            execution_id=order.execution_id,
                        ),
                    ),
                    updated_at=now,
                )
                cleared += 1
        if cleared:
            self.log.info("failed_credentials_cleared", orders=cleared, order_id=order_id)
            await self._publish_admin("clear_failed_credentials", count=cleared, order_id=order_id)
        return cleared

    async def reset_failed_order(self, order_id: str) -> Order | None:
        """Admin: return a failed order to pending with a fresh attempt budget.

        Refused (returns None) while the bot has another active order.
        """
        async with self._lock:
            order = self._require(order_id)
            if order.status != OrderStatus.FAILED:
                return None
            others = [
                o
                for o in self.store.find(statuses=ACTIVE_STATUSES, bot_id=order.bot_id)
                if o.id != order_id
            ]
            if others:
                self.log.warning(
                    "order_reset_refused", order_id=order_id, active_order_id=others[0].id
                )
                return None
            now = self._clock()
            order = self.store.update(
                order_id,
                status=OrderStatus.PENDING,
                attempts=0,
                failed_credentials=(),
                abandoned=False,
                recovery_handled_at=None,
                next_retry_at=None,
                updated_at=now,
            )
        self.log.info("failed_order_reset", order_id=order_id)
        await self._publish_admin("reset_failed_order", order_id=order_id)
        return order

    async def delete_orders_for_user(self, user_id: str) -> int:
        """Admin: delete a user's orders. Orders in processing are never deleted."""
        async with self._lock:
            doomed = [
                o.id
                for o in self.store.find(user_id=user_id)
                if o.status != OrderStatus.PROCESSING
            ]
            deleted = self.store.delete_many(doomed)
        self.log.warning("user_orders_deleted", user_id=user_id, count=deleted)
        await self._publish_admin("delete_orders_for_user", user_id=user_id, count=deleted)
        return deleted

    async def purge_terminal_orders(self, older_than: timedelta) -> int:
        """Admin: delete completed/failed orders last updated before ``now - older_than``."""
        async with self._lock:
            cutoff = self._clock() - older_than
            doomed = [
                o.id
                for o in self.store.find(statuses=TERMINAL_STATUSES)
                if o.updated_at < cutoff
            ]
            deleted = self.store.delete_many(doomed)
        self.log.info("terminal_orders_purged", count=deleted, older_than_sec=older_than.total_seconds())
        await self._publish_admin("purge_terminal_orders", count=deleted)
        return deleted

    def _require(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    @staticmethod
    def _validate_request(request: OrderRequest) -> None:
        if request.side not in ("buy", "sell"):
            raise ValueError(f"invalid side: {request.side}")
        try:
            volume = Decimal(request.volume)
        except (InvalidOperation, TypeError) as exc:
            raise ValueError(f"invalid volume: {request.volume}") from exc
        if not volume.is_finite() or volume <= 0:
            raise ValueError(f"volume must be positive: {request.volume}")
        if request.type == OrderType.LIMIT and not request.price:
            raise ValueError("limit orders require a price")

    async def _publish(self, event_type: EventType, order: Order, **extra: Any) -> None:
        if self._event_bus is None:
            return
        payload = {
            "order_id": order.id,
            "client_order_id": order.client_order_id,
            "user_id": order.user_id,
            "bot_id": order.bot_id,
            "pair": order.pair,
            "side": order.side,
            "order_type": order.type.value,
            "volume": order.volume,
            "price": order.price,
            "status": order.status.value,
            "attempts": order.attempts,
            "credential_used": order.credential_used,
            **extra,
        }
        await self._event_bus.publish(
            event_type,
            payload,
            {"source": "order_queue", "execution_id": order.execution_id},
        )

    async def _publish_admin(self, action: str, **details: Any) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            EventType.ADMIN_ACTION, {"action": action, **details}, {"source": "order_queue"}
        )
