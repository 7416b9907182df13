"""Tests for OrderQueue creation, transitions and admin operations."""

from __future__ import annotations

from datetime import timedelta
from random import Random

import pytest

from conftest import FakeClock, make_request
from src.config.settings import QueueConfig
from src.ledger import AuditLedger, EventBus, EventType
from src.orders.models import OrderResult, OrderStatus, OrderType
from src.orders.queue import (
    OrderQueue,
    compute_retry_delay,
    generate_client_order_id,
    generate_userref,
)
from src.orders.store import InMemoryOrderStore, OrderNotFoundError


@pytest.fixture
def queue(clock: FakeClock) -> OrderQueue:
    return OrderQueue(InMemoryOrderStore(), QueueConfig(), clock=clock)


def test_client_order_id_is_deterministic_and_short() -> None:
    first = generate_client_order_id("u", "b", "XBTUSD", "buy", 7)
    second = generate_client_order_id("u", "b", "XBTUSD", "buy", 7)
    other_cycle = generate_client_order_id("u", "b", "XBTUSD", "buy", 8)
    assert first == second
    assert first != other_cycle
    assert len(first) == 32
    assert 0 <= generate_userref(first) < 2**31


@pytest.mark.asyncio
async def test_same_decision_creates_one_order(queue: OrderQueue) -> None:
    first = await queue.create_order(make_request(cycle=3))
    second = await queue.create_order(make_request(cycle=3))

    assert first.id == second.id
    assert len(queue.store.find()) == 1
    assert first.status == OrderStatus.PENDING
    assert first.attempts == 0
    assert first.max_attempts == 5
    assert first.execution_id.startswith("exec_")
    assert first.userref == generate_userref(first.client_order_id)


@pytest.mark.asyncio
async def test_explicit_client_order_id_is_used(queue: OrderQueue) -> None:
    order = await queue.create_order(make_request(client_order_id="manual-1"))
    assert order.client_order_id == "manual-1"
    again = await queue.create_order(make_request(bot_id="bot-2", client_order_id="manual-1"))
    assert again.id == order.id


@pytest.mark.asyncio
async def test_bot_with_active_order_gets_existing_order(
    queue: OrderQueue, clock: FakeClock
) -> None:
    first = await queue.create_order(make_request(cycle=1))
    duplicate = await queue.create_order(make_request(cycle=2))
    assert duplicate.id == first.id
    assert len(queue.store.find(bot_id="bot-1")) == 1

    await queue.mark_processing(first.id, "k1")
    await queue.mark_completed(first.id, OrderResult(exchange_order_id="TX"))
    clock.advance(1)
    follow_up = await queue.create_order(make_request(cycle=2))
    assert follow_up.id != first.id
    assert len(queue.store.find(bot_id="bot-1")) == 2


@pytest.mark.asyncio
async def test_invalid_requests_are_rejected(queue: OrderQueue) -> None:
    with pytest.raises(ValueError):
        await queue.create_order(make_request(side="hold"))
    with pytest.raises(ValueError):
        await queue.create_order(make_request(volume="0"))
    with pytest.raises(ValueError):
        await queue.create_order(make_request(volume="abc"))
    with pytest.raises(ValueError):
        await queue.create_order(make_request(type=OrderType.LIMIT))
    assert queue.store.find() == []


def test_backoff_schedule_with_defaults() -> None:
    config = QueueConfig()
    delays = [
        compute_retry_delay(
            attempt,
            config.initial_retry_delay_sec,
            config.backoff_multiplier,
            config.max_retry_delay_sec,
        )
        for attempt in range(5)
    ]
    assert delays == [10, 20, 40, 80, 160]
    assert compute_retry_delay(20, 10, 2, 3600) == 3600


def test_backoff_jitter_stays_within_bounds() -> None:
    rng = Random(42)
    for attempt in range(5):
        base = 10 * 2**attempt
        delay = compute_retry_delay(attempt, 10, 2, 3600, jitter_pct=0.2, rng=rng)
        assert base * 0.8 <= delay <= base * 1.2


@pytest.mark.asyncio
async def test_eligible_orders_oldest_first_and_due_only(
    queue: OrderQueue, clock: FakeClock
) -> None:
    a = await queue.create_order(make_request(bot_id="a"))
    clock.advance(1)
    b = await queue.create_order(make_request(bot_id="b"))
    clock.advance(1)
    c = await queue.create_order(make_request(bot_id="c"))

    await queue.mark_processing(b.id, "k1")
    await queue.mark_failed(b.id, "network down", "k1")  # retry due in 10s

    eligible = queue.get_orders_eligible_for_execution()
    assert [o.id for o in eligible] == [a.id, c.id]

    clock.advance(10)
    eligible = queue.get_orders_eligible_for_execution()
    assert [o.id for o in eligible] == [a.id, b.id, c.id]
    assert [o.id for o in queue.get_orders_eligible_for_execution(limit=2)] == [a.id, b.id]


@pytest.mark.asyncio
async def test_claim_is_compare_and_set(queue: OrderQueue, clock: FakeClock) -> None:
    order = await queue.create_order(make_request())
    claimed = await queue.mark_processing(order.id, "k1")
    assert claimed is not None
    assert claimed.status == OrderStatus.PROCESSING
    assert claimed.credential_used == "k1"
    assert claimed.last_attempt_at == clock.now
    assert await queue.mark_processing(order.id, "k2") is None


@pytest.mark.asyncio
async def test_mark_completed_is_idempotent(queue: OrderQueue, clock: FakeClock) -> None:
    order = await queue.create_order(make_request())
    await queue.mark_processing(order.id, "k1")
    result = OrderResult(exchange_order_id="TX-1", executed_price="101.5", executed_volume="0.01")

    done = await queue.mark_completed(order.id, result)
    again = await queue.mark_completed(order.id, result)

    assert done.status == OrderStatus.COMPLETED
    assert done.attempts == 1
    assert done.completed_at == clock.now
    assert done.executed_price == "101.5"
    assert again == done


@pytest.mark.asyncio
async def test_completion_never_revives_a_failed_order(queue: OrderQueue) -> None:
    order = await queue.create_order(make_request())
    await queue.mark_failed(order.id, "boom", terminal=True)
    after = await queue.mark_completed(order.id, OrderResult(exchange_order_id="TX"))
    assert after.status == OrderStatus.FAILED
    assert after.exchange_order_id is None


@pytest.mark.asyncio
async def test_mark_failed_schedules_backoff(queue: OrderQueue, clock: FakeClock) -> None:
    order = await queue.create_order(make_request())
    await queue.mark_processing(order.id, "k1")
    failed = await queue.mark_failed(order.id, "timeout", "k1", error_kind="network")

    assert failed.status == OrderStatus.RETRY
    assert failed.attempts == 1
    assert failed.last_error == "timeout"
    assert failed.next_retry_at == clock.now + timedelta(seconds=10)
    assert len(failed.errors) == 1
    assert failed.errors[0].credential_used == "k1"
    assert failed.errors[0].error_kind == "network"
    assert failed.failed_credentials == ()

    await queue.mark_processing(order.id, "k1")
    failed = await queue.mark_failed(order.id, "timeout", "k1")
    assert failed.next_retry_at == clock.now + timedelta(seconds=20)


@pytest.mark.asyncio
async def test_excluded_credentials_only_grow(queue: OrderQueue) -> None:
    order = await queue.create_order(make_request())
    for credential in ("k1", "k1", "k2"):
        await queue.mark_processing(order.id, credential)
        order = await queue.mark_failed(
            order.id, "invalid key", credential, error_kind="auth", exclude_credential=True
        )
    assert order.failed_credentials == ("k1", "k2")


@pytest.mark.asyncio
async def test_terminal_failure_is_final(queue: OrderQueue) -> None:
    order = await queue.create_order(make_request())
    failed = await queue.mark_failed(order.id, "gone", terminal=True)
    assert failed.status == OrderStatus.FAILED
    assert failed.next_retry_at is None

    unchanged = await queue.mark_failed(order.id, "again")
    assert unchanged.status == OrderStatus.FAILED
    assert len(unchanged.errors) == 1
    assert await queue.mark_processing(order.id, "k1") is None


@pytest.mark.asyncio
async def test_mark_failed_unknown_order(queue: OrderQueue) -> None:
    with pytest.raises(OrderNotFoundError):
        await queue.mark_failed("missing", "boom")


@pytest.mark.asyncio
async def test_defer_consumes_no_attempt(queue: OrderQueue, clock: FakeClock) -> None:
    order = await queue.create_order(make_request())
    deferred = await queue.defer(order.id, 30, "no usable credential")
    assert deferred is not None
    assert deferred.status == OrderStatus.RETRY
    assert deferred.attempts == 0
    assert deferred.errors == ()
    assert deferred.reason == "no usable credential"
    assert deferred.next_retry_at == clock.now + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_reset_stuck_orders_once(queue: OrderQueue, clock: FakeClock) -> None:
    stuck = await queue.create_order(make_request(bot_id="stuck"))
    await queue.mark_processing(stuck.id, "k1")
    clock.advance(90)
    fresh = await queue.create_order(make_request(bot_id="fresh"))
    await queue.mark_processing(fresh.id, "k1")
    clock.advance(60)

    assert await queue.reset_stuck_orders(120) == 1
    assert await queue.reset_stuck_orders(120) == 0

    reset = queue.get_order(stuck.id)
    assert reset.status == OrderStatus.RETRY
    assert reset.attempts == 0
    assert reset.last_error == "stuck order timeout"
    assert reset.errors[-1].error == "stuck order timeout"
    assert queue.get_order(fresh.id).status == OrderStatus.PROCESSING


@pytest.mark.asyncio
async def test_reset_all_processing_orders(queue: OrderQueue) -> None:
    ids = []
    for bot in ("a", "b"):
        order = await queue.create_order(make_request(bot_id=bot))
        await queue.mark_processing(order.id, "k1")
        ids.append(order.id)
    assert await queue.reset_all_processing_orders() == 2
    assert {queue.get_order(i).status for i in ids} == {OrderStatus.RETRY}


@pytest.mark.asyncio
async def test_clear_failed_credentials(queue: OrderQueue) -> None:
    a = await queue.create_order(make_request(bot_id="a"))
    b = await queue.create_order(make_request(bot_id="b"))
    for order in (a, b):
        await queue.mark_processing(order.id, "k1")
        await queue.mark_failed(order.id, "bad key", "k1", exclude_credential=True)

    assert await queue.clear_failed_credentials(a.id) == 1
    cleared = queue.get_order(a.id)
    assert cleared.failed_credentials == ()
    assert len(cleared.errors) == 2
    assert queue.get_order(b.id).failed_credentials == ("k1",)

    assert await queue.clear_failed_credentials() == 1
    assert queue.get_order(b.id).failed_credentials == ()


@pytest.mark.asyncio
async def test_reset_failed_order(queue: OrderQueue, clock: FakeClock) -> None:
    order = await queue.create_order(make_request())
    await queue.mark_failed(order.id, "bad key", "k1", exclude_credential=True)
    await queue.mark_failed(order.id, "gone", terminal=True, abandoned=True)

    reset = await queue.reset_failed_order(order.id)
    assert reset is not None
    assert reset.status == OrderStatus.PENDING
    assert reset.attempts == 0
    assert reset.failed_credentials == ()
    assert reset.abandoned is False
    assert len(reset.errors) == 2

    assert await queue.reset_failed_order(order.id) is None


@pytest.mark.asyncio
async def test_reset_failed_order_refused_while_bot_busy(
    queue: OrderQueue, clock: FakeClock
) -> None:
    old = await queue.create_order(make_request(cycle=1))
    await queue.mark_failed(old.id, "gone", terminal=True)
    clock.advance(1)
    await queue.create_order(make_request(cycle=2))
    assert await queue.reset_failed_order(old.id) is None
    assert queue.get_order(old.id).status == OrderStatus.FAILED


@pytest.mark.asyncio
async def test_delete_orders_for_user_keeps_processing(queue: OrderQueue) -> None:
    pending = await queue.create_order(make_request(bot_id="a"))
    running = await queue.create_order(make_request(bot_id="b"))
    other_user = await queue.create_order(make_request(bot_id="c", user_id="user-2"))
    await queue.mark_processing(running.id, "k1")

    assert await queue.delete_orders_for_user("user-1") == 1
    assert queue.get_order(pending.id) is None
    assert queue.get_order(running.id) is not None
    assert queue.get_order(other_user.id) is not None


@pytest.mark.asyncio
async def test_purge_terminal_orders(queue: OrderQueue, clock: FakeClock) -> None:
    old = await queue.create_order(make_request(bot_id="a"))
    await queue.mark_failed(old.id, "gone", terminal=True)
    clock.advance(86400 * 10)
    recent = await queue.create_order(make_request(bot_id="b"))
    await queue.mark_failed(recent.id, "gone", terminal=True)
    open_order = await queue.create_order(make_request(bot_id="c"))

    assert await queue.purge_terminal_orders(timedelta(days=7)) == 1
    assert queue.get_order(old.id) is None
    assert queue.get_order(recent.id) is not None
    assert queue.get_order(open_order.id) is not None


@pytest.mark.asyncio
async def test_queue_counts_and_history_queries(queue: OrderQueue, clock: FakeClock) -> None:
    a = await queue.create_order(make_request(bot_id="a"))
    clock.advance(1)
    b = await queue.create_order(make_request(bot_id="b"))
    await queue.mark_processing(b.id, "k1")

    counts = queue.get_queue_counts()
    assert counts["pending"] == 1
    assert counts["processing"] == 1
    assert counts["active"] == 2
    assert counts["completed"] == 0
    assert [o.id for o in queue.get_orders_by_user("user-1")] == [b.id, a.id]
    assert [o.id for o in queue.get_orders_by_bot("a")] == [a.id]


@pytest.mark.asyncio
async def test_lifecycle_events_reach_the_ledger(workspace_tmp_path, clock: FakeClock) -> None:
    ledger = AuditLedger(workspace_tmp_path / "ledger")
    queue = OrderQueue(InMemoryOrderStore(), QueueConfig(), event_bus=EventBus(ledger), clock=clock)

    order = await queue.create_order(make_request())
    await queue.create_order(make_request())
    await queue.mark_processing(order.id, "k1")
    await queue.mark_failed(order.id, "timeout", "k1", error_kind="network")

    types = [e.event_type for e in ledger.events_for_order(order.id)]
    assert types == [
        EventType.ORDER_QUEUED,
        EventType.ORDER_DUPLICATE_SKIPPED,
        EventType.ORDER_RETRY_SCHEDULED,
    ]
    assert ledger.last_sequence() == 3
