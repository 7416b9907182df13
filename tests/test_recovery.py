from __future__ import annotations

import pytest

from conftest import make_request
from src.bots.store import BotStatus
from src.ledger import EventType


async def _abandoned_order(engine, side: str = "sell", bot_id: str = "bot-1"):
    order = await engine.queue.create_order(make_request(bot_id=bot_id, side=side))
    return await engine.queue.mark_failed(
        order.id, "gave up", "k1", terminal=True, abandoned=True
    )


@pytest.mark.asyncio
async def test_recover_handles_abandoned_exit_once(make_engine) -> None:
    engine = make_engine(with_ledger=True)
    engine.bots.set_status("bot-1", BotStatus.EXITING)
    order = await _abandoned_order(engine)

    first = await engine.recovery.recover()
    second = await engine.recovery.recover()

    assert first.exits_recovered == 1
    assert second.exits_recovered == 0
    record = engine.bots.get("bot-1")
    assert record.status == BotStatus.ACTIVE
    assert order.id in record.note
    assert engine.queue.get_order(order.id).recovery_handled_at is not None

    recovered = [
        e for e in engine.ledger.iter_events() if e.event_type == EventType.BOT_EXIT_RECOVERED
    ]
    assert len(recovered) == 1
    assert recovered[0].payload["bot_id"] == "bot-1"


@pytest.mark.asyncio
async def test_bot_not_exiting_is_left_unchanged(make_engine) -> None:
    engine = make_engine()
    engine.bots.set_status("bot-1", BotStatus.PAUSED)
    order = await _abandoned_order(engine)

    assert await engine.recovery.handle_abandoned_exit(order) is False
    assert engine.bots.get_status("bot-1") == BotStatus.PAUSED
    # Marked handled so the scan does not retry it every tick.
    assert engine.queue.get_order(order.id).recovery_handled_at is not None


@pytest.mark.asyncio
async def test_buy_orders_are_never_recovered(make_engine) -> None:
    engine = make_engine()
    engine.bots.set_status("bot-1", BotStatus.EXITING)
    order = await _abandoned_order(engine, side="buy")

    assert await engine.recovery.handle_abandoned_exit(order) is False
    result = await engine.recovery.recover()
    assert result.exits_recovered == 0
    assert engine.bots.get_status("bot-1") == BotStatus.EXITING


@pytest.mark.asyncio
async def test_recover_resets_stuck_orders(make_engine) -> None:
    engine = make_engine()
    order = await engine.queue.create_order(make_request())
    await engine.queue.mark_processing(order.id, "k1")
    engine.clock.advance(121)

    result = await engine.recovery.recover()

    assert result.stuck_reset == 1
    assert engine.queue.get_order(order.id).last_error == "stuck order timeout"
