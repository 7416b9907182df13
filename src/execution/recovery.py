"""Recovery of stuck orders and of bots left exiting by abandoned sell orders."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from src.bots.store import BotStateRepository, BotStatus
from src.config.settings import QueueConfig
from src.ledger.bus import EventBus
from src.ledger.events import EventType
from src.orders.models import Order, OrderStatus
from src.orders.queue import OrderQueue


@dataclass(frozen=True)
class RecoveryResult:
    stuck_reset: int = 0
    exits_recovered: int = 0


class RecoveryCoordinator:
    """Repairs state the normal execution path cannot.

    An abandoned sell order means the bot's exit never happened, so a bot still
    marked ``exiting`` is returned to ``active``. Each order is handled at most
    once, tracked by ``recovery_handled_at`` on the order.
    """

    def __init__(
        self,
        queue: OrderQueue,
        bots: BotStateRepository,
        config: QueueConfig,
        event_bus: EventBus | None = None,
    ) -> None:
        self.queue = queue
        self.bots = bots
        self.config = config
        self._event_bus = event_bus
        self._lock = asyncio.Lock()
        self.log = structlog.get_logger(__name__)

    async def recover(self) -> RecoveryResult:
        stuck = await self.queue.reset_stuck_orders(self.config.stuck_order_timeout_sec)
        recovered = 0
        for order in self._unhandled_abandoned_exits():
            if await self.handle_abandoned_exit(order):
                recovered += 1
        return RecoveryResult(stuck_reset=stuck, exits_recovered=recovered)

    async def handle_abandoned_exit(self, order: Order) -> bool:
        """Return the order's bot from ``exiting`` to ``active``. True if the bot changed."""
        if order.side != "sell":
            return False
        async with self._lock:
            current = self.queue.get_order(order.id) or order
            if current.recovery_handled_at is not None:
                return False
            note = (
                f"exit order {current.id} abandoned after {len(current.errors)} failures: "
                f"{current.last_error}"
            )
            recovered = self.bots.transition(
                current.bot_id, BotStatus.EXITING, BotStatus.ACTIVE, note
            )
            await self.queue.mark_recovery_handled(current.id)

        if not recovered:
            self.log.info(
                "abandoned_exit_no_bot_change",
                order_id=current.id,
                bot_id=current.bot_id,
                bot_status=getattr(self.bots.get_status(current.bot_id), "value", None),
            )
            return False

        self.log.warning(
            "bot_exit_recovered",
            order_id=current.id,
            bot_id=current.bot_id,
            failure_count=len(current.errors),
            last_error=current.last_error,
        )
        if self._event_bus is not None:
            await self._event_bus.publish(
                EventType.BOT_EXIT_RECOVERED,
                {
                    "order_id": current.id,
                    "bot_id": current.bot_id,
                    "user_id": current.user_id,
                    "previous_status": BotStatus.EXITING.value,
                    "status": BotStatus.ACTIVE.value,
                    "note": note,
                },
                {"source": "recovery", "execution_id": current.execution_id},
            )
        return True

    def _unhandled_abandoned_exits(self) -> list[Order]:
        return [
            order
            for order in self.queue.store.find(statuses=[OrderStatus.FAILED])
            if order.abandoned and order.side == "sell" and order.recovery_handled_at is None
        ]
