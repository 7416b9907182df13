"""Event bus that appends to the audit ledger before dispatching."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable

import structlog

from src.ledger.events import Event, EventType
from src.ledger.store import AuditLedger

EventHandler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """Publish events to the ledger and notify subscribers.

    Handler failures are logged and never propagate to the publisher: an audit
    subscriber must not be able to fail an order transition.
    """

    def __init__(self, ledger: AuditLedger) -> None:
        self._ledger = ledger
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._global_handlers: list[EventHandler] = []
        self._log = structlog.get_logger(__name__)

    def register(self, event_type: EventType, handler: EventHandler) -> None:
        self._handlers[event_type].append(handler)

    def register_all(self, handler: EventHandler) -> None:
        """Register a handler that receives every event type."""
        self._global_handlers.append(handler)

    async def publish(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        event = self._ledger.append(event_type, payload, metadata)
        await self._dispatch(event)
        return event

    async def _dispatch(self, event: Event) -> None:
        handlers = [*self._handlers.get(event.event_type, []), *self._global_handlers]
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception(
                    "event_handler_failed",
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                )
