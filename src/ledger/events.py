"""Audit event definitions and timestamp helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4


class EventType(str, Enum):
    """Order lifecycle and operational events recorded in the audit ledger."""

    ORDER_QUEUED = "OrderQueued"
    ORDER_DUPLICATE_SKIPPED = "OrderDuplicateSkipped"
    ORDER_SUBMITTED = "OrderSubmitted"
    ORDER_COMPLETED = "OrderCompleted"
    ORDER_RETRY_SCHEDULED = "OrderRetryScheduled"
    ORDER_DEFERRED = "OrderDeferred"
    ORDER_FAILED = "OrderFailed"
    ORDER_ABANDONED = "OrderAbandoned"
    STUCK_ORDER_RESET = "StuckOrderReset"
    CIRCUIT_STATE_CHANGED = "CircuitStateChanged"
    BOT_EXIT_RECOVERED = "BotExitRecovered"
    TICK_COMPLETED = "TickCompleted"
    TICK_SKIPPED = "TickSkipped"
    ADMIN_ACTION = "AdminAction"
    SYSTEM_STARTED = "SystemStarted"
    SYSTEM_STOPPED = "SystemStopped"


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """Format timestamp as ISO-8601 with Z suffix."""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 timestamp written by ``format_timestamp``.

    Naive values are assumed to be UTC. Unparseable values return None.
    """
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass(frozen=True)
class Event:
    """Immutable audit event."""

    event_id: str
    event_type: EventType
    timestamp: datetime
    sequence_num: int
    payload: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": format_timestamp(self.timestamp),
            "sequence_num": self.sequence_num,
            "payload": self.payload,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            event_id=data["event_id"],
            event_type=EventType(data["event_type"]),
            timestamp=parse_timestamp(data["timestamp"]) or utc_now(),
            sequence_num=int(data["sequence_num"]),
            payload=data.get("payload", {}),
            metadata=data.get("metadata", {}),
        )


def new_event(
    event_type: EventType,
    payload: dict[str, Any],
    sequence_num: int,
    metadata: dict[str, Any] | None = None,
) -> Event:
    """Create a new event with a fresh UUID."""
    return Event(
        event_id=str(uuid4()),
        event_type=event_type,
        timestamp=utc_now(),
        sequence_num=sequence_num,
        payload=payload,
        metadata=metadata or {},
    )
