"""Order records and the producer-facing order request."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from src.ledger.events import format_timestamp, parse_timestamp


OrderSide = Literal["buy", "sell"]

_EPOCH = datetime.fromtimestamp(0, timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY = "retry"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class OrderType(str, Enum):
    MARKET = "market"
    LIMIT = "limit"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED})
ACTIVE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.RETRY})
CLAIMABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.RETRY})


@dataclass(frozen=True)
class FailureEntry:
    """One entry in an order's failure history."""

    timestamp: datetime
    error: str
    credential_used: str | None = None
    error_kind: str | None = None
    execution_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": format_timestamp(self.timestamp), "error": self.error}
        if self.credential_used is not None:
            data["credential_used"] = self.credential_used
        if self.error_kind is not None:
            data["error_kind"] = self.error_kind
        if self.execution_id is not None:
            data["execution_id"] = self.execution_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FailureEntry":
        return cls(
            timestamp=parse_timestamp(data.get("timestamp")) or _EPOCH,
            error=str(data.get("error", "")),
            credential_used=data.get("credential_used"),
            error_kind=data.get("error_kind"),
            execution_id=data.get("execution_id"),
        )


@dataclass(frozen=True)
class OrderResult:
    """Outcome of a successful exchange submission."""

    exchange_order_id: str
    executed_price: str | None = None
    executed_volume: str | None = None


@dataclass(frozen=True)
class OrderRequest:
    """What a producer asks the queue to execute.

    ``cycle`` is the producer's monotonic marker for the decision that fired
    (for a DCA bot: its cycle/entry sequence number). Re-submitting the same
    request with the same cycle maps to the same ``client_order_id``.
    """

    user_id: str
    bot_id: str
    pair: str
    side: OrderSide
    volume: str
    cycle: int | str
    type: OrderType = OrderType.MARKET
    price: str | None = None
    amount: float | None = None
    reason: str | None = None
    client_order_id: str | None = None


@dataclass(frozen=True)
class Order:
    id: str
    user_id: str
    bot_id: str
    pair: str
    side: OrderSide
    type: OrderType
    volume: str
    client_order_id: str
    status: OrderStatus
    max_attempts: int
    created_at: datetime
    updated_at: datetime
    price: str | None = None
    amount: float | None = None
    reason: str | None = None
    execution_id: str | None = None
    userref: int | None = None
    attempts: int = 0
    next_retry_at: datetime | None = None
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    errors: tuple[FailureEntry, ...] = ()
    credential_used: str | None = None
    failed_credentials: tuple[str, ...] = ()
    exchange_order_id: str | None = None
    executed_price: str | None = None
    executed_volume: str | None = None
    completed_at: datetime | None = None
    abandoned: bool = False
    recovery_handled_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""

        def _ts(value: datetime | None) -> str | None:
            return format_timestamp(value) if value else None

        return {
            "id": self.id,
            "user_id": self.user_id,
            "bot_id": self.bot_id,
            "pair": self.pair,
            "side": self.side,
            "type": self.type.value,
            "volume": self.volume,
            "price": self.price,
            "amount": self.amount,
            "reason": self.reason,
            "client_order_id": self.client_order_id,
            "execution_id": self.execution_id,
            "userref": self.userref,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "next_retry_at": _ts(self.next_retry_at),
            "last_attempt_at": _ts(self.last_attempt_at),
            "last_error": self.last_error,
            "errors": [entry.to_dict() for entry in self.errors],
            "credential_used": self.credential_used,
            "failed_credentials": list(self.failed_credentials),
            "exchange_order_id": self.exchange_order_id,
            "executed_price": self.executed_price,
            "executed_volume": self.executed_volume,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
            "completed_at": _ts(self.completed_at),
            "abandoned": self.abandoned,
            "recovery_handled_at": _ts(self.recovery_handled_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        created_at = parse_timestamp(data.get("created_at"))
        if created_at is None:
            raise ValueError(f"order {data.get('id')} has no valid created_at")
        attempts = data.get("attempts")
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            bot_id=data["bot_id"],
            pair=data["pair"],
            side=data["side"],
            type=OrderType(data.get("type", OrderType.MARKET.value)),
            volume=str(data["volume"]),
            price=data.get("price"),
            amount=data.get("amount"),
            reason=data.get("reason"),
            client_order_id=data["client_order_id"],
            execution_id=data.get("execution_id"),
            userref=data.get("userref"),
            status=OrderStatus(data["status"]),
            attempts=attempts if isinstance(attempts, int) else 0,
            max_attempts=int(data.get("max_attempts", 5)),
            next_retry_at=parse_timestamp(data.get("next_retry_at")),
            last_attempt_at=parse_timestamp(data.get("last_attempt_at")),
            last_error=data.get("last_error"),
            errors=tuple(FailureEntry.from_dict(e) for e in data.get("errors") or []),
            credential_used=data.get("credential_used"),
            failed_credentials=tuple(data.get("failed_credentials") or ()),
            exchange_order_id=data.get("exchange_order_id"),
            executed_price=data.get("executed_price"),
            executed_volume=data.get("executed_volume"),
            created_at=created_at,
            updated_at=parse_timestamp(data.get("updated_at")) or created_at,
            completed_at=parse_timestamp(data.get("completed_at")),
            abandoned=bool(data.get("abandoned", False)),
            recovery_handled_at=parse_timestamp(data.get("recovery_handled_at")),
        )
