"""Order CSV logger."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any

from src.ledger.events import Event, EventType, format_timestamp


class OrderLogger:
    """Append order lifecycle events to a CSV file."""

    _SUPPORTED = {
        EventType.ORDER_QUEUED,
        EventType.ORDER_SUBMITTED,
        EventType.ORDER_COMPLETED,
        EventType.ORDER_RETRY_SCHEDULED,
        EventType.ORDER_DEFERRED,
        EventType.ORDER_FAILED,
        EventType.ORDER_ABANDONED,
        EventType.STUCK_ORDER_RESET,
    }

    def __init__(self, log_path: str | Path) -> None:
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_header()

    def handle_event(self, event: Event) -> None:
        if event.event_type not in self._SUPPORTED:
            return
        payload = event.payload
        metadata = event.metadata or {}
        self._append_row(
            {
                "timestamp": format_timestamp(event.timestamp),
                "event_type": event.event_type.value,
                "execution_id": metadata.get("execution_id", ""),
                "order_id": payload.get("order_id", ""),
                "client_order_id": payload.get("client_order_id", ""),
                "bot_id": payload.get("bot_id", ""),
                "pair": payload.get("pair", ""),
                "side": payload.get("side", ""),
                "order_type": payload.get("order_type", ""),
                "volume": payload.get("volume", ""),
                "price": payload.get("executed_price") or payload.get("price") or "",
                "status": payload.get("status", ""),
                "attempts": payload.get("attempts", payload.get("attempt", "")),
                "credential_used": payload.get("credential_used") or "",
                "error_kind": payload.get("error_kind") or "",
                "error": payload.get("error") or payload.get("reason") or "",
                "exchange_order_id": payload.get("exchange_order_id") or "",
            }
        )

    def _ensure_header(self) -> None:
        if self.log_path.exists():
            return
        with open(self.log_path, "w", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=self._fieldnames())
            writer.writeheader()

    def _append_row(self, row: dict[str, Any]) -> None:
        with open(self.log_path, "a", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=self._fieldnames())
            writer.writerow(row)

    @staticmethod
    def _fieldnames() -> list[str]:
        return [
            "timestamp",
            "event_type",
            "execution_id",
            "order_id",
            "client_order_id",
            "bot_id",
            "pair",
            "side",
            "order_type",
            "volume",
            "price",
            "status",
            "attempts",
            "credential_used",
            "error_kind",
            "error",
            "exchange_order_id",
        ]
