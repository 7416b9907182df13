"""Append-only audit ledger of order lifecycle events."""

from __future__ import annotations

import os
import threading
from collections import deque
from pathlib import Path
from typing import Iterable

import orjson

from src.ledger.events import Event, EventType, new_event


class AuditLedger:
    """JSONL audit trail; one event per line, sequence numbers strictly increasing."""

    def __init__(self, ledger_path: str | Path) -> None:
        self.ledger_path = Path(ledger_path)
        self.ledger_path.mkdir(parents=True, exist_ok=True)
        self.events_file = self.ledger_path / "audit.jsonl"
        self._lock = threading.Lock()
        self._sequence = self._read_last_sequence()

    def _read_last_sequence(self) -> int:
        if not self.events_file.exists():
            return 0
        try:
            with open(self.events_file, "rb") as handle:
                handle.seek(0, os.SEEK_END)
                size = handle.tell()
                if size == 0:
                    return 0
                offset = min(size, 8192)
                handle.seek(-offset, os.SEEK_END)
                chunk = handle.read(offset)
        except OSError:
            return 0
        for line in reversed(chunk.splitlines()):
            if not line.strip():
                continue
            try:
                return int(orjson.loads(line).get("sequence_num", 0))
            except orjson.JSONDecodeError:
                # Partial trailing line from a crash mid-write.
                continue
        return 0

    def last_sequence(self) -> int:
        return self._sequence

    def append(
        self,
        event_type: EventType,
        payload: dict,
        metadata: dict | None = None,
    ) -> Event:
        """Create, persist and return a new event."""
        with self._lock:
            self._sequence += 1
            event = new_event(event_type, payload, self._sequence, metadata)
            with open(self.events_file, "ab") as handle:
                handle.write(orjson.dumps(event.to_dict()) + b"\n")
        return event

    def iter_events(self) -> Iterable[Event]:
        if not self.events_file.exists():
            return iter(())

        def _iter() -> Iterable[Event]:
            with open(self.events_file, "rb") as handle:
                for line in handle:
                    if not line.strip():
                        continue
                    try:
                        yield Event.from_dict(orjson.loads(line))
                    except orjson.JSONDecodeError:
                        continue

        return _iter()

    def tail(self, limit: int) -> list[Event]:
        """Return the last ``limit`` events, oldest first."""
        if limit <= 0:
            return []
        return list(deque(self.iter_events(), maxlen=limit))

    def events_for_order(self, order_id: str) -> list[Event]:
        return [e for e in self.iter_events() if e.payload.get("order_id") == order_id]
