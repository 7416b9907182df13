"""Bot status records that order recovery reads and repairs."""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Protocol

import orjson
import structlog

from src.ledger.events import format_timestamp, parse_timestamp, utc_now


class BotStatus(str, Enum):
    ACTIVE = "active"
    EXITING = "exiting"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class BotRecord:
    bot_id: str
    status: BotStatus
    updated_at: datetime
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "bot_id": self.bot_id,
            "status": self.status.value,
            "updated_at": format_timestamp(self.updated_at),
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BotRecord":
        return cls(
            bot_id=data["bot_id"],
            status=BotStatus(data["status"]),
            updated_at=parse_timestamp(data.get("updated_at")) or utc_now(),
            note=data.get("note"),
        )


class BotStateRepository(Protocol):
    def get_status(self, bot_id: str) -> BotStatus | None: ...

    def set_status(self, bot_id: str, status: BotStatus, note: str | None = None) -> BotRecord: ...

    def transition(
        self, bot_id: str, expected: BotStatus, status: BotStatus, note: str | None = None
    ) -> bool:
        """Set ``status`` only if the bot is currently ``expected``."""
        ...


class InMemoryBotStateStore:
    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._bots: dict[str, BotRecord] = {}
        self._clock = clock
        self._lock = threading.Lock()

    def get(self, bot_id: str) -> BotRecord | None:
        with self._lock:
            return self._bots.get(bot_id)

    def get_status(self, bot_id: str) -> BotStatus | None:
        record = self.get(bot_id)
        return record.status if record else None

    def set_status(self, bot_id: str, status: BotStatus, note: str | None = None) -> BotRecord:
        with self._lock:
            return self._write(bot_id, status, note)

    def transition(
        self, bot_id: str, expected: BotStatus, status: BotStatus, note: str | None = None
    ) -> bool:
        with self._lock:
            current = self._bots.get(bot_id)
            if current is None or current.status != expected:
                return False
            self._write(bot_id, status, note)
            return True

    def _write(self, bot_id: str, status: BotStatus, note: str | None) -> BotRecord:
        record = BotRecord(bot_id=bot_id, status=status, updated_at=self._clock(), note=note)
        self._bots[bot_id] = record
        self._persist()
        return record

    def _persist(self) -> None:
        pass


class JsonBotStateStore(InMemoryBotStateStore):
    """Bot records in ``bots.json`` under ``bots_path``."""

    def __init__(self, bots_path: str | Path, clock: Callable[[], datetime] = utc_now) -> None:
        super().__init__(clock)
        self.bots_path = Path(bots_path)
        self.bots_path.mkdir(parents=True, exist_ok=True)
        self._file = self.bots_path / "bots.json"
        self._log = structlog.get_logger(__name__)
        if self._file.exists():
            with open(self._file, "rb") as f:
                data = orjson.loads(f.read())
            for bot_id, record in (data or {}).items():
                try:
                    self._bots[bot_id] = BotRecord.from_dict(record)
                except (KeyError, ValueError) as exc:
                    self._log.warning("bot_record_corrupted", bot_id=bot_id, error=str(exc))

    def _persist(self) -> None:
        tmp = self._file.with_suffix(".json.tmp")
        with open(tmp, "wb") as f:
            f.write(orjson.dumps({k: v.to_dict() for k, v in self._bots.items()}))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._file)
