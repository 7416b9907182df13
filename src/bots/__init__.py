"""Bot state collaborator."""

from src.bots.store import (
    BotRecord,
    BotStateRepository,
    BotStatus,
    InMemoryBotStateStore,
    JsonBotStateStore,
)

__all__ = [
    "BotRecord",
    "BotStateRepository",
    "BotStatus",
    "InMemoryBotStateStore",
    "JsonBotStateStore",
]
