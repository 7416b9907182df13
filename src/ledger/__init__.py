"""Audit ledger and event bus."""

from src.ledger.bus import EventBus
from src.ledger.events import Event, EventType
from src.ledger.store import AuditLedger

__all__ = ["AuditLedger", "Event", "EventBus", "EventType"]
