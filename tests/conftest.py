from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

from src.bots.store import InMemoryBotStateStore
from src.config.settings import (
    CircuitBreakerConfig,
    CredentialConfig,
    QueueConfig,
    RateLimitConfig,
)
from src.connectors.credentials import Credential, StaticCredentialProvider
from src.connectors.exchange import OrderFill
from src.execution.circuit_breaker import CircuitBreaker
from src.execution.executor import OrderExecutor
from src.execution.rate_limiter import RateLimiter
from src.execution.recovery import RecoveryCoordinator
from src.ledger import AuditLedger, EventBus
from src.orders.models import OrderRequest
from src.orders.queue import OrderQueue
from src.orders.store import InMemoryOrderStore


def _safe_node_name(name: str) -> str:
    # Windows-safe-ish: keep alnum, dash, underscore, dot.
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "test"


@pytest.fixture
def workspace_tmp_path(request: pytest.FixtureRequest) -> Path:
    """Temp dir rooted in the workspace (not system temp).

    This repo's environment can deny access to dirs created under the system temp
    directory; using a workspace-local temp dir avoids that.
    """
    root = Path.cwd() / ".pytest_tmp_workspace" / _safe_node_name(request.node.name) / uuid4().hex
    root.mkdir(parents=True, exist_ok=True)
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeExchange:
    """Scripted exchange: each submit pops the next outcome, then falls back to ``default``.

    An exception outcome is raised; ``None`` means a successful fill.
    """

    def __init__(self, outcomes: list[Any] | None = None, default: Any = None) -> None:
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []
        self.fill_lookups: list[str] = []
        self.closed = False

    async def submit(
        self,
        pair: str,
        side: str,
        order_type: str,
        volume: str,
        price: str | None,
        credential: Credential,
        userref: int | None = None,
    ) -> OrderFill:
        self.calls.append(
            {
                "pair": pair,
                "side": side,
                "order_type": order_type,
                "volume": volume,
                "price": price,
                "credential": credential.id,
                "userref": userref,
            }
        )
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return OrderFill(
                exchange_order_id=f"TX-{len(self.calls)}",
                executed_price="100.0",
                executed_volume=volume,
            )
        return outcome

    async def fill_details(self, credential: Credential, fill: OrderFill) -> OrderFill:
        self.fill_lookups.append(fill.exchange_order_id)
        return fill

    async def get_balance(self, credential: Credential) -> dict[str, str]:
        return {}

    async def get_ticker(self, pair: str) -> str:
        return "100.0"

    async def close(self) -> None:
        self.closed = True


@dataclass
class Engine:
    clock: FakeClock
    store: InMemoryOrderStore
    queue: OrderQueue
    bots: InMemoryBotStateStore
    breaker: CircuitBreaker
    limiter: RateLimiter
    recovery: RecoveryCoordinator
    exchange: FakeExchange
    executor: OrderExecutor
    ledger: AuditLedger | None


def make_request(
    bot_id: str = "bot-1",
    side: str = "buy",
    cycle: int = 1,
    user_id: str = "user-1",
    **kwargs: Any,
) -> OrderRequest:
    return OrderRequest(
        user_id=user_id,
        bot_id=bot_id,
        pair="XBTUSD",
        side=side,  # type: ignore[arg-type]
        volume=kwargs.pop("volume", "0.01"),
        cycle=cycle,
        **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_engine(workspace_tmp_path: Path):
    """Build a fully wired executor around in-memory stores and a scripted exchange."""

    def _make(
        exchange: FakeExchange | None = None,
        credentials: dict[str, list[str]] | None = None,
        queue: dict[str, Any] | None = None,
        breaker: dict[str, Any] | None = None,
        rate_limit: dict[str, Any] | None = None,
        with_ledger: bool = False,
    ) -> Engine:
        clock = FakeClock()
        queue_config = QueueConfig(**(queue or {}))
        breaker_config = CircuitBreakerConfig(**(breaker or {}))
        rate_config = RateLimitConfig(**{"max_orders_per_second": 1000, **(rate_limit or {})})
        credential_ids = credentials or {"user-1": ["k1"]}
        provider = StaticCredentialProvider(
            {
                user_id: [
                    CredentialConfig(id=cid, api_key=f"key-{cid}", api_secret="c2VjcmV0")
                    for cid in ids
                ]
                for user_id, ids in credential_ids.items()
            }
        )
        ledger = AuditLedger(workspace_tmp_path / "ledger") if with_ledger else None
        bus = EventBus(ledger) if ledger else None
        store = InMemoryOrderStore()
        order_queue = OrderQueue(store, queue_config, event_bus=bus, clock=clock)
        bots = InMemoryBotStateStore(clock=clock)
        circuit = CircuitBreaker(breaker_config, clock=clock)
        limiter = RateLimiter(rate_config)
        recovery = RecoveryCoordinator(order_queue, bots, queue_config, event_bus=bus)
        fake_exchange = exchange or FakeExchange()
        executor = OrderExecutor(
            order_queue,
            fake_exchange,
            provider,
            circuit,
            limiter,
            recovery,
            queue_config,
            event_bus=bus,
            clock=clock,
        )
        return Engine(
            clock=clock,
            store=store,
            queue=order_queue,
            bots=bots,
            breaker=circuit,
            limiter=limiter,
            recovery=recovery,
            exchange=fake_exchange,
            executor=executor,
            ledger=ledger,
        )

    return _make
