"""Exchange collaborator interface used by the order executor."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from src.connectors.credentials import Credential


@dataclass(frozen=True)
class OrderFill:
    """What the exchange reported for an accepted order."""

    exchange_order_id: str
    executed_price: str | None = None
    executed_volume: str | None = None


class ExchangeClient(Protocol):
    """Submit orders and read balances.

    ``submit`` only places the order and raises one of the typed errors in
    ``src.connectors.errors`` on failure; anything else it raises is treated as
    an unknown failure. ``fill_details`` runs after the order is accepted and
    returns the placement fill unchanged when the exchange cannot say more.
    """

    async def submit(
        self,
        pair: str,
        side: str,
        order_type: str,
        volume: str,
        price: str | None,
        credential: Credential,
        userref: int | None = None,
    ) -> OrderFill: ...

    async def fill_details(self, credential: Credential, fill: OrderFill) -> OrderFill: ...

    async def get_balance(self, credential: Credential) -> dict[str, str]: ...

    async def get_ticker(self, pair: str) -> str: ...

    async def close(self) -> None: ...
