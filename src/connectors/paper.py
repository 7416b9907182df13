"""Paper exchange: fills every order immediately without touching an account."""

from __future__ import annotations

from typing import Protocol
from uuid import uuid4

import structlog

from src.connectors.credentials import Credential
from src.connectors.errors import UnknownExchangeError
from src.connectors.exchange import OrderFill


class PriceSource(Protocol):
    async def get_ticker(self, pair: str) -> str: ...


class PaperExchangeClient:
    """Simulated fills at the limit price, or the public last price for market orders."""

    def __init__(
        self,
        price_source: PriceSource | None = None,
        balances: dict[str, str] | None = None,
    ) -> None:
        self.price_source = price_source
        self.balances = dict(balances or {})
        self.fills: list[OrderFill] = []
        self.log = structlog.get_logger(__name__)

    async def get_ticker(self, pair: str) -> str:
        if self.price_source is None:
            raise UnknownExchangeError(f"no price source for paper ticker {pair}")
        return await self.price_source.get_ticker(pair)

    async def get_balance(self, credential: Credential) -> dict[str, str]:
        return dict(self.balances)

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
        fill_price = price if order_type == "limit" and price else await self.get_ticker(pair)
        fill = OrderFill(
            exchange_order_id=f"PAPER-{uuid4().hex[:12].upper()}",
            executed_price=str(fill_price),
            executed_volume=volume,
        )
        self.fills.append(fill)
        self.log.info(
            "paper_order_filled",
            exchange_order_id=fill.exchange_order_id,
            pair=pair,
            side=side,
            volume=volume,
            price=fill.executed_price,
            credential_id=credential.id,
            userref=userref,
        )
        return fill

    async def fill_details(self, credential: Credential, fill: OrderFill) -> OrderFill:
        return fill

    async def close(self) -> None:
        if self.price_source is not None and hasattr(self.price_source, "close"):
            await self.price_source.close()
