"""Async Kraken spot REST client."""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from src.config.settings import ExchangeConfig
from src.connectors.credentials import Credential
from src.connectors.errors import (
    AuthError,
    ExchangeError,
    NetworkError,
    RateLimitError,
    UnknownExchangeError,
    map_kraken_errors,
)
from src.connectors.exchange import OrderFill


class KrakenRestClient:
    """Kraken REST client for order submission.

    Requests are never retried here: a repeated AddOrder could double-fill, so
    retries belong to the order queue, which tracks attempts.
    """

    def __init__(
        self,
        config: ExchangeConfig,
        log_http: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.log_http = log_http
        self.http = httpx.AsyncClient(
            base_url=config.base_url, timeout=config.timeout_sec, transport=transport
        )
        self._last_nonce = 0
        self.log = structlog.get_logger(__name__)

    async def close(self) -> None:
        await self.http.aclose()

    async def get_ticker(self, pair: str) -> str:
        """Last trade price for ``pair``."""
        result = await self._public("/0/public/Ticker", {"pair": pair})
        try:
            ticker = next(iter(result.values()))
            return str(ticker["c"][0])
        except (StopIteration, KeyError, IndexError, TypeError, AttributeError) as exc:
            raise UnknownExchangeError(f"unexpected ticker payload for {pair}") from exc

    async def get_balance(self, credential: Credential) -> dict[str, str]:
        result = await self._private("/0/private/Balance", {}, credential)
        return {asset: str(amount) for asset, amount in (result or {}).items()}

    async def query_orders(self, credential: Credential, txids: list[str]) -> dict[str, Any]:
        return await self._private(
            "/0/private/QueryOrders", {"txid": ",".join(txids), "trades": "false"}, credential
        )

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
        params: dict[str, Any] = {
            "pair": pair,
            "type": side,
            "ordertype": order_type,
            "volume": volume,
        }
        if order_type == "limit" and price:
            params["price"] = price
        if userref is not None:
            params["userref"] = userref

        result = await self._private("/0/private/AddOrder", params, credential)
        txids = (result or {}).get("txid") or []
        if not txids:
            raise UnknownExchangeError(f"AddOrder returned no txid: {result}")
        txid = str(txids[0])
        self.log.info(
            "kraken_order_placed",
            txid=txid,
            pair=pair,
            side=side,
            order_type=order_type,
            volume=volume,
            credential_id=credential.id,
            description=(result.get("descr") or {}).get("order"),
        )
        return OrderFill(exchange_order_id=txid, executed_price=price, executed_volume=volume)

    async def fill_details(self, credential: Credential, fill: OrderFill) -> OrderFill:
        """Executed price and volume from QueryOrders, or ``fill`` as submitted."""
        if not self.config.query_fill_details:
            return fill
        txid = fill.exchange_order_id
        price, volume = fill.executed_price, fill.executed_volume
        # The order is already accepted; a failed lookup must not fail the submission.
        try:
            orders = await self.query_orders(credential, [txid])
            info = orders[txid]
            filled_price = info.get("price")
            filled_volume = info.get("vol_exec")
            if filled_price and float(filled_price) > 0:
                price = str(filled_price)
            if filled_volume and float(filled_volume) > 0:
                volume = str(filled_volume)
        except (ExchangeError, KeyError, TypeError, ValueError, AttributeError) as exc:
            self.log.warning("kraken_fill_details_unavailable", txid=txid, error=str(exc))
            return fill
        return OrderFill(exchange_order_id=txid, executed_price=price, executed_volume=volume)

    def _next_nonce(self) -> int:
        nonce = max(int(time.time() * 1000), self._last_nonce + 1)
        self._last_nonce = nonce
        return nonce

    @staticmethod
    def sign(path: str, postdata: str, nonce: int, secret: str) -> str:
        """Kraken API-Sign: HMAC-SHA512 of path + SHA256(nonce + postdata), base64 secret."""
        try:
            key = base64.b64decode(secret, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise AuthError("API secret is not valid base64") from exc
        digest = hashlib.sha256((str(nonce) + postdata).encode()).digest()
        mac = hmac.new(key, path.encode() + digest, hashlib.sha512)
        return base64.b64encode(mac.digest()).decode()

    async def _private(self, path: str, params: dict[str, Any], credential: Credential) -> Any:
        if not credential.api_key or not credential.api_secret:
            raise AuthError(f"credential {credential.id} has no API key or secret")
        nonce = self._next_nonce()
        data = {"nonce": nonce, **params}
        postdata = urlencode(data)
        headers = {
            "API-Key": credential.api_key,
            "API-Sign": self.sign(path, postdata, nonce, credential.api_secret),
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        }
        return await self._send("POST", path, content=postdata, headers=headers)

    async def _public(self, path: str, params: dict[str, Any]) -> Any:
        return await self._send("GET", path, params=params)

    async def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        start = time.perf_counter()
        if self.log_http:
            self.log.info("rest_request", method=method, path=path)
        try:
            response = await self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"{method} {path} timed out") from exc
        except httpx.RequestError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}") from exc
        latency_ms = round((time.perf_counter() - start) * 1000, 2)

        status = response.status_code
        if self.log_http:
            self.log.info(
                "rest_response", method=method, path=path, status_code=status, latency_ms=latency_ms
            )
        if status == 429:
            raise RateLimitError(f"{method} {path} rate limited (HTTP 429)", code="429")
        if status in (401, 403):
            raise AuthError(f"{method} {path} rejected (HTTP {status})", code=str(status))
        if status >= 500:
            raise NetworkError(f"{method} {path} server error (HTTP {status})", code=str(status))
        if status >= 400:
            raise UnknownExchangeError(f"{method} {path} failed (HTTP {status})", code=str(status))

        try:
            payload = response.json()
        except ValueError as exc:
            raise UnknownExchangeError(f"{method} {path} returned invalid JSON") from exc
        errors = payload.get("error") or []
        if errors:
            self.log.warning("kraken_api_error", path=path, errors=errors)
            raise map_kraken_errors([str(e) for e in errors])
        return payload.get("result")
