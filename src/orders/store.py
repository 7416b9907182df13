"""Durable order storage."""

from __future__ import annotations

import dataclasses
import os
import threading
from pathlib import Path
from typing import Any, Collection, Iterable, Protocol
from uuid import uuid4

import orjson
import structlog

from src.orders.models import Order, OrderStatus


class OrderNotFoundError(KeyError):
    def __init__(self, order_id: str) -> None:
        self.order_id = order_id
        super().__init__(f"order not found: {order_id}")


class DuplicateClientOrderIdError(ValueError):
    def __init__(self, client_order_id: str, existing_id: str) -> None:
        self.client_order_id = client_order_id
        self.existing_id = existing_id
        super().__init__(f"client_order_id {client_order_id} already used by order {existing_id}")


class OrderStore(Protocol):
    """Document-style persistence for orders.

    ``update`` is a merge of the given fields; ``compare_and_update`` applies the
    merge only while the stored status is one of ``expected``.
    """

    def new_id(self) -> str: ...

    def create(self, order: Order) -> Order: ...

    def get(self, order_id: str) -> Order | None: ...

    def get_by_client_order_id(self, client_order_id: str) -> Order | None: ...

    def find(
        self,
        statuses: Collection[OrderStatus] | None = None,
        user_id: str | None = None,
        bot_id: str | None = None,
    ) -> list[Order]: ...

    def update(self, order_id: str, **changes: Any) -> Order: ...

    def compare_and_update(
        self, order_id: str, expected: Collection[OrderStatus], **changes: Any
    ) -> Order | None: ...

    def delete_many(self, order_ids: Iterable[str]) -> int: ...


class InMemoryOrderStore:
    """Order store kept in process memory. Used directly in tests and as the JSON store's cache."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._by_client_id: dict[str, str] = {}
        self._lock = threading.RLock()

    def new_id(self) -> str:
        return uuid4().hex[:20]

    def create(self, order: Order) -> Order:
        with self._lock:
            existing_id = self._by_client_id.get(order.client_order_id)
            if existing_id is not None:
                raise DuplicateClientOrderIdError(order.client_order_id, existing_id)
            if order.id in self._orders:
                raise ValueError(f"order id already exists: {order.id}")
            self._orders[order.id] = order
            self._by_client_id[order.client_order_id] = order.id
            self._persist()
            return order

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            return self._orders.get(order_id)

    def get_by_client_order_id(self, client_order_id: str) -> Order | None:
        with self._lock:
            order_id = self._by_client_id.get(client_order_id)
            return self._orders.get(order_id) if order_id else None

    def find(
        self,
        statuses: Collection[OrderStatus] | None = None,
        user_id: str | None = None,
        bot_id: str | None = None,
    ) -> list[Order]:
        with self._lock:
            orders = list(self._orders.values())
        if statuses is not None:
            wanted = set(statuses)
            orders = [o for o in orders if o.status in wanted]
        if user_id is not None:
            orders = [o for o in orders if o.user_id == user_id]
        if bot_id is not None:
            orders = [o for o in orders if o.bot_id == bot_id]
        return orders

    def update(self, order_id: str, **changes: Any) -> Order:
        with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFoundError(order_id)
            updated = dataclasses.replace(current, **changes)
            self._orders[order_id] = updated
            self._persist()
            return updated

    def compare_and_update(
        self, order_id: str, expected: Collection[OrderStatus], **changes: Any
    ) -> Order | None:
        with self._lock:
            current = self._orders.get(order_id)
            if current is None or current.status not in expected:
                return None
            return self.update(order_id, **changes)

    def delete_many(self, order_ids: Iterable[str]) -> int:
        deleted = 0
        with self._lock:
            for order_id in order_ids:
                order = self._orders.pop(order_id, None)
                if order is None:
                    continue
                self._by_client_id.pop(order.client_order_id, None)
                deleted += 1
            if deleted:
                self._persist()
        return deleted

    def _persist(self) -> None:
        """Hook for durable subclasses; called under the store lock after each mutation."""


class JsonOrderStore(InMemoryOrderStore):
    """Order store persisted as a single JSON document, rewritten atomically on every change."""

    def __init__(self, orders_path: str | Path) -> None:
        super().__init__()
        self.orders_path = Path(orders_path)
        self.orders_path.mkdir(parents=True, exist_ok=True)
        self._file = self.orders_path / "orders.json"
        self._log = structlog.get_logger(__name__)
        self._load()

    def _load(self) -> None:
        if not self._file.exists():
            return
        with open(self._file, "rb") as f:
            data = orjson.loads(f.read())
        if not isinstance(data, dict):
            raise ValueError(f"unexpected order store format in {self._file}")
        for order_id, record in data.items():
            try:
                order = Order.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                self._log.warning("order_record_corrupted", order_id=order_id, error=str(exc))
                continue
            self._orders[order.id] = order
            self._by_client_id[order.client_order_id] = order.id
        self._log.info("order_store_loaded", path=str(self._file), orders=len(self._orders))

    def _persist(self) -> None:
        payload = {order_id: order.to_dict() for order_id, order in self._orders.items()}
        tmp = self._file.with_suffix(".json.tmp")
        with open(tmp, "wb") as f:
            f.write(orjson.dumps(payload))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._file)
