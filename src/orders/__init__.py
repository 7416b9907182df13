"""Order records, storage and the execution queue."""

from src.orders.models import (
    FailureEntry,
    Order,
    OrderRequest,
    OrderResult,
    OrderStatus,
    OrderType,
)
from src.orders.queue import OrderQueue, compute_retry_delay, generate_client_order_id
from src.orders.store import (
    DuplicateClientOrderIdError,
    InMemoryOrderStore,
    JsonOrderStore,
    OrderNotFoundError,
    OrderStore,
)

__all__ = [
    "DuplicateClientOrderIdError",
    "FailureEntry",
    "InMemoryOrderStore",
    "JsonOrderStore",
    "Order",
    "OrderNotFoundError",
    "OrderQueue",
    "OrderRequest",
    "OrderResult",
    "OrderStatus",
    "OrderStore",
    "OrderType",
    "compute_retry_delay",
    "generate_client_order_id",
]
