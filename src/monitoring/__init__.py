"""Monitoring utilities."""

from src.monitoring.logging import bind_order_context, configure_logging
from src.monitoring.metrics import Metrics
from src.monitoring.order_log import OrderLogger

__all__ = [
    "bind_order_context",
    "configure_logging",
    "Metrics",
    "OrderLogger",
]
