"""Operator API for inspecting the order queue and taking privileged actions."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, HTTPException, Query

from src.config.settings import Settings
from src.execution.circuit_breaker import CircuitBreaker
from src.execution.executor import OrderExecutor
from src.ledger import AuditLedger, EventBus, EventType
from src.ledger.events import Event, format_timestamp
from src.orders.models import OrderStatus
from src.orders.queue import OrderQueue
from src.orders.store import OrderNotFoundError


@dataclass
class OperatorContext:
    """Live components the API reads from and acts on."""

    settings: Settings
    queue: OrderQueue
    executor: OrderExecutor
    breaker: CircuitBreaker
    ledger: AuditLedger
    event_bus: EventBus | None = None


def _serialize_event(event: Event) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "timestamp": format_timestamp(event.timestamp),
        "sequence_num": event.sequence_num,
        "payload": event.payload,
        "metadata": event.metadata,
    }


def create_app(ctx: OperatorContext) -> FastAPI:
    """Create and configure the FastAPI application."""
    start_time = time.time()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        nonlocal start_time
        start_time = time.time()
        yield

    app = FastAPI(
        title="Order Execution Operator API",
        description="Inspect queued orders, breakers and the executor; run admin operations",
        version="0.1.0",
        lifespan=lifespan,
    )

    async def _audit(action: str, **details: Any) -> None:
        payload = {"action": action, **details}
        metadata = {"source": "operator_api"}
        if ctx.event_bus is not None:
            await ctx.event_bus.publish(EventType.ADMIN_ACTION, payload, metadata)
        else:
            ctx.ledger.append(EventType.ADMIN_ACTION, payload, metadata)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Get system health status."""
        return {
            "status": "healthy",
            "uptime_sec": time.time() - start_time,
            "mode": ctx.settings.run.mode,
            "live_trading": ctx.settings.live_trading,
            "executor_running": ctx.executor.running,
            "queue": ctx.queue.get_queue_counts(),
            "api_port": ctx.settings.monitoring.api_port,
            "metrics_port": ctx.settings.monitoring.metrics_port,
        }

    @app.get("/orders")
    async def list_orders(
        user_id: str | None = None,
        bot_id: str | None = None,
        status: OrderStatus | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> dict[str, Any]:
        """List orders, newest first."""
        orders = ctx.queue.store.find(
            statuses=[status] if status else None, user_id=user_id, bot_id=bot_id
        )
        orders.sort(key=lambda o: o.created_at, reverse=True)
        page = orders[:limit]
        return {"count": len(page), "total": len(orders), "orders": [o.to_dict() for o in page]}

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str) -> dict[str, Any]:
        order = ctx.queue.get_order(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail=f"order not found: {order_id}")
        return order.to_dict()

    @app.get("/orders/{order_id}/events")
    async def get_order_events(order_id: str) -> dict[str, Any]:
        events = ctx.ledger.events_for_order(order_id)
        return {"count": len(events), "events": [_serialize_event(e) for e in events]}

    @app.get("/queue/stats")
    async def queue_stats() -> dict[str, Any]:
        return ctx.queue.get_queue_counts()

    @app.get("/breakers")
    async def breakers() -> dict[str, Any]:
        return {"enabled": ctx.breaker.enabled, "breakers": ctx.breaker.snapshot()}

    @app.get("/executor/status")
    async def executor_status() -> dict[str, Any]:
        return ctx.executor.status()

    @app.get("/events")
    async def get_events(
        tail: int = Query(default=100, ge=1, le=1000, description="Number of recent events"),
    ) -> dict[str, Any]:
        """Get recent events from the audit ledger."""
        recent = ctx.ledger.tail(tail)
        return {"count": len(recent), "events": [_serialize_event(e) for e in recent]}

    @app.post("/admin/execute-now")
    async def execute_now() -> dict[str, Any]:
        """Run one executor tick immediately (skipped if a tick is in progress)."""
        result = await ctx.executor.run()
        await _audit("execute_now", tick_skipped=result.tick_skipped)
        return result.to_dict()

    @app.post("/admin/orders/reset-processing")
    async def reset_processing() -> dict[str, Any]:
        count = await ctx.queue.reset_all_processing_orders()
        await _audit("reset_processing_orders", count=count)
        return {"success": True, "reset": count}

    @app.post("/admin/orders/clear-failed-credentials")
    async def clear_failed_credentials(order_id: str | None = None) -> dict[str, Any]:
        try:
            count = await ctx.queue.clear_failed_credentials(order_id)
        except OrderNotFoundError:
            raise HTTPException(status_code=404, detail=f"order not found: {order_id}")
        return {"success": True, "cleared": count}

    @app.post("/admin/orders/{order_id}/reset")
    async def reset_failed_order(order_id: str) -> dict[str, Any]:
        try:
            order = await ctx.queue.reset_failed_order(order_id)
        except OrderNotFoundError:
            raise HTTPException(status_code=404, detail=f"order not found: {order_id}")
        if order is None:
            raise HTTPException(
                status_code=409,
                detail="order is not failed, or its bot already has an active order",
            )
        return {"success": True, "order": order.to_dict()}

    @app.delete("/admin/users/{user_id}/orders")
    async def delete_user_orders(user_id: str) -> dict[str, Any]:
        count = await ctx.queue.delete_orders_for_user(user_id)
        return {"success": True, "deleted": count}

    @app.post("/admin/breakers/{key}/reset")
    async def reset_breaker(key: str) -> dict[str, Any]:
        if not ctx.breaker.reset(key):
            raise HTTPException(status_code=404, detail=f"no breaker state for {key}")
        await _audit("reset_breaker", key=key)
        return {"success": True, "key": key}

    @app.post("/admin/breakers/clear")
    async def clear_breakers() -> dict[str, Any]:
        count = ctx.breaker.clear_all()
        await _audit("clear_breakers", count=count)
        return {"success": True, "cleared": count}

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API info."""
        return {
            "name": "Order Execution Operator API",
            "version": "0.1.0",
            "endpoints": {
                "health": "GET /health",
                "orders": "GET /orders?user_id=&bot_id=&status=&limit=",
                "order": "GET /orders/{order_id}",
                "order_events": "GET /orders/{order_id}/events",
                "queue_stats": "GET /queue/stats",
                "breakers": "GET /breakers",
                "executor_status": "GET /executor/status",
                "events": "GET /events?tail=N",
                "execute_now": "POST /admin/execute-now",
                "reset_processing": "POST /admin/orders/reset-processing",
                "clear_failed_credentials": "POST /admin/orders/clear-failed-credentials?order_id=",
                "reset_failed_order": "POST /admin/orders/{order_id}/reset",
                "delete_user_orders": "DELETE /admin/users/{user_id}/orders",
                "reset_breaker": "POST /admin/breakers/{key}/reset",
                "clear_breakers": "POST /admin/breakers/clear",
            },
        }

    return app
