"""Order execution service entry point."""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path

import structlog
import uvicorn

from src.api.operator import OperatorContext, create_app
from src.bots.store import JsonBotStateStore
from src.config.settings import Settings, load_settings
from src.connectors.credentials import StaticCredentialProvider
from src.connectors.exchange import ExchangeClient
from src.connectors.kraken import KrakenRestClient
from src.connectors.paper import PaperExchangeClient
from src.execution.circuit_breaker import CircuitBreaker
from src.execution.executor import OrderExecutor
from src.execution.rate_limiter import RateLimiter
from src.execution.recovery import RecoveryCoordinator
from src.execution.scheduler import TickScheduler
from src.ledger import AuditLedger, EventBus, EventType
from src.monitoring import Metrics, OrderLogger, configure_logging
from src.orders.queue import OrderQueue
from src.orders.store import JsonOrderStore
from src.utils.single_instance import StoreLock, StoreLockHeld

log = structlog.get_logger(__name__)


@dataclass
class Components:
    settings: Settings
    ledger: AuditLedger
    event_bus: EventBus
    queue: OrderQueue
    breaker: CircuitBreaker
    limiter: RateLimiter
    recovery: RecoveryCoordinator
    exchange: ExchangeClient
    executor: OrderExecutor
    metrics: Metrics | None


def build_exchange(settings: Settings) -> ExchangeClient:
    kraken = KrakenRestClient(settings.exchange, log_http=settings.monitoring.log_http)
    if settings.live_trading:
        return kraken
    # Paper fills use Kraken's public ticker only; no private endpoint is called.
    return PaperExchangeClient(price_source=kraken)


def build_components(
    settings: Settings,
    exchange: ExchangeClient | None = None,
    metrics: Metrics | None = None,
) -> Components:
    ledger = AuditLedger(settings.storage.ledger_path)
    event_bus = EventBus(ledger)
    order_logger = OrderLogger(Path(settings.storage.logs_path) / "orders.csv")
    event_bus.register_all(order_logger.handle_event)

    store = JsonOrderStore(settings.storage.orders_path)
    bots = JsonBotStateStore(settings.storage.bots_path)
    queue = OrderQueue(store, settings.queue, event_bus=event_bus)
    breaker = CircuitBreaker(
        settings.circuit_breaker,
        on_transition=metrics.record_breaker_transition if metrics else None,
    )
    limiter = RateLimiter(settings.rate_limit)
    recovery = RecoveryCoordinator(queue, bots, settings.queue, event_bus=event_bus)
    exchange = exchange or build_exchange(settings)
    executor = OrderExecutor(
        queue,
        exchange,
        StaticCredentialProvider(settings.credentials),
        breaker,
        limiter,
        recovery,
        settings.queue,
        breaker_config=settings.circuit_breaker,
        event_bus=event_bus,
    )
    if metrics:
        executor.set_metrics(metrics)
        event_bus.register(
            EventType.ORDER_QUEUED, lambda event: metrics.orders_queued_total.inc()
        )
    return Components(
        settings=settings,
        ledger=ledger,
        event_bus=event_bus,
        queue=queue,
        breaker=breaker,
        limiter=limiter,
        recovery=recovery,
        exchange=exchange,
        executor=executor,
        metrics=metrics,
    )


async def main_async(config_path: str | None = None) -> None:
    settings = load_settings(config_path)
    configure_logging(
        settings.monitoring.log_level,
        settings.storage.logs_path,
        settings.monitoring,
        run_mode=settings.run.mode,
    )
    if sys.version_info < (3, 10):
        log.warning(
            "python_version_unverified",
            version=f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
        )
    errors = settings.validate_for_trading()
    if errors:
        log.error("settings_validation_failed", errors=errors, run_mode=settings.run.mode)
        return

    store_lock = StoreLock(Path(settings.storage.orders_path) / "store.lock")
    try:
        store_lock.acquire()
    except StoreLockHeld as exc:
        log.error("another_instance_running", lock_path=exc.lock_path, pid=exc.pid)
        return

    metrics = Metrics() if settings.monitoring.metrics_enabled else None
    components = build_components(settings, metrics=metrics)
    if metrics:
        metrics.start(settings.monitoring.metrics_port)

    scheduler = TickScheduler(settings.scheduler.interval_sec, components.executor.run)
    await components.event_bus.publish(
        EventType.SYSTEM_STARTED,
        {
            "mode": settings.run.mode,
            "users_with_credentials": len(settings.credentials),
            "queue": components.queue.get_queue_counts(),
        },
        {"source": "main"},
    )
    log.info(
        "order_service_started",
        mode=settings.run.mode,
        scheduler_interval_sec=settings.scheduler.interval_sec,
        api_port=settings.monitoring.api_port if settings.monitoring.api_enabled else None,
    )

    async def api_server() -> None:
        """Run the operator API server."""
        try:
            config = uvicorn.Config(
                create_app(
                    OperatorContext(
                        settings=settings,
                        queue=components.queue,
                        executor=components.executor,
                        breaker=components.breaker,
                        ledger=components.ledger,
                        event_bus=components.event_bus,
                    )
                ),
                host="127.0.0.1",
                port=settings.monitoring.api_port,
                log_level="info",
            )
            server = uvicorn.Server(config)
            await server.serve()
        except Exception as exc:
            log.warning("api_server_failed", error=str(exc))

    async def metrics_loop() -> None:
        while metrics is not None:
            metrics.refresh_loop_ages()
            await asyncio.sleep(15)

    tasks = [metrics_loop()]
    if settings.scheduler.enabled:
        tasks.append(scheduler.run_forever())
    if settings.monitoring.api_enabled:
        tasks.append(api_server())
    try:
        await asyncio.gather(*tasks, return_exceptions=True)
    finally:
        await scheduler.stop()
        await components.exchange.close()
        await components.event_bus.publish(
            EventType.SYSTEM_STOPPED, {"mode": settings.run.mode}, {"source": "main"}
        )
        store_lock.release()
        log.info("order_service_stopped")


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
