"""Structured logging for the order executor.

Every log line is one JSON object. Order context (``order_id``,
``execution_id``, ``credential_id``) bound with ``bind_order_context`` is
merged into every event logged while that order is being processed, including
events from the limiter, the breaker and the exchange client.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Any, Iterator

import structlog

from src.config.settings import MonitoringConfig

SERVICE_NAME = "order-executor"

# Event keys that may carry exchange secrets or signatures.
REDACTED_KEYS = frozenset({"api_key", "api_secret", "API-Key", "API-Sign", "secret", "headers"})

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        event_dict[key] = "***"
    return event_dict


def add_service_fields(service: str, run_mode: str | None):
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service)
        if run_mode:
            event_dict.setdefault("run_mode", run_mode)
        return event_dict

    return processor


@contextmanager
def bind_order_context(
    order_id: str, execution_id: str | None = None, **extra: Any
) -> Iterator[None]:
    """Attach order identifiers to every event logged inside the block.

    Bindings live in contextvars, so concurrent orders in one tick stay apart.
    """
    fields = {"order_id": order_id, **extra}
    if execution_id:
        fields["execution_id"] = execution_id
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def configure_logging(
    log_level: str = "INFO",
    logs_path: str | None = None,
    monitoring: MonitoringConfig | None = None,
    run_mode: str | None = None,
) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
        force=True,
    )
    if logs_path:
        log_dir = Path(logs_path)
        log_dir.mkdir(parents=True, exist_ok=True)
        max_bytes = monitoring.error_log_max_bytes if monitoring else 5_000_000
        backup_count = monitoring.error_log_backup_count if monitoring else 3
        # Failed submissions, breaker trips and safety-net recoveries land here.
        file_handler = RotatingFileHandler(
            log_dir / "errors.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(file_handler)
    # Kraken private calls carry API-Key/API-Sign headers; keep client wire logs quiet.
    # Safe request logs are emitted as `rest_request` / `rest_response`.
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    structlog.contextvars.clear_contextvars()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_service_fields(SERVICE_NAME, run_mode),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            redact_secrets,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ],
        # Route through stdlib so warnings and errors also reach the rotating file.
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=False,
    )
