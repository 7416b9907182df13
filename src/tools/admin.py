"""Admin CLI for bulk order operations against the JSON order store.

Takes the store lock, so it refuses to run while the executor service is up;
use the operator API for a running service.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any

import orjson

from src.config.settings import load_settings
from src.ledger import AuditLedger, EventBus
from src.orders.queue import OrderQueue
from src.orders.store import JsonOrderStore, OrderNotFoundError
from src.utils.single_instance import StoreLock, StoreLockHeld


def _print(data: Any) -> None:
    print(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect and repair the order queue.")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("stats", help="Order counts by status")
    show = sub.add_parser("show", help="Print one order")
    show.add_argument("order_id")
    sub.add_parser("reset-processing", help="Force every processing order back to retry")
    sub.add_parser("reset-stuck", help="Reset processing orders older than the stuck timeout")
    clear = sub.add_parser("clear-failed-credentials", help="Allow excluded credentials again")
    clear.add_argument("--order-id", default=None, help="Only this order (default: all open)")
    reset = sub.add_parser("reset-order", help="Return a failed order to pending")
    reset.add_argument("order_id")
    delete = sub.add_parser("delete-user", help="Delete a user's orders (never processing ones)")
    delete.add_argument("user_id")
    purge = sub.add_parser("purge-terminal", help="Delete old completed/failed orders")
    purge.add_argument("--days", type=float, required=True)
    return parser


async def run_command(args: argparse.Namespace, queue: OrderQueue) -> Any:
    if args.command == "stats":
        return queue.get_queue_counts()
    if args.command == "show":
        order = queue.get_order(args.order_id)
        if order is None:
            raise OrderNotFoundError(args.order_id)
        return order.to_dict()
    if args.command == "reset-processing":
        return {"reset": await queue.reset_all_processing_orders()}
    if args.command == "reset-stuck":
        return {"reset": await queue.reset_stuck_orders()}
    if args.command == "clear-failed-credentials":
        return {"cleared": await queue.clear_failed_credentials(args.order_id)}
    if args.command == "reset-order":
        order = await queue.reset_failed_order(args.order_id)
        return {"reset": order is not None, "order": order.to_dict() if order else None}
    if args.command == "delete-user":
        return {"deleted": await queue.delete_orders_for_user(args.user_id)}
    if args.command == "purge-terminal":
        return {"purged": await queue.purge_terminal_orders(timedelta(days=args.days))}
    raise ValueError(f"unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.config)

    lock = StoreLock(Path(settings.storage.orders_path) / "store.lock")
    try:
        lock.acquire()
    except StoreLockHeld as exc:
        print(f"{exc}. Use the operator API while the service is running.", file=sys.stderr)
        return 2
    try:
        ledger = AuditLedger(settings.storage.ledger_path)
        queue = OrderQueue(
            JsonOrderStore(settings.storage.orders_path),
            settings.queue,
            event_bus=EventBus(ledger),
        )
        try:
            _print(asyncio.run(run_command(args, queue)))
        except OrderNotFoundError as exc:
            print(str(exc), file=sys.stderr)
            return 1
    finally:
        lock.release()
    return 0


if __name__ == "__main__":
    sys.exit(main())
