from __future__ import annotations

import asyncio

import orjson
import pytest
import yaml

from conftest import make_request
from src.config.settings import QueueConfig
from src.orders.models import OrderStatus
from src.orders.queue import OrderQueue
from src.orders.store import JsonOrderStore
from src.tools import admin
from src.utils.single_instance import StoreLock


@pytest.fixture
def config_path(workspace_tmp_path, monkeypatch):
    monkeypatch.delenv("RUN_MODE", raising=False)
    path = workspace_tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "storage": {
                    "orders_path": str(workspace_tmp_path / "orders"),
                    "bots_path": str(workspace_tmp_path / "bots"),
                    "ledger_path": str(workspace_tmp_path / "ledger"),
                    "logs_path": str(workspace_tmp_path / "logs"),
                }
            }
        )
    )
    return path


def _seed(workspace_tmp_path):
    async def _run():
        queue = OrderQueue(JsonOrderStore(workspace_tmp_path / "orders"), QueueConfig())
        pending = await queue.create_order(make_request(bot_id="a"))
        stuck = await queue.create_order(make_request(bot_id="b"))
        await queue.mark_processing(stuck.id, "k1")
        return pending, stuck

    return asyncio.run(_run())


def test_stats_prints_counts(config_path, workspace_tmp_path, capsys) -> None:
    _seed(workspace_tmp_path)

    assert admin.main(["--config", str(config_path), "stats"]) == 0

    counts = orjson.loads(capsys.readouterr().out)
    assert counts["pending"] == 1
    assert counts["processing"] == 1
    assert counts["active"] == 2


def test_reset_processing_persists(config_path, workspace_tmp_path, capsys) -> None:
    _, stuck = _seed(workspace_tmp_path)

    assert admin.main(["--config", str(config_path), "reset-processing"]) == 0

    assert orjson.loads(capsys.readouterr().out) == {"reset": 1}
    reloaded = JsonOrderStore(workspace_tmp_path / "orders")
    assert reloaded.get(stuck.id).status == OrderStatus.RETRY


def test_show_unknown_order_exits_nonzero(config_path, workspace_tmp_path, capsys) -> None:
    _seed(workspace_tmp_path)

    assert admin.main(["--config", str(config_path), "show", "missing"]) == 1
    assert "missing" in capsys.readouterr().err


def test_refuses_while_store_is_locked(config_path, workspace_tmp_path, capsys) -> None:
    with StoreLock(workspace_tmp_path / "orders" / "store.lock"):
        assert admin.main(["--config", str(config_path), "stats"]) == 2
    assert "operator API" in capsys.readouterr().err


def test_purge_requires_days(config_path) -> None:
    with pytest.raises(SystemExit):
        admin.main(["--config", str(config_path), "purge-terminal"])
