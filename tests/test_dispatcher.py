from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from proxypanel import dispatcher as dispatcher_module
from proxypanel.aggregator import ProxyTable, ResultAggregator
from proxypanel.config import PanelConfig, save_config
from proxypanel.dispatcher import NetworkDispatcher
from proxypanel.errors import TransportError
from proxypanel.events import ConfigSaved, GroupsLoaded, ProvidersUpdated, RequestFailed
from proxypanel.runner import BackgroundLoop

from conftest import FakeClient, ManualRunner


def _dispatcher(client: FakeClient, runner) -> tuple[NetworkDispatcher, ResultAggregator]:
    aggregator = ResultAggregator(ProxyTable())
    return NetworkDispatcher(client, aggregator, runner), aggregator


def test_refresh_tolerates_config_failure(runner: ManualRunner) -> None:
    class NoConfigClient(FakeClient):
        async def get_config(self):
            raise TransportError("slow", kind=TransportError.TIMEOUT)

    dispatcher, aggregator = _dispatcher(NoConfigClient(), runner)
    dispatcher.refresh_groups(seq=7)
    runner.run_all()

    (event,) = aggregator.drain().events
    assert isinstance(event, GroupsLoaded)
    assert event.seq == 7
    assert event.routing_mode is None
    assert [group.id for group in event.groups] == ["GLOBAL", "Proxy"]


def test_api_error_becomes_request_failed(runner: ManualRunner) -> None:
    client = FakeClient()
    client.refresh_error = TransportError("connection refused")
    dispatcher, aggregator = _dispatcher(client, runner)

    dispatcher.refresh_groups(seq=1)
    runner.run_all()

    (event,) = aggregator.drain().events
    assert isinstance(event, RequestFailed)
    assert event.operation == "refresh"
    assert event.seq == 1
    assert event.error.kind == TransportError.CONNECTION_REFUSED


def test_stopped_loop_reports_failure_immediately() -> None:
    dispatcher, aggregator = _dispatcher(FakeClient(), BackgroundLoop())

    dispatcher.switch_node("Proxy", "b", seq=3)

    (event,) = aggregator.drain().events
    assert isinstance(event, RequestFailed)
    assert event.group_id == "Proxy"
    assert event.seq == 3


def test_update_with_no_updatable_providers(runner: ManualRunner) -> None:
    client = FakeClient()
    client.providers = {}
    dispatcher, aggregator = _dispatcher(client, runner)

    dispatcher.update_providers()
    runner.run_all()

    (event,) = aggregator.drain().events
    assert event == ProvidersUpdated(succeeded=[], failed={})


def test_persist_writes_a_copy_and_reports(runner: ManualRunner, tmp_path: Path) -> None:
    dispatcher, aggregator = _dispatcher(FakeClient(), runner)
    cfg = PanelConfig(favorite_nodes=["a"])

    dispatcher.persist(cfg, "Added a to favorites", tmp_path / "config.json")
    cfg.favorite_nodes.append("b")
    runner.run_all()

    (event,) = aggregator.drain().events
    assert event == ConfigSaved(what="Added a to favorites")
    assert '"b"' not in (tmp_path / "config.json").read_text(encoding="utf-8")


def test_persist_failure_is_reported(runner: ManualRunner, tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("", encoding="utf-8")
    dispatcher, aggregator = _dispatcher(FakeClient(), runner)

    dispatcher.persist(PanelConfig(), "Switched preset", blocker / "config.json")
    runner.run_all()

    (event,) = aggregator.drain().events
    assert isinstance(event, ConfigSaved)
    assert event.error


def test_out_of_order_saves_keep_the_newest_snapshot(runner: ManualRunner, tmp_path: Path) -> None:
    dispatcher, aggregator = _dispatcher(FakeClient(), runner)
    path = tmp_path / "config.json"
    cfg = PanelConfig(favorite_nodes=["a"])

    dispatcher.persist(cfg, "Added a to favorites", path)
    cfg.favorite_nodes.append("b")
    dispatcher.persist(cfg, "Added b to favorites", path)
    runner.run(1)
    runner.run(0)

    assert json.loads(path.read_text(encoding="utf-8"))["favorite_nodes"] == ["a", "b"]
    assert [event.what for event in aggregator.drain().events] == [
        "Added b to favorites",
        "Added a to favorites",
    ]


def test_overlapping_saves_on_background_loop_land_in_order(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    def slow_first_save(cfg: PanelConfig, path: Path | None = None) -> None:
        if cfg.favorite_nodes == ["a"]:
            time.sleep(0.3)
        save_config(cfg, path)

    monkeypatch.setattr(dispatcher_module, "save_config", slow_first_save)
    loop = BackgroundLoop()
    loop.start()
    try:
        dispatcher, aggregator = _dispatcher(FakeClient(), loop)
        path = tmp_path / "config.json"
        dispatcher.persist(PanelConfig(favorite_nodes=["a"]), "first", path)
        dispatcher.persist(PanelConfig(favorite_nodes=["a", "b"]), "second", path)

        saved: list[ConfigSaved] = []
        deadline = time.monotonic() + 5
        while len(saved) < 2 and time.monotonic() < deadline:
            saved += [event for event in aggregator.drain().events if isinstance(event, ConfigSaved)]
            time.sleep(0.02)
    finally:
        loop.stop()

    assert [event.what for event in saved] == ["first", "second"]
    assert json.loads(path.read_text(encoding="utf-8"))["favorite_nodes"] == ["a", "b"]
    assert sorted(item.name for item in tmp_path.iterdir()) == ["config.json"]
