from __future__ import annotations

import asyncio
import time

import pytest

from proxypanel import probe
from proxypanel.aggregator import ProxyTable, ResultAggregator
from proxypanel.errors import DaemonError, TransportError
from proxypanel.models import Group, LatencyRating, Node
from proxypanel.probe import LatencyProbeScheduler
from proxypanel.runner import BackgroundLoop

from conftest import FakeClient, ManualRunner


def _setup(node_ids: list[str], client: FakeClient, runner, ceiling: int = 16):
    table = ProxyTable()
    table.replace(
        [Group(id="G", name="G", node_ids=list(node_ids), selected_node_id=node_ids[0])],
        [Node(id=node_id, group_id="G", display_name=node_id) for node_id in node_ids],
    )
    aggregator = ResultAggregator(table)
    scheduler = LatencyProbeScheduler(client, aggregator, runner, concurrency_ceiling=ceiling)
    return table, aggregator, scheduler


def test_batch_maps_every_outcome_to_a_rating(runner: ManualRunner) -> None:
    client = FakeClient(
        delays={
            "fast": 150,
            "good": 250,
            "slow": 600,
            "late": TransportError("deadline", kind=TransportError.TIMEOUT),
            "broken": DaemonError("unavailable", status_code=503),
        }
    )
    node_ids = ["fast", "good", "slow", "late", "broken"]
    table, aggregator, scheduler = _setup(node_ids, client, runner)

    epoch = scheduler.start_batch("G", node_ids)
    runner.run_all()
    result = aggregator.drain()

    ratings = {node_id: aggregator.rating(table.node("G", node_id)) for node_id in node_ids}
    assert ratings == {
        "fast": LatencyRating.fast,
        "good": LatencyRating.good,
        "slow": LatencyRating.slow,
        "late": LatencyRating.timeout,
        "broken": LatencyRating.error,
    }
    assert result.completed[0].epoch == epoch
    assert result.completed[0].pending_count == 0


def test_start_batch_returns_before_any_probe_runs(runner: ManualRunner) -> None:
    client = FakeClient()
    table, aggregator, scheduler = _setup(["a", "b", "c"], client, runner)

    epoch = scheduler.start_batch("G", ["a", "b", "c", "a"])

    assert epoch == 1
    assert client.probed == []
    assert aggregator.batch("G").pending_count == 3
    assert all(aggregator.rating(node) is LatencyRating.testing for node in table.group_nodes("G"))
    runner.stop()


def test_concurrency_cap_limits_in_flight_probes(runner: ManualRunner) -> None:
    client = FakeClient(probe_sleep=0.01)
    node_ids = [f"n{i}" for i in range(12)]
    _, aggregator, scheduler = _setup(node_ids, client, runner)

    scheduler.start_batch("G", node_ids, concurrency_cap=3)
    runner.run_all()

    assert client.max_in_flight == 3
    assert len(client.probed) == 12
    assert aggregator.drain().completed


def test_ceiling_bounds_uncapped_batches(runner: ManualRunner) -> None:
    client = FakeClient(probe_sleep=0.01)
    node_ids = [f"n{i}" for i in range(10)]
    _, _, scheduler = _setup(node_ids, client, runner, ceiling=4)

    scheduler.start_batch("G", node_ids)
    runner.run_all()

    assert client.max_in_flight == 4


def test_resolve_cap() -> None:
    scheduler = LatencyProbeScheduler(FakeClient(), ResultAggregator(ProxyTable()), ManualRunner())
    assert scheduler.resolve_cap(40) == 16
    assert scheduler.resolve_cap(5) == 5
    assert scheduler.resolve_cap(5, 2) == 2
    assert scheduler.resolve_cap(0) == 1


def test_second_batch_supersedes_first(runner: ManualRunner) -> None:
    client = FakeClient(delays={"a": 120})
    table, aggregator, scheduler = _setup(["a"], client, runner)

    scheduler.start_batch("G", ["a"])
    second = scheduler.start_batch("G", ["a"])
    client.delays["a"] = 700
    runner.run(1)
    client.delays["a"] = 120
    runner.run(0)
    result = aggregator.drain()

    assert result.stale == 1
    assert table.node("G", "a").last_latency.value_ms == 700
    assert table.node("G", "a").last_latency.epoch == second


def test_stopped_loop_reports_failures_instead_of_hanging() -> None:
    client = FakeClient()
    loop = BackgroundLoop()
    table, aggregator, scheduler = _setup(["a", "b"], client, loop)

    scheduler.start_batch("G", ["a", "b"])
    result = aggregator.drain()

    assert result.completed
    assert aggregator.rating(table.node("G", "a")) is LatencyRating.error


def test_batch_on_background_loop_does_not_block_caller() -> None:
    client = FakeClient(probe_sleep=0.3)
    loop = BackgroundLoop()
    loop.start()
    try:
        table, aggregator, scheduler = _setup(["a", "b", "c"], client, loop)
        started = time.monotonic()
        scheduler.start_batch("G", ["a", "b", "c"])
        assert time.monotonic() - started < 0.2

        deadline = time.monotonic() + 5
        completed = []
        while not completed and time.monotonic() < deadline:
            completed = aggregator.drain().completed
            time.sleep(0.02)
        assert completed
        assert all(aggregator.rating(node) is LatencyRating.fast for node in table.group_nodes("G"))
    finally:
        loop.stop()


def test_hanging_probe_is_cut_off_as_timeout(runner: ManualRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(probe, "TIMEOUT_GRACE_SEC", 0.0)
    client = FakeClient(probe_sleep=60)
    table, aggregator, scheduler = _setup(["stuck"], client, runner)

    scheduler.start_batch("G", ["stuck"], timeout_ms=10)
    started = time.monotonic()
    runner.run_all()

    assert time.monotonic() - started < 5
    assert aggregator.drain().completed
    assert aggregator.rating(table.node("G", "stuck")) is LatencyRating.timeout
    assert client.in_flight == 0


async def test_cancel_while_waiting_for_a_slot_still_reports(runner: ManualRunner) -> None:
    client = FakeClient()
    table, aggregator, scheduler = _setup(["a"], client, runner)
    epoch = scheduler.start_batch("G", ["a"])
    runner.stop()

    semaphore = asyncio.Semaphore(1)
    await semaphore.acquire()
    task = asyncio.create_task(scheduler._probe(semaphore, "G", epoch, "a", 1000))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    result = aggregator.drain()
    assert client.probed == []
    assert result.completed[0].pending_count == 0
    assert table.node("G", "a").last_latency.epoch == epoch
    assert aggregator.rating(table.node("G", "a")) is LatencyRating.error
