"""Shared fakes for proxypanel tests."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from typing import Any, Coroutine

import pytest

from proxypanel.errors import ProxyApiError
from proxypanel.models import Group, Node
from proxypanel.schemas import ConnectionsResponse, DaemonConfig, Provider, ProvidersResponse, RoutingMode, Rule


class ManualRunner:
    """Stands in for BackgroundLoop; submitted coroutines run only when a test says so."""

    def __init__(self) -> None:
        self.submitted: list[Coroutine[Any, Any, Any] | None] = []
        self.closers: list = []
        self.started = False

    def start(self) -> None:
        self.started = True

    def stop(self) -> None:
        for coro in self.submitted:
            if coro is not None:
                coro.close()
        self.submitted = []
        self.started = False

    def add_closer(self, closer) -> None:
        self.closers.append(closer)

    def submit(self, coro: Coroutine[Any, Any, Any]) -> object:
        self.submitted.append(coro)
        return object()

    @property
    def waiting(self) -> int:
        return sum(1 for coro in self.submitted if coro is not None)

    def run(self, index: int) -> None:
        coro = self.submitted[index]
        assert coro is not None, f"task {index} already ran"
        self.submitted[index] = None
        asyncio.run(coro)

    def run_all(self) -> None:
        for index, coro in enumerate(self.submitted):
            if coro is not None:
                self.run(index)


class FakeClient:
    """In-memory daemon with one selector group ``Proxy`` and GLOBAL."""

    def __init__(self, delays: dict[str, Any] | None = None, probe_sleep: float = 0.0) -> None:
        self.members = ["a", "b", "c", "DIRECT"]
        self.selected = {"Proxy": "a", "GLOBAL": "Proxy"}
        self.delays: dict[str, Any] = delays or {}
        self.probe_sleep = probe_sleep
        self.refresh_error: ProxyApiError | None = None
        self.switches: list[tuple[str, str]] = []
        self.probed: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.mode = RoutingMode.rule
        self.connections = ConnectionsResponse(downloadTotal=0, uploadTotal=0, connections=[])
        self.providers = {
            "sub": Provider(name="sub", vehicleType="HTTP"),
            "local": Provider(name="local", vehicleType="File"),
        }
        self.provider_errors: dict[str, ProxyApiError] = {}
        self.updated: list[str] = []
        self.closed = False

    async def fetch_proxy_table(self) -> tuple[list[Group], list[Node]]:
        if self.refresh_error is not None:
            raise self.refresh_error
        groups = [
            Group(id="GLOBAL", name="GLOBAL", node_ids=["Proxy"], selected_node_id=self.selected["GLOBAL"]),
            Group(id="Proxy", name="Proxy", node_ids=list(self.members), selected_node_id=self.selected["Proxy"]),
        ]
        nodes = [Node(id="Proxy", group_id="GLOBAL", display_name="Proxy", testable=True)]
        nodes += [
            Node(id=member, group_id="Proxy", display_name=member, testable=member != "DIRECT")
            for member in self.members
        ]
        return groups, nodes

    async def get_config(self) -> DaemonConfig:
        return DaemonConfig(mode=self.mode)

    async def set_routing_mode(self, mode: RoutingMode) -> None:
        self.mode = mode

    async def probe_latency(self, node_id: str, timeout_ms: int) -> int:
        self.probed.append(node_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.probe_sleep)
            result = self.delays.get(node_id, 100)
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.in_flight -= 1

    async def switch_node(self, group_id: str, node_id: str) -> None:
        self.switches.append((group_id, node_id))

    async def get_rules(self) -> list[Rule]:
        return [Rule(type="DOMAIN-SUFFIX", payload="example.com", proxy="Proxy")]

    async def get_connections(self) -> ConnectionsResponse:
        return self.connections

    async def close_connection(self, connection_id: str) -> None:
        return None

    async def close_all_connections(self) -> None:
        return None

    async def get_providers(self) -> ProvidersResponse:
        return ProvidersResponse(providers=dict(self.providers))

    async def update_provider(self, name: str) -> None:
        if name in self.provider_errors:
            raise self.provider_errors[name]
        self.updated.append(name)

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def runner() -> ManualRunner:
    return ManualRunner()


@pytest.fixture
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def clean_logger() -> Iterator[logging.Logger]:
    logger = logging.getLogger("proxypanel")
    saved = list(logger.handlers)
    for handler in saved:
        logger.removeHandler(handler)
    yield logger
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    for handler in saved:
        logger.addHandler(handler)
