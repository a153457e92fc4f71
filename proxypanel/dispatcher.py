from __future__ import annotations

import asyncio
import logging
import time
from copy import deepcopy
from pathlib import Path
from typing import Awaitable, Callable

from proxypanel.aggregator import ResultAggregator
from proxypanel.api_client import ProxyApiClient
from proxypanel.config import PanelConfig, save_config
from proxypanel.errors import ProxyApiError
from proxypanel.events import (
    ConfigSaved,
    ConnectionsClosed,
    ConnectionsLoaded,
    GroupsLoaded,
    PanelEvent,
    ProvidersLoaded,
    ProvidersUpdated,
    RequestFailed,
    RoutingModeChanged,
    RulesLoaded,
    SwitchCompleted,
)
from proxypanel.runner import BackgroundLoop
from proxypanel.schemas import RoutingMode

PROVIDER_UPDATE_CONCURRENCY = 4


class NetworkDispatcher:
    """Fire-and-forget launcher for every non-probe daemon call.

    Each task reports exactly one terminal event into the aggregator inbox;
    API failures become ``RequestFailed`` events instead of exceptions.
    """

    def __init__(
        self,
        client: ProxyApiClient,
        aggregator: ResultAggregator,
        runner: BackgroundLoop,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._aggregator = aggregator
        self._runner = runner
        self._logger = logger or logging.getLogger("proxypanel.dispatcher")
        self._save_lock = asyncio.Lock()
        self._save_seq = 0
        self._saved_seq = 0

    def _spawn(
        self,
        operation: str,
        call: Callable[[], Awaitable[PanelEvent]],
        group_id: str | None = None,
        seq: int | None = None,
    ) -> None:
        async def _task() -> None:
            try:
                event = await call()
            except ProxyApiError as exc:
                self._logger.warning(
                    "daemon_request_failed",
                    extra={"operation": operation, "error": str(exc)},
                )
                event = RequestFailed(operation, exc, group_id=group_id, seq=seq)
            except Exception as exc:  # noqa: BLE001
                self._logger.exception("daemon_task_crashed", extra={"operation": operation})
                event = RequestFailed(operation, ProxyApiError(str(exc), kind="internal"), group_id=group_id, seq=seq)
            self._aggregator.submit(event)

        if self._runner.submit(_task()) is None:
            self._aggregator.submit(
                RequestFailed(operation, ProxyApiError("network loop stopped", kind="internal"), group_id, seq)
            )

    def refresh_groups(self, seq: int) -> None:
        async def _call() -> PanelEvent:
            table, config = await asyncio.gather(
                self._client.fetch_proxy_table(),
                self._client.get_config(),
                return_exceptions=True,
            )
            if isinstance(table, BaseException):
                raise table
            groups, nodes = table
            mode = None if isinstance(config, BaseException) else config.mode
            return GroupsLoaded(seq=seq, groups=groups, nodes=nodes, routing_mode=mode)

        self._spawn("refresh", _call, seq=seq)

    def switch_node(self, group_id: str, node_id: str, seq: int) -> None:
        async def _call() -> PanelEvent:
            await self._client.switch_node(group_id, node_id)
            return SwitchCompleted(group_id=group_id, node_id=node_id, seq=seq)

        self._spawn("switch", _call, group_id=group_id, seq=seq)

    def set_routing_mode(self, mode: RoutingMode) -> None:
        async def _call() -> PanelEvent:
            await self._client.set_routing_mode(mode)
            return RoutingModeChanged(mode)

        self._spawn("mode_switch", _call)

    def load_rules(self) -> None:
        async def _call() -> PanelEvent:
            return RulesLoaded(await self._client.get_rules())

        self._spawn("load_rules", _call)

    def load_connections(self) -> None:
        async def _call() -> PanelEvent:
            snapshot = await self._client.get_connections()
            return ConnectionsLoaded(snapshot=snapshot, received_at=time.monotonic())

        self._spawn("load_connections", _call)

    def close_connection(self, connection_id: str) -> None:
        async def _call() -> PanelEvent:
            await self._client.close_connection(connection_id)
            return ConnectionsClosed(connection_id)

        self._spawn("close_connection", _call)

    def close_all_connections(self) -> None:
        async def _call() -> PanelEvent:
            await self._client.close_all_connections()
            return ConnectionsClosed()

        self._spawn("close_all_connections", _call)

    def load_providers(self) -> None:
        async def _call() -> PanelEvent:
            response = await self._client.get_providers()
            providers = sorted(response.providers.values(), key=lambda item: item.name)
            return ProvidersLoaded(providers)

        self._spawn("load_providers", _call)

    def update_providers(self, names: list[str] | None = None) -> None:
        async def _call() -> PanelEvent:
            targets = names
            if targets is None:
                response = await self._client.get_providers()
                targets = sorted(name for name, item in response.providers.items() if item.updatable)
            semaphore = asyncio.Semaphore(PROVIDER_UPDATE_CONCURRENCY)

            async def _update(name: str) -> tuple[str, str]:
                async with semaphore:
                    try:
                        await self._client.update_provider(name)
                    except ProxyApiError as exc:
                        return name, str(exc)
                return name, ""

            results = await asyncio.gather(*(_update(name) for name in targets))
            succeeded = [name for name, error in results if not error]
            failed = {name: error for name, error in results if error}
            return ProvidersUpdated(succeeded=succeeded, failed=failed)

        self._spawn("update_providers", _call)

    def persist(self, cfg: PanelConfig, what: str, path: Path | None = None) -> None:
        """Save a copy of ``cfg``; saves run one at a time and never go backwards.

        A save that starts after a newer snapshot already reached disk is
        skipped, so the file always holds the latest accepted edit.
        """
        snapshot = deepcopy(cfg)
        self._save_seq += 1
        seq = self._save_seq

        async def _task() -> None:
            try:
                async with self._save_lock:
                    if seq < self._saved_seq:
                        self._logger.debug("config_save_superseded", extra={"seq": seq})
                    else:
                        await asyncio.to_thread(save_config, snapshot, path)
                        self._saved_seq = seq
            except OSError as exc:
                self._logger.warning("config_save_failed", extra={"error": str(exc)})
                self._aggregator.submit(ConfigSaved(what=what, error=str(exc)))
                return
            self._aggregator.submit(ConfigSaved(what=what))

        if self._runner.submit(_task()) is None:
            self._aggregator.submit(ConfigSaved(what=what, error="network loop stopped"))