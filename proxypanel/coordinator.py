from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Protocol

from proxypanel.aggregator import DrainResult, ProxyTable, ResultAggregator
from proxypanel.api_client import ProxyApiClient
from proxypanel.config import PanelConfig, PanelSettings, StartupConfig
from proxypanel.dispatcher import NetworkDispatcher
from proxypanel.events import (
    ConnectionsLoaded,
    GroupsLoaded,
    ProvidersLoaded,
    RequestFailed,
    RulesLoaded,
    SwitchCompleted,
)
from proxypanel.models import LatencyRating, Node, ProbeBatch
from proxypanel.probe import LatencyProbeScheduler
from proxypanel.runner import BackgroundLoop
from proxypanel.schemas import Connection, Provider, RoutingMode, Rule
from proxypanel.state import (
    AppState,
    AppStateMachine,
    Command,
    CommandKind,
    DispatchContext,
    Effect,
    EffectKind,
    Page,
    Preset,
)


class InputSource(Protocol):
    def poll(self, timeout: float) -> Command | None: ...


@dataclass(frozen=True)
class NodeView:
    id: str
    display_name: str
    favorite: bool
    selected: bool
    testable: bool
    rating: LatencyRating
    latency: str


@dataclass(frozen=True)
class GroupView:
    id: str
    name: str
    group_type: str
    selected_node_id: str | None
    nodes: tuple[NodeView, ...]
    testing: bool
    switch_pending: bool


@dataclass(frozen=True)
class TrafficView:
    upload_total: int = 0
    download_total: int = 0
    upload_rate: int = 0
    download_rate: int = 0
    connection_count: int = 0


@dataclass(frozen=True)
class PanelSnapshot:
    """Immutable view handed to the renderer once per changed tick."""

    state: AppState
    enabled: frozenset[CommandKind]
    groups: tuple[GroupView, ...] = ()
    notice: str = ""
    health: str = "Unknown"
    rules: tuple[Rule, ...] = ()
    whitelist: tuple[str, ...] = ()
    blacklist: tuple[str, ...] = ()
    connections: tuple[Connection, ...] = ()
    traffic: TrafficView = field(default_factory=TrafficView)
    providers: tuple[Provider, ...] = ()
    favorites: tuple[str, ...] = ()
    custom_groups: tuple[tuple[str, tuple[str, ...]], ...] = ()
    generation: int = 0

    @property
    def status_line(self) -> str:
        return self.notice or self.state.status_message

    def group(self, group_id: str | None) -> GroupView | None:
        for group in self.groups:
            if group.id == group_id:
                return group
        return None


class CoordinationLoop:
    """Single owner of AppState and the proxy table.

    A tick polls at most one command, drains the aggregator without
    blocking, applies every mutation through the state machine and emits a
    new snapshot when anything changed. Network work only ever leaves this
    class as fire-and-forget tasks on the background loop.
    """

    def __init__(
        self,
        startup: StartupConfig,
        panel_config: PanelConfig,
        client: ProxyApiClient,
        settings: PanelSettings | None = None,
        logger: logging.Logger | None = None,
        runner: BackgroundLoop | None = None,
        machine: AppStateMachine | None = None,
        clock: Callable[[], float] = time.monotonic,
        config_path: Path | None = None,
    ) -> None:
        self._settings = settings or PanelSettings()
        self._logger = logger or logging.getLogger("proxypanel.coordinator")
        self._startup = startup
        self._config = panel_config
        self._config_path = config_path
        self._client = client
        self._clock = clock

        self._runner = runner or BackgroundLoop(logger=self._logger.getChild("runner"))
        self._machine = machine or AppStateMachine()
        self._table = ProxyTable()
        self._aggregator = ResultAggregator(self._table, logger=self._logger.getChild("aggregator"))
        self._scheduler = LatencyProbeScheduler(
            client,
            self._aggregator,
            self._runner,
            concurrency_ceiling=self._settings.probe_concurrency_ceiling,
            logger=self._logger.getChild("probe"),
        )
        self._dispatcher = NetworkDispatcher(
            client, self._aggregator, self._runner, logger=self._logger.getChild("dispatcher")
        )

        self._state = AppState.initial(startup.preset)
        self._favorites: set[str] = set(startup.favorites)
        self._notice = ""
        self._snapshot: PanelSnapshot | None = None
        self._generation = 0
        self._dirty = True

        self._refresh_seq = 0
        self._applied_refresh_seq = 0
        self._refresh_inflight = False
        self._refresh_failed = False
        self._last_refresh_at: float | None = None
        self._last_connections_at: float | None = None
        self._connections_inflight = False

        self._switch_issued: dict[str, int] = {}
        self._switch_targets: dict[str, str] = {}

        self._rules: tuple[Rule, ...] = ()
        self._connections: tuple[Connection, ...] = ()
        self._providers: tuple[Provider, ...] = ()
        self._traffic = TrafficView()
        self._traffic_sample: tuple[float, int, int] | None = None

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def table(self) -> ProxyTable:
        return self._table

    @property
    def aggregator(self) -> ResultAggregator:
        return self._aggregator

    @property
    def scheduler(self) -> LatencyProbeScheduler:
        return self._scheduler

    def start(self) -> None:
        self._runner.start()
        close = getattr(self._client, "close", None)
        if close is not None:
            self._runner.add_closer(close)
        self._execute(Effect(EffectKind.refresh_groups))

    def stop(self) -> None:
        self._runner.stop()

    def run(self, input_source: InputSource, render: Callable[[PanelSnapshot], None]) -> int:
        self.start()
        try:
            render(self.snapshot())
            poll_timeout = self._settings.input_poll_ms / 1000
            while not self._state.terminated:
                command = input_source.poll(poll_timeout)
                snapshot = self.tick(command)
                if snapshot is not None:
                    render(snapshot)
        finally:
            self.stop()
        self._logger.info("panel_exit", extra={"reason": "confirmed_quit"})
        return 0

    def snapshot(self) -> PanelSnapshot:
        if self._snapshot is None:
            self._snapshot = self._build_snapshot()
        return self._snapshot

    def tick(self, command: Command | None = None) -> PanelSnapshot | None:
        if command is not None:
            self.handle_command(command)
        changed = self._apply_drain(self._aggregator.drain()) or self._dirty
        self._dirty = False
        self._run_timers()
        if not changed and self._snapshot is not None:
            return None
        self._snapshot = self._build_snapshot()
        return self._snapshot

    def handle_command(self, command: Command) -> bool:
        transition = self._machine.dispatch(self._state, command, self._context_for(self._state))
        if transition.rejection is not None:
            self._notice = f"{transition.rejection.command.replace('_', ' ')}: {transition.rejection.reason}"
            self._logger.info(
                "policy_rejected",
                extra={
                    "command": command.kind.value,
                    "page": self._state.current_page.value,
                    "mode": self._state.mode.value,
                    "preset": self._state.preset.value,
                },
            )
            self._dirty = True
            return False
        self._notice = ""
        self._state = transition.state
        for effect in transition.effects:
            self._execute(effect)
        self._dirty = True
        return True

    def _context_for(self, state: AppState) -> DispatchContext:
        page = state.current_page
        if page == Page.routes:
            if state.expanded_group_id is not None:
                nodes = self._table.group_nodes(state.expanded_group_id)
                node = nodes[state.cursor] if 0 <= state.cursor < len(nodes) else None
                return DispatchContext(
                    item_count=len(nodes),
                    group_id=state.expanded_group_id,
                    node_id=node.id if node else None,
                    testable_node_ids=self._testable(nodes),
                )
            groups = self._table.groups
            group = groups[state.cursor] if 0 <= state.cursor < len(groups) else None
            return DispatchContext(
                item_count=len(groups),
                group_id=group.id if group else None,
                testable_node_ids=self._testable(self._table.group_nodes(group.id)) if group else (),
            )
        if page == Page.groups:
            favorites = sorted(self._favorites)
            names = sorted(self._config.node_groups)
            node_id = favorites[state.cursor] if 0 <= state.cursor < len(favorites) else None
            index = state.cursor - len(favorites)
            custom_group = names[index] if 0 <= index < len(names) else None
            return DispatchContext(
                item_count=len(favorites) + len(names), node_id=node_id, custom_group=custom_group
            )
        if page == Page.rules:
            entries = [("whitelist", item) for item in self._config.whitelist]
            entries += [("blacklist", item) for item in self._config.blacklist]
            total = len(entries) + len(self._rules)
            if 0 <= state.cursor < len(entries):
                rule_list, value = entries[state.cursor]
                return DispatchContext(item_count=total, rule_list=rule_list, rule_value=value)
            return DispatchContext(item_count=total)
        if page == Page.connections:
            connections = self._connections
            connection = connections[state.cursor] if 0 <= state.cursor < len(connections) else None
            return DispatchContext(item_count=len(connections), connection_id=connection.id if connection else None)
        if page == Page.update:
            return DispatchContext(item_count=len(self._providers))
        if page == Page.settings:
            return DispatchContext(item_count=len(Preset))
        return DispatchContext()

    def _testable(self, nodes: list[Node]) -> tuple[str, ...]:
        return tuple(node.id for node in nodes if node.testable)

    def _execute(self, effect: Effect) -> None:
        kind = effect.kind
        if kind == EffectKind.refresh_groups:
            self._refresh_seq += 1
            self._refresh_inflight = True
            self._last_refresh_at = self._clock()
            self._dispatcher.refresh_groups(self._refresh_seq)
        elif kind == EffectKind.start_batch and effect.group_id:
            epoch = self._scheduler.start_batch(
                effect.group_id,
                effect.node_ids,
                timeout_ms=self._settings.probe_timeout_ms,
            )
            batch = self._aggregator.batch(effect.group_id) or ProbeBatch(
                group_id=effect.group_id,
                epoch=epoch,
                requested_node_ids=frozenset(effect.node_ids),
                pending_count=0,
            )
            self._state = self._machine.apply_batch(self._state, batch)
        elif kind == EffectKind.switch_node and effect.group_id and effect.node_id:
            seq = self._switch_issued.get(effect.group_id, 0) + 1
            self._switch_issued[effect.group_id] = seq
            self._switch_targets[effect.group_id] = effect.node_id
            self._dispatcher.switch_node(effect.group_id, effect.node_id, seq)
        elif kind == EffectKind.set_routing_mode and effect.value:
            self._dispatcher.set_routing_mode(RoutingMode(effect.value))
        elif kind == EffectKind.load_rules:
            self._dispatcher.load_rules()
        elif kind == EffectKind.load_connections:
            self._connections_inflight = True
            self._last_connections_at = self._clock()
            self._dispatcher.load_connections()
        elif kind == EffectKind.close_connection and effect.target:
            self._dispatcher.close_connection(effect.target)
        elif kind == EffectKind.close_all_connections:
            self._dispatcher.close_all_connections()
        elif kind == EffectKind.load_providers:
            self._dispatcher.load_providers()
        elif kind == EffectKind.update_providers:
            self._dispatcher.update_providers()
        elif kind == EffectKind.toggle_favorite and effect.node_id:
            favorite = self._config.toggle_favorite(effect.node_id)
            if favorite:
                self._favorites.add(effect.node_id)
                message = f"Added {effect.node_id} to favorites"
            else:
                self._favorites.discard(effect.node_id)
                message = f"Removed {effect.node_id} from favorites"
            self._table.set_favorite(effect.node_id, favorite)
            self._dispatcher.persist(self._config, message, self._config_path)
        elif kind in {EffectKind.add_rule, EffectKind.remove_rule} and effect.target and effect.value:
            self._change_rule(effect)
        elif kind == EffectKind.persist_preset and effect.value:
            self._config.current_preset = effect.value
            self._dispatcher.persist(self._config, self._state.status_message, self._config_path)
        elif kind in {EffectKind.create_group, EffectKind.add_to_group, EffectKind.delete_group} and effect.target:
            self._change_group(effect)

    def _change_rule(self, effect: Effect) -> None:
        rule_list, value = effect.target or "", effect.value or ""
        if effect.kind == EffectKind.add_rule:
            changed = self._config.add_rule(rule_list, value)
            message = f"Added {value} to {rule_list}" if changed else f"{value} already in {rule_list}"
        else:
            changed = self._config.remove_rule(rule_list, value)
            message = f"Removed {value} from {rule_list}" if changed else f"{value} not in {rule_list}"
        if changed:
            self._dispatcher.persist(self._config, message, self._config_path)
        else:
            self._notice = message

    def _change_group(self, effect: Effect) -> None:
        name = effect.target or ""
        if effect.kind == EffectKind.create_group:
            changed = self._config.create_group(name)
            message = f"Created group {name}" if changed else f"Group {name} already exists"
        elif effect.kind == EffectKind.add_to_group:
            node_id = effect.node_id or ""
            if name not in self._config.node_groups:
                changed, message = False, f"Group {name} not found"
            else:
                changed = self._config.add_to_group(name, node_id)
                message = f"Added {node_id} to {name}" if changed else f"{node_id} already in {name}"
        else:
            changed = self._config.delete_group(name)
            message = f"Deleted group {name}" if changed else f"Group {name} not found"
        if changed:
            self._dispatcher.persist(self._config, message, self._config_path)
        else:
            self._notice = message

    def _apply_drain(self, result: DrainResult) -> bool:
        """Fold one drain into AppState.

        ``AppState.pending_batch`` tracks one batch at a time. Progress for
        another group's batch replaces it only once the tracked batch has
        finished; while the tracked batch is still running, the other
        group's summary goes to the log and its nodes keep their own
        ``testing`` flags in the snapshot.
        """
        for group_id, batch in result.progressed.items():
            summary = self._batch_summary(batch) if not batch.busy else ""
            tracked = self._state.pending_batch
            if tracked is None or tracked.group_id == group_id or not tracked.busy:
                self._state = self._machine.apply_batch(self._state, batch, summary)
            elif summary:
                self._logger.info("probe_batch_summary", extra={"group_id": group_id, "summary": summary})
        for event in result.events:
            self._apply_event(event)
        return result.changed

    def _apply_event(self, event) -> None:
        if isinstance(event, GroupsLoaded):
            if event.seq < self._applied_refresh_seq:
                self._logger.debug("refresh_result_stale", extra={"seq": event.seq})
                return
            self._applied_refresh_seq = event.seq
            if event.seq == self._refresh_seq:
                self._refresh_inflight = False
            self._refresh_failed = False
            self._table.replace(
                event.groups,
                event.nodes,
                favorites=self._favorites,
                pinned_selection=dict(self._switch_targets),
            )
        elif isinstance(event, SwitchCompleted):
            if event.seq != self._switch_issued.get(event.group_id):
                self._logger.info(
                    "switch_result_superseded",
                    extra={"group_id": event.group_id, "node_id": event.node_id, "seq": event.seq},
                )
                return
            self._switch_targets.pop(event.group_id, None)
            self._table.set_selection(event.group_id, event.node_id)
        elif isinstance(event, RequestFailed):
            if event.operation == "switch" and event.group_id is not None:
                if event.seq != self._switch_issued.get(event.group_id):
                    return
                self._switch_targets.pop(event.group_id, None)
            elif event.operation == "refresh":
                if event.seq == self._refresh_seq:
                    self._refresh_inflight = False
                self._refresh_failed = True
            elif event.operation == "load_connections":
                self._connections_inflight = False
        elif isinstance(event, RulesLoaded):
            self._rules = tuple(event.rules)
        elif isinstance(event, ConnectionsLoaded):
            self._connections_inflight = False
            self._apply_connections(event)
        elif isinstance(event, ProvidersLoaded):
            self._providers = tuple(event.providers)
        self._state = self._machine.apply_event(self._state, event)

    def _apply_connections(self, event: ConnectionsLoaded) -> None:
        snapshot = event.snapshot
        self._connections = tuple(snapshot.items())
        upload_rate = download_rate = 0
        if self._traffic_sample is not None:
            at, upload, download = self._traffic_sample
            elapsed = event.received_at - at
            if elapsed > 0:
                upload_rate = int(max(0, snapshot.upload_total - upload) / elapsed)
                download_rate = int(max(0, snapshot.download_total - download) / elapsed)
        self._traffic_sample = (event.received_at, snapshot.upload_total, snapshot.download_total)
        self._traffic = TrafficView(
            upload_total=snapshot.upload_total,
            download_total=snapshot.download_total,
            upload_rate=upload_rate,
            download_rate=download_rate,
            connection_count=len(self._connections),
        )

    def _batch_summary(self, batch: ProbeBatch) -> str:
        counts: Counter[str] = Counter()
        for node_id in batch.requested_node_ids:
            node = self._table.node(batch.group_id, node_id)
            rating = self._aggregator.rating(node) if node else LatencyRating.error
            counts[rating.value.lower()] += 1
        parts = [f"{counts[name]} {name}" for name in ("fast", "good", "slow", "timeout", "error") if counts[name]]
        return f"Tested {len(batch.requested_node_ids)} nodes in {batch.group_id}: {', '.join(parts)}"

    def _run_timers(self) -> None:
        now = self._clock()
        if not self._refresh_inflight and (
            self._last_refresh_at is None or now - self._last_refresh_at >= self._settings.refresh_interval_sec
        ):
            self._execute(Effect(EffectKind.refresh_groups))

        page = self._state.current_page
        if page == Page.connections:
            interval = self._settings.connections_refresh_sec
        elif page == Page.performance:
            interval = self._settings.performance_refresh_sec
        else:
            return
        if not self._connections_inflight and (
            self._last_connections_at is None or now - self._last_connections_at >= interval
        ):
            self._execute(Effect(EffectKind.load_connections))

    def _health(self) -> str:
        if self._refresh_failed:
            return "Error"
        if not any(group.selected_node_id for group in self._table.groups):
            return "Unknown"
        return "Good"

    def _build_snapshot(self) -> PanelSnapshot:
        self._generation += 1
        groups = []
        for group in self._table.groups:
            nodes = tuple(
                NodeView(
                    id=node.id,
                    display_name=node.display_name,
                    favorite=node.favorite,
                    selected=node.id == group.selected_node_id,
                    testable=node.testable,
                    rating=self._aggregator.rating(node),
                    latency=node.last_latency.label() if node.last_latency else "",
                )
                for node in self._table.group_nodes(group.id)
            )
            groups.append(
                GroupView(
                    id=group.id,
                    name=group.name,
                    group_type=group.group_type,
                    selected_node_id=group.selected_node_id,
                    nodes=nodes,
                    testing=self._aggregator.batch(group.id) is not None,
                    switch_pending=group.id in self._switch_targets,
                )
            )
        return PanelSnapshot(
            state=self._state,
            enabled=self._machine.enabled(self._state),
            groups=tuple(groups),
            notice=self._notice,
            health=self._health(),
            rules=self._rules,
            whitelist=tuple(self._config.whitelist),
            blacklist=tuple(self._config.blacklist),
            connections=self._connections,
            traffic=self._traffic,
            providers=self._providers,
            favorites=tuple(sorted(self._favorites)),
            custom_groups=tuple(
                (name, tuple(members)) for name, members in sorted(self._config.node_groups.items())
            ),
            generation=self._generation,
        )
