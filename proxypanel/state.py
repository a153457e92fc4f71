from __future__ import annotations

from dataclasses import dataclass, replace
from enum import StrEnum
from functools import lru_cache

from proxypanel.errors import PolicyRejection, user_message
from proxypanel.events import (
    ConfigSaved,
    ConnectionsClosed,
    GroupsLoaded,
    PanelEvent,
    ProvidersUpdated,
    RequestFailed,
    RoutingModeChanged,
    SwitchCompleted,
)
from proxypanel.models import ProbeBatch
from proxypanel.schemas import RoutingMode


class Page(StrEnum):
    home = "Home"
    routes = "Routes"
    rules = "Rules"
    connections = "Connections"
    settings = "Settings"
    update = "Update"
    logs = "Logs"
    groups = "Groups"
    performance = "Performance"
    confirm_quit = "ConfirmQuit"


class Mode(StrEnum):
    simple = "Simple"
    expert = "Expert"

    def toggle(self) -> Mode:
        return Mode.expert if self == Mode.simple else Mode.simple


class CommandKind(StrEnum):
    go_home = "go_home"
    go_routes = "go_routes"
    go_rules = "go_rules"
    go_connections = "go_connections"
    go_settings = "go_settings"
    go_update = "go_update"
    go_logs = "go_logs"
    go_groups = "go_groups"
    go_performance = "go_performance"
    quit = "quit"
    confirm = "confirm"
    cancel = "cancel"
    toggle_mode = "toggle_mode"
    cycle_preset = "cycle_preset"
    set_preset = "set_preset"
    refresh = "refresh"
    cursor_up = "cursor_up"
    cursor_down = "cursor_down"
    expand_group = "expand_group"
    collapse_group = "collapse_group"
    batch_test = "batch_test"
    switch_node = "switch_node"
    toggle_favorite = "toggle_favorite"
    cycle_routing_mode = "cycle_routing_mode"
    add_rule = "add_rule"
    remove_rule = "remove_rule"
    close_connection = "close_connection"
    close_all_connections = "close_all_connections"
    update_providers = "update_providers"
    create_group = "create_group"
    add_to_group = "add_to_group"
    delete_group = "delete_group"


@dataclass(frozen=True)
class PresetPolicy:
    default_mode: Mode
    hidden_commands: frozenset[CommandKind] = frozenset()
    requires_expert_for: frozenset[CommandKind] = frozenset()
    description: str = ""


class Preset(StrEnum):
    default = "default"
    work = "work"
    strict = "strict"
    expert = "expert"

    @classmethod
    def from_name(cls, name: str) -> Preset | None:
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None

    @property
    def title(self) -> str:
        return self.value.capitalize()

    @property
    def policy(self) -> PresetPolicy:
        return PRESET_POLICIES[self]

    def next(self) -> Preset:
        order = list(Preset)
        return order[(order.index(self) + 1) % len(order)]


PRESET_POLICIES: dict[Preset, PresetPolicy] = {
    Preset.default: PresetPolicy(
        default_mode=Mode.simple,
        description="Simple mode by default, all features available",
    ),
    Preset.work: PresetPolicy(
        default_mode=Mode.simple,
        hidden_commands=frozenset({CommandKind.batch_test}),
        description="Minimal UI, hide speed test, focus on switching",
    ),
    Preset.strict: PresetPolicy(
        default_mode=Mode.simple,
        requires_expert_for=frozenset(
            {CommandKind.switch_node, CommandKind.cycle_routing_mode, CommandKind.close_connection}
        ),
        description="Disable quick operations, require Expert mode",
    ),
    Preset.expert: PresetPolicy(
        default_mode=Mode.expert,
        description="Expert mode by default, show all details",
    ),
}

ALWAYS_AVAILABLE = frozenset(
    {
        CommandKind.quit,
        CommandKind.confirm,
        CommandKind.cancel,
        CommandKind.toggle_mode,
        CommandKind.cycle_preset,
        CommandKind.set_preset,
        CommandKind.go_home,
        CommandKind.cursor_up,
        CommandKind.cursor_down,
    }
)
EXPERT_ONLY = frozenset({CommandKind.close_all_connections, CommandKind.update_providers})

_NAVIGATION = frozenset(
    {
        CommandKind.go_routes,
        CommandKind.go_rules,
        CommandKind.go_connections,
        CommandKind.go_settings,
        CommandKind.go_update,
        CommandKind.go_logs,
        CommandKind.go_groups,
        CommandKind.go_performance,
    }
)
_COMMON = frozenset(
    {
        CommandKind.go_home,
        CommandKind.quit,
        CommandKind.toggle_mode,
        CommandKind.cycle_preset,
        CommandKind.cursor_up,
        CommandKind.cursor_down,
    }
)

# (page, routes expanded) -> commands the page understands, before Mode/Preset filtering.
PAGE_COMMANDS: dict[tuple[Page, bool], frozenset[CommandKind]] = {
    (Page.home, False): _COMMON | _NAVIGATION | {CommandKind.refresh, CommandKind.cycle_routing_mode},
    (Page.routes, False): _COMMON
    | {CommandKind.refresh, CommandKind.expand_group, CommandKind.batch_test},
    (Page.routes, True): _COMMON
    | {
        CommandKind.collapse_group,
        CommandKind.batch_test,
        CommandKind.switch_node,
        CommandKind.toggle_favorite,
        CommandKind.refresh,
    },
    (Page.rules, False): _COMMON | {CommandKind.refresh, CommandKind.add_rule, CommandKind.remove_rule},
    (Page.connections, False): _COMMON
    | {CommandKind.refresh, CommandKind.close_connection, CommandKind.close_all_connections},
    (Page.settings, False): _COMMON | {CommandKind.set_preset},
    (Page.update, False): _COMMON | {CommandKind.refresh, CommandKind.update_providers},
    (Page.logs, False): _COMMON,
    (Page.groups, False): _COMMON
    | {
        CommandKind.refresh,
        CommandKind.toggle_favorite,
        CommandKind.create_group,
        CommandKind.add_to_group,
        CommandKind.delete_group,
    },
    (Page.performance, False): _COMMON | {CommandKind.refresh},
    (Page.confirm_quit, False): frozenset({CommandKind.confirm, CommandKind.cancel}),
}

_PAGE_FOR_NAVIGATION: dict[CommandKind, Page] = {
    CommandKind.go_home: Page.home,
    CommandKind.go_routes: Page.routes,
    CommandKind.go_rules: Page.rules,
    CommandKind.go_connections: Page.connections,
    CommandKind.go_settings: Page.settings,
    CommandKind.go_update: Page.update,
    CommandKind.go_logs: Page.logs,
    CommandKind.go_groups: Page.groups,
    CommandKind.go_performance: Page.performance,
}


@lru_cache(maxsize=None)
def enabled_commands(page: Page, expanded: bool, mode: Mode, preset: Preset) -> frozenset[CommandKind]:
    base = PAGE_COMMANDS.get((page, expanded), PAGE_COMMANDS.get((page, False), frozenset()))
    policy = preset.policy
    removed = set(policy.hidden_commands)
    if mode == Mode.simple:
        removed |= policy.requires_expert_for
        removed |= EXPERT_ONLY
    return frozenset(base - (removed - ALWAYS_AVAILABLE))


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    group_id: str | None = None
    node_id: str | None = None
    target: str | None = None
    value: str | None = None


class EffectKind(StrEnum):
    refresh_groups = "refresh_groups"
    start_batch = "start_batch"
    switch_node = "switch_node"
    set_routing_mode = "set_routing_mode"
    load_rules = "load_rules"
    load_connections = "load_connections"
    close_connection = "close_connection"
    close_all_connections = "close_all_connections"
    load_providers = "load_providers"
    update_providers = "update_providers"
    toggle_favorite = "toggle_favorite"
    add_rule = "add_rule"
    remove_rule = "remove_rule"
    persist_preset = "persist_preset"
    create_group = "create_group"
    add_to_group = "add_to_group"
    delete_group = "delete_group"


@dataclass(frozen=True)
class Effect:
    kind: EffectKind
    group_id: str | None = None
    node_id: str | None = None
    target: str | None = None
    value: str | None = None
    node_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class DispatchContext:
    """What the cursor points at, resolved by the coordination loop per input event."""

    item_count: int = 0
    group_id: str | None = None
    node_id: str | None = None
    testable_node_ids: tuple[str, ...] = ()
    connection_id: str | None = None
    rule_list: str | None = None
    rule_value: str | None = None
    custom_group: str | None = None


@dataclass(frozen=True)
class AppState:
    current_page: Page = Page.home
    expanded_group_id: str | None = None
    mode: Mode = Mode.simple
    preset: Preset = Preset.default
    active_group_id: str | None = None
    pending_batch: ProbeBatch | None = None
    status_message: str = ""
    cursor: int = 0
    routing_mode: RoutingMode | None = None
    terminated: bool = False

    @classmethod
    def initial(cls, preset: Preset) -> AppState:
        return cls(preset=preset, mode=preset.policy.default_mode)

    @property
    def routes_expanded(self) -> bool:
        return self.current_page == Page.routes and self.expanded_group_id is not None

    @property
    def busy(self) -> bool:
        return self.pending_batch is not None and self.pending_batch.busy


@dataclass(frozen=True)
class Transition:
    state: AppState
    effects: tuple[Effect, ...] = ()
    rejection: PolicyRejection | None = None

    @property
    def accepted(self) -> bool:
        return self.rejection is None


RULE_LISTS = ("whitelist", "blacklist")


class AppStateMachine:
    """Total transition function over (AppState, Command).

    Every command is checked against the capability table first; a
    disallowed command returns the state object untouched together with a
    ``PolicyRejection``.
    """

    def enabled(self, state: AppState) -> frozenset[CommandKind]:
        return enabled_commands(state.current_page, state.routes_expanded, state.mode, state.preset)

    def is_enabled(self, state: AppState, kind: CommandKind) -> bool:
        return kind in self.enabled(state)

    def dispatch(self, state: AppState, command: Command, context: DispatchContext | None = None) -> Transition:
        context = context or DispatchContext()
        try:
            self._check_allowed(state, command.kind)
            return self._apply(state, command, context)
        except PolicyRejection as rejection:
            return Transition(state=state, rejection=rejection)

    def _check_allowed(self, state: AppState, kind: CommandKind) -> None:
        if kind in self.enabled(state):
            return
        policy = state.preset.policy
        if kind in policy.hidden_commands:
            reason = f"disabled by {state.preset.title} preset"
        elif state.mode == Mode.simple and (kind in policy.requires_expert_for or kind in EXPERT_ONLY):
            reason = "requires Expert mode"
        else:
            reason = f"not available on {state.current_page.value}"
        raise PolicyRejection(kind.value, reason)

    def _apply(self, state: AppState, command: Command, context: DispatchContext) -> Transition:
        kind = command.kind

        if kind == CommandKind.quit:
            if state.current_page == Page.home:
                return Transition(replace(state, current_page=Page.confirm_quit))
            return Transition(self._navigate(state, Page.home))
        if kind == CommandKind.confirm:
            return Transition(replace(state, terminated=True))
        if kind == CommandKind.cancel:
            return Transition(self._navigate(state, Page.home))

        if kind in _PAGE_FOR_NAVIGATION:
            page = _PAGE_FOR_NAVIGATION[kind]
            return Transition(self._navigate(state, page), self._effects_on_enter(page))

        if kind == CommandKind.toggle_mode:
            mode = state.mode.toggle()
            return Transition(replace(state, mode=mode, status_message=f"{mode.value} mode"))
        if kind in {CommandKind.cycle_preset, CommandKind.set_preset}:
            return self._switch_preset(state, command)

        if kind == CommandKind.cursor_up:
            return Transition(replace(state, cursor=max(0, state.cursor - 1)))
        if kind == CommandKind.cursor_down:
            upper = max(0, context.item_count - 1)
            return Transition(replace(state, cursor=min(upper, state.cursor + 1)))

        if kind == CommandKind.refresh:
            return Transition(
                replace(state, status_message="Refreshing..."),
                self._effects_on_enter(state.current_page, refresh=True),
            )

        if kind == CommandKind.expand_group:
            group_id = command.group_id or context.group_id
            if not group_id:
                return Transition(replace(state, status_message="No route selected"))
            return Transition(
                replace(state, expanded_group_id=group_id, active_group_id=group_id, cursor=0)
            )
        if kind == CommandKind.collapse_group:
            return Transition(replace(state, expanded_group_id=None, cursor=0))

        if kind == CommandKind.batch_test:
            return self._batch_test(state, command, context)
        if kind == CommandKind.switch_node:
            group_id = command.group_id or state.expanded_group_id or context.group_id
            node_id = command.node_id or context.node_id
            if not group_id or not node_id:
                return Transition(replace(state, status_message="No node selected"))
            return Transition(
                replace(state, active_group_id=group_id, status_message=f"Switching {group_id} to {node_id}..."),
                (Effect(EffectKind.switch_node, group_id=group_id, node_id=node_id),),
            )
        if kind == CommandKind.toggle_favorite:
            node_id = command.node_id or context.node_id
            if not node_id:
                return Transition(replace(state, status_message="No node selected"))
            return Transition(state, (Effect(EffectKind.toggle_favorite, node_id=node_id),))
        if kind == CommandKind.cycle_routing_mode:
            current = state.routing_mode or RoutingMode.rule
            try:
                target = RoutingMode(command.value) if command.value else current.next()
            except ValueError:
                raise PolicyRejection(kind.value, f"unknown routing mode {command.value!r}") from None
            return Transition(
                replace(state, status_message=f"Switching to {target.value} mode..."),
                (Effect(EffectKind.set_routing_mode, value=target.value),),
            )

        if kind in {CommandKind.add_rule, CommandKind.remove_rule}:
            rule_list = command.target or context.rule_list
            value = (command.value or context.rule_value or "").strip()
            if rule_list not in RULE_LISTS or not value:
                return Transition(replace(state, status_message="Nothing to change"))
            effect_kind = EffectKind.add_rule if kind == CommandKind.add_rule else EffectKind.remove_rule
            return Transition(state, (Effect(effect_kind, target=rule_list, value=value),))

        if kind == CommandKind.create_group:
            name = (command.value or "").strip()
            if not name:
                return Transition(replace(state, status_message="Group name is empty"))
            return Transition(state, (Effect(EffectKind.create_group, target=name),))
        if kind == CommandKind.add_to_group:
            name = command.target or context.custom_group
            node_id = (command.value or command.node_id or "").strip()
            if not name or not node_id:
                return Transition(replace(state, status_message="Nothing to change"))
            return Transition(state, (Effect(EffectKind.add_to_group, target=name, node_id=node_id),))
        if kind == CommandKind.delete_group:
            name = command.target or context.custom_group
            if not name:
                return Transition(replace(state, status_message="No group selected"))
            return Transition(state, (Effect(EffectKind.delete_group, target=name),))

        if kind == CommandKind.close_connection:
            connection_id = command.target or context.connection_id
            if not connection_id:
                return Transition(replace(state, status_message="No connection selected"))
            return Transition(state, (Effect(EffectKind.close_connection, target=connection_id),))
        if kind == CommandKind.close_all_connections:
            return Transition(
                replace(state, status_message="Closing all connections..."),
                (Effect(EffectKind.close_all_connections),),
            )
        if kind == CommandKind.update_providers:
            return Transition(
                replace(state, status_message="Updating providers..."),
                (Effect(EffectKind.update_providers),),
            )

        raise PolicyRejection(kind.value, "unknown command")

    def _navigate(self, state: AppState, page: Page) -> AppState:
        return replace(state, current_page=page, expanded_group_id=None, cursor=0)

    def _effects_on_enter(self, page: Page, refresh: bool = False) -> tuple[Effect, ...]:
        if page in {Page.routes, Page.groups} or (refresh and page == Page.home):
            return (Effect(EffectKind.refresh_groups),)
        if page == Page.rules:
            return (Effect(EffectKind.load_rules),)
        if page in {Page.connections, Page.performance}:
            return (Effect(EffectKind.load_connections),)
        if page == Page.update:
            return (Effect(EffectKind.load_providers),)
        return ()

    def _switch_preset(self, state: AppState, command: Command) -> Transition:
        if command.kind == CommandKind.set_preset:
            preset = Preset.from_name(command.value or "")
            if preset is None:
                raise PolicyRejection(command.kind.value, f"unknown preset {command.value!r}")
        else:
            preset = state.preset.next()
        mode = preset.policy.default_mode
        new_state = replace(
            state,
            preset=preset,
            mode=mode,
            status_message=f"Switched to {preset.title} preset: {preset.policy.description}",
        )
        return Transition(new_state, (Effect(EffectKind.persist_preset, value=preset.value),))

    def _batch_test(self, state: AppState, command: Command, context: DispatchContext) -> Transition:
        group_id = command.group_id or state.expanded_group_id or context.group_id
        if not group_id:
            return Transition(replace(state, status_message="No route selected"))
        node_ids = context.testable_node_ids
        if not node_ids:
            return Transition(replace(state, status_message=f"No testable nodes in {group_id}"))
        return Transition(
            replace(state, active_group_id=group_id, status_message=f"Testing {len(node_ids)} nodes in {group_id}..."),
            (Effect(EffectKind.start_batch, group_id=group_id, node_ids=tuple(node_ids)),),
        )

    def apply_batch(self, state: AppState, batch: ProbeBatch, summary: str = "") -> AppState:
        current = state.pending_batch
        if current is not None and current.group_id == batch.group_id and current.epoch > batch.epoch:
            return state
        status = state.status_message
        if not batch.busy and summary:
            status = summary
        return replace(state, pending_batch=batch, status_message=status)

    def apply_event(self, state: AppState, event: PanelEvent) -> AppState:
        if isinstance(event, GroupsLoaded):
            updates: dict = {}
            if event.routing_mode is not None:
                updates["routing_mode"] = event.routing_mode
            if state.active_group_id is None and event.groups:
                updates["active_group_id"] = event.groups[0].id
            if state.status_message == "Refreshing...":
                updates["status_message"] = "Refreshed"
            return replace(state, **updates) if updates else state
        if isinstance(event, SwitchCompleted):
            return replace(state, status_message=f"Switched {event.group_id} to {event.node_id}")
        if isinstance(event, RoutingModeChanged):
            return replace(state, routing_mode=event.mode, status_message=f"Switched to {event.mode.value} mode")
        if isinstance(event, ConnectionsClosed):
            if event.connection_id is None:
                return replace(state, status_message="Closed all connections")
            return replace(state, status_message=f"Closed connection {event.connection_id[:8]}")
        if isinstance(event, ProvidersUpdated):
            total = len(event.succeeded) + len(event.failed)
            if total == 0:
                return replace(state, status_message="No updatable providers")
            if not event.failed:
                return replace(state, status_message=f"All {total} providers updated successfully!")
            return replace(
                state,
                status_message=f"Updated: {len(event.succeeded)} succeeded, {len(event.failed)} failed",
            )
        if isinstance(event, ConfigSaved):
            if event.error:
                return replace(state, status_message=f"Could not save config: {event.error}")
            return replace(state, status_message=event.what)
        if isinstance(event, RequestFailed):
            label = event.operation.replace("_", " ")
            return replace(state, status_message=f"{label} failed: {user_message(event.error)}")
        return state

