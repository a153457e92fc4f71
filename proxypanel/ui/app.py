from __future__ import annotations

import curses
from pathlib import Path

from proxypanel.coordinator import CoordinationLoop, GroupView, PanelSnapshot
from proxypanel.logger import tail_log
from proxypanel.models import LatencyRating
from proxypanel.state import Command, CommandKind, Page, Preset

CTRL_P = 0x10
ESCAPE = 27
ENTER_KEYS = {curses.KEY_ENTER, 10, 13}
BACKSPACE_KEYS = {curses.KEY_BACKSPACE, 127, 8}
MAX_INPUT = 200

HOME_KEYS: dict[int, CommandKind] = {
    ord("g"): CommandKind.go_routes,
    ord("l"): CommandKind.go_rules,
    ord("c"): CommandKind.go_connections,
    ord("u"): CommandKind.go_update,
    ord("s"): CommandKind.go_settings,
    ord("p"): CommandKind.go_performance,
    ord("o"): CommandKind.go_logs,
    ord("f"): CommandKind.go_groups,
    ord("m"): CommandKind.cycle_routing_mode,
}

GLOBAL_KEYS: dict[int, CommandKind] = {
    ord("q"): CommandKind.quit,
    ord("h"): CommandKind.go_home,
    ord("r"): CommandKind.refresh,
    ord("e"): CommandKind.toggle_mode,
    CTRL_P: CommandKind.cycle_preset,
    curses.KEY_UP: CommandKind.cursor_up,
    ord("k"): CommandKind.cursor_up,
    curses.KEY_DOWN: CommandKind.cursor_down,
    ord("j"): CommandKind.cursor_down,
}

HINTS: list[tuple[CommandKind, str]] = [
    (CommandKind.go_routes, "g routes"),
    (CommandKind.go_rules, "l rules"),
    (CommandKind.go_connections, "c connections"),
    (CommandKind.go_update, "u update"),
    (CommandKind.go_settings, "s settings"),
    (CommandKind.go_performance, "p performance"),
    (CommandKind.go_logs, "o logs"),
    (CommandKind.go_groups, "f groups"),
    (CommandKind.cycle_routing_mode, "m routing mode"),
    (CommandKind.expand_group, "enter open"),
    (CommandKind.switch_node, "enter switch"),
    (CommandKind.collapse_group, "esc back"),
    (CommandKind.batch_test, "t test"),
    (CommandKind.toggle_favorite, "* favorite"),
    (CommandKind.add_rule, "w/b add rule"),
    (CommandKind.remove_rule, "d remove rule"),
    (CommandKind.create_group, "n new group"),
    (CommandKind.add_to_group, "a add node"),
    (CommandKind.delete_group, "d delete group"),
    (CommandKind.close_connection, "x close"),
    (CommandKind.close_all_connections, "X close all"),
    (CommandKind.update_providers, "U update all"),
    (CommandKind.set_preset, "enter apply preset"),
    (CommandKind.refresh, "r refresh"),
    (CommandKind.toggle_mode, "e mode"),
    (CommandKind.cycle_preset, "^P preset"),
    (CommandKind.quit, "q quit"),
]

RATING_COLORS = {
    LatencyRating.fast: 2,
    LatencyRating.good: 3,
    LatencyRating.slow: 4,
    LatencyRating.timeout: 4,
    LatencyRating.error: 4,
    LatencyRating.testing: 1,
    LatencyRating.untested: 0,
}


def _format_bytes(size: float) -> str:
    if size < 1024:
        return f"{size:.0f} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / (1024 * 1024):.2f} MB"
    return f"{size / (1024 * 1024 * 1024):.2f} GB"


def _format_rate(bytes_per_sec: float) -> str:
    if bytes_per_sec < 1024:
        return f"{bytes_per_sec:.0f} B/s"
    if bytes_per_sec < 1024 * 1024:
        return f"{bytes_per_sec / 1024:.0f} KB/s"
    if bytes_per_sec < 1024 * 1024 * 1024:
        return f"{bytes_per_sec / (1024 * 1024):.2f} MB/s"
    return f"{bytes_per_sec / (1024 * 1024 * 1024):.2f} GB/s"


def key_to_command(key: int, snapshot: PanelSnapshot) -> Command | None:
    """Translate one key press into a Command for the page currently shown."""
    state = snapshot.state
    page = state.current_page

    if page == Page.confirm_quit:
        if key in {ord("y"), ord("Y")}:
            return Command(CommandKind.confirm)
        if key in {ord("n"), ord("N"), ESCAPE}:
            return Command(CommandKind.cancel)
        return None

    if page == Page.home and key in HOME_KEYS:
        return Command(HOME_KEYS[key])

    if page == Page.routes:
        if key in ENTER_KEYS:
            kind = CommandKind.switch_node if state.expanded_group_id else CommandKind.expand_group
            return Command(kind)
        if key in {ESCAPE, curses.KEY_LEFT} and state.expanded_group_id:
            return Command(CommandKind.collapse_group)
        if key in {ord("t"), ord("T")}:
            return Command(CommandKind.batch_test)
        if key == ord("*"):
            return Command(CommandKind.toggle_favorite)
    elif page == Page.groups:
        if key == ord("*"):
            return Command(CommandKind.toggle_favorite)
        if key in {ord("d"), ord("D")}:
            return Command(CommandKind.delete_group)
    elif page == Page.connections:
        if key == ord("x"):
            return Command(CommandKind.close_connection)
        if key == ord("X"):
            return Command(CommandKind.close_all_connections)
    elif page == Page.update and key == ord("U"):
        return Command(CommandKind.update_providers)
    elif page == Page.rules and key in {ord("d"), ord("D")}:
        return Command(CommandKind.remove_rule)
    elif page == Page.settings and key in ENTER_KEYS:
        presets = list(Preset)
        if 0 <= state.cursor < len(presets):
            return Command(CommandKind.set_preset, value=presets[state.cursor].value)
        return None

    if key == ESCAPE:
        return Command(CommandKind.quit)
    if key in GLOBAL_KEYS:
        return Command(GLOBAL_KEYS[key])
    return None


class LineEditor:
    """One-line text entry fed a key at a time, so input never blocks the loop."""

    def __init__(self, label: str, kind: CommandKind, target: str | None = None, limit: int = MAX_INPUT) -> None:
        self.label = label
        self.kind = kind
        self.target = target
        self.limit = limit
        self.chars: list[str] = []
        self.done = False

    @property
    def text(self) -> str:
        return "".join(self.chars)

    def feed(self, key: int) -> Command | None:
        if key in ENTER_KEYS:
            self.done = True
            value = self.text.strip()
            if not value:
                return None
            return Command(self.kind, target=self.target, value=value)
        if key == ESCAPE:
            self.done = True
        elif key in BACKSPACE_KEYS:
            if self.chars:
                self.chars.pop()
        elif 32 <= key < 127 and len(self.chars) < self.limit:
            self.chars.append(chr(key))
        return None


def _custom_group_at(snapshot: PanelSnapshot) -> str | None:
    index = snapshot.state.cursor - len(snapshot.favorites)
    if 0 <= index < len(snapshot.custom_groups):
        return snapshot.custom_groups[index][0]
    return None


def editor_for_key(key: int, snapshot: PanelSnapshot) -> LineEditor | Command | None:
    """Keys that open a text prompt; a disabled prompt comes back as a bare Command to be rejected."""
    page = snapshot.state.current_page
    editor: LineEditor | None = None
    if page == Page.rules and key in {ord("w"), ord("W"), ord("b"), ord("B")}:
        rule_list = "whitelist" if key in {ord("w"), ord("W")} else "blacklist"
        editor = LineEditor(f"Add to {rule_list}: ", CommandKind.add_rule, target=rule_list)
    elif page == Page.groups and key in {ord("n"), ord("N")}:
        editor = LineEditor("New group name: ", CommandKind.create_group)
    elif page == Page.groups and key in {ord("a"), ord("A")}:
        name = _custom_group_at(snapshot)
        if name is None:
            return None
        editor = LineEditor(f"Add node to {name}: ", CommandKind.add_to_group, target=name)
    if editor is not None and editor.kind not in snapshot.enabled:
        return Command(editor.kind, target=editor.target)
    return editor


class PanelUI:
    """curses renderer and input source for the coordination loop."""

    def __init__(self, stdscr, log_dir: Path) -> None:
        self._stdscr = stdscr
        self._log_dir = log_dir
        self._snapshot: PanelSnapshot | None = None
        self._editor: LineEditor | None = None
        curses.curs_set(0)
        stdscr.keypad(True)
        if curses.has_colors():
            curses.start_color()
            curses.use_default_colors()
            curses.init_pair(1, curses.COLOR_CYAN, -1)
            curses.init_pair(2, curses.COLOR_GREEN, -1)
            curses.init_pair(3, curses.COLOR_YELLOW, -1)
            curses.init_pair(4, curses.COLOR_RED, -1)
            curses.init_pair(5, curses.COLOR_MAGENTA, -1)

    def poll(self, timeout: float) -> Command | None:
        self._stdscr.timeout(max(1, int(timeout * 1000)))
        try:
            key = self._stdscr.getch()
        except curses.error:
            return None
        if key == -1 or self._snapshot is None:
            return None
        if key == curses.KEY_RESIZE:
            self.render(self._snapshot)
            return None
        if self._editor is not None:
            command = self._editor.feed(key)
            if self._editor.done:
                self._editor = None
            self.render(self._snapshot)
            return command
        opened = editor_for_key(key, self._snapshot)
        if isinstance(opened, LineEditor):
            self._editor = opened
            self.render(self._snapshot)
            return None
        if opened is not None:
            return opened
        return key_to_command(key, self._snapshot)

    def _draw_prompt(self, editor: LineEditor, h: int, w: int) -> None:
        self._safe_addstr(h - 1, 0, " " * (w - 1))
        self._safe_addstr(h - 1, 0, f"{editor.label}{editor.text}_", curses.A_BOLD | curses.color_pair(1))

    def _safe_addstr(self, y: int, x: int, text: str, attr: int = curses.A_NORMAL) -> None:
        try:
            h, w = self._stdscr.getmaxyx()
            if 0 <= y < h and 0 <= x < w:
                max_len = w - x - 1
                if len(text) > max_len:
                    text = text[:max_len]
                self._stdscr.addstr(y, x, text, attr)
        except curses.error:
            pass

    def render(self, snapshot: PanelSnapshot) -> None:
        self._snapshot = snapshot
        stdscr = self._stdscr
        stdscr.erase()
        h, w = stdscr.getmaxyx()
        self._render_header(snapshot, w)

        body_top, body_bottom = 2, h - 3
        page = snapshot.state.current_page
        renderer = {
            Page.home: self._render_home,
            Page.routes: self._render_routes,
            Page.rules: self._render_rules,
            Page.connections: self._render_connections,
            Page.settings: self._render_settings,
            Page.update: self._render_update,
            Page.logs: self._render_logs,
            Page.groups: self._render_groups,
            Page.performance: self._render_performance,
            Page.confirm_quit: self._render_confirm_quit,
        }[page]
        renderer(snapshot, body_top, body_bottom)

        self._render_footer(snapshot, h, w)
        if self._editor is not None:
            self._draw_prompt(self._editor, h, w)
        stdscr.noutrefresh()
        curses.doupdate()

    def _render_header(self, snapshot: PanelSnapshot, w: int) -> None:
        state = snapshot.state
        routing = state.routing_mode.value if state.routing_mode else "?"
        title = (
            f" proxypanel | {state.current_page.value} | {state.mode.value} | "
            f"{state.preset.title} preset | routing {routing} | health {snapshot.health} "
        )
        self._safe_addstr(0, 0, title.ljust(w - 1), curses.A_REVERSE | curses.A_BOLD)

    def _render_footer(self, snapshot: PanelSnapshot, h: int, w: int) -> None:
        hints = "  ".join(label for kind, label in HINTS if kind in snapshot.enabled)
        self._safe_addstr(h - 2, 0, hints, curses.A_DIM)
        status = snapshot.status_line
        attr = curses.color_pair(3) if snapshot.notice else curses.A_BOLD
        self._safe_addstr(h - 1, 0, status, attr)

    def _render_list(self, rows: list[tuple[str, int]], cursor: int, top: int, bottom: int) -> None:
        height = max(1, bottom - top)
        start = max(0, cursor - height + 1)
        for offset, (text, attr) in enumerate(rows[start : start + height]):
            index = start + offset
            marker = "> " if index == cursor else "  "
            if index == cursor:
                attr |= curses.A_BOLD
            self._safe_addstr(top + offset, 0, marker + text, attr)

    def _render_home(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        state = snapshot.state
        active = snapshot.group(state.active_group_id)
        lines = [
            ("Routing mode", state.routing_mode.value if state.routing_mode else "unknown"),
            ("Active route", active.name if active else "-"),
            ("Selected node", (active.selected_node_id or "-") if active else "-"),
            ("Health", snapshot.health),
            ("Routes", str(len(snapshot.groups))),
        ]
        if state.pending_batch is not None:
            lines.append(("Last test", f"{state.pending_batch.group_id} epoch {state.pending_batch.epoch}"))
        for offset, (label, value) in enumerate(lines):
            self._safe_addstr(top + offset, 2, f"{label:<14}", curses.color_pair(1))
            self._safe_addstr(top + offset, 17, value)

    def _render_routes(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        state = snapshot.state
        expanded = snapshot.group(state.expanded_group_id)
        if expanded is None:
            rows = [(self._group_row(group), curses.A_NORMAL) for group in snapshot.groups]
            if not rows:
                self._safe_addstr(top, 2, "No routes loaded")
                return
            self._render_list(rows, state.cursor, top, bottom)
            return

        self._safe_addstr(top, 2, self._group_row(expanded), curses.color_pair(5) | curses.A_BOLD)
        rows = []
        for node in expanded.nodes:
            star = "★" if node.favorite else " "
            mark = "●" if node.selected else " "
            latency = node.latency if node.rating != LatencyRating.testing else ""
            text = f"{mark} {star} {node.display_name:<40} {node.rating.value:<9} {latency}"
            rows.append((text, curses.color_pair(RATING_COLORS[node.rating])))
        self._render_list(rows, state.cursor, top + 2, bottom)

    def _group_row(self, group: GroupView) -> str:
        flags = []
        if group.testing:
            flags.append("testing")
        if group.switch_pending:
            flags.append("switching")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        selected = group.selected_node_id or "-"
        return f"{group.name:<24} {group.group_type:<11} {len(group.nodes):>4} nodes  -> {selected}{suffix}"

    def _render_rules(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        rows = [(f"whitelist  {item}", curses.color_pair(2)) for item in snapshot.whitelist]
        rows += [(f"blacklist  {item}", curses.color_pair(4)) for item in snapshot.blacklist]
        rows += [
            (f"{rule.type:<16} {rule.payload:<36} {rule.proxy}", curses.A_NORMAL) for rule in snapshot.rules
        ]
        if not rows:
            self._safe_addstr(top, 2, "No rules")
            return
        self._render_list(rows, snapshot.state.cursor, top, bottom)

    def _render_connections(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        traffic = snapshot.traffic
        self._safe_addstr(
            top,
            2,
            f"{traffic.connection_count} connections  up {_format_bytes(traffic.upload_total)}"
            f"  down {_format_bytes(traffic.download_total)}",
            curses.color_pair(1),
        )
        rows = []
        for connection in snapshot.connections:
            chain = " > ".join(connection.chains) if connection.chains else "-"
            rows.append(
                (
                    f"{connection.metadata.target:<40} {connection.metadata.network:<4} {chain:<30} "
                    f"{_format_bytes(connection.download)}",
                    curses.A_NORMAL,
                )
            )
        self._render_list(rows, snapshot.state.cursor, top + 2, bottom)

    def _render_performance(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        traffic = snapshot.traffic
        lines = [
            ("Upload rate", _format_rate(traffic.upload_rate)),
            ("Download rate", _format_rate(traffic.download_rate)),
            ("Upload total", _format_bytes(traffic.upload_total)),
            ("Download total", _format_bytes(traffic.download_total)),
            ("Connections", str(traffic.connection_count)),
        ]
        for offset, (label, value) in enumerate(lines):
            self._safe_addstr(top + offset, 2, f"{label:<16}", curses.color_pair(1))
            self._safe_addstr(top + offset, 19, value)

    def _render_settings(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        state = snapshot.state
        self._safe_addstr(top, 2, f"Mode: {state.mode.value}", curses.color_pair(1))
        rows = []
        for preset in Preset:
            current = "*" if preset == state.preset else " "
            rows.append((f"{current} {preset.title:<8} {preset.policy.description}", curses.A_NORMAL))
        self._render_list(rows, state.cursor, top + 2, bottom)

    def _render_update(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        rows = []
        for provider in snapshot.providers:
            updated = provider.updated_at or "-"
            rows.append(
                (
                    f"{provider.name:<28} {provider.vehicle_type:<8} {len(provider.proxies):>4} proxies  {updated}",
                    curses.A_NORMAL if provider.updatable else curses.A_DIM,
                )
            )
        if not rows:
            self._safe_addstr(top, 2, "No providers")
            return
        self._render_list(rows, snapshot.state.cursor, top, bottom)

    def _render_groups(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        rows = [(f"★ {node_id}", curses.color_pair(3)) for node_id in snapshot.favorites]
        rows += [
            (f"▸ {name} ({len(members)} nodes): {', '.join(members)}", curses.color_pair(5))
            for name, members in snapshot.custom_groups
        ]
        if not rows:
            self._safe_addstr(top, 2, "No favorites or groups yet; press * on a node in Routes or n for a new group")
            return
        self._render_list(rows, snapshot.state.cursor, top, bottom)

    def _render_logs(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        lines = tail_log(self._log_dir)
        height = max(1, bottom - top)
        for offset, line in enumerate(lines[-height:]):
            self._safe_addstr(top + offset, 0, line, curses.A_DIM)

    def _render_confirm_quit(self, snapshot: PanelSnapshot, top: int, bottom: int) -> None:
        self._safe_addstr(top + 2, 4, "Quit proxypanel? (y/n)", curses.A_BOLD | curses.color_pair(4))


def run_ui(coordinator: CoordinationLoop, log_dir: Path) -> int:
    def _main(stdscr) -> int:
        ui = PanelUI(stdscr, log_dir)
        return coordinator.run(ui, ui.render)

    return curses.wrapper(_main)
