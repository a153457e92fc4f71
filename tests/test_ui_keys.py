from __future__ import annotations

import curses
from dataclasses import replace

from proxypanel.coordinator import PanelSnapshot
from proxypanel.state import AppState, CommandKind, Page, Preset
from proxypanel.ui.app import (
    CTRL_P,
    ESCAPE,
    LineEditor,
    _format_bytes,
    _format_rate,
    editor_for_key,
    key_to_command,
)


def _snapshot(enabled: frozenset[CommandKind] = frozenset(), **changes) -> PanelSnapshot:
    return PanelSnapshot(state=replace(AppState.initial(Preset.default), **changes), enabled=enabled)


def test_home_keys_navigate() -> None:
    home = _snapshot()
    assert key_to_command(ord("g"), home).kind is CommandKind.go_routes
    assert key_to_command(ord("o"), home).kind is CommandKind.go_logs
    assert key_to_command(ord("m"), home).kind is CommandKind.cycle_routing_mode
    assert key_to_command(CTRL_P, home).kind is CommandKind.cycle_preset
    assert key_to_command(ord("q"), home).kind is CommandKind.quit
    assert key_to_command(ord("z"), home) is None


def test_home_letters_are_not_navigation_elsewhere() -> None:
    rules = _snapshot(current_page=Page.rules)
    assert key_to_command(ord("g"), rules) is None
    assert key_to_command(curses.KEY_DOWN, rules).kind is CommandKind.cursor_down


def test_routes_enter_expands_then_switches() -> None:
    collapsed = _snapshot(current_page=Page.routes)
    assert key_to_command(10, collapsed).kind is CommandKind.expand_group
    assert key_to_command(ESCAPE, collapsed).kind is CommandKind.quit

    expanded = _snapshot(current_page=Page.routes, expanded_group_id="Proxy")
    assert key_to_command(10, expanded).kind is CommandKind.switch_node
    assert key_to_command(ESCAPE, expanded).kind is CommandKind.collapse_group
    assert key_to_command(ord("t"), expanded).kind is CommandKind.batch_test
    assert key_to_command(ord("*"), expanded).kind is CommandKind.toggle_favorite


def test_confirm_quit_keys() -> None:
    confirm = _snapshot(current_page=Page.confirm_quit)
    assert key_to_command(ord("y"), confirm).kind is CommandKind.confirm
    assert key_to_command(ord("n"), confirm).kind is CommandKind.cancel
    assert key_to_command(ord("g"), confirm) is None


def test_settings_enter_applies_preset_under_cursor() -> None:
    settings = _snapshot(current_page=Page.settings, cursor=2)
    command = key_to_command(10, settings)
    assert command.kind is CommandKind.set_preset
    assert command.value == "strict"


def test_formatting_helpers() -> None:
    assert _format_bytes(512) == "512 B"
    assert _format_bytes(2048) == "2.0 KB"
    assert _format_rate(3 * 1024 * 1024) == "3.00 MB/s"


def _type(editor: LineEditor, text: str):
    command = None
    for char in text:
        command = editor.feed(ord(char))
    return command


def test_rule_prompt_collects_keys_without_blocking() -> None:
    rules = _snapshot(enabled=frozenset({CommandKind.add_rule}), current_page=Page.rules)
    editor = editor_for_key(ord("b"), rules)
    assert isinstance(editor, LineEditor)
    assert editor.label == "Add to blacklist: "

    assert _type(editor, "ads.examplx") is None
    assert editor.feed(curses.KEY_BACKSPACE) is None
    assert _type(editor, "e") is None
    assert not editor.done

    command = editor.feed(10)
    assert editor.done
    assert command.kind is CommandKind.add_rule
    assert command.target == "blacklist"
    assert command.value == "ads.example"


def test_prompt_escape_and_empty_enter_emit_nothing() -> None:
    editor = LineEditor("New group name: ", CommandKind.create_group)
    _type(editor, "Asia")
    assert editor.feed(ESCAPE) is None
    assert editor.done

    empty = LineEditor("New group name: ", CommandKind.create_group)
    _type(empty, "   ")
    assert empty.feed(13) is None
    assert empty.done


def test_group_page_prompts() -> None:
    enabled = frozenset({CommandKind.create_group, CommandKind.add_to_group, CommandKind.delete_group})
    groups = _snapshot(enabled=enabled, current_page=Page.groups, cursor=1)
    groups = replace(groups, favorites=("a",), custom_groups=(("Asia", ("b",)),))

    create = editor_for_key(ord("n"), groups)
    assert create.kind is CommandKind.create_group
    _type(create, "Europe")
    assert create.feed(10).value == "Europe"

    add = editor_for_key(ord("a"), groups)
    assert add.target == "Asia"
    assert key_to_command(ord("d"), groups).kind is CommandKind.delete_group

    on_favorite = replace(groups, state=replace(groups.state, cursor=0))
    assert editor_for_key(ord("a"), on_favorite) is None


def test_disabled_prompt_comes_back_as_command_to_reject() -> None:
    rules = _snapshot(current_page=Page.rules)
    command = editor_for_key(ord("w"), rules)
    assert command.kind is CommandKind.add_rule
    assert command.target == "whitelist"
