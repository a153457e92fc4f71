from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from proxypanel.config import (
    PanelConfig,
    PanelSettings,
    build_startup_config,
    get_app_dir,
    get_config_path,
    load_config,
    save_config,
)
from proxypanel.errors import ConfigError
from proxypanel.state import Preset


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("PROXYPANEL_API_URL", "PROXYPANEL_SECRET", "PROXYPANEL_HOME", "XDG_CONFIG_HOME"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def test_app_dir_resolution(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    assert get_app_dir() == tmp_path / "xdg" / "proxypanel"

    monkeypatch.setenv("PROXYPANEL_HOME", str(tmp_path / "home"))
    assert get_config_path() == tmp_path / "home" / "config.json"


def test_missing_file_is_created_with_defaults(tmp_path: Path) -> None:
    path = tmp_path / "cfg" / "config.json"
    cfg = load_config(path)

    assert cfg == PanelConfig()
    assert json.loads(path.read_text(encoding="utf-8"))["current_preset"] == "default"


def test_invalid_json_is_moved_aside(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")

    cfg = load_config(path)

    assert cfg.api_url == "http://127.0.0.1:9090"
    assert (tmp_path / "config.invalid.json").read_text(encoding="utf-8") == "{not json"


def test_non_object_json_is_a_config_error(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_lists_are_normalized_and_unknown_keys_ignored(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "favorite_nodes": [" HK-01 ", "hk-01", "", "JP-02"],
                "whitelist": "not-a-list",
                "node_groups": {"Asia": ["HK-01", "hk-01"], "": ["x"]},
                "theme": "dark",
                "current_preset": " Work ",
            }
        ),
        encoding="utf-8",
    )

    cfg = load_config(path)

    assert cfg.favorite_nodes == ["HK-01", "JP-02"]
    assert cfg.whitelist == []
    assert cfg.node_groups == {"Asia": ["HK-01"]}
    assert cfg.current_preset == "work"


def test_save_round_trip_keeps_favorites_and_rules(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    cfg = PanelConfig()
    assert cfg.toggle_favorite("a")
    assert cfg.add_rule("whitelist", "example.com")
    assert not cfg.add_rule("whitelist", "example.com")
    save_config(cfg, path)

    loaded = load_config(path)
    assert loaded.favorite_nodes == ["a"]
    assert loaded.whitelist == ["example.com"]
    assert not loaded.toggle_favorite("a")
    assert loaded.remove_rule("whitelist", "example.com")


def test_flag_overrides_env_which_overrides_file() -> None:
    cfg = PanelConfig(api_url="http://file:9090", secret="file-secret")

    from_file = build_startup_config(cfg, PanelSettings())
    assert from_file.api_url == "http://file:9090"
    assert from_file.secret == "file-secret"

    settings = PanelSettings(api_url="http://env:9090", secret="")
    from_env = build_startup_config(cfg, settings)
    assert from_env.api_url == "http://env:9090"
    assert from_env.secret == ""

    from_flag = build_startup_config(cfg, settings, api_url="http://flag:9090", secret="flag")
    assert from_flag.api_url == "http://flag:9090"
    assert from_flag.secret == "flag"


def test_startup_config_carries_preset_and_favorites() -> None:
    cfg = PanelConfig(current_preset="strict", favorite_nodes=["a"])
    startup = build_startup_config(cfg, PanelSettings())
    assert startup.preset is Preset.strict
    assert startup.favorites == frozenset({"a"})


def test_unknown_preset_is_fatal() -> None:
    with pytest.raises(ConfigError):
        build_startup_config(PanelConfig(current_preset="turbo"), PanelSettings())


def test_non_http_url_is_fatal() -> None:
    with pytest.raises(ConfigError):
        build_startup_config(PanelConfig(api_url="unix:///tmp/clash.sock"), PanelSettings())


def test_settings_reject_non_positive_values(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(ValidationError):
        PanelSettings(probe_timeout_ms=0)

    monkeypatch.setenv("PROXYPANEL_PROBE_CONCURRENCY_CEILING", "8")
    monkeypatch.setenv("PROXYPANEL_LOG_LEVEL", "debug")
    settings = PanelSettings()
    assert settings.probe_concurrency_ceiling == 8
    assert settings.log_level == "DEBUG"


def test_node_groups_create_add_and_delete(tmp_path: Path) -> None:
    cfg = PanelConfig()
    assert cfg.create_group(" Asia ", ["HK-01"])
    assert not cfg.create_group("Asia")
    assert not cfg.create_group("  ")

    assert cfg.add_to_group("Asia", "JP-02")
    assert not cfg.add_to_group("Asia", "hk-01")
    with pytest.raises(KeyError):
        cfg.add_to_group("Europe", "DE-01")

    path = tmp_path / "config.json"
    save_config(cfg, path)
    assert load_config(path).node_groups == {"Asia": ["HK-01", "JP-02"]}

    assert cfg.delete_group("Asia")
    assert not cfg.delete_group("Asia")
    assert cfg.node_groups == {}


def test_save_replaces_the_file_without_leftovers(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{}", encoding="utf-8")

    save_config(PanelConfig(favorite_nodes=["a"]), path)

    assert json.loads(path.read_text(encoding="utf-8"))["favorite_nodes"] == ["a"]
    assert [item.name for item in tmp_path.iterdir()] == ["config.json"]
