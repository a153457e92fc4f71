from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from functools import lru_cache
import json
import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from proxypanel.errors import ConfigError
from proxypanel.state import Preset

APP_NAME = "proxypanel"
CONFIG_FILENAME = "config.json"
DEFAULT_API_URL = "http://127.0.0.1:9090"


def get_app_dir() -> Path:
    override = os.getenv("PROXYPANEL_HOME")
    if override:
        return Path(override)
    base = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / APP_NAME


def get_log_dir() -> Path:
    return get_app_dir() / "logs"


def get_config_path() -> Path:
    return get_app_dir() / CONFIG_FILENAME


@dataclass
class PanelConfig:
    api_url: str = DEFAULT_API_URL
    secret: str = ""
    current_preset: str = Preset.default.value
    favorite_nodes: list[str] = field(default_factory=list)
    whitelist: list[str] = field(default_factory=list)
    blacklist: list[str] = field(default_factory=list)
    node_groups: dict[str, list[str]] = field(default_factory=dict)

    def merge_cli(self, api_url: str | None = None, secret: str | None = None, preset: str | None = None) -> None:
        if api_url:
            self.api_url = api_url
        if secret is not None:
            self.secret = secret
        if preset:
            self.current_preset = preset

    def toggle_favorite(self, node_id: str) -> bool:
        if node_id in self.favorite_nodes:
            self.favorite_nodes = [item for item in self.favorite_nodes if item != node_id]
            return False
        self.favorite_nodes = _normalize_list([*self.favorite_nodes, node_id])
        return True

    def add_rule(self, rule_list: str, value: str) -> bool:
        current = list(getattr(self, rule_list))
        if value in current:
            return False
        setattr(self, rule_list, _normalize_list([*current, value]))
        return True

    def remove_rule(self, rule_list: str, value: str) -> bool:
        current = list(getattr(self, rule_list))
        if value not in current:
            return False
        setattr(self, rule_list, [item for item in current if item != value])
        return True

    def create_group(self, name: str, node_ids: list[str] | None = None) -> bool:
        cleaned = name.strip()
        if not cleaned or cleaned in self.node_groups:
            return False
        self.node_groups = {**self.node_groups, cleaned: _normalize_list(node_ids or [])}
        return True

    def add_to_group(self, name: str, node_id: str) -> bool:
        """Append ``node_id`` to an existing group; KeyError if the group is unknown."""
        members = self.node_groups[name]
        updated = _normalize_list([*members, node_id])
        if len(updated) == len(members):
            return False
        self.node_groups = {**self.node_groups, name: updated}
        return True

    def delete_group(self, name: str) -> bool:
        if name not in self.node_groups:
            return False
        self.node_groups = {key: value for key, value in self.node_groups.items() if key != name}
        return True


def _normalize_list(items: list[str]) -> list[str]:
    unique: list[str] = []
    seen: set[str] = set()
    for item in items:
        cleaned = str(item).strip()
        if not cleaned:
            continue
        lowered = cleaned.lower()
        if lowered in seen:
            continue
        seen.add(lowered)
        unique.append(cleaned)
    return unique


def _normalize_groups(raw: object) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        return {}
    groups: dict[str, list[str]] = {}
    for name, members in raw.items():
        cleaned = str(name).strip()
        if cleaned and isinstance(members, list):
            groups[cleaned] = _normalize_list(members)
    return groups


def load_config(path: Path | None = None) -> PanelConfig:
    config_path = path or get_config_path()
    cfg = PanelConfig()
    if not config_path.exists():
        save_config(cfg, config_path)
        return cfg

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        backup = config_path.with_suffix(".invalid.json")
        config_path.replace(backup)
        save_config(cfg, config_path)
        return cfg
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: expected a JSON object")

    for item in fields(cfg):
        if item.name in data and data[item.name] is not None:
            setattr(cfg, item.name, data[item.name])

    cfg.api_url = str(cfg.api_url).strip() or DEFAULT_API_URL
    cfg.secret = str(cfg.secret or "")
    cfg.current_preset = str(cfg.current_preset).strip().lower() or Preset.default.value
    for list_field in ("favorite_nodes", "whitelist", "blacklist"):
        value = getattr(cfg, list_field)
        setattr(cfg, list_field, _normalize_list(value if isinstance(value, list) else []))
    cfg.node_groups = _normalize_groups(cfg.node_groups)
    return cfg


def save_config(cfg: PanelConfig, path: Path | None = None) -> None:
    config_path = path or get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    # Readers only ever see a complete file.
    staging = config_path.with_name(f".{config_path.name}.{os.getpid()}.tmp")
    try:
        staging.write_text(
            json.dumps(asdict(cfg), indent=2, sort_keys=True),
            encoding="utf-8",
        )
        staging.replace(config_path)
    finally:
        staging.unlink(missing_ok=True)


class PanelSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PROXYPANEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_url: str | None = None
    secret: str | None = None
    log_level: str = "INFO"
    request_timeout_sec: float = 10.0
    probe_timeout_ms: int = 5000
    probe_url: str = "https://www.gstatic.com/generate_204"
    probe_concurrency_ceiling: int = 16
    refresh_interval_sec: float = 5.0
    connections_refresh_sec: float = 2.0
    performance_refresh_sec: float = 5.0
    input_poll_ms: int = 100

    @field_validator(
        "request_timeout_sec",
        "probe_timeout_ms",
        "probe_concurrency_ceiling",
        "refresh_interval_sec",
        "connections_refresh_sec",
        "performance_refresh_sec",
        "input_poll_ms",
    )
    @classmethod
    def must_be_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_level(cls, value: str | None) -> str:
        return str(value or "INFO").strip().upper()


@lru_cache(maxsize=1)
def get_settings() -> PanelSettings:
    return PanelSettings()


@dataclass(frozen=True)
class StartupConfig:
    """Everything the core reads from configuration, consumed once at startup."""

    api_url: str
    secret: str
    favorites: frozenset[str]
    whitelist: tuple[str, ...]
    blacklist: tuple[str, ...]
    preset: Preset


def build_startup_config(
    cfg: PanelConfig,
    settings: PanelSettings,
    api_url: str | None = None,
    secret: str | None = None,
) -> StartupConfig:
    preset = Preset.from_name(cfg.current_preset)
    if preset is None:
        raise ConfigError(f"unknown preset {cfg.current_preset!r}; expected one of {', '.join(p.value for p in Preset)}")
    api_url = (api_url or settings.api_url or cfg.api_url).strip()
    if not api_url.startswith(("http://", "https://")):
        raise ConfigError(f"api_url must be an http(s) URL, got {api_url!r}")
    return StartupConfig(
        api_url=api_url,
        secret=next(value for value in (secret, settings.secret, cfg.secret) if value is not None),
        favorites=frozenset(cfg.favorite_nodes),
        whitelist=tuple(cfg.whitelist),
        blacklist=tuple(cfg.blacklist),
        preset=preset,
    )
