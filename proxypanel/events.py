from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from proxypanel.errors import ProxyApiError
from proxypanel.models import Group, Measurement, Node
from proxypanel.schemas import ConnectionsResponse, Provider, RoutingMode, Rule


@dataclass(frozen=True)
class ProbeOutcome:
    group_id: str
    epoch: int
    node_id: str
    measurement: Measurement


@dataclass(frozen=True)
class GroupsLoaded:
    seq: int
    groups: list[Group]
    nodes: list[Node]
    routing_mode: RoutingMode | None = None


@dataclass(frozen=True)
class SwitchCompleted:
    group_id: str
    node_id: str
    seq: int


@dataclass(frozen=True)
class RoutingModeChanged:
    mode: RoutingMode


@dataclass(frozen=True)
class RulesLoaded:
    rules: list[Rule]


@dataclass(frozen=True)
class ConnectionsLoaded:
    snapshot: ConnectionsResponse
    received_at: float


@dataclass(frozen=True)
class ConnectionsClosed:
    connection_id: str | None = None


@dataclass(frozen=True)
class ProvidersLoaded:
    providers: list[Provider]


@dataclass(frozen=True)
class ProvidersUpdated:
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfigSaved:
    what: str
    error: str = ""


@dataclass(frozen=True)
class RequestFailed:
    operation: str
    error: ProxyApiError
    group_id: str | None = None
    seq: int | None = None


PanelEvent = Union[
    ProbeOutcome,
    GroupsLoaded,
    SwitchCompleted,
    RoutingModeChanged,
    RulesLoaded,
    ConnectionsLoaded,
    ConnectionsClosed,
    ProvidersLoaded,
    ProvidersUpdated,
    ConfigSaved,
    RequestFailed,
]
