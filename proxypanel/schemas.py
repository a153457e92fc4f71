from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

GROUP_TYPES = {"Selector", "URLTest", "LoadBalance", "Fallback", "Smart"}
UNTESTABLE_TYPES = {"Direct", "Reject", "RejectDrop", "Pass", "Compatible"}


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RoutingMode(StrEnum):
    rule = "rule"
    global_ = "global"
    direct = "direct"

    def next(self) -> RoutingMode:
        order = [RoutingMode.rule, RoutingMode.global_, RoutingMode.direct]
        return order[(order.index(self) + 1) % len(order)]


class DaemonConfig(WireModel):
    port: int = 0
    socks_port: int = Field(default=0, alias="socks-port")
    mixed_port: int = Field(default=0, alias="mixed-port")
    allow_lan: bool = Field(default=False, alias="allow-lan")
    mode: RoutingMode | None = None
    log_level: str = Field(default="", alias="log-level")


class DelayHistory(WireModel):
    time: str = ""
    delay: int = 0


class ProxyInfo(WireModel):
    name: str = ""
    type: str = "Unknown"
    now: str | None = None
    all: list[str] = Field(default_factory=list)
    history: list[DelayHistory] = Field(default_factory=list)
    udp: bool | None = None

    @property
    def is_group(self) -> bool:
        return self.type in GROUP_TYPES

    @property
    def testable(self) -> bool:
        return self.type not in UNTESTABLE_TYPES

    def last_delay(self) -> int | None:
        for entry in reversed(self.history):
            if entry.delay > 0:
                return entry.delay
        return None


class ProxiesResponse(WireModel):
    proxies: dict[str, ProxyInfo] = Field(default_factory=dict)


class DelayResponse(WireModel):
    delay: int = Field(ge=0)


class Rule(WireModel):
    type: str
    payload: str = ""
    proxy: str = ""


class RulesResponse(WireModel):
    rules: list[Rule] = Field(default_factory=list)


class ConnectionMetadata(WireModel):
    network: str = ""
    type: str = ""
    source_ip: str = Field(default="", alias="sourceIP")
    destination_ip: str = Field(default="", alias="destinationIP")
    source_port: str = Field(default="", alias="sourcePort")
    destination_port: str = Field(default="", alias="destinationPort")
    host: str | None = None
    process_path: str | None = Field(default=None, alias="processPath")

    @property
    def target(self) -> str:
        host = self.host or self.destination_ip
        if self.destination_port:
            return f"{host}:{self.destination_port}"
        return host


class Connection(WireModel):
    id: str
    metadata: ConnectionMetadata = Field(default_factory=ConnectionMetadata)
    upload: int = 0
    download: int = 0
    start: str = ""
    chains: list[str] = Field(default_factory=list)
    rule: str = ""
    rule_payload: str | None = Field(default=None, alias="rulePayload")


class ConnectionsResponse(WireModel):
    download_total: int = Field(default=0, alias="downloadTotal")
    upload_total: int = Field(default=0, alias="uploadTotal")
    connections: list[Connection] | None = Field(default_factory=list)

    def items(self) -> list[Connection]:
        return list(self.connections or [])


class SubscriptionInfo(WireModel):
    upload: int = Field(default=0, alias="Upload")
    download: int = Field(default=0, alias="Download")
    total: int = Field(default=0, alias="Total")
    expire: int = Field(default=0, alias="Expire")


class Provider(WireModel):
    name: str
    type: str = ""
    vehicle_type: str = Field(default="", alias="vehicleType")
    updated_at: str | None = Field(default=None, alias="updatedAt")
    proxies: list[ProxyInfo] = Field(default_factory=list)
    subscription_info: SubscriptionInfo | None = Field(default=None, alias="subscriptionInfo")

    @property
    def updatable(self) -> bool:
        return self.vehicle_type.lower() == "http"


class ProvidersResponse(WireModel):
    providers: dict[str, Provider] = Field(default_factory=dict)
