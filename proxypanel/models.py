from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum

FAST_THRESHOLD_MS = 200
SLOW_THRESHOLD_MS = 500
DISPLAY_NAME_LIMIT = 40


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def display_name(name: str, limit: int = DISPLAY_NAME_LIMIT) -> str:
    if len(name) > limit:
        return f"{name[: limit - 3]}..."
    return name


class MeasurementKind(StrEnum):
    value = "value"
    timeout = "timeout"
    error = "error"


class LatencyRating(StrEnum):
    fast = "Fast"
    good = "Good"
    slow = "Slow"
    timeout = "Timeout"
    error = "Error"
    testing = "Testing…"
    untested = "-"


@dataclass(frozen=True)
class Measurement:
    kind: MeasurementKind
    epoch: int
    value_ms: int | None = None
    reason: str = ""
    measured_at: datetime = field(default_factory=utc_now)

    @classmethod
    def ok(cls, value_ms: int, epoch: int) -> Measurement:
        return cls(kind=MeasurementKind.value, epoch=epoch, value_ms=max(0, int(value_ms)))

    @classmethod
    def timed_out(cls, epoch: int) -> Measurement:
        return cls(kind=MeasurementKind.timeout, epoch=epoch)

    @classmethod
    def failed(cls, reason: str, epoch: int) -> Measurement:
        return cls(kind=MeasurementKind.error, epoch=epoch, reason=reason)

    @property
    def rating(self) -> LatencyRating:
        return rate(self)

    def label(self) -> str:
        if self.kind == MeasurementKind.value:
            return f"{self.value_ms}ms"
        if self.kind == MeasurementKind.timeout:
            return "timeout"
        return "error"


def rate(measurement: Measurement | None) -> LatencyRating:
    if measurement is None:
        return LatencyRating.untested
    if measurement.kind == MeasurementKind.timeout:
        return LatencyRating.timeout
    if measurement.kind == MeasurementKind.error or measurement.value_ms is None:
        return LatencyRating.error
    if measurement.value_ms < FAST_THRESHOLD_MS:
        return LatencyRating.fast
    if measurement.value_ms <= SLOW_THRESHOLD_MS:
        return LatencyRating.good
    return LatencyRating.slow


@dataclass
class Node:
    id: str
    group_id: str
    display_name: str
    favorite: bool = False
    last_latency: Measurement | None = None
    proxy_type: str = ""
    testable: bool = True


@dataclass
class Group:
    id: str
    name: str
    node_ids: list[str] = field(default_factory=list)
    selected_node_id: str | None = None
    group_type: str = "Selector"


@dataclass(frozen=True)
class ProbeBatch:
    group_id: str
    epoch: int
    requested_node_ids: frozenset[str]
    started_at: datetime = field(default_factory=utc_now)
    pending_count: int = 0

    @property
    def busy(self) -> bool:
        return self.pending_count > 0
