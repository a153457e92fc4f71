from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, field, replace
from typing import Iterable

from proxypanel.events import PanelEvent, ProbeOutcome
from proxypanel.models import Group, LatencyRating, Node, ProbeBatch, rate


class ProxyTable:
    """Groups and their member nodes. Mutated only by the coordination thread."""

    def __init__(self) -> None:
        self._groups: dict[str, Group] = {}
        self._nodes: dict[tuple[str, str], Node] = {}

    def __len__(self) -> int:
        return len(self._groups)

    @property
    def groups(self) -> list[Group]:
        return list(self._groups.values())

    def group(self, group_id: str) -> Group | None:
        return self._groups.get(group_id)

    def node(self, group_id: str, node_id: str) -> Node | None:
        return self._nodes.get((group_id, node_id))

    def group_nodes(self, group_id: str) -> list[Node]:
        group = self._groups.get(group_id)
        if group is None:
            return []
        return [self._nodes[(group_id, node_id)] for node_id in group.node_ids if (group_id, node_id) in self._nodes]

    def replace(
        self,
        groups: Iterable[Group],
        nodes: Iterable[Node],
        favorites: set[str] | None = None,
        pinned_selection: dict[str, str | None] | None = None,
    ) -> None:
        favorites = favorites or set()
        pinned_selection = pinned_selection or {}
        previous = self._nodes

        self._groups = {}
        for group in groups:
            if group.id in pinned_selection:
                group.selected_node_id = pinned_selection[group.id]
            self._groups[group.id] = group

        self._nodes = {}
        for node in nodes:
            key = (node.group_id, node.id)
            old = previous.get(key)
            if old is not None and old.last_latency is not None:
                seeded = node.last_latency
                if seeded is None or old.last_latency.epoch >= seeded.epoch:
                    node.last_latency = old.last_latency
            node.favorite = node.id in favorites
            self._nodes[key] = node

    def set_favorite(self, node_id: str, favorite: bool) -> int:
        touched = 0
        for (_, member_id), node in self._nodes.items():
            if member_id == node_id:
                node.favorite = favorite
                touched += 1
        return touched

    def set_selection(self, group_id: str, node_id: str) -> bool:
        group = self._groups.get(group_id)
        if group is None:
            return False
        group.selected_node_id = node_id
        return True


@dataclass
class DrainResult:
    merged: int = 0
    stale: int = 0
    events: list[PanelEvent] = field(default_factory=list)
    progressed: dict[str, ProbeBatch] = field(default_factory=dict)
    completed: list[ProbeBatch] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.merged or self.events or self.progressed)


class ResultAggregator:
    """Single ingestion point for everything network tasks report back.

    Producers call ``submit`` from any thread. The coordination thread calls
    ``drain`` once per tick; probe outcomes are merged into the table under
    epoch rules and every other event is handed back to the caller.
    """

    def __init__(self, table: ProxyTable, logger: logging.Logger | None = None) -> None:
        self._table = table
        self._logger = logger or logging.getLogger("proxypanel.aggregator")
        self._inbox: queue.SimpleQueue[PanelEvent] = queue.SimpleQueue()
        self._current_epoch: dict[str, int] = {}
        self._batches: dict[str, ProbeBatch] = {}
        self._unresolved: dict[str, set[str]] = {}
        self.stale_dropped = 0

    @property
    def table(self) -> ProxyTable:
        return self._table

    def submit(self, event: PanelEvent) -> None:
        self._inbox.put(event)

    def current_epoch(self, group_id: str) -> int:
        return self._current_epoch.get(group_id, 0)

    def batch(self, group_id: str) -> ProbeBatch | None:
        return self._batches.get(group_id)

    def unresolved(self, group_id: str) -> frozenset[str]:
        return frozenset(self._unresolved.get(group_id, ()))

    def rating(self, node: Node) -> LatencyRating:
        if node.id in self._unresolved.get(node.group_id, ()):
            return LatencyRating.testing
        return rate(node.last_latency)

    def begin_batch(self, batch: ProbeBatch) -> None:
        previous = self._batches.get(batch.group_id)
        if batch.epoch <= self.current_epoch(batch.group_id):
            raise ValueError(f"epoch {batch.epoch} does not advance {self.current_epoch(batch.group_id)}")
        if previous is not None and previous.busy:
            self._logger.info(
                "probe_batch_superseded",
                extra={"group_id": batch.group_id, "epoch": previous.epoch, "pending": previous.pending_count},
            )
        self._current_epoch[batch.group_id] = batch.epoch
        self._unresolved[batch.group_id] = set(batch.requested_node_ids)
        if batch.pending_count > 0:
            self._batches[batch.group_id] = batch
        else:
            self._batches.pop(batch.group_id, None)

    def drain(self) -> DrainResult:
        result = DrainResult()
        while True:
            try:
                event = self._inbox.get_nowait()
            except queue.Empty:
                break
            if isinstance(event, ProbeOutcome):
                self._merge(event, result)
            else:
                result.events.append(event)
        return result

    def _merge(self, outcome: ProbeOutcome, result: DrainResult) -> None:
        group_id = outcome.group_id
        if outcome.epoch < self.current_epoch(group_id):
            self.stale_dropped += 1
            result.stale += 1
            self._logger.debug(
                "probe_result_stale",
                extra={"group_id": group_id, "node_id": outcome.node_id, "epoch": outcome.epoch},
            )
            return

        node = self._table.node(group_id, outcome.node_id)
        if node is not None:
            stored = node.last_latency
            if stored is None or outcome.measurement.epoch >= stored.epoch:
                node.last_latency = outcome.measurement
                result.merged += 1

        unresolved = self._unresolved.get(group_id)
        if unresolved is None or outcome.node_id not in unresolved:
            return
        unresolved.discard(outcome.node_id)

        batch = self._batches.get(group_id)
        if batch is None or batch.epoch != outcome.epoch:
            return
        batch = replace(batch, pending_count=max(0, batch.pending_count - 1))
        result.progressed[group_id] = batch
        if batch.busy:
            self._batches[group_id] = batch
            return
        self._batches.pop(group_id, None)
        result.completed.append(batch)
        self._logger.info("probe_batch_completed", extra={"group_id": group_id, "epoch": batch.epoch})
