from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from proxypanel.aggregator import ResultAggregator
from proxypanel.api_client import LatencyProber
from proxypanel.errors import ProxyApiError, TransportError
from proxypanel.events import ProbeOutcome
from proxypanel.models import Measurement, ProbeBatch
from proxypanel.runner import BackgroundLoop

DEFAULT_TIMEOUT_MS = 5000
DEFAULT_CONCURRENCY_CEILING = 16
# Slack on top of the probe timeout before the task gives up on the client call.
TIMEOUT_GRACE_SEC = 2.0


class LatencyProbeScheduler:
    """Launches one probe task per node for a tagged batch (epoch).

    ``start_batch`` runs on the coordination thread and returns as soon as
    the batch is registered with the aggregator; the probes themselves run
    on the background loop and report one ``ProbeOutcome`` each.
    """

    def __init__(
        self,
        client: LatencyProber,
        aggregator: ResultAggregator,
        runner: BackgroundLoop,
        concurrency_ceiling: int = DEFAULT_CONCURRENCY_CEILING,
        logger: logging.Logger | None = None,
    ) -> None:
        if concurrency_ceiling <= 0:
            raise ValueError("concurrency_ceiling must be positive")
        self._client = client
        self._aggregator = aggregator
        self._runner = runner
        self._ceiling = concurrency_ceiling
        self._logger = logger or logging.getLogger("proxypanel.probe")
        self._epochs: dict[str, int] = {}

    @property
    def concurrency_ceiling(self) -> int:
        return self._ceiling

    def resolve_cap(self, node_count: int, concurrency_cap: int | None = None) -> int:
        cap = node_count if concurrency_cap is None or concurrency_cap <= 0 else concurrency_cap
        return max(1, min(cap, self._ceiling, max(node_count, 1)))

    def next_epoch(self, group_id: str) -> int:
        epoch = max(self._epochs.get(group_id, 0), self._aggregator.current_epoch(group_id)) + 1
        self._epochs[group_id] = epoch
        return epoch

    def start_batch(
        self,
        group_id: str,
        node_ids: Iterable[str],
        concurrency_cap: int | None = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> int:
        unique = list(dict.fromkeys(node_ids))
        epoch = self.next_epoch(group_id)
        batch = ProbeBatch(
            group_id=group_id,
            epoch=epoch,
            requested_node_ids=frozenset(unique),
            pending_count=len(unique),
        )
        self._aggregator.begin_batch(batch)
        cap = self.resolve_cap(len(unique), concurrency_cap)
        self._logger.info(
            "probe_batch_started",
            extra={"group_id": group_id, "epoch": epoch, "nodes": len(unique), "cap": cap},
        )
        if unique and self._runner.submit(self._run_batch(batch, unique, cap, timeout_ms)) is None:
            for node_id in unique:
                self._aggregator.submit(
                    ProbeOutcome(group_id, epoch, node_id, Measurement.failed("network_loop_stopped", epoch))
                )
        return epoch

    async def _run_batch(self, batch: ProbeBatch, node_ids: list[str], cap: int, timeout_ms: int) -> None:
        semaphore = asyncio.Semaphore(cap)
        tasks = [
            asyncio.create_task(self._probe(semaphore, batch.group_id, batch.epoch, node_id, timeout_ms))
            for node_id in node_ids
        ]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _probe(
        self,
        semaphore: asyncio.Semaphore,
        group_id: str,
        epoch: int,
        node_id: str,
        timeout_ms: int,
    ) -> None:
        measurement: Measurement
        # A cancel while still waiting for a slot reports an outcome too.
        try:
            async with semaphore:
                delay = await asyncio.wait_for(
                    self._client.probe_latency(node_id, timeout_ms),
                    timeout=timeout_ms / 1000 + TIMEOUT_GRACE_SEC,
                )
            measurement = Measurement.ok(delay, epoch)
        except asyncio.TimeoutError:
            measurement = Measurement.timed_out(epoch)
        except TransportError as exc:
            if exc.kind == TransportError.TIMEOUT:
                measurement = Measurement.timed_out(epoch)
            else:
                measurement = Measurement.failed(exc.kind, epoch)
        except ProxyApiError as exc:
            measurement = Measurement.failed(exc.detail or exc.kind, epoch)
        except asyncio.CancelledError:
            self._aggregator.submit(
                ProbeOutcome(group_id, epoch, node_id, Measurement.failed("cancelled", epoch))
            )
            raise
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "probe_failed_unexpectedly",
                extra={"group_id": group_id, "node_id": node_id, "error": str(exc)},
            )
            measurement = Measurement.failed(str(exc) or exc.__class__.__name__, epoch)
        self._aggregator.submit(ProbeOutcome(group_id, epoch, node_id, measurement))
