from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Coroutine


class BackgroundLoop:
    """Hosts an asyncio event loop on a daemon thread.

    The coordination thread hands coroutines over with ``submit`` and never
    waits on them; results travel back through the aggregator inbox.
    """

    START_TIMEOUT_SEC = 2.0
    STOP_TIMEOUT_SEC = 1.5

    def __init__(self, logger: logging.Logger | None = None, name: str = "proxypanel-net") -> None:
        self._logger = logger or logging.getLogger("proxypanel.runner")
        self._name = name
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None
        self._ready = threading.Event()
        self._closers: list[Callable[[], Awaitable[None]]] = []
        self._inflight: set[Future] = set()
        self._lock = threading.Lock()

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and self._loop is not None

    def add_closer(self, closer: Callable[[], Awaitable[None]]) -> None:
        self._closers.append(closer)

    def start(self) -> None:
        if self.is_running():
            return
        self._ready.clear()
        self._thread = threading.Thread(target=self._run_thread, name=self._name, daemon=True)
        self._thread.start()
        if not self._ready.wait(self.START_TIMEOUT_SEC):
            raise RuntimeError("background_loop_start_timeout")

    def stop(self) -> None:
        if self._loop and self._stop_event:
            self._loop.call_soon_threadsafe(self._stop_event.set)
        if self._thread:
            self._thread.join(timeout=self.STOP_TIMEOUT_SEC)
            if self._thread.is_alive():
                self._logger.warning("background_loop_stop_pending")
                return
        self._thread = None
        self._loop = None
        self._stop_event = None

    def pending(self) -> int:
        with self._lock:
            return len(self._inflight)

    def submit(self, coro: Coroutine[Any, Any, Any]) -> Future | None:
        loop = self._loop
        if loop is None or not loop.is_running():
            self._logger.warning("background_loop_not_running", extra={"task": getattr(coro, "__name__", "")})
            coro.close()
            return None

        future = asyncio.run_coroutine_threadsafe(coro, loop)
        with self._lock:
            self._inflight.add(future)

        def _done_callback(done_future: Future) -> None:
            with self._lock:
                self._inflight.discard(done_future)
            if done_future.cancelled():
                return
            exc = done_future.exception()
            if exc is not None:
                self._logger.error("async_task_failed", exc_info=exc)

        future.add_done_callback(_done_callback)
        return future

    def _run_thread(self) -> None:
        asyncio.run(self._run())

    async def _run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self._ready.set()

        await self._stop_event.wait()

        current = asyncio.current_task()
        tasks = [task for task in asyncio.all_tasks() if task is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for closer in self._closers:
            try:
                await closer()
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("background_loop_close_failed", extra={"error": str(exc)})
