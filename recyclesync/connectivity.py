"""Connectivity monitor.

Tracks offline/online transitions reported by the platform's network-change
notifications and fans them out to subscribers. Only the offline -> online
edge fires ``on_reachable`` callbacks; online -> offline is recorded and
passed to ``on_change`` subscribers but triggers no sync.

The monitor never polls. ``is_online()`` returns the last known state without
blocking; ``refresh()`` re-runs an optional probe (for example
:class:`TcpProbe`) in a worker thread and reports the result.
"""

import asyncio
import inspect
import logging
import socket
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


class TcpProbe:
    """Point-in-time reachability check via a TCP connect."""

    def __init__(self, host: str, port: int = 443, timeout: float = 3.0):
        self.host = host
        self.port = port
        self.timeout = timeout

    def __call__(self) -> bool:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return True
        except OSError:
            return False


class ConnectivityMonitor:
    """Edge-triggered reachability signal."""

    def __init__(
        self,
        probe: Callable[[], bool] | None = None,
        initially_online: bool = False,
        loop: asyncio.AbstractEventLoop | None = None,
    ):
        """Initialize the monitor.

        Args:
            probe: Optional point-in-time reachability check
            initially_online: State assumed before the first report
            loop: Event loop to run coroutine callbacks on. Defaults to the
                  running loop at the time of the first report.
        """
        self._probe = probe
        self._online = initially_online
        self._loop = loop
        self._lock = threading.Lock()
        self._reachable_callbacks: list[Callback] = []
        self._change_callbacks: list[Callback] = []

    def is_online(self) -> bool:
        """Last known reachability. Never blocks; see :meth:`refresh`."""
        return self._online

    async def refresh(self) -> bool:
        """Re-run the probe in a worker thread and report its result.

        Without a probe this returns the last reported state. A probe that
        raises counts as offline.
        """
        if self._probe is None:
            return self._online
        try:
            online = bool(await asyncio.to_thread(self._probe))
        except Exception as e:
            logger.warning(f"Connectivity probe failed: {e}")
            online = False
        self.report(online)
        return online

    @property
    def last_reported(self) -> bool:
        return self._online

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def on_reachable(self, callback: Callback) -> Callable[[], None]:
        """Subscribe to offline -> online transitions.

        The callback takes no arguments and may be a coroutine function.

        Returns:
            Function that removes the subscription
        """
        return self._subscribe(self._reachable_callbacks, callback)

    def on_change(self, callback: Callback) -> Callable[[], None]:
        """Subscribe to every transition. The callback receives the new state."""
        return self._subscribe(self._change_callbacks, callback)

    def _subscribe(self, callbacks: list[Callback], callback: Callback) -> Callable[[], None]:
        with self._lock:
            callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def report(self, online: bool) -> bool:
        """Record the platform's current network state.

        Safe to call from any thread.

        Args:
            online: Whether the network is available now

        Returns:
            True if this report was an offline -> online transition
        """
        with self._lock:
            previous = self._online
            self._online = online
            if previous == online:
                return False
            change_callbacks = list(self._change_callbacks)
            reachable_callbacks = list(self._reachable_callbacks) if online else []

        if online:
            logger.info("Network became reachable")
        else:
            logger.info("Network lost")

        for callback in change_callbacks:
            self._dispatch(callback, online)
        for callback in reachable_callbacks:
            self._dispatch(callback)

        return online

    def _dispatch(self, callback: Callback, *args) -> None:
        if not inspect.iscoroutinefunction(callback):
            try:
                callback(*args)
            except Exception as e:
                logger.error(f"Connectivity callback failed: {e}", exc_info=True)
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        loop = self._loop or running
        if loop is None:
            logger.warning("No event loop available for coroutine callback; skipped")
            return
        if self._loop is None:
            self._loop = loop

        if loop is running:
            task = loop.create_task(callback(*args))
            task.add_done_callback(_log_task_failure)
        else:
            future = asyncio.run_coroutine_threadsafe(callback(*args), loop)
            future.add_done_callback(_log_task_failure)


def _log_task_failure(task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Connectivity callback failed: {exc}", exc_info=exc)
