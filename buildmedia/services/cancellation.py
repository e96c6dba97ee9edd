"""Cooperative cancellation for long-running stage actions.

Each invoked operation gets its own ``CancellationScope``. Workers poll
``raise_if_cancelled()`` between units of work; code that owns an external
process registers a callback so ``cancel()`` can terminate it immediately.
A scope is never reused: once cancelled it stays cancelled.

Usage:
    scope = CancellationScope("extract")
    worker = threading.Thread(target=extract_iso, args=(iso, work_dir, None, scope))
    worker.start()
    ...
    scope.cancel()
"""

from __future__ import annotations

import threading
from typing import Callable

from buildmedia.logging import LoggerFactory
from buildmedia.storage.exceptions import OperationCanceledError


log = LoggerFactory.for_pipeline()


class CancellationScope:
    """Thread-safe cancellation token with cancel callbacks."""

    def __init__(self, name: str = "operation"):
        self.name = name
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Request cancellation and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        log.info(f"Cancellation requested for {self.name}")
        for callback in callbacks:
            try:
                callback()
            except Exception as error:
                log.warning(f"Cancel callback for {self.name} failed: {error}")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCanceledError(f"{self.name} cancelled")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback`` to run on cancel.

        Runs immediately when the scope is already cancelled. Returns a
        function that unregisters the callback.
        """
        with self._lock:
            already = self._event.is_set()
            if not already:
                self._callbacks.append(callback)
        if already:
            callback()

        def _unregister() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unregister

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to ``timeout`` seconds, returning early when cancelled."""
        return self._event.wait(timeout)


def check_cancelled(scope: CancellationScope | None) -> None:
    """``raise_if_cancelled`` that tolerates a missing scope."""
    if scope is not None:
        scope.raise_if_cancelled()
